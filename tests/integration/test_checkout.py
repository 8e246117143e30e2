"""
Integration tests for the checkout endpoints.
"""

import pytest
from decimal import Decimal

from storefront.exceptions import ReservationExpiredError
from storefront.models import Order, PromotionReservation, PromotionUsage, PromotionUsageCounter, ReservationStatus
from storefront.services.usage_ledger_service import SqlUsageLedger


def cart_payload(*lines, **fields):
    payload = {
        'customer_id': 'cliente-1',
        'items': [{'product_id': pid, 'quantity': qty} for pid, qty in lines],
        'shipping_amount': '0.00',
    }
    payload.update(fields)
    return payload


class TestQuote:
    """Tests for POST /checkout/quote."""
    
    def test_basic_percentage_quote(self, client, session, make_product, make_promotion):
        product_id = make_product(price='50.00', tax_rate='0.15').id
        make_promotion(discount_value=Decimal('10'))
        
        response = client.post('/checkout/quote', json=cart_payload((product_id, 2)))
        
        assert response.status_code == 200
        quote = response.get_json()['quote']
        assert quote['subtotal'] == '100.00'
        assert quote['discount_amount'] == '10.00'
        assert quote['tax_amount'] == '13.50'
        assert quote['total_amount'] == '103.50'
        assert quote['currency'] == 'ZAR'
        assert len(quote['applied_promotions']) == 1
    
    def test_quote_releases_reservations(self, client, session, make_product, make_promotion):
        product_id = make_product().id
        make_promotion(usage_limit_per_customer=1)
        
        client.post('/checkout/quote', json=cart_payload((product_id, 1)))
        client.post('/checkout/quote', json=cart_payload((product_id, 1)))
        
        reservations = session.query(PromotionReservation).all()
        assert len(reservations) == 2
        assert all(r.status == ReservationStatus.RELEASED.value for r in reservations)
        assert all(c.reserved_count == 0 for c in session.query(PromotionUsageCounter).all())
    
    def test_default_tax_rate_applies_when_product_has_none(self, client, session, make_product):
        product_id = make_product(price='100.00', tax_rate=None).id
        
        quote = client.post('/checkout/quote', json=cart_payload((product_id, 1))).get_json()['quote']
        assert quote['tax_amount'] == '15.00'
    
    def test_min_order_amount_gate(self, client, session, make_product, make_promotion):
        product_id = make_product(price='40.00').id
        make_promotion(minimum_order_amount=Decimal('50.00'))
        
        quote = client.post('/checkout/quote', json=cart_payload((product_id, 1))).get_json()['quote']
        assert quote['discount_amount'] == '0.00'
    
    def test_combo_savings_distributed(self, client, session, make_product, make_combo):
        burger = make_product(price='30.00', tax_rate='0')
        fries = make_product(price='70.00', tax_rate='0')
        make_combo([(burger, 1), (fries, 1)], original_price='100.00', combo_price='80.00')
        burger_id, fries_id = burger.id, fries.id
        
        quote = client.post('/checkout/quote', json=cart_payload((burger_id, 1), (fries_id, 1))).get_json()['quote']
        
        assert quote['total_amount'] == '80.00'
        assert [line['combo_discount'] for line in quote['lines']] == ['6.00', '14.00']
    
    def test_combo_ignores_ineligible_products(self, client, session, make_product, make_combo):
        burger = make_product(price='30.00', tax_rate='0', is_combo_eligible=False)
        fries = make_product(price='70.00', tax_rate='0')
        make_combo([(burger, 1), (fries, 1)], original_price='100.00', combo_price='80.00')
        burger_id, fries_id = burger.id, fries.id
        
        quote = client.post('/checkout/quote', json=cart_payload((burger_id, 1), (fries_id, 1))).get_json()['quote']
        
        assert quote['total_amount'] == '100.00'
        assert quote['applied_combos'] == []
    

    def test_free_shipping(self, client, session, make_product, make_promotion):
        product_id = make_product(price='100.00').id
        make_promotion(type='free_shipping', discount_value=None)
        
        quote = client.post(
            '/checkout/quote', json=cart_payload((product_id, 1), shipping_amount='75.00')
        ).get_json()['quote']
        
        assert quote['shipping_amount'] == '0.00'
        assert quote['shipping_discount'] == '75.00'
        assert quote['grand_total'] == quote['total_amount']
    
    def test_malformed_promotion_is_skipped(self, client, session, make_product, make_promotion):
        product_id = make_product(price='100.00', tax_rate='0').id
        make_promotion(name='Rota', discount_value=None)
        make_promotion(name='Buena', discount_value=Decimal('5'))
        
        quote = client.post('/checkout/quote', json=cart_payload((product_id, 1))).get_json()['quote']
        assert quote['discount_amount'] == '5.00'


class TestQuoteErrors:
    
    def test_empty_cart(self, client, session):
        response = client.post('/checkout/quote', json={'items': []})
        assert response.status_code == 400
        assert response.get_json()['status'] == 'error'
    
    def test_non_positive_quantity(self, client, session, make_product):
        product_id = make_product().id
        response = client.post('/checkout/quote', json=cart_payload((product_id, 0)))
        assert response.status_code == 400
    
    def test_unknown_product(self, client, session):
        response = client.post('/checkout/quote', json=cart_payload(('no-existe', 1)))
        assert response.status_code == 404
    
    def test_inactive_product(self, client, session, make_product):
        product_id = make_product(active=False).id
        response = client.post('/checkout/quote', json=cart_payload((product_id, 1)))
        assert response.status_code == 400
    
    def test_invalid_promo_code(self, client, session, make_product):
        product_id = make_product().id
        response = client.post('/checkout/quote', json=cart_payload((product_id, 1), promo_codes=['NOEXISTE']))
        
        assert response.status_code == 400
        body = response.get_json()
        assert body['reason'] == 'invalid_code'
        assert body['code'] == 'NOEXISTE'
    
    def test_non_list_promo_codes_with_single_code(self, client, session, make_product):
        product_id = make_product().id
        response = client.post(
            '/checkout/quote', json=cart_payload((product_id, 1), promo_codes=5, promo_code='A')
        )
        assert response.status_code == 400
        assert response.get_json()['status'] == 'error'
    
    def test_reserved_customer_id_rejected(self, client, session, make_product):
        product_id = make_product().id
        response = client.post('/checkout/quote', json=cart_payload((product_id, 1), customer_id='*'))
        assert response.status_code == 400



class TestPlaceOrder:
    """Tests for POST /checkout/orders."""
    
    def test_requires_idempotency_key(self, client, session, make_product):
        product_id = make_product().id
        response = client.post('/checkout/orders', json=cart_payload((product_id, 1)))
        assert response.status_code == 400
    
    def test_place_order_commits_usage(self, client, session, make_product, make_promotion):
        product_id = make_product(price='50.00').id
        promotion_id = make_promotion(usage_limit_per_customer=1).id
        
        response = client.post(
            '/checkout/orders',
            json=cart_payload((product_id, 2)),
            headers={'Idempotency-Key': 'pedido-1'}
        )
        
        assert response.status_code == 201
        order = response.get_json()['order']
        assert order['total_amount'] == '103.50'
        assert order['applied_promotions'][0]['promotion_id'] == promotion_id
        assert len(order['lines']) == 1
        
        usage = session.query(PromotionUsage).one()
        assert usage.order_id == order['id']
        assert usage.discount_applied == Decimal('10.00')
        reservation = session.query(PromotionReservation).one()
        assert reservation.status == ReservationStatus.COMMITTED.value
    
    def test_replay_returns_same_order(self, client, session, make_product, make_promotion):
        product_id = make_product().id
        make_promotion(usage_limit_per_customer=1)
        payload = cart_payload((product_id, 1), idempotency_key='pedido-2')
        
        first = client.post('/checkout/orders', json=payload)
        second = client.post('/checkout/orders', json=payload)
        
        assert first.status_code == 201
        assert second.status_code == 200
        assert first.get_json()['order']['id'] == second.get_json()['order']['id']
        assert session.query(Order).count() == 1
        assert session.query(PromotionUsage).count() == 1
    
    def test_exhausted_code_is_conflict(self, client, session, make_product, make_promotion):
        product_id = make_product().id
        make_promotion(requires_code=True, code='UNAVEZ', usage_limit_per_customer=1)
        payload = cart_payload((product_id, 1), promo_codes=['unavez'])
        
        first = client.post('/checkout/orders', json=payload, headers={'Idempotency-Key': 'a'})
        second = client.post('/checkout/orders', json=payload, headers={'Idempotency-Key': 'b'})
        
        assert first.status_code == 201
        assert second.status_code == 409
        assert second.get_json()['reason'] == 'usage_limit_exceeded'
        assert session.query(Order).count() == 1
    
    def test_exhausted_promotion_falls_through_for_second_order(self, client, session, make_product, make_promotion):
        product_id = make_product(price='100.00', tax_rate='0').id
        make_promotion(name='Primera compra', discount_value=Decimal('30'), priority=10, usage_limit_per_customer=1)
        make_promotion(name='General', discount_value=Decimal('10'), priority=1)
        
        first = client.post('/checkout/orders', json=cart_payload((product_id, 1)), headers={'Idempotency-Key': 'x1'})
        second = client.post('/checkout/orders', json=cart_payload((product_id, 1)), headers={'Idempotency-Key': 'x2'})
        
        assert first.get_json()['order']['discount_amount'] == '30.00'
        assert second.get_json()['order']['discount_amount'] == '10.00'
    
    def test_lapsed_reservation_drops_order(self, client, session, make_product, make_promotion, monkeypatch):
        product_id = make_product(price='100.00', tax_rate='0').id
        promotion_id = make_promotion(usage_limit=1).id
        
        def lapsed(self, reservation, order_id, discount):
            raise ReservationExpiredError(reservation.id, reservation.promotion_id)
        monkeypatch.setattr(SqlUsageLedger, 'commit', lapsed)
        
        response = client.post('/checkout/orders', json=cart_payload((product_id, 1)), headers={'Idempotency-Key': 'k'})
        
        assert response.status_code == 409
        assert response.get_json()['reason'] == 'reservation_expired'
        assert session.query(Order).count() == 0
        reservation = session.query(PromotionReservation).filter_by(promotion_id=promotion_id).one()
        assert reservation.status == ReservationStatus.RELEASED.value
        counter = session.query(PromotionUsageCounter).filter_by(promotion_id=promotion_id, customer_id='*').one()
        assert counter.reserved_count == 0
        assert counter.used_count == 0



class TestMetrics:
    
    def test_metrics_endpoint_exposes_pricing_counters(self, client, session, make_product):
        product_id = make_product().id
        client.post('/checkout/quote', json=cart_payload((product_id, 1)))
        
        response = client.get('/metrics')
        assert response.status_code == 200
        assert b'pricing_requests_total' in response.data
