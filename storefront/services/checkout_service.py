"""
Checkout service with transactional logic.

quote_cart prices a cart without side effects that outlive the request.
place_order prices, stores the order and commits the promotion usage in one
transaction, guarded by an idempotency key against double submits.
"""
import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from storefront.blueprints.metrics import (
    combos_applied_total, pricing_duration_seconds, pricing_requests_total, promotions_applied_total
)
from storefront.exceptions import (
    BusinessLogicError, InvalidCartError, NotFoundError, PricingUnavailableError, StorefrontError
)
from storefront.models import Order, OrderLine, OrderStatus
from storefront.pricing import CartPricer, Money, PricingResult
from storefront.services.cart_service import build_cart
from storefront.services.catalog_service import load_combo_catalog, load_promotion_catalog
from storefront.services.usage_ledger_service import SqlUsageLedger

logger = logging.getLogger(__name__)


def _reservation_ttl() -> timedelta:
    return timedelta(seconds=current_app.config.get('RESERVATION_TTL_SECONDS', 900))


def _price(payload: Dict[str, Any], session, ledger: SqlUsageLedger, operation: str) -> PricingResult:
    """Build the cart and run one pricing pass, recording metrics."""
    started = time.perf_counter()
    outcome = 'error'
    try:
        cart = build_cart(payload, session)
        pricer = CartPricer(
            catalog=load_promotion_catalog(session, cart.currency),
            ledger=ledger,
            combos=load_combo_catalog(session, cart.currency),
        )
        result = pricer.price(cart)
        outcome = 'ok'
        return result
    except StorefrontError as e:
        outcome = type(e).__name__
        raise
    finally:
        pricing_duration_seconds.labels(operation=operation).observe(time.perf_counter() - started)
        pricing_requests_total.labels(operation=operation, outcome=outcome).inc()


def quote_cart(payload: Dict[str, Any], session) -> Dict[str, Any]:
    """Price a cart for display; reservations taken while pricing are given back."""
    ledger = SqlUsageLedger(session, reservation_ttl=_reservation_ttl())
    result = _price(payload, session, ledger, 'quote')
    result.release(ledger)
    return result.order.to_dict()


def order_to_dict(order: Order) -> Dict[str, Any]:
    def amount(value):
        return str(value) if value is not None else None
    
    return {
        'id': order.id,
        'idempotency_key': order.idempotency_key,
        'customer_id': order.customer_id,
        'status': order.status,
        'currency': order.currency,
        'subtotal': amount(order.subtotal),
        'discount_amount': amount(order.discount_amount),
        'promotion_discount': amount(order.promotion_discount),
        'combo_discount': amount(order.combo_discount),
        'tax_amount': amount(order.tax_amount),
        'shipping_amount': amount(order.shipping_amount),
        'total_amount': amount(order.total_amount),
        'grand_total': amount(order.total_amount + order.shipping_amount),
        'applied_promotions': order.applied_promotions,
        'applied_combos': order.applied_combos,
        'lines': [
            {
                'product_id': line.product_id,
                'sku': line.sku,
                'quantity': line.quantity,
                'unit_price': amount(line.unit_price),
                'promotion_discount': amount(line.promotion_discount),
                'combo_discount': amount(line.combo_discount),
                'total_price': amount(line.total_price),
                'tax_rate': amount(line.tax_rate),
                'tax_amount': amount(line.tax_amount),
            }
            for line in order.lines
        ],
    }


def _customer_id(payload: Dict[str, Any]) -> Optional[str]:
    customer_id = payload.get('customer_id') if isinstance(payload, dict) else None
    return str(customer_id) if customer_id else None


def _release_all(ledger: SqlUsageLedger, reservations) -> None:
    # The rollback undid any usage commit, so every hold is pending again
    for reservation in reservations:
        ledger.release(reservation)


def _build_order(result: PricingResult, customer_id: Optional[str], idempotency_key: str) -> Order:
    priced = result.order
    zero = Money.zero(priced.currency)
    promotion_discount = zero
    combo_discount = zero
    for line in priced.lines:
        promotion_discount = promotion_discount.add(line.promotion_discount)
        combo_discount = combo_discount.add(line.combo_discount)
    shipping = priced.shipping_amount or zero
    summary = priced.to_dict()
    
    order = Order(
        customer_id=customer_id,
        status=OrderStatus.CONFIRMED.value,
        currency=priced.currency,
        subtotal=priced.subtotal.to_decimal(),
        discount_amount=priced.discount_amount.to_decimal(),
        promotion_discount=promotion_discount.to_decimal(),
        combo_discount=combo_discount.to_decimal(),
        tax_amount=priced.tax_amount.to_decimal(),
        shipping_amount=shipping.to_decimal(),
        total_amount=priced.total_amount.to_decimal(),
        applied_promotions=summary['applied_promotions'],
        applied_combos=summary['applied_combos'],
        idempotency_key=idempotency_key,
    )
    for line in priced.lines:
        order.lines.append(OrderLine(
            product_id=line.product_id,
            sku=line.sku,
            quantity=line.quantity,
            unit_price=line.unit_price.to_decimal(),
            promotion_discount=line.promotion_discount.to_decimal(),
            combo_discount=line.combo_discount.to_decimal(),
            total_price=line.discounted_amount.to_decimal(),
            tax_rate=line.tax_rate,
            tax_amount=line.tax_amount.to_decimal(),
        ))
    return order


def place_order(payload: Dict[str, Any], idempotency_key: str, session) -> Tuple[Order, bool]:
    """
    Price the cart and persist the order with its promotion usage.
    
    Returns (order, created). A repeated idempotency key returns the stored
    order with created=False and reserves nothing.
    """
    if not idempotency_key or not str(idempotency_key).strip():
        raise InvalidCartError('idempotency_key es requerido')
    idempotency_key = str(idempotency_key).strip()
    
    # 1. Idempotency check
    existing = session.query(Order).filter_by(idempotency_key=idempotency_key).first()
    if existing:
        logger.info(f"[CHECKOUT] Replayed order {existing.id} for key {idempotency_key}")
        return existing, False
    
    # 2. Price (reservations are committed to the ledger immediately)
    ledger = SqlUsageLedger(session, reservation_ttl=_reservation_ttl())
    result = _price(payload, session, ledger, 'order')
    reservations = list(result.reservations)
    
    try:
        # 3. Persist order and convert reservations into usage in one transaction
        order = _build_order(result, _customer_id(payload), idempotency_key)
        session.add(order)
        session.flush()
        
        usage_ledger = SqlUsageLedger(session, reservation_ttl=_reservation_ttl(), autocommit=False)
        result.commit(usage_ledger, order.id)
        session.commit()
    except IntegrityError:
        # Same key submitted concurrently: the other request won
        session.rollback()
        _release_all(ledger, reservations)
        existing = session.query(Order).filter_by(idempotency_key=idempotency_key).first()
        if existing is None:
            raise BusinessLogicError('No se pudo registrar el pedido')
        return existing, False
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        _release_all(ledger, reservations)
        raise e
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"[CHECKOUT] Failed to store order for key {idempotency_key}: {e}")
        _release_all(ledger, reservations)
        raise PricingUnavailableError() from e
    
    for applied in result.order.applied_promotions:
        promotions_applied_total.labels(promotion_id=applied.promotion_id).inc()
    if result.order.free_shipping_promotion_id:
        promotions_applied_total.labels(promotion_id=result.order.free_shipping_promotion_id).inc()
    for applied in result.order.applied_combos:
        combos_applied_total.labels(combo_id=applied.combo_id).inc()
    logger.info(
        f"[CHECKOUT] Order {order.id} placed: total={result.order.total_amount} "
        f"promotions={[p.promotion_id for p in result.order.applied_promotions]}"
    )
    return order, True

