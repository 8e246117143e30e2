"""
Unit tests for the promotion and combo catalogs.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storefront.exceptions import InvalidPromotionError
from storefront.pricing import (
    AppliesTo, Combo, ComboCatalog, ComboItem, LineItem, Money, Promotion,
    PromotionCatalog, PromotionStatus, PromotionType
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def promo(id, **fields):
    values = {
        'type': PromotionType.PERCENTAGE,
        'discount_value': Decimal('10'),
        'starts_at': NOW - timedelta(days=1),
    }
    values.update(fields)
    return Promotion(id=id, **values)


def item(product_id='p1', category_id='c1'):
    return LineItem(product_id=product_id, sku=product_id.upper(), unit_price=Money(1000),
                    quantity=1, category_id=category_id)


class TestActivePromotions:
    """Tests for activePromotionsFor ordering and filtering."""
    
    def test_ordered_by_priority_then_start(self):
        catalog = PromotionCatalog([
            promo('low', priority=1),
            promo('late', priority=10, starts_at=NOW - timedelta(hours=1)),
            promo('early', priority=10, starts_at=NOW - timedelta(days=5)),
        ])
        ids = [p.id for p in catalog.active_promotions_for(item(), NOW)]
        assert ids == ['early', 'late', 'low']
    
    def test_expired_promotion_excluded_regardless_of_priority(self):
        catalog = PromotionCatalog([
            promo('expired', priority=100, ends_at=NOW - timedelta(minutes=1)),
            promo('current', priority=1),
        ])
        ids = [p.id for p in catalog.active_promotions_for(item(), NOW)]
        assert ids == ['current']
    
    def test_ends_at_is_exclusive_and_starts_at_inclusive(self):
        catalog = PromotionCatalog([
            promo('ending', ends_at=NOW),
            promo('starting', starts_at=NOW),
        ])
        assert [p.id for p in catalog.active_promotions(NOW)] == ['starting']
    
    def test_paused_promotion_excluded(self):
        catalog = PromotionCatalog([promo('paused', status=PromotionStatus.PAUSED)])
        assert catalog.active_promotions_for(item(), NOW) == []
    
    def test_applies_to_product_and_category_sets(self):
        catalog = PromotionCatalog([
            promo('by-product', applies_to=AppliesTo.PRODUCTS, product_ids=frozenset({'p1'})),
            promo('by-category', applies_to=AppliesTo.CATEGORIES, category_ids=frozenset({'c2'})),
        ])
        assert [p.id for p in catalog.active_promotions_for(item('p1', 'c1'), NOW)] == ['by-product']
        assert [p.id for p in catalog.active_promotions_for(item('p2', 'c2'), NOW)] == ['by-category']
        assert catalog.active_promotions_for(item('p3', None), NOW) == []
    
    def test_find_by_code_is_case_insensitive(self):
        catalog = PromotionCatalog([promo('coded', requires_code=True, code='Verano10')])
        assert catalog.find_by_code(' verano10 ', NOW).id == 'coded'
        assert catalog.find_by_code('OTRO', NOW) is None


class TestPromotionValidation:
    """Malformed promotions are rejected when the catalog is built."""
    
    def test_missing_discount_value(self):
        with pytest.raises(InvalidPromotionError):
            PromotionCatalog([promo('bad', discount_value=None)])
    
    def test_free_shipping_needs_no_value(self):
        catalog = PromotionCatalog([promo('ship', type=PromotionType.FREE_SHIPPING, discount_value=None)])
        assert len(catalog) == 1
    
    def test_percentage_over_hundred(self):
        with pytest.raises(InvalidPromotionError):
            PromotionCatalog([promo('bad', discount_value=Decimal('120'))])
    
    def test_code_required_without_code(self):
        with pytest.raises(InvalidPromotionError):
            PromotionCatalog([promo('bad', requires_code=True)])
    
    def test_duplicate_ids(self):
        with pytest.raises(InvalidPromotionError):
            PromotionCatalog([promo('dup'), promo('dup')])
    
    def test_ends_before_start(self):
        with pytest.raises(InvalidPromotionError):
            PromotionCatalog([promo('bad', ends_at=NOW - timedelta(days=2))])


class TestComboCatalog:
    """Tests for combo snapshots."""
    
    def _combo(self, id, original, price, **fields):
        return Combo(
            id=id,
            items=(ComboItem('p1'), ComboItem('p2')),
            original_price=Money(original),
            combo_price=Money(price),
            starts_at=NOW - timedelta(days=1),
            **fields
        )
    
    def test_savings_derived_from_prices(self):
        combo = self._combo('c', 10000, 8000)
        assert combo.savings_amount == Money(2000)
        assert combo.savings_percentage == Decimal('20.00')
    
    def test_active_combos_sorted_by_savings(self):
        catalog = ComboCatalog([self._combo('small', 10000, 9500), self._combo('big', 10000, 8000)])
        assert [c.id for c in catalog.active_combos(NOW)] == ['big', 'small']
    
    def test_rejects_empty_combo(self):
        with pytest.raises(InvalidPromotionError):
            ComboCatalog([Combo(id='x', items=(), original_price=Money(1), combo_price=Money(1), starts_at=NOW)])
    
    def test_rejects_bad_quantity_limits(self):
        with pytest.raises(InvalidPromotionError):
            ComboCatalog([self._combo('c', 100, 50, min_quantity=3, max_quantity=2)])
