"""
Catalog service: loads promotion and combo definitions into engine snapshots.

Rows are read once per request (or served from Redis) and converted into the
immutable PromotionCatalog / ComboCatalog the pricer works on. A malformed row
is logged and skipped so one bad promotion cannot take checkout down.
"""
import logging
from datetime import timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from storefront.exceptions import InvalidPromotionError, PricingUnavailableError
from storefront.models import Combo as ComboRow, Promotion as PromotionRow
from storefront.pricing import (
    AppliesTo, Combo, ComboCatalog, ComboItem, ComboStatus, Money, Promotion,
    PromotionCatalog, PromotionStatus, PromotionType
)
from storefront.pricing.catalog import validate_combo, validate_promotion
from storefront.services.cache_service import get_cache

logger = logging.getLogger(__name__)

CACHE_MODULE = 'catalog'


def as_utc(value):
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =====================================================
# ROW LOADING (cacheable plain dicts)
# =====================================================

def _promotion_rows(session) -> List[Dict[str, Any]]:
    rows = session.query(PromotionRow).options(
        selectinload(PromotionRow.products),
        selectinload(PromotionRow.categories),
    ).all()
    return [
        {
            'id': row.id,
            'name': row.name,
            'type': row.type,
            'status': row.status,
            'priority': row.priority,
            'discount_value': row.discount_value,
            'minimum_quantity': row.minimum_quantity,
            'buy_quantity': row.buy_quantity,
            'get_quantity': row.get_quantity,
            'minimum_order_amount': row.minimum_order_amount,
            'maximum_discount_amount': row.maximum_discount_amount,
            'usage_limit': row.usage_limit,
            'usage_limit_per_customer': row.usage_limit_per_customer,
            'requires_code': row.requires_code,
            'code': row.code,
            'stackable': row.stackable,
            'applies_to': row.applies_to,
            'starts_at': as_utc(row.starts_at),
            'ends_at': as_utc(row.ends_at),
            'product_ids': sorted(link.product_id for link in row.products),
            'category_ids': sorted(link.category_id for link in row.categories),
        }
        for row in rows
    ]


def _combo_rows(session) -> List[Dict[str, Any]]:
    rows = session.query(ComboRow).options(selectinload(ComboRow.items)).all()
    return [
        {
            'id': row.id,
            'name': row.name,
            'status': row.status,
            'original_price': row.original_price,
            'combo_price': row.combo_price,
            'minimum_quantity': row.minimum_quantity,
            'maximum_quantity': row.maximum_quantity,
            'requires_all_items': row.requires_all_items,
            'starts_at': as_utc(row.starts_at),
            'ends_at': as_utc(row.ends_at),
            'items': [
                {'product_id': item.product_id, 'quantity': item.quantity, 'is_required': item.is_required}
                for item in row.items
            ],
        }
        for row in rows
    ]


# =====================================================
# SNAPSHOT CONVERSION
# =====================================================

def _money(value: Optional[Decimal], currency: str) -> Optional[Money]:
    if value is None:
        return None
    return Money.from_decimal(value, currency)


def promotion_from_row(row: Dict[str, Any], currency: str) -> Promotion:
    """Build and validate a Promotion snapshot; raises InvalidPromotionError."""
    try:
        promotion = Promotion(
            id=row['id'],
            name=row.get('name') or '',
            type=PromotionType(row['type']),
            status=PromotionStatus(row['status']),
            priority=row.get('priority') or 0,
            discount_value=Decimal(row['discount_value']) if row.get('discount_value') is not None else None,
            min_quantity=row.get('minimum_quantity') or 1,
            buy_quantity=row.get('buy_quantity') or 2,
            get_quantity=row.get('get_quantity') or 1,
            min_order_amount=_money(row.get('minimum_order_amount'), currency),
            max_discount_amount=_money(row.get('maximum_discount_amount'), currency),
            usage_limit_global=row.get('usage_limit'),
            usage_limit_per_customer=row.get('usage_limit_per_customer'),
            requires_code=bool(row.get('requires_code')),
            code=row.get('code'),
            stackable=bool(row.get('stackable')),
            applies_to=AppliesTo(row.get('applies_to') or AppliesTo.ALL.value),
            starts_at=as_utc(row['starts_at']),
            ends_at=as_utc(row.get('ends_at')),
            product_ids=frozenset(row.get('product_ids') or ()),
            category_ids=frozenset(row.get('category_ids') or ()),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidPromotionError(f"La promoción {row.get('id')} es inválida: {e}")
    validate_promotion(promotion)
    return promotion


def combo_from_row(row: Dict[str, Any], currency: str) -> Combo:
    try:
        combo = Combo(
            id=row['id'],
            name=row.get('name') or '',
            status=ComboStatus(row['status']),
            original_price=Money.from_decimal(row['original_price'], currency),
            combo_price=Money.from_decimal(row['combo_price'], currency),
            min_quantity=row.get('minimum_quantity') or 1,
            max_quantity=row.get('maximum_quantity') or 10,
            requires_all_items=bool(row.get('requires_all_items', True)),
            starts_at=as_utc(row['starts_at']),
            ends_at=as_utc(row.get('ends_at')),
            items=tuple(
                ComboItem(product_id=item['product_id'], quantity=item['quantity'], required=bool(item['is_required']))
                for item in row['items']
            ),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidPromotionError(f"El combo {row.get('id')} es inválido: {e}")
    validate_combo(combo)
    return combo


def _cached_rows(key: str, loader, session):
    ttl = current_app.config.get('CACHE_CATALOG_TTL', 60)
    try:
        return get_cache().memoize(CACHE_MODULE, key, lambda: loader(session), ttl)
    except SQLAlchemyError as e:
        logger.error(f"[CATALOG] Failed loading {key}: {e}")
        raise PricingUnavailableError() from e


def load_promotion_catalog(session, currency: str) -> PromotionCatalog:
    """Load every promotion row into a PromotionCatalog, skipping malformed ones."""
    promotions = []
    for row in _cached_rows('promotions', _promotion_rows, session):
        try:
            promotions.append(promotion_from_row(row, currency))
        except InvalidPromotionError as e:
            logger.error(f"[CATALOG] Skipping promotion {row.get('id')}: {e.message}")
    return PromotionCatalog(promotions)


def load_combo_catalog(session, currency: str) -> ComboCatalog:
    combos = []
    for row in _cached_rows('combos', _combo_rows, session):
        try:
            combos.append(combo_from_row(row, currency))
        except InvalidPromotionError as e:
            logger.error(f"[CATALOG] Skipping combo {row.get('id')}: {e.message}")
    return ComboCatalog(combos)


def invalidate_catalog_cache() -> int:
    """Drop cached promotion/combo rows after an admin change."""
    return get_cache().invalidate_module(CACHE_MODULE)
