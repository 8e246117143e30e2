"""Read-only promotion and combo catalog snapshots."""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from storefront.exceptions import InvalidPromotionError
from storefront.pricing.domain import (
    AppliesTo, Combo, LineItem, Promotion, PromotionType
)

logger = logging.getLogger(__name__)


def validate_promotion(promotion: Promotion) -> None:
    """Reject malformed promotions before they can reach evaluation."""
    if not promotion.id:
        raise InvalidPromotionError('La promoción no tiene identificador')
    if promotion.type != PromotionType.FREE_SHIPPING:
        if promotion.discount_value is None:
            raise InvalidPromotionError(f'La promoción {promotion.id} no tiene valor de descuento')
        if promotion.discount_value < 0:
            raise InvalidPromotionError(f'La promoción {promotion.id} tiene un descuento negativo')
    if promotion.type in (PromotionType.PERCENTAGE, PromotionType.BUY_X_GET_Y) and promotion.discount_value > 100:
        raise InvalidPromotionError(f'La promoción {promotion.id} supera el 100%')
    if promotion.type == PromotionType.BUY_X_GET_Y and (promotion.buy_quantity < 1 or promotion.get_quantity < 1):
        raise InvalidPromotionError(f'La promoción {promotion.id} tiene cantidades X/Y inválidas')
    if promotion.min_quantity < 1:
        raise InvalidPromotionError(f'La promoción {promotion.id} tiene cantidad mínima inválida')
    if promotion.ends_at is not None and promotion.ends_at < promotion.starts_at:
        raise InvalidPromotionError(f'La promoción {promotion.id} termina antes de empezar')
    if promotion.requires_code and not promotion.code:
        raise InvalidPromotionError(f'La promoción {promotion.id} requiere código pero no tiene uno')
    if promotion.applies_to == AppliesTo.PRODUCTS and not promotion.product_ids:
        raise InvalidPromotionError(f'La promoción {promotion.id} no tiene productos asociados')
    if promotion.applies_to == AppliesTo.CATEGORIES and not promotion.category_ids:
        raise InvalidPromotionError(f'La promoción {promotion.id} no tiene categorías asociadas')
    for limit in (promotion.usage_limit_global, promotion.usage_limit_per_customer):
        if limit is not None and limit < 0:
            raise InvalidPromotionError(f'La promoción {promotion.id} tiene un límite de uso negativo')


def _priority_key(promotion: Promotion):
    # priority DESC, starts_at ASC, id ASC
    return (-promotion.priority, promotion.starts_at, promotion.id)


class PromotionCatalog:
    """
    Immutable, validated set of promotions.

    Safe to share across concurrent pricing passes.
    """

    def __init__(self, promotions: Iterable[Promotion]):
        by_id: Dict[str, Promotion] = {}
        for promotion in promotions:
            validate_promotion(promotion)
            if promotion.id in by_id:
                raise InvalidPromotionError(f'Promoción duplicada: {promotion.id}')
            by_id[promotion.id] = promotion
        self._promotions = tuple(sorted(by_id.values(), key=_priority_key))
        self._by_id = by_id

    def __len__(self):
        return len(self._promotions)

    def __iter__(self):
        return iter(self._promotions)

    def get(self, promotion_id: str) -> Optional[Promotion]:
        return self._by_id.get(promotion_id)

    def active_promotions(self, as_of: datetime) -> List[Promotion]:
        return [p for p in self._promotions if p.is_active(as_of)]

    def active_promotions_for(self, line_item: LineItem, as_of: datetime) -> List[Promotion]:
        """Active promotions matching the item, highest priority first, earliest start on ties."""
        return [p for p in self._promotions if p.is_active(as_of) and p.matches(line_item)]

    def find_by_code(self, code: str, as_of: datetime) -> Optional[Promotion]:
        wanted = code.strip().upper()
        for promotion in self._promotions:
            if promotion.normalized_code == wanted and promotion.is_active(as_of):
                return promotion
        return None


def validate_combo(combo: Combo) -> None:
    if not combo.id:
        raise InvalidPromotionError('El combo no tiene identificador')
    if not combo.items:
        raise InvalidPromotionError(f'El combo {combo.id} no tiene productos')
    if any(item.quantity < 1 for item in combo.items):
        raise InvalidPromotionError(f'El combo {combo.id} tiene cantidades inválidas')
    if combo.min_quantity < 1 or combo.max_quantity < combo.min_quantity:
        raise InvalidPromotionError(f'El combo {combo.id} tiene límites de cantidad inválidos')
    if combo.combo_price.currency != combo.original_price.currency:
        raise InvalidPromotionError(f'El combo {combo.id} mezcla monedas')
    if combo.ends_at is not None and combo.ends_at < combo.starts_at:
        raise InvalidPromotionError(f'El combo {combo.id} termina antes de empezar')


class ComboCatalog:
    """Immutable set of combo definitions."""

    def __init__(self, combos: Iterable[Combo] = ()):
        by_id: Dict[str, Combo] = {}
        for combo in combos:
            validate_combo(combo)
            if combo.id in by_id:
                raise InvalidPromotionError(f'Combo duplicado: {combo.id}')
            by_id[combo.id] = combo
        self._combos = tuple(by_id.values())

    def __len__(self):
        return len(self._combos)

    def __iter__(self):
        return iter(self._combos)

    def active_combos(self, as_of: datetime) -> List[Combo]:
        """Active combos, largest savings first, then earliest start, then id."""
        active = [c for c in self._combos if c.is_active(as_of)]
        return sorted(active, key=lambda c: (-c.savings_amount.cents, c.starts_at, c.id))
