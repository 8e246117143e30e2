"""Combo (bundle) matching and pro-rata savings distribution."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Sequence, Tuple

from storefront.pricing.catalog import ComboCatalog
from storefront.pricing.domain import Combo, LineItem
from storefront.pricing.money import Money


@dataclass(frozen=True)
class ComboMatch:
    """
    A satisfied combo and how its savings split across cart lines.

    `allocations` maps a line index to the share of the savings that line
    receives; the shares sum to `savings`.
    """
    combo: Combo
    instances: int
    savings: Money
    allocations: Dict[int, Money] = field(default_factory=dict)


class ComboResolver:
    """Finds combos satisfied by a cart and spreads their savings over the constituent lines."""

    def __init__(self, catalog: ComboCatalog):
        self.catalog = catalog

    def resolve(self, line_items: Sequence[LineItem], as_of: datetime) -> List[ComboMatch]:
        # Units already claimed by an earlier combo cannot satisfy another;
        # lines of products excluded from combos start with nothing to claim
        available: Dict[int, int] = {
            i: item.quantity if item.combo_eligible else 0 for i, item in enumerate(line_items)
        }
        matches = []
        for combo in self.catalog.active_combos(as_of):
            match = self._match(combo, line_items, available)
            if match is not None:
                matches.append(match)
        return matches

    def _units_for(self, product_id: str, line_items: Sequence[LineItem], available: Dict[int, int]) -> int:
        return sum(available[i] for i, item in enumerate(line_items) if item.product_id == product_id)

    def _match(self, combo: Combo, line_items: Sequence[LineItem], available: Dict[int, int]):
        present = []
        for combo_item in combo.items:
            units = self._units_for(combo_item.product_id, line_items, available)
            if units >= combo_item.quantity:
                present.append((combo_item, units // combo_item.quantity))
            elif combo.requires_all_items and combo_item.required:
                return None

        if not present:
            return None
        if combo.requires_all_items:
            # Optional items never limit how many instances apply
            limiting = [count for item, count in present if item.required] or [count for _, count in present]
        else:
            limiting = [count for _, count in present]

        instances = min(min(limiting), combo.max_quantity)
        if instances < combo.min_quantity:
            return None

        savings = combo.savings_amount.multiply_by_quantity(instances)
        if savings.is_zero:
            return None

        # Claim units line by line in cart order, weighting by original contribution
        weights: List[Tuple[int, int]] = []
        for combo_item, _ in present:
            needed = combo_item.quantity * instances
            for i, item in enumerate(line_items):
                if needed == 0:
                    break
                if item.product_id != combo_item.product_id or available[i] == 0:
                    continue
                taken = min(available[i], needed)
                available[i] -= taken
                needed -= taken
                weights.append((i, item.unit_price.cents * taken))

        merged: Dict[int, int] = {}
        for index, weight in weights:
            merged[index] = merged.get(index, 0) + weight
        indexes = sorted(merged)
        shares = savings.allocate([merged[i] for i in indexes])
        return ComboMatch(
            combo=combo,
            instances=instances,
            savings=savings,
            allocations=dict(zip(indexes, shares)),
        )
