"""
Typed snapshots consumed and produced by the pricing engine.

Carts, promotions and combos arrive here already loaded from storage; the
engine never queries tables mid-computation.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from storefront.pricing.money import Money


class PromotionType(str, enum.Enum):
    """Promotion discount types."""
    PERCENTAGE = 'percentage'
    FIXED_AMOUNT = 'fixed_amount'
    BUY_X_GET_Y = 'buy_x_get_y'
    FREE_SHIPPING = 'free_shipping'


class AppliesTo(str, enum.Enum):
    """Promotion scope."""
    ALL = 'all'
    PRODUCTS = 'specific_products'
    CATEGORIES = 'specific_categories'


class PromotionStatus(str, enum.Enum):
    DRAFT = 'draft'
    ACTIVE = 'active'
    PAUSED = 'paused'
    EXPIRED = 'expired'


class ComboStatus(str, enum.Enum):
    DRAFT = 'draft'
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    EXPIRED = 'expired'


def is_within_window(starts_at: datetime, ends_at: Optional[datetime], as_of: datetime) -> bool:
    """True iff starts_at <= as_of and (ends_at is open or ends_at > as_of)."""
    return starts_at <= as_of and (ends_at is None or ends_at > as_of)


@dataclass(frozen=True)
class LineItem:
    """Immutable line snapshot taken when the cart is read."""
    product_id: str
    sku: str
    unit_price: Money
    quantity: int
    tax_rate: Decimal = Decimal('0')
    category_id: Optional[str] = None
    name: str = ''
    combo_eligible: bool = True

    @property
    def line_subtotal(self) -> Money:
        return self.unit_price.multiply_by_quantity(self.quantity)


@dataclass(frozen=True)
class Cart:
    customer_id: Optional[str]
    line_items: Tuple[LineItem, ...]
    currency: str = 'ZAR'
    promo_codes: Tuple[str, ...] = ()
    shipping_amount: Optional[Money] = None

    def subtotal(self) -> Money:
        total = Money.zero(self.currency)
        for item in self.line_items:
            total = total + item.line_subtotal
        return total


@dataclass(frozen=True)
class Promotion:
    """
    Read-only promotion definition.

    `discount_value` is a percentage for PERCENTAGE and BUY_X_GET_Y (percent off
    the free units, 100 = free) and a per-unit major-currency amount for
    FIXED_AMOUNT. FREE_SHIPPING promotions carry no value.
    """
    id: str
    type: PromotionType
    starts_at: datetime
    discount_value: Optional[Decimal] = None
    priority: int = 0
    stackable: bool = False
    name: str = ''
    status: PromotionStatus = PromotionStatus.ACTIVE
    min_order_amount: Optional[Money] = None
    max_discount_amount: Optional[Money] = None
    min_quantity: int = 1
    ends_at: Optional[datetime] = None
    usage_limit_global: Optional[int] = None
    usage_limit_per_customer: Optional[int] = None
    applies_to: AppliesTo = AppliesTo.ALL
    product_ids: FrozenSet[str] = frozenset()
    category_ids: FrozenSet[str] = frozenset()
    requires_code: bool = False
    code: Optional[str] = None
    buy_quantity: int = 2
    get_quantity: int = 1

    def is_active(self, as_of: datetime) -> bool:
        return (
            self.status == PromotionStatus.ACTIVE
            and is_within_window(self.starts_at, self.ends_at, as_of)
        )

    def matches(self, item: LineItem) -> bool:
        if self.applies_to == AppliesTo.ALL:
            return True
        if self.applies_to == AppliesTo.PRODUCTS:
            return item.product_id in self.product_ids
        return item.category_id is not None and item.category_id in self.category_ids

    @property
    def normalized_code(self) -> Optional[str]:
        return normalize_code(self.code) if self.code else None


def normalize_code(code: str) -> str:
    return code.strip().upper()


@dataclass(frozen=True)
class ComboItem:
    product_id: str
    quantity: int = 1
    required: bool = True


@dataclass(frozen=True)
class Combo:
    id: str
    items: Tuple[ComboItem, ...]
    combo_price: Money
    original_price: Money
    starts_at: datetime
    ends_at: Optional[datetime] = None
    min_quantity: int = 1
    max_quantity: int = 10
    requires_all_items: bool = True
    status: ComboStatus = ComboStatus.ACTIVE
    name: str = ''

    @property
    def savings_amount(self) -> Money:
        """original_price - combo_price, recomputed on every access."""
        return self.original_price.subtract(self.combo_price).clamp_non_negative()

    @property
    def savings_percentage(self) -> Decimal:
        if self.original_price.cents <= 0:
            return Decimal('0')
        ratio = Decimal(self.savings_amount.cents) * 100 / Decimal(self.original_price.cents)
        return ratio.quantize(Decimal('0.01'))

    def is_active(self, as_of: datetime) -> bool:
        return self.status == ComboStatus.ACTIVE and is_within_window(self.starts_at, self.ends_at, as_of)


@dataclass(frozen=True)
class Reservation:
    """Provisional claim on one use of a promotion."""
    id: str
    promotion_id: str
    customer_id: Optional[str]
    expires_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Append-only record of one committed promotion use."""
    customer_id: Optional[str]
    promotion_id: str
    order_id: str
    discount_applied: Money
    used_at: datetime


@dataclass(frozen=True)
class AppliedPromotion:
    promotion_id: str
    discount: Money


@dataclass(frozen=True)
class AppliedCombo:
    combo_id: str
    discount: Money
    instances: int = 1


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    sku: str
    quantity: int
    unit_price: Money
    subtotal: Money
    promotion_discount: Money
    combo_discount: Money
    discounted_amount: Money
    tax_rate: Decimal
    tax_amount: Money
    promotion_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PricedOrder:
    """
    Result of one pricing pass.

    total_amount == subtotal - discount_amount + tax_amount and is never negative.
    Shipping is kept apart from that identity; grand_total adds it back.
    """
    subtotal: Money
    discount_amount: Money
    tax_amount: Money
    total_amount: Money
    applied_promotions: Tuple[AppliedPromotion, ...] = ()
    applied_combos: Tuple[AppliedCombo, ...] = ()
    lines: Tuple[PricedLine, ...] = ()
    shipping_amount: Optional[Money] = None
    shipping_discount: Optional[Money] = None
    free_shipping_promotion_id: Optional[str] = None

    @property
    def currency(self) -> str:
        return self.subtotal.currency

    @property
    def grand_total(self) -> Money:
        if self.shipping_amount is None:
            return self.total_amount
        return self.total_amount.add(self.shipping_amount)

    def to_dict(self) -> Dict:
        """JSON-friendly representation with amounts as decimal strings."""
        def amount(value: Optional[Money]) -> Optional[str]:
            return str(value.to_decimal()) if value is not None else None

        return {
            'currency': self.currency,
            'subtotal': amount(self.subtotal),
            'discount_amount': amount(self.discount_amount),
            'tax_amount': amount(self.tax_amount),
            'total_amount': amount(self.total_amount),
            'shipping_amount': amount(self.shipping_amount),
            'shipping_discount': amount(self.shipping_discount),
            'free_shipping_promotion_id': self.free_shipping_promotion_id,
            'grand_total': amount(self.grand_total),
            'applied_promotions': [
                {'promotion_id': p.promotion_id, 'discount': amount(p.discount)}
                for p in self.applied_promotions
            ],
            'applied_combos': [
                {'combo_id': c.combo_id, 'discount': amount(c.discount), 'instances': c.instances}
                for c in self.applied_combos
            ],
            'lines': [
                {
                    'product_id': line.product_id,
                    'sku': line.sku,
                    'quantity': line.quantity,
                    'unit_price': amount(line.unit_price),
                    'subtotal': amount(line.subtotal),
                    'promotion_discount': amount(line.promotion_discount),
                    'combo_discount': amount(line.combo_discount),
                    'discounted_amount': amount(line.discounted_amount),
                    'tax_rate': str(line.tax_rate),
                    'tax_amount': amount(line.tax_amount),
                    'promotion_ids': list(line.promotion_ids),
                }
                for line in self.lines
            ],
        }


@dataclass
class PricingResult:
    """
    A priced order plus the usage reservations it holds.

    The caller commits the reservations once the order is durably stored, or
    releases them if persistence fails.
    """
    order: PricedOrder
    reservations: List[Reservation] = field(default_factory=list)

    def discount_for(self, promotion_id: str) -> Money:
        for applied in self.order.applied_promotions:
            if applied.promotion_id == promotion_id:
                return applied.discount
        if self.order.free_shipping_promotion_id == promotion_id and self.order.shipping_discount is not None:
            return self.order.shipping_discount
        return Money.zero(self.order.currency)

    def commit(self, ledger, order_id: str) -> List[UsageRecord]:
        records = [
            ledger.commit(reservation, order_id, self.discount_for(reservation.promotion_id))
            for reservation in self.reservations
        ]
        self.reservations = []
        return records

    def release(self, ledger) -> None:
        for reservation in self.reservations:
            ledger.release(reservation)
        self.reservations = []
