"""
Cart pricing pipeline: Collecting -> Discounting -> Taxing -> Finalized.

A pricing pass reads the cart, the catalog snapshots and the usage ledger,
and returns a PricedOrder plus the reservations it took. The only side effect
is the ledger reservation; on any failure those reservations are released
and no partial result escapes.
"""
import logging
import warnings
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from storefront.exceptions import (
    InvalidCartError, InvalidPromoCodeError, NegativeTotalClampedWarning,
    PricingUnavailableError, StorefrontError, UsageLimitExceededError
)
from storefront.pricing.catalog import ComboCatalog, PromotionCatalog
from storefront.pricing.combos import ComboResolver
from storefront.pricing.domain import (
    AppliedCombo, AppliedPromotion, Cart, LineItem, PricedLine, PricedOrder,
    PricingResult, Promotion, PromotionType, Reservation, normalize_code
)
from storefront.pricing.ledger import UsageLedger, utcnow
from storefront.pricing.money import Money

logger = logging.getLogger(__name__)


def validate_cart(cart: Cart) -> None:
    """Reject malformed carts before any promotion logic runs."""
    if not cart.line_items:
        raise InvalidCartError('El carrito está vacío')
    for item in cart.line_items:
        if not item.product_id:
            raise InvalidCartError('Todos los productos deben tener identificador')
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise InvalidCartError(
                f'La cantidad de "{item.sku or item.product_id}" debe ser un entero mayor a 0',
                payload={'product_id': item.product_id}
            )
        if not isinstance(item.unit_price, Money) or item.unit_price.cents < 0:
            raise InvalidCartError(
                f'El precio de "{item.sku or item.product_id}" no puede ser negativo',
                payload={'product_id': item.product_id}
            )
        if item.unit_price.currency != cart.currency:
            raise InvalidCartError(f'El producto "{item.sku or item.product_id}" no está en {cart.currency}')
        if not isinstance(item.tax_rate, Decimal) or not (Decimal('0') <= item.tax_rate <= Decimal('1')):
            raise InvalidCartError(f'La tasa de impuesto de "{item.sku or item.product_id}" debe estar entre 0 y 1')
    if cart.shipping_amount is not None:
        if cart.shipping_amount.currency != cart.currency or cart.shipping_amount.cents < 0:
            raise InvalidCartError('El costo de envío es inválido')


def _warn_clamped(message: str) -> None:
    logger.warning(f"[PRICING] {message}")
    warnings.warn(message, NegativeTotalClampedWarning, stacklevel=3)


class _Pass:
    """Mutable working state for a single pricing pass."""

    def __init__(self, cart: Cart):
        zero = Money.zero(cart.currency)
        count = len(cart.line_items)
        self.subtotal = cart.subtotal()
        self.amounts: List[Money] = [item.line_subtotal for item in cart.line_items]
        self.promotion_discounts: List[Money] = [zero] * count
        self.combo_discounts: List[Money] = [zero] * count
        self.line_promotions: List[List[str]] = [[] for _ in range(count)]
        self.promotion_totals: Dict[str, Money] = {}
        self.attempts: Dict[str, Optional[Reservation]] = {}
        self.exhausted: Dict[str, Set[int]] = {}
        self.applied_combos: List[AppliedCombo] = []
        self.shipping_discount: Optional[Money] = None
        self.free_shipping_promotion_id: Optional[str] = None

    @property
    def reservations(self) -> List[Reservation]:
        return [r for r in self.attempts.values() if r is not None]


class CartPricer:
    """
    Prices carts against a promotion catalog, a combo catalog and a usage ledger.

    Holds no state between calls, so one instance may serve concurrent checkouts.
    """

    def __init__(self, catalog: Optional[PromotionCatalog], ledger: Optional[UsageLedger],
                 combos: Optional[ComboCatalog] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.catalog = catalog
        self.ledger = ledger
        self.combos = combos
        self.clock = clock

    def price(self, cart: Cart, as_of: Optional[datetime] = None) -> PricingResult:
        if self.catalog is None or self.ledger is None:
            raise PricingUnavailableError()

        # Collecting
        validate_cart(cart)
        as_of = as_of or self.clock()
        code_promotions = self._resolve_codes(cart, as_of)

        state = _Pass(cart)
        try:
            self._apply_promotions(cart, state, code_promotions, as_of)
            self._apply_free_shipping(cart, state, code_promotions, as_of)
            self._check_requested_codes(state, code_promotions)
            self._apply_combos(cart, state, as_of)
            order = self._finalize(cart, state)
        except Exception:
            for reservation in state.reservations:
                self.ledger.release(reservation)
            raise

        logger.info(
            f"[PRICING] Priced cart customer={cart.customer_id} subtotal={order.subtotal} "
            f"discount={order.discount_amount} tax={order.tax_amount} total={order.total_amount} "
            f"promotions={[p.promotion_id for p in order.applied_promotions]} "
            f"combos={[c.combo_id for c in order.applied_combos]}"
        )
        return PricingResult(order=order, reservations=state.reservations)

    # =====================================================
    # DISCOUNTING
    # =====================================================

    def _resolve_codes(self, cart: Cart, as_of: datetime) -> Dict[str, str]:
        """Map promotion id -> requested code; unknown codes are rejected up front."""
        resolved = {}
        for code in sorted({normalize_code(c) for c in cart.promo_codes if c and c.strip()}):
            promotion = self.catalog.find_by_code(code, as_of)
            if promotion is None:
                raise InvalidPromoCodeError(code)
            resolved[promotion.id] = code
        return resolved

    def _eligible(self, promotion: Promotion, state: _Pass, code_promotions: Dict[str, str]) -> bool:
        if promotion.requires_code and promotion.id not in code_promotions:
            return False
        # minOrderAmount is judged on the whole cart before any discount
        if promotion.min_order_amount is not None and state.subtotal < promotion.min_order_amount:
            return False
        return True

    def _reserve(self, promotion: Promotion, customer_id: Optional[str], state: _Pass) -> bool:
        if promotion.id in state.attempts:
            return state.attempts[promotion.id] is not None
        try:
            reservation = self.ledger.try_reserve(promotion, customer_id)
        except StorefrontError:
            raise
        except Exception as e:
            logger.error(f"[PRICING] Usage ledger failed reserving {promotion.id}: {e}")
            raise PricingUnavailableError() from e
        state.attempts[promotion.id] = reservation
        if reservation is None:
            logger.info(f"[PRICING] Promotion {promotion.id} exhausted for customer {customer_id}")
        return reservation is not None

    def _line_discount(self, promotion: Promotion, item: LineItem, current: Money) -> Money:
        if promotion.type == PromotionType.PERCENTAGE:
            return current.percentage_of(promotion.discount_value)
        if promotion.type == PromotionType.FIXED_AMOUNT:
            per_unit = Money.from_decimal(promotion.discount_value, current.currency)
            return per_unit.multiply_by_quantity(item.quantity)
        if promotion.type == PromotionType.BUY_X_GET_Y:
            group = promotion.buy_quantity + promotion.get_quantity
            discounted_units = (item.quantity // group) * promotion.get_quantity
            if discounted_units == 0:
                return Money.zero(current.currency)
            share = Decimal(promotion.discount_value) * discounted_units / item.quantity
            return current.percentage_of(share)
        return Money.zero(current.currency)

    def _apply_promotions(self, cart: Cart, state: _Pass, code_promotions: Dict[str, str], as_of: datetime):
        for index, item in enumerate(cart.line_items):
            for promotion in self.catalog.active_promotions_for(item, as_of):
                if promotion.type == PromotionType.FREE_SHIPPING:
                    continue
                if state.line_promotions[index] and not promotion.stackable:
                    continue
                if not self._eligible(promotion, state, code_promotions):
                    continue
                if item.quantity < promotion.min_quantity:
                    continue

                current = state.amounts[index]
                discount = self._line_discount(promotion, item, current)
                if discount > current:
                    _warn_clamped(
                        f"Promotion {promotion.id} discount {discount} exceeds line "
                        f"{item.sku or item.product_id} value {current}; clamped"
                    )
                    discount = current

                # maxDiscountAmount caps the promotion across the whole cart
                if promotion.max_discount_amount is not None:
                    used = state.promotion_totals.get(promotion.id, Money.zero(cart.currency))
                    room = promotion.max_discount_amount.subtract(used).clamp_non_negative()
                    discount = discount.min(room)

                if discount.is_zero:
                    continue
                if not self._reserve(promotion, cart.customer_id, state):
                    if promotion.id in code_promotions:
                        state.exhausted.setdefault(promotion.id, set()).add(index)
                    continue

                state.amounts[index] = current.subtract(discount)
                state.promotion_discounts[index] = state.promotion_discounts[index].add(discount)
                state.line_promotions[index].append(promotion.id)
                state.promotion_totals[promotion.id] = state.promotion_totals.get(
                    promotion.id, Money.zero(cart.currency)
                ).add(discount)
                logger.debug(f"[PRICING] {promotion.id} took {discount} off {item.sku or item.product_id}")

                if not promotion.stackable:
                    break

    def _apply_free_shipping(self, cart: Cart, state: _Pass, code_promotions: Dict[str, str], as_of: datetime):
        shipping = cart.shipping_amount
        if shipping is None or shipping.is_zero:
            return
        for promotion in self.catalog.active_promotions(as_of):
            if promotion.type != PromotionType.FREE_SHIPPING:
                continue
            if not self._eligible(promotion, state, code_promotions):
                continue
            lines = [
                i for i, item in enumerate(cart.line_items)
                if promotion.matches(item) and item.quantity >= promotion.min_quantity
            ]
            if not lines:
                continue
            if self._reserve(promotion, cart.customer_id, state):
                state.shipping_discount = shipping
                state.free_shipping_promotion_id = promotion.id
                return
            if promotion.id in code_promotions:
                state.exhausted.setdefault(promotion.id, set()).update(lines)

    def _check_requested_codes(self, state: _Pass, code_promotions: Dict[str, str]):
        for promotion_id, lines in sorted(state.exhausted.items()):
            promotion = self.catalog.get(promotion_id)
            if promotion.type == PromotionType.FREE_SHIPPING:
                covered = state.free_shipping_promotion_id is not None
            else:
                covered = all(state.line_promotions[i] for i in lines)
            if not covered:
                raise UsageLimitExceededError(code_promotions[promotion_id], promotion_id)

    def _apply_combos(self, cart: Cart, state: _Pass, as_of: datetime):
        if self.combos is None:
            return
        for match in ComboResolver(self.combos).resolve(cart.line_items, as_of):
            applied = Money.zero(cart.currency)
            for index, share in sorted(match.allocations.items()):
                current = state.amounts[index]
                if share > current:
                    _warn_clamped(
                        f"Combo {match.combo.id} share {share} exceeds discounted line value {current}; clamped"
                    )
                    share = current
                state.amounts[index] = current.subtract(share)
                state.combo_discounts[index] = state.combo_discounts[index].add(share)
                applied = applied.add(share)
            if not applied.is_zero:
                state.applied_combos.append(
                    AppliedCombo(combo_id=match.combo.id, discount=applied, instances=match.instances)
                )

    # =====================================================
    # TAXING + FINALIZED
    # =====================================================

    def _finalize(self, cart: Cart, state: _Pass) -> PricedOrder:
        zero = Money.zero(cart.currency)
        lines = []
        tax_total = zero
        for index, item in enumerate(cart.line_items):
            # Tax per line on the discounted amount; carts mix tax rates
            tax = state.amounts[index].percentage_of(item.tax_rate * 100)
            tax_total = tax_total.add(tax)
            lines.append(PricedLine(
                product_id=item.product_id,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.line_subtotal,
                promotion_discount=state.promotion_discounts[index],
                combo_discount=state.combo_discounts[index],
                discounted_amount=state.amounts[index],
                tax_rate=item.tax_rate,
                tax_amount=tax,
                promotion_ids=tuple(state.line_promotions[index]),
            ))

        discount = zero
        for amount in state.promotion_discounts + state.combo_discounts:
            discount = discount.add(amount)

        total = state.subtotal.subtract(discount).add(tax_total)
        if total.cents < 0:
            _warn_clamped(f"Order total {total} is negative; discount clamped to zero the total")
            discount = state.subtotal.add(tax_total)
            total = zero

        priority_order = {p.id: position for position, p in enumerate(self.catalog)}
        applied = tuple(
            AppliedPromotion(promotion_id=pid, discount=amount)
            for pid, amount in sorted(state.promotion_totals.items(), key=lambda kv: priority_order[kv[0]])
            if not amount.is_zero
        )

        shipping_amount = cart.shipping_amount
        if shipping_amount is not None and state.shipping_discount is not None:
            shipping_amount = shipping_amount.subtract(state.shipping_discount)

        return PricedOrder(
            subtotal=state.subtotal,
            discount_amount=discount,
            tax_amount=tax_total,
            total_amount=total,
            applied_promotions=applied,
            applied_combos=tuple(state.applied_combos),
            lines=tuple(lines),
            shipping_amount=shipping_amount,
            shipping_discount=state.shipping_discount,
            free_shipping_promotion_id=state.free_shipping_promotion_id,
        )
