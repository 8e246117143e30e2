"""Pricing & promotion engine - pure computation, no storage access."""
from storefront.pricing.money import Money, CurrencyMismatchError
from storefront.pricing.domain import (
    AppliesTo, AppliedCombo, AppliedPromotion, Cart, Combo, ComboItem, ComboStatus,
    LineItem, PricedLine, PricedOrder, PricingResult, Promotion, PromotionStatus,
    PromotionType, Reservation, UsageRecord
)
from storefront.pricing.catalog import ComboCatalog, PromotionCatalog
from storefront.pricing.ledger import InMemoryUsageLedger, UsageLedger
from storefront.pricing.combos import ComboMatch, ComboResolver
from storefront.pricing.pricer import CartPricer, validate_cart

__all__ = [
    'Money', 'CurrencyMismatchError',
    'AppliesTo', 'AppliedCombo', 'AppliedPromotion', 'Cart', 'Combo', 'ComboItem', 'ComboStatus',
    'LineItem', 'PricedLine', 'PricedOrder', 'PricingResult', 'Promotion', 'PromotionStatus',
    'PromotionType', 'Reservation', 'UsageRecord',
    'ComboCatalog', 'PromotionCatalog',
    'InMemoryUsageLedger', 'UsageLedger',
    'ComboMatch', 'ComboResolver',
    'CartPricer', 'validate_cart',
]
