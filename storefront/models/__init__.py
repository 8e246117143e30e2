"""Models package - exports all SQLAlchemy models."""
# Catalog
from storefront.models.category import Category
from storefront.models.product import Product

# Promotions & combos
from storefront.models.promotion import Promotion, PromotionProduct, PromotionCategory
from storefront.models.combo import Combo, ComboItem
from storefront.models.promotion_usage import (
    PromotionUsageCounter, PromotionReservation, PromotionUsage, ReservationStatus, GLOBAL_SCOPE
)

# Orders
from storefront.models.order import Order, OrderLine, OrderStatus

__all__ = [
    # Catalog
    'Category', 'Product',
    # Promotions & combos
    'Promotion', 'PromotionProduct', 'PromotionCategory', 'Combo', 'ComboItem',
    'PromotionUsageCounter', 'PromotionReservation', 'PromotionUsage', 'ReservationStatus', 'GLOBAL_SCOPE',
    # Orders
    'Order', 'OrderLine', 'OrderStatus',
]
