"""Order model - persisted result of a priced checkout."""
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid
import enum


class OrderStatus(str, enum.Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'


class Order(Base):
    """Order (pedido confirmado)."""
    
    __tablename__ = 'orders'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    customer_id = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.CONFIRMED.value)
    currency = Column(String(3), nullable=False)
    
    subtotal = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    promotion_discount = Column(Numeric(10, 2), nullable=False, default=0)
    combo_discount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    
    applied_promotions = Column(JSON, nullable=False, default=list)
    applied_combos = Column(JSON, nullable=False, default=list)
    
    # Idempotency key to prevent duplicate orders on double-submit
    idempotency_key = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    # Relationships
    lines = relationship('OrderLine', back_populates='order', cascade='all, delete-orphan')
    
    def __repr__(self):
        return f"<Order(id={self.id}, total={self.total_amount}, status={self.status})>"


class OrderLine(Base):
    """Order line with a snapshot of price, discounts and tax."""
    
    __tablename__ = 'order_line'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey('product.id'), nullable=False)
    sku = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    promotion_discount = Column(Numeric(10, 2), nullable=False, default=0)
    combo_discount = Column(Numeric(10, 2), nullable=False, default=0)
    total_price = Column(Numeric(10, 2), nullable=False)
    tax_rate = Column(Numeric(5, 4), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    
    order = relationship('Order', back_populates='lines')
    
    def __repr__(self):
        return f"<OrderLine(id={self.id}, product_id={self.product_id}, qty={self.quantity})>"
