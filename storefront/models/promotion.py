"""Promotion model and its product / category scopes."""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid


class Promotion(Base):
    """
    Promotion definition, managed by admins outside the pricing engine.
    
    `type` is one of percentage / fixed_amount / buy_x_get_y / free_shipping and
    `applies_to` one of all / specific_products / specific_categories.
    """
    
    __tablename__ = 'promotion'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='active', index=True)
    priority = Column(Integer, nullable=False, default=0)
    discount_value = Column(Numeric(10, 2), nullable=True)
    
    minimum_quantity = Column(Integer, nullable=False, default=1)
    buy_quantity = Column(Integer, nullable=True)
    get_quantity = Column(Integer, nullable=True)
    minimum_order_amount = Column(Numeric(10, 2), nullable=True)
    maximum_discount_amount = Column(Numeric(10, 2), nullable=True)
    
    usage_limit = Column(Integer, nullable=True)  # Global
    usage_limit_per_customer = Column(Integer, nullable=True)
    
    requires_code = Column(Boolean, nullable=False, default=False)
    code = Column(String(50), unique=True, nullable=True, index=True)
    stackable = Column(Boolean, nullable=False, default=False)
    applies_to = Column(String(30), nullable=False, default='all')
    
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    
    # Relationships
    products = relationship('PromotionProduct', back_populates='promotion', cascade='all, delete-orphan')
    categories = relationship('PromotionCategory', back_populates='promotion', cascade='all, delete-orphan')
    
    def __repr__(self):
        return f"<Promotion(id={self.id}, name='{self.name}', type={self.type}, priority={self.priority})>"


class PromotionProduct(Base):
    __tablename__ = 'promotion_product'
    __table_args__ = (UniqueConstraint('promotion_id', 'product_id', name='uq_promotion_product'),)
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    promotion_id = Column(String(36), ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey('product.id', ondelete='CASCADE'), nullable=False, index=True)
    
    promotion = relationship('Promotion', back_populates='products')


class PromotionCategory(Base):
    __tablename__ = 'promotion_category'
    __table_args__ = (UniqueConstraint('promotion_id', 'category_id', name='uq_promotion_category'),)
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    promotion_id = Column(String(36), ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    category_id = Column(String(36), ForeignKey('category.id', ondelete='CASCADE'), nullable=False, index=True)
    
    promotion = relationship('Promotion', back_populates='categories')
