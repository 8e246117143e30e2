"""Combo (bundle) models."""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid


class Combo(Base):
    """Bundle sold at `combo_price` instead of the sum of its items."""
    
    __tablename__ = 'combo'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default='active', index=True)
    original_price = Column(Numeric(10, 2), nullable=False)
    combo_price = Column(Numeric(10, 2), nullable=False)
    minimum_quantity = Column(Integer, nullable=False, default=1)
    maximum_quantity = Column(Integer, nullable=False, default=10)
    requires_all_items = Column(Boolean, nullable=False, default=True)
    starts_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    # Relationships
    items = relationship('ComboItem', back_populates='combo', cascade='all, delete-orphan',
                         order_by='ComboItem.sort_order')
    
    @hybrid_property
    def savings_amount(self):
        """Derived, never stored: original_price - combo_price."""
        return (self.original_price or 0) - (self.combo_price or 0)
    
    @savings_amount.expression
    def savings_amount(cls):
        return cls.original_price - cls.combo_price
    
    def __repr__(self):
        return f"<Combo(id={self.id}, name='{self.name}', combo_price={self.combo_price})>"


class ComboItem(Base):
    __tablename__ = 'combo_item'
    __table_args__ = (UniqueConstraint('combo_id', 'product_id', name='uq_combo_item'),)
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    combo_id = Column(String(36), ForeignKey('combo.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey('product.id', ondelete='CASCADE'), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    is_required = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    
    combo = relationship('Combo', back_populates='items')
    product = relationship('Product')
