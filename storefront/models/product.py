"""Product model."""
from sqlalchemy import Column, String, Boolean, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid


class Product(Base):
    """Sellable product. Price and tax rate are read into a LineItem snapshot at cart time."""
    
    __tablename__ = 'product'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    sku = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category_id = Column(String(36), ForeignKey('category.id'), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    tax_rate = Column(Numeric(5, 4), nullable=True)  # NULL -> DEFAULT_TAX_RATE
    active = Column(Boolean, nullable=False, default=True)
    is_combo_eligible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    
    # Relationships
    category = relationship('Category', foreign_keys=[category_id])
    
    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', sku='{self.sku}')>"
