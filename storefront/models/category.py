"""Category model."""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid


class Category(Base):
    """Product Category."""
    
    __tablename__ = 'category'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    def __repr__(self):
        return f"<Category(id={self.id}, name='{self.name}')>"
