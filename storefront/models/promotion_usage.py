"""Promotion usage accounting: counters, reservations and committed usage records."""
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from storefront.database import Base, new_uuid
from storefront.pricing.ledger import GLOBAL_SCOPE
import enum


class ReservationStatus(str, enum.Enum):
    """Reservation lifecycle."""
    PENDING = 'PENDING'
    COMMITTED = 'COMMITTED'
    RELEASED = 'RELEASED'
    EXPIRED = 'EXPIRED'


class PromotionUsageCounter(Base):
    """
    Usage counter for one promotion scope.
    
    `customer_id` is a customer id for per-customer limits or '*' for the
    global limit. Reservations are claimed with a single conditional UPDATE on
    this row, never with a read-then-write.
    """
    
    __tablename__ = 'promotion_usage_counter'
    __table_args__ = (
        UniqueConstraint('promotion_id', 'customer_id', name='uq_usage_counter_scope'),
        CheckConstraint('used_count >= 0 AND reserved_count >= 0', name='ck_usage_counter_non_negative'),
    )
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    promotion_id = Column(String(36), ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False)
    used_count = Column(Integer, nullable=False, default=0, server_default='0')
    reserved_count = Column(Integer, nullable=False, default=0, server_default='0')
    
    def __repr__(self):
        return (f"<PromotionUsageCounter(promotion_id={self.promotion_id}, customer_id={self.customer_id}, "
                f"used={self.used_count}, reserved={self.reserved_count})>")


class PromotionReservation(Base):
    """Provisional claim on a promotion use, taken during pricing."""
    
    __tablename__ = 'promotion_reservation'
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    promotion_id = Column(String(36), ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    customer_id = Column(String(64), nullable=True)
    # Comma separated counter scopes this reservation incremented
    scopes = Column(String(200), nullable=False, default='')
    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value, index=True)
    order_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    
    @property
    def scope_list(self):
        return [s for s in (self.scopes or '').split(',') if s]
    
    def __repr__(self):
        return f"<PromotionReservation(id={self.id}, promotion_id={self.promotion_id}, status={self.status})>"


class PromotionUsage(Base):
    """Append-only usage record: one row per (customer, promotion, order)."""
    
    __tablename__ = 'promotion_usage'
    __table_args__ = (
        UniqueConstraint('customer_id', 'promotion_id', 'order_id', name='uq_promotion_usage_order'),
    )
    
    id = Column(String(36), primary_key=True, default=new_uuid)
    customer_id = Column(String(64), nullable=True, index=True)
    promotion_id = Column(String(36), ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False, index=True)
    order_id = Column(String(36), nullable=False, index=True)
    discount_applied = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    
    def __repr__(self):
        return f"<PromotionUsage(promotion_id={self.promotion_id}, order_id={self.order_id}, discount={self.discount_applied})>"
