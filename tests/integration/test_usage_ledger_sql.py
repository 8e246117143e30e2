"""
Integration tests for the SQL usage ledger against a real schema.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storefront.exceptions import ReservationExpiredError
from storefront.models import PromotionReservation, PromotionUsage, PromotionUsageCounter, ReservationStatus
from storefront.pricing import Money, Promotion, PromotionType
from storefront.services.usage_ledger_service import SqlUsageLedger

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=NOW):
        self.now = now
    
    def __call__(self):
        return self.now


@pytest.fixture
def limited(make_promotion):
    """Domain snapshot of a stored promotion limited to 1 use per customer and 2 overall."""
    def _make(per_customer=1, global_limit=2):
        row = make_promotion(usage_limit=global_limit, usage_limit_per_customer=per_customer)
        return Promotion(
            id=row.id,
            type=PromotionType.PERCENTAGE,
            discount_value=Decimal('10'),
            starts_at=NOW - timedelta(days=1),
            usage_limit_per_customer=per_customer,
            usage_limit_global=global_limit,
        )
    return _make


def counter(session, promotion_id, scope):
    return session.query(PromotionUsageCounter).filter_by(promotion_id=promotion_id, customer_id=scope).one()


class TestSqlReservations:
    
    def test_reserve_until_limits_reached(self, session, limited):
        promotion = limited()
        ledger = SqlUsageLedger(session, clock=Clock())
        
        assert ledger.try_reserve(promotion, 'c1') is not None
        assert ledger.try_reserve(promotion, 'c1') is None  # per-customer
        assert ledger.try_reserve(promotion, 'c2') is not None
        assert ledger.try_reserve(promotion, 'c3') is None  # global
        assert ledger.remaining_uses(promotion, 'c3') == 0
    
    def test_failed_global_claim_gives_back_customer_claim(self, session, limited):
        promotion = limited(per_customer=1, global_limit=1)
        ledger = SqlUsageLedger(session, clock=Clock())
        ledger.try_reserve(promotion, 'c1')
        
        assert ledger.try_reserve(promotion, 'c2') is None
        assert counter(session, promotion.id, 'c2').reserved_count == 0
        assert counter(session, promotion.id, '*').reserved_count == 1
    
    def test_unlimited_promotion_always_reserves(self, session, limited):
        promotion = limited(per_customer=None, global_limit=None)
        ledger = SqlUsageLedger(session, clock=Clock())
        
        assert ledger.remaining_uses(promotion, 'c1') is None
        assert ledger.try_reserve(promotion, None) is not None
        assert session.query(PromotionUsageCounter).count() == 0
    
    def test_guest_cannot_reserve_per_customer_limit(self, session, limited):
        ledger = SqlUsageLedger(session, clock=Clock())
        assert ledger.try_reserve(limited(), None) is None


class TestSqlCommitRelease:
    
    def test_commit_records_usage(self, session, limited):
        promotion = limited()
        ledger = SqlUsageLedger(session, clock=Clock())
        reservation = ledger.try_reserve(promotion, 'c1')
        
        record = ledger.commit(reservation, 'order-1', Money(1250))
        
        assert record.discount_applied == Money(1250)
        usage = session.query(PromotionUsage).one()
        assert usage.order_id == 'order-1'
        assert usage.discount_applied == Decimal('12.50')
        row = session.query(PromotionReservation).filter_by(id=reservation.id).one()
        assert row.status == ReservationStatus.COMMITTED.value
        assert counter(session, promotion.id, 'c1').used_count == 1
        assert counter(session, promotion.id, 'c1').reserved_count == 0
        assert ledger.try_reserve(promotion, 'c1') is None
    
    def test_release_is_idempotent(self, session, limited):
        promotion = limited()
        ledger = SqlUsageLedger(session, clock=Clock())
        reservation = ledger.try_reserve(promotion, 'c1')
        
        ledger.release(reservation)
        ledger.release(reservation)
        
        assert counter(session, promotion.id, 'c1').reserved_count == 0
        assert counter(session, promotion.id, '*').reserved_count == 0
        assert ledger.remaining_uses(promotion, 'c1') == 1
    
    def test_expire_stale_reservations(self, session, limited):
        promotion = limited()
        clock = Clock()
        ledger = SqlUsageLedger(session, reservation_ttl=timedelta(minutes=15), clock=clock)
        reservation = ledger.try_reserve(promotion, 'c1')
        
        assert ledger.expire_stale_reservations() == 0
        clock.now = NOW + timedelta(minutes=20)
        assert ledger.expire_stale_reservations() == 1
        
        row = session.query(PromotionReservation).filter_by(id=reservation.id).one()
        assert row.status == ReservationStatus.EXPIRED.value
        assert ledger.remaining_uses(promotion, 'c1') == 1
    
    def test_late_commit_rejected_when_use_was_taken(self, session, limited):
        promotion = limited(per_customer=None, global_limit=1)
        clock = Clock()
        ledger = SqlUsageLedger(session, reservation_ttl=timedelta(minutes=15), clock=clock)
        late = ledger.try_reserve(promotion, 'a')
        clock.now = NOW + timedelta(minutes=20)
        ledger.expire_stale_reservations()
        
        winner = ledger.try_reserve(promotion, 'b')
        ledger.commit(winner, 'order-b', Money(100))
        
        with pytest.raises(ReservationExpiredError):
            ledger.commit(late, 'order-a', Money(100))
        
        assert counter(session, promotion.id, '*').used_count == 1
        assert counter(session, promotion.id, '*').reserved_count == 0
        assert [u.order_id for u in session.query(PromotionUsage).filter_by(promotion_id=promotion.id)] == ['order-b']
        row = session.query(PromotionReservation).filter_by(id=late.id).one()
        assert row.status == ReservationStatus.EXPIRED.value
    
    def test_late_commit_gives_back_partial_claim(self, session, limited):
        # Customer scope still free, global scope taken by another customer
        promotion = limited(per_customer=1, global_limit=1)
        clock = Clock()
        ledger = SqlUsageLedger(session, reservation_ttl=timedelta(minutes=15), clock=clock)
        late = ledger.try_reserve(promotion, 'a')
        clock.now = NOW + timedelta(minutes=20)
        ledger.expire_stale_reservations()
        ledger.commit(ledger.try_reserve(promotion, 'b'), 'order-b', Money(100))
        
        with pytest.raises(ReservationExpiredError):
            ledger.commit(late, 'order-a', Money(100))
        assert counter(session, promotion.id, 'a').used_count == 0
        assert counter(session, promotion.id, '*').used_count == 1
    
    def test_late_commit_counts_when_use_still_free(self, session, limited):
        promotion = limited()
        clock = Clock()
        ledger = SqlUsageLedger(session, reservation_ttl=timedelta(minutes=1), clock=clock)
        reservation = ledger.try_reserve(promotion, 'c1')
        clock.now = NOW + timedelta(minutes=5)
        ledger.expire_stale_reservations()
        
        ledger.commit(reservation, 'order-1', Money(100))
        assert counter(session, promotion.id, 'c1').used_count == 1
        assert counter(session, promotion.id, 'c1').reserved_count == 0
        row = session.query(PromotionReservation).filter_by(id=reservation.id).one()
        assert row.status == ReservationStatus.COMMITTED.value
        assert row.order_id == 'order-1'
    
    def test_commit_twice_is_rejected(self, session, limited):
        promotion = limited(per_customer=None, global_limit=5)
        ledger = SqlUsageLedger(session, clock=Clock())
        reservation = ledger.try_reserve(promotion, 'c1')
        ledger.commit(reservation, 'order-1', Money(100))
        
        with pytest.raises(ReservationExpiredError):
            ledger.commit(reservation, 'order-2', Money(100))
        assert counter(session, promotion.id, '*').used_count == 1

