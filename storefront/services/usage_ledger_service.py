"""
SQL-backed usage ledger.

Every reservation is a single conditional UPDATE on the counter row:

    UPDATE promotion_usage_counter
       SET reserved_count = reserved_count + 1
     WHERE promotion_id = :p AND customer_id = :scope
       AND used_count + reserved_count < :limit

so two checkouts racing for the last use can never both succeed. Counter rows
are created lazily with INSERT ... ON CONFLICT DO NOTHING.
"""
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from storefront.database import new_uuid
from storefront.exceptions import ReservationExpiredError
from storefront.models import (
    GLOBAL_SCOPE, Promotion as PromotionModel, PromotionReservation, PromotionUsage,
    PromotionUsageCounter, ReservationStatus
)
from storefront.pricing import Promotion, Reservation, UsageLedger, UsageRecord
from storefront.pricing.ledger import DEFAULT_RESERVATION_TTL, remaining, utcnow

logger = logging.getLogger(__name__)


class SqlUsageLedger(UsageLedger):
    """
    Usage ledger stored in promotion_usage_counter / promotion_reservation / promotion_usage.
    
    With autocommit=True (pricing) every reservation is committed at once so
    concurrent checkouts see it. With autocommit=False (order placement) the
    caller commits the order and the usage records in one transaction.
    """
    
    def __init__(self, session, reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
                 clock: Callable = utcnow, autocommit: bool = True):
        self.session = session
        self.reservation_ttl = reservation_ttl
        self.clock = clock
        self.autocommit = autocommit
    
    # =====================================================
    # HELPERS
    # =====================================================
    
    def _finish(self):
        if self.autocommit:
            self.session.commit()
        else:
            self.session.flush()
    
    def _limited_scopes(self, promotion: Promotion, customer_id: Optional[str]):
        scopes = []
        if promotion.usage_limit_per_customer is not None:
            scopes.append((customer_id, promotion.usage_limit_per_customer))
        if promotion.usage_limit_global is not None:
            scopes.append((GLOBAL_SCOPE, promotion.usage_limit_global))
        return scopes
    
    def _ensure_counter(self, promotion_id: str, scope: str) -> None:
        """Create the counter row if missing without racing other workers."""
        values = {'id': new_uuid(), 'promotion_id': promotion_id, 'customer_id': scope,
                  'used_count': 0, 'reserved_count': 0}
        dialect = self.session.get_bind().dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        else:
            insert = None
        
        if insert is not None:
            stmt = insert(PromotionUsageCounter).values(**values).on_conflict_do_nothing(
                index_elements=['promotion_id', 'customer_id']
            )
            self.session.execute(stmt)
            return
        
        exists = self.session.execute(
            select(PromotionUsageCounter.id).where(
                PromotionUsageCounter.promotion_id == promotion_id,
                PromotionUsageCounter.customer_id == scope,
            )
        ).first()
        if exists:
            return
        try:
            with self.session.begin_nested():
                self.session.add(PromotionUsageCounter(**values))
        except IntegrityError:
            pass  # Created concurrently
    
    def _shift(self, promotion_id: str, scope: str, reserved: int, used: int) -> int:
        result = self.session.execute(
            update(PromotionUsageCounter).execution_options(synchronize_session=False)
            .where(
                PromotionUsageCounter.promotion_id == promotion_id,
                PromotionUsageCounter.customer_id == scope,
            )
            .values(
                reserved_count=PromotionUsageCounter.reserved_count + reserved,
                used_count=PromotionUsageCounter.used_count + used,
            )
        )
        return result.rowcount
    
    def _claim(self, promotion_id: str, scope: str, limit: int, reserved: int = 0, used: int = 0) -> bool:
        """Shift the counter only while used + reserved stays under limit."""
        result = self.session.execute(
            update(PromotionUsageCounter).execution_options(synchronize_session=False)
            .where(
                PromotionUsageCounter.promotion_id == promotion_id,
                PromotionUsageCounter.customer_id == scope,
                PromotionUsageCounter.used_count + PromotionUsageCounter.reserved_count < limit,
            )
            .values(
                reserved_count=PromotionUsageCounter.reserved_count + reserved,
                used_count=PromotionUsageCounter.used_count + used,
            )
        )
        return result.rowcount == 1
    
    def _resolve(self, reservation_id: str, status: ReservationStatus, order_id: Optional[str] = None,
                 from_status: ReservationStatus = ReservationStatus.PENDING) -> bool:
        """from_status -> status, exactly once even with concurrent resolvers."""
        values = {'status': status.value, 'resolved_at': self.clock()}
        if order_id is not None:
            values['order_id'] = order_id
        result = self.session.execute(
            update(PromotionReservation).execution_options(synchronize_session=False)
            .where(
                PromotionReservation.id == reservation_id,
                PromotionReservation.status == from_status.value,
            )
            .values(**values)
        )
        return result.rowcount == 1
    
    def _scopes_of(self, reservation_id: str) -> List[str]:
        row = self.session.get(PromotionReservation, reservation_id)
        return row.scope_list if row is not None else []
    
    # =====================================================
    # LEDGER OPERATIONS
    # =====================================================
    
    def remaining_uses(self, promotion, customer_id):
        result = None
        for scope, limit in self._limited_scopes(promotion, customer_id):
            if scope is None:
                return 0
            counter = self.session.execute(
                select(PromotionUsageCounter.used_count, PromotionUsageCounter.reserved_count).where(
                    PromotionUsageCounter.promotion_id == promotion.id,
                    PromotionUsageCounter.customer_id == scope,
                )
            ).first()
            used, reserved = (counter.used_count, counter.reserved_count) if counter else (0, 0)
            left = remaining(limit, used, reserved)
            result = left if result is None else min(result, left)
        return result
    
    def try_reserve(self, promotion, customer_id):
        scopes = self._limited_scopes(promotion, customer_id)
        if any(scope is None for scope, _ in scopes):
            logger.info(f"[LEDGER] Guest cart cannot reserve per-customer promotion {promotion.id}")
            return None
        
        try:
            claimed = []
            for scope, limit in scopes:
                self._ensure_counter(promotion.id, scope)
                if not self._claim(promotion.id, scope, limit, reserved=1):
                    # Give back the scopes already claimed in this attempt
                    for taken in claimed:
                        self._shift(promotion.id, taken, reserved=-1, used=0)
                    self._finish()
                    logger.info(f"[LEDGER] Promotion {promotion.id} limit reached for scope {scope}")
                    return None
                claimed.append(scope)
            
            expires_at = self.clock() + self.reservation_ttl
            row = PromotionReservation(
                id=new_uuid(),
                promotion_id=promotion.id,
                customer_id=customer_id,
                scopes=','.join(claimed),
                status=ReservationStatus.PENDING.value,
                expires_at=expires_at,
            )
            self.session.add(row)
            reservation_id = row.id
            self._finish()
            logger.debug(f"[LEDGER] Reserved {promotion.id} for {customer_id} ({reservation_id})")
            return Reservation(
                id=reservation_id,
                promotion_id=promotion.id,
                customer_id=customer_id,
                expires_at=expires_at,
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LEDGER] Reservation failed for promotion {promotion.id}: {e}")
            raise e
    
    def _reclaim(self, reservation, order_id) -> None:
        """Count a released or expired reservation only while its use is still free."""
        status = self.session.execute(
            select(PromotionReservation.status).where(PromotionReservation.id == reservation.id)
        ).scalar()
        if status not in (ReservationStatus.RELEASED.value, ReservationStatus.EXPIRED.value):
            # Unknown or already committed
            raise ReservationExpiredError(reservation.id, reservation.promotion_id)
        
        limits = self.session.execute(
            select(PromotionModel.usage_limit, PromotionModel.usage_limit_per_customer)
            .where(PromotionModel.id == reservation.promotion_id)
        ).first()
        global_limit, customer_limit = limits if limits else (None, None)
        
        claimed = []
        for scope in self._scopes_of(reservation.id):
            limit = global_limit if scope == GLOBAL_SCOPE else customer_limit
            if limit is None:
                self._shift(reservation.promotion_id, scope, reserved=0, used=1)
            elif not self._claim(reservation.promotion_id, scope, limit, used=1):
                break
            claimed.append(scope)
        else:
            if self._resolve(reservation.id, ReservationStatus.COMMITTED, order_id,
                             from_status=ReservationStatus(status)):
                logger.warning(f"[LEDGER] Committed lapsed reservation {reservation.id}; its use was still free")
                return
        
        for scope in claimed:
            self._shift(reservation.promotion_id, scope, reserved=0, used=-1)
        self._finish()
        logger.warning(f"[LEDGER] Lapsed reservation {reservation.id} lost its use to another order")
        raise ReservationExpiredError(reservation.id, reservation.promotion_id)
    
    def commit(self, reservation, order_id, discount):
        try:
            scopes = self._scopes_of(reservation.id)
            if self._resolve(reservation.id, ReservationStatus.COMMITTED, order_id):
                for scope in scopes:
                    self._shift(reservation.promotion_id, scope, reserved=-1, used=1)
            else:
                self._reclaim(reservation, order_id)
            
            used_at = self.clock()
            self.session.add(PromotionUsage(
                customer_id=reservation.customer_id,
                promotion_id=reservation.promotion_id,
                order_id=order_id,
                discount_applied=discount.to_decimal(),
                currency=discount.currency,
                used_at=used_at,
            ))
            self._finish()
            return UsageRecord(
                customer_id=reservation.customer_id,
                promotion_id=reservation.promotion_id,
                order_id=order_id,
                discount_applied=discount,
                used_at=used_at,
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LEDGER] Commit failed for reservation {reservation.id}: {e}")
            raise e
    
    def _release_as(self, reservation_id: str, promotion_id: str, status: ReservationStatus) -> bool:
        if not self._resolve(reservation_id, status):
            return False
        for scope in self._scopes_of(reservation_id):
            self._shift(promotion_id, scope, reserved=-1, used=0)
        return True
    
    def release(self, reservation):
        try:
            if self._release_as(reservation.id, reservation.promotion_id, ReservationStatus.RELEASED):
                logger.debug(f"[LEDGER] Released reservation {reservation.id}")
            self._finish()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LEDGER] Release failed for reservation {reservation.id}: {e}")
            raise e
    
    def expire_stale_reservations(self, now=None):
        now = now or self.clock()
        try:
            stale = self.session.execute(
                select(PromotionReservation.id, PromotionReservation.promotion_id).where(
                    PromotionReservation.status == ReservationStatus.PENDING.value,
                    PromotionReservation.expires_at <= now,
                )
            ).all()
            expired = 0
            for reservation_id, promotion_id in stale:
                if self._release_as(reservation_id, promotion_id, ReservationStatus.EXPIRED):
                    expired += 1
            self._finish()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LEDGER] Expiring reservations failed: {e}")
            raise e
        if expired:
            logger.info(f"[LEDGER] Expired {expired} stale reservations")
        return expired
