"""
Usage ledger: per-customer and global promotion usage with atomic reservations.

Pricing reserves a use with try_reserve; the checkout commits it after the
order is stored or releases it on failure. Pending reservations past their
window are expired by the ledger, never by the pricer.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from storefront.exceptions import ReservationExpiredError
from storefront.pricing.domain import Promotion, Reservation, UsageRecord
from storefront.pricing.money import Money

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = '*'
DEFAULT_RESERVATION_TTL = timedelta(minutes=15)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remaining(limit: Optional[int], used: int, reserved: int) -> Optional[int]:
    """Uses left under `limit`; None means unlimited."""
    if limit is None:
        return None
    return max(limit - used - reserved, 0)


class UsageLedger(ABC):
    """Contract shared by the in-memory and SQL ledgers."""

    @abstractmethod
    def remaining_uses(self, promotion: Promotion, customer_id: Optional[str]) -> Optional[int]:
        """Uses left for this customer, bounded by the global limit. None = unlimited."""

    @abstractmethod
    def try_reserve(self, promotion: Promotion, customer_id: Optional[str]) -> Optional[Reservation]:
        """Atomically check-and-increment; returns None when a limit is exhausted."""

    @abstractmethod
    def commit(self, reservation: Reservation, order_id: str, discount: Money) -> UsageRecord:
        """
        Convert a reservation into a permanent usage record.

        A released or expired reservation is counted only if its use is still
        free under every limit; otherwise ReservationExpiredError is raised.
        """

    @abstractmethod
    def release(self, reservation: Reservation) -> None:
        """Give a pending reservation back to the pool."""

    @abstractmethod
    def expire_stale_reservations(self, now: Optional[datetime] = None) -> int:
        """Release every pending reservation past its window; returns how many."""


@dataclass
class _Counter:
    used: int = 0
    reserved: int = 0


@dataclass
class _PendingReservation:
    reservation: Reservation
    # (scope, limit) pairs this reservation incremented
    scopes: Tuple[Tuple[str, int], ...]


class InMemoryUsageLedger(UsageLedger):
    """
    Thread-safe ledger kept in process memory.

    Suitable for tests and single-process deployments; one lock serialises
    every check-and-increment.
    """

    def __init__(self, reservation_ttl: timedelta = DEFAULT_RESERVATION_TTL,
                 clock: Callable[[], datetime] = utcnow):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], _Counter] = {}
        self._pending: Dict[str, _PendingReservation] = {}
        self._lapsed: Dict[str, _PendingReservation] = {}
        self._records: List[UsageRecord] = []
        self._ttl = reservation_ttl
        self._clock = clock

    @property
    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def _counter(self, promotion_id: str, scope: str) -> _Counter:
        key = (promotion_id, scope)
        if key not in self._counters:
            self._counters[key] = _Counter()
        return self._counters[key]

    def _limited_scopes(self, promotion: Promotion, customer_id: Optional[str]):
        scopes = []
        if promotion.usage_limit_per_customer is not None:
            scopes.append((customer_id, promotion.usage_limit_per_customer))
        if promotion.usage_limit_global is not None:
            scopes.append((GLOBAL_SCOPE, promotion.usage_limit_global))
        return scopes

    def remaining_uses(self, promotion, customer_id):
        with self._lock:
            result = None
            for scope, limit in self._limited_scopes(promotion, customer_id):
                if scope is None:
                    return 0
                counter = self._counter(promotion.id, scope)
                left = remaining(limit, counter.used, counter.reserved)
                result = left if result is None else min(result, left)
            return result

    def try_reserve(self, promotion, customer_id):
        with self._lock:
            scopes = self._limited_scopes(promotion, customer_id)
            for scope, limit in scopes:
                # Per-customer limits cannot be enforced for anonymous carts
                if scope is None:
                    logger.info(f"[LEDGER] Guest cart cannot reserve per-customer promotion {promotion.id}")
                    return None
                counter = self._counter(promotion.id, scope)
                if counter.used + counter.reserved >= limit:
                    return None
            for scope, _ in scopes:
                self._counter(promotion.id, scope).reserved += 1

            reservation = Reservation(
                id=str(uuid.uuid4()),
                promotion_id=promotion.id,
                customer_id=customer_id,
                expires_at=self._clock() + self._ttl,
            )
            self._pending[reservation.id] = _PendingReservation(
                reservation=reservation,
                scopes=tuple(scopes),
            )
            return reservation

    def _reclaim_locked(self, reservation: Reservation) -> None:
        """Count a released or expired reservation only while its use is still free."""
        lapsed = self._lapsed.pop(reservation.id, None)
        if lapsed is None:
            # Unknown or already committed
            raise ReservationExpiredError(reservation.id, reservation.promotion_id)
        counters = [(self._counter(reservation.promotion_id, scope), limit) for scope, limit in lapsed.scopes]
        if any(counter.used + counter.reserved >= limit for counter, limit in counters):
            logger.warning(f"[LEDGER] Lapsed reservation {reservation.id} lost its use to another order")
            raise ReservationExpiredError(reservation.id, reservation.promotion_id)
        for counter, _ in counters:
            counter.used += 1
        logger.warning(f"[LEDGER] Committed lapsed reservation {reservation.id}; its use was still free")

    def commit(self, reservation, order_id, discount):
        with self._lock:
            pending = self._pending.pop(reservation.id, None)
            if pending is None:
                self._reclaim_locked(reservation)
            else:
                for scope, _ in pending.scopes:
                    counter = self._counter(reservation.promotion_id, scope)
                    counter.reserved -= 1
                    counter.used += 1

            record = UsageRecord(
                customer_id=reservation.customer_id,
                promotion_id=reservation.promotion_id,
                order_id=order_id,
                discount_applied=discount,
                used_at=self._clock(),
            )
            self._records.append(record)
            return record

    def _release_locked(self, reservation_id: str) -> bool:
        pending = self._pending.pop(reservation_id, None)
        if pending is None:
            return False
        for scope, _ in pending.scopes:
            self._counter(pending.reservation.promotion_id, scope).reserved -= 1
        self._lapsed[reservation_id] = pending
        return True

    def release(self, reservation):
        with self._lock:
            self._release_locked(reservation.id)

    def expire_stale_reservations(self, now=None):
        now = now or self._clock()
        with self._lock:
            stale = [rid for rid, p in self._pending.items() if p.reservation.expires_at <= now]
            for rid in stale:
                self._release_locked(rid)
        if stale:
            logger.info(f"[LEDGER] Expired {len(stale)} stale reservations")
        return len(stale)
