"""
Rolling-window spend ledger and order frequency tracker.

Both are in-memory and keyed by identity. Identities map onto a fixed pool
of striped locks, so check-and-reserve is atomic per identity without one
global lock and without a lock object per identity ever seen. Idle
identities are dropped from the maps.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from .amounts import amount_to_micros, format_micros, limit_to_micros, micros_to_decimal
from .errors import LedgerError

logger = logging.getLogger(__name__)


class _LockStripes:
    """Fixed pool of locks; an identity always maps to the same one."""

    def __init__(self, size: int = 64):
        self._locks = tuple(threading.Lock() for _ in range(size))

    def __call__(self, identity: str) -> threading.Lock:
        return self._locks[hash(identity) % len(self._locks)]


@dataclass
class _LedgerEntry:
    window_started_at: float
    window_seconds: float
    committed_micros: int = 0
    reservations: dict[str, int] = field(default_factory=dict)
    committed_orders: set[str] = field(default_factory=set)

    @property
    def reserved_micros(self) -> int:
        return sum(self.reservations.values())


@dataclass(frozen=True)
class LedgerSnapshot:
    """Point-in-time view of an identity's window."""

    identity: str
    committed_micros: int
    reserved_micros: int
    window_started_at: float
    window_seconds: float

    @property
    def committed(self) -> Decimal:
        return micros_to_decimal(self.committed_micros)

    @property
    def reserved(self) -> Decimal:
        return micros_to_decimal(self.reserved_micros)

    @property
    def exposure(self) -> Decimal:
        """Committed plus pending spend."""
        return micros_to_decimal(self.committed_micros + self.reserved_micros)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "committed": str(self.committed),
            "reserved": str(self.reserved),
            "window_started_at": self.window_started_at,
            "window_seconds": self.window_seconds,
        }


@dataclass
class ReservationResult:
    """Result of a reserve attempt."""

    allowed: bool
    reason: str
    committed_micros: int = 0
    reserved_micros: int = 0
    duplicate: bool = False


class SpendLedger:
    """Per-identity accumulator over a rolling spend window.

    The window resets lazily on access once ``window_seconds`` have elapsed
    since it started. Reset clears committed spend only; reservations belong
    to in-flight runs and survive the reset.
    """

    def __init__(self, window_seconds: float = 86400.0):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.window_seconds = window_seconds
        self._entries: dict[str, _LedgerEntry] = {}
        self._lock_for = _LockStripes()

    def __len__(self) -> int:
        """Number of identities with committed or pending spend."""
        return len(self._entries)

    def _entry(self, identity: str, now: float, create: bool = True) -> Optional[_LedgerEntry]:
        # Caller must hold the identity lock.
        entry = self._entries.get(identity)
        if entry is not None and now - entry.window_started_at >= entry.window_seconds:
            logger.debug(
                "Spend window reset for %s (committed was %s)",
                identity,
                format_micros(entry.committed_micros),
            )
            if entry.reservations:
                entry.committed_micros = 0
                entry.committed_orders.clear()
                entry.window_started_at = now
            else:
                del self._entries[identity]
                entry = None
        if entry is None and create:
            entry = _LedgerEntry(window_started_at=now, window_seconds=self.window_seconds)
            self._entries[identity] = entry
        return entry

    def _drop_if_idle(self, identity: str, entry: _LedgerEntry) -> None:
        if entry.committed_micros == 0 and not entry.reservations:
            self._entries.pop(identity, None)

    def snapshot(self, identity: str, now: Optional[float] = None) -> LedgerSnapshot:
        now = time.time() if now is None else now
        with self._lock_for(identity):
            entry = self._entry(identity, now, create=False)
            if entry is None:
                return LedgerSnapshot(
                    identity=identity,
                    committed_micros=0,
                    reserved_micros=0,
                    window_started_at=now,
                    window_seconds=self.window_seconds,
                )
            return LedgerSnapshot(
                identity=identity,
                committed_micros=entry.committed_micros,
                reserved_micros=entry.reserved_micros,
                window_started_at=entry.window_started_at,
                window_seconds=entry.window_seconds,
            )

    def current_spend(self, identity: str, now: Optional[float] = None) -> Decimal:
        return self.snapshot(identity, now).committed

    def reserve(
        self,
        identity: str,
        order_id: str,
        amount,
        ceiling,
        now: Optional[float] = None,
    ) -> ReservationResult:
        """Atomically check the window ceiling and hold ``amount`` for ``order_id``."""
        now = time.time() if now is None else now
        amount_micros = amount_to_micros(amount)
        ceiling_micros = limit_to_micros(ceiling)
        if amount_micros <= 0:
            return ReservationResult(allowed=False, reason="Amount must be positive")

        with self._lock_for(identity):
            entry = self._entry(identity, now)
            if order_id in entry.reservations or order_id in entry.committed_orders:
                return ReservationResult(
                    allowed=False,
                    reason=f"Order {order_id} already holds a reservation",
                    committed_micros=entry.committed_micros,
                    reserved_micros=entry.reserved_micros,
                    duplicate=True,
                )
            projected = entry.committed_micros + entry.reserved_micros + amount_micros
            if projected > ceiling_micros:
                self._drop_if_idle(identity, entry)
                return ReservationResult(
                    allowed=False,
                    reason=(
                        f"Would exceed window limit: committed {format_micros(entry.committed_micros)}, "
                        f"pending {format_micros(entry.reserved_micros)}, "
                        f"requested {format_micros(amount_micros)}, "
                        f"limit {format_micros(ceiling_micros)}"
                    ),
                    committed_micros=entry.committed_micros,
                    reserved_micros=entry.reserved_micros,
                )
            entry.reservations[order_id] = amount_micros
            logger.debug("Reserved %s for %s (%s)", format_micros(amount_micros), identity, order_id)
            return ReservationResult(
                allowed=True,
                reason="OK",
                committed_micros=entry.committed_micros,
                reserved_micros=entry.reserved_micros,
            )

    def commit(self, identity: str, amount, order_id: str, now: Optional[float] = None) -> Decimal:
        """Add ``amount`` to committed spend, consuming the order's reservation.

        Returns the new committed total. Raises ``LedgerError`` if the order
        was already committed in this window.
        """
        now = time.time() if now is None else now
        amount_micros = amount_to_micros(amount)
        if amount_micros <= 0:
            raise LedgerError("Commit amount must be positive")
        with self._lock_for(identity):
            entry = self._entry(identity, now)
            if order_id in entry.committed_orders:
                raise LedgerError(f"Order {order_id} already committed")
            entry.reservations.pop(order_id, None)
            entry.committed_micros += amount_micros
            entry.committed_orders.add(order_id)
            logger.info(
                "Committed %s for %s (%s); window total %s",
                format_micros(amount_micros),
                identity,
                order_id,
                format_micros(entry.committed_micros),
            )
            return micros_to_decimal(entry.committed_micros)

    def release(self, identity: str, order_id: str) -> bool:
        """Drop a pending reservation. Returns False if none was held."""
        with self._lock_for(identity):
            entry = self._entries.get(identity)
            if entry is None:
                return False
            released = entry.reservations.pop(order_id, None)
            if released is None:
                return False
            self._drop_if_idle(identity, entry)
            logger.debug("Released %s for %s (%s)", format_micros(released), identity, order_id)
            return True


class OrderFrequencyTracker:
    """Counts order attempts per identity over a trailing window."""

    def __init__(self, window_seconds: float = 3600.0):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.window_seconds = window_seconds
        self._attempts: dict[str, list[float]] = {}
        self._lock_for = _LockStripes()

    def __len__(self) -> int:
        return len(self._attempts)

    def _pruned(self, identity: str, now: float) -> list[float]:
        cutoff = now - self.window_seconds
        kept = [t for t in self._attempts.get(identity, ()) if t > cutoff]
        if kept:
            self._attempts[identity] = kept
        else:
            self._attempts.pop(identity, None)
        return kept

    def record(self, identity: str, now: Optional[float] = None) -> int:
        """Register an attempt and return the count including it."""
        now = time.time() if now is None else now
        with self._lock_for(identity):
            attempts = self._pruned(identity, now)
            attempts.append(now)
            self._attempts[identity] = attempts
            return len(attempts)

    def count(self, identity: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock_for(identity):
            return len(self._pruned(identity, now))
