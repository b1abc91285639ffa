"""Policy state store abstractions."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol

from .ledger import LedgerSnapshot, OrderFrequencyTracker, ReservationResult, SpendLedger


class PolicyStore(Protocol):
    def snapshot(self, identity: str, now: Optional[float] = None) -> LedgerSnapshot: ...

    def reserve(
        self, identity: str, order_id: str, amount, ceiling, now: Optional[float] = None
    ) -> ReservationResult: ...

    def commit(self, identity: str, amount, order_id: str, now: Optional[float] = None) -> Decimal: ...

    def release(self, identity: str, order_id: str) -> bool: ...

    def record(self, identity: str, now: Optional[float] = None) -> int: ...

    def count(self, identity: str, now: Optional[float] = None) -> int: ...


class InMemoryPolicyStore:
    """Process-local store backed by a ``SpendLedger`` and an ``OrderFrequencyTracker``.

    State is lost on restart. Identities are keyed case-insensitively.
    """

    def __init__(
        self,
        ledger: Optional[SpendLedger] = None,
        tracker: Optional[OrderFrequencyTracker] = None,
        spend_window_seconds: float = 86400.0,
        rate_window_seconds: float = 3600.0,
    ):
        self.ledger = ledger or SpendLedger(window_seconds=spend_window_seconds)
        self.tracker = tracker or OrderFrequencyTracker(window_seconds=rate_window_seconds)

    @classmethod
    def from_config(cls, config) -> "InMemoryPolicyStore":
        return cls(
            spend_window_seconds=config.spend_window_seconds,
            rate_window_seconds=config.rate_window_seconds,
        )

    def snapshot(self, identity: str, now: Optional[float] = None) -> LedgerSnapshot:
        return self.ledger.snapshot(identity.lower(), now)

    def reserve(self, identity: str, order_id: str, amount, ceiling, now: Optional[float] = None) -> ReservationResult:
        return self.ledger.reserve(identity.lower(), order_id, amount, ceiling, now)

    def commit(self, identity: str, amount, order_id: str, now: Optional[float] = None) -> Decimal:
        return self.ledger.commit(identity.lower(), amount, order_id, now)

    def release(self, identity: str, order_id: str) -> bool:
        return self.ledger.release(identity.lower(), order_id)

    def record(self, identity: str, now: Optional[float] = None) -> int:
        return self.tracker.record(identity.lower(), now)

    def count(self, identity: str, now: Optional[float] = None) -> int:
        return self.tracker.count(identity.lower(), now)
