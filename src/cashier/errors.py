"""
Cashier error types.

Specific exceptions for each failure mode so callers can tell
"your order was not allowed" apart from "the service is unavailable".
"""

from __future__ import annotations

from typing import Optional


class CashierError(Exception):
    """Base error for all Cashier operations."""
    pass


class ValidationError(CashierError):
    """Malformed order or decision-context fields."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


# Policy errors
class PolicyViolation(CashierError):
    """Order breaks a limit, currency or balance rule."""
    pass


class SingleTransactionLimitError(PolicyViolation):
    """Amount exceeds the per-transaction ceiling."""
    def __init__(self, amount, limit):
        self.amount = amount
        self.limit = limit
        super().__init__(f"Amount {amount} exceeds single-transaction limit of {limit}")


class WindowLimitError(PolicyViolation):
    """Amount would push rolling-window spend over its ceiling."""
    def __init__(self, amount, committed, reserved, limit):
        self.amount = amount
        self.committed = committed
        self.reserved = reserved
        self.limit = limit
        super().__init__(
            f"Order would exceed rolling spend limit. Committed: {committed}, "
            f"Pending: {reserved}, Requested: {amount}, Limit: {limit}"
        )


class RateLimitExceeded(PolicyViolation):
    """Too many order attempts from one identity in the trailing window."""
    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Rate limit exceeded: {count}/{limit} orders in window")


# Pipeline errors
class PipelineIntegrityError(CashierError):
    """A stage received a run it must not process (out-of-order invocation)."""
    pass


class IllegalTransitionError(PipelineIntegrityError):
    """Attempted status change not present in the transition table."""
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition {current.value} -> {target.value}")


class ExecutionError(CashierError):
    """Settlement executor failed or reverted."""
    pass


class SigningError(CashierError):
    """Attestation signature could not be produced."""
    pass


class LedgerError(CashierError):
    """Ledger invariant would be broken (e.g. double commit)."""
    pass


class AuditIntegrityError(CashierError):
    """Audit log failed verification (edited, reordered or missing events)."""
    def __init__(self, detail: str, line: Optional[int] = None):
        self.detail = detail
        self.line = line
        where = f" at line {line}" if line is not None else ""
        super().__init__(f"Audit chain broken{where}: {detail}")


class SystemUnavailableError(CashierError):
    """Orchestrator not initialized or a collaborator is unavailable."""
    pass
