"""
Order and pipeline data model.

A ``PipelineRun`` owns the status of one order as it moves through the
reception, approval and payment stages. Status changes are only possible
through ``advance()``, which consults ``TRANSITIONS``.
"""

from __future__ import annotations

import re
import secrets
import string
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .amounts import to_decimal
from .errors import IllegalTransitionError, PipelineIntegrityError, ValidationError


_IDENTITY_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class Intent(str, Enum):
    PURCHASE = "PURCHASE"
    URGENT_ORDER = "URGENT_ORDER"
    BULK_ORDER = "BULK_ORDER"
    CANCEL_ORDER = "CANCEL_ORDER"
    REPEAT_ORDER = "REPEAT_ORDER"
    CUSTOM_TIP = "CUSTOM_TIP"


class OrderStatus(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.REJECTED})

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.RECEIVED: frozenset({OrderStatus.VALIDATING}),
    OrderStatus.VALIDATING: frozenset({OrderStatus.PENDING_APPROVAL, OrderStatus.REJECTED}),
    OrderStatus.PENDING_APPROVAL: frozenset({OrderStatus.APPROVED, OrderStatus.REJECTED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
}


class StageRole(str, Enum):
    RECEPTION = "reception"
    APPROVAL = "approval"
    PAYMENT = "payment"


class StageOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        return self in (StageOutcome.PASS, StageOutcome.APPROVED, StageOutcome.SUCCESS)


def is_valid_identity(value: Any) -> bool:
    return isinstance(value, str) and bool(_IDENTITY_RE.match(value))


def normalize_identity(value: str) -> str:
    """Lower-case an EVM-style identity for use as a ledger key."""
    if not is_valid_identity(value):
        raise ValidationError(f"Invalid identity: {value!r}", field="identity")
    return value.lower()


def generate_order_id(now: Optional[float] = None) -> str:
    """Return ``ORD-<ms timestamp>-<6 upper-case alphanumerics>``."""
    ms = int((time.time() if now is None else now) * 1000)
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{ms}-{suffix}"


@dataclass(frozen=True)
class Order:
    """Immutable purchase order. ``order_id`` is assigned once at creation.

    ``price`` is None when the requested price was not a number; Reception
    rejects such orders.
    """

    order_id: str
    item: str
    price: Optional[Decimal]
    currency: str
    user_identity: str
    merchant_identity: str
    created_at: float
    quantity: int = 1

    @classmethod
    def create(
        cls,
        item: str,
        price,
        user_identity: str,
        merchant_identity: str,
        currency: str = "USDT",
        quantity: int = 1,
        now: Optional[float] = None,
    ) -> "Order":
        created_at = time.time() if now is None else now
        try:
            price_dec = to_decimal(price)
        except ValueError:
            price_dec = None
        return cls(
            order_id=generate_order_id(created_at),
            item=item,
            price=price_dec,
            currency=currency,
            user_identity=user_identity,
            merchant_identity=merchant_identity,
            created_at=created_at,
            quantity=quantity,
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "item": self.item,
            "price": str(self.price) if self.price is not None else None,
            "currency": self.currency,
            "quantity": self.quantity,
            "user_identity": self.user_identity,
            "merchant_identity": self.merchant_identity,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class StageRecord:
    """What one stage did to a run. Never modified after creation."""

    stage_name: str
    stage_role: StageRole
    timestamp: float
    duration_ms: float
    outcome: StageOutcome
    message: Optional[str] = None
    attestation_signature: Optional[str] = None
    settlement_ref: Optional[str] = None
    signer_address: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded

    def to_dict(self) -> dict:
        d = {
            "stage_name": self.stage_name,
            "stage_role": self.stage_role.value,
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value,
            "message": self.message,
            "attestation_signature": self.attestation_signature,
            "settlement_ref": self.settlement_ref,
            "signer_address": self.signer_address,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class PipelineRun:
    """Mutable state of one order's trip through the pipeline."""

    order: Order
    status: OrderStatus = OrderStatus.RECEIVED
    stages: dict[StageRole, StageRecord] = field(default_factory=dict)
    preceding_stage: Optional[StageRole] = None
    terminal_error: Optional[str] = None
    history: list[OrderStatus] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.status)

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def settlement_ref(self) -> Optional[str]:
        record = self.stages.get(StageRole.PAYMENT)
        return record.settlement_ref if record else None

    def advance(self, target: OrderStatus) -> None:
        if target not in TRANSITIONS[self.status]:
            raise IllegalTransitionError(self.status, target)
        self.status = target
        self.history.append(target)

    def abort_integrity(self, reason: str) -> None:
        """Force a non-terminal run to REJECTED after an out-of-order invocation."""
        if self.is_terminal:
            raise PipelineIntegrityError(
                f"Run {self.order_id} is already terminal ({self.status.value})"
            )
        self.status = OrderStatus.REJECTED
        self.history.append(OrderStatus.REJECTED)
        self.terminal_error = reason

    def attach_record(self, record: StageRecord) -> None:
        if record.stage_role in self.stages:
            raise PipelineIntegrityError(
                f"Run {self.order_id} already has a {record.stage_role.value} record"
            )
        self.stages[record.stage_role] = record

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order": self.order.to_dict(),
            "status": self.status.value,
            "stages": {role.value: rec.to_dict() for role, rec in self.stages.items()},
            "preceding_stage": self.preceding_stage.value if self.preceding_stage else None,
            "terminal_error": self.terminal_error,
            "history": [s.value for s in self.history],
        }


@dataclass
class OrderRequest:
    """Intake payload for ``PipelineOrchestrator.submit``."""

    intent: Intent
    item: str
    price: Any
    user_identity: str
    quantity: int = 1
    merchant_identity: Optional[str] = None
    currency: str = "USDT"
    metadata: Optional[dict[str, Any]] = None
    user_confirmed: bool = False


@dataclass
class OrderResponse:
    """Result of ``PipelineOrchestrator.submit``."""

    decision: Any
    pipeline_run: Optional[PipelineRun] = None
    settlement_ref: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return (
            self.pipeline_run is not None
            and self.pipeline_run.status == OrderStatus.COMPLETED
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "decision": self.decision.to_dict(),
            "pipeline_run": self.pipeline_run.to_dict() if self.pipeline_run else None,
            "settlement_ref": self.settlement_ref,
            "error_message": self.error_message,
        }
