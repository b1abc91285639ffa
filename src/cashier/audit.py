"""
Audit trail for pipeline activity.

Events are appended to a JSONL file. Each event carries a global sequence
number and links, by HMAC, to the previous event of the same order, so an
order's trail can be verified on its own and a dropped line anywhere in
the file shows up as a sequence gap. Events without an order id (decision
records) share the system stream.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .amounts import to_decimal
from .errors import AuditIntegrityError
from .storage import append_jsonl, ensure_private_dir, ensure_private_file, iter_jsonl, load_secret

DEFAULT_AUDIT_PATH = Path.home() / ".cashier" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".cashier-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "CASHIER_AUDIT_HMAC_KEY"
SYSTEM_STREAM = "-"

_HASH_FIELDS = frozenset({"prev_hash", "event_hash"})


class EventType(str, Enum):
    ORDER_RECEIVED = "order_received"
    DECISION_MADE = "decision_made"
    STAGE_COMPLETED = "stage_completed"
    STAGE_REJECTED = "stage_rejected"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SPEND_COMMITTED = "spend_committed"
    SPEND_RELEASED = "spend_released"
    INTEGRITY_VIOLATION = "integrity_violation"


@dataclass(frozen=True)
class AuditEvent:
    """One verified audit entry."""

    seq: int
    event_type: EventType
    timestamp: float
    order_id: Optional[str] = None
    user_identity: Optional[str] = None
    merchant_identity: Optional[str] = None
    stage: Optional[str] = None
    amount: Optional[Decimal] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: str = ""

    @property
    def stream(self) -> str:
        return self.order_id or SYSTEM_STREAM

    def payload(self) -> dict[str, Any]:
        """Fields covered by the event hash, in their on-disk form."""
        base = {
            "seq": self.seq,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "order_id": self.order_id,
            "user_identity": self.user_identity,
            "merchant_identity": self.merchant_identity,
            "stage": self.stage,
            "amount": str(self.amount) if self.amount is not None else None,
            "success": self.success,
            "reason": self.reason,
            "details": self.details,
        }
        return {k: v for k, v in base.items() if v is not None}

    def to_record(self) -> dict[str, Any]:
        record = self.payload()
        if self.prev_hash:
            record["prev_hash"] = self.prev_hash
        record["event_hash"] = self.event_hash
        return record

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> AuditEvent:
        amount = raw.get("amount")
        return cls(
            seq=int(raw["seq"]),
            event_type=EventType(raw["event_type"]),
            timestamp=float(raw["timestamp"]),
            order_id=raw.get("order_id"),
            user_identity=raw.get("user_identity"),
            merchant_identity=raw.get("merchant_identity"),
            stage=raw.get("stage"),
            amount=to_decimal(amount) if amount is not None else None,
            success=bool(raw.get("success", True)),
            reason=raw.get("reason"),
            details=raw.get("details"),
            prev_hash=raw.get("prev_hash"),
            event_hash=raw.get("event_hash", ""),
        )


class AuditTrail:
    """Tamper-evident append-only audit log with per-order hash chains."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._write_lock = threading.Lock()

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._hmac_key = load_secret(self.key_path, env_var=AUDIT_KEY_ENV)
        self._heads, self._next_seq = self._scan_heads()

    def _scan_heads(self) -> tuple[dict[str, str], int]:
        # Rebuilds append state only; verification happens on read.
        heads: dict[str, str] = {}
        next_seq = 1
        try:
            for _, raw in iter_jsonl(self.path):
                heads[raw.get("order_id") or SYSTEM_STREAM] = raw.get("event_hash", "")
                seq = raw.get("seq")
                if isinstance(seq, int):
                    next_seq = max(next_seq, seq + 1)
        except ValueError as e:
            raise AuditIntegrityError(str(e)) from e
        return heads, next_seq

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        order_id: Optional[str] = None,
        user_identity: Optional[str] = None,
        merchant_identity: Optional[str] = None,
        stage: Optional[str] = None,
        amount: Any = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        amount_dec = to_decimal(amount) if amount is not None else None
        stream = order_id or SYSTEM_STREAM

        with self._write_lock:
            prev_hash = self._heads.get(stream, "")
            draft = AuditEvent(
                seq=self._next_seq,
                event_type=EventType(event_type),
                timestamp=time.time(),
                order_id=order_id,
                user_identity=user_identity,
                merchant_identity=merchant_identity,
                stage=stage,
                amount=amount_dec,
                success=success,
                reason=reason,
                details=details,
                prev_hash=prev_hash or None,
            )
            event_hash = self._event_hash(draft.payload(), prev_hash)
            event = replace(draft, event_hash=event_hash)
            append_jsonl(self.path, event.to_record())
            self._heads[stream] = event_hash
            self._next_seq += 1
        return event

    def _verified(self) -> Iterator[AuditEvent]:
        heads: dict[str, str] = {}
        expected_seq = 1
        try:
            for line_no, raw in iter_jsonl(self.path):
                seq = raw.get("seq")
                if seq != expected_seq:
                    raise AuditIntegrityError(f"sequence gap (expected {expected_seq}, got {seq})", line=line_no)
                stream = raw.get("order_id") or SYSTEM_STREAM
                prev_hash = raw.get("prev_hash") or ""
                if prev_hash != heads.get(stream, ""):
                    raise AuditIntegrityError(f"previous hash mismatch on stream {stream}", line=line_no)
                payload = {k: v for k, v in raw.items() if k not in _HASH_FIELDS}
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), str(raw.get("event_hash", ""))):
                    raise AuditIntegrityError("event hash mismatch", line=line_no)
                try:
                    event = AuditEvent.from_record(raw)
                except (KeyError, TypeError, ValueError) as e:
                    raise AuditIntegrityError(f"malformed event: {e}", line=line_no) from e
                heads[stream] = event.event_hash
                expected_seq += 1
                yield event
        except ValueError as e:
            raise AuditIntegrityError(str(e)) from e

    def read_events(
        self,
        order_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole log and return the newest matching events.

        Raises ``AuditIntegrityError`` on the first line that fails
        verification, even if it would have been filtered out.
        """
        events = [
            e
            for e in self._verified()
            if (not order_id or e.order_id == order_id) and (not event_type or e.event_type == event_type)
        ]
        return events[-limit:] if limit else events

    def order_trail(self, order_id: str) -> list[AuditEvent]:
        """All events for one order, oldest first."""
        return self.read_events(order_id=order_id, limit=0)

    def summary(self, order_id: Optional[str] = None) -> dict:
        events = self.read_events(order_id=order_id, limit=0)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type.value] = by_type.get(e.event_type.value, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "orders": len({e.order_id for e in events if e.order_id}),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_record() if events else None,
        }
