"""
Pipeline stage agents.

Reception validates the order, Approval re-checks policy against the
ledger and reserves the amount, Payment hands the transfer to the
settlement executor. Each stage advances the run through the transition
table, attaches exactly one signed ``StageRecord`` and returns it.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from .amounts import format_amount, format_micros
from .audit import AuditTrail, EventType
from .config import PolicyConfig
from .errors import (
    ExecutionError,
    PipelineIntegrityError,
    PolicyViolation,
    RateLimitExceeded,
    SigningError,
    SingleTransactionLimitError,
    WindowLimitError,
)
from .ledger import ReservationResult
from .models import (
    Order,
    OrderStatus,
    PipelineRun,
    StageOutcome,
    StageRecord,
    StageRole,
    is_valid_identity,
)
from .settlement import SettlementExecutor, SettlementResult
from .signing import AttestationSigner
from .store import PolicyStore

logger = logging.getLogger(__name__)


def _ms(ts: float) -> int:
    return int(ts * 1000)


def attestation_statement(order: Order, record: StageRecord) -> str:
    """Rebuild the statement a stage signed for ``record``."""
    if record.stage_role == StageRole.RECEPTION:
        return f"Order {order.order_id} received at {_ms(record.timestamp)}"
    if record.stage_role == StageRole.APPROVAL:
        return (
            f"Order {order.order_id} approved for {order.price} {order.currency} "
            f"at {_ms(record.timestamp)}"
        )
    return f"Payment {order.order_id} completed: {record.settlement_ref}"


class StageAgent:
    """Shared plumbing for the three stages."""

    role: StageRole
    name: str

    def __init__(self, signer: AttestationSigner, audit: Optional[AuditTrail] = None):
        self.signer = signer
        self.audit = audit

    @property
    def address(self) -> str:
        return self.signer.address

    def process(self, run: PipelineRun, now: Optional[float] = None) -> StageRecord:
        if run.is_terminal:
            raise PipelineIntegrityError(
                f"{self.name} received terminal run {run.order_id} ({run.status.value})"
            )
        started = time.time() if now is None else now
        clock = time.perf_counter()
        outcome, message, signature, settlement_ref = self._run(run, started)
        record = StageRecord(
            stage_name=self.name,
            stage_role=self.role,
            timestamp=started,
            duration_ms=(time.perf_counter() - clock) * 1000,
            outcome=outcome,
            message=message,
            attestation_signature=signature,
            settlement_ref=settlement_ref,
            signer_address=self.address,
        )
        run.attach_record(record)
        if not record.succeeded and run.terminal_error is None:
            run.terminal_error = message
        self._audit_record(run, record)
        return record

    def _run(self, run: PipelineRun, started: float):
        raise NotImplementedError

    def _sign(self, statement: str) -> str:
        return self.signer.sign(statement.encode())

    def _integrity_abort(self, run: PipelineRun, expected: StageRole, failed: StageOutcome):
        got = run.preceding_stage.value if run.preceding_stage else "none"
        error = PipelineIntegrityError(
            f"{self.name} expected preceding stage {expected.value}, got {got} "
            f"(status {run.status.value})"
        )
        logger.error("Pipeline integrity violation on %s: %s", run.order_id, error)
        run.abort_integrity(str(error))
        self._audit(
            EventType.INTEGRITY_VIOLATION,
            order_id=run.order_id,
            stage=self.role.value,
            success=False,
            reason=str(error),
        )
        return failed, str(error), None, None

    def _audit(self, event: EventType, **fields) -> None:
        if not self.audit:
            return
        try:
            self.audit.log(event, **fields)
        except Exception:
            logger.exception("Audit write for %s failed on %s", event.value, fields.get("order_id"))

    def _audit_record(self, run: PipelineRun, record: StageRecord) -> None:
        self._audit(
            EventType.STAGE_COMPLETED if record.succeeded else EventType.STAGE_REJECTED,
            order_id=run.order_id,
            user_identity=run.order.user_identity,
            stage=self.role.value,
            amount=run.order.price,
            success=record.succeeded,
            reason=record.message,
            details={"outcome": record.outcome.value, "signer": record.signer_address},
        )


class ReceptionStage(StageAgent):
    role = StageRole.RECEPTION
    name = "ReceptionStage"

    def __init__(
        self,
        signer: AttestationSigner,
        config: Optional[PolicyConfig] = None,
        audit: Optional[AuditTrail] = None,
    ):
        super().__init__(signer, audit)
        self.config = config or PolicyConfig()

    def validate(self, order: Order) -> tuple[bool, str]:
        if not isinstance(order.item, str) or not order.item.strip():
            return False, "Order item is required"
        if order.price is None or order.price <= 0:
            return False, "Order price must be a positive number"
        if isinstance(order.quantity, bool) or not isinstance(order.quantity, int) or order.quantity < 1:
            return False, f"Order quantity must be a positive integer, got {order.quantity!r}"
        if order.currency not in self.config.accepted_currencies:
            return False, (
                f"Unsupported currency: {order.currency} "
                f"(accepted: {', '.join(self.config.accepted_currencies)})"
            )
        if not is_valid_identity(order.user_identity):
            return False, f"Invalid user identity: {order.user_identity!r}"
        if not is_valid_identity(order.merchant_identity):
            return False, f"Invalid merchant identity: {order.merchant_identity!r}"
        return True, "OK"

    def _run(self, run: PipelineRun, started: float):
        if run.status != OrderStatus.RECEIVED or run.preceding_stage is not None:
            error = PipelineIntegrityError(
                f"{self.name} expected a fresh run, got status {run.status.value}"
            )
            logger.error("Pipeline integrity violation on %s: %s", run.order_id, error)
            run.abort_integrity(str(error))
            return StageOutcome.FAIL, str(error), None, None

        run.advance(OrderStatus.VALIDATING)
        ok, reason = self.validate(run.order)
        if not ok:
            logger.info("Order %s failed validation: %s", run.order_id, reason)
            run.advance(OrderStatus.REJECTED)
            return StageOutcome.FAIL, reason, None, None

        try:
            signature = self._sign(f"Order {run.order_id} received at {_ms(started)}")
        except SigningError as e:
            logger.error("Reception could not sign %s: %s", run.order_id, e)
            run.advance(OrderStatus.REJECTED)
            return StageOutcome.FAIL, str(e), None, None

        run.advance(OrderStatus.PENDING_APPROVAL)
        run.preceding_stage = StageRole.RECEPTION
        logger.info("Order %s validated: %s for %s", run.order_id, run.order.item, format_amount(run.order.price))
        return StageOutcome.PASS, "Order validated successfully", signature, None


class ApprovalStage(StageAgent):
    """Authoritative policy gate.

    Does not trust the decision engine's verdict. Reads the frequency
    tracker and reserves the order amount against the window ceiling under
    the ledger's per-identity lock, so concurrent runs cannot jointly
    overshoot. The reservation is committed or released by the
    orchestrator once the run is terminal.
    """

    role = StageRole.APPROVAL
    name = "ApprovalStage"

    def __init__(
        self,
        signer: AttestationSigner,
        store: PolicyStore,
        config: Optional[PolicyConfig] = None,
        audit: Optional[AuditTrail] = None,
    ):
        super().__init__(signer, audit)
        self.store = store
        self.config = config or PolicyConfig()

    def check_policy(self, order: Order, now: float) -> ReservationResult:
        """Raise a ``PolicyViolation`` or return the held reservation."""
        cfg = self.config
        if order.price > cfg.max_single_payment:
            raise SingleTransactionLimitError(format_amount(order.price), format_amount(cfg.max_single_payment))

        # The current attempt is already counted, hence strictly greater.
        count = self.store.count(order.user_identity, now=now)
        if count > cfg.max_orders_per_window:
            raise RateLimitExceeded(count, cfg.max_orders_per_window)

        reservation = self.store.reserve(
            order.user_identity, order.order_id, order.price, cfg.max_window_spend, now=now
        )
        if not reservation.allowed:
            if reservation.duplicate:
                raise PolicyViolation(reservation.reason)
            raise WindowLimitError(
                format_amount(order.price),
                format_micros(reservation.committed_micros),
                format_micros(reservation.reserved_micros),
                format_amount(cfg.max_window_spend),
            )
        return reservation

    def _run(self, run: PipelineRun, started: float):
        if run.preceding_stage != StageRole.RECEPTION or run.status != OrderStatus.PENDING_APPROVAL:
            return self._integrity_abort(run, StageRole.RECEPTION, StageOutcome.REJECTED)

        order = run.order
        try:
            self.check_policy(order, started)
        except PolicyViolation as e:
            logger.info("Order %s rejected by policy: %s", run.order_id, e)
            run.advance(OrderStatus.REJECTED)
            return StageOutcome.REJECTED, str(e), None, None

        if order.price > self.config.approval_threshold:
            logger.info(
                "Order %s above approval threshold (%s > %s); approved under policy",
                run.order_id,
                format_amount(order.price),
                format_amount(self.config.approval_threshold),
            )

        try:
            signature = self._sign(
                f"Order {run.order_id} approved for {order.price} {order.currency} at {_ms(started)}"
            )
        except SigningError as e:
            logger.error("Approval could not sign %s: %s", run.order_id, e)
            run.advance(OrderStatus.REJECTED)
            return StageOutcome.REJECTED, str(e), None, None

        run.advance(OrderStatus.APPROVED)
        run.preceding_stage = StageRole.APPROVAL
        return StageOutcome.APPROVED, f"Approved {format_amount(order.price, order.currency)}", signature, None


class PaymentStage(StageAgent):
    role = StageRole.PAYMENT
    name = "PaymentStage"

    def __init__(
        self,
        signer: AttestationSigner,
        executor: SettlementExecutor,
        config: Optional[PolicyConfig] = None,
        audit: Optional[AuditTrail] = None,
    ):
        super().__init__(signer, audit)
        self.executor = executor
        self.config = config or PolicyConfig()

    def _transfer(self, order: Order) -> SettlementResult:
        try:
            return self.executor.execute_transfer(order.merchant_identity, order.price, self.config.asset_ref)
        except Exception as e:
            error = ExecutionError(f"Settlement executor raised {type(e).__name__}: {e}")
            logger.exception("Settlement for %s raised", order.order_id)
            return SettlementResult(success=False, failure_reason=str(error))

    def _run(self, run: PipelineRun, started: float):
        if run.preceding_stage != StageRole.APPROVAL or run.status != OrderStatus.APPROVED:
            return self._integrity_abort(run, StageRole.APPROVAL, StageOutcome.FAILED)

        order = run.order
        run.advance(OrderStatus.PROCESSING)
        self._audit(
            EventType.PAYMENT_INITIATED,
            order_id=order.order_id,
            user_identity=order.user_identity,
            merchant_identity=order.merchant_identity,
            amount=order.price,
        )

        result = self._transfer(order)
        if not result.success:
            reason = result.failure_reason or "Settlement failed"
            logger.warning("Payment for %s failed: %s", order.order_id, reason)
            run.advance(OrderStatus.FAILED)
            self._audit_payment(EventType.PAYMENT_FAILED, order, result, reason)
            return StageOutcome.FAILED, reason, None, result.settlement_ref

        try:
            signature = self._sign(f"Payment {order.order_id} completed: {result.settlement_ref}")
        except Exception as e:
            # Funds have moved; keep the reference on the failed record.
            if isinstance(e, SigningError):
                error = e
                logger.error("Payment could not sign %s: %s", order.order_id, e)
            else:
                error = SigningError(f"Payment signer raised {type(e).__name__}: {e}")
                logger.exception("Payment signer raised on %s", order.order_id)
            run.advance(OrderStatus.FAILED)
            self._audit_payment(EventType.PAYMENT_FAILED, order, result, str(error))
            return StageOutcome.FAILED, str(error), None, result.settlement_ref

        run.advance(OrderStatus.COMPLETED)
        self._audit_payment(EventType.PAYMENT_COMPLETED, order, result, None)
        logger.info("Payment for %s completed: %s", order.order_id, result.settlement_ref)
        return StageOutcome.SUCCESS, "Payment completed", signature, result.settlement_ref

    def _audit_payment(self, event: EventType, order: Order, result: SettlementResult, reason: Optional[str]):
        self._audit(
            event,
            order_id=order.order_id,
            user_identity=order.user_identity,
            merchant_identity=order.merchant_identity,
            amount=order.price,
            success=event == EventType.PAYMENT_COMPLETED,
            reason=reason,
            details={"settlement_ref": result.settlement_ref} if result.settlement_ref else None,
        )
