"""
Pipeline orchestrator.

Flow for ``submit()``:
1. Build a decision context from the policy store and balance provider
2. Evaluate it with the decision engine
3. On approve (or confirm with user confirmation) run the pipeline
4. Commit the ledger on COMPLETED, release the reservation otherwise
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Optional

from .audit import AuditTrail, EventType
from .config import PolicyConfig
from .decision import Decision, DecisionContext, DecisionEngine, DecisionResult
from .errors import SystemUnavailableError, ValidationError
from .models import Order, OrderRequest, OrderResponse, OrderStatus, PipelineRun, StageRole
from .settlement import BalanceProvider, SettlementExecutor
from .signing import AttestationSigner
from .stages import ApprovalStage, PaymentStage, ReceptionStage
from .store import InMemoryPolicyStore, PolicyStore

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Drives orders through Reception, Approval and Payment."""

    def __init__(
        self,
        reception_signer: AttestationSigner,
        approval_signer: AttestationSigner,
        payment_signer: AttestationSigner,
        executor: SettlementExecutor,
        config: Optional[PolicyConfig] = None,
        store: Optional[PolicyStore] = None,
        balance_provider: Optional[BalanceProvider] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config or PolicyConfig()
        self.store = store if store is not None else InMemoryPolicyStore.from_config(self.config)
        self.executor = executor
        self.balance_provider = balance_provider
        self.audit = audit
        self.engine = DecisionEngine(self.config, store=self.store)
        self._signers = {
            StageRole.RECEPTION: reception_signer,
            StageRole.APPROVAL: approval_signer,
            StageRole.PAYMENT: payment_signer,
        }
        self.reception: Optional[ReceptionStage] = None
        self.approval: Optional[ApprovalStage] = None
        self.payment: Optional[PaymentStage] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            logger.warning("Orchestrator already initialized")
            return
        for role, signer in self._signers.items():
            if signer is None or not getattr(signer, "address", None):
                raise SystemUnavailableError(f"No attestation signer configured for {role.value} stage")
        if self.executor is None:
            raise SystemUnavailableError("No settlement executor configured")

        self.reception = ReceptionStage(self._signers[StageRole.RECEPTION], self.config, self.audit)
        self.approval = ApprovalStage(self._signers[StageRole.APPROVAL], self.store, self.config, self.audit)
        self.payment = PaymentStage(self._signers[StageRole.PAYMENT], self.executor, self.config, self.audit)
        self._initialized = True

        for stage in (self.reception, self.approval, self.payment):
            logger.info("%s ready (signer %s)", stage.name, stage.address)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise SystemUnavailableError("Orchestrator is not initialized; call initialize() first")

    # ── Pipeline ──────────────────────────────────────────────────

    def process(
        self,
        request: OrderRequest,
        merchant_identity: Optional[str] = None,
        now: Optional[float] = None,
    ) -> PipelineRun:
        """Run an order through all three stages without a decision step.

        The attempt is registered with the frequency tracker here, since no
        decision engine saw it.
        """
        self._require_initialized()
        now = time.time() if now is None else now
        self.store.record(request.user_identity, now=now)
        return self._run_pipeline(request, merchant_identity, now)

    def _build_order(self, request: OrderRequest, merchant_identity: Optional[str], now: float) -> Order:
        merchant = merchant_identity or request.merchant_identity or self.config.default_merchant
        if not merchant:
            raise ValidationError("No merchant identity given and no default configured", field="merchant_identity")
        return Order.create(
            item=request.item,
            price=request.price,
            user_identity=request.user_identity,
            merchant_identity=merchant,
            currency=request.currency,
            quantity=request.quantity,
            now=now,
        )

    def _run_pipeline(self, request: OrderRequest, merchant_identity: Optional[str], now: float) -> PipelineRun:
        order = self._build_order(request, merchant_identity, now)
        run = PipelineRun(order=order)
        logger.info("Pipeline started for %s: %r at %s %s", order.order_id, order.item, order.price, order.currency)
        details = {"item": order.item, "currency": order.currency, "quantity": order.quantity}
        if request.metadata:
            details["metadata"] = dict(request.metadata)
        self._audit(EventType.ORDER_RECEIVED, order, details=details)

        try:
            for stage in (self.reception, self.approval, self.payment):
                record = stage.process(run, now=now)
                if not record.succeeded:
                    break
        except Exception as e:
            if run.settlement_ref or run.status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED):
                # The executor may have moved funds; the reservation stays as pending exposure.
                logger.exception(
                    "Pipeline for %s raised after settlement was attempted; keeping reservation",
                    order.order_id,
                )
                if run.status == OrderStatus.PROCESSING:
                    run.advance(OrderStatus.FAILED)
                if run.terminal_error is None:
                    run.terminal_error = f"{type(e).__name__}: {e}"
            else:
                logger.exception("Pipeline for %s raised; releasing reservation", order.order_id)
                self._release(run)
            raise

        if run.status == OrderStatus.COMPLETED:
            total = self.store.commit(order.user_identity, order.price, order.order_id, now=now)
            self._audit(
                EventType.SPEND_COMMITTED,
                order,
                details={"settlement_ref": run.settlement_ref, "window_total": str(total)},
            )
        elif run.settlement_ref:
            logger.warning(
                "Order %s ended %s after settlement %s; keeping reservation as pending exposure",
                order.order_id,
                run.status.value,
                run.settlement_ref,
            )
        else:
            self._release(run)

        logger.info("Pipeline for %s finished: %s", order.order_id, run.status.value)
        return run

    def _release(self, run: PipelineRun) -> None:
        if self.store.release(run.order.user_identity, run.order_id):
            self._audit(EventType.SPEND_RELEASED, run.order, success=True, reason=run.terminal_error)

    # ── Intake ────────────────────────────────────────────────────

    def build_context(self, request: OrderRequest, now: float) -> DecisionContext:
        identity = request.user_identity
        if not isinstance(identity, str) or not identity.strip():
            raise ValidationError("User identity is required", field="user_identity")
        snapshot = self.store.snapshot(identity, now=now)
        return DecisionContext.create(
            intent=request.intent,
            item=request.item,
            price=request.price,
            user_identity=identity,
            quantity=request.quantity,
            recent_order_count=self.store.count(identity, now=now),
            window_spend=snapshot.exposure,
            available_balance=self._available_balance(),
            current_time=now,
        )

    def _available_balance(self) -> Decimal:
        if self.balance_provider is None:
            return Decimal("0")
        try:
            return self.balance_provider.available_balance(self.config.asset_ref)
        except Exception as e:
            logger.warning("Balance lookup failed, assuming 0: %s", e)
            return Decimal("0")

    def submit(self, request: OrderRequest, now: Optional[float] = None) -> OrderResponse:
        """Evaluate an order and, when allowed, run it through the pipeline."""
        self._require_initialized()
        now = time.time() if now is None else now

        context = self.build_context(request, now)
        decision = self.engine.evaluate(context)
        self._audit_decision(request, decision)

        if decision.decision == Decision.CONFIRM and not request.user_confirmed:
            return OrderResponse(decision=decision, error_message="Confirmation required before payment")
        if decision.decision not in (Decision.APPROVE, Decision.CONFIRM):
            return OrderResponse(decision=decision, error_message=decision.summary)

        run = self._run_pipeline(request, None, now)
        return OrderResponse(
            decision=decision,
            pipeline_run=run,
            settlement_ref=run.settlement_ref if run.status == OrderStatus.COMPLETED else None,
            error_message=run.terminal_error if run.status != OrderStatus.COMPLETED else None,
        )

    # ── Info ──────────────────────────────────────────────────────

    def system_info(self, identity: Optional[str] = None, now: Optional[float] = None) -> dict[str, Any]:
        info: dict[str, Any] = {
            "initialized": self._initialized,
            "signers": {role.value: signer.address for role, signer in self._signers.items() if signer},
            "policy": self.config.to_dict(),
            "thresholds": self.engine.describe(),
        }
        if identity:
            snapshot = self.store.snapshot(identity, now=now)
            info["window"] = snapshot.to_dict()
            info["recent_orders"] = self.store.count(identity, now=now)
        return info

    # ── Audit helpers ─────────────────────────────────────────────

    def _write_audit(self, event: EventType, **fields) -> None:
        if not self.audit:
            return
        try:
            self.audit.log(event, **fields)
        except Exception:
            logger.exception("Audit write for %s failed on %s", event.value, fields.get("order_id"))

    def _audit(self, event: EventType, order: Order, success: bool = True, reason: Optional[str] = None, details=None):
        self._write_audit(
            event,
            order_id=order.order_id,
            user_identity=order.user_identity,
            merchant_identity=order.merchant_identity,
            amount=order.price,
            success=success,
            reason=reason,
            details=details,
        )

    def _audit_decision(self, request: OrderRequest, decision: DecisionResult) -> None:
        self._write_audit(
            EventType.DECISION_MADE,
            user_identity=request.user_identity,
            amount=request.price,
            success=decision.decision in (Decision.APPROVE, Decision.CONFIRM),
            reason=decision.summary,
            details={
                "decision": decision.decision.value,
                "confidence": decision.confidence,
                "risk_tier": decision.risk_tier.value,
            },
        )


def create_orchestrator(
    executor: SettlementExecutor,
    reception_signer: AttestationSigner,
    approval_signer: AttestationSigner,
    payment_signer: AttestationSigner,
    config: Optional[PolicyConfig] = None,
    store: Optional[PolicyStore] = None,
    balance_provider: Optional[BalanceProvider] = None,
    audit: Optional[AuditTrail] = None,
) -> PipelineOrchestrator:
    """Build and initialize an orchestrator in one call.

    If no balance provider is given and the executor can report a balance,
    the executor is used.
    """
    if balance_provider is None and hasattr(executor, "available_balance"):
        balance_provider = executor
    orchestrator = PipelineOrchestrator(
        reception_signer=reception_signer,
        approval_signer=approval_signer,
        payment_signer=payment_signer,
        executor=executor,
        config=config,
        store=store,
        balance_provider=balance_provider,
        audit=audit,
    )
    orchestrator.initialize()
    return orchestrator
