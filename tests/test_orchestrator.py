"""End-to-end tests for the pipeline orchestrator."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cashier.audit import AuditTrail, EventType
from cashier.config import PolicyConfig
from cashier.decision import CheckCategory, CheckOutcome, Decision
from cashier.errors import LedgerError, SystemUnavailableError, ValidationError
from cashier.models import Intent, OrderRequest, OrderStatus, StageOutcome, StageRole
from cashier.orchestrator import PipelineOrchestrator, create_orchestrator
from cashier.settlement import DryRunSettlementExecutor, SettlementResult
from cashier.signing import EthAccountAttestationSigner, verify_attestation
from cashier.stages import PaymentStage, attestation_statement
from cashier.store import InMemoryPolicyStore


USER = "0x1111111111111111111111111111111111111111"
MERCHANT = "0x2222222222222222222222222222222222222222"
NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc).timestamp()


class FlakyBalance:
    def available_balance(self, asset_ref):
        raise TimeoutError("rpc timeout")


class OfflineSigner:
    address = "0x4444444444444444444444444444444444444444"

    def sign(self, message):
        raise RuntimeError("hsm offline")


class RefThenFailExecutor:
    """Reports a settlement reference but a failed transfer."""

    def execute_transfer(self, destination, amount, asset_ref):
        return SettlementResult(success=False, settlement_ref="0xdeadbeef", failure_reason="reverted after broadcast")


def order(price="0.03", item="Latte", **kwargs):
    defaults = dict(
        intent=Intent.PURCHASE,
        item=item,
        price=price,
        user_identity=USER,
        merchant_identity=MERCHANT,
    )
    defaults.update(kwargs)
    return OrderRequest(**defaults)


def make_signers():
    return {
        "reception_signer": EthAccountAttestationSigner.generate(),
        "approval_signer": EthAccountAttestationSigner.generate(),
        "payment_signer": EthAccountAttestationSigner.generate(),
    }


@pytest.fixture
def executor():
    return DryRunSettlementExecutor(balance="1.0")


@pytest.fixture
def orchestrator(executor):
    return create_orchestrator(executor=executor, **make_signers())


class TestInitialization:
    def test_uninitialized_orchestrator_refuses_work(self, executor):
        orch = PipelineOrchestrator(executor=executor, **make_signers())
        with pytest.raises(SystemUnavailableError):
            orch.submit(order(), now=NOON)
        with pytest.raises(SystemUnavailableError):
            orch.process(order(), now=NOON)

    def test_missing_executor_is_unavailable(self):
        orch = PipelineOrchestrator(executor=None, **make_signers())
        with pytest.raises(SystemUnavailableError, match="settlement executor"):
            orch.initialize()

    def test_missing_signer_is_unavailable(self, executor):
        signers = make_signers()
        signers["approval_signer"] = None
        orch = PipelineOrchestrator(executor=executor, **signers)
        with pytest.raises(SystemUnavailableError, match="approval"):
            orch.initialize()

    def test_system_info(self, orchestrator):
        orchestrator.submit(order(), now=NOON)
        info = orchestrator.system_info(USER, now=NOON)
        assert info["initialized"]
        assert set(info["signers"]) == {"reception", "approval", "payment"}
        assert Decimal(info["window"]["committed"]) == Decimal("0.03")
        assert info["recent_orders"] == 1
        assert info["thresholds"]["max_single_payment"] == "1.0"


class TestSubmit:
    def test_small_order_completes(self, orchestrator, executor):
        response = orchestrator.submit(order(), now=NOON)
        run = response.pipeline_run

        assert response.decision.decision == Decision.APPROVE
        assert response.success
        assert run.status == OrderStatus.COMPLETED
        assert [run.stages[r].outcome for r in StageRole] == [
            StageOutcome.PASS,
            StageOutcome.APPROVED,
            StageOutcome.SUCCESS,
        ]
        assert response.settlement_ref == run.stages[StageRole.PAYMENT].settlement_ref
        snap = orchestrator.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0.03")
        assert snap.reserved == Decimal("0")
        assert executor.available_balance("any") == Decimal("0.97")

    def test_stage_attestations_verify(self, orchestrator):
        run = orchestrator.submit(order(), now=NOON).pipeline_run
        for role in StageRole:
            record = run.stages[role]
            statement = attestation_statement(run.order, record)
            ok, reason = verify_attestation(statement, record.attestation_signature, record.signer_address)
            assert ok, reason
        addresses = {run.stages[r].signer_address for r in StageRole}
        assert len(addresses) == 3

    def test_over_ceiling_rejected_without_pipeline(self, orchestrator, executor):
        response = orchestrator.submit(order(price="1.5", item="Premium Gold Coffee"), now=NOON)

        assert response.decision.decision == Decision.REJECT
        assert "exceeds limit of 1 USDT" in response.decision.summary
        assert response.pipeline_run is None
        assert not response.success
        assert orchestrator.store.snapshot(USER, now=NOON).committed == Decimal("0")
        assert executor.transfers == []

    def test_over_ceiling_rejected_by_approval_when_processed_directly(self, orchestrator):
        run = orchestrator.process(order(price="1.5"), now=NOON)

        assert run.status == OrderStatus.REJECTED
        assert run.stages[StageRole.RECEPTION].outcome == StageOutcome.PASS
        assert run.stages[StageRole.APPROVAL].outcome == StageOutcome.REJECTED
        assert StageRole.PAYMENT not in run.stages
        snap = orchestrator.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0")
        assert snap.reserved == Decimal("0")

    def test_window_ceiling_after_cumulative_spend(self):
        config = PolicyConfig(max_single_payment="2.0", max_orders_per_window=100)
        orch = create_orchestrator(executor=DryRunSettlementExecutor(balance="20"), config=config, **make_signers())
        for _ in range(9):
            assert orch.submit(order(price="1.0"), now=NOON).success
        assert orch.store.snapshot(USER, now=NOON).committed == Decimal("9.0")

        too_much = orch.submit(order(price="1.5"), now=NOON)
        assert too_much.decision.decision == Decision.REJECT
        assert too_much.pipeline_run is None

        fits = orch.submit(order(price="0.5"), now=NOON)
        assert fits.success
        assert orch.store.snapshot(USER, now=NOON).committed == Decimal("9.5")

    def test_eleventh_order_in_window_is_stopped(self):
        executor = DryRunSettlementExecutor(balance="10")
        orch = create_orchestrator(executor=executor, **make_signers())
        for _ in range(10):
            assert orch.submit(order(), now=NOON).success

        response = orch.submit(order(), now=NOON)
        freq = next(s for s in response.decision.reasoning if s.category == CheckCategory.FREQUENCY)
        assert freq.outcome == CheckOutcome.FAIL
        # Advisory engine approves at 0.83; Approval enforces the cap.
        assert response.decision.decision == Decision.APPROVE
        assert response.pipeline_run.status == OrderStatus.REJECTED
        assert "Rate limit exceeded" in response.error_message
        assert orch.store.snapshot(USER, now=NOON).committed == Decimal("0.30")

    def test_eleventh_order_rejected_by_engine_with_critical_weight(self):
        config = PolicyConfig(frequency_fail_weight=0.9)
        orch = create_orchestrator(executor=DryRunSettlementExecutor(balance="10"), config=config, **make_signers())
        for _ in range(10):
            orch.submit(order(), now=NOON)
        response = orch.submit(order(), now=NOON)
        assert response.decision.decision == Decision.REJECT
        assert response.pipeline_run is None

    def test_confirm_requires_user_confirmation(self):
        # amount, balance and off-hours warnings
        late = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc).timestamp()
        orch = create_orchestrator(executor=DryRunSettlementExecutor(balance="1.0"), **make_signers())

        response = orch.submit(order(price="0.9"), now=late)
        assert response.decision.decision == Decision.CONFIRM
        assert response.pipeline_run is None
        assert response.error_message == "Confirmation required before payment"

        confirmed = orch.submit(order(price="0.9", user_confirmed=True), now=late)
        assert confirmed.decision.decision == Decision.CONFIRM
        assert confirmed.pipeline_run.status == OrderStatus.COMPLETED

    def test_cancel_intent_never_pays(self, orchestrator, executor):
        response = orchestrator.submit(order(intent=Intent.CANCEL_ORDER), now=NOON)
        assert response.decision.decision == Decision.REJECT
        assert executor.transfers == []

    def test_balance_lookup_failure_counts_as_zero(self, executor):
        orch = create_orchestrator(executor=executor, balance_provider=FlakyBalance(), **make_signers())
        response = orch.submit(order(), now=NOON)
        balance = next(s for s in response.decision.reasoning if s.category == CheckCategory.BALANCE)
        assert balance.outcome == CheckOutcome.FAIL
        assert response.decision.decision == Decision.REJECT
        assert "Fund the settlement account" in response.decision.suggestions

    def test_malformed_request_raises(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.submit(order(price="lots"), now=NOON)
        with pytest.raises(ValidationError):
            orchestrator.submit(order(user_identity=""), now=NOON)

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"price": "lots"}, "positive number"),
            ({"item": 123}, "item is required"),
            ({"quantity": 0}, "positive integer"),
        ],
    )
    def test_malformed_order_processed_directly_is_rejected_by_reception(
        self, orchestrator, executor, overrides, reason
    ):
        run = orchestrator.process(order(**overrides), now=NOON)

        assert run.status == OrderStatus.REJECTED
        assert run.stages[StageRole.RECEPTION].outcome == StageOutcome.FAIL
        assert reason in run.terminal_error
        assert StageRole.APPROVAL not in run.stages
        assert executor.transfers == []
        assert orchestrator.store.snapshot(USER, now=NOON).reserved == Decimal("0")

    def test_missing_merchant_raises(self, orchestrator):
        with pytest.raises(ValidationError, match="merchant"):
            orchestrator.process(order(merchant_identity=None), now=NOON)

    def test_default_merchant_from_config(self, executor):
        config = PolicyConfig(default_merchant=MERCHANT)
        orch = create_orchestrator(executor=executor, config=config, **make_signers())
        run = orch.process(order(merchant_identity=None), now=NOON)
        assert run.order.merchant_identity == MERCHANT
        assert run.status == OrderStatus.COMPLETED


class TestLedgerAccounting:
    def test_failed_settlement_releases_reservation(self):
        executor = DryRunSettlementExecutor(fail_with="node unreachable")
        orch = create_orchestrator(executor=executor, balance_provider=DryRunSettlementExecutor(), **make_signers())
        response = orch.submit(order(), now=NOON)

        assert response.pipeline_run.status == OrderStatus.FAILED
        assert response.error_message == "node unreachable"
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0")
        assert snap.reserved == Decimal("0")

    def test_failure_with_settlement_ref_keeps_reservation(self):
        orch = create_orchestrator(
            executor=RefThenFailExecutor(), balance_provider=DryRunSettlementExecutor(), **make_signers()
        )
        run = orch.submit(order(), now=NOON).pipeline_run

        assert run.status == OrderStatus.FAILED
        assert run.settlement_ref == "0xdeadbeef"
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0")
        assert snap.reserved == Decimal("0.03")

    def test_commit_happens_once_per_completed_run(self, orchestrator):
        run = orchestrator.submit(order(), now=NOON).pipeline_run
        with pytest.raises(LedgerError):
            orchestrator.store.commit(USER, run.order.price, run.order_id, now=NOON)

    def test_unexpected_exception_releases_and_propagates(self, executor):
        released = []

        class ExplodingStore(InMemoryPolicyStore):
            def reserve(self, *args, **kwargs):
                raise RuntimeError("disk full")

            def release(self, identity, order_id):
                released.append(order_id)
                return super().release(identity, order_id)

        orch = create_orchestrator(executor=executor, store=ExplodingStore(), **make_signers())
        with pytest.raises(RuntimeError, match="disk full"):
            orch.submit(order(), now=NOON)
        assert len(released) == 1
        assert executor.transfers == []

    def test_signer_error_after_transfer_keeps_reservation(self, executor):
        signers = make_signers()
        signers["payment_signer"] = OfflineSigner()
        orch = create_orchestrator(executor=executor, **signers)

        response = orch.submit(order(), now=NOON)

        run = response.pipeline_run
        assert run.status == OrderStatus.FAILED
        assert run.settlement_ref == executor.transfers[0]["ref"]
        assert len(executor.transfers) == 1
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0")
        assert snap.reserved == Decimal("0.03")

    def test_audit_failure_does_not_undo_settled_order(self, executor, tmp_path, monkeypatch):
        monkeypatch.setenv("CASHIER_AUDIT_HMAC_KEY", "test-key")

        class FullDiskTrail(AuditTrail):
            def log(self, event_type, **kwargs):
                if event_type == EventType.PAYMENT_COMPLETED:
                    raise OSError("disk full")
                return super().log(event_type, **kwargs)

        trail = FullDiskTrail(path=tmp_path / "audit.jsonl")
        orch = create_orchestrator(executor=executor, audit=trail, **make_signers())

        run = orch.submit(order(), now=NOON).pipeline_run

        assert run.status == OrderStatus.COMPLETED
        assert len(executor.transfers) == 1
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0.03")
        assert snap.reserved == Decimal("0")
        assert trail.summary()["by_type"][EventType.SPEND_COMMITTED.value] == 1

    def test_exception_after_transfer_keeps_reservation_and_propagates(self, executor):
        class ResetAfterTransfer(PaymentStage):
            def _transfer(self, order):
                super()._transfer(order)
                raise ConnectionResetError("connection reset")

        released = []

        class TrackingStore(InMemoryPolicyStore):
            def release(self, identity, order_id):
                released.append(order_id)
                return super().release(identity, order_id)

        orch = create_orchestrator(executor=executor, store=TrackingStore(), **make_signers())
        orch.payment = ResetAfterTransfer(orch.payment.signer, executor, orch.config)

        with pytest.raises(ConnectionResetError):
            orch.submit(order(), now=NOON)

        assert len(executor.transfers) == 1
        assert released == []
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0")
        assert snap.reserved == Decimal("0.03")

    def test_concurrent_orders_never_overshoot_window(self):
        config = PolicyConfig(max_window_spend="1.0", max_orders_per_window=1000)
        executor = DryRunSettlementExecutor(balance="100")
        orch = create_orchestrator(executor=executor, config=config, **make_signers())

        def place(_):
            return orch.process(order(price="0.3"), now=NOON)

        with ThreadPoolExecutor(max_workers=16) as pool:
            runs = list(pool.map(place, range(40)))

        completed = [r for r in runs if r.status == OrderStatus.COMPLETED]
        assert len(completed) == 3
        assert len(executor.transfers) == 3
        snap = orch.store.snapshot(USER, now=NOON)
        assert snap.committed == Decimal("0.9")
        assert snap.reserved == Decimal("0")


class TestAuditIntegration:
    def test_pipeline_events_are_chained(self, tmp_path, executor, monkeypatch):
        monkeypatch.setenv("CASHIER_AUDIT_HMAC_KEY", "test-key")
        trail = AuditTrail(path=tmp_path / "audit.jsonl")
        orch = create_orchestrator(executor=executor, audit=trail, **make_signers())

        run = orch.submit(order(metadata={"agent": "barista-bot"}), now=NOON).pipeline_run
        events = trail.read_events(limit=100)
        types = [e.event_type for e in events]
        received = trail.read_events(event_type=EventType.ORDER_RECEIVED)[0]
        assert received.details["metadata"] == {"agent": "barista-bot"}

        assert types[0] == EventType.DECISION_MADE.value
        assert EventType.ORDER_RECEIVED.value in types
        assert types.count(EventType.STAGE_COMPLETED.value) == 3
        assert EventType.PAYMENT_COMPLETED.value in types
        assert types[-1] == EventType.SPEND_COMMITTED.value
        assert all(e.order_id == run.order_id for e in trail.read_events(order_id=run.order_id))

    def test_rejection_and_release_are_audited(self, tmp_path, executor, monkeypatch):
        monkeypatch.setenv("CASHIER_AUDIT_HMAC_KEY", "test-key")
        trail = AuditTrail(path=tmp_path / "audit.jsonl")
        orch = create_orchestrator(
            executor=DryRunSettlementExecutor(fail_with="declined"),
            balance_provider=executor,
            audit=trail,
            **make_signers(),
        )
        orch.submit(order(), now=NOON)
        summary = trail.summary()
        assert summary["by_type"][EventType.PAYMENT_FAILED.value] == 1
        assert summary["by_type"][EventType.SPEND_RELEASED.value] == 1
        assert summary["failures"] >= 2
