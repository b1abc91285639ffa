"""Tests for orders, stage records and the pipeline state machine."""

import dataclasses
import re
from decimal import Decimal

import pytest

from cashier.errors import IllegalTransitionError, PipelineIntegrityError, ValidationError
from cashier.models import (
    TRANSITIONS,
    Order,
    OrderStatus,
    PipelineRun,
    StageOutcome,
    StageRecord,
    StageRole,
    generate_order_id,
    normalize_identity,
)


USER = "0x1111111111111111111111111111111111111111"
MERCHANT = "0x2222222222222222222222222222222222222222"


def make_run(**kwargs):
    defaults = dict(item="Latte", price="0.03", user_identity=USER, merchant_identity=MERCHANT)
    defaults.update(kwargs)
    return PipelineRun(order=Order.create(**defaults))


def make_record(role=StageRole.RECEPTION, outcome=StageOutcome.PASS):
    return StageRecord(
        stage_name="Test",
        stage_role=role,
        timestamp=1.0,
        duration_ms=0.1,
        outcome=outcome,
    )


class TestOrder:
    def test_order_id_format(self):
        order_id = generate_order_id(now=1_700_000_000.5)
        assert re.fullmatch(r"ORD-1700000000500-[A-Z0-9]{6}", order_id)

    def test_order_ids_are_unique(self):
        assert len({generate_order_id() for _ in range(200)}) == 200

    def test_create_assigns_id_once(self):
        order = Order.create("Latte", "0.03", USER, MERCHANT)
        assert order.price == Decimal("0.03")
        with pytest.raises(dataclasses.FrozenInstanceError):
            order.order_id = "ORD-other"

    def test_create_leaves_non_numeric_price_unset(self):
        order = Order.create("Latte", "free", USER, MERCHANT)
        assert order.price is None
        assert order.to_dict()["price"] is None

    def test_normalize_identity(self):
        assert normalize_identity("0xABCDEF0000000000000000000000000000000001") == (
            "0xabcdef0000000000000000000000000000000001"
        )
        with pytest.raises(ValidationError):
            normalize_identity("0x123")


class TestPipelineRun:
    def test_happy_path_transitions(self):
        run = make_run()
        for status in (
            OrderStatus.VALIDATING,
            OrderStatus.PENDING_APPROVAL,
            OrderStatus.APPROVED,
            OrderStatus.PROCESSING,
            OrderStatus.COMPLETED,
        ):
            run.advance(status)
        assert run.is_terminal
        assert run.history[0] == OrderStatus.RECEIVED
        assert run.history[-1] == OrderStatus.COMPLETED

    @pytest.mark.parametrize(
        "path,target",
        [
            ([], OrderStatus.APPROVED),
            ([], OrderStatus.PROCESSING),
            ([OrderStatus.VALIDATING], OrderStatus.APPROVED),
            ([OrderStatus.VALIDATING, OrderStatus.PENDING_APPROVAL], OrderStatus.PROCESSING),
            ([OrderStatus.VALIDATING, OrderStatus.REJECTED], OrderStatus.VALIDATING),
        ],
    )
    def test_illegal_transitions_raise(self, path, target):
        run = make_run()
        for status in path:
            run.advance(status)
        before = run.status
        with pytest.raises(IllegalTransitionError):
            run.advance(target)
        assert run.status == before

    def test_terminal_states_have_no_exits(self):
        for status in (OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.REJECTED):
            assert TRANSITIONS[status] == frozenset()
            assert status.is_terminal

    def test_every_status_has_a_table_entry(self):
        assert set(TRANSITIONS) == set(OrderStatus)

    def test_abort_integrity_forces_rejection(self):
        run = make_run()
        run.advance(OrderStatus.VALIDATING)
        run.advance(OrderStatus.PENDING_APPROVAL)
        run.advance(OrderStatus.APPROVED)
        run.abort_integrity("out of order")
        assert run.status == OrderStatus.REJECTED
        assert run.terminal_error == "out of order"

    def test_abort_integrity_on_terminal_run_raises(self):
        run = make_run()
        run.advance(OrderStatus.VALIDATING)
        run.advance(OrderStatus.REJECTED)
        with pytest.raises(PipelineIntegrityError):
            run.abort_integrity("again")

    def test_stage_records_are_append_only(self):
        run = make_run()
        run.attach_record(make_record())
        with pytest.raises(PipelineIntegrityError):
            run.attach_record(make_record(outcome=StageOutcome.FAIL))
        assert run.stages[StageRole.RECEPTION].outcome == StageOutcome.PASS

    def test_to_dict(self):
        run = make_run()
        run.attach_record(make_record())
        d = run.to_dict()
        assert d["status"] == "RECEIVED"
        assert d["stages"]["reception"]["outcome"] == "pass"
        assert d["order"]["price"] == "0.03"


class TestStageOutcome:
    def test_success_outcomes(self):
        assert {o for o in StageOutcome if o.succeeded} == {
            StageOutcome.PASS,
            StageOutcome.APPROVED,
            StageOutcome.SUCCESS,
        }
