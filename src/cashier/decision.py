"""
Weighted rule evaluation for payment requests.

Each check is a pure function ``(context, config) -> ReasoningStep``. The
engine runs them in a fixed order, scores the results and turns the score
into a decision, a risk tier, a summary and remediation suggestions.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from .amounts import format_amount, to_decimal
from .config import PolicyConfig
from .errors import ValidationError
from .models import Intent

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CONFIRM = "confirm"
    DELAY = "delay"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CheckCategory(str, Enum):
    INTENT = "intent"
    AMOUNT = "amount"
    WINDOW_LIMIT = "window_limit"
    BALANCE = "balance"
    FREQUENCY = "frequency"
    TEMPORAL = "temporal"


SUGGESTIONS: dict[CheckCategory, str] = {
    CheckCategory.AMOUNT: "Try a smaller order amount",
    CheckCategory.WINDOW_LIMIT: "Wait for the spending window to reset",
    CheckCategory.BALANCE: "Fund the settlement account",
    CheckCategory.FREQUENCY: "Wait a few minutes before ordering again",
}

CRITICAL_FAIL_WEIGHT = 0.9


@dataclass(frozen=True)
class ReasoningStep:
    check_name: str
    outcome: CheckOutcome
    detail: str
    weight: float
    category: CheckCategory

    def __post_init__(self):
        if not 0.0 < self.weight <= 1.0:
            raise ValueError(f"Weight must be in (0, 1], got {self.weight}")

    @property
    def score(self) -> float:
        if self.outcome == CheckOutcome.PASS:
            return self.weight
        if self.outcome == CheckOutcome.WARN:
            return self.weight * 0.5
        return 0.0

    def to_dict(self) -> dict:
        return {
            "check_name": self.check_name,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "weight": self.weight,
            "category": self.category.value,
        }


@dataclass(frozen=True)
class DecisionContext:
    """Everything a decision is computed from. Build with ``create()``."""

    intent: Intent
    item: str
    price: Decimal
    quantity: int
    user_identity: str
    recent_order_count: int
    window_spend: Decimal
    available_balance: Decimal
    current_time: float

    @classmethod
    def create(
        cls,
        intent,
        item: str,
        price,
        user_identity: str,
        quantity: int = 1,
        recent_order_count: int = 0,
        window_spend=0,
        available_balance=0,
        current_time: Optional[float] = None,
    ) -> "DecisionContext":
        """Validate field types and build a context.

        Raises ``ValidationError`` for missing or ill-typed fields. Values
        that are well typed but outside policy (a zero price, say) are left
        for the checks to fail.
        """
        try:
            intent = Intent(intent)
        except ValueError as e:
            raise ValidationError(f"Unknown intent: {intent!r}", field="intent") from e
        if not isinstance(item, str):
            raise ValidationError("Item must be a string", field="item")
        if not isinstance(user_identity, str) or not user_identity.strip():
            raise ValidationError("User identity is required", field="user_identity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(f"Invalid quantity: {quantity!r}", field="quantity")
        if (
            isinstance(recent_order_count, bool)
            or not isinstance(recent_order_count, int)
            or recent_order_count < 0
        ):
            raise ValidationError(
                f"Invalid recent order count: {recent_order_count!r}", field="recent_order_count"
            )

        price_dec = _decimal_field(price, "price")
        spend_dec = _decimal_field(window_spend, "window_spend")
        balance_dec = _decimal_field(available_balance, "available_balance")
        if spend_dec < 0:
            raise ValidationError("Window spend cannot be negative", field="window_spend")

        if current_time is None:
            current_time = time.time()
        elif isinstance(current_time, datetime):
            current_time = current_time.timestamp()
        elif isinstance(current_time, bool) or not isinstance(current_time, (int, float)) or not math.isfinite(current_time):
            raise ValidationError(f"Invalid current time: {current_time!r}", field="current_time")

        return cls(
            intent=intent,
            item=item,
            price=price_dec,
            quantity=quantity,
            user_identity=user_identity,
            recent_order_count=recent_order_count,
            window_spend=spend_dec,
            available_balance=balance_dec,
            current_time=float(current_time),
        )


def _decimal_field(value: Any, name: str) -> Decimal:
    if value is None:
        raise ValidationError(f"{name} is required", field=name)
    try:
        return to_decimal(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {e}", field=name) from e


@dataclass(frozen=True)
class DecisionResult:
    decision: Decision
    confidence: float
    risk_tier: RiskTier
    reasoning: tuple[ReasoningStep, ...]
    summary: str
    suggestions: tuple[str, ...]
    evaluated_at: float
    evaluation_duration_ms: float

    @property
    def warn_count(self) -> int:
        return sum(1 for s in self.reasoning if s.outcome == CheckOutcome.WARN)

    @property
    def fail_count(self) -> int:
        return sum(1 for s in self.reasoning if s.outcome == CheckOutcome.FAIL)

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "confidence": self.confidence,
            "risk_tier": self.risk_tier.value,
            "reasoning": [s.to_dict() for s in self.reasoning],
            "summary": self.summary,
            "suggestions": list(self.suggestions),
            "evaluated_at": self.evaluated_at,
            "evaluation_duration_ms": self.evaluation_duration_ms,
        }


# ── Checks ────────────────────────────────────────────────────────

def check_intent(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Intent Validation"
    if ctx.intent == Intent.CANCEL_ORDER:
        return ReasoningStep(
            name, CheckOutcome.FAIL, "Cancel requests cannot proceed to payment", 1.0, CheckCategory.INTENT
        )
    if ctx.intent == Intent.BULK_ORDER and ctx.quantity > config.bulk_quantity_threshold:
        return ReasoningStep(
            name,
            CheckOutcome.WARN,
            f"Bulk order with {ctx.quantity} items requires review",
            0.8,
            CheckCategory.INTENT,
        )
    return ReasoningStep(
        name,
        CheckOutcome.PASS,
        f'Intent "{ctx.intent.value}" is valid for payment processing',
        0.8,
        CheckCategory.INTENT,
    )


def check_amount(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Amount Validation"
    ceiling = config.max_single_payment
    price = format_amount(ctx.price)
    if ctx.price <= 0:
        return ReasoningStep(name, CheckOutcome.FAIL, "Payment amount must be positive", 1.0, CheckCategory.AMOUNT)
    if ctx.price > ceiling:
        return ReasoningStep(
            name,
            CheckOutcome.FAIL,
            f"Amount {price} exceeds limit of {format_amount(ceiling)}",
            1.0,
            CheckCategory.AMOUNT,
        )
    if ctx.price > ceiling * Decimal("0.8"):
        return ReasoningStep(
            name,
            CheckOutcome.WARN,
            f"Amount {price} is close to limit ({format_amount(ceiling)})",
            0.9,
            CheckCategory.AMOUNT,
        )
    return ReasoningStep(
        name, CheckOutcome.PASS, f"Amount {price} is within acceptable range", 0.9, CheckCategory.AMOUNT
    )


def check_window_limit(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Spend Window Check"
    ceiling = config.max_window_spend
    projected = ctx.window_spend + ctx.price
    ratio = f"{projected:.2f}/{format_amount(ceiling)}"
    if projected > ceiling:
        return ReasoningStep(
            name, CheckOutcome.FAIL, f"Would exceed window limit: {ratio}", 0.9, CheckCategory.WINDOW_LIMIT
        )
    if projected > ceiling * Decimal("0.9"):
        return ReasoningStep(
            name, CheckOutcome.WARN, f"Approaching window limit: {ratio}", 0.7, CheckCategory.WINDOW_LIMIT
        )
    return ReasoningStep(name, CheckOutcome.PASS, f"Window spending OK: {ratio}", 0.7, CheckCategory.WINDOW_LIMIT)


def check_balance(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Balance Check"
    balance = ctx.available_balance
    remaining = balance - ctx.price
    if balance < ctx.price:
        return ReasoningStep(
            name,
            CheckOutcome.FAIL,
            f"Insufficient balance: {balance:.2f} USDT < {format_amount(ctx.price)} needed",
            1.0,
            CheckCategory.BALANCE,
        )
    if remaining < config.min_balance_buffer:
        return ReasoningStep(
            name,
            CheckOutcome.WARN,
            f"Low balance warning: {remaining:.2f} USDT remaining after payment",
            0.8,
            CheckCategory.BALANCE,
        )
    return ReasoningStep(
        name, CheckOutcome.PASS, f"Sufficient balance: {balance:.2f} USDT available", 0.8, CheckCategory.BALANCE
    )


def check_frequency(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Rate Limit Check"
    cap = config.max_orders_per_window
    count = ctx.recent_order_count
    window = _describe_window(config.rate_window_seconds)
    if count >= cap:
        return ReasoningStep(
            name,
            CheckOutcome.FAIL,
            f"Too many orders: {count}/{cap} per {window}",
            config.frequency_fail_weight,
            CheckCategory.FREQUENCY,
        )
    if count >= cap * 0.7:
        return ReasoningStep(
            name,
            CheckOutcome.WARN,
            f"High order frequency: {count}/{cap} per {window}",
            0.5,
            CheckCategory.FREQUENCY,
        )
    return ReasoningStep(
        name, CheckOutcome.PASS, f"Order frequency OK: {count}/{cap} per {window}", 0.5, CheckCategory.FREQUENCY
    )


def check_business_hours(ctx: DecisionContext, config: PolicyConfig) -> ReasoningStep:
    name = "Business Hours Check"
    hour = datetime.fromtimestamp(ctx.current_time, tz=config.tz).hour
    start, end = config.business_hours_start, config.business_hours_end
    if hour < start or hour >= end:
        return ReasoningStep(
            name,
            CheckOutcome.WARN,
            f"Order placed outside business hours ({start}:00-{end}:00 {config.timezone})",
            0.3,
            CheckCategory.TEMPORAL,
        )
    return ReasoningStep(name, CheckOutcome.PASS, "Order placed during business hours", 0.3, CheckCategory.TEMPORAL)


def _describe_window(seconds: float) -> str:
    if seconds == 3600:
        return "hour"
    if seconds % 3600 == 0:
        return f"{int(seconds // 3600)}h"
    return f"{int(seconds)}s"


DEFAULT_CHECKS: tuple[Callable[[DecisionContext, PolicyConfig], ReasoningStep], ...] = (
    check_intent,
    check_amount,
    check_window_limit,
    check_balance,
    check_frequency,
    check_business_hours,
)


# ── Scoring ───────────────────────────────────────────────────────

def compute_confidence(reasoning: tuple[ReasoningStep, ...]) -> float:
    total_weight = sum(s.weight for s in reasoning)
    if total_weight <= 0:
        return 0.0
    return round(sum(s.score for s in reasoning) / total_weight, 2)


def assess_risk(reasoning: tuple[ReasoningStep, ...], confidence: float) -> RiskTier:
    warns = sum(1 for s in reasoning if s.outcome == CheckOutcome.WARN)
    if any(s.outcome == CheckOutcome.FAIL for s in reasoning):
        return RiskTier.CRITICAL
    if warns >= 3:
        return RiskTier.HIGH
    if warns >= 1 or confidence < 0.7:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def make_decision(
    reasoning: tuple[ReasoningStep, ...],
    confidence: float,
    intent: Intent,
    config: PolicyConfig,
) -> Decision:
    if any(s.outcome == CheckOutcome.FAIL and s.weight >= CRITICAL_FAIL_WEIGHT for s in reasoning):
        return Decision.REJECT
    if intent == Intent.CANCEL_ORDER:
        return Decision.REJECT
    if confidence >= config.auto_approve_threshold:
        return Decision.APPROVE
    if confidence < config.auto_reject_threshold:
        return Decision.REJECT
    if sum(1 for s in reasoning if s.outcome == CheckOutcome.WARN) >= 2:
        return Decision.CONFIRM
    return Decision.APPROVE


def build_suggestions(reasoning: tuple[ReasoningStep, ...]) -> tuple[str, ...]:
    suggestions: list[str] = []
    for step in reasoning:
        if step.outcome != CheckOutcome.FAIL:
            continue
        text = SUGGESTIONS.get(step.category)
        if text and text not in suggestions:
            suggestions.append(text)
    return tuple(suggestions)


def build_summary(decision: Decision, reasoning: tuple[ReasoningStep, ...], ctx: DecisionContext) -> str:
    passes = sum(1 for s in reasoning if s.outcome == CheckOutcome.PASS)
    warns = sum(1 for s in reasoning if s.outcome == CheckOutcome.WARN)
    price = format_amount(ctx.price)
    if decision == Decision.APPROVE:
        return (
            f"Payment APPROVED: {ctx.item} for {price}. "
            f"Passed {passes}/{len(reasoning)} checks with {warns} warning(s)."
        )
    if decision == Decision.REJECT:
        reasons = "; ".join(s.detail for s in reasoning if s.outcome == CheckOutcome.FAIL)
        return f"Payment REJECTED: {reasons or 'confidence below threshold'}"
    if decision == Decision.CONFIRM:
        return (
            f"CONFIRMATION REQUIRED: {warns} warning(s) detected. "
            f"Please review before proceeding with {price} payment."
        )
    return "Payment DELAYED: Suggest waiting before processing this order."


# ── Engine ────────────────────────────────────────────────────────

class DecisionEngine:
    """Deterministic weighted-rule evaluator.

    When a policy store is given, ``evaluate()`` registers the attempt with
    its frequency tracker. The engine holds no other state between calls.
    """

    def __init__(self, config: Optional[PolicyConfig] = None, store: Any = None):
        self.config = config or PolicyConfig()
        self.store = store
        self.checks = DEFAULT_CHECKS

    def evaluate(self, context: DecisionContext) -> DecisionResult:
        if not isinstance(context, DecisionContext):
            raise ValidationError("evaluate() requires a DecisionContext", field="context")

        started = time.perf_counter()
        reasoning = tuple(check(context, self.config) for check in self.checks)

        if self.store is not None:
            self.store.record(context.user_identity, now=context.current_time)

        confidence = compute_confidence(reasoning)
        decision = make_decision(reasoning, confidence, context.intent, self.config)
        result = DecisionResult(
            decision=decision,
            confidence=confidence,
            risk_tier=assess_risk(reasoning, confidence),
            reasoning=reasoning,
            summary=build_summary(decision, reasoning, context),
            suggestions=build_suggestions(reasoning),
            evaluated_at=time.time(),
            evaluation_duration_ms=(time.perf_counter() - started) * 1000,
        )

        logger.info(
            "Decision %s for %s (%s): confidence=%.2f risk=%s",
            result.decision.value.upper(),
            context.user_identity,
            format_amount(context.price),
            result.confidence,
            result.risk_tier.value,
        )
        for step in reasoning:
            logger.debug("  [%s] %s: %s", step.outcome.value, step.check_name, step.detail)
        return result

    def describe(self) -> dict:
        """Active thresholds, suitable for display."""
        return {
            "max_single_payment": str(self.config.max_single_payment),
            "max_window_spend": str(self.config.max_window_spend),
            "spend_window_seconds": self.config.spend_window_seconds,
            "max_orders_per_window": self.config.max_orders_per_window,
            "rate_window_seconds": self.config.rate_window_seconds,
            "min_balance_buffer": str(self.config.min_balance_buffer),
            "auto_approve_threshold": self.config.auto_approve_threshold,
            "auto_reject_threshold": self.config.auto_reject_threshold,
            "business_hours": f"{self.config.business_hours_start}:00-{self.config.business_hours_end}:00",
            "timezone": self.config.timezone,
            "frequency_fail_weight": self.config.frequency_fail_weight,
        }

    def with_overrides(self, **changes) -> "DecisionEngine":
        return DecisionEngine(config=self.config.with_overrides(**changes), store=self.store)
