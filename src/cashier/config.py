"""
Policy configuration.

A single ``PolicyConfig`` feeds the decision engine and the approval stage
so the advisory pre-filter and the authoritative gate agree on limits.
Values can be overridden with ``CASHIER_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields, replace
from decimal import Decimal
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .amounts import to_decimal


ENV_PREFIX = "CASHIER_"
DEFAULT_CURRENCY = "USDT"
DEFAULT_ASSET_REF = "eip155:2368/erc20:0x0ff5393387ad2f9f691fd6fd28e07e3969e27e63"


@dataclass(frozen=True)
class PolicyConfig:
    """Spending limits, rate limits and decision thresholds."""

    max_single_payment: Decimal = Decimal("1.0")
    max_window_spend: Decimal = Decimal("10.0")
    spend_window_seconds: float = 86400.0
    max_orders_per_window: int = 10
    rate_window_seconds: float = 3600.0
    min_balance_buffer: Decimal = Decimal("0.5")
    approval_threshold: Decimal = Decimal("0.5")   # above this: extra scrutiny, logged
    auto_approve_threshold: float = 0.80
    auto_reject_threshold: float = 0.30
    business_hours_start: int = 6
    business_hours_end: int = 23
    timezone: str = "UTC"
    bulk_quantity_threshold: int = 5
    frequency_fail_weight: float = 0.7
    accepted_currencies: tuple[str, ...] = (DEFAULT_CURRENCY,)
    asset_ref: str = DEFAULT_ASSET_REF
    default_merchant: Optional[str] = None

    def __post_init__(self):
        for name in ("max_single_payment", "max_window_spend", "min_balance_buffer", "approval_threshold"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(self, "accepted_currencies", tuple(self.accepted_currencies))

        if self.max_single_payment <= 0:
            raise ValueError("max_single_payment must be > 0")
        if self.max_window_spend <= 0:
            raise ValueError("max_window_spend must be > 0")
        if self.min_balance_buffer < 0:
            raise ValueError("min_balance_buffer must be >= 0")
        if self.spend_window_seconds <= 0 or self.rate_window_seconds <= 0:
            raise ValueError("window lengths must be > 0")
        if self.max_orders_per_window <= 0:
            raise ValueError("max_orders_per_window must be > 0")
        if not 0.0 <= self.auto_reject_threshold <= self.auto_approve_threshold <= 1.0:
            raise ValueError("thresholds must satisfy 0 <= auto_reject <= auto_approve <= 1")
        if not (0 <= self.business_hours_start <= 24 and 0 <= self.business_hours_end <= 24):
            raise ValueError("business hours must be within 0..24")
        if not 0.0 < self.frequency_fail_weight <= 1.0:
            raise ValueError("frequency_fail_weight must be in (0, 1]")
        if not self.accepted_currencies:
            raise ValueError("at least one accepted currency is required")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {self.timezone}") from e

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def with_overrides(self, **changes) -> "PolicyConfig":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, Decimal):
                d[key] = str(value)
        d["accepted_currencies"] = list(self.accepted_currencies)
        return d

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = ENV_PREFIX,
        **overrides,
    ) -> "PolicyConfig":
        """Build a config from ``CASHIER_<FIELD>`` variables.

        Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{prefix}{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_env_value(f.name, raw.strip())
        values.update(overrides)
        return cls(**values)


_DECIMAL_FIELDS = {"max_single_payment", "max_window_spend", "min_balance_buffer", "approval_threshold"}
_FLOAT_FIELDS = {
    "spend_window_seconds",
    "rate_window_seconds",
    "auto_approve_threshold",
    "auto_reject_threshold",
    "frequency_fail_weight",
}
_INT_FIELDS = {"max_orders_per_window", "business_hours_start", "business_hours_end", "bulk_quantity_threshold"}


def _parse_env_value(name: str, raw: str) -> Any:
    try:
        if name in _DECIMAL_FIELDS:
            return to_decimal(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
        if name in _INT_FIELDS:
            return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    if name == "accepted_currencies":
        return tuple(c.strip().upper() for c in raw.split(",") if c.strip())
    return raw
