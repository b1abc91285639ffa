"""Tests for policy configuration."""

from decimal import Decimal

import pytest

from cashier.config import DEFAULT_ASSET_REF, PolicyConfig


def test_defaults():
    config = PolicyConfig()
    assert config.max_single_payment == Decimal("1.0")
    assert config.max_window_spend == Decimal("10.0")
    assert config.max_orders_per_window == 10
    assert config.frequency_fail_weight == 0.7
    assert config.accepted_currencies == ("USDT",)
    assert config.asset_ref == DEFAULT_ASSET_REF
    assert config.tz.key == "UTC"


def test_amounts_are_coerced_to_decimal():
    config = PolicyConfig(max_single_payment="2.5", max_window_spend=20)
    assert config.max_single_payment == Decimal("2.5")
    assert config.max_window_spend == Decimal("20")


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_single_payment": "0"},
        {"max_window_spend": "-1"},
        {"min_balance_buffer": "-0.1"},
        {"spend_window_seconds": 0},
        {"max_orders_per_window": 0},
        {"auto_reject_threshold": 0.9, "auto_approve_threshold": 0.8},
        {"business_hours_end": 25},
        {"frequency_fail_weight": 0.0},
        {"accepted_currencies": ()},
        {"timezone": "Mars/Olympus"},
        {"max_single_payment": "lots"},
    ],
)
def test_invalid_values_raise(overrides):
    with pytest.raises(ValueError):
        PolicyConfig(**overrides)


def test_from_env():
    env = {
        "CASHIER_MAX_SINGLE_PAYMENT": "0.25",
        "CASHIER_MAX_ORDERS_PER_WINDOW": "3",
        "CASHIER_FREQUENCY_FAIL_WEIGHT": "0.9",
        "CASHIER_ACCEPTED_CURRENCIES": "usdt, usdc",
        "CASHIER_TIMEZONE": "Europe/Berlin",
        "CASHIER_DEFAULT_MERCHANT": "0x2222222222222222222222222222222222222222",
        "CASHIER_BUSINESS_HOURS_START": "",
        "UNRELATED": "ignored",
    }
    config = PolicyConfig.from_env(env)
    assert config.max_single_payment == Decimal("0.25")
    assert config.max_orders_per_window == 3
    assert config.frequency_fail_weight == 0.9
    assert config.accepted_currencies == ("USDT", "USDC")
    assert config.timezone == "Europe/Berlin"
    assert config.default_merchant.startswith("0x2222")
    assert config.business_hours_start == 6


def test_from_env_keyword_overrides_win():
    config = PolicyConfig.from_env({"CASHIER_MAX_ORDERS_PER_WINDOW": "3"}, max_orders_per_window=7)
    assert config.max_orders_per_window == 7


def test_from_env_custom_prefix():
    config = PolicyConfig.from_env({"SHOP_MAX_WINDOW_SPEND": "50"}, prefix="SHOP_")
    assert config.max_window_spend == Decimal("50")


def test_from_env_rejects_garbage():
    with pytest.raises(ValueError, match="CASHIER_MAX_ORDERS_PER_WINDOW"):
        PolicyConfig.from_env({"CASHIER_MAX_ORDERS_PER_WINDOW": "many"})


def test_with_overrides_and_to_dict():
    base = PolicyConfig()
    tighter = base.with_overrides(max_single_payment=Decimal("0.1"))
    assert base.max_single_payment == Decimal("1.0")
    d = tighter.to_dict()
    assert d["max_single_payment"] == "0.1"
    assert d["accepted_currencies"] == ["USDT"]
