"""Amount conversion helpers using fixed micro-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_UNIT = 1_000_000
_UNIT_QUANT = Decimal("0.000001")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Coerce a price-like value to a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1. Raises ``ValueError`` for
    anything non-numeric, NaN or infinite.
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not an amount")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a numeric amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return dec


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to micro-units, rounding up (conservative)."""
    dec = to_decimal(value).quantize(_UNIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_UNIT)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a limit to micro-units, rounding down (conservative)."""
    dec = to_decimal(value).quantize(_UNIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def format_amount(value: Decimal | float | int | str, currency: str = "USDT") -> str:
    """Render an amount without trailing zeros, e.g. ``0.03 USDT``."""
    dec = to_decimal(value)
    text = format(dec.normalize(), "f") if dec != 0 else "0"
    return f"{text} {currency}"


def format_micros(value: int, currency: str = "USDT") -> str:
    return format_amount(micros_to_decimal(value), currency)
