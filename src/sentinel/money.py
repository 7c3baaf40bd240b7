"""Token amount helpers using fixed 18-decimal base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR


TOKEN_DECIMALS = 18
_DISPLAY_QUANT = Decimal("0.01")


def parse_amount(value: Decimal | float | int | str) -> Decimal:
    """Parse a token amount, rejecting non-numeric input.

    Floats are routed through ``str`` so ``0.1`` stays ``Decimal("0.1")``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def to_base_units(value: Decimal | float | int | str, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a token amount to integer base units, rounding down (conservative)."""
    dec = parse_amount(value)
    scaled = (dec * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
    return int(scaled)


def format_amount(value: Decimal | float | int | str, currency: str = "MNEE") -> str:
    """Format a token amount for display."""
    dec = parse_amount(value)
    if dec == dec.to_integral_value():
        return f"{int(dec):,} {currency}"
    return f"{dec.quantize(_DISPLAY_QUANT, rounding=ROUND_FLOOR):,} {currency}"
