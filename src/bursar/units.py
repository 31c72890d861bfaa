"""Unit conversion helpers for 18-decimal token and native amounts."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, localcontext


DECIMALS = 18
UNIT = 10**DECIMALS
GWEI = 10**9
_QUANT = Decimal(1).scaleb(-DECIMALS)
# Wide enough for any uint256 amount plus the 18 fractional digits.
_PRECISION = 100


def to_base_units(value: Decimal | float | int | str) -> int:
    """Convert a whole-unit amount to base units, rounding down."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        dec = Decimal(str(value)).quantize(_QUANT, rounding=ROUND_FLOOR)
        return int(dec * UNIT)


def from_base_units(value: int) -> Decimal:
    """Convert integer base units to a Decimal whole-unit amount."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (Decimal(value) / Decimal(UNIT)).quantize(_QUANT)


def tokens(value: Decimal | float | int | str) -> int:
    """Custodial token amount in base units."""
    return to_base_units(value)


def native(value: Decimal | float | int | str) -> int:
    """Native currency amount in base units (wei)."""
    return to_base_units(value)


def gwei(value: Decimal | float | int | str) -> int:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int(Decimal(str(value)) * GWEI)


def format_tokens(value: int, symbol: str = "OMTHB") -> str:
    """Format base units for display."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return f"{from_base_units(value).normalize():f} {symbol}"
