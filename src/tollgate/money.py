"""Token amount helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any

from .errors import InvalidInputError


USDC_DECIMALS = 6
UINT256_MAX = 2**256 - 1


def parse_base_units(value: Any, field_name: str, allow_zero: bool = False) -> int:
    """Parse an integer or decimal-digit string into base units."""
    if isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be an integer base-unit value")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        digits = value.strip().lstrip("0") or "0"
        if len(digits) > len(str(UINT256_MAX)):
            raise InvalidInputError(f"{field_name} does not fit in uint256")
        parsed = int(digits)
    else:
        raise InvalidInputError(f"{field_name} must be an integer base-unit value")
    if parsed < 0 or (parsed == 0 and not allow_zero):
        raise InvalidInputError(f"{field_name} must be > 0")
    if parsed > UINT256_MAX:
        raise InvalidInputError(f"{field_name} does not fit in uint256")
    return parsed


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    try:
        dec = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidInputError(f"Invalid token amount: {value}") from exc
    if not dec.is_finite():
        raise InvalidInputError(f"Invalid token amount: {value}")
    return dec


def limit_to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a budget limit to base units, rounding down (conservative)."""
    dec = _to_decimal(value).scaleb(decimals).to_integral_value(rounding=ROUND_FLOOR)
    return int(dec)


def base_units_to_decimal(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def format_token_amount(value: int, symbol: str = "USDC", decimals: int = USDC_DECIMALS) -> str:
    """Format base units as e.g. ``0.001000 USDC``."""
    return f"{base_units_to_decimal(value, decimals):.{decimals}f} {symbol}"
