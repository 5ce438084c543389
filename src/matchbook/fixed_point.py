"""Checked fixed-point integer arithmetic.

All ledger amounts are non-negative integers bounded by MAX_AMOUNT.
Accumulation that would leave [0, MAX_AMOUNT] fails the whole call
instead of wrapping or truncating.
"""

from __future__ import annotations

from matchbook.errors import AmountOverflow, NegativeAmount, NonIntegerAmount

# Saturation width of every stored amount.
MAX_AMOUNT = 2**256 - 1

# Fixed-point unit for voting power and currency multipliers.
WAD = 10**18


def require_amount(value: int, field: str = "amount") -> int:
    """Validate a caller-supplied amount: an int in [0, MAX_AMOUNT]."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise NonIntegerAmount(
            f"{field} must be an int, got {type(value).__name__}", field=field, value=value,
        )
    if value < 0:
        raise NegativeAmount(f"{field} must not be negative", field=field, value=value)
    if value > MAX_AMOUNT:
        raise AmountOverflow(f"{field} exceeds maximum amount", field=field, value=value)
    return value


def checked_add(a: int, b: int, field: str = "amount") -> int:
    result = a + b
    if result > MAX_AMOUNT:
        raise AmountOverflow(f"{field} overflow on add", field=field, lhs=a, rhs=b)
    return result


def checked_sub(a: int, b: int, field: str = "amount") -> int:
    if b > a:
        raise AmountOverflow(f"{field} underflow on subtract", field=field, lhs=a, rhs=b)
    return a - b


def checked_mul(a: int, b: int, field: str = "amount") -> int:
    result = a * b
    if result > MAX_AMOUNT:
        raise AmountOverflow(f"{field} overflow on multiply", field=field, lhs=a, rhs=b)
    return result


def mul_div(a: int, b: int, denominator: int, field: str = "amount") -> int:
    """Compute floor(a * b / denominator).

    The intermediate product must itself fit the saturation width.
    """
    if denominator == 0:
        raise ZeroDivisionError(f"{field}: division by zero")
    return checked_mul(a, b, field) // denominator


def mul_wad_down(a: int, b: int, field: str = "amount") -> int:
    """Multiply by a WAD-scaled factor, rounding down."""
    return mul_div(a, b, WAD, field)
