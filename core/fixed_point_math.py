"""
Fixed-point math for the Fluid Protocol model.

All amounts in the core are Python ints scaled by DECIMAL_PRECISION (18 digits).
The helpers below keep every intermediate inside the unsigned 256-bit range and
fail loudly instead of wrapping or going negative.

Rounding Behavior:
    - div / mul_div round down unless told otherwise
    - dec_mul rounds half up: (x * y + DECIMAL_PRECISION // 2) // DECIMAL_PRECISION
    - dec_pow chains dec_mul, so it inherits half-up rounding per step
"""

import math
from decimal import Decimal
from enum import Enum

from protocol_errors import DivisionByZero, MathOverflowError, MathUnderflowError

DECIMAL_PRECISION = 10**18
HALF_DECIMAL_PRECISION = DECIMAL_PRECISION // 2

# NICR is scaled by 1e20 so that it stays meaningful for small collateral amounts
NICR_PRECISION = 10**20

MAX_UINT256 = 2**256 - 1

# 1000 years worth of minutes; larger exponents would overflow dec_pow
MAX_POW_EXPONENT = 525_600_000


class Rounding(Enum):
    DOWN = 0
    UP = 1
    HALF_UP = 2


def check_uint(value: int) -> int:
    """Returns value if it is a valid uint256, raises otherwise."""
    if value < 0:
        raise MathUnderflowError(f"Arithmetic underflow: {value}")
    if value > MAX_UINT256:
        raise MathOverflowError("Arithmetic overflow")
    return value


def add(a: int, b: int) -> int:
    return check_uint(a + b)


def sub(a: int, b: int) -> int:
    if b > a:
        raise MathUnderflowError(f"Arithmetic underflow: {a} - {b}")
    return a - b


def mul(a: int, b: int) -> int:
    return check_uint(a * b)


def div(a: int, b: int, rounding: Rounding = Rounding.DOWN) -> int:
    """Divides a by b with explicit rounding."""
    if b == 0:
        raise DivisionByZero("Division by zero")
    quotient, remainder = divmod(check_uint(a), check_uint(b))
    if rounding == Rounding.UP and remainder > 0:
        quotient += 1
    elif rounding == Rounding.HALF_UP and remainder * 2 >= b:
        quotient += 1
    return quotient


def mul_div(a: int, b: int, c: int, rounding: Rounding = Rounding.DOWN) -> int:
    """
    Computes a * b / c with the product checked against the uint256 range.

    Args:
        a: First factor
        b: Second factor
        c: Divisor
        rounding: How to round the quotient

    Returns:
        The rounded quotient
    """
    return div(mul(a, b), c, rounding)


def dec_mul(x: int, y: int) -> int:
    """Multiplies two fixed-point values, rounding half up."""
    return add(mul(x, y), HALF_DECIMAL_PRECISION) // DECIMAL_PRECISION


def dec_pow(base: int, minutes: int) -> int:
    """
    Raises a fixed-point base to an integer power by repeated squaring.

    The exponent is capped at MAX_POW_EXPONENT. Used for time-based decay, where
    the exponent is a number of minutes, so the cap corresponds to 1000 years.

    Args:
        base: Fixed-point base (1e18 == 1.0)
        minutes: Non-negative integer exponent

    Returns:
        base ** minutes as a fixed-point value
    """
    if minutes < 0:
        raise MathUnderflowError("Negative exponent")
    n = min(minutes, MAX_POW_EXPONENT)
    if n == 0:
        return DECIMAL_PRECISION

    y = DECIMAL_PRECISION
    x = base
    while n > 1:
        if n % 2 == 0:
            x = dec_mul(x, x)
            n //= 2
        else:
            y = dec_mul(x, y)
            x = dec_mul(x, x)
            n = (n - 1) // 2
    return dec_mul(x, y)


def sqrt(value: int) -> int:
    """Integer square root, rounded down."""
    return math.isqrt(check_uint(value))


def fixed_sqrt(value: int) -> int:
    """Square root of a fixed-point value, returned in fixed point."""
    return sqrt(mul(value, DECIMAL_PRECISION))


def compute_cr(coll: int, debt: int, price: int) -> int:
    """Collateral ratio, in fixed point. MAX_UINT256 stands for an infinite ratio."""
    if debt > 0:
        return mul_div(coll, price, debt)
    return MAX_UINT256


def compute_nominal_cr(coll: int, debt: int) -> int:
    """Price-independent collateral ratio scaled by NICR_PRECISION."""
    if debt > 0:
        return mul_div(coll, NICR_PRECISION, debt)
    return MAX_UINT256


def to_fixed(value) -> int:
    """
    Converts a human-readable amount to an 18-digit fixed-point int.

    Strings and ints are converted exactly; floats go through their shortest
    repr, so to_fixed(0.1) == 10**17.
    """
    if isinstance(value, float):
        # float() first: numpy scalars have their own repr
        value = repr(float(value))
    return int(Decimal(value) * DECIMAL_PRECISION)


def from_fixed(value: int) -> float:
    """Converts a fixed-point int back to a float for reporting."""
    return value / DECIMAL_PRECISION
