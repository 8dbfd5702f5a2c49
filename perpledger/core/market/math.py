"""Fixed-point arithmetic for the market accounting core.

Every function is stateless and operates on plain Python ints scaled by
``UNIT`` (six decimals).

Rounding is explicit: Python's ``//`` floors toward -∞. Amounts credited to a
party use the floor helpers, amounts debited use ``mul_up``/``div_up`` so the
market never pays out more than it collects.
"""

from __future__ import annotations

UNIT: int = 1_000_000  # 1e6
SECONDS_PER_YEAR: int = 31_536_000


# -- Basic helpers -----------------------------------------------------------

def abs_val(x: int) -> int:
    """Absolute value of *x*."""
    return x if x >= 0 else -x


def sign(x: int) -> int:
    return (x > 0) - (x < 0)


def clamp(x: int, lo: int, hi: int) -> int:
    """Clamp *x* into ``[lo, hi]``."""
    return lo if x < lo else hi if x > hi else x


def ceil_div(a: int, b: int) -> int:
    """Division rounded toward +∞."""
    return -((-a) // b)


def div_away(a: int, b: int) -> int:
    """Division rounded away from zero (``b > 0``)."""
    return a // b if a < 0 else ceil_div(a, b)


# -- Fixed-point products ----------------------------------------------------

def mul(a: int, b: int) -> int:
    """``a * b`` for two UNIT-scaled values, floored."""
    return a * b // UNIT


def mul_up(a: int, b: int) -> int:
    """``a * b`` for two non-negative UNIT-scaled values, rounded up."""
    return ceil_div(a * b, UNIT)


def div(a: int, b: int) -> int:
    """``a / b`` for two UNIT-scaled values, floored. Zero when ``b == 0``."""
    if b == 0:
        return 0
    return a * UNIT // b


def div_up(a: int, b: int) -> int:
    """``a / b`` rounded up. Zero when ``b == 0``."""
    if b == 0:
        return 0
    return ceil_div(a * UNIT, b)


def mul_div(a: int, b: int, c: int) -> int:
    """``a * b / c`` floored, no intermediate rounding. Zero when ``c == 0``."""
    if c == 0:
        return 0
    return a * b // c


# -- Parsing -----------------------------------------------------------------

def to_fixed(value: int | str) -> int:
    """Parse an int or an exact decimal string (``"-0.25"``) into fixed point.

    Ints are taken as already scaled. Floats are rejected so configuration can
    never smuggle in a binary rounding error.
    """
    if isinstance(value, bool):
        raise TypeError("booleans are not fixed-point values")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise TypeError("floats are not allowed; use a decimal string")
    if not isinstance(value, str):
        raise TypeError(f"unsupported fixed-point value: {value!r}")

    text = value.strip().replace("_", "")
    negative = text.startswith("-")
    if text[:1] in ("-", "+"):
        text = text[1:]
    whole, _, frac = text.partition(".")
    if not whole and not frac:
        raise ValueError(f"not a decimal number: {value!r}")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (frac and not frac.isdigit()):
        raise ValueError(f"not a decimal number: {value!r}")
    if len(frac) > 6:
        if frac[6:].strip("0"):
            raise ValueError(f"more than 6 decimals: {value!r}")
        frac = frac[:6]
    scaled = int(whole) * UNIT + int(frac.ljust(6, "0") or "0")
    return -scaled if negative else scaled


def format_fixed(value: int) -> str:
    """Render a fixed-point value as a decimal string (inverse of ``to_fixed``)."""
    neg = value < 0
    whole, frac = divmod(abs_val(value), UNIT)
    text = f"{whole}.{frac:06d}".rstrip("0").rstrip(".")
    return "-" + text if neg else text
