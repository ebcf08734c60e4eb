"""
UGX Currency Module

Ugandan Shillings are the only currency and every stored amount is a whole
number of shillings. Intermediate rational math uses Decimal; results are
rounded half-up to an int before they are stored. NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28

MAX_AMOUNT = 2 ** 53 - 1  # Largest amount carried on the wire


class Currency(Enum):
    """ISO 4217 code with precision info"""
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value) -> Decimal:
    """Convert int, str or Decimal to Decimal without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("float is not accepted for monetary math")
    return Decimal(str(value))


def round_ugx(value) -> int:
    """Round half-up to whole shillings"""
    return int(to_decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division for positive denominators"""
    return -(-numerator // denominator)


def is_whole_amount(value) -> bool:
    """True for ints (not bools) inside the wire range"""
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= MAX_AMOUNT


def format_ugx(amount: int) -> str:
    """Format for display, e.g. 'UGX 1,000,000'"""
    return f"{Currency.UGX.code} {amount:,}"
