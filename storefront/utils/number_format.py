"""Money parsing and rounding helpers (VND, whole units)."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_DOWN
from typing import Union

MONEY_QUANT = Decimal('1')
ZERO = Decimal('0')

Number = Union[int, float, Decimal, str, None]


def to_decimal(value: Number, default: Decimal = ZERO) -> Decimal:
    """
    Convert a JSON-ish number to Decimal without going through binary floats.

    Returns ``default`` for None, empty strings and unparseable values.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default


def round_money(value: Number) -> Decimal:
    """Round half-up to a whole currency unit."""
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def floor_money(value: Number) -> Decimal:
    """Truncate towards zero to a whole currency unit (used for discount shares)."""
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_DOWN)


def money_to_json(value: Decimal) -> Union[int, float]:
    """Serialize a money Decimal as an int when integral, float otherwise."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def parse_quantity(value: Number) -> int:
    """
    Parse a cart quantity.

    Raises:
        ValueError: if the value is not a whole number.
    """
    qty = to_decimal(value, default=None)
    if qty is None or not qty.is_finite() or qty != qty.to_integral_value():
        raise ValueError('Quantity must be a whole number')
    return int(qty)
