"""
Formatting helpers for user-facing messages.
Amounts are shown in Vietnamese style: dot thousands separator, no decimals.
"""
from decimal import Decimal, InvalidOperation
from typing import Union


def num_vn(value: Union[int, float, Decimal, str, None]) -> str:
    """
    Format a number with dot thousands separators and no decimals.

    Examples:
        num_vn(1500) -> "1.500"
        num_vn(2000000) -> "2.000.000"
        num_vn(None) -> "-"
    """
    if value is None or value == "":
        return "-"

    try:
        num = Decimal(str(value)).quantize(Decimal('1'))
    except (InvalidOperation, ValueError, TypeError):
        return "-"

    sign = "-" if num < 0 else ""
    integer_part = str(abs(num))

    # Reverse, group by 3, reverse again
    reversed_int = integer_part[::-1]
    groups = [reversed_int[i:i+3] for i in range(0, len(reversed_int), 3)]
    return f"{sign}{'.'.join(groups)[::-1]}"


def money_vnd(value: Union[int, float, Decimal, str, None]) -> str:
    """
    Format a money amount in VND.

    Examples:
        money_vnd(50000) -> "50.000 ₫"
    """
    formatted = num_vn(value)
    if formatted == "-":
        return formatted
    return f"{formatted} ₫"
