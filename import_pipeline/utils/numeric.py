"""
Permissive numeric parsing for spreadsheet cells.

Quantities fall back to a default instead of failing the row; prices that
cannot be read return None and are rejected later by validation.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

# Upper bound of a PostgreSQL INTEGER column
MAX_INT = 2_147_483_647

# Largest value a NUMERIC(15, 2) price column holds
MAX_DECIMAL = Decimal("9999999999999.99")

_CURRENCY_PREFIX = re.compile(r"^(rp\.?|idr|usd|\$)", re.IGNORECASE)
_GROUPED_THOUSANDS = re.compile(r"^-?\d{1,3}([.,]\d{3})+$")


def parse_int(
    value: Any,
    default: Optional[int] = None,
    minimum: Optional[int] = None,
    maximum: int = MAX_INT,
) -> Optional[int]:
    """
    Parse an integer cell.

    Args:
        value: Raw cell value (str, int, float or None)
        default: Returned when the value is empty, unreadable or out of range
        minimum: Smallest accepted value (inclusive)
        maximum: Largest accepted value (inclusive)

    Returns:
        The parsed integer, or default
    """
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, (int, float, Decimal)):
        number = value
    else:
        text = str(value).strip().replace(" ", "")
        if not text:
            return default
        # "1.000" and "1,000" are grouped thousands, not fractions
        if _GROUPED_THOUSANDS.match(text):
            text = text.replace(".", "").replace(",", "")
        try:
            number = Decimal(text)
        except InvalidOperation:
            return default

    try:
        if number != number or number != int(number):
            return default
        result = int(number)
    except (ValueError, OverflowError, InvalidOperation):
        return default

    if minimum is not None and result < minimum:
        return default
    if result > maximum:
        return default
    return result


def parse_decimal(value: Any, maximum: Decimal = MAX_DECIMAL) -> Optional[Decimal]:
    """
    Parse a price cell into a Decimal with two decimal places.

    Accepts currency prefixes (Rp, IDR, $) and thousands separators in either
    convention: "Rp 150.000", "150,000.50" and "150.000,50" all parse. A lone
    separator followed by exactly three digits is read as a thousands
    separator; otherwise it is the decimal point.

    Args:
        value: Raw cell value (str, int, float, Decimal or None)
        maximum: Largest accepted absolute value; anything above it is
            treated as unreadable

    Returns:
        Decimal, or None when the cell is empty, unreadable or out of range
    """
    if value is None or isinstance(value, bool):
        return None

    # Native numeric cells skip the text heuristics
    if isinstance(value, (int, float, Decimal)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return None
        return _bounded(number, maximum)

    text = str(value).strip()
    text = _CURRENCY_PREFIX.sub("", text)
    text = text.replace(" ", "").replace("'", "")
    if not text:
        return None

    has_dot = "." in text
    has_comma = "," in text
    if has_dot and has_comma:
        # Whichever separator comes last is the decimal point
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_dot or has_comma:
        separator = "." if has_dot else ","
        head, _, tail = text.rpartition(separator)
        if text.count(separator) > 1 or len(tail) == 3:
            text = text.replace(separator, "")
        else:
            text = f"{head}.{tail}"

    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return _bounded(number, maximum)


def _bounded(number: Decimal, maximum: Decimal) -> Optional[Decimal]:
    if not number.is_finite():
        return None
    try:
        number = number.quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    if abs(number) > maximum:
        return None
    return number
