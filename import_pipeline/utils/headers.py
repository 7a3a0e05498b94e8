"""
Header and cell normalization helpers shared by the parser and the alias tables.
"""
import re
from datetime import date, datetime
from typing import Any, Optional

_HEADER_NOISE = re.compile(r"[\s_\-]+")


def normalize_header(value: Any) -> str:
    """
    Normalize a header cell for alias lookup.

    Matching is case-insensitive and ignores whitespace, underscores and
    hyphens, so "Kode Item", "kode_item" and "KODE-ITEM" all compare equal.
    """
    if value is None:
        return ""
    return _HEADER_NOISE.sub("", str(value)).lower()


def cell_to_text(value: Any) -> Optional[str]:
    """
    Convert a raw CSV or workbook cell to trimmed text.

    Returns None for empty cells. Integral floats lose their ".0" suffix so
    item codes stored as numbers in a workbook keep their written form.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    return text or None


def sanitize_text(value: Any, max_length: int = 255) -> Optional[str]:
    """
    Convert a cell to text that fits a VARCHAR(max_length) column.

    - Trims whitespace as cell_to_text does
    - Truncates to max_length characters
    - Returns None for empty values

    Args:
        value: Raw cell value
        max_length: Width of the target column (default 255)

    Returns:
        Sanitized string or None
    """
    text = cell_to_text(value)
    if text is None:
        return None
    if len(text) > max_length:
        text = text[:max_length].rstrip()
    return text or None
