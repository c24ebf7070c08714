"""
HR Loan Ledger - Month Keys

Month keys are zero-padded ``YYYY-MM`` strings. They sort chronologically as
plain strings, which the ordered per-month maps rely on.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List

from hrloans.utils.error_handling import InvalidMonthKeyException

_MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})$")


def parse_month_key(value: Any) -> str:
    """
    Normalize a month to ``YYYY-MM``.

    Accepts ``date``/``datetime`` objects and strings such as ``2025-3`` or
    ``2025-03``. Raises ``ValueError`` for anything else so it can be used as a
    pydantic validator.
    """
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return f"{value.year:04d}-{value.month:02d}"
    if isinstance(value, str):
        match = _MONTH_KEY_PATTERN.match(value.strip())
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            if 1 <= month <= 12:
                return f"{year:04d}-{month:02d}"
    raise ValueError(f"invalid month key {value!r}, expected YYYY-MM")


def normalize_month_key(value: Any, field: str = "month") -> str:
    """Normalize a month key, raising ``InvalidMonthKeyException`` on bad input."""
    try:
        return parse_month_key(value)
    except ValueError:
        raise InvalidMonthKeyException(value, field) from None


def month_key_for(day: date) -> str:
    """Month key containing the given date."""
    return f"{day.year:04d}-{day.month:02d}"


def add_months(month_key: str, count: int) -> str:
    """Shift a month key by ``count`` months (may be negative)."""
    year, month = (int(part) for part in month_key.split("-"))
    index = year * 12 + (month - 1) + count
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def months_between(start: str, end: str) -> int:
    """Number of months from ``start`` to ``end`` (negative if ``end`` is earlier)."""
    start_year, start_month = (int(part) for part in start.split("-"))
    end_year, end_month = (int(part) for part in end.split("-"))
    return (end_year - start_year) * 12 + (end_month - start_month)


def month_range(start: str, count: int) -> List[str]:
    """``count`` consecutive month keys beginning at ``start``."""
    return [add_months(start, offset) for offset in range(count)]


def ordered_month_map(value: Any) -> Dict[str, Any]:
    """
    Validate a per-month mapping.

    Keys are normalized to ``YYYY-MM``; two input keys normalizing to the same
    month are rejected, and the result is sorted by month.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("per-month entries must be a mapping of YYYY-MM to record")
    normalized: Dict[str, Any] = {}
    for raw_key, entry in value.items():
        key = parse_month_key(raw_key)
        if key in normalized:
            raise ValueError(f"duplicate entry for month {key}")
        normalized[key] = entry
    return dict(sorted(normalized.items()))
