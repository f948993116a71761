"""
License key helpers.

Keys look like FOOD-XXXX-XXXX-XXXX where every X group is 2 random bytes
rendered as uppercase hex. Nothing here checks uniqueness; the unique
constraint on licenses.license_key does.
"""
import calendar
import re
import secrets
from datetime import datetime
from typing import List, Optional

from .models import utcnow

KEY_PREFIX = "FOOD"
KEY_GROUPS = 3

_KEY_RE = re.compile(r"^FOOD-[A-F0-9]{4}-[A-F0-9]{4}-[A-F0-9]{4}$")


def generate_license_key() -> str:
    segments = [KEY_PREFIX]
    for _ in range(KEY_GROUPS):
        segments.append(secrets.token_bytes(2).hex().upper())
    return "-".join(segments)


def generate_bulk_license_keys(count: int) -> List[str]:
    return [generate_license_key() for _ in range(count)]


def is_valid_format(license_key) -> bool:
    if not isinstance(license_key, str):
        return False
    # fullmatch so a trailing newline does not slip past "$"
    return _KEY_RE.fullmatch(license_key) is not None


def expiry_from_months(months: int, now: Optional[datetime] = None) -> datetime:
    """
    now + `months` calendar months.

    The day of month is clamped to the end of the target month,
    so Jan 31 + 1 month is Feb 28 (or 29). Time of day is kept.
    """
    if isinstance(months, bool) or not isinstance(months, int) or months < 1:
        raise ValueError(f"months must be a positive integer, got {months!r}")

    start = now or utcnow()
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)
