"""Shared helpers: stored timestamps, input checks, admin key comparison."""
import hmac
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

# one @, no whitespace, a dot in the domain part
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

LIST_DEFAULT_LIMIT = 100
LIST_MAX_LIMIT = 500


def now_ts() -> float:
    """Epoch seconds. Every stored timestamp comes from here."""
    return time.time()


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Any) -> bool:
    if not email or not isinstance(email, str):
        return False
    return _EMAIL.match(email.strip()) is not None


def ct_equal(given: Optional[str], expected: str) -> bool:
    if not given:
        return False
    return hmac.compare_digest(given.encode(), expected.encode())


def parse_limit(value: Any, default: int = LIST_DEFAULT_LIMIT,
                maximum: int = LIST_MAX_LIMIT) -> int:
    # garbage or non-positive -> default, large -> capped
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return min(parsed, maximum)
