import hmac
import re
import time
from datetime import datetime, timezone
from typing import Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HHMM_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


# ----------------------------
# Time
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    """Epoch seconds to a UTC ISO-8601 string; None passes through."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def iso_now() -> str:
    return to_iso(now_ts())


def parse_iso(value: str) -> datetime:
    # JS Date.toISOString() ends in "Z"; naive stamps are taken as UTC
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ----------------------------
# Input checks
# ----------------------------
def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email.strip()) is not None


def is_valid_hhmm(value: str) -> bool:
    return HHMM_RE.match(value) is not None


def ct_equal(a: str, b: str) -> bool:
    # signatures and shared secrets
    return hmac.compare_digest(a.encode(), b.encode())
