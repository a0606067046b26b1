import re
import time
from datetime import datetime, timezone, timedelta
from typing import Optional

from .errors import DeadlineExceeded

MAX_ERROR_LEN = 1000

_REDACT_PATTERNS = (
    re.compile(r"\b(Bot|Bearer)\s+\S+"),
    re.compile(r"(?i)\b(token|api_key|apikey|key)=[^&\s]+"),
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z' (fixed width, sorts as text)."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def days_ago(now: datetime, days: int) -> datetime:
    return now - timedelta(days=days)


def trim_error(text: str) -> str:
    text = (text or "").strip()
    return text[:MAX_ERROR_LEN]


def redact(text: str) -> str:
    """Mask credential-looking substrings before showing an error to a user."""
    if not text:
        return text
    text = _REDACT_PATTERNS[0].sub(lambda m: f"{m.group(1)} [REDACTED]", text)
    return _REDACT_PATTERNS[1].sub(lambda m: f"{m.group(1)}=[REDACTED]", text)


class Deadline:
    """Wall-clock budget for one command; each external call takes a slice of it."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self, cap: Optional[float] = None) -> float:
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise DeadlineExceeded(f"command deadline of {self.seconds:g}s exceeded")
        if cap is not None:
            return min(left, cap)
        return left
