"""Rate-limit detection from agent diagnostic output."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "usage limit reached",
    "rate limit",
    "quota exceeded",
    "5-hour limit reached",
    "weekly limit reached",
    "too many requests",
)

# "Your limit will reset at 1pm (Etc/GMT+5)" / "5-hour limit reached ∙ resets 3:30am (UTC)"
_RESET_TIME_RE = re.compile(
    r"resets?\s+(?:at\s+)?"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)?"
    r"(?:\s*\((?P<zone>[^)]+)\))?",
    re.IGNORECASE,
)

DEFAULT_WAIT = timedelta(minutes=5)
RESET_BUFFER = timedelta(seconds=30)
MIN_WAIT = timedelta(seconds=30)
MAX_WAIT = timedelta(hours=6)
_STALE_RESET_TOLERANCE = timedelta(hours=1)


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    """Rate-limit verdict for one line of output."""

    is_rate_limit: bool
    reset_time: datetime | None = None
    raw_message: str = ""
    matched_pattern: str | None = None


class RateLimitDetector:
    """Stateless line scanner and backoff calculator."""

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or _local_now

    def check_line(self, line: str) -> RateLimitInfo:
        pattern = _first_match(line.lower(), _RATE_LIMIT_PATTERNS)
        if pattern is None:
            return RateLimitInfo(is_rate_limit=False)
        return RateLimitInfo(
            is_rate_limit=True,
            reset_time=self._parse_reset_time(line),
            raw_message=line.strip(),
            matched_pattern=pattern,
        )

    def wait_time(self, info: RateLimitInfo) -> timedelta:
        """Pause before retrying: until the reset plus a buffer, within sane bounds."""

        if info.reset_time is None:
            return DEFAULT_WAIT
        remaining = info.reset_time - self._now()
        if remaining <= timedelta(0):
            return DEFAULT_WAIT
        return max(MIN_WAIT, min(remaining + RESET_BUFFER, MAX_WAIT))

    def _parse_reset_time(self, line: str) -> datetime | None:
        match = _RESET_TIME_RE.search(line)
        if match is None:
            return None

        hour = int(match.group("hour"))
        minute = int(match.group("minute") or 0)
        meridiem = (match.group("meridiem") or "").lower()
        if meridiem:
            if not 1 <= hour <= 12:
                return None
            hour = hour % 12 + (12 if meridiem == "pm" else 0)
        elif match.group("minute") is None or hour > 23:
            return None
        if minute > 59:
            return None

        now = self._now()
        zone = _zone_or_none(match.group("zone"))
        local_now = now.astimezone(zone) if zone is not None else now
        reset = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if reset < local_now - _STALE_RESET_TOLERANCE:
            reset += timedelta(days=1)
        return reset


class RateLimitState:
    """Thread-safe record of the last rate limit seen during an execution."""

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._lock = threading.Lock()
        self._now = now or _local_now
        self._detected = False
        self._reset_time: datetime | None = None
        self._last_error = ""

    def mark_detected(self, info: RateLimitInfo) -> None:
        with self._lock:
            self._detected = True
            self._reset_time = info.reset_time
            self._last_error = info.raw_message

    def is_detected(self) -> bool:
        with self._lock:
            return self._detected

    def snapshot(self) -> RateLimitInfo:
        with self._lock:
            return RateLimitInfo(
                is_rate_limit=self._detected,
                reset_time=self._reset_time,
                raw_message=self._last_error,
            )

    def is_reset(self) -> bool:
        with self._lock:
            if not self._detected:
                return False
            return self._reset_time is None or self._now() >= self._reset_time

    def clear(self) -> None:
        with self._lock:
            self._detected = False
            self._reset_time = None
            self._last_error = ""


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _zone_or_none(name: str | None) -> ZoneInfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def _local_now() -> datetime:
    return datetime.now().astimezone()
