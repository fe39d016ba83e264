"""ADSYNC — Rate-Limit Classifier & Backoff Registry.

Decides whether a failed platform call was a rate limit, how severe it is and
how long to wait. State is kept per (platform, account) in memory:

- every classified event sets a reset time and grows the backoff multiplier
  (x1.5 per event, capped at 4),
- ``mark_success`` resets the multiplier but leaves an unexpired reset time
  in place, so callers must still honour ``is_currently_limited``,
- expired entries are removed lazily on the next query.

One registry is built per process (see ``app.main``) and handed to every
component that talks to the platform.
"""

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from app.core.logging import get_logger

logger = get_logger("rate_limits")

MIN_WAIT_SECONDS = 60
BACKOFF_GROWTH = 1.5
MAX_BACKOFF_MULTIPLIER = 4.0


class LimitType(str, Enum):
    USER = "user"
    APP = "app"
    HOURLY = "hourly"
    GENERIC = "generic"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_CAP_SECONDS: Dict[Severity, int] = {
    Severity.HIGH: 7200,
    Severity.MEDIUM: 3600,
    Severity.LOW: 3600,
}


@dataclass(frozen=True)
class RateLimitRule:
    limit_type: LimitType
    severity: Severity
    base_wait_seconds: int
    error_codes: Tuple[int, ...] = ()
    status_codes: Tuple[int, ...] = ()
    message_patterns: Tuple[str, ...] = ()

    def matches(
        self, error_code: Optional[int], message: str, status_code: Optional[int]
    ) -> bool:
        if error_code is not None and error_code in self.error_codes:
            return True
        if status_code is not None and status_code in self.status_codes:
            return True
        return any(p in message for p in self.message_patterns)


PLATFORM_RULES: Dict[str, List[RateLimitRule]] = {
    "meta": [
        RateLimitRule(LimitType.USER, Severity.HIGH, 3600, error_codes=(17,)),
        RateLimitRule(LimitType.APP, Severity.MEDIUM, 1800, error_codes=(80004,)),
        RateLimitRule(LimitType.HOURLY, Severity.MEDIUM, 3600, error_codes=(613,)),
    ],
}

GENERIC_RULES: List[RateLimitRule] = [
    RateLimitRule(
        LimitType.GENERIC,
        Severity.LOW,
        300,
        status_codes=(429,),
        message_patterns=("too many requests", "rate limit"),
    ),
    RateLimitRule(LimitType.GENERIC, Severity.LOW, 60, message_patterns=("throttled",)),
]


@dataclass
class RateLimitState:
    """An active limit for one (platform, account) pair."""

    platform: str
    account_id: str
    limit_type: LimitType
    severity: Severity
    wait_seconds: int
    reset_time: datetime
    backoff_multiplier: float
    error_code: Optional[int] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def wait_time_minutes(self) -> int:
        return max(1, math.ceil(self.wait_seconds / 60))

    @property
    def message(self) -> str:
        return (
            f"{self.platform.capitalize()} rate limit reached ({self.limit_type.value}). "
            f"Try again in about {self.wait_time_minutes} minutes."
        )

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, math.ceil((self.reset_time - now).total_seconds()))

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        return {
            "platform": self.platform,
            "account_id": self.account_id,
            "limit_type": self.limit_type.value,
            "severity": self.severity.value,
            "error_code": self.error_code,
            "reset_time": self.reset_time.isoformat(),
            "remaining_seconds": self.remaining_seconds(now),
            "backoff_multiplier": self.backoff_multiplier,
        }


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """Seconds from a ``Retry-After`` header (delta-seconds form only)."""
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                seconds = int(str(value).strip())
            except ValueError:
                return None
            return seconds if seconds > 0 else None
    return None


class RateLimitRegistry:
    """In-memory rate-limit state keyed by (platform, account id)."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._states: Dict[Tuple[str, str], RateLimitState] = {}
        self._multipliers: Dict[Tuple[str, str], float] = {}

    def match_rule(
        self,
        platform: str,
        error_code: Optional[int],
        message: str,
        status_code: Optional[int] = None,
    ) -> Optional[RateLimitRule]:
        """First platform rule, then generic rule, matching the error."""
        message = (message or "").lower()
        for rule in PLATFORM_RULES.get(platform, []) + GENERIC_RULES:
            if rule.matches(error_code, message, status_code):
                return rule
        return None

    def classify(
        self,
        platform: str,
        account_id: str,
        error_code: Optional[int] = None,
        error_message: str = "",
        headers: Optional[Mapping[str, str]] = None,
        status_code: Optional[int] = None,
    ) -> Optional[RateLimitState]:
        """Record a rate-limit event if the error is one; ``None`` otherwise."""
        rule = self.match_rule(platform, error_code, error_message, status_code)
        if rule is None:
            return None

        key = (platform, account_id)
        base_wait = parse_retry_after(headers) or rule.base_wait_seconds
        now = self._clock()

        with self._lock:
            multiplier = self._multipliers.get(key, 1.0)
            cap = SEVERITY_CAP_SECONDS[rule.severity]
            wait = max(min(base_wait * multiplier, cap), MIN_WAIT_SECONDS)
            state = RateLimitState(
                platform=platform,
                account_id=account_id,
                limit_type=rule.limit_type,
                severity=rule.severity,
                wait_seconds=int(wait),
                reset_time=now + timedelta(seconds=wait),
                backoff_multiplier=multiplier,
                error_code=error_code,
                detected_at=now,
            )
            self._states[key] = state
            self._multipliers[key] = min(
                multiplier * BACKOFF_GROWTH, MAX_BACKOFF_MULTIPLIER
            )

        logger.warning(
            f"Rate limit detected for {platform}:{account_id} "
            f"({rule.limit_type.value}/{rule.severity.value}), waiting {int(wait)}s",
            extra={"account_id": account_id, "wait_seconds": int(wait)},
        )
        return state

    def is_currently_limited(
        self, platform: str, account_id: str
    ) -> Optional[RateLimitState]:
        key = (platform, account_id)
        now = self._clock()
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return None
            if now >= state.reset_time:
                del self._states[key]
                return None
            return state

    def mark_success(self, platform: str, account_id: str) -> None:
        """Reset the backoff multiplier; an unexpired reset time still stands."""
        with self._lock:
            self._multipliers.pop((platform, account_id), None)

    def active_limits(self) -> List[RateLimitState]:
        """All unexpired limits; expired ones are purged on the way."""
        now = self._clock()
        with self._lock:
            expired = [k for k, s in self._states.items() if now >= s.reset_time]
            for key in expired:
                del self._states[key]
            return list(self._states.values())

    @property
    def now(self) -> datetime:
        return self._clock()
