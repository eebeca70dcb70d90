"""
WorkLog Sentinel - Rate Limiter

Per-category fixed-window request throttling keyed by identity.
Increment-and-check runs under a lock so concurrent requests from the
same identity cannot slip past the limit.
"""

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sentinel.models.audit import AuditEventType, FailureKind
from sentinel.schemas.audit import AuditEvent, RateLimitMetadata
from sentinel.utils.error_handling import RateLimitExceeded

logger = logging.getLogger(__name__)

CLEANUP_EVERY = 256


class RateLimitCategory(str, enum.Enum):
    AUTH = "auth"
    API = "api"
    UPLOAD = "upload"
    INTEGRATION = "integration"
    FILE_OPERATION = "file_operation"


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int
    message: str


@dataclass(frozen=True)
class RateLimitStatus:
    category: RateLimitCategory
    limit: int
    remaining: int
    reset_in: int
    allowed: bool

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }


MESSAGES = {
    RateLimitCategory.AUTH: "Too many authentication attempts, please try again later.",
    RateLimitCategory.API: "Too many requests from this address, please try again later.",
    RateLimitCategory.UPLOAD: "Too many upload requests, please try again later.",
    RateLimitCategory.INTEGRATION: "Too many integration requests, please try again later.",
    RateLimitCategory.FILE_OPERATION: "Too many file operations, please try again later.",
}


def limits_from_settings(settings) -> Dict[RateLimitCategory, RateLimitRule]:
    """Build per-category rules from rate_limit_<category>_max/_window_seconds."""
    limits = {}
    for category in RateLimitCategory:
        limits[category] = RateLimitRule(
            max_requests=getattr(settings, f"rate_limit_{category.value}_max"),
            window_seconds=getattr(settings, f"rate_limit_{category.value}_window_seconds"),
            message=MESSAGES[category],
        )
    return limits


class RateLimiter:
    """
    In-process rate limiter.

    Windows start at the first request of a key and last window_seconds.
    A rejected request does not consume capacity.
    """

    def __init__(
        self,
        limits: Dict[RateLimitCategory, RateLimitRule],
        audit=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits = dict(limits)
        self._audit = audit
        self._clock = clock
        self._lock = threading.Lock()
        # key -> [count, window_reset_at]
        self._windows: Dict[str, List[float]] = {}
        self._operations = 0

    def get_rule(self, category: RateLimitCategory) -> RateLimitRule:
        return self._limits[category]

    @staticmethod
    def _key(category: RateLimitCategory, identity: str) -> str:
        return f"{category.value}:{identity}"

    def _hit(self, category: RateLimitCategory, identity: str) -> RateLimitStatus:
        rule = self._limits[category]
        key = self._key(category, identity)
        with self._lock:
            now = self._clock()
            self._operations += 1
            if self._operations % CLEANUP_EVERY == 0:
                self._cleanup_locked(now)

            window = self._windows.get(key)
            if window is None or now >= window[1]:
                window = [0, now + rule.window_seconds]
                self._windows[key] = window

            reset_in = max(1, math.ceil(window[1] - now))
            if window[0] >= rule.max_requests:
                return RateLimitStatus(category, rule.max_requests, 0, reset_in, False)

            window[0] += 1
            return RateLimitStatus(
                category,
                rule.max_requests,
                rule.max_requests - int(window[0]),
                reset_in,
                True,
            )

    async def apply_rate_limit(
        self,
        category: RateLimitCategory,
        identity: str,
        endpoint: str = "internal",
        method: str = "SYSTEM",
        source_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RateLimitStatus:
        """
        Count a request for (category, identity).

        Raises:
            RateLimitExceeded: With retry_after when the window is full. The
                rejection is recorded in the audit trail so monitoring sees it.
        """
        status = self._hit(category, identity)
        if status.allowed:
            return status

        rule = self._limits[category]
        logger.warning(f"Rate limit exceeded: category={category.value} identity={identity}")
        if self._audit is not None:
            await self._audit.record(AuditEvent(
                actor=identity,
                event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
                endpoint=endpoint,
                method=method,
                success=False,
                failure_kind=FailureKind.RATE_LIMITED,
                status_code=429,
                source_address=source_address or identity,
                user_agent=user_agent,
                error_message=rule.message,
                metadata=RateLimitMetadata(
                    category=category.value,
                    limit=rule.max_requests,
                    window_seconds=rule.window_seconds,
                    retry_after=status.reset_in,
                ),
            ))
        raise RateLimitExceeded(
            category=category.value,
            retry_after=status.reset_in,
            limit=rule.max_requests,
            message=rule.message,
        )

    def get_status(self, category: RateLimitCategory, identity: str) -> RateLimitStatus:
        """Current status without counting a request."""
        rule = self._limits[category]
        with self._lock:
            now = self._clock()
            window = self._windows.get(self._key(category, identity))
            if window is None or now >= window[1]:
                return RateLimitStatus(category, rule.max_requests, rule.max_requests, rule.window_seconds, True)
            remaining = max(0, rule.max_requests - int(window[0]))
            return RateLimitStatus(
                category,
                rule.max_requests,
                remaining,
                max(1, math.ceil(window[1] - now)),
                remaining > 0,
            )

    def reset(self, category: RateLimitCategory, identity: str) -> None:
        with self._lock:
            self._windows.pop(self._key(category, identity), None)

    def _cleanup_locked(self, now: float) -> int:
        expired: Tuple[str, ...] = tuple(key for key, window in self._windows.items() if now >= window[1])
        for key in expired:
            del self._windows[key]
        return len(expired)

    def cleanup(self) -> int:
        """Remove expired windows. Returns how many were removed."""
        with self._lock:
            return self._cleanup_locked(self._clock())
