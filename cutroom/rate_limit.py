"""Fixed-window rate limiting for the HTTP layer.

The RateLimiter is process-local and advisory: it rejects requests before
they reach the state machine and plays no part in claim correctness. One
instance is constructed at application start and injected into request
handling, so it can be replaced by a shared limiter without touching the
state machine.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit of ``max_requests`` per ``window_seconds``."""

    window_seconds: float
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        reset_at: Clock value at which the window resets.
        retry_after: Whole seconds to wait, set only when rejected.
    """

    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_at: float


# Default limits per action
RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "claim": RateLimitConfig(window_seconds=60, max_requests=10),
    "create_pipeline": RateLimitConfig(window_seconds=60, max_requests=5),
    "execute": RateLimitConfig(window_seconds=60, max_requests=20),
    "general": RateLimitConfig(window_seconds=60, max_requests=100),
}


def agent_rate_limit_key(agent_id: str, action: str) -> str:
    return f"agent:{agent_id}:{action}"


def ip_rate_limit_key(ip: str, action: str) -> str:
    return f"ip:{ip}:{action}"


class RateLimitExceeded(Exception):
    """Raised by RateLimiter.enforce when a request is rejected.

    Attributes:
        key: The rate limit key that was exhausted.
        result: The rejecting RateLimitResult.
        action: The limited action.
    """

    def __init__(self, key: str, result: RateLimitResult, action: str = "general"):
        self.key = key
        self.result = result
        self.action = action
        super().__init__(
            f"Rate limit exceeded for {key}; retry after {result.retry_after}s"
        )


class RateLimiter:
    """In-memory fixed-window rate limiter.

    Attributes:
        limits: Per-action configuration.
        enabled: When False every check is allowed.

    Example:
        >>> limiter = RateLimiter()
        >>> limiter.check("agent:a1:claim", RATE_LIMITS["claim"]).allowed
        True
    """

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
    ):
        self.limits = dict(RATE_LIMITS if limits is None else limits)
        self.enabled = enabled
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Count a request against ``key`` and report whether it is allowed."""
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            reset_at = now + config.window_seconds
            self._windows[key] = _Window(count=1, reset_at=reset_at)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - 1,
                reset_at=reset_at,
            )

        if window.count < config.max_requests:
            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - window.count,
                reset_at=window.reset_at,
            )

        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=window.reset_at,
            retry_after=max(1, math.ceil(window.reset_at - now)),
        )

    def enforce(self, key: str, action: str) -> RateLimitResult:
        """Check ``key`` against the limit for ``action``.

        Raises:
            RateLimitExceeded: If the window is exhausted.
        """
        config = self.limits.get(action) or self.limits["general"]
        if not self.enabled:
            return RateLimitResult(
                allowed=True, remaining=config.max_requests, reset_at=self._clock()
            )

        result = self.check(key, config)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"key": key, "action": action, "retry_after": result.retry_after},
            )
            raise RateLimitExceeded(key, result, action)
        return result

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
