from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import logging
import math
from threading import Lock
import time
from typing import Optional, Protocol
import uuid

from redis import Redis
from redis.exceptions import RedisError

from .config import settings
from .metrics import ADMISSION_DENIALS_TOTAL
from .policy import AdmissionPolicy, Scope, normalize_identifier

logger = logging.getLogger("accountguard.rate_limit")


@dataclass(frozen=True)
class WindowResult:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after_seconds(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - current))


class CounterService(Protocol):
    def sliding_window_check(
        self,
        key: str,
        capacity: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> WindowResult:
        ...


class SlidingWindowLimiter:
    """Process-local sliding window. Only correct for a single instance."""

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def sliding_window_check(
        self,
        key: str,
        capacity: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> WindowResult:
        current = time.time() if now is None else now
        window_start = current - window_seconds
        with self._lock:
            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()

            if len(events) >= capacity:
                return WindowResult(allowed=False, remaining=0, reset_at=events[0] + window_seconds)

            events.append(current)
            return WindowResult(
                allowed=True,
                remaining=capacity - len(events),
                reset_at=events[0] + window_seconds,
            )


# Trim, count and conditionally add in one round trip so concurrent callers
# on any instance see a consistent window.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local member = ARGV[4]
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < capacity then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)
local reset_at = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end
return {allowed, capacity - count, reset_at}
"""


class RedisSlidingWindowCounter:
    """Sliding window kept in a Redis sorted set per key."""

    def __init__(self, client: Redis, prefix: str = "ratelimit") -> None:
        self._client = client
        self._prefix = prefix
        self._script = client.register_script(_SLIDING_WINDOW_SCRIPT)

    def sliding_window_check(
        self,
        key: str,
        capacity: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> WindowResult:
        current_ms = int((time.time() if now is None else now) * 1000)
        allowed, remaining, reset_ms = self._script(
            keys=[f"{self._prefix}:{key}"],
            args=[current_ms, window_seconds * 1000, capacity, f"{current_ms}-{uuid.uuid4().hex}"],
        )
        return WindowResult(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            reset_at=int(reset_ms) / 1000.0,
        )


def build_counter_service() -> CounterService:
    if not settings.redis_url:
        logger.warning(
            "REDIS_URL not set; using in-process throttle windows (single instance only)",
            extra={"event": "throttle_backend_memory"},
        )
        return SlidingWindowLimiter()

    client = Redis.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        decode_responses=True,
    )
    return RedisSlidingWindowCounter(client)


class DualScopeThrottle:
    """Attempt counters per account and per origin, consulted origin first."""

    def __init__(self, counter: CounterService, policy: AdmissionPolicy) -> None:
        self.counter = counter
        self.policy = policy

    def check(self, scope: Scope, identifier: str, now: Optional[float] = None) -> WindowResult:
        scope = Scope(scope)
        scope_policy = self.policy.for_scope(scope)
        key = f"{scope.value}:{normalize_identifier(scope, identifier)}"
        current = time.time() if now is None else now

        try:
            result = self.counter.sliding_window_check(
                key,
                scope_policy.throttle_capacity,
                scope_policy.throttle_window_seconds,
                now=current,
            )
        except (RedisError, TimeoutError, OSError):
            if self.policy.throttle_fail_open:
                logger.warning(
                    "Throttle backend unavailable; admitting attempt",
                    exc_info=True,
                    extra={"event": "throttle_fail_open", "scope": scope.value},
                )
                return WindowResult(
                    allowed=True,
                    remaining=scope_policy.throttle_capacity,
                    reset_at=current,
                )
            logger.error(
                "Throttle backend unavailable; denying attempt",
                exc_info=True,
                extra={"event": "throttle_fail_closed", "scope": scope.value},
            )
            result = WindowResult(
                allowed=False,
                remaining=0,
                reset_at=current + scope_policy.throttle_window_seconds,
            )

        if not result.allowed:
            ADMISSION_DENIALS_TOTAL.labels(scope=scope.value, mechanism="throttle").inc()
        return result
