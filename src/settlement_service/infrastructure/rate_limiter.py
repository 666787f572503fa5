import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from ulid import ULID


if TYPE_CHECKING:
    import redis.asyncio as redis

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class RateLimiter(Protocol):
    @property
    def window_seconds(self) -> int: ...

    @property
    def max_requests(self) -> int: ...

    async def admit(self, identity: str) -> RateLimitDecision: ...


class InMemorySlidingWindowRateLimiter:
    """
    Process-local sliding window rate limiter.

    Keeps the request timestamps of each identity inside the trailing window.
    State is neither durable nor shared between instances; use
    ``RedisSlidingWindowRateLimiter`` when running more than one process.
    """

    backend = "memory"

    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def __len__(self) -> int:
        return len(self._windows)

    async def admit(self, identity: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            window_start = now - self._window_seconds
            self._maybe_sweep(now, window_start)

            timestamps = self._windows.setdefault(identity, deque())
            while timestamps and timestamps[0] <= window_start:
                timestamps.popleft()

            if len(timestamps) >= self._max_requests:
                retry_after = max(1, math.ceil(timestamps[0] + self._window_seconds - now))
                logger.warning(
                    "rate_limit_exceeded",
                    identity=identity,
                    current_count=len(timestamps),
                    max_requests=self._max_requests,
                )
                return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)

            timestamps.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=self._max_requests - len(timestamps),
            )

    def _maybe_sweep(self, now: float, window_start: float) -> None:
        """Drop identities with no request inside the window, at most once per window."""
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        idle = [key for key, stamps in self._windows.items() if not stamps or stamps[-1] <= window_start]
        for key in idle:
            del self._windows[key]
        if idle:
            logger.debug("rate_limit_windows_evicted", count=len(idle))


# Prune, count and conditionally record in one atomic step so a denied request
# never takes a slot. Scores are float seconds; retry_after is returned as a string
# because Redis truncates Lua numbers to integers.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local retry_after = window
    if oldest[2] then
        retry_after = tonumber(oldest[2]) + window - now
    end
    return {0, count, tostring(retry_after)}
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, count, '0'}
"""


class RedisSlidingWindowRateLimiter:
    """
    Sliding window rate limiter using Redis sorted sets.

    Allows `max_requests` per `window_seconds` for each identity across every
    instance that shares the Redis database.
    """

    backend = "redis"

    def __init__(
        self,
        redis_client: "redis.Redis[bytes]",
        max_requests: int = 20,
        window_seconds: int = 60,
        key_prefix: str = "ratelimit:settlement:",
    ) -> None:
        self._redis = redis_client
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._key_prefix = key_prefix
        self._script = redis_client.register_script(SLIDING_WINDOW_SCRIPT)

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @property
    def max_requests(self) -> int:
        return self._max_requests

    async def admit(self, identity: str) -> RateLimitDecision:
        key = f"{self._key_prefix}{identity}"
        now = datetime.now(UTC).timestamp()
        member = f"{now}:{ULID()}"

        result: list[Any] = await self._script(
            keys=[key],
            args=[now, self._window_seconds, self._max_requests, member],
        )
        allowed = int(result[0]) == 1
        current_count = int(result[1])

        if not allowed:
            raw_retry_after = result[2].decode() if isinstance(result[2], bytes) else str(result[2])
            retry_after = max(1, math.ceil(float(raw_retry_after)))
            logger.warning(
                "rate_limit_exceeded",
                identity=identity,
                current_count=current_count,
                max_requests=self._max_requests,
            )
            return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)

        return RateLimitDecision(
            allowed=True,
            remaining=max(0, self._max_requests - current_count - 1),
        )
