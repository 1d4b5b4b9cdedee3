"""
Circuit breaker for upstream API calls.

The breaker opens after `failure_threshold` consecutive failures and stays
open until `reset_after_s` seconds have passed since the last failure, at
which point the failure count is forgotten and calls flow again.

Failure counts live in an injected state store so several API processes can
share one breaker (Redis) while tests use a private in-memory store.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Type

from core.cache import get_redis_client
from core.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class BreakerState(Protocol):
    def failures(self, name: str, *, now: float, window_s: int) -> int: ...

    def record_failure(self, name: str, *, now: float, window_s: int) -> int: ...

    def reset(self, name: str) -> None: ...


class InMemoryBreakerState:
    """Per-process failure counters. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[int, float]] = {}

    def failures(self, name: str, *, now: float, window_s: int) -> int:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return 0
            count, last_failure_at = entry
            if now - last_failure_at >= window_s:
                del self._entries[name]
                return 0
            return count

    def record_failure(self, name: str, *, now: float, window_s: int) -> int:
        with self._lock:
            count, last_failure_at = self._entries.get(name, (0, now))
            if now - last_failure_at >= window_s:
                count = 0
            count += 1
            self._entries[name] = (count, now)
            return count

    def reset(self, name: str) -> None:
        with self._lock:
            self._entries.pop(name, None)


class RedisBreakerState:
    """
    Shared failure counters in Redis.

    Each failure refreshes the key TTL, so the key expiring is the
    reset-after-window. Redis errors fail open (count as zero failures).
    """

    def __init__(self, client: Any, prefix: str = "circuit") -> None:
        self.client = client
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def failures(self, name: str, *, now: float, window_s: int) -> int:
        try:
            value = self.client.get(self._key(name))
            return int(value) if value else 0
        except Exception as e:
            logger.error(f"Circuit breaker state read error: {e}")
            return 0

    def record_failure(self, name: str, *, now: float, window_s: int) -> int:
        key = self._key(name)
        try:
            count = int(self.client.incr(key))
            self.client.expire(key, window_s)
            return count
        except Exception as e:
            logger.error(f"Circuit breaker state write error: {e}")
            return 0

    def reset(self, name: str) -> None:
        try:
            self.client.delete(self._key(name))
        except Exception as e:
            logger.error(f"Circuit breaker state reset error: {e}")


def build_breaker_state() -> BreakerState:
    """Redis-backed state when Redis is reachable, in-memory otherwise."""
    client = get_redis_client()
    if client is not None:
        return RedisBreakerState(client)
    logger.warning("Redis unavailable, circuit breaker state is per-process")
    return InMemoryBreakerState()


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        state: BreakerState,
        failure_threshold: int = 3,
        reset_after_s: int = 300,
        trip_on: Tuple[Type[BaseException], ...] = (Exception,),
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.state = state
        self.failure_threshold = failure_threshold
        self.reset_after_s = reset_after_s
        self.trip_on = trip_on
        self._clock = clock or time.time

    def is_open(self) -> bool:
        count = self.state.failures(self.name, now=self._clock(), window_s=self.reset_after_s)
        return count >= self.failure_threshold

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        now = self._clock()
        prior = self.state.failures(self.name, now=now, window_s=self.reset_after_s)
        if prior >= self.failure_threshold:
            raise UpstreamUnavailable(
                f"{self.name} circuit open after {prior} consecutive failures; "
                f"retry after {self.reset_after_s}s"
            )

        try:
            result = fn(*args, **kwargs)
        except self.trip_on:
            count = self.state.record_failure(self.name, now=self._clock(), window_s=self.reset_after_s)
            if count >= self.failure_threshold:
                logger.warning(
                    f"Circuit {self.name} opened",
                    extra={"extra_fields": {"circuit": self.name, "failures": count}},
                )
            raise

        if prior:
            self.state.reset(self.name)
        return result
