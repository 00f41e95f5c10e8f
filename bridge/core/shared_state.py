"""Process-wide shared counters and markers.

Rate limiters, circuit breakers, response caches and webhook dedup markers
all need state that every worker observes. ``SharedState`` is the small
key/value contract they depend on; Redis backs it in production and an
in-memory dict backs it in tests and single-process tooling.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis
import structlog

from bridge.core.config import settings

logger = structlog.get_logger()


class SharedState(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def add(self, key: str, value: str, ttl: int) -> bool:
        """Set only if absent. Returns True when the key was written."""
        ...

    def incr(self, key: str, ttl: int | None = None) -> int:
        """Atomic increment. ``ttl`` is applied when the key is created."""
        ...

    def expire(self, key: str, ttl: int) -> bool:
        """Reset the expiry of an existing key. Returns False when it is missing."""
        ...

    def ttl(self, key: str) -> int:
        """Remaining seconds, 0 when the key is missing or has no expiry."""
        ...

    def delete(self, *keys: str) -> int: ...


class RedisSharedState:
    """SharedState over redis-py; values are stored as UTF-8 strings."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisSharedState:
        return cls(
            redis.Redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
            )
        )

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self.client.set(key, value, ex=ttl)

    def add(self, key: str, value: str, ttl: int) -> bool:
        return bool(self.client.set(key, value, ex=ttl, nx=True))

    def incr(self, key: str, ttl: int | None = None) -> int:
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        value, remaining = pipe.execute()
        # -1: key exists without expiry, i.e. it was just created by INCR
        if ttl and remaining == -1:
            self.client.expire(key, ttl)
        return int(value)

    def expire(self, key: str, ttl: int) -> bool:
        return bool(self.client.expire(key, ttl))

    def ttl(self, key: str) -> int:
        remaining = self.client.ttl(key)
        return max(int(remaining), 0)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))


class InMemorySharedState:
    """Thread-safe dict with per-key expiry and an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and self.clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: int | None) -> float | None:
        return self.clock() + ttl if ttl else None

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    def add(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    def incr(self, key: str, ttl: int | None = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._expiry(ttl))
                return 1
            value = int(entry[0]) + 1
            self._data[key] = (str(value), entry[1])
            return value

    def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._expiry(ttl))
            return True

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return 0
            return max(int(entry[1] - self.clock()), 0)

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed


_state: SharedState | None = None


def get_shared_state() -> SharedState:
    global _state
    if _state is None:
        _state = RedisSharedState.from_url(settings.REDIS_URL)
        logger.info("shared_state_initialized", backend="redis")
    return _state


def set_shared_state(state: SharedState | None) -> None:
    """Replace the process-wide backend (tests, one-off scripts)."""
    global _state
    _state = state
