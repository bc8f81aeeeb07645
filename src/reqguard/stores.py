#!/usr/bin/env python3
"""
State stores injected into the stateful pipeline components.

Each component owns exactly one store instance; nothing else mutates it.
In-memory stores serialize read-modify-write cycles per key with striped
locks, which keeps "one live window per key" and monotonic counters intact
under a threaded server. RedisWindowStore is the shared-state extension
point for multi-instance deployments.

Security Considerations:
- Bounded memory: stores expose pruning hooks and a capacity limit
- Redis errors degrade to the in-memory store (fail-open for the read path)
- Long keys are hashed before reaching Redis to bound key size
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import redis

from .metrics import STORE_FALLBACKS


T = TypeVar('T')


class StoreError(Exception):
    """Base exception for store errors."""
    pass


class StoreCapacityError(StoreError):
    """Store cannot allocate state for a new key."""
    pass


class StripedLocks:
    """
    Fixed pool of locks selected by key hash.

    Two keys may share a stripe (coarser exclusion), but one key always maps
    to the same lock, which is what per-key serialization needs.
    """

    def __init__(self, stripes: int = 64):
        if stripes <= 0:
            raise ValueError("Stripe count must be positive")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class InMemoryRecordStore(Generic[T]):
    """
    Process-local keyed record store.

    Callers hold ``lock(key)`` around a get/modify/set cycle:

        with store.lock(ip):
            record = store.get(ip) or new_record()
            ...
            store.set(ip, record)
    """

    def __init__(self, stripes: int = 64):
        self._records: Dict[str, T] = {}
        self._locks = StripedLocks(stripes)

    def lock(self, key: str) -> threading.Lock:
        return self._locks.for_key(key)

    def get(self, key: str) -> Optional[T]:
        return self._records.get(key)

    def set(self, key: str, record: T) -> None:
        self._records[key] = record

    def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def items(self) -> List[Tuple[str, T]]:
        """Point-in-time snapshot of all records."""
        return list(self._records.items())

    def prune(self, predicate: Callable[[T], bool]) -> int:
        """
        Delete records matching ``predicate``.

        Returns:
            Number of records removed
        """
        removed = 0
        for key, record in self.items():
            with self.lock(key):
                current = self._records.get(key)
                if current is not None and predicate(current):
                    del self._records[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records


@dataclass(frozen=True)
class RateWindow:
    """
    One fixed counting window for a (client key, route class) pair.

    Immutable: an increment produces a new window value.
    """

    key: str
    window_start: float
    count: int

    def __post_init__(self):
        if self.count < 0:
            raise ValueError("Window count cannot be negative")
        if not self.key:
            raise ValueError("Window key cannot be empty")

    def is_expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds

    def remaining_seconds(self, now: float, window_seconds: float) -> float:
        return max(0.0, self.window_start + window_seconds - now)


class InMemoryWindowStore:
    """
    Fixed-window counters kept in process memory.

    The whole start-or-increment decision runs under the key's lock, so
    concurrent requests for one key never lose an update.
    """

    DEFAULT_MAX_KEYS = 100000

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS, stripes: int = 64):
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self.max_keys = max_keys
        self.logger = logging.getLogger(__name__)
        self._windows: Dict[str, Tuple[RateWindow, float]] = {}
        self._locks = StripedLocks(stripes)

    def increment(self, key: str, window_seconds: float, now: float) -> RateWindow:
        """
        Count one request against ``key``.

        Starts a new window with count 1 when none exists or the current one
        has expired; otherwise increments the live window. A new key arriving
        at capacity triggers one eviction pass of expired windows, run without
        holding the key's lock.

        Raises:
            StoreCapacityError: If a new key cannot be admitted
        """
        window = self._increment_locked(key, window_seconds, now)
        if window is not None:
            return window

        self._evict_expired(now)
        window = self._increment_locked(key, window_seconds, now)
        if window is None:
            raise StoreCapacityError(f"Window store full ({self.max_keys} keys)")
        return window

    def _increment_locked(self, key: str, window_seconds: float, now: float) -> Optional[RateWindow]:
        """Start-or-increment under the key's lock; None when a new key does not fit."""
        with self._locks.for_key(key):
            entry = self._windows.get(key)
            if entry is None and len(self._windows) >= self.max_keys:
                return None
            if entry is None or entry[0].is_expired(now, window_seconds):
                window = RateWindow(key=key, window_start=now, count=1)
            else:
                current = entry[0]
                window = RateWindow(
                    key=key,
                    window_start=current.window_start,
                    count=current.count + 1,
                )
            self._windows[key] = (window, window_seconds)
            return window

    def get(self, key: str) -> Optional[RateWindow]:
        entry = self._windows.get(key)
        return entry[0] if entry else None

    def reset(self, key: str) -> bool:
        with self._locks.for_key(key):
            return self._windows.pop(key, None) is not None

    def _evict_expired(self, now: float) -> int:
        # One stripe at a time, re-checked under it: the snapshot may be stale
        removed = 0
        for key in list(self._windows):
            with self._locks.for_key(key):
                entry = self._windows.get(key)
                if entry is not None and entry[0].is_expired(now, entry[1]):
                    del self._windows[key]
                    removed += 1
        if removed:
            self.logger.debug(f"Evicted {removed} expired rate windows")
        return removed

    def __len__(self) -> int:
        return len(self._windows)


class RedisWindowStore:
    """
    Fixed-window counters shared through Redis.

    INCR, first-hit PEXPIRE and PTTL run in one Lua script, so the counter
    and its expiry can never be observed out of step. Any Redis failure
    falls back to the in-memory store for that call.
    """

    # Security: atomic start-or-increment with expiry in one round trip
    WINDOW_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
    """

    MAX_KEY_LENGTH = 200

    def __init__(
        self,
        redis_client: redis.Redis,
        fallback: Optional[InMemoryWindowStore] = None,
        key_prefix: str = "reqguard:rate",
    ):
        """
        Initialize the shared window store.

        Args:
            redis_client: Redis client (connection is not required at startup)
            fallback: In-memory store used while Redis is failing
            key_prefix: Namespace for window keys

        Raises:
            ValueError: If redis_client is None
            StoreError: If the Lua script cannot be registered
        """
        if redis_client is None:
            raise ValueError("Redis client is required")

        self.redis = redis_client
        self.fallback = fallback if fallback is not None else InMemoryWindowStore()
        self.key_prefix = key_prefix
        self.logger = logging.getLogger(__name__)

        try:
            self.window_script = self.redis.register_script(self.WINDOW_SCRIPT)
        except redis.RedisError as e:
            raise StoreError(f"Failed to register Lua script: {e}")

        if not self.health_check():
            self.logger.warning(
                "Redis unavailable at startup - rate windows use in-memory fallback until it recovers"
            )

    def increment(self, key: str, window_seconds: float, now: float) -> RateWindow:
        window_ms = max(1, int(window_seconds * 1000))
        try:
            count, ttl_ms = self.window_script(
                keys=[self._redis_key(key)],
                args=[window_ms],
                client=self.redis,
            )
            count = int(count)
            remaining = min(window_seconds, max(0, int(ttl_ms)) / 1000.0)
            return RateWindow(
                key=key,
                window_start=now - (window_seconds - remaining),
                count=count,
            )
        except (redis.RedisError, TypeError, ValueError) as e:
            STORE_FALLBACKS.labels(store="rate_window").inc()
            self.logger.warning(
                f"Redis window increment failed, using in-memory fallback: {e}"
            )
            return self.fallback.increment(key, window_seconds, now)

    def reset(self, key: str) -> bool:
        self.fallback.reset(key)
        try:
            return bool(self.redis.delete(self._redis_key(key)))
        except redis.RedisError as e:
            self.logger.warning(f"Redis window reset failed: {e}")
            return False

    def health_check(self) -> bool:
        try:
            self.redis.ping()
            return True
        except redis.RedisError:
            return False

    def _redis_key(self, key: str) -> str:
        if len(key) > self.MAX_KEY_LENGTH:
            key = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.key_prefix}:{key}"
