"""
Time-window duplicate guards.

Two guards use this: the 5-minute notification guard in the dispatch
pipeline and the 30-second panic guard. Storage and clock are injected so a
single-process deployment can keep entries in memory while a multi-instance
one shares them through Redis with a TTL.

Check-then-mark is not atomic across processes. The guard narrows the
double-send window; the compare-and-swap deactivation in the datastore is
what actually decides who disarms a condition.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Protocol

import redis

from config import settings
from echovault.utils.clock import Clock, utc_now

_LOGGER = logging.getLogger(__name__)


class DedupStore(Protocol):
    def get(self, key: str) -> Optional[float]: ...

    def put(self, key: str, stamp: float, ttl_seconds: float) -> None: ...

    def purge(self, older_than: float) -> None: ...


class InMemoryDedupStore:
    """Process-local store. Fine for a single worker."""

    def __init__(self) -> None:
        self._entries: Dict[str, float] = {}

    def get(self, key: str) -> Optional[float]:
        return self._entries.get(key)

    def put(self, key: str, stamp: float, ttl_seconds: float) -> None:
        self._entries[key] = stamp

    def purge(self, older_than: float) -> None:
        for key in [k for k, stamp in self._entries.items() if stamp < older_than]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RedisDedupStore:
    """Shared store; entries expire through Redis TTLs."""

    def __init__(self, client: redis.Redis, prefix: str = "echovault:dedup:") -> None:
        self._client = client
        self._prefix = prefix

    def get(self, key: str) -> Optional[float]:
        raw = self._client.get(self._prefix + key)
        return float(raw) if raw is not None else None

    def put(self, key: str, stamp: float, ttl_seconds: float) -> None:
        self._client.set(self._prefix + key, repr(stamp), ex=max(1, math.ceil(ttl_seconds)))

    def purge(self, older_than: float) -> None:
        return None


class DedupGuard:
    def __init__(
        self,
        window_seconds: float,
        purge_after_seconds: Optional[float] = None,
        store: Optional[DedupStore] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.window_seconds = window_seconds
        self.purge_after_seconds = max(purge_after_seconds or window_seconds, window_seconds)
        self.store: DedupStore = store if store is not None else InMemoryDedupStore()
        self._clock = clock

    def _now(self) -> float:
        return self._clock().timestamp()

    def is_duplicate(self, key: str) -> bool:
        now = self._now()
        self.store.purge(now - self.purge_after_seconds)
        stamp = self.store.get(key)
        return stamp is not None and now - stamp < self.window_seconds

    def mark(self, key: str) -> None:
        self.store.put(key, self._now(), self.purge_after_seconds)

    def claim(self, key: str) -> bool:
        """Mark `key` and return True, or return False if it is still inside the window."""
        if self.is_duplicate(key):
            _LOGGER.info("Suppressed duplicate for %s", key)
            return False
        self.mark(key)
        return True


def build_store() -> DedupStore:
    if settings.DEDUP_BACKEND == "redis":
        return RedisDedupStore(redis.Redis.from_url(settings.REDIS_URL))
    return InMemoryDedupStore()


def notification_guard(clock: Clock = utc_now) -> DedupGuard:
    return DedupGuard(settings.NOTIFICATION_DEDUP_SECONDS, store=build_store(), clock=clock)


def panic_guard(clock: Clock = utc_now) -> DedupGuard:
    return DedupGuard(
        settings.PANIC_DEDUP_SECONDS,
        purge_after_seconds=settings.PANIC_DEDUP_PURGE_SECONDS,
        store=build_store(),
        clock=clock,
    )
