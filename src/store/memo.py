#!/usr/bin/env python3
"""
TTL Memo-Cache — Bounded-Cost Wrapper for Expensive Lookups

Wraps any slow external lookup (latest upstream version, remote config)
behind a time-windowed cache:

- fresh hit: returned straight from the map
- miss/expired: one caller refreshes per key, concurrent callers wait
  and then read the refreshed value (single-flight)
- refresh failure: the last-known value is served instead of the error
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class MemoEntry:
    value: Any
    fetched_at: float
    expires_at: float


class TTLMemoCache:
    """Thread-safe TTL cache with per-key single-flight refresh."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, MemoEntry] = {}
        self._map_lock = threading.Lock()
        self._refresh_locks: Dict[str, threading.Lock] = {}
        self.stats = {
            "hits": 0,
            "misses": 0,
            "refreshes": 0,
            "stale_served": 0,
            "refresh_errors": 0,
        }

    def _fresh(self, key: str) -> Optional[MemoEntry]:
        with self._map_lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                return entry
        return None

    def _refresh_lock(self, key: str) -> threading.Lock:
        with self._map_lock:
            return self._refresh_locks.setdefault(key, threading.Lock())

    def get(self, key: str, loader: Callable[[], Any], ttl_seconds: float = None) -> Any:
        """
        Return the cached value for ``key``, calling ``loader`` when it is
        missing or expired.

        If ``loader`` raises and a previous value exists, that value is
        returned (and logged); with nothing to fall back on the error
        propagates.
        """
        entry = self._fresh(key)
        if entry is not None:
            with self._map_lock:
                self.stats["hits"] += 1
            return entry.value

        with self._refresh_lock(key):
            # another caller may have refreshed while we waited
            entry = self._fresh(key)
            if entry is not None:
                with self._map_lock:
                    self.stats["hits"] += 1
                return entry.value

            with self._map_lock:
                self.stats["misses"] += 1
                stale = self._entries.get(key)

            try:
                value = loader()
            except Exception as e:  # noqa: BLE001
                with self._map_lock:
                    self.stats["refresh_errors"] += 1
                if stale is None:
                    raise
                with self._map_lock:
                    self.stats["stale_served"] += 1
                logger.warning(f"Refresh of {key} failed, serving last-known value: {e}")
                return stale.value

            now = self._clock()
            ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
            with self._map_lock:
                self._entries[key] = MemoEntry(value=value, fetched_at=now, expires_at=now + ttl)
                self.stats["refreshes"] += 1
            return value

    def peek(self, key: str) -> Optional[Any]:
        """Last-known value regardless of expiry, without loading."""
        with self._map_lock:
            entry = self._entries.get(key)
        return entry.value if entry else None

    def invalidate(self, key: str) -> bool:
        with self._map_lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._map_lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        with self._map_lock:
            total = self.stats["hits"] + self.stats["misses"]
            hit_rate = (self.stats["hits"] / total * 100) if total > 0 else 0
            return {
                **self.stats,
                "entries": len(self._entries),
                "hit_rate": f"{hit_rate:.1f}%",
            }
