"""
Metric result cache, read-through, keyed by (metric_key, period_days).

Entries are (value, timestamp). Fresh for `ttl` seconds; for a further
`stale_ttl` seconds the stale value is served while one background refresh
runs. Staleness is advisory: config writes and sync runs bust entries
explicitly.

A bust bumps a generation counter and cancels in-flight refreshes; a compute
that started before the bust never writes its result back.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300         # 5 minutes
DEFAULT_STALE_TTL = 900   # serve-stale window after expiry


def metric_cache_key(metric_key: str, period_days: Optional[int]) -> str:
    return f"{metric_key}:{period_days if period_days is not None else 'all'}"


def _metric_of(key: str) -> str:
    # metric keys are [a-z0-9-]+, so everything before the first ':' is the metric
    return key.split(":", 1)[0]


class MetricResultCache:

    def __init__(self, ttl: int = DEFAULT_TTL, stale_ttl: int = DEFAULT_STALE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.stale_ttl = stale_ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._refreshing: dict[str, asyncio.Task] = {}
        self._epoch = 0
        self._generations: dict[str, int] = {}

    def get(self, key: str) -> tuple[Any, bool]:
        """Return (value, found) for a fresh entry only."""
        entry = self._entries.get(key)
        if entry and self._clock() - entry[1] < self.ttl:
            return entry[0], True
        return None, False

    def set(self, key: str, value: Any) -> None:
        self._evict_expired()
        self._entries[key] = (value, self._clock())

    def bust(self, metric_key: Optional[str] = None) -> int:
        """Drop entries for one metric (all periods), or everything when metric_key is None."""
        if metric_key is None:
            self._epoch += 1
            count = len(self._entries)
            self._entries.clear()
            self._cancel_refreshes(list(self._refreshing))
        else:
            self._generations[metric_key] = self._generations.get(metric_key, 0) + 1
            keys = [k for k in self._entries if _metric_of(k) == metric_key]
            for k in keys:
                del self._entries[k]
            count = len(keys)
            self._cancel_refreshes([k for k in self._refreshing if _metric_of(k) == metric_key])
        if count:
            logger.info(f"Metric cache bust: {metric_key or 'all'} ({count} entries)")
        return count

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            value, stored_at = entry
            age = self._clock() - stored_at
            if age < self.ttl:
                return value
            if age < self.ttl + self.stale_ttl:
                self._schedule_refresh(key, compute)
                return value

        generation = self._generation(key)
        value = await compute()
        self._set_if_current(key, value, generation)
        return value

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(_metric_of(key), 0)

    def _set_if_current(self, key: str, value: Any, generation: tuple[int, int]) -> None:
        if self._generation(key) != generation:
            logger.debug(f"Discarding metric result for {key}: cache busted during compute")
            return
        self.set(key, value)

    def _schedule_refresh(self, key: str, compute: Callable[[], Awaitable[Any]]) -> None:
        running = self._refreshing.get(key)
        if running is not None and not running.done():
            return

        generation = self._generation(key)

        async def _refresh():
            try:
                self._set_if_current(key, await compute(), generation)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Background refresh failed for {key}: {e}")
            finally:
                if self._refreshing.get(key) is task:
                    del self._refreshing[key]

        task = asyncio.create_task(_refresh())
        self._refreshing[key] = task

    def _cancel_refreshes(self, keys: list[str]) -> None:
        for key in keys:
            task = self._refreshing.pop(key, None)
            if task is not None and not task.done():
                task.cancel()

    def _evict_expired(self) -> None:
        horizon = self.ttl + self.stale_ttl
        now = self._clock()
        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at >= horizon]
        for k in expired:
            del self._entries[k]

    def __len__(self) -> int:
        return len(self._entries)
