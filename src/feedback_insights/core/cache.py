from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import logging

logger = logging.getLogger(__name__)

Compute = Callable[[], Awaitable[Any]]


def make_key(kind: str, source_id: str, filter_hash: str = "all") -> str:
    """Cache key "{kind}:{source_id}:{filter_hash}"."""
    return f"{kind}:{source_id}:{filter_hash}"


def filter_hash(filter_state: Optional[Mapping[str, Any]], overlay: Optional[Mapping[str, Any]] = None) -> str:
    """
    Stable short digest of the active filters (and overlay, when one applies).

    Inactive categories (no values) do not change the digest, and value order
    within a category does not matter.
    """
    active = {k: sorted(str(v) for v in vals) for k, vals in (filter_state or {}).items() if vals}
    if not active and not overlay:
        return "all"
    payload = json.dumps({"f": active, "o": overlay or {}}, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class CacheService:
    """
    In-process TTL cache with request coalescing and background refresh.

    - get_or_compute() runs at most one computation per key at a time; late
      callers await the same in-flight task.
    - A hit with less than refresh_threshold seconds left schedules a
      background recompute and still returns the cached value.
    - Expired entries are kept as a fallback: if their recompute fails the
      stale value is served until a later recompute succeeds.

    Instances are meant to be created once and passed to the services that
    need them; nothing here is module-global.
    """

    def __init__(
        self,
        default_ttl: float = 600,
        refresh_threshold: float = 120,
        max_keys: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.refresh_threshold = refresh_threshold
        self.max_keys = max_keys
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        # Bumped on every invalidation of a key
        self._generations: Dict[str, int] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Plain access
    # ------------------------------------------------------------------

    def _fresh_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Value for key while its TTL lasts, else default."""
        entry = self._fresh_entry(key)
        return default if entry is None else entry.value

    def get_stale(self, key: str, default: Any = None) -> Any:
        """Value for key even past its TTL (until deleted)."""
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
        self._evict()

    def delete(self, key: str) -> None:
        """Drop key; a computation already running for it will not store its result."""
        self._invalidate([key])

    def remaining_ttl(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return max(0.0, entry.expires_at - self._clock())

    def is_expiring_soon(self, key: str, threshold: Optional[float] = None) -> bool:
        threshold = self.refresh_threshold if threshold is None else threshold
        remaining = self.remaining_ttl(key)
        return remaining is None or remaining < threshold

    def _generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    def _evict(self) -> None:
        while len(self._entries) > self.max_keys:
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            logger.debug("Evicting cache key %s", oldest[:50])
            del self._entries[oldest]

    # ------------------------------------------------------------------
    # Coalescing compute
    # ------------------------------------------------------------------

    async def _run(self, key: str, compute: Compute, ttl: Optional[float]) -> Any:
        """
        Single shared computation for key; stores the result on success.

        A result is not stored when the key was invalidated while computing,
        so delete()/clear_*() always win over a computation already running.
        """
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("Waiting for in-flight computation: %s", key[:50])
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()
        self._inflight[key] = future
        started = self._generation(key)
        try:
            value = await compute()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a failure nobody else awaited does not warn at GC time
            future.exception()
            raise
        else:
            if self._generation(key) == started:
                self.set(key, value, ttl)
            else:
                logger.debug("Discarding result for invalidated key %s", key[:50])
            future.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    async def get_or_compute(self, key: str, compute: Compute, ttl: Optional[float] = None) -> Any:
        entry = self._fresh_entry(key)
        if entry is not None:
            if self.is_expiring_soon(key):
                self.schedule_refresh(key, compute, ttl)
            return entry.value

        stale = self._entries.get(key)
        try:
            return await self._run(key, compute, ttl)
        except Exception:
            if stale is None:
                raise
            logger.warning("Recompute failed for %s; serving stale value", key[:50], exc_info=True)
            return stale.value

    def schedule_refresh(self, key: str, compute: Compute, ttl: Optional[float] = None) -> bool:
        """Start a background recompute unless one is already running for key."""
        if key in self._inflight:
            return False

        async def refresh() -> None:
            try:
                logger.info("Background refreshing: %s", key[:50])
                await self._run(key, compute, ttl)
                logger.info("Background refresh complete: %s", key[:50])
            except Exception:
                logger.warning("Background refresh failed for %s", key[:50], exc_info=True)

        task = asyncio.get_running_loop().create_task(refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def drain(self) -> None:
        """Wait for all scheduled background refreshes (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def _invalidate(self, keys: List[str]) -> int:
        """Drop keys and detach their in-flight computations; returns entries dropped."""
        dropped = 0
        for k in keys:
            self._generations[k] = self._generations.get(k, 0) + 1
            self._inflight.pop(k, None)
            if self._entries.pop(k, None) is not None:
                dropped += 1
        return dropped

    def _tracked_keys(self) -> List[str]:
        return list(dict.fromkeys([*self._entries, *self._inflight]))

    def clear_by_prefix(self, prefix: str) -> int:
        return self._invalidate([k for k in self._tracked_keys() if k.startswith(prefix)])

    def clear_for_source(self, source_id: str) -> int:
        """Drop every entry whose key belongs to source_id."""
        count = self._invalidate([k for k in self._tracked_keys() if k.split(":", 2)[1:2] == [source_id]])
        if count:
            logger.info("Cleared %s cache entries for %s", count, source_id)
        return count

    def clear_all(self) -> None:
        self._invalidate(self._tracked_keys())

    def keys(self) -> List[str]:
        return list(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "key_count": len(self._entries),
            "inflight": len(self._inflight),
            "background": len(self._background),
            "keys": [k[:50] for k in self._entries],
        }
