from __future__ import annotations

import asyncio
import logging
import time
import traceback
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel

from conf import CACHE_PERSIST_DEBOUNCE_SECONDS, DEFAULT_TTL_SECONDS
from util import SerializableDateTime, utc_now

if TYPE_CHECKING:
    from cache_repository import CacheSnapshotRepository


class CacheEntry(BaseModel):
    key: str
    data: Any
    # Absolute, in the clock of the store (seconds since the epoch by default)
    expires_at: float
    last_updated: SerializableDateTime

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


class CacheStats(BaseModel):
    size: int
    keys: list[str]


class CacheStore:
    """Key/value store with per-entry expiry.

    Every operation works synchronously against the in-memory dict. Persistence is
    best-effort: writes schedule a debounced flush of the whole snapshot on the
    running event loop, so callers never wait on the disk. An expired entry is
    never served; it is deleted the next time someone looks at it.

    The cache carries no authority. Losing it (or starting with a corrupt snapshot)
    only costs latency.
    """

    def __init__(
        self,
        repository: CacheSnapshotRepository | None = None,
        clock: Callable[[], float] = time.time,
        debounce_seconds: float = CACHE_PERSIST_DEBOUNCE_SECONDS,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._repository = repository
        self._clock = clock
        self._debounce_seconds = debounce_seconds
        self._persist_handle: asyncio.TimerHandle | None = None
        self._persist_tasks: set[asyncio.Task] = set()
        self._dirty = False

    async def load(self) -> int:
        """Reads the durable snapshot. Anything unreadable means a cold cache."""
        if self._repository is None:
            return 0

        try:
            entries = await self._repository.load_all()
        except Exception:
            logging.warning(
                f"[ CacheStore.load ] Could not read the cache snapshot, starting cold: {traceback.format_exc()}"
            )
            entries = []

        now = self._clock()
        self._entries = {e.key: e for e in entries if not e.is_expired(now)}
        logging.info(f"[ CacheStore.load ] Loaded {len(self._entries)} cache entries")
        return len(self._entries)

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            data=value,
            expires_at=self._clock() + ttl,
            last_updated=utc_now(),
        )
        self._schedule_persist()

    def get(self, key: str) -> Any | None:
        entry = self._live_entry(key)
        if entry is None:
            return None
        return entry.data

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._schedule_persist()

    def clear(self) -> None:
        self._entries = {}
        self._schedule_persist()

    def keys(self) -> list[str]:
        self._purge_expired()
        return list(self._entries.keys())

    def stats(self) -> CacheStats:
        keys = self.keys()
        return CacheStats(size=len(keys), keys=keys)

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._schedule_persist()
            return None
        return entry

    def _purge_expired(self) -> bool:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._schedule_persist()
        return len(expired) > 0

    # ==============================================================================
    # Persistence

    def _schedule_persist(self) -> None:
        if self._repository is None:
            return
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to debounce on, the next flush() picks it up
            return
        if self._persist_handle is not None:
            self._persist_handle.cancel()
        self._persist_handle = loop.call_later(
            self._debounce_seconds, self._start_persist
        )

    def _start_persist(self) -> None:
        self._persist_handle = None
        task = asyncio.get_running_loop().create_task(self.flush())
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    @property
    def has_pending_writes(self) -> bool:
        return self._dirty

    async def flush(self) -> None:
        if self._repository is None:
            return
        self._dirty = False
        now = self._clock()
        snapshot = [e for e in self._entries.values() if not e.is_expired(now)]
        try:
            await self._repository.save_all(snapshot)
        except Exception:
            self._dirty = True
            logging.warning(
                f"[ CacheStore.flush ] Failed to persist the cache snapshot: {traceback.format_exc()}"
            )

    async def close(self) -> None:
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None
        if self._persist_tasks:
            await asyncio.gather(*self._persist_tasks, return_exceptions=True)
        if self._dirty:
            await self.flush()
