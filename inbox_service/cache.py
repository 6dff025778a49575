"""
Process-wide, time-boxed cache of the merged conversation list.

Lifecycle: created empty at application startup, populated on first access,
replaced wholesale by each successful rebuild. There is no refresh timer; the
first request after the TTL expires triggers the rebuild (read-through).

A failed rebuild never reaches the caller: the previous list is served as
stale, or an empty list with an error when nothing was ever built.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from inbox_service.metrics import record_cache_outcome, record_rebuild_duration
from inbox_service.schemas import ConversationSummary

logger = logging.getLogger(__name__)

ConversationLoader = Callable[[], Awaitable[Sequence[ConversationSummary]]]


@dataclass(frozen=True)
class CacheEntry:
    data: Tuple[ConversationSummary, ...]
    built_at: float


@dataclass(frozen=True)
class CacheResult:
    """
    What get() hands back.

    from_cache: served from an existing entry (fresh or stale)
    stale: the entry is past its TTL because the rebuild failed
    error: why the rebuild failed, if it did
    """
    conversations: Tuple[ConversationSummary, ...]
    from_cache: bool
    stale: bool = False
    error: Optional[str] = None
    built_at: Optional[float] = None


class ConversationCache:
    """
    Holds the latest conversation list for ``ttl_seconds``.

    Rebuilds are serialized by an asyncio.Lock: callers arriving while a
    rebuild is in flight wait for it and then get its result instead of
    starting their own.
    """

    def __init__(
        self,
        loader: ConversationLoader,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: Optional[CacheEntry] = None
        self._lock = asyncio.Lock()
        self._rebuilding = False

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    def _is_fresh(self, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and self._clock() - entry.built_at < self.ttl_seconds

    def peek(self, error: Optional[str] = None) -> CacheResult:
        """Current entry without any I/O; stale when past its TTL."""
        entry = self._entry
        if entry is None:
            return CacheResult(conversations=(), from_cache=False, error=error)
        return CacheResult(
            conversations=entry.data,
            from_cache=True,
            stale=not self._is_fresh(entry),
            error=error,
            built_at=entry.built_at,
        )

    def invalidate(self) -> None:
        """Expire the entry but keep it as the stale fallback."""
        entry = self._entry
        if entry is not None:
            self._entry = CacheEntry(data=entry.data, built_at=float("-inf"))
            logger.debug("Conversation cache invalidated")

    async def get(self) -> CacheResult:
        entry = self._entry
        if self._is_fresh(entry):
            record_cache_outcome("hit")
            return CacheResult(conversations=entry.data, from_cache=True, built_at=entry.built_at)

        async with self._lock:
            # Another caller may have rebuilt while we waited
            entry = self._entry
            if self._is_fresh(entry):
                record_cache_outcome("hit")
                return CacheResult(conversations=entry.data, from_cache=True, built_at=entry.built_at)

            record_cache_outcome("miss")
            self._rebuilding = True
            started = time.perf_counter()
            try:
                data = tuple(await self._loader())
            except Exception as e:
                error = f"Conversation list rebuild failed: {e}"
                if entry is not None:
                    logger.warning(f"{error}; serving stale list of {len(entry.data)} conversations")
                    record_cache_outcome("stale")
                    return CacheResult(
                        conversations=entry.data,
                        from_cache=True,
                        stale=True,
                        error=error,
                        built_at=entry.built_at,
                    )
                logger.error(f"{error}; no previous list to fall back on", exc_info=True)
                record_cache_outcome("error")
                return CacheResult(conversations=(), from_cache=False, error=error)
            finally:
                self._rebuilding = False

            record_rebuild_duration(time.perf_counter() - started)
            self._entry = CacheEntry(data=data, built_at=self._clock())
            logger.info(f"Conversation cache rebuilt: {len(data)} conversations")
            return CacheResult(conversations=data, from_cache=False, built_at=self._entry.built_at)
