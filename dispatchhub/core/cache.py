"""Command discovery cache with TTL management and single-flight fetches.

Listing the slash commands of an agent CLI means spawning the CLI, so results
are memoized per (working directory, executable) pair. Entries expire lazily:
an entry older than the TTL is treated as absent, nothing sweeps in the
background.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Optional

from loguru import logger

from dispatchhub.constants import CACHE_KEY_SEPARATOR

Clock = Callable[[], float]
FetchFn = Callable[[], Awaitable[list[str]]]


def command_cache_key(working_directory: str, executable: str) -> str:
    """Build the cache key for one agent configuration."""
    return f"{working_directory}{CACHE_KEY_SEPARATOR}{executable}"


@dataclass(frozen=True)
class CommandCacheEntry:
    """Discovered command names plus the clock value they were fetched at."""

    commands: tuple[str, ...]
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        """Check if entry is still inside its TTL.

        Args:
            now: Current clock value
            ttl_seconds: Time-to-live in seconds (<0 means never stale)

        Returns:
            True if entry can be served without fetching
        """
        if ttl_seconds < 0:
            return True
        return now - self.fetched_at < ttl_seconds


@dataclass(frozen=True)
class CommandLookup:
    commands: list[str]
    from_cache: bool


class CommandCache:
    """Time-boxed memoization of agent command discovery.

    Concurrent misses on the same key share one in-flight fetch: the first
    caller starts it, later callers await the same future and get its result
    tagged `from_cache=False`.

    Example:
        cache = CommandCache(ttl_seconds=300)
        lookup = await cache.get_or_fetch(command_cache_key(cwd, "claude"), discover)
    """

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CommandCacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[list[str]]] = {}
        self.fetch_count = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def get_or_fetch(self, key: str, fetch_fn: FetchFn) -> CommandLookup:
        """Return fresh cached commands for `key` or fetch them.

        The fetch runs in a task owned by the cache, so cancelling one caller
        never cancels the fetch other callers are waiting on.

        Args:
            key: Cache key (see `command_cache_key`)
            fetch_fn: Zero-arg coroutine factory running the expensive discovery

        Returns:
            CommandLookup with the command names and whether they came from cache

        Raises:
            Whatever `fetch_fn` raises; nothing is stored on failure.
        """
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(now, self._ttl):
            logger.trace("Command cache hit: {}", key)
            return CommandLookup(commands=list(entry.commands), from_cache=True)

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("Command cache: joining in-flight fetch for {}", key)
        else:
            self.fetch_count += 1
            logger.debug("Command cache miss: fetching {}", key)
            pending = asyncio.ensure_future(fetch_fn())
            self._inflight[key] = pending
            pending.add_done_callback(partial(self._settle, key, now))

        commands = await asyncio.shield(pending)
        return CommandLookup(commands=list(commands), from_cache=False)

    def _settle(self, key: str, fetched_at: float, task: asyncio.Future[list[str]]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            return
        # Retrieving the exception also keeps a fetch nobody awaited from warning on GC
        exc = task.exception()
        if exc is not None:
            logger.debug("Command fetch for {} failed: {}", key, exc)
            return
        self._entries[key] = CommandCacheEntry(commands=tuple(task.result()), fetched_at=fetched_at)

    def peek(self, key: str) -> Optional[list[str]]:
        """Return fresh commands for `key` without fetching (None when absent or stale)."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock(), self._ttl):
            return None
        return list(entry.commands)

    def invalidate(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logger.debug("Command cache invalidated: {}", key)

    def __len__(self) -> int:
        return len(self._entries)
