from __future__ import annotations

import asyncio
import threading
import time
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from authkeep.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class DuplicateCallSuppressor:
    """Collapse concurrent calls that share a key into one execution.

    The first caller for a key starts the operation; callers arriving while
    it is still running await the same task and receive its result or its
    exception. The entry is dropped as soon as the task finishes, whatever
    the outcome, so a later call with the same key runs again.

    De-duplication is process-local. Store-level checks remain the safety
    net across instances.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task] = {}

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        existing = self._in_flight.get(key)
        if existing is not None and not existing.done() and existing.get_loop() is loop:
            logger.debug("duplicate_call_joined", key=key)
            return await asyncio.shield(existing)

        task = loop.create_task(operation())
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._release(key, done))
        # Shielded so one caller's cancellation does not abort the shared work
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("duplicate_call_failed", key=key)

    def in_flight(self, key: str) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    def clear(self, key: str) -> None:
        """Forget ``key`` so the next call starts a fresh execution."""
        self._in_flight.pop(key, None)

    def clear_all(self) -> None:
        self._in_flight.clear()


class CooldownBackend(Protocol):
    async def acquire_cooldown(self, key: str, ttl_seconds: int) -> bool: ...


class CooldownGate:
    """At-most-once-per-window gate keyed by an arbitrary string.

    With a shared cache the window holds across every instance; without one
    it falls back to a bounded in-process map that is swept of expired
    entries whenever it fills up.
    """

    def __init__(
        self,
        cache: Optional[CooldownBackend] = None,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        if self.cache is not None:
            return await self.cache.acquire_cooldown(key, ttl_seconds)
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is not None and expires_at > now:
                return False
            if len(self._entries) >= self.max_entries:
                self._sweep_locked(now)
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=self._entries.__getitem__)
                del self._entries[oldest]
            self._entries[key] = now + ttl_seconds
            return True

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
