"""Per-key serialized asyncio work queue.

Guarantees:
- A key is handed to at most one worker at a time. Adding a key while it
  is being processed marks it dirty; it is queued again once the running
  pass calls ``done``.
- A key waiting in the queue is never queued twice.
- ``add_rate_limited`` delays a key by base * 2**(failures - 1), capped at
  the maximum, until ``forget`` resets its failure count.

All methods except ``get`` are synchronous and must be called from the
event loop thread.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating queue of string keys with per-key exclusivity."""

    def __init__(self, base_delay_seconds: float = 5.0, max_delay_seconds: float = 300.0) -> None:
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        """Number of keys waiting to be handed out."""
        return len(self._dirty - self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    async def get(self) -> str | None:
        """Wait for the next key. Returns None once the queue shuts down."""
        key = await self._queue.get()
        if key is None:
            # Let the next waiting worker see the shutdown too
            self._queue.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Mark the pass for key finished, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        if self._shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay_seconds, fire)
        self._timers.add(handle)

    def when(self, key: str) -> float:
        """Backoff delay for the next failure of key."""
        failures = self._failures.get(key, 0)
        return min(self._base_delay * (2 ** max(failures - 1, 0)), self._max_delay)

    def add_rate_limited(self, key: str) -> float:
        """Requeue key after its backoff delay. Returns the delay used."""
        self._failures[key] = self._failures.get(key, 0) + 1
        delay = self.when(key)
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def shut_down(self) -> None:
        """Stop handing out keys and cancel pending delayed adds."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
        logger.info("Work queue shut down")
