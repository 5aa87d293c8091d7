"""The single execution context pinned messages are delivered on.

Design
------
* Work items go through one FIFO queue, so items dispatched from different
  threads run in the order they were dispatched.
* On the attached loop's thread ``dispatch()`` drains the queue before it
  returns; from any other thread it schedules a drain with
  ``call_soon_threadsafe`` and returns immediately.
* With no loop attached the context is virtual: the caller drains the queue
  inline while holding a re-entrant lock, so pinned work never overlaps.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Callable

log = logging.getLogger(__name__)


class PinnedContext:
    """Single execution context for pinned delivery.

    Thread affinity only exists once a loop is attached.  Until then every
    thread counts as current.  A pinned post drains the whole shared queue,
    including batches other threads queued.  It blocks while another
    thread's pinned work is running.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        on_drop: Callable[[int], None] | None = None,
    ) -> None:
        self._loop = loop
        self._on_drop = on_drop
        self._pending: deque[tuple[Callable[..., Any], tuple[Any, ...]]] = deque()
        self._pending_lock = threading.Lock()
        self._drain_lock = threading.RLock()
        self._attach_lock = threading.Lock()
        self.dropped = 0

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Pin delivery to *loop*.  May be set once; re-attaching the same loop is a no-op."""
        with self._attach_lock:
            if self._loop is loop:
                return
            if self._loop is not None:
                raise RuntimeError("pinned context is already attached to another event loop")
            self._loop = loop
        log.debug("pinned context attached to %r", loop)

    def is_current(self) -> bool:
        """True when the caller is already running on the pinned context."""
        if self._loop is None:
            return True
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        with self._pending_lock:
            self._pending.append((fn, args))

        if self.is_current():
            self._drain()
            return

        try:
            self._loop.call_soon_threadsafe(self._drain)
        except RuntimeError:
            # Loop closed: nothing will ever drain the queue again.
            with self._pending_lock:
                lost = len(self._pending)
                self._pending.clear()
            self.dropped += lost
            log.warning("pinned loop is closed; dropped %d pending deliveries", lost)
            if self._on_drop is not None:
                self._on_drop(lost)

    def _drain(self) -> None:
        with self._drain_lock:
            while True:
                with self._pending_lock:
                    if not self._pending:
                        return
                    fn, args = self._pending.popleft()
                fn(*args)
