"""Pull-based subscription: an async iterator fed by the bus.

``_push()`` may be called from any thread; it appends under a lock and wakes
the consumer through ``call_soon_threadsafe`` on the consumer's loop, so the
buffer order is the post order.  The bus only keeps a weak reference to a
stream, so dropping the last reference also ends the subscription.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Callable, Generic, TypeVar

from msgcenter.identity import Message, MessageIdentity

if TYPE_CHECKING:
    from msgcenter.bus import Subscription

log = logging.getLogger(__name__)

M = TypeVar("M", bound=Message)


def _wake(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class MessageStream(Generic[M]):
    """Unbounded (or drop-oldest bounded) sequence of payloads for one subscription.

        async with bus.messages(COUNT_CHANGED) as stream:
            async for message in stream:
                ...
    """

    def __init__(
        self,
        identity: MessageIdentity[M],
        maxsize: int = 0,
        on_close: Callable[[MessageStream[M]], None] | None = None,
        on_drop: Callable[[], None] | None = None,
    ) -> None:
        self.identity = identity
        self.maxsize = maxsize
        self._buffer: deque[M] = deque(maxlen=maxsize or None)
        self._lock = threading.Lock()
        # Suspended consumers, oldest first; a push wakes one, close wakes all.
        self._waiters: deque[asyncio.Future] = deque()
        self._closed = False
        self._on_close = on_close
        self._on_drop = on_drop
        self.subscription: Subscription | None = None

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<MessageStream {self.identity.name} {state} pending={len(self._buffer)}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _push(self, payload: M) -> bool:
        """Buffer *payload* for the consumer.  Returns False once the stream is closed."""
        with self._lock:
            if self._closed:
                return False
            dropped = self.maxsize and len(self._buffer) >= self.maxsize
            self._buffer.append(payload)
            waiter = self._pop_waiter()
        if dropped:
            log.debug("stream %s full (%d); dropped oldest message", self.identity.name, self.maxsize)
            if self._on_drop is not None:
                self._on_drop()
        if waiter is not None:
            self._notify(waiter)
        return True

    def _pop_waiter(self) -> asyncio.Future | None:
        # Caller holds self._lock.
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                return waiter
        return None

    def _notify(self, waiter: asyncio.Future) -> None:
        try:
            waiter.get_loop().call_soon_threadsafe(_wake, waiter)
        except RuntimeError:
            # Consumer loop closed; nobody is left to wake.
            pass

    def close(self) -> None:
        """End the subscription.  Idempotent; buffered messages are discarded."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._buffer.clear()
            waiters = list(self._waiters)
            self._waiters.clear()
        for waiter in waiters:
            self._notify(waiter)
        if self._on_close is not None:
            self._on_close(self)

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> MessageStream[M]:
        return self

    async def __anext__(self) -> M:
        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self._closed:
                    raise StopAsyncIteration
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                with self._lock:
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pending = bool(self._buffer)
                    else:
                        pending = False
                    # A push already chose this waiter: pass the wakeup on.
                    handoff = self._pop_waiter() if pending else None
                if handoff is not None:
                    self._notify(handoff)
                raise

    async def __aenter__(self) -> MessageStream[M]:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
