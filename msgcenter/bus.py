"""In-process typed message bus — thread-safe, identity-keyed registry.

Design
------
* Subscriptions are bucketed by ``MessageIdentity`` *instance*, in
  registration order.  Each one carries an optional sender filter compared
  with ``is``.
* ``post()`` snapshots the matching live subscriptions under the registry
  lock and delivers outside it.  Liveness is re-checked right before each
  callback runs, so nothing is delivered after ``remove_observer()`` returns.
* Unpinned callbacks run inline on the poster.  Pinned callbacks for one post
  are handed to the ``PinnedContext`` as a single batch, which keeps both the
  registration order within a post and the post order across posts.
* Streams are fed inside ``post()`` for both disciplines.  The bus keeps only
  a weak reference to a stream.
* Callbacks that raise are logged and skipped; the poster never sees them.
* A bounded in-memory audit log of posts is kept for observability.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import uuid
import weakref
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from msgcenter.identity import Discipline, Message, MessageIdentity
from msgcenter.metrics import MetricsRegistry
from msgcenter.pinned import PinnedContext
from msgcenter.settings import BusSettings
from msgcenter.stream import MessageStream

log = logging.getLogger(__name__)

M = TypeVar("M", bound=Message)

Callback = Callable[[Any], Any]


@dataclass(frozen=True, order=True)
class ObservationToken:
    """Opaque handle for one callback subscription.  Hand it back to ``remove_observer``."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __repr__(self) -> str:
        return f"<ObservationToken {self.id[:8]}>"


@dataclass(eq=False)
class Subscription:
    identity: MessageIdentity
    sender: object | None = None
    callback: Callback | None = None
    stream_ref: weakref.ref | None = None
    token: ObservationToken | None = None
    live: bool = True

    def matches(self, sender: object | None) -> bool:
        return self.sender is None or self.sender is sender

    @property
    def stream(self) -> MessageStream | None:
        return self.stream_ref() if self.stream_ref is not None else None


@dataclass
class PostRecord:
    identity: MessageIdentity
    sender: str | None
    routed: int
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.name,
            "identity_id": f"{id(self.identity):#x}",
            "discipline": self.identity.discipline.value,
            "sender": self.sender,
            "routed": self.routed,
            "timestamp": self.timestamp,
        }


class MessageBus:
    """Typed publish/subscribe bus with pinned and unpinned delivery."""

    def __init__(
        self,
        settings: BusSettings | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.settings = settings or BusSettings()
        self.metrics = metrics or MetricsRegistry()
        self.pinned = PinnedContext(loop, on_drop=self._count_pinned_drops)
        self._subscriptions: dict[MessageIdentity, list[Subscription]] = {}
        self._by_token: dict[ObservationToken, Subscription] = {}
        # Re-entrant: a stream finalizer can fire on this thread while the lock is held.
        self._lock = threading.RLock()
        self._tasks: set[asyncio.Future] = set()
        self._log: deque[PostRecord] = deque(maxlen=self.settings.audit_log_capacity)
        self._log_lock = threading.Lock()

    # ── Internal ──────────────────────────────────────────────────────────

    def _register(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.setdefault(sub.identity, []).append(sub)
            if sub.token is not None:
                self._by_token[sub.token] = sub

    def _discard(self, sub: Subscription) -> None:
        with self._lock:
            sub.live = False
            if sub.token is not None:
                self._by_token.pop(sub.token, None)
            bucket = self._subscriptions.get(sub.identity)
            if bucket is None:
                return
            try:
                bucket.remove(sub)
            except ValueError:
                return
            if not bucket:
                del self._subscriptions[sub.identity]
        log.debug("subscription to %s removed", sub.identity.name)

    def _close_stream(self, stream: MessageStream) -> None:
        if stream.subscription is not None:
            self._discard(stream.subscription)

    def _count_pinned_drops(self, count: int) -> None:
        self.metrics.inc("pinned_dropped_total", count)

    def _count_stream_drop(self) -> None:
        self.metrics.inc("stream_drops_total")

    def _append_log(self, record: PostRecord) -> None:
        with self._log_lock:
            self._log.append(record)

    def _invoke(self, sub: Subscription, payload: Message) -> None:
        if not sub.live:
            return
        try:
            result = sub.callback(payload)
        except Exception:
            self.metrics.inc("delivery_errors_total")
            log.exception("observer for %s raised", sub.identity.name)
            return
        self.metrics.inc("deliveries_total")
        if inspect.isawaitable(result):
            self._spawn(sub.identity, result)

    def _deliver_batch(self, subs: list[Subscription], payload: Message) -> None:
        for sub in subs:
            self._invoke(sub, payload)

    def _spawn(self, identity: MessageIdentity, awaitable: Awaitable[Any]) -> None:
        """Schedule an observer's awaitable result.

        Becomes a task on the caller's running loop, else on the pinned loop.
        With no event loop anywhere it is run to completion before returning.
        """

        async def _run() -> Any:
            return await awaitable

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(_run())
        elif self.pinned.loop is not None and not self.pinned.loop.is_closed():
            task = asyncio.run_coroutine_threadsafe(_run(), self.pinned.loop)
        else:
            try:
                asyncio.run(_run())
            except Exception:
                self.metrics.inc("delivery_errors_total")
                log.exception("async observer for %s raised", identity.name)
            return

        self._tasks.add(task)

        def _done(fut: asyncio.Future) -> None:
            self._tasks.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                self.metrics.inc("delivery_errors_total")
                log.error("async observer for %s raised: %s", identity.name, exc, exc_info=exc)

        task.add_done_callback(_done)

    # ── Public API ────────────────────────────────────────────────────────

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Pin delivery of pinned messages to *loop* (set once)."""
        self.pinned.attach(loop)

    def post(self, identity: MessageIdentity[M], payload: M, sender: object | None = None) -> int:
        """Deliver *payload* to every matching subscription.  Returns how many it was routed to.

        Pinned observers run on the pinned context: before this call returns
        when already on it, otherwise after it returns.  Unpinned observers
        and streams are fed before this call returns.
        """
        identity.check(payload, sender)
        with self.metrics.track_ms("post"):
            with self._lock:
                bucket = tuple(self._subscriptions.get(identity, ()))
            matches = [s for s in bucket if s.live and s.matches(sender)]

            callbacks: list[Subscription] = []
            routed = 0
            for sub in matches:
                if sub.stream_ref is None:
                    callbacks.append(sub)
                    routed += 1
                    continue
                stream = sub.stream
                if stream is None or not stream._push(payload):
                    self._discard(sub)
                    continue
                self.metrics.inc("deliveries_total")
                routed += 1

            if callbacks:
                if identity.discipline is Discipline.PINNED:
                    self.pinned.dispatch(self._deliver_batch, callbacks, payload)
                else:
                    self._deliver_batch(callbacks, payload)

        self.metrics.inc("posts_total")
        self._append_log(
            PostRecord(
                identity=identity,
                sender=None if sender is None else repr(sender),
                routed=routed,
            )
        )
        log.debug("post %s → %d subscription(s)", identity.name, routed)
        return routed

    def add_observer(
        self,
        identity: MessageIdentity[M],
        callback: Callable[[M], Awaitable[Any] | None],
        sender: object | None = None,
    ) -> ObservationToken:
        """Register *callback* for *identity*; it is live as soon as this returns.

        With *sender* given, only posts made with that very object match.
        Keep the token and pass it to ``remove_observer`` when done.
        """
        if sender is not None:
            identity.check_sender(sender)
        token = ObservationToken()
        self._register(Subscription(identity=identity, sender=sender, callback=callback, token=token))
        log.debug("observer %s added for %s", token, identity.name)
        return token

    def remove_observer(self, token: ObservationToken | None) -> None:
        """Cancel the subscription behind *token*.  Unknown or stale tokens are ignored."""
        if token is None:
            return
        with self._lock:
            sub = self._by_token.get(token)
        if sub is not None:
            self._discard(sub)

    @contextmanager
    def observing(
        self,
        identity: MessageIdentity[M],
        callback: Callable[[M], Awaitable[Any] | None],
        sender: object | None = None,
    ) -> Iterator[ObservationToken]:
        """Observe *identity* for the duration of the ``with`` block."""
        token = self.add_observer(identity, callback, sender=sender)
        try:
            yield token
        finally:
            self.remove_observer(token)

    def messages(self, identity: MessageIdentity[M], sender: object | None = None) -> MessageStream[M]:
        """Open a stream subscription; it receives every matching post from this call on."""
        if sender is not None:
            identity.check_sender(sender)
        stream: MessageStream[M] = MessageStream(
            identity,
            maxsize=self.settings.stream_buffer_size,
            on_close=self._close_stream,
            on_drop=self._count_stream_drop,
        )
        sub = Subscription(identity=identity, sender=sender, stream_ref=weakref.ref(stream))
        stream.subscription = sub
        weakref.finalize(stream, self._discard, sub)
        self._register(sub)
        log.debug("stream opened for %s", identity.name)
        return stream

    def clear(self) -> None:
        """Drop every subscription and close every stream — primarily for testing."""
        with self._lock:
            subs = [s for bucket in list(self._subscriptions.values()) for s in tuple(bucket)]
            for sub in subs:
                sub.live = False
            self._subscriptions.clear()
            self._by_token.clear()
        for sub in subs:
            stream = sub.stream
            if stream is not None:
                stream.close()

    def subscription_count(self, identity: MessageIdentity | None = None) -> int:
        with self._lock:
            if identity is not None:
                return len(self._subscriptions.get(identity, ()))
            return sum(len(bucket) for bucket in self._subscriptions.values())

    def subscription_stats(self) -> list[dict]:
        """Return observer and stream counts per registered identity."""
        with self._lock:
            buckets = [(identity, list(subs)) for identity, subs in self._subscriptions.items()]
        return [
            {
                "identity": identity.name,
                "identity_id": f"{id(identity):#x}",
                "discipline": identity.discipline.value,
                "observers": sum(1 for s in subs if s.stream_ref is None),
                "streams": sum(1 for s in subs if s.stream_ref is not None),
            }
            for identity, subs in buckets
        ]

    def recent_posts(self, identity: MessageIdentity | None = None, limit: int = 50) -> list[dict]:
        """Return recent posts from the audit log, oldest first."""
        with self._log_lock:
            records = list(self._log)
        if identity is not None:
            records = [r for r in records if r.identity is identity]
        return [r.to_dict() for r in records[-limit:]] if limit > 0 else []
