"""Process-wide default bus and thin wrappers around it.

The default bus is created once, on first use, from ``BusSettings.from_env()``.
Install a specific instance with ``configure_bus()`` before anything touches
the default.  Code that can take a bus as a parameter should; these wrappers
are for call sites that cannot.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Awaitable, Callable, TypeVar

from msgcenter.bus import MessageBus, ObservationToken
from msgcenter.identity import Message, MessageIdentity
from msgcenter.settings import BusSettings
from msgcenter.stream import MessageStream

log = logging.getLogger(__name__)

M = TypeVar("M", bound=Message)

_bus: MessageBus | None = None
_bus_lock = threading.Lock()


def get_bus() -> MessageBus:
    """Return the process-wide MessageBus, creating it on first call."""
    global _bus
    if _bus is None:
        with _bus_lock:
            if _bus is None:
                _bus = MessageBus(settings=BusSettings.from_env())
                log.debug("default message bus created")
    return _bus


def configure_bus(bus: MessageBus) -> MessageBus:
    """Install *bus* as the process-wide default.  Only allowed before first use."""
    global _bus
    with _bus_lock:
        if _bus is not None and _bus is not bus:
            raise RuntimeError("the default message bus is already initialised")
        _bus = bus
    return bus


# ── Bus wrappers ───────────────────────────────────────────────────────────────


def post(identity: MessageIdentity[M], payload: M, sender: object | None = None) -> int:
    return get_bus().post(identity, payload, sender=sender)


def add_observer(
    identity: MessageIdentity[M],
    callback: Callable[[M], Awaitable[Any] | None],
    sender: object | None = None,
) -> ObservationToken:
    return get_bus().add_observer(identity, callback, sender=sender)


def remove_observer(token: ObservationToken | None) -> None:
    get_bus().remove_observer(token)


def messages(identity: MessageIdentity[M], sender: object | None = None) -> MessageStream[M]:
    return get_bus().messages(identity, sender=sender)
