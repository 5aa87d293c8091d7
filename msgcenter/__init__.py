"""msgcenter — typed in-process notifications.

Message kinds are declared as payload classes plus a ``MessageIdentity``;
the payload's base class fixes how it is delivered.

Usage
-----
    from msgcenter import MessageBus, MessageIdentity, PinnedMessage, UnpinnedMessage

    class CountDidUpdate(PinnedMessage):
        count: int

    class CountDidUpdateBackground(UnpinnedMessage):
        count: int

    COUNT_DID_UPDATE = MessageIdentity(CountDidUpdate)
    COUNT_DID_UPDATE_BACKGROUND = MessageIdentity(CountDidUpdateBackground)

    bus = MessageBus(loop=main_loop)

    # Callback style: keep the token, hand it back when done
    token = bus.add_observer(COUNT_DID_UPDATE, lambda m: print(m.count))
    bus.post(COUNT_DID_UPDATE, CountDidUpdate(count=51))
    bus.remove_observer(token)

    # Stream style: leaving the loop ends the subscription
    async with bus.messages(COUNT_DID_UPDATE_BACKGROUND) as stream:
        async for message in stream:
            print(message.count)
"""
from msgcenter.bus import MessageBus, ObservationToken
from msgcenter.identity import (
    Discipline,
    Message,
    MessageIdentity,
    PinnedMessage,
    UnpinnedMessage,
)
from msgcenter.metrics import MetricsRegistry
from msgcenter.pinned import PinnedContext
from msgcenter.settings import BusSettings
from msgcenter.shared import (
    add_observer,
    configure_bus,
    get_bus,
    messages,
    post,
    remove_observer,
)
from msgcenter.stream import MessageStream

__all__ = [
    "MessageBus",
    "ObservationToken",
    "Discipline",
    "Message",
    "MessageIdentity",
    "PinnedMessage",
    "UnpinnedMessage",
    "MessageStream",
    "PinnedContext",
    "BusSettings",
    "MetricsRegistry",
    "get_bus",
    "configure_bus",
    "post",
    "add_observer",
    "remove_observer",
    "messages",
]
