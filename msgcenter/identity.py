"""Message kinds: payload base classes, delivery disciplines and identities.

A payload class picks its delivery discipline by deriving from
``PinnedMessage`` or ``UnpinnedMessage`` and its sender constraint through
the ``subject`` class variable.  A ``MessageIdentity`` is the routing key the
bus buckets subscriptions under; two identities are the same channel only if
they are the same object.

Usage
-----
    class CountDidUpdate(PinnedMessage):
        count: int

    COUNT_DID_UPDATE = MessageIdentity(CountDidUpdate)
"""
from __future__ import annotations

import enum
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict


class Discipline(str, enum.Enum):
    PINNED = "pinned"        # delivered on the pinned context, in post order
    UNPINNED = "unpinned"    # delivered inline on the posting context


class Message(BaseModel):
    """Immutable payload value.  Subclass ``PinnedMessage`` or ``UnpinnedMessage``."""

    model_config = ConfigDict(frozen=True)

    discipline: ClassVar[Discipline | None] = None
    # Required sender type; None accepts any sender, including no sender.
    subject: ClassVar[type | None] = None

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        declared = {
            base.__dict__["discipline"]
            for base in cls.__mro__
            if "discipline" in base.__dict__ and base.__dict__["discipline"] is not None
        }
        if len(declared) > 1:
            raise TypeError(
                f"{cls.__qualname__} declares more than one delivery discipline: "
                f"{sorted(d.value for d in declared)}"
            )


class PinnedMessage(Message):
    discipline: ClassVar[Discipline | None] = Discipline.PINNED


class UnpinnedMessage(Message):
    discipline: ClassVar[Discipline | None] = Discipline.UNPINNED


_BASES = (Message, PinnedMessage, UnpinnedMessage)

M = TypeVar("M", bound=Message)


class MessageIdentity(Generic[M]):
    """Routing key for one message kind.

    Equality and hashing are inherited from ``object``: a second identity for
    the same payload type is a separate channel.
    """

    __slots__ = ("name", "payload_type")

    name: str
    payload_type: type[M]

    def __init__(self, payload_type: type[M], name: str | None = None) -> None:
        if (
            not isinstance(payload_type, type)
            or not issubclass(payload_type, Message)
            or payload_type in _BASES
            or payload_type.discipline is None
        ):
            raise TypeError(
                f"{payload_type!r} is not a concrete PinnedMessage or UnpinnedMessage type"
            )
        object.__setattr__(self, "payload_type", payload_type)
        object.__setattr__(self, "name", name or payload_type.__qualname__)

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, key: str) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __repr__(self) -> str:
        return f"<MessageIdentity {self.name} ({self.discipline.value}) at {id(self):#x}>"

    @property
    def discipline(self) -> Discipline:
        return self.payload_type.discipline

    @property
    def subject(self) -> type | None:
        return self.payload_type.subject

    def check_sender(self, sender: object | None) -> None:
        subject = self.subject
        if subject is not None and not isinstance(sender, subject):
            raise TypeError(
                f"{self.name} requires a sender of type {subject.__qualname__}, "
                f"got {type(sender).__qualname__}"
            )

    def check(self, payload: object, sender: object | None = None) -> None:
        """Reject a payload or sender this identity cannot carry."""
        if not isinstance(payload, self.payload_type):
            raise TypeError(
                f"{self.name} carries {self.payload_type.__qualname__}, "
                f"got {type(payload).__qualname__}"
            )
        self.check_sender(sender)
