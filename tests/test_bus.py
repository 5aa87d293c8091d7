import asyncio
import threading
from typing import ClassVar

import pytest

from msgcenter.bus import MessageBus, ObservationToken
from msgcenter.identity import MessageIdentity, PinnedMessage, UnpinnedMessage
from msgcenter.settings import BusSettings


class CountDidUpdate(PinnedMessage):
    count: int


class CountDidUpdateBackground(UnpinnedMessage):
    count: int


class Counter:
    pass


class CounterReset(UnpinnedMessage):
    subject: ClassVar[type | None] = Counter


COUNT_DID_UPDATE = MessageIdentity(CountDidUpdate)
COUNT_DID_UPDATE_BACKGROUND = MessageIdentity(CountDidUpdateBackground)
COUNTER_RESET = MessageIdentity(CounterReset)


def test_post_without_subscribers_is_a_no_op() -> None:
    bus = MessageBus()
    assert bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1)) == 0
    assert bus.post(COUNT_DID_UPDATE, CountDidUpdate(count=1)) == 0


def test_every_observer_receives_each_post_exactly_once() -> None:
    bus = MessageBus()
    received: dict[int, list[int]] = {0: [], 1: [], 2: []}
    for i in received:
        bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m, i=i: received[i].append(m.count))

    assert bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=7)) == 3
    assert received == {0: [7], 1: [7], 2: [7]}


def test_unpinned_delivery_happens_inside_post_on_the_calling_thread() -> None:
    bus = MessageBus()
    seen: list[tuple[int, threading.Thread]] = []
    bus.add_observer(
        COUNT_DID_UPDATE_BACKGROUND,
        lambda m: seen.append((m.count, threading.current_thread())),
    )

    seen_when_post_returned: list[int] = []

    def worker() -> None:
        bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=5))
        seen_when_post_returned.extend(c for c, _ in seen)

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert seen_when_post_returned == [5]
    assert seen[0][1] is t


def test_remove_observer_stops_delivery_and_is_idempotent() -> None:
    bus = MessageBus()
    received: list[int] = []
    token = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count))

    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1))
    bus.remove_observer(token)
    bus.remove_observer(token)
    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=2))

    assert received == [1]
    assert bus.subscription_count() == 0


def test_remove_unknown_token_is_a_no_op() -> None:
    bus = MessageBus()
    received: list[int] = []
    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count))

    bus.remove_observer(ObservationToken())
    bus.remove_observer(None)
    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=4))
    assert received == [4]


def test_tokens_are_unique_and_comparable() -> None:
    bus = MessageBus()
    a = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: None)
    b = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: None)
    assert a != b
    assert len({a, b}) == 2
    assert sorted([a, b]) in ([a, b], [b, a])


def test_observer_removed_by_an_earlier_observer_is_not_called() -> None:
    bus = MessageBus()
    received: list[str] = []
    tokens: dict[str, ObservationToken] = {}

    def first(m) -> None:
        received.append("first")
        bus.remove_observer(tokens["second"])

    tokens["first"] = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, first)
    tokens["second"] = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append("second"))

    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1))
    assert received == ["first"]


def test_separately_declared_identities_do_not_cross_deliver() -> None:
    bus = MessageBus()
    channel_a = MessageIdentity(CountDidUpdateBackground)
    channel_b = MessageIdentity(CountDidUpdateBackground)
    received: list[int] = []
    bus.add_observer(channel_a, lambda m: received.append(m.count))

    assert bus.post(channel_b, CountDidUpdateBackground(count=9)) == 0
    assert received == []


def test_sender_filter_matches_only_the_same_object() -> None:
    bus = MessageBus()
    mine, other = Counter(), Counter()
    received: list[Counter] = []
    bus.add_observer(COUNTER_RESET, lambda m: received.append(m), sender=mine)

    assert bus.post(COUNTER_RESET, CounterReset(), sender=other) == 0
    assert received == []
    assert bus.post(COUNTER_RESET, CounterReset(), sender=mine) == 1
    assert len(received) == 1


def test_unfiltered_observer_receives_posts_from_any_sender() -> None:
    bus = MessageBus()
    received: list[int] = []
    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count))

    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1), sender=object())
    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=2))
    assert received == [1, 2]


def test_post_rejects_payload_of_the_wrong_type() -> None:
    bus = MessageBus()
    with pytest.raises(TypeError):
        bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdate(count=1))


def test_sender_type_is_checked_on_post_and_subscribe() -> None:
    bus = MessageBus()
    with pytest.raises(TypeError):
        bus.post(COUNTER_RESET, CounterReset(), sender="not a counter")
    with pytest.raises(TypeError):
        bus.add_observer(COUNTER_RESET, lambda m: None, sender="not a counter")


def test_raising_observer_does_not_block_others_or_the_poster(caplog) -> None:
    bus = MessageBus()
    received: list[int] = []

    def broken(m) -> None:
        raise RuntimeError("boom")

    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, broken)
    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count))

    with caplog.at_level("ERROR", logger="msgcenter.bus"):
        bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=3))

    assert received == [3]
    assert "raised" in caplog.text
    assert bus.metrics.counter("delivery_errors_total") == 1
    assert bus.metrics.counter("deliveries_total") == 1


def test_observing_context_manager_removes_on_exit() -> None:
    bus = MessageBus()
    received: list[int] = []

    with pytest.raises(ValueError):
        with bus.observing(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count)):
            bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1))
            raise ValueError("leave early")

    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=2))
    assert received == [1]
    assert bus.subscription_count(COUNT_DID_UPDATE_BACKGROUND) == 0


def test_async_observer_without_a_loop_runs_to_completion() -> None:
    bus = MessageBus()
    received: list[int] = []

    async def observer(m) -> None:
        await asyncio.sleep(0)
        received.append(m.count)

    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, observer)
    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=8))
    assert received == [8]


def test_async_observer_is_scheduled_on_the_running_loop() -> None:
    bus = MessageBus()
    received: list[int] = []

    async def observer(m) -> None:
        await asyncio.sleep(0)
        received.append(m.count)

    async def main() -> None:
        bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, observer)
        bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=6))
        # Post does not wait for the observer's own suspension points.
        assert received == []
        for _ in range(5):
            await asyncio.sleep(0)

    asyncio.run(main())
    assert received == [6]


def test_concurrent_posts_and_removals_never_deliver_after_removal() -> None:
    bus = MessageBus()
    removed = threading.Event()
    late: list[int] = []
    token_holder: dict[str, ObservationToken] = {}

    def observer(m) -> None:
        if removed.is_set():
            late.append(m.count)

    token_holder["t"] = bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, observer)
    stop = threading.Event()

    def poster() -> None:
        i = 0
        while not stop.is_set():
            bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=i))
            i += 1

    threads = [threading.Thread(target=poster) for _ in range(3)]
    for t in threads:
        t.start()
    bus.remove_observer(token_holder["t"])
    # Posts that snapshotted before the removal may still be finishing; wait for them.
    stop.set()
    for t in threads:
        t.join()
    removed.set()
    bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=-1))
    assert late == []


def test_subscription_stats_and_recent_posts() -> None:
    bus = MessageBus(settings=BusSettings(audit_log_capacity=2))
    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: None)
    stream = bus.messages(COUNT_DID_UPDATE_BACKGROUND)

    stats = bus.subscription_stats()
    assert stats == [
        {
            "identity": "CountDidUpdateBackground",
            "identity_id": f"{id(COUNT_DID_UPDATE_BACKGROUND):#x}",
            "discipline": "unpinned",
            "observers": 1,
            "streams": 1,
        }
    ]

    for i in range(3):
        bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=i))
    bus.post(COUNT_DID_UPDATE, CountDidUpdate(count=0))

    log = bus.recent_posts()
    assert len(log) == 2
    assert log[-1]["identity"] == "CountDidUpdate"
    assert log[-1]["routed"] == 0
    only_background = bus.recent_posts(COUNT_DID_UPDATE_BACKGROUND)
    assert [r["routed"] for r in only_background] == [2]
    assert bus.metrics.counter("posts_total") == 4
    stream.close()


def test_clear_drops_everything() -> None:
    bus = MessageBus()
    received: list[int] = []
    bus.add_observer(COUNT_DID_UPDATE_BACKGROUND, lambda m: received.append(m.count))
    stream = bus.messages(COUNT_DID_UPDATE_BACKGROUND)

    bus.clear()
    assert stream.closed
    assert bus.post(COUNT_DID_UPDATE_BACKGROUND, CountDidUpdateBackground(count=1)) == 0
    assert received == []


def test_recent_posts_keeps_same_named_identities_apart() -> None:
    bus = MessageBus()
    channel_a = MessageIdentity(CountDidUpdateBackground)
    channel_b = MessageIdentity(CountDidUpdateBackground)
    assert channel_a.name == channel_b.name

    bus.post(channel_b, CountDidUpdateBackground(count=1))

    assert bus.recent_posts(channel_a) == []
    only_b = bus.recent_posts(channel_b)
    assert len(only_b) == 1
    assert only_b[0]["identity_id"] == f"{id(channel_b):#x}"


def test_subscription_stats_distinguish_same_named_identities() -> None:
    bus = MessageBus()
    channel_a = MessageIdentity(CountDidUpdateBackground)
    channel_b = MessageIdentity(CountDidUpdateBackground)
    bus.add_observer(channel_a, lambda m: None)
    bus.add_observer(channel_b, lambda m: None)

    ids = {row["identity_id"] for row in bus.subscription_stats()}
    assert ids == {f"{id(channel_a):#x}", f"{id(channel_b):#x}"}
