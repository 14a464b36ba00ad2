"""Tests for the pub/sub hub and the live timeline subscriptions."""

import asyncio
import logging

import pytest

from app.conversations import schemas
from app.conversations.errors import ConversationNotFoundError, StoreUnavailable
from app.conversations.fanout import (
    FanoutHub,
    enhanced_topic,
    iterate_snapshots,
    legacy_topic,
    timeline_topic,
)
from app.conversations.timeline import TimelineFeed

from conftest import ADMIN, AFFILIATE, GOVERNOR, OTHER_AFFILIATE, participant_in


def test_publish_reaches_every_subscriber_and_replays_last_value():
    hub = FanoutHub()
    first, second = [], []

    hub.subscribe("topic", first.append)
    delivered = hub.publish("topic", 1)
    hub.subscribe("topic", second.append)
    hub.publish("topic", 2)

    assert delivered == 1
    assert first == [1, 2]
    assert second == [1, 2]


def test_subscribe_without_replay_waits_for_next_publish():
    hub = FanoutHub()
    hub.publish("topic", "old")
    received = []

    hub.subscribe("topic", received.append, replay=False)
    hub.publish("topic", "new")

    assert received == ["new"]


def test_unsubscribe_is_idempotent_and_calls_on_close_once():
    hub = FanoutHub()
    received, closed = [], []
    subscription = hub.subscribe("topic", received.append, on_close=lambda: closed.append(1))

    subscription.unsubscribe()
    subscription.unsubscribe()
    hub.publish("topic", "after")

    assert received == []
    assert closed == [1]
    assert not subscription.active
    assert hub.subscriber_count("topic") == 0


def test_failing_callback_does_not_block_other_subscribers(caplog):
    hub = FanoutHub()
    received = []

    def broken(_payload):
        raise RuntimeError("subscriber bug")

    hub.subscribe("topic", broken)
    hub.subscribe("topic", received.append)

    with caplog.at_level(logging.ERROR, logger="app.conversations.fanout"):
        hub.publish("topic", "payload")

    assert received == ["payload"]
    assert "Subscriber callback failed" in caplog.text


def test_older_snapshot_is_never_delivered_after_newer():
    hub = FanoutHub()
    received = []
    subscription = hub.subscribe("topic", received.append)

    subscription.deliver("newer", seq=5)
    subscription.deliver("older", seq=3)

    assert received == ["newer"]


def test_last_value_is_released_with_last_subscriber():
    hub = FanoutHub()
    first = hub.subscribe("topic", lambda _: None)
    second = hub.subscribe("topic", lambda _: None)
    hub.publish("topic", "snapshot")

    first.unsubscribe()
    assert hub.last("topic") == "snapshot"
    second.unsubscribe()

    assert hub.last("topic") is None
    assert hub.publish("topic", "unheard") == 0
    assert hub.last("topic") is None


def test_subscribe_with_snapshot_loads_only_when_nothing_is_retained():
    hub = FanoutHub()
    loads, first, second = [], [], []

    def load():
        loads.append(1)
        return f"snapshot {len(loads)}"

    hub.subscribe_with_snapshot("topic", first.append, load)
    hub.subscribe_with_snapshot("topic", second.append, load)

    assert loads == [1]
    assert first == ["snapshot 1"]
    assert second == ["snapshot 1"]


def test_subscribe_with_snapshot_releases_subscription_when_load_fails():
    hub = FanoutHub()
    closed = []

    def load():
        raise StoreUnavailable("enhanced down")

    with pytest.raises(StoreUnavailable):
        hub.subscribe_with_snapshot(
            "topic", lambda _: None, load, on_close=lambda: closed.append(1)
        )

    assert hub.subscriber_count("topic") == 0
    assert closed == [1]


def test_subscribe_timeline_pushes_current_and_new_messages(service, conversation):
    snapshots: list[schemas.MessageTimeline] = []

    subscription = service.subscribe_timeline(conversation.id, AFFILIATE, snapshots.append)
    service.send(conversation.id, ADMIN, "first")
    service.send(conversation.id, AFFILIATE, "second")
    subscription.unsubscribe()
    service.send(conversation.id, ADMIN, "after unsubscribe")

    assert snapshots[0].messages == []
    assert [m.content for m in snapshots[-1].messages] == ["first", "second"]
    assert all(not s.stale for s in snapshots)


def test_timeline_subscribers_see_monotonic_snapshots(service, conversation):
    lengths: list[int] = []
    subscription = service.subscribe_timeline(
        conversation.id, ADMIN, lambda snapshot: lengths.append(len(snapshot.messages))
    )

    for i in range(5):
        service.send(conversation.id, ADMIN, f"message {i}")
    subscription.unsubscribe()

    assert lengths == sorted(lengths)
    assert lengths[-1] == 5


def test_feed_is_shared_and_released_with_last_subscriber(service, conversation):
    topic = timeline_topic(conversation.id)
    first = service.subscribe_timeline(conversation.id, ADMIN, lambda _: None)
    second = service.subscribe_timeline(conversation.id, AFFILIATE, lambda _: None)

    assert service.hub.subscriber_count(topic) == 2
    first.unsubscribe()
    assert service.hub.subscriber_count(topic) == 1
    second.unsubscribe()
    second.unsubscribe()
    assert service.hub.subscriber_count(topic) == 0
    assert conversation.id not in service._feeds


def test_closed_feeds_leave_no_retained_snapshots(service):
    conversation_ids = []
    for i in range(50):
        created = service.create_conversation(
            ADMIN,
            schemas.ConversationCreateRequest(
                type="admin_affiliate",
                title=f"Payout {i}",
                participants=[participant_in(AFFILIATE)],
            ),
        )
        conversation_ids.append(created.id)
        subscription = service.subscribe_timeline(created.id, ADMIN, lambda _: None)
        service.send(created.id, AFFILIATE, f"question {i}")
        subscription.unsubscribe()

    assert service._feeds == {}
    for cid in conversation_ids:
        for topic in (timeline_topic(cid), enhanced_topic(cid), legacy_topic(cid)):
            assert service.hub.subscriber_count(topic) == 0
            assert service.hub.last(topic) is None
    assert service.hub._last == {}


def test_subscribe_timeline_checks_visibility(service, conversation):
    with pytest.raises(ConversationNotFoundError):
        service.subscribe_timeline(conversation.id, OTHER_AFFILIATE, lambda _: None)


def test_timeline_feed_marks_stale_when_a_store_cannot_subscribe(conversation):
    class DownStore:
        def subscribe(self, conversation_id, callback):
            raise StoreUnavailable("legacy down")

    class EmptyStore:
        def subscribe(self, conversation_id, callback):
            callback([])
            return hub.subscribe("unused", lambda _: None)

    hub = FanoutHub()
    feed = TimelineFeed(conversation.id, EmptyStore(), DownStore(), hub)
    received = []
    hub.subscribe(feed.topic, received.append)

    feed.start()
    feed.close()

    assert received[-1].stale is True
    assert received[-1].messages == []


def test_subscribe_conversations_filters_by_visibility(service, conversation):
    admin_view, outsider_view = [], []
    service.subscribe_conversations(ADMIN, admin_view.append)
    service.subscribe_conversations(OTHER_AFFILIATE, outsider_view.append)

    service.create_conversation(
        GOVERNOR,
        schemas.ConversationCreateRequest(
            type="affiliate_governor",
            title="Compliance",
            participants=[participant_in(OTHER_AFFILIATE)],
        ),
    )

    assert [c.id for c in admin_view[-1]] == [conversation.id]
    assert [c.title for c in outsider_view[-1]] == ["Compliance"]


def test_stream_timeline_yields_snapshots(service, conversation):
    async def consume():
        stream = service.stream_timeline(conversation.id, ADMIN)
        first = await stream.__anext__()
        service.send(conversation.id, AFFILIATE, "streamed")
        second = await stream.__anext__()
        await stream.aclose()
        return first, second

    first, second = asyncio.run(consume())

    assert first.messages == []
    assert [m.content for m in second.messages] == ["streamed"]
    assert service.hub.subscriber_count(timeline_topic(conversation.id)) == 0


def test_iterate_snapshots_drops_oldest_when_consumer_lags():
    hub = FanoutHub()

    async def consume():
        stream = iterate_snapshots(lambda cb: hub.subscribe("t", cb), max_queue=2)
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        for value in (1, 2, 3):
            hub.publish("t", value)
        received = [await pending, await stream.__anext__()]
        await stream.aclose()
        return received

    assert asyncio.run(consume()) == [2, 3]
    assert hub.subscriber_count("t") == 0
