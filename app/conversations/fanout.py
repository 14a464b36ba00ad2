"""Publish/subscribe primitives for pushing snapshots to subscribers.

Stores publish the full snapshot for a topic after every accepted write, and
:class:`TimelineFeed` republishes the reconciled timeline of a conversation
whenever either message collection changes. Delivery is serialized per
subscription: a callback never runs concurrently with itself. A callback that
raises is logged and skipped, the remaining subscribers still receive the
update.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]

CONVERSATIONS_TOPIC = "conversations"


def enhanced_topic(conversation_id: str) -> str:
    return f"messages:enhanced:{conversation_id}"


def legacy_topic(conversation_id: str) -> str:
    return f"messages:legacy:{conversation_id}"


def timeline_topic(conversation_id: str) -> str:
    return f"timeline:{conversation_id}"


class Subscription:
    """Handle returned by :meth:`FanoutHub.subscribe`.

    ``unsubscribe`` may be called any number of times; only the first call
    has an effect. It never interrupts a delivery already in progress.
    """

    def __init__(
        self,
        hub: FanoutHub,
        topic: str,
        callback: Callback,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.topic = topic
        self._hub = hub
        self._callback = callback
        self._on_close = on_close
        self._delivery_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._active = True
        self._last_seq = -1

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, payload: Any, seq: int | None = None) -> None:
        with self._delivery_lock:
            if not self._active:
                return
            if seq is not None:
                # A newer snapshot already reached this subscriber.
                if seq <= self._last_seq:
                    return
                self._last_seq = seq
            try:
                self._callback(payload)
            except Exception:  # pragma: no cover - logged and isolated
                logger.exception("Subscriber callback failed for topic %s", self.topic)

    def unsubscribe(self) -> None:
        with self._state_lock:
            if not self._active:
                return
            self._active = False
        self._hub._remove(self)
        if self._on_close is not None:
            self._on_close()


class FanoutHub:
    """In-process topic registry with last-value replay.

    The last value of a topic is kept only while the topic has subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._last: dict[str, tuple[int, Any]] = {}
        self._seq = 0

    def subscribe(
        self,
        topic: str,
        callback: Callback,
        *,
        replay: bool = True,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription:
        """Register ``callback`` for ``topic``.

        When ``replay`` is true and the topic has a retained value the
        callback receives it immediately, so late subscribers start from
        the current snapshot instead of waiting for the next change.
        """

        subscription = Subscription(self, topic, callback, on_close)
        with self._lock:
            self._subscribers[topic].append(subscription)
            last = self._last.get(topic)
        if replay and last is not None:
            subscription.deliver(last[1], last[0])
        return subscription

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver ``payload`` to every subscriber of ``topic``.

        Returns the number of subscriptions the payload was handed to.
        """

        with self._lock:
            self._seq += 1
            seq = self._seq
            subscribers = list(self._subscribers.get(topic, ()))
            if subscribers:
                self._last[topic] = (seq, payload)
        for subscription in subscribers:
            subscription.deliver(payload, seq)
        return len(subscribers)

    def subscribe_with_snapshot(
        self,
        topic: str,
        callback: Callback,
        load: Callable[[], Any],
        *,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription:
        """Subscribe and make sure the subscriber starts from a current snapshot.

        When nothing is retained for ``topic``, ``load`` is called and its
        result published. If ``load`` raises, the subscription is released
        and the error propagates.
        """

        subscription = self.subscribe(topic, callback, on_close=on_close)
        if self.last(topic) is None:
            try:
                payload = load()
            except Exception:
                subscription.unsubscribe()
                raise
            self.publish(topic, payload)
        return subscription

    def last(self, topic: str) -> Any | None:
        with self._lock:
            last = self._last.get(topic)
        return last[1] if last is not None else None

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.topic]
                self._last.pop(subscription.topic, None)


async def iterate_snapshots(
    subscribe: Callable[[Callback], Subscription], *, max_queue: int = 100
) -> AsyncIterator[Any]:
    """Yield the payloads delivered to a subscription until the consumer stops.

    ``subscribe`` registers the given callback and returns its handle, for
    example ``lambda cb: hub.subscribe(topic, cb)``. The handle is released
    when the iterator is closed.

    Publishers may run on any thread; payloads are handed to the running event
    loop. When the consumer falls behind by more than ``max_queue`` snapshots
    the oldest ones are dropped, since each snapshot supersedes the previous.
    """

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Any] = asyncio.Queue()

    def _enqueue(payload: Any) -> None:
        if queue.qsize() >= max_queue:
            queue.get_nowait()
        queue.put_nowait(payload)

    def _callback(payload: Any) -> None:
        loop.call_soon_threadsafe(_enqueue, payload)

    subscription = subscribe(_callback)
    try:
        while True:
            yield await queue.get()
    finally:
        subscription.unsubscribe()


__all__ = [
    "CONVERSATIONS_TOPIC",
    "FanoutHub",
    "Subscription",
    "enhanced_topic",
    "iterate_snapshots",
    "legacy_topic",
    "timeline_topic",
]
