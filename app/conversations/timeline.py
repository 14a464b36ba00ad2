"""Live reconciled timeline for a single conversation."""

from __future__ import annotations

import logging
import threading
from typing import Any

from . import schemas
from .errors import StoreUnavailable
from .fanout import FanoutHub, Subscription, timeline_topic
from .reconciler import reconcile
from .repository import EnhancedMessageStore, LegacyMessageStore

logger = logging.getLogger(__name__)


class TimelineFeed:
    """Subscribes to both message collections and republishes the merge.

    The latest snapshot of each collection is kept; every change on either
    side produces a new reconciled :class:`~.schemas.MessageTimeline` on
    ``timeline:<conversation_id>``. If a collection cannot be subscribed to,
    the feed keeps going with what it has and flags the timeline as stale.
    """

    def __init__(
        self,
        conversation_id: str,
        enhanced: EnhancedMessageStore,
        legacy: LegacyMessageStore,
        hub: FanoutHub,
    ) -> None:
        self.conversation_id = conversation_id
        self._enhanced_store = enhanced
        self._legacy_store = legacy
        self._hub = hub
        self._lock = threading.RLock()
        self._enhanced: list[schemas.EnhancedMessage] = []
        self._legacy: list[Any] = []
        self._stale = False
        self._started = False
        self._subscriptions: list[Subscription] = []

    @property
    def topic(self) -> str:
        return timeline_topic(self.conversation_id)

    def start(self) -> None:
        for store, callback in (
            (self._enhanced_store, self._on_enhanced),
            (self._legacy_store, self._on_legacy),
        ):
            try:
                self._subscriptions.append(store.subscribe(self.conversation_id, callback))
            except StoreUnavailable as exc:
                logger.warning(
                    "Timeline %s starts stale, %s unavailable: %s",
                    self.conversation_id,
                    type(store).__name__,
                    exc,
                )
                self._stale = True
        with self._lock:
            self._started = True
        self._publish()

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def snapshot(self) -> schemas.MessageTimeline:
        with self._lock:
            messages = reconcile(self._enhanced, self._legacy)
            stale = self._stale
        return schemas.MessageTimeline(
            conversation_id=self.conversation_id, messages=messages, stale=stale
        )

    def _on_enhanced(self, snapshot: list[schemas.EnhancedMessage]) -> None:
        with self._lock:
            self._enhanced = list(snapshot)
        self._publish()

    def _on_legacy(self, snapshot: list[Any]) -> None:
        with self._lock:
            self._legacy = list(snapshot)
        self._publish()

    def _publish(self) -> None:
        # Snapshot and publish under one lock so a newer merge can never be
        # overtaken by an older one.
        with self._lock:
            if not self._started:
                return
            self._hub.publish(self.topic, self.snapshot())
