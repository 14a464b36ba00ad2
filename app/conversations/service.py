"""High-level conversation orchestration: the message send pipeline and the
operations exposed to the HTTP layer."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from . import schemas
from .attachments import AttachmentValidator, BlobStorage, LocalBlobStorage
from .errors import (
    MessageNotFoundError,
    ParticipantPermissionError,
    StoreUnavailable,
    ValidationError,
)
from .escalation import EscalationStateMachine
from .fanout import FanoutHub, Subscription, iterate_snapshots
from .models import CallerContext, FileDescriptor, LegacyMessage, ValidationReport
from .reconciler import normalize_legacy, reconcile
from .registry import ConversationRegistry, new_id, utcnow
from .repository import (
    ConversationStore,
    EnhancedMessageStore,
    InMemoryConversationStore,
    InMemoryEnhancedMessageStore,
    InMemoryLegacyMessageStore,
    InMemoryUserDirectory,
    LegacyMessageStore,
    PostgresConversationStore,
    PostgresEnhancedMessageStore,
    PostgresLegacyMessageStore,
    UserDirectory,
)
from .timeline import TimelineFeed

logger = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))


def to_legacy_record(message: schemas.EnhancedMessage) -> LegacyMessage:
    """Reduce an enhanced message to the fields the legacy collection keeps."""

    return LegacyMessage(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender_name=message.sender_name,
        content=message.content,
        timestamp=message.timestamp,
        sender_role=message.sender_role,
        priority=message.priority,
        reply_to=message.reply_to,
        department=message.department,
        attachments=list(message.attachments),
        message_type=message.message_type,
        is_escalation=message.is_escalation,
    )


class ConversationService:
    """Coordinates the registry, the escalation state machine and the stores."""

    def __init__(
        self,
        conversations: ConversationStore,
        enhanced: EnhancedMessageStore,
        legacy: LegacyMessageStore,
        *,
        hub: FanoutHub | None = None,
        validator: AttachmentValidator | None = None,
        blob_storage: BlobStorage | None = None,
        directory: UserDirectory | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
        max_message_length: int = MESSAGE_MAX_LENGTH,
    ) -> None:
        self.hub = hub or FanoutHub()
        self.registry = ConversationRegistry(
            conversations, clock=clock, id_factory=id_factory
        )
        self.escalations = EscalationStateMachine(self.registry, self._deliver)
        self.validator = validator or AttachmentValidator()
        self.blob_storage = blob_storage or LocalBlobStorage()
        self.directory = directory or InMemoryUserDirectory()
        self.max_message_length = max_message_length
        self._enhanced = enhanced
        self._legacy = legacy
        self._clock = clock
        self._new_id = id_factory
        self._feeds: dict[str, TimelineFeed] = {}
        self._feeds_lock = threading.RLock()

    @classmethod
    def in_memory(cls, **kwargs: Any) -> ConversationService:
        hub = kwargs.pop("hub", None) or FanoutHub()
        return cls(
            InMemoryConversationStore(hub),
            InMemoryEnhancedMessageStore(hub),
            InMemoryLegacyMessageStore(hub),
            hub=hub,
            **kwargs,
        )

    @classmethod
    def from_database_url(cls, database_url: str, **kwargs: Any) -> ConversationService:
        hub = kwargs.pop("hub", None) or FanoutHub()
        return cls(
            PostgresConversationStore.from_url(database_url, hub),
            PostgresEnhancedMessageStore.from_url(database_url, hub),
            PostgresLegacyMessageStore.from_url(database_url, hub),
            hub=hub,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Queries

    def list_for_user(
        self, caller: CallerContext, search: str | None = None
    ) -> schemas.ConversationList:
        items = self.registry.list_for_user(caller.user_id, caller.role, search)
        return schemas.ConversationList(items=items, total=len(items))

    def get_conversation(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.ConversationMetadata:
        return self.registry.get_for_user(conversation_id, caller)

    def timeline(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.MessageTimeline:
        """Read both collections and return the reconciled timeline.

        A collection that cannot be read contributes nothing and marks the
        result as stale instead of failing the read.
        """

        self.registry.get_for_user(conversation_id, caller)
        stale = False
        try:
            enhanced = self._enhanced.list_for_conversation(conversation_id)
        except StoreUnavailable as exc:
            logger.warning("Enhanced messages unavailable for %s: %s", conversation_id, exc)
            enhanced, stale = [], True
        try:
            legacy = self._legacy.list_for_conversation(conversation_id)
        except StoreUnavailable as exc:
            logger.warning("Legacy messages unavailable for %s: %s", conversation_id, exc)
            legacy, stale = [], True
        return schemas.MessageTimeline(
            conversation_id=conversation_id,
            messages=reconcile(enhanced, legacy),
            stale=stale,
        )

    def unread_count(self, conversation_id: str, caller: CallerContext) -> int:
        """Count enhanced messages from others that the caller has not read.

        Legacy records carry no read receipts and are not counted.
        """

        timeline = self.timeline(conversation_id, caller)
        return sum(
            1
            for message in timeline.messages
            if message.source == "enhanced"
            and message.sender_id != caller.user_id
            and not message.is_read_by(caller.user_id)
        )

    def available_recipients(self, caller: CallerContext) -> list[schemas.Recipient]:
        return self.registry.available_recipients(caller, self.directory)

    # ------------------------------------------------------------------
    # Conversation writes

    def create_conversation(
        self, caller: CallerContext, payload: schemas.ConversationCreateRequest
    ) -> schemas.ConversationMetadata:
        return self.registry.create_conversation(
            caller,
            payload.participants,
            payload.type,
            payload.title,
            description=payload.description,
            department=payload.department,
            tags=payload.tags,
            priority=payload.priority,
        )

    def add_participant(
        self,
        conversation_id: str,
        participant: schemas.ParticipantIn,
        caller: CallerContext,
    ) -> schemas.ConversationMetadata:
        conversation = self.registry.get_for_user(conversation_id, caller)
        if caller.role == "affiliate":
            raise ParticipantPermissionError("Affiliates cannot add participants")
        if participant.role == "governor" and conversation.status != "escalated":
            # Governors enter through escalation and join_as_governor.
            raise ParticipantPermissionError(
                "Governors join a conversation through escalation"
            )
        return self.registry.append_participant(
            conversation_id, participant, performed_by=caller
        )

    # ------------------------------------------------------------------
    # Message send pipeline

    def send(
        self,
        conversation_id: str,
        sender: CallerContext,
        content: str,
        priority: schemas.Priority = "medium",
        department: str | None = None,
        reply_to: str | None = None,
        attachments: Sequence[str] | None = None,
    ) -> schemas.SendResult:
        """Validate and persist a message, then refresh the conversation preview.

        The enhanced collection is tried first; if that write fails for any
        reason the message goes to the legacy collection instead. A message
        is never written to both.
        """

        conversation = self.registry.get(conversation_id)
        if not conversation.has_participant(sender.user_id):
            raise ParticipantPermissionError(
                f"{sender.user_id} is not a participant of {conversation_id}"
            )
        if conversation.status == "archived":
            raise ValidationError(f"Conversation {conversation_id} is archived")
        text = self._validate_content(content, attachments)
        if reply_to and not self._message_in_conversation(reply_to, conversation_id):
            raise ValidationError(f"Reply target {reply_to} is not in this conversation")

        message = schemas.EnhancedMessage(
            id=self._new_id(),
            conversation_id=conversation_id,
            sender_id=sender.user_id,
            sender_name=sender.display_name,
            sender_role=sender.role,
            content=text,
            timestamp=self._clock(),
            reply_to=reply_to,
            attachments=list(attachments or []),
            priority=priority,
            status="sent",
            department=department or conversation.department,
            message_type="text",
        )
        return self._deliver(message)

    def mark_read(
        self,
        message_id: str,
        caller: CallerContext,
        conversation_id: str | None = None,
    ) -> schemas.EnhancedMessage:
        """Record that ``caller`` read the message. Repeated calls are no-ops.

        When ``conversation_id`` is given, a message from another conversation
        is reported as not found and no receipt is written.
        """

        message = self._enhanced.get(message_id)
        if message is None:
            record = self._legacy.get(message_id)
            if record is None or (
                conversation_id is not None and record.conversation_id != conversation_id
            ):
                raise MessageNotFoundError(f"Message {message_id} not found")
            self._require_reader(record.conversation_id, caller)
            return normalize_legacy(record)
        if conversation_id is not None and message.conversation_id != conversation_id:
            raise MessageNotFoundError(f"Message {message_id} not found")
        self._require_reader(message.conversation_id, caller)
        receipt = schemas.ReadReceipt(
            user_id=caller.user_id, user_name=caller.display_name, read_at=self._clock()
        )
        updated = self._enhanced.add_read_receipt(message_id, receipt)
        return updated.model_copy(update={"source": "enhanced"})

    def edit_message(
        self, message_id: str, caller: CallerContext, content: str
    ) -> schemas.EnhancedMessage:
        """Apply the single permitted edit, keeping the original content."""

        message = self._enhanced.get(message_id)
        if message is None:
            if self._legacy.get(message_id) is not None:
                raise ValidationError("Legacy messages cannot be edited")
            raise MessageNotFoundError(f"Message {message_id} not found")
        if message.sender_id != caller.user_id:
            raise ParticipantPermissionError("Only the sender can edit a message")
        if message.message_type != "text":
            raise ValidationError("System messages cannot be edited")
        text = self._validate_content(content, message.attachments)
        updated = self._enhanced.apply_edit(
            message_id, text, edited_by=caller.user_id, edited_at=self._clock()
        )
        if updated is None:
            raise ValidationError(f"Message {message_id} has already been edited")
        return updated.model_copy(update={"source": "enhanced"})

    def upload_attachments(self, files: Iterable[FileDescriptor]) -> ValidationReport:
        return self.validator.upload_batch(files, self.blob_storage)

    # ------------------------------------------------------------------
    # Lifecycle

    def escalate(
        self, conversation_id: str, caller: CallerContext, reason: str
    ) -> schemas.ConversationMetadata:
        return self.escalations.escalate(conversation_id, caller, reason)

    def join_as_governor(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.ConversationMetadata:
        return self.escalations.join_as_governor(conversation_id, caller)

    def resolve(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.ConversationMetadata:
        return self.escalations.resolve(conversation_id, caller)

    def archive(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.ConversationMetadata:
        return self.escalations.archive(conversation_id, caller)

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe_timeline(
        self,
        conversation_id: str,
        caller: CallerContext,
        callback: Callable[[schemas.MessageTimeline], None],
    ) -> Subscription:
        """Push the reconciled timeline to ``callback`` on every change.

        The current timeline is delivered immediately. Unsubscribing is
        idempotent; the shared feed is torn down with its last subscriber.
        """

        self.registry.get_for_user(conversation_id, caller)
        with self._feeds_lock:
            feed = self._feeds.get(conversation_id)
            created = feed is None
            if created:
                feed = TimelineFeed(conversation_id, self._enhanced, self._legacy, self.hub)
                self._feeds[conversation_id] = feed
            # The timeline is only retained while it has subscribers, so a new
            # feed publishes its first snapshot after this subscription exists.
            subscription = self.hub.subscribe(
                feed.topic,
                callback,
                on_close=lambda: self._release_feed(conversation_id),
            )
            if created:
                try:
                    feed.start()
                except Exception:
                    subscription.unsubscribe()
                    raise
            return subscription

    def stream_timeline(
        self, conversation_id: str, caller: CallerContext
    ) -> AsyncIterator[schemas.MessageTimeline]:
        self.registry.get_for_user(conversation_id, caller)
        return iterate_snapshots(
            lambda cb: self.subscribe_timeline(conversation_id, caller, cb)
        )

    def subscribe_conversations(
        self,
        caller: CallerContext,
        callback: Callable[[list[schemas.ConversationMetadata]], None],
    ) -> Subscription:
        return self.registry.subscribe(caller, callback)

    def close(self) -> None:
        with self._feeds_lock:
            feeds = list(self._feeds.values())
            self._feeds.clear()
        for feed in feeds:
            feed.close()

    # ------------------------------------------------------------------
    # Helpers

    def _deliver(self, message: schemas.EnhancedMessage) -> schemas.SendResult:
        try:
            self._enhanced.write(message)
            source = "enhanced"
        except Exception as exc:
            logger.warning(
                "Enhanced write of message %s failed, using legacy store: %s",
                message.id,
                exc,
            )
            try:
                self._legacy.write(to_legacy_record(message))
            except Exception as fallback_exc:
                raise StoreUnavailable(
                    f"Message {message.id} could not be written to any store"
                ) from fallback_exc
            source = "legacy"
        self.registry.record_incoming_message(message.conversation_id, message)
        return schemas.SendResult(message_id=message.id, source=source)

    def _validate_content(self, content: str | None, attachments: Sequence[str] | None) -> str:
        text = (content or "").strip()
        if not text and not attachments:
            raise ValidationError("A message needs content or at least one attachment")
        if len(text) > self.max_message_length:
            raise ValidationError(
                f"Message is too long ({len(text)} characters). "
                f"Maximum is {self.max_message_length}."
            )
        return text

    def _message_in_conversation(self, message_id: str, conversation_id: str) -> bool:
        try:
            message = self._enhanced.get(message_id)
        except StoreUnavailable:
            message = None
        if message is not None:
            return message.conversation_id == conversation_id
        record = self._legacy.get(message_id)
        return record is not None and record.conversation_id == conversation_id

    def _require_reader(self, conversation_id: str, caller: CallerContext) -> None:
        conversation = self.registry.get(conversation_id)
        if not self.registry.can_view(conversation, caller):
            raise ParticipantPermissionError(
                f"{caller.user_id} cannot read messages of {conversation_id}"
            )

    def _release_feed(self, conversation_id: str) -> None:
        with self._feeds_lock:
            feed = self._feeds.get(conversation_id)
            if feed is None or self.hub.subscriber_count(feed.topic):
                return
            del self._feeds[conversation_id]
        feed.close()
