"""Role-aware access to conversation metadata.

The registry is the single source of truth for participants and visibility.
Every write goes through :meth:`ConversationRegistry.commit`, a
compare-and-set on the conversation version, so concurrent writers never
overwrite each other silently.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from . import schemas
from .errors import (
    AlreadyParticipant,
    ConversationNotFoundError,
    InvalidTransition,
    ValidationError,
)
from .fanout import Subscription
from .models import CallerContext
from .repository import ConversationStore, UserDirectory

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100
ATTACHMENT_PREVIEW = "[attachment]"

# Who may start a conversation with whom.
RECIPIENT_ROLES: dict[str, frozenset[str]] = {
    "governor": frozenset({"admin", "affiliate"}),
    "admin": frozenset({"affiliate", "governor"}),
    "affiliate": frozenset({"admin"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def matches_search(conversation: schemas.ConversationMetadata, term: str) -> bool:
    """Case-insensitive substring match on title, participant names and preview."""

    needle = term.strip().lower()
    if not needle:
        return True
    if needle in (conversation.title or "").lower():
        return True
    if any(needle in p.name.lower() for p in conversation.participants):
        return True
    return needle in (conversation.last_message or "").lower()


def filter_conversations(
    conversations: Iterable[schemas.ConversationMetadata], term: str | None
) -> list[schemas.ConversationMetadata]:
    if not term:
        return list(conversations)
    return [c for c in conversations if matches_search(c, term)]


def preview_for(message: schemas.EnhancedMessage) -> str:
    if message.content:
        return message.content[:PREVIEW_LENGTH]
    return ATTACHMENT_PREVIEW if message.attachments else ""


class ConversationRegistry:
    """Conversation metadata, participants and audit trail."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._store = store
        self._clock = clock
        self._new_id = id_factory

    # ------------------------------------------------------------------
    # Queries

    def list_for_user(
        self, user_id: str, role: str, search: str | None = None
    ) -> list[schemas.ConversationMetadata]:
        """Return the conversations ``user_id`` may see.

        Governors see every conversation; admins and affiliates only those
        they participate in. ``search`` narrows the already-filtered list.
        """

        if role == "governor":
            visible = self._store.list_all()
        else:
            # The store query is narrowed by participant; re-check here so a
            # store that over-returns can never widen visibility.
            visible = [
                c
                for c in self._store.list_for_participant(user_id)
                if c.has_participant(user_id)
            ]
        return filter_conversations(visible, search)

    def can_view(self, conversation: schemas.ConversationMetadata, caller: CallerContext) -> bool:
        return caller.role == "governor" or conversation.has_participant(caller.user_id)

    def get(self, conversation_id: str) -> schemas.ConversationMetadata:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def get_for_user(
        self, conversation_id: str, caller: CallerContext
    ) -> schemas.ConversationMetadata:
        """Fetch a conversation, hiding ones the caller may not see as missing."""

        conversation = self._store.get(conversation_id)
        if conversation is None or not self.can_view(conversation, caller):
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def available_recipients(
        self, caller: CallerContext, directory: UserDirectory
    ) -> list[schemas.Recipient]:
        allowed = RECIPIENT_ROLES.get(caller.role, frozenset())
        return [
            user
            for user in directory.list_users()
            if user.role in allowed and user.id != caller.user_id
        ]

    # ------------------------------------------------------------------
    # Writes

    def create_conversation(
        self,
        initiator: CallerContext,
        other_participants: Sequence[schemas.ParticipantIn],
        type: schemas.ConversationType,
        title: str,
        *,
        description: str | None = None,
        department: str | None = None,
        tags: Iterable[str] = (),
        priority: schemas.Priority = "medium",
    ) -> schemas.ConversationMetadata:
        if not title or not title.strip():
            raise ValidationError("Conversation title is required")
        now = self._clock()
        participants = [initiator.as_participant(now)]
        seen = {initiator.user_id}
        for candidate in other_participants:
            if candidate.id in seen:
                raise ValidationError(f"Participant {candidate.id} listed more than once")
            seen.add(candidate.id)
            participants.append(
                schemas.ConversationParticipant(
                    id=candidate.id,
                    name=candidate.name,
                    role=candidate.role,
                    email=candidate.email,
                    joined_at=now,
                )
            )
        if len(participants) < 2:
            raise ValidationError("A conversation needs at least two participants")
        if type != "group" and len({p.role for p in participants}) < 2:
            raise ValidationError(
                "A non-group conversation needs participants with two distinct roles"
            )

        conversation = schemas.ConversationMetadata(
            id=self._new_id(),
            type=type,
            title=title.strip(),
            description=description,
            department=department,
            tags=sorted(set(tags)),
            participants=participants,
            created_by=initiator.user_id,
            created_at=now,
            last_activity=now,
            status="active",
            priority=priority,
            audit_trail=[],
        )
        conversation.audit_trail.append(
            self.audit_entry(
                conversation,
                "created",
                initiator,
                {"type": type, "participants": [p.id for p in participants]},
            )
        )
        stored = self._store.insert(conversation)
        logger.info(
            "Conversation %s created by %s (%s)", stored.id, initiator.user_id, type
        )
        return stored

    def append_participant(
        self,
        conversation_id: str,
        participant: schemas.ParticipantIn,
        *,
        performed_by: CallerContext,
    ) -> schemas.ConversationMetadata:
        conversation = self.get(conversation_id)
        if conversation.has_participant(participant.id):
            raise AlreadyParticipant(
                f"{participant.id} already participates in {conversation_id}"
            )
        now = self._clock()
        joined = schemas.ConversationParticipant(
            id=participant.id,
            name=participant.name,
            role=participant.role,
            email=participant.email,
            joined_at=now,
        )
        updated = self.with_participant(conversation, joined, performed_by)
        return self.commit(conversation, updated)

    def record_incoming_message(
        self, conversation_id: str, message: schemas.EnhancedMessage, *, attempts: int = 5
    ) -> schemas.ConversationMetadata:
        """Refresh the denormalized activity fields after an accepted message.

        The update only touches activity fields, so a version conflict is
        retried against the fresh document instead of being reported.
        """

        for _ in range(attempts):
            conversation = self.get(conversation_id)
            activity = message.timestamp or self._clock()
            updated = conversation.model_copy(
                update={
                    "last_activity": max(activity, conversation.last_activity),
                    "last_message": preview_for(message),
                    "last_message_sender": message.sender_name,
                }
            )
            stored = self._store.compare_and_set(
                updated, expected_version=conversation.version
            )
            if stored is not None:
                return stored
        raise InvalidTransition(
            f"Conversation {conversation_id} kept changing while recording a message"
        )

    # ------------------------------------------------------------------
    # Building blocks shared with the escalation state machine

    def audit_entry(
        self,
        conversation: schemas.ConversationMetadata,
        action: schemas.AuditAction,
        actor: CallerContext,
        details: dict[str, Any] | None = None,
    ) -> schemas.ConversationAuditEntry:
        timestamp = self._clock()
        if conversation.audit_trail:
            # Keep the trail monotonic even if the clock steps backwards.
            timestamp = max(timestamp, conversation.audit_trail[-1].timestamp)
        return schemas.ConversationAuditEntry(
            id=self._new_id(),
            action=action,
            performed_by=actor.user_id,
            performed_by_name=actor.display_name,
            performed_by_role=actor.role,
            timestamp=timestamp,
            details=details or {},
        )

    def with_participant(
        self,
        conversation: schemas.ConversationMetadata,
        participant: schemas.ConversationParticipant,
        actor: CallerContext,
        **changes: Any,
    ) -> schemas.ConversationMetadata:
        entry = self.audit_entry(
            conversation,
            "participant_added",
            actor,
            {"participant_id": participant.id, "role": participant.role},
        )
        return conversation.model_copy(
            update={
                "participants": [*conversation.participants, participant],
                "audit_trail": [*conversation.audit_trail, entry],
                **changes,
            }
        )

    def commit(
        self,
        current: schemas.ConversationMetadata,
        updated: schemas.ConversationMetadata,
    ) -> schemas.ConversationMetadata:
        """Persist ``updated`` only if nobody changed ``current`` meanwhile."""

        stored = self._store.compare_and_set(updated, expected_version=current.version)
        if stored is None:
            raise InvalidTransition(
                f"Conversation {current.id} was modified concurrently; re-fetch and retry"
            )
        return stored

    def now(self) -> datetime:
        return self._clock()

    def new_message_id(self) -> str:
        return self._new_id()

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe(
        self,
        caller: CallerContext,
        callback: Callable[[list[schemas.ConversationMetadata]], None],
    ) -> Subscription:
        """Push the caller's visible conversation list on every change."""

        def _on_snapshot(_snapshot: Any) -> None:
            callback(self.list_for_user(caller.user_id, caller.role))

        return self._store.subscribe(_on_snapshot)


__all__ = [
    "ConversationRegistry",
    "PREVIEW_LENGTH",
    "RECIPIENT_ROLES",
    "filter_conversations",
    "matches_search",
    "new_id",
    "preview_for",
    "utcnow",
]
