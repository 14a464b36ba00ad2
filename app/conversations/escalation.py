"""Conversation lifecycle: active -> escalated -> resolved/archived.

Every transition builds the complete updated document first (status,
escalation fields, audit entry) and persists it with a single
compare-and-set. A rejected transition therefore never leaves a partial
audit or metadata update behind, and of two racing escalations exactly one
is accepted. Announcements are posted to the timeline only after the
transition has been stored.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from . import schemas
from .errors import (
    AlreadyEscalated,
    AlreadyParticipant,
    InvalidTransition,
    MessagingError,
    ParticipantPermissionError,
    ValidationError,
)
from .models import CallerContext
from .registry import ConversationRegistry

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"escalated", "archived"}),
    "escalated": frozenset({"resolved", "archived"}),
    "resolved": frozenset({"archived"}),
    "archived": frozenset(),
}

ESCALATION_NOTICE = "CONVERSATION ESCALATED TO MANAGEMENT - REASON: {reason}"
JOIN_NOTICE = (
    "{name} HAS JOINED THE CONVERSATION - "
    "MANAGEMENT OVERSIGHT ACTIVATED FOR THIS COMMUNICATION"
)
RESOLUTION_NOTICE = "ESCALATION RESOLVED BY {name}"

MessageWriter = Callable[[schemas.EnhancedMessage], Any]


def can_transition(source: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


class EscalationStateMachine:
    """Drives the conversation lifecycle and its audit trail."""

    def __init__(self, registry: ConversationRegistry, write_message: MessageWriter) -> None:
        self._registry = registry
        self._write_message = write_message

    def escalate(
        self, conversation_id: str, by_user: CallerContext, reason: str
    ) -> schemas.ConversationMetadata:
        """Hand the conversation to management oversight.

        Only an admin participant may escalate, with a non-empty reason, and
        only while the conversation is active and has no governor yet.
        """

        conversation = self._registry.get(conversation_id)
        if by_user.role != "admin":
            raise ParticipantPermissionError("Only admins can escalate a conversation")
        self._require_participant(conversation, by_user)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("An escalation reason is required")
        self._guard_escalation(conversation)

        now = self._registry.now()
        entry = self._registry.audit_entry(
            conversation, "escalated", by_user, {"reason": reason}
        )
        updated = conversation.model_copy(
            update={
                "status": "escalated",
                "is_escalated": True,
                "escalated_at": now,
                "escalated_by": by_user.user_id,
                "escalation_reason": reason,
                "audit_trail": [*conversation.audit_trail, entry],
            }
        )
        try:
            stored = self._registry.commit(conversation, updated)
        except InvalidTransition:
            latest = self._registry.get(conversation_id)
            self._guard_escalation(latest)
            raise
        logger.info(
            "Conversation %s escalated by %s: %s", conversation_id, by_user.user_id, reason
        )
        self._announce(
            stored,
            by_user,
            ESCALATION_NOTICE.format(reason=reason),
            is_escalation=True,
            escalation_reason=reason,
            event="escalated",
        )
        return stored

    def join_as_governor(
        self, conversation_id: str, governor: CallerContext
    ) -> schemas.ConversationMetadata:
        conversation = self._registry.get(conversation_id)
        if governor.role != "governor":
            raise ParticipantPermissionError("Only governors can join an escalation")
        if conversation.status != "escalated":
            self._reject(conversation, "join")
        if conversation.has_participant(governor.user_id):
            raise AlreadyParticipant(
                f"{governor.user_id} already participates in {conversation_id}"
            )
        joined = governor.as_participant(self._registry.now())
        updated = self._registry.with_participant(conversation, joined, governor)
        stored = self._registry.commit(conversation, updated)
        logger.info("Governor %s joined conversation %s", governor.user_id, conversation_id)
        self._announce(
            stored,
            governor,
            JOIN_NOTICE.format(name=governor.display_name.upper()),
            event="governor_joined",
        )
        return stored

    def resolve(
        self, conversation_id: str, by_user: CallerContext
    ) -> schemas.ConversationMetadata:
        """Close an escalation. Governor participation and history are kept."""

        conversation = self._registry.get(conversation_id)
        self._require_staff(conversation, by_user)
        if not can_transition(conversation.status, "resolved"):
            self._reject(conversation, "resolved")
        entry = self._registry.audit_entry(
            conversation, "resolved", by_user, {"previous_status": conversation.status}
        )
        updated = conversation.model_copy(
            update={
                "status": "resolved",
                "is_escalated": False,
                "audit_trail": [*conversation.audit_trail, entry],
            }
        )
        stored = self._registry.commit(conversation, updated)
        logger.info("Conversation %s resolved by %s", conversation_id, by_user.user_id)
        self._announce(
            stored,
            by_user,
            RESOLUTION_NOTICE.format(name=by_user.display_name.upper()),
            message_type="resolution",
            event="resolved",
        )
        return stored

    def archive(
        self, conversation_id: str, by_user: CallerContext
    ) -> schemas.ConversationMetadata:
        conversation = self._registry.get(conversation_id)
        self._require_staff(conversation, by_user)
        if not can_transition(conversation.status, "archived"):
            self._reject(conversation, "archived")
        entry = self._registry.audit_entry(
            conversation, "archived", by_user, {"previous_status": conversation.status}
        )
        updated = conversation.model_copy(
            update={
                "status": "archived",
                "is_escalated": False,
                "audit_trail": [*conversation.audit_trail, entry],
            }
        )
        stored = self._registry.commit(conversation, updated)
        logger.info("Conversation %s archived by %s", conversation_id, by_user.user_id)
        return stored

    # ------------------------------------------------------------------
    # Guards

    def _guard_escalation(self, conversation: schemas.ConversationMetadata) -> None:
        if conversation.status == "escalated" or conversation.has_role("governor"):
            logger.info("Rejected escalation of %s: already escalated", conversation.id)
            raise AlreadyEscalated(f"Conversation {conversation.id} is already escalated")
        if not can_transition(conversation.status, "escalated"):
            self._reject(conversation, "escalated")

    @staticmethod
    def _require_participant(
        conversation: schemas.ConversationMetadata, caller: CallerContext
    ) -> None:
        if not conversation.has_participant(caller.user_id):
            raise ParticipantPermissionError(
                f"{caller.user_id} is not a participant of {conversation.id}"
            )

    def _require_staff(
        self, conversation: schemas.ConversationMetadata, caller: CallerContext
    ) -> None:
        if caller.role not in {"admin", "governor"}:
            raise ParticipantPermissionError("Only admins and governors can do this")
        if caller.role != "governor":
            self._require_participant(conversation, caller)

    @staticmethod
    def _reject(conversation: schemas.ConversationMetadata, target: str) -> None:
        logger.info(
            "Rejected transition of %s from %s to %s",
            conversation.id,
            conversation.status,
            target,
        )
        raise InvalidTransition(
            f"Conversation {conversation.id} cannot go from {conversation.status} to {target}"
        )

    # ------------------------------------------------------------------
    # Announcements

    def _announce(
        self,
        conversation: schemas.ConversationMetadata,
        actor: CallerContext,
        content: str,
        *,
        event: str,
        message_type: schemas.MessageType = "system",
        is_escalation: bool = False,
        escalation_reason: str | None = None,
    ) -> None:
        message = schemas.EnhancedMessage(
            id=self._registry.new_message_id(),
            conversation_id=conversation.id,
            sender_id=actor.user_id,
            sender_name=actor.display_name,
            sender_role=actor.role,
            content=content,
            timestamp=self._registry.now(),
            priority="high",
            department=conversation.department,
            is_escalation=is_escalation,
            escalation_reason=escalation_reason,
            message_type=message_type,
            metadata={"event": event},
        )
        try:
            self._write_message(message)
        except MessagingError:
            logger.exception(
                "Transition %s on %s stored but its announcement could not be written",
                event,
                conversation.id,
            )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ESCALATION_NOTICE",
    "EscalationStateMachine",
    "JOIN_NOTICE",
    "RESOLUTION_NOTICE",
    "can_transition",
]
