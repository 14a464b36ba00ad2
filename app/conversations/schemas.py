"""Pydantic schemas for conversations, messages and their API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["governor", "admin", "affiliate"]
ConversationType = Literal[
    "admin_affiliate", "admin_governor", "affiliate_governor", "group"
]
ConversationStatus = Literal["active", "escalated", "resolved", "archived"]
Priority = Literal["low", "medium", "high", "urgent"]
MessageStatus = Literal["sent", "delivered", "read"]
MessageType = Literal["text", "system", "escalation", "resolution"]
AuditAction = Literal[
    "created",
    "participant_added",
    "participant_removed",
    "escalated",
    "resolved",
    "archived",
]
Provenance = Literal["enhanced", "legacy"]


class ConversationParticipant(BaseModel):
    id: str
    name: str
    role: Role
    email: str | None = None
    joined_at: datetime
    last_seen: datetime | None = None


class ConversationAuditEntry(BaseModel):
    """A single structural action taken on a conversation."""

    model_config = ConfigDict(frozen=True)

    id: str
    action: AuditAction
    performed_by: str
    performed_by_name: str
    performed_by_role: Role
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class ConversationMetadata(BaseModel):
    """Aggregate root owning the participants and the audit trail.

    ``version`` is bumped by the store on every accepted write and is the
    compare-and-set token used to linearize lifecycle transitions.
    """

    id: str
    type: ConversationType
    title: str
    description: str | None = None
    department: str | None = None
    tags: list[str] = Field(default_factory=list)
    participants: list[ConversationParticipant] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    last_activity: datetime
    last_message: str = ""
    last_message_sender: str = ""
    status: ConversationStatus = "active"
    priority: Priority = "medium"
    is_escalated: bool = False
    escalated_at: datetime | None = None
    escalated_by: str | None = None
    escalation_reason: str | None = None
    audit_trail: list[ConversationAuditEntry] = Field(default_factory=list)
    version: int = 0

    def participant(self, user_id: str) -> ConversationParticipant | None:
        return next((p for p in self.participants if p.id == user_id), None)

    def has_participant(self, user_id: str) -> bool:
        return self.participant(user_id) is not None

    def has_role(self, role: str) -> bool:
        return any(p.role == role for p in self.participants)


class ReadReceipt(BaseModel):
    user_id: str
    user_name: str
    read_at: datetime


class Attachment(BaseModel):
    id: str
    name: str
    size: int
    type: str
    url: str


class EnhancedMessage(BaseModel):
    """Canonical message shape produced by the reconciler.

    ``timestamp`` may be missing on malformed records; such messages sort
    first in a reconciled timeline. ``source`` is the provenance tag set by
    the reconciler and is never persisted.
    """

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    sender_role: Role
    content: str = ""
    timestamp: datetime | None = None
    reply_to: str | None = None
    attachments: list[str] = Field(default_factory=list)
    priority: Priority = "medium"
    status: MessageStatus = "sent"
    department: str | None = None
    is_escalation: bool = False
    escalation_reason: str | None = None
    read_by: list[ReadReceipt] = Field(default_factory=list)
    edited_at: datetime | None = None
    edited_by: str | None = None
    original_content: str | None = None
    message_type: MessageType = "text"
    metadata: dict[str, Any] | None = None
    source: Provenance | None = None

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)


# ----------------------------------------------------------------------
# API payloads


class ParticipantIn(BaseModel):
    id: str
    name: str
    role: Role
    email: str | None = None


class ConversationCreateRequest(BaseModel):
    type: ConversationType
    title: str
    participants: list[ParticipantIn]
    description: str | None = None
    department: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: Priority = "medium"


class ConversationList(BaseModel):
    items: list[ConversationMetadata]
    total: int


class MessageSendRequest(BaseModel):
    content: str = ""
    priority: Priority = "medium"
    department: str | None = None
    reply_to: str | None = None
    attachments: list[str] = Field(default_factory=list)


class MessageEditRequest(BaseModel):
    content: str


class SendResult(BaseModel):
    message_id: str
    source: Provenance


class EscalationRequest(BaseModel):
    reason: str


class MessageTimeline(BaseModel):
    conversation_id: str
    messages: list[EnhancedMessage]
    stale: bool = False


class UnreadCount(BaseModel):
    conversation_id: str
    unread: int


class AttachmentErrorOut(BaseModel):
    filename: str
    code: str
    detail: str


class AttachmentUploadResponse(BaseModel):
    accepted: list[Attachment]
    errors: list[AttachmentErrorOut]


class Recipient(BaseModel):
    id: str
    name: str
    role: Role
    email: str | None = None
