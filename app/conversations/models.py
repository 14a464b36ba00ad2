"""Domain values used by the conversation engine outside of the API schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from .errors import MessagingError
from .schemas import Attachment, ConversationParticipant, Role

BanType = Literal["withdrawal_only", "trading_only", "full_platform"]


@dataclass(frozen=True)
class CallerContext:
    """Identity of the caller, supplied by the auth layer and trusted as-is."""

    user_id: str
    display_name: str
    role: Role
    email: str | None = None

    def as_participant(self, joined_at: datetime) -> ConversationParticipant:
        return ConversationParticipant(
            id=self.user_id,
            name=self.display_name,
            role=self.role,
            email=self.email,
            joined_at=joined_at,
        )


@dataclass
class LegacyMessage:
    """Record from the older message collection.

    Only identity, sender and content are guaranteed; everything else is
    optional and filled in when the reconciler normalizes the record.
    """

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    content: str = ""
    timestamp: datetime | None = None
    sender_role: Role | None = None
    priority: str | None = None
    status: str | None = None
    reply_to: str | None = None
    department: str | None = None
    attachments: list[str] = field(default_factory=list)
    message_type: str | None = None
    is_escalation: bool | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileDescriptor:
    """A file submitted for attachment, before validation."""

    filename: str
    size: int
    content_type: str | None
    data: bytes = b""


@dataclass
class ValidationReport:
    """Outcome of validating (and optionally uploading) a batch of files."""

    accepted: list[Attachment] = field(default_factory=list)
    errors: list[MessagingError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class BanStatus:
    is_active: bool
    ban_type: BanType
    reason: str | None = None
    expires_at: datetime | None = None

    @property
    def blocks_messaging(self) -> bool:
        return self.is_active and self.ban_type == "full_platform"
