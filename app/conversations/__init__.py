"""Conversation, messaging and escalation services and schemas."""

from . import schemas
from .errors import MessagingError
from .models import CallerContext, FileDescriptor, LegacyMessage, ValidationReport
from .service import ConversationService

__all__ = [
    "CallerContext",
    "ConversationService",
    "FileDescriptor",
    "LegacyMessage",
    "MessagingError",
    "ValidationReport",
    "schemas",
]
