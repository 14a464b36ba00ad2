"""Error taxonomy for the conversation and escalation engine.

Every error is scoped to the single operation that raised it. The HTTP layer
maps them onto status codes in :mod:`app.routers.conversations`.
"""

from __future__ import annotations


class MessagingError(RuntimeError):
    """Base class for all conversation engine errors."""


class ValidationError(MessagingError):
    """Raised when caller input is rejected (empty content, oversized file...)."""


class FileTooLarge(ValidationError):
    def __init__(self, filename: str, size: int, limit: int) -> None:
        super().__init__(
            f'File "{filename}" is too large ({size} bytes). Maximum size is {limit} bytes.'
        )
        self.filename = filename
        self.size = size
        self.limit = limit


class UnsupportedType(ValidationError):
    def __init__(self, filename: str, content_type: str | None) -> None:
        super().__init__(f'File type "{content_type}" of "{filename}" is not supported.')
        self.filename = filename
        self.content_type = content_type


class UploadFailed(MessagingError):
    """Raised when the blob storage collaborator rejects an accepted file."""

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f'Failed to upload "{filename}": {reason}')
        self.filename = filename


class ParticipantPermissionError(MessagingError):
    """Raised when the caller's role or membership forbids the operation."""


class ConversationNotFoundError(MessagingError):
    pass


class MessageNotFoundError(MessagingError):
    pass


class InvalidTransition(MessagingError):
    """Raised when a lifecycle transition is not legal from the current state."""


class AlreadyEscalated(InvalidTransition):
    pass


class AlreadyParticipant(MessagingError):
    pass


class StoreUnavailable(MessagingError):
    """Raised by store adapters when the backing collection cannot be reached."""


__all__ = [
    "AlreadyEscalated",
    "AlreadyParticipant",
    "ConversationNotFoundError",
    "FileTooLarge",
    "InvalidTransition",
    "MessageNotFoundError",
    "MessagingError",
    "ParticipantPermissionError",
    "StoreUnavailable",
    "UnsupportedType",
    "UploadFailed",
    "ValidationError",
]
