"""Merge the enhanced and legacy message collections into one timeline.

The two collections were written by different generations of the portal and
overlap: a message sent while the enhanced collection was unavailable lives
only in the legacy one, while some older clients wrote the same message to
both. :func:`reconcile` is the only place that decides what counts as the same
message. It is a pure function over snapshots and never writes back.

Duplicate rule: a legacy record duplicates an enhanced message when the ids
match, or when both carry identical content less than :data:`DUPLICATE_WINDOW`
apart. The window absorbs clock skew between the stores; it can miss edited
duplicates and can merge two identical messages sent within the window.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, get_args

from .models import LegacyMessage
from .schemas import EnhancedMessage, MessageStatus, MessageType, Priority, Role

DUPLICATE_WINDOW = timedelta(seconds=1)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SOURCE_RANK = {"enhanced": 0, "legacy": 1}

_LEGACY_DEFAULTS = {
    "sender_role": "affiliate",
    "priority": "medium",
    "status": "sent",
    "message_type": "text",
    "is_escalation": False,
}


def _coerce(value: Any, literal: Any, default: str) -> str:
    return value if value in get_args(literal) else default


def effective_timestamp(value: datetime | None) -> datetime:
    """Return a timezone-aware timestamp, using the epoch for missing values."""

    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_legacy(record: LegacyMessage) -> EnhancedMessage:
    """Project a legacy record onto the enhanced shape without mutating it."""

    return EnhancedMessage(
        id=record.id,
        conversation_id=record.conversation_id,
        sender_id=record.sender_id,
        sender_name=record.sender_name,
        sender_role=_coerce(record.sender_role, Role, _LEGACY_DEFAULTS["sender_role"]),
        content=record.content or "",
        timestamp=record.timestamp,
        reply_to=record.reply_to,
        attachments=list(record.attachments or []),
        priority=_coerce(record.priority, Priority, _LEGACY_DEFAULTS["priority"]),
        status=_coerce(record.status, MessageStatus, _LEGACY_DEFAULTS["status"]),
        department=record.department,
        is_escalation=(
            record.is_escalation
            if record.is_escalation is not None
            else _LEGACY_DEFAULTS["is_escalation"]
        ),
        read_by=[],
        message_type=_coerce(
            record.message_type, MessageType, _LEGACY_DEFAULTS["message_type"]
        ),
        metadata=dict(record.metadata) if record.metadata else None,
        source="legacy",
    )


def is_duplicate(legacy: LegacyMessage, enhanced: EnhancedMessage) -> bool:
    if legacy.id == enhanced.id:
        return True
    if (legacy.content or "") != enhanced.content:
        return False
    delta = effective_timestamp(legacy.timestamp) - effective_timestamp(
        enhanced.timestamp
    )
    return abs(delta) < DUPLICATE_WINDOW


def _has_duplicate(legacy: LegacyMessage, enhanced: Iterable[EnhancedMessage]) -> bool:
    return any(is_duplicate(legacy, candidate) for candidate in enhanced)


def reconcile(
    enhanced: Sequence[EnhancedMessage], legacy: Sequence[LegacyMessage]
) -> list[EnhancedMessage]:
    """Return the canonical, duplicate-free timeline for one conversation.

    Every enhanced message is kept. Legacy records are normalized and kept
    unless they duplicate an enhanced message. The result is sorted by
    timestamp; ties go to enhanced messages first, then to input order.
    """

    ranked: list[tuple[datetime, int, int, EnhancedMessage]] = []
    for index, message in enumerate(enhanced):
        tagged = message.model_copy(update={"source": "enhanced"})
        ranked.append(
            (effective_timestamp(message.timestamp), _SOURCE_RANK["enhanced"], index, tagged)
        )
    for index, record in enumerate(legacy):
        if _has_duplicate(record, enhanced):
            continue
        ranked.append(
            (
                effective_timestamp(record.timestamp),
                _SOURCE_RANK["legacy"],
                index,
                normalize_legacy(record),
            )
        )
    ranked.sort(key=lambda item: item[:3])
    return [item[3] for item in ranked]


__all__ = [
    "DUPLICATE_WINDOW",
    "EPOCH",
    "effective_timestamp",
    "is_duplicate",
    "normalize_legacy",
    "reconcile",
]
