"""Storage adapters for conversations and the two message collections.

Three collections back the engine:

* ``conversations``: one document per :class:`~.schemas.ConversationMetadata`.
* ``enhanced_messages``: the current message collection.
* ``messages``: the legacy collection with a reduced record shape.

Each collection has a Protocol, an in-memory implementation (used by tests
and when no database is configured) and a PostgreSQL implementation. After each
accepted write an adapter publishes a fresh snapshot to the shared
:class:`FanoutHub` for topics that have subscribers. A failed refresh never
turns a stored write into an error.
"""
from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import ValidationError as SchemaValidationError

from . import schemas
from .errors import MessageNotFoundError, StoreUnavailable
from .fanout import (
    CONVERSATIONS_TOPIC,
    FanoutHub,
    Subscription,
    enhanced_topic,
    legacy_topic,
)
from .models import LegacyMessage

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schema.sql"


def _publish_snapshot(hub: FanoutHub, topic: str, load: Callable[[], Any]) -> None:
    """Push a fresh snapshot of ``topic`` after an accepted write.

    The write has already been stored, so a failed reload is logged and the
    change reaches subscribers with the next successful publish.
    """

    if not hub.subscriber_count(topic):
        return
    try:
        snapshot = load()
    except (StoreUnavailable, psycopg.Error) as exc:
        logger.warning("Could not refresh %s after a stored write: %s", topic, exc)
        return
    hub.publish(topic, snapshot)


class ConversationStore(Protocol):
    """Persistence contract for conversation metadata."""

    def get(self, conversation_id: str) -> Optional[schemas.ConversationMetadata]: ...

    def list_all(self) -> List[schemas.ConversationMetadata]: ...

    def list_for_participant(self, user_id: str) -> List[schemas.ConversationMetadata]: ...

    def insert(self, conversation: schemas.ConversationMetadata) -> schemas.ConversationMetadata: ...

    def compare_and_set(
        self, conversation: schemas.ConversationMetadata, *, expected_version: int
    ) -> Optional[schemas.ConversationMetadata]: ...

    def subscribe(self, callback: SnapshotCallback) -> Subscription: ...


class EnhancedMessageStore(Protocol):
    def write(self, message: schemas.EnhancedMessage) -> str: ...

    def get(self, message_id: str) -> Optional[schemas.EnhancedMessage]: ...

    def list_for_conversation(self, conversation_id: str) -> List[schemas.EnhancedMessage]: ...

    def add_read_receipt(
        self, message_id: str, receipt: schemas.ReadReceipt
    ) -> schemas.EnhancedMessage: ...

    def apply_edit(
        self, message_id: str, content: str, *, edited_by: str, edited_at: datetime
    ) -> Optional[schemas.EnhancedMessage]: ...

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription: ...


class LegacyMessageStore(Protocol):
    def write(self, record: LegacyMessage) -> str: ...

    def get(self, message_id: str) -> Optional[LegacyMessage]: ...

    def list_for_conversation(self, conversation_id: str) -> List[LegacyMessage]: ...

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription: ...


class UserDirectory(Protocol):
    """Read-only view of portal users, used to offer message recipients."""

    def list_users(self) -> List[schemas.Recipient]: ...


# ----------------------------------------------------------------------
# In-memory implementations


class _InMemoryStore:
    """Shared plumbing: availability switch, lock and hub."""

    def __init__(self, hub: Optional[FanoutHub] = None) -> None:
        self.hub = hub or FanoutHub()
        self.available = True
        self._lock = threading.RLock()

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable(f"{type(self).__name__} is unavailable")


class InMemoryConversationStore(_InMemoryStore):
    def __init__(self, hub: Optional[FanoutHub] = None) -> None:
        super().__init__(hub)
        self._items: Dict[str, schemas.ConversationMetadata] = {}

    def get(self, conversation_id: str) -> Optional[schemas.ConversationMetadata]:
        self._check()
        with self._lock:
            item = self._items.get(conversation_id)
            return item.model_copy(deep=True) if item else None

    def list_all(self) -> List[schemas.ConversationMetadata]:
        self._check()
        with self._lock:
            items = [item.model_copy(deep=True) for item in self._items.values()]
        return sorted(items, key=lambda c: c.last_activity, reverse=True)

    def list_for_participant(self, user_id: str) -> List[schemas.ConversationMetadata]:
        return [c for c in self.list_all() if c.has_participant(user_id)]

    def insert(self, conversation: schemas.ConversationMetadata) -> schemas.ConversationMetadata:
        self._check()
        with self._lock:
            if conversation.id in self._items:
                raise ValueError(f"Conversation {conversation.id} already exists")
            stored = conversation.model_copy(update={"version": 1}, deep=True)
            self._items[stored.id] = stored
        self._publish()
        return stored.model_copy(deep=True)

    def compare_and_set(
        self, conversation: schemas.ConversationMetadata, *, expected_version: int
    ) -> Optional[schemas.ConversationMetadata]:
        self._check()
        with self._lock:
            current = self._items.get(conversation.id)
            if current is None or current.version != expected_version:
                return None
            stored = conversation.model_copy(
                update={"version": expected_version + 1}, deep=True
            )
            self._items[stored.id] = stored
        self._publish()
        return stored.model_copy(deep=True)

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        self._check()
        return self.hub.subscribe_with_snapshot(CONVERSATIONS_TOPIC, callback, self.list_all)

    def _publish(self) -> None:
        _publish_snapshot(self.hub, CONVERSATIONS_TOPIC, self.list_all)


class InMemoryEnhancedMessageStore(_InMemoryStore):
    def __init__(self, hub: Optional[FanoutHub] = None) -> None:
        super().__init__(hub)
        self._items: Dict[str, schemas.EnhancedMessage] = {}

    def write(self, message: schemas.EnhancedMessage) -> str:
        self._check()
        with self._lock:
            self._items[message.id] = message.model_copy(
                update={"source": None}, deep=True
            )
        self._publish(message.conversation_id)
        return message.id

    def get(self, message_id: str) -> Optional[schemas.EnhancedMessage]:
        self._check()
        with self._lock:
            item = self._items.get(message_id)
            return item.model_copy(deep=True) if item else None

    def list_for_conversation(self, conversation_id: str) -> List[schemas.EnhancedMessage]:
        self._check()
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._items.values()
                if item.conversation_id == conversation_id
            ]

    def add_read_receipt(
        self, message_id: str, receipt: schemas.ReadReceipt
    ) -> schemas.EnhancedMessage:
        self._check()
        with self._lock:
            item = self._items.get(message_id)
            if item is None:
                raise MessageNotFoundError(f"Message {message_id} not found")
            if not item.is_read_by(receipt.user_id):
                updated = item.model_copy(
                    update={"read_by": [*item.read_by, receipt], "status": "read"},
                    deep=True,
                )
                self._items[message_id] = updated
                changed = True
            else:
                changed = False
            result = self._items[message_id].model_copy(deep=True)
        if changed:
            self._publish(result.conversation_id)
        return result

    def apply_edit(
        self, message_id: str, content: str, *, edited_by: str, edited_at: datetime
    ) -> Optional[schemas.EnhancedMessage]:
        self._check()
        with self._lock:
            item = self._items.get(message_id)
            if item is None:
                raise MessageNotFoundError(f"Message {message_id} not found")
            if item.edited_at is not None:
                return None
            updated = item.model_copy(
                update={
                    "content": content,
                    "original_content": item.content,
                    "edited_at": edited_at,
                    "edited_by": edited_by,
                },
                deep=True,
            )
            self._items[message_id] = updated
        self._publish(updated.conversation_id)
        return updated.model_copy(deep=True)

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        self._check()
        return self.hub.subscribe_with_snapshot(
            enhanced_topic(conversation_id),
            callback,
            lambda: self.list_for_conversation(conversation_id),
        )

    def _publish(self, conversation_id: str) -> None:
        _publish_snapshot(
            self.hub,
            enhanced_topic(conversation_id),
            lambda: self.list_for_conversation(conversation_id),
        )


class InMemoryLegacyMessageStore(_InMemoryStore):
    def __init__(self, hub: Optional[FanoutHub] = None) -> None:
        super().__init__(hub)
        self._items: Dict[str, LegacyMessage] = {}

    def write(self, record: LegacyMessage) -> str:
        self._check()
        with self._lock:
            self._items[record.id] = copy.deepcopy(record)
        self._publish(record.conversation_id)
        return record.id

    def get(self, message_id: str) -> Optional[LegacyMessage]:
        self._check()
        with self._lock:
            item = self._items.get(message_id)
            return copy.deepcopy(item) if item else None

    def list_for_conversation(self, conversation_id: str) -> List[LegacyMessage]:
        self._check()
        with self._lock:
            return [
                copy.deepcopy(item)
                for item in self._items.values()
                if item.conversation_id == conversation_id
            ]

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        self._check()
        return self.hub.subscribe_with_snapshot(
            legacy_topic(conversation_id),
            callback,
            lambda: self.list_for_conversation(conversation_id),
        )

    def _publish(self, conversation_id: str) -> None:
        _publish_snapshot(
            self.hub,
            legacy_topic(conversation_id),
            lambda: self.list_for_conversation(conversation_id),
        )


class InMemoryUserDirectory:
    def __init__(self, users: Optional[List[schemas.Recipient]] = None) -> None:
        self._users = list(users or [])

    def add(self, user: schemas.Recipient) -> None:
        self._users.append(user)

    def list_users(self) -> List[schemas.Recipient]:
        return list(self._users)


# ----------------------------------------------------------------------
# PostgreSQL implementations


class _PostgresStore:
    """Connection handling shared by the PostgreSQL adapters.

    A connection is opened per operation; psycopg commits when the ``with``
    block exits cleanly and rolls back otherwise. Connectivity failures are
    surfaced as :class:`StoreUnavailable`.
    """

    def __init__(
        self,
        connect: Callable[[], psycopg.Connection],
        hub: Optional[FanoutHub] = None,
    ) -> None:
        self._connect = connect
        self.hub = hub or FanoutHub()

    @classmethod
    def from_url(cls, database_url: str, hub: Optional[FanoutHub] = None):
        return cls(lambda: psycopg.connect(database_url), hub)

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            conn = self._connect()
        except psycopg.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        try:
            with conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    yield cur
        except psycopg.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc


def ensure_schema(conn: psycopg.Connection, schema_sql_path: Path = SCHEMA_PATH) -> None:
    """Create the three collections if they do not exist yet.

    The DDL only uses ``IF NOT EXISTS`` clauses, so it is safe to call on
    every start-up.
    """

    with conn.cursor() as cur:
        cur.execute(schema_sql_path.read_text(encoding="utf-8"))
    conn.commit()


def reset_schema(conn: psycopg.Connection, schema_sql_path: Path = SCHEMA_PATH) -> None:
    """Drop and recreate the collections. Intended for tests."""

    with conn.cursor() as cur:
        cur.execute("DROP TABLE IF EXISTS messages CASCADE")
        cur.execute("DROP TABLE IF EXISTS enhanced_messages CASCADE")
        cur.execute("DROP TABLE IF EXISTS conversations CASCADE")
    conn.commit()
    ensure_schema(conn, schema_sql_path)


def _dump(model: Any) -> Jsonb:
    return Jsonb(model.model_dump(mode="json", exclude={"source", "version"}))


class PostgresConversationStore(_PostgresStore):
    """PostgreSQL implementation of :class:`ConversationStore`."""

    def get(self, conversation_id: str) -> Optional[schemas.ConversationMetadata]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT document, version FROM conversations WHERE id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        return self._hydrate(row) if row else None

    def list_all(self) -> List[schemas.ConversationMetadata]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT document, version FROM conversations ORDER BY last_activity DESC"
            )
            rows = cur.fetchall()
        return [self._hydrate(row) for row in rows]

    def list_for_participant(self, user_id: str) -> List[schemas.ConversationMetadata]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT document, version FROM conversations
                WHERE %s = ANY(participant_ids)
                ORDER BY last_activity DESC
                """,
                (user_id,),
            )
            rows = cur.fetchall()
        return [self._hydrate(row) for row in rows]

    def insert(self, conversation: schemas.ConversationMetadata) -> schemas.ConversationMetadata:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversations
                    (id, document, participant_ids, status, is_escalated, last_activity, version)
                VALUES (%s, %s, %s, %s, %s, %s, 1)
                RETURNING document, version
                """,
                (
                    conversation.id,
                    _dump(conversation),
                    [p.id for p in conversation.participants],
                    conversation.status,
                    conversation.is_escalated,
                    conversation.last_activity,
                ),
            )
            row = cur.fetchone()
        self._publish()
        return self._hydrate(row)

    def compare_and_set(
        self, conversation: schemas.ConversationMetadata, *, expected_version: int
    ) -> Optional[schemas.ConversationMetadata]:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversations
                SET document = %s, participant_ids = %s, status = %s, is_escalated = %s,
                    last_activity = %s, version = version + 1, updated_at = now()
                WHERE id = %s AND version = %s
                RETURNING document, version
                """,
                (
                    _dump(conversation),
                    [p.id for p in conversation.participants],
                    conversation.status,
                    conversation.is_escalated,
                    conversation.last_activity,
                    conversation.id,
                    expected_version,
                ),
            )
            row = cur.fetchone()
        if row is None:
            return None
        self._publish()
        return self._hydrate(row)

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        return self.hub.subscribe_with_snapshot(CONVERSATIONS_TOPIC, callback, self.list_all)

    def _publish(self) -> None:
        _publish_snapshot(self.hub, CONVERSATIONS_TOPIC, self.list_all)

    @staticmethod
    def _hydrate(row: Dict[str, Any]) -> schemas.ConversationMetadata:
        data = dict(row["document"])
        data["version"] = row["version"]
        return schemas.ConversationMetadata.model_validate(data)


class PostgresEnhancedMessageStore(_PostgresStore):
    """PostgreSQL implementation of :class:`EnhancedMessageStore`."""

    def write(self, message: schemas.EnhancedMessage) -> str:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO enhanced_messages (id, conversation_id, sent_at, document)
                VALUES (%s, %s, %s, %s)
                """,
                (message.id, message.conversation_id, message.timestamp, _dump(message)),
            )
        self._publish(message.conversation_id)
        return message.id

    def get(self, message_id: str) -> Optional[schemas.EnhancedMessage]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT document FROM enhanced_messages WHERE id = %s", (message_id,)
            )
            row = cur.fetchone()
        return self._hydrate(row) if row else None

    def list_for_conversation(self, conversation_id: str) -> List[schemas.EnhancedMessage]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT document FROM enhanced_messages
                WHERE conversation_id = %s
                ORDER BY sent_at ASC NULLS FIRST
                """,
                (conversation_id,),
            )
            rows = cur.fetchall()
        messages = [self._hydrate(row) for row in rows]
        return [m for m in messages if m is not None]

    def add_read_receipt(
        self, message_id: str, receipt: schemas.ReadReceipt
    ) -> schemas.EnhancedMessage:
        with self._cursor() as cur:
            message = self._lock_row(cur, message_id)
            if not message.is_read_by(receipt.user_id):
                message = message.model_copy(
                    update={"read_by": [*message.read_by, receipt], "status": "read"}
                )
                self._update_document(cur, message)
                changed = True
            else:
                changed = False
        if changed:
            self._publish(message.conversation_id)
        return message

    def apply_edit(
        self, message_id: str, content: str, *, edited_by: str, edited_at: datetime
    ) -> Optional[schemas.EnhancedMessage]:
        with self._cursor() as cur:
            message = self._lock_row(cur, message_id)
            if message.edited_at is not None:
                return None
            message = message.model_copy(
                update={
                    "content": content,
                    "original_content": message.content,
                    "edited_at": edited_at,
                    "edited_by": edited_by,
                }
            )
            self._update_document(cur, message)
        self._publish(message.conversation_id)
        return message

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        return self.hub.subscribe_with_snapshot(
            enhanced_topic(conversation_id),
            callback,
            lambda: self.list_for_conversation(conversation_id),
        )

    def _lock_row(self, cur: psycopg.Cursor, message_id: str) -> schemas.EnhancedMessage:
        cur.execute(
            "SELECT document FROM enhanced_messages WHERE id = %s FOR UPDATE",
            (message_id,),
        )
        row = cur.fetchone()
        message = self._hydrate(row) if row else None
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        return message

    @staticmethod
    def _update_document(cur: psycopg.Cursor, message: schemas.EnhancedMessage) -> None:
        cur.execute(
            "UPDATE enhanced_messages SET document = %s WHERE id = %s",
            (_dump(message), message.id),
        )

    def _publish(self, conversation_id: str) -> None:
        _publish_snapshot(
            self.hub,
            enhanced_topic(conversation_id),
            lambda: self.list_for_conversation(conversation_id),
        )

    @staticmethod
    def _hydrate(row: Dict[str, Any]) -> Optional[schemas.EnhancedMessage]:
        try:
            return schemas.EnhancedMessage.model_validate(row["document"])
        except SchemaValidationError:
            logger.warning("Skipping malformed enhanced message document: %s", row)
            return None


class PostgresLegacyMessageStore(_PostgresStore):
    """PostgreSQL implementation of :class:`LegacyMessageStore`."""

    _COLUMNS = (
        "id, conversation_id, sender_id, sender_name, sender_role, content, sent_at, "
        "reply_to, priority, status, department, attachments, message_type, "
        "is_escalation, metadata"
    )

    def write(self, record: LegacyMessage) -> str:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO messages ({self._COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.conversation_id,
                    record.sender_id,
                    record.sender_name,
                    record.sender_role,
                    record.content,
                    record.timestamp,
                    record.reply_to,
                    record.priority,
                    record.status,
                    record.department,
                    Jsonb(list(record.attachments)),
                    record.message_type,
                    record.is_escalation,
                    Jsonb(record.metadata or {}),
                ),
            )
        self._publish(record.conversation_id)
        return record.id

    def get(self, message_id: str) -> Optional[LegacyMessage]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {self._COLUMNS} FROM messages WHERE id = %s", (message_id,))
            row = cur.fetchone()
        return self._hydrate(row) if row else None

    def list_for_conversation(self, conversation_id: str) -> List[LegacyMessage]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {self._COLUMNS} FROM messages
                WHERE conversation_id = %s
                ORDER BY sent_at ASC NULLS FIRST
                """,
                (conversation_id,),
            )
            rows = cur.fetchall()
        return [self._hydrate(row) for row in rows]

    def subscribe(self, conversation_id: str, callback: SnapshotCallback) -> Subscription:
        return self.hub.subscribe_with_snapshot(
            legacy_topic(conversation_id),
            callback,
            lambda: self.list_for_conversation(conversation_id),
        )

    def _publish(self, conversation_id: str) -> None:
        _publish_snapshot(
            self.hub,
            legacy_topic(conversation_id),
            lambda: self.list_for_conversation(conversation_id),
        )

    @staticmethod
    def _hydrate(row: Dict[str, Any]) -> LegacyMessage:
        return LegacyMessage(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row.get("sender_id") or "",
            sender_name=row.get("sender_name") or "",
            content=row.get("content") or "",
            timestamp=row.get("sent_at"),
            sender_role=row.get("sender_role"),
            priority=row.get("priority"),
            status=row.get("status"),
            reply_to=row.get("reply_to"),
            department=row.get("department"),
            attachments=list(row.get("attachments") or []),
            message_type=row.get("message_type"),
            is_escalation=row.get("is_escalation"),
            metadata=dict(row.get("metadata") or {}),
        )


__all__ = [
    "ConversationStore",
    "EnhancedMessageStore",
    "InMemoryConversationStore",
    "InMemoryEnhancedMessageStore",
    "InMemoryLegacyMessageStore",
    "InMemoryUserDirectory",
    "LegacyMessageStore",
    "PostgresConversationStore",
    "PostgresEnhancedMessageStore",
    "PostgresLegacyMessageStore",
    "SCHEMA_PATH",
    "UserDirectory",
    "ensure_schema",
    "reset_schema",
]
