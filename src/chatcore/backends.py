"""Backend implementations for chatcore.

A backend bundles every repository interface the components need plus a
transaction boundary:
- Backend: Abstract base class defining the interface
- LocalBackend: File-based SQLite storage, one connection per thread
- InMemoryBackend: Ephemeral SQLite for testing, one shared connection
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from . import db
from .models import (
    Conversation,
    ConversationKind,
    EditRecord,
    Message,
    MessageType,
    Participant,
    ParticipantRole,
    Target,
    utc_now,
)
from .repositories import (
    ConversationRepository,
    MessageRepository,
    ParticipantRepository,
    StreamDirectory,
    UserDirectory,
)

logger = logging.getLogger(__name__)


@dataclass
class BackendInfo:
    """Information about a backend instance."""

    backend_type: str
    """Type of backend: 'local' or 'in_memory'."""

    location: str
    """Location description: database path or ':memory:'."""


class Backend(
    MessageRepository,
    ConversationRepository,
    ParticipantRepository,
    UserDirectory,
    StreamDirectory,
):
    """Abstract base class for chatcore backends.

    All backends implement the same repository interfaces, so the
    components behave identically on file-backed or in-memory storage.
    """

    @abstractmethod
    def get_info(self) -> BackendInfo:
        """Get information about this backend."""
        ...

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager making the enclosed repository calls atomic.

        Nested use on the same thread joins the outer transaction.
        """
        ...

    @abstractmethod
    def add_user(self, user_id: str, display_name: str | None = None) -> dict[str, Any]:
        ...

    @abstractmethod
    def list_users(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def add_stream(
        self, stream_id: str, title: str | None = None, allow_comments: bool | None = None
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def set_stream_allow_comments(self, stream_id: str, allow_comments: bool | None) -> bool:
        ...

    @abstractmethod
    def close(self) -> None:
        """Release any held resources."""
        ...


class LocalBackend(Backend):
    """SQLite file backend.

    Each thread gets its own connection (FastAPI runs sync handlers in a
    thread pool). Writers are serialized by BEGIN IMMEDIATE and wait up to
    the busy timeout for the lock.
    """

    def __init__(self, path: str | Path, create_if_missing: bool = False):
        """Initialize local backend.

        Args:
            path: Path to the SQLite database file
            create_if_missing: If True, create the file (and parent directories)
                               if it doesn't exist
        """
        self._path = Path(path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        if not self._path.exists():
            if not create_if_missing:
                raise FileNotFoundError(f"Chat database not found: {self._path}")
            self._path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            db.init_db_with_conn(conn)

    def get_info(self) -> BackendInfo:
        return BackendInfo(backend_type="local", location=str(self._path))

    @property
    def path(self) -> Path:
        """Path to the database file."""
        return self._path

    # --- Connection handling ---

    def _thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = db.get_connection(self._path)
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        yield self._thread_connection()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        with self._connection() as conn:
            self._local.depth = 1
            try:
                with db.transaction(conn):
                    yield
            finally:
                self._local.depth = 0

    def close(self) -> None:
        """Close every connection opened by this backend."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # --- Users and Streams ---

    def add_user(self, user_id: str, display_name: str | None = None) -> dict[str, Any]:
        with self._connection() as conn:
            return db.create_user(conn, user_id, display_name, utc_now())

    def user_exists(self, user_id: str) -> bool:
        with self._connection() as conn:
            return db.get_user(conn, user_id) is not None

    def list_users(self) -> list[dict[str, Any]]:
        with self._connection() as conn:
            return db.list_users(conn)

    def add_stream(
        self, stream_id: str, title: str | None = None, allow_comments: bool | None = None
    ) -> dict[str, Any]:
        with self._connection() as conn:
            return db.create_stream(conn, stream_id, title, utc_now(), allow_comments)

    def set_stream_allow_comments(self, stream_id: str, allow_comments: bool | None) -> bool:
        with self._connection() as conn:
            return db.set_stream_allow_comments(conn, stream_id, allow_comments)

    def stream_exists(self, stream_id: str) -> bool:
        with self._connection() as conn:
            return db.get_stream(conn, stream_id) is not None

    def stream_allows_comments(self, stream_id: str) -> bool:
        with self._connection() as conn:
            stream = db.get_stream(conn, stream_id)
        return stream is not None and stream["allow_comments"] is not False

    # --- Conversations ---

    def _to_conversation(self, conn: sqlite3.Connection, row: dict | None) -> Conversation | None:
        if row is None:
            return None
        return Conversation.from_row(row, db.list_participant_ids(conn, row["id"]))

    def insert_conversation(
        self,
        conversation_id: str,
        kind: ConversationKind,
        direct_key: str | None,
        created_at: str,
    ) -> Conversation:
        with self._connection() as conn:
            row = db.insert_conversation(conn, conversation_id, kind.value, direct_key, created_at)
            return Conversation.from_row(row, [])

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connection() as conn:
            return self._to_conversation(conn, db.get_conversation(conn, conversation_id))

    def find_by_direct_key(self, direct_key: str) -> Conversation | None:
        with self._connection() as conn:
            return self._to_conversation(
                conn, db.get_conversation_by_direct_key(conn, direct_key)
            )

    def advance_last_message(
        self, conversation_id: str, message_id: int, updated_at: str
    ) -> bool:
        with self._connection() as conn:
            return db.advance_last_message(conn, conversation_id, message_id, updated_at)

    def list_for_user(self, user_id: str, limit: int, offset: int) -> list[Conversation]:
        with self._connection() as conn:
            rows = db.list_conversations_for_user(conn, user_id, limit, offset)
            return [
                Conversation.from_row(row, db.list_participant_ids(conn, row["id"]))
                for row in rows
            ]

    def count_for_user(self, user_id: str) -> int:
        with self._connection() as conn:
            return db.count_conversations_for_user(conn, user_id)

    def list_ids_for_user(self, user_id: str) -> list[str]:
        with self._connection() as conn:
            return db.list_conversation_ids_for_user(conn, user_id)

    # --- Participants ---

    def add_participant(
        self,
        conversation_id: str,
        user_id: str,
        role: ParticipantRole,
        joined_at: str,
    ) -> Participant:
        with self._connection() as conn:
            row = db.insert_participant(conn, conversation_id, user_id, role.value, joined_at)
            return Participant.from_row(row)

    def get_participant(self, conversation_id: str, user_id: str) -> Participant | None:
        with self._connection() as conn:
            row = db.get_participant(conn, conversation_id, user_id)
            return Participant.from_row(row) if row else None

    def advance_read_cursor(
        self, conversation_id: str, user_id: str, message_id: int, read_at: str
    ) -> bool:
        with self._connection() as conn:
            return db.advance_read_cursor(conn, conversation_id, user_id, message_id, read_at)

    # --- Messages ---

    def insert_message(
        self,
        target: Target,
        author_id: str,
        content: str,
        message_type: MessageType,
        metadata: dict,
        attachments: dict,
        created_at: str,
    ) -> Message:
        with self._connection() as conn:
            row = db.insert_message(
                conn,
                target.kind.value,
                target.id,
                author_id,
                content,
                message_type.value,
                metadata,
                attachments,
                created_at,
            )
            return Message.from_row(row)

    def get_message(self, message_id: int) -> Message | None:
        with self._connection() as conn:
            row = db.get_message(conn, message_id)
            return Message.from_row(row) if row else None

    def update_message_content(
        self,
        message_id: int,
        content: str,
        metadata: dict,
        edit_history: list[EditRecord],
        edited_at: str,
    ) -> bool:
        with self._connection() as conn:
            return db.update_message_content(
                conn,
                message_id,
                content,
                metadata,
                [entry.to_dict() for entry in edit_history],
                edited_at,
            )

    def mark_message_deleted(
        self,
        message_id: int,
        deleted_by: str,
        reason: str | None,
        deleted_at: str,
    ) -> bool:
        with self._connection() as conn:
            return db.mark_message_deleted(conn, message_id, deleted_by, reason, deleted_at)

    def list_messages(
        self,
        target: Target,
        *,
        newest_first: bool,
        message_type: MessageType | None,
        include_deleted: bool,
        limit: int,
        offset: int,
    ) -> list[Message]:
        with self._connection() as conn:
            rows = db.list_messages(
                conn,
                target.kind.value,
                target.id,
                newest_first=newest_first,
                message_type=message_type.value if message_type else None,
                include_deleted=include_deleted,
                limit=limit,
                offset=offset,
            )
            return [Message.from_row(row) for row in rows]

    def count_messages(
        self,
        target: Target,
        *,
        message_type: MessageType | None,
        include_deleted: bool,
    ) -> int:
        with self._connection() as conn:
            return db.count_messages(
                conn,
                target.kind.value,
                target.id,
                message_type=message_type.value if message_type else None,
                include_deleted=include_deleted,
            )

    def count_unread(
        self, conversation_id: str, user_id: str, after_message_id: int | None
    ) -> int:
        with self._connection() as conn:
            return db.count_unread(conn, conversation_id, user_id, after_message_id)


class InMemoryBackend(LocalBackend):
    """In-memory backend for testing.

    Uses SQLite's :memory: database. All data is lost when the backend
    is closed or garbage collected. A private in-memory database cannot be
    shared between connections, so every thread uses the one connection
    under a re-entrant lock; transactions hold the lock until they finish.
    """

    def __init__(self):
        """Initialize in-memory backend."""
        self._path = Path(":memory:")
        self._local = threading.local()
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = db.get_connection(":memory:")
        db.init_db_with_conn(self._conn)

    def get_info(self) -> BackendInfo:
        return BackendInfo(backend_type="in_memory", location=":memory:")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._conn is None:
            raise RuntimeError("Backend is closed")
        with self._lock:
            yield self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            with super().transaction():
                yield

    def close(self) -> None:
        """Close the shared connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
