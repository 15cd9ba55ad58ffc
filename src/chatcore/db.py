"""SQLite storage layer for chatcore.

This module owns the schema and every SQL statement. Functions take an
explicit connection as their first argument and return plain dicts; the
backends in `backends` turn those into model objects.

Connection Management:
    # File database (WAL, busy timeout, foreign keys)
    conn = get_connection("/path/to/chat.db")
    init_db_with_conn(conn)

    # Scoped connection, closed on exit
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...

Connections are opened in autocommit mode. Multi-statement mutations go
through `transaction()`, which issues BEGIN IMMEDIATE so that writers are
serialized by SQLite's own lock.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import Conflict

logger = logging.getLogger(__name__)

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 3

# Milliseconds a connection waits on a locked database before failing
BUSY_TIMEOUT_MS = 5000


# --- Connection Management ---


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Open a new database connection.

    Args:
        db_path: Path to the database file, or ":memory:" for a private
                 in-memory database.

    Returns:
        SQLite connection in autocommit mode with row_factory set to sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    # Wait for locks instead of failing immediately
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    if str(db_path) != ":memory:":
        # WAL lets readers proceed while a writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed when the block exits.

    Example:
        with scoped_connection("chat.db") as conn:
            init_db_with_conn(conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE ... COMMIT.

    Any exception rolls the transaction back and is re-raised.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    return [dict(row) for row in rows]


def _query_one(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> dict | None:
    # fetchall() steps the statement to completion so no read stays open
    rows = conn.execute(sql, params).fetchall()
    return _row_to_dict(rows[0]) if rows else None


def _query_all(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> list[dict]:
    return _rows_to_dicts(conn.execute(sql, params).fetchall())


def _query_scalar(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> Any:
    rows = conn.execute(sql, params).fetchall()
    return rows[0][0] if rows else None


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    _ensure_schema_version_table(conn)
    version = _query_scalar(conn, "SELECT MAX(version) FROM schema_version")
    return version if version is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a column exists in a table."""
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return column in [row[1] for row in rows]


# --- Migration Functions ---


def _migrate_001_add_message_audit(conn: sqlite3.Connection) -> None:
    """Migration 001: Add edit history and deletion audit columns to messages."""
    for column, ddl in (
        ("edit_history", "ALTER TABLE messages ADD COLUMN edit_history JSON DEFAULT '[]'"),
        ("deleted_by", "ALTER TABLE messages ADD COLUMN deleted_by TEXT"),
        ("deletion_reason", "ALTER TABLE messages ADD COLUMN deletion_reason TEXT"),
    ):
        if not _column_exists(conn, "messages", column):
            conn.execute(ddl)


def _migrate_002_add_participant_user_index(conn: sqlite3.Connection) -> None:
    """Migration 002: Index participants by user for conversation listings."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_participants_user "
        "ON conversation_participants(user_id, conversation_id)"
    )



def _migrate_003_add_stream_allow_comments(conn: sqlite3.Connection) -> None:
    """Migration 003: Per-stream switch for chat messages (NULL = allowed)."""
    if not _column_exists(conn, "streams", "allow_comments"):
        conn.execute("ALTER TABLE streams ADD COLUMN allow_comments INTEGER")

# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add edit history and deletion audit columns to messages", _migrate_001_add_message_audit),
    (2, "Index participants by user", _migrate_002_add_participant_user_index),
    (3, "Add allow_comments to streams", _migrate_003_add_stream_allow_comments),
]


def run_migrations(conn: sqlite3.Connection) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                with transaction(conn):
                    migrate_fn(conn)
                    record_migration(conn, version, description)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e
            logger.info(f"Applied migration {version}: {description}")
            applied.append(version)

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        display_name TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS streams (
        id TEXT PRIMARY KEY,
        title TEXT,
        allow_comments INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL DEFAULT 'DIRECT',
        direct_key TEXT UNIQUE,
        last_message_id INTEGER,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_conversations_updated
        ON conversations(updated_at DESC, id DESC);

    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id),
        role TEXT NOT NULL DEFAULT 'MEMBER',
        joined_at TIMESTAMP NOT NULL,
        last_read_message_id INTEGER,
        last_read_at TIMESTAMP,
        PRIMARY KEY (conversation_id, user_id)
    );

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        target_kind TEXT NOT NULL,
        target_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        content TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'TEXT',
        metadata JSON DEFAULT '{}',
        attachments JSON DEFAULT '{}',
        state TEXT NOT NULL DEFAULT 'CREATED',
        is_edited INTEGER NOT NULL DEFAULT 0,
        edited_at TIMESTAMP,
        edit_history JSON DEFAULT '[]',
        deleted_at TIMESTAMP,
        deleted_by TEXT,
        deletion_reason TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_target
        ON messages(target_kind, target_id, id);
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema and apply pending migrations.

    Args:
        conn: Database connection to initialize.
    """
    conn.executescript(SCHEMA_SQL)
    run_migrations(conn)


def reset_db(conn: sqlite3.Connection) -> None:
    """Drop every table and recreate the schema (for testing)."""
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS conversation_participants;
        DROP TABLE IF EXISTS conversations;
        DROP TABLE IF EXISTS streams;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS schema_version;
    """)
    init_db_with_conn(conn)


# --- Users and Streams ---


def create_user(
    conn: sqlite3.Connection, user_id: str, display_name: str | None, created_at: str
) -> dict:
    """Insert a user.

    Raises:
        Conflict: If a user with this ID already exists.
    """
    try:
        conn.execute(
            "INSERT INTO users (id, display_name, created_at) VALUES (?, ?, ?)",
            (user_id, display_name, created_at),
        )
    except sqlite3.IntegrityError as e:
        raise Conflict(f"User {user_id} already exists") from e
    return {"id": user_id, "display_name": display_name, "created_at": created_at}


def get_user(conn: sqlite3.Connection, user_id: str) -> dict | None:
    return _query_one(
        conn, "SELECT id, display_name, created_at FROM users WHERE id = ?", (user_id,)
    )


def list_users(conn: sqlite3.Connection) -> list[dict]:
    return _query_all(conn, "SELECT id, display_name, created_at FROM users ORDER BY id")


def create_stream(
    conn: sqlite3.Connection,
    stream_id: str,
    title: str | None,
    created_at: str,
    allow_comments: bool | None = None,
) -> dict:
    """Insert a stream.

    Args:
        allow_comments: False switches chat off for the stream; None leaves
                        the stream's default (allowed).

    Raises:
        Conflict: If a stream with this ID already exists.
    """
    stored = None if allow_comments is None else int(allow_comments)
    try:
        conn.execute(
            "INSERT INTO streams (id, title, allow_comments, created_at) VALUES (?, ?, ?, ?)",
            (stream_id, title, stored, created_at),
        )
    except sqlite3.IntegrityError as e:
        raise Conflict(f"Stream {stream_id} already exists") from e
    return {
        "id": stream_id,
        "title": title,
        "allow_comments": allow_comments,
        "created_at": created_at,
    }


def get_stream(conn: sqlite3.Connection, stream_id: str) -> dict | None:
    row = _query_one(
        conn,
        "SELECT id, title, allow_comments, created_at FROM streams WHERE id = ?",
        (stream_id,),
    )
    if row is not None and row["allow_comments"] is not None:
        row["allow_comments"] = bool(row["allow_comments"])
    return row


def set_stream_allow_comments(
    conn: sqlite3.Connection, stream_id: str, allow_comments: bool | None
) -> bool:
    """Switch chat on or off for a stream. Returns False if the stream is unknown."""
    stored = None if allow_comments is None else int(allow_comments)
    cursor = conn.execute(
        "UPDATE streams SET allow_comments = ? WHERE id = ?", (stored, stream_id)
    )
    return cursor.rowcount > 0


# --- Conversations ---


_CONVERSATION_COLUMNS = "id, kind, direct_key, last_message_id, created_at, updated_at"


def insert_conversation(
    conn: sqlite3.Connection,
    conversation_id: str,
    kind: str,
    direct_key: str | None,
    created_at: str,
) -> dict:
    """Insert a conversation row.

    Raises:
        Conflict: If a conversation with the same direct_key already exists.
    """
    try:
        conn.execute(
            f"""INSERT INTO conversations ({_CONVERSATION_COLUMNS})
                VALUES (?, ?, ?, NULL, ?, ?)""",
            (conversation_id, kind, direct_key, created_at, created_at),
        )
    except sqlite3.IntegrityError as e:
        raise Conflict(f"Conversation {direct_key or conversation_id} already exists") from e
    return {
        "id": conversation_id,
        "kind": kind,
        "direct_key": direct_key,
        "last_message_id": None,
        "created_at": created_at,
        "updated_at": created_at,
    }


def get_conversation(conn: sqlite3.Connection, conversation_id: str) -> dict | None:
    return _query_one(
        conn,
        f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
        (conversation_id,),
    )


def get_conversation_by_direct_key(conn: sqlite3.Connection, direct_key: str) -> dict | None:
    return _query_one(
        conn,
        f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE direct_key = ?",
        (direct_key,),
    )


def advance_last_message(
    conn: sqlite3.Connection, conversation_id: str, message_id: int, updated_at: str
) -> bool:
    """Point the conversation at a newer last message.

    Only moves forward: a message with a lower ID than the current pointer
    leaves the row untouched.

    Returns:
        True if the pointer moved.
    """
    cursor = conn.execute(
        """UPDATE conversations
           SET last_message_id = ?, updated_at = ?
           WHERE id = ?
           AND (last_message_id IS NULL OR last_message_id < ?)""",
        (message_id, updated_at, conversation_id, message_id),
    )
    return cursor.rowcount > 0


def list_conversations_for_user(
    conn: sqlite3.Connection, user_id: str, limit: int, offset: int
) -> list[dict]:
    """Conversations the user participates in, most recently active first."""
    return _query_all(
        conn,
        """SELECT c.id, c.kind, c.direct_key, c.last_message_id, c.created_at, c.updated_at
           FROM conversations c
           JOIN conversation_participants p ON p.conversation_id = c.id
           WHERE p.user_id = ?
           ORDER BY c.updated_at DESC, c.id DESC
           LIMIT ? OFFSET ?""",
        (user_id, limit, offset),
    )


def count_conversations_for_user(conn: sqlite3.Connection, user_id: str) -> int:
    return _query_scalar(
        conn,
        "SELECT COUNT(*) FROM conversation_participants WHERE user_id = ?",
        (user_id,),
    )


def list_conversation_ids_for_user(conn: sqlite3.Connection, user_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT conversation_id FROM conversation_participants WHERE user_id = ?",
        (user_id,),
    ).fetchall()
    return [row[0] for row in rows]


# --- Participants ---


_PARTICIPANT_COLUMNS = (
    "conversation_id, user_id, role, joined_at, last_read_message_id, last_read_at"
)


def insert_participant(
    conn: sqlite3.Connection,
    conversation_id: str,
    user_id: str,
    role: str,
    joined_at: str,
) -> dict:
    """Add a participant with an empty read cursor."""
    conn.execute(
        f"""INSERT INTO conversation_participants ({_PARTICIPANT_COLUMNS})
            VALUES (?, ?, ?, ?, NULL, NULL)""",
        (conversation_id, user_id, role, joined_at),
    )
    return {
        "conversation_id": conversation_id,
        "user_id": user_id,
        "role": role,
        "joined_at": joined_at,
        "last_read_message_id": None,
        "last_read_at": None,
    }


def get_participant(conn: sqlite3.Connection, conversation_id: str, user_id: str) -> dict | None:
    return _query_one(
        conn,
        f"""SELECT {_PARTICIPANT_COLUMNS} FROM conversation_participants
            WHERE conversation_id = ? AND user_id = ?""",
        (conversation_id, user_id),
    )


def list_participant_ids(conn: sqlite3.Connection, conversation_id: str) -> list[str]:
    rows = conn.execute(
        """SELECT user_id FROM conversation_participants
           WHERE conversation_id = ? ORDER BY joined_at, user_id""",
        (conversation_id,),
    ).fetchall()
    return [row[0] for row in rows]


def advance_read_cursor(
    conn: sqlite3.Connection,
    conversation_id: str,
    user_id: str,
    message_id: int,
    read_at: str,
) -> bool:
    """Move a participant's read cursor forward.

    The cursor never moves backward: a message ID at or below the current
    cursor leaves the row untouched.

    Returns:
        True if the cursor moved.
    """
    cursor = conn.execute(
        """UPDATE conversation_participants
           SET last_read_message_id = ?, last_read_at = ?
           WHERE conversation_id = ? AND user_id = ?
           AND (last_read_message_id IS NULL OR last_read_message_id < ?)""",
        (message_id, read_at, conversation_id, user_id, message_id),
    )
    return cursor.rowcount > 0


# --- Messages ---


_MESSAGE_COLUMNS = (
    "id, target_kind, target_id, author_id, content, type, metadata, attachments, "
    "state, is_edited, edited_at, edit_history, deleted_at, deleted_by, "
    "deletion_reason, created_at, updated_at"
)


def insert_message(
    conn: sqlite3.Connection,
    target_kind: str,
    target_id: str,
    author_id: str,
    content: str,
    message_type: str,
    metadata: dict[str, Any],
    attachments: dict[str, Any],
    created_at: str,
) -> dict:
    """Append a message and return the stored row.

    IDs come from AUTOINCREMENT, so they strictly increase across the store.
    """
    cursor = conn.execute(
        """INSERT INTO messages
               (target_kind, target_id, author_id, content, type, metadata, attachments,
                state, is_edited, edit_history, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, 'CREATED', 0, '[]', ?, ?)""",
        (
            target_kind,
            target_id,
            author_id,
            content,
            message_type,
            json.dumps(metadata),
            json.dumps(attachments),
            created_at,
            created_at,
        ),
    )
    row = get_message(conn, cursor.lastrowid)
    assert row is not None
    return row


def get_message(conn: sqlite3.Connection, message_id: int) -> dict | None:
    return _query_one(
        conn, f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
    )


def update_message_content(
    conn: sqlite3.Connection,
    message_id: int,
    content: str,
    metadata: dict[str, Any],
    edit_history: list[dict[str, Any]],
    edited_at: str,
) -> bool:
    """Replace a live message's content.

    Returns:
        False if the message is missing or already deleted.
    """
    cursor = conn.execute(
        """UPDATE messages
           SET content = ?, metadata = ?, edit_history = ?,
               is_edited = 1, edited_at = ?, updated_at = ?
           WHERE id = ? AND state = 'CREATED'""",
        (
            content,
            json.dumps(metadata),
            json.dumps(edit_history),
            edited_at,
            edited_at,
            message_id,
        ),
    )
    return cursor.rowcount > 0


def mark_message_deleted(
    conn: sqlite3.Connection,
    message_id: int,
    deleted_by: str,
    reason: str | None,
    deleted_at: str,
) -> bool:
    """Soft-delete a live message.

    Returns:
        False if the message is missing or already deleted.
    """
    cursor = conn.execute(
        """UPDATE messages
           SET state = 'DELETED', deleted_at = ?, deleted_by = ?,
               deletion_reason = ?, updated_at = ?
           WHERE id = ? AND state = 'CREATED'""",
        (deleted_at, deleted_by, reason, deleted_at, message_id),
    )
    return cursor.rowcount > 0


def _message_filter(
    target_kind: str,
    target_id: str,
    message_type: str | None,
    include_deleted: bool,
) -> tuple[str, list[Any]]:
    clause = "target_kind = ? AND target_id = ?"
    params: list[Any] = [target_kind, target_id]
    if not include_deleted:
        clause += " AND state != 'DELETED'"
    if message_type:
        clause += " AND type = ?"
        params.append(message_type)
    return clause, params


def list_messages(
    conn: sqlite3.Connection,
    target_kind: str,
    target_id: str,
    *,
    newest_first: bool = True,
    message_type: str | None = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """Get one page of a target's messages ordered by ID."""
    clause, params = _message_filter(target_kind, target_id, message_type, include_deleted)
    order = "DESC" if newest_first else "ASC"
    params.extend([limit, offset])
    return _query_all(
        conn,
        f"""SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE {clause}
            ORDER BY id {order}
            LIMIT ? OFFSET ?""",
        tuple(params),
    )


def count_messages(
    conn: sqlite3.Connection,
    target_kind: str,
    target_id: str,
    *,
    message_type: str | None = None,
    include_deleted: bool = False,
) -> int:
    clause, params = _message_filter(target_kind, target_id, message_type, include_deleted)
    return _query_scalar(conn, f"SELECT COUNT(*) FROM messages WHERE {clause}", tuple(params))


def count_unread(
    conn: sqlite3.Connection,
    conversation_id: str,
    user_id: str,
    after_message_id: int | None,
) -> int:
    """Count live messages from others newer than the cursor.

    A null cursor counts every live message the user did not author.
    """
    query = """
        SELECT COUNT(*) FROM messages
        WHERE target_kind = 'CONVERSATION' AND target_id = ?
        AND author_id != ? AND state != 'DELETED'
    """
    params: list[Any] = [conversation_id, user_id]
    if after_message_id is not None:
        query += " AND id > ?"
        params.append(after_message_id)
    return _query_scalar(conn, query, tuple(params))
