"""CLI for chatcore administration and local testing.

Works directly against a SQLite database file (default: $CHATCORE_DB, or
./chatcore.db):

    chatcore init
    chatcore user add alice --display-name Alice
    chatcore stream add live-1 --title "Launch stream"
    chatcore stream comments live-1 --disabled
    chatcore dm send alice bob "Hello!"
    chatcore dm list bob alice
    chatcore read bob alice
    chatcore conversations bob
    chatcore serve --no-auth
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import NoReturn

import cyclopts

from . import db as database
from .client import ChatCore
from .errors import ChatError
from .models import Message

DEFAULT_DB_PATH = "chatcore.db"

app = cyclopts.App(
    name="chatcore",
    help="Stream chat and direct messaging core",
)

user_app = cyclopts.App(name="user", help="User directory management")
stream_app = cyclopts.App(name="stream", help="Stream directory management")
dm_app = cyclopts.App(name="dm", help="Direct message operations")

app.command(user_app)
app.command(stream_app)
app.command(dm_app)


def resolve_db_path(db: str | None) -> Path:
    """Database path from the --db option, $CHATCORE_DB, or the default."""
    return Path(db or os.environ.get("CHATCORE_DB") or DEFAULT_DB_PATH)


def open_chat(db: str | None, create: bool = False) -> ChatCore:
    """Open the database or exit with an error."""
    path = resolve_db_path(db)
    try:
        return ChatCore.local(path, create_if_missing=create)
    except FileNotFoundError:
        print(f"Error: Database {path} not found.", file=sys.stderr)
        print("Run 'chatcore init' to create it.", file=sys.stderr)
        raise SystemExit(1)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def fail(error: ChatError) -> NoReturn:
    print(f"Error ({error.kind}): {error.message}", file=sys.stderr)
    raise SystemExit(1)


def format_message(message: Message) -> str:
    flags = []
    if message.is_edited:
        flags.append("edited")
    if message.is_deleted:
        flags.append("deleted")
    suffix = f" ({', '.join(flags)})" if flags else ""
    return f"#{message.id} [{message.created_at}] {message.author_id}: {message.content}{suffix}"


@app.command
def init(*, db: str | None = None):
    """Create the database (if needed) and apply migrations.

    Args:
        db: Database path.
    """
    path = resolve_db_path(db)
    with open_chat(db, create=True) as chat:
        with database.scoped_connection(path) as conn:
            version = database.get_schema_version(conn)
        print(f"Initialized {chat.get_info().location} (schema version {version})")


@user_app.command(name="add")
def user_add(user_id: str, *, display_name: str | None = None, db: str | None = None):
    """Register a user.

    Args:
        user_id: User ID.
        display_name: Human-readable name.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            user = chat.register_user(user_id, display_name)
        except ChatError as e:
            fail(e)
        print(f"Added user {user['id']}")


@user_app.command(name="list")
def user_list(*, db: str | None = None):
    """List registered users.

    Args:
        db: Database path.
    """
    with open_chat(db) as chat:
        users = chat.list_users()
        if not users:
            print("No users registered.")
            return
        for user in users:
            name = f" ({user['display_name']})" if user["display_name"] else ""
            print(f"{user['id']}{name}")


@stream_app.command(name="add")
def stream_add(
    stream_id: str,
    *,
    title: str | None = None,
    comments: bool = True,
    db: str | None = None,
):
    """Register a stream.

    Args:
        stream_id: Stream ID.
        title: Stream title.
        comments: Accept chat messages on the stream.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            stream = chat.register_stream(stream_id, title, None if comments else False)
        except ChatError as e:
            fail(e)
        suffix = "" if comments else " (comments off)"
        print(f"Added stream {stream['id']}{suffix}")


@stream_app.command(name="comments")
def stream_comments(stream_id: str, *, disabled: bool = False, db: str | None = None):
    """Switch chat on a stream on (default) or off.

    Args:
        stream_id: Stream ID.
        disabled: Turn comments off instead of on.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            chat.set_stream_comments(stream_id, not disabled)
        except ChatError as e:
            fail(e)
        print(f"Comments {'off' if disabled else 'on'} for stream {stream_id}")


@dm_app.command(name="send")
def dm_send(
    sender: str,
    recipient: str,
    content: str,
    *,
    type: str = "TEXT",
    db: str | None = None,
):
    """Send a direct message.

    Args:
        sender: Sending user ID.
        recipient: Receiving user ID.
        content: Message body.
        type: Message type.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            result = chat.send_direct_message(sender, recipient, content, type=type)
        except ChatError as e:
            fail(e)
        print(f"Sent message {result.message.id} in conversation {result.conversation.id}")


@dm_app.command(name="list")
def dm_list(
    user: str,
    counterpart: str,
    *,
    page: int = 1,
    limit: int | None = None,
    oldest: bool = False,
    json_output: bool = False,
    db: str | None = None,
):
    """Show a user's direct thread with another user.

    Args:
        user: Reading user ID.
        counterpart: The other user ID.
        page: Page number.
        limit: Page size.
        oldest: Oldest messages first.
        json_output: Print raw JSON.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            result = chat.list_direct_messages(
                user,
                counterpart,
                page=page,
                limit=limit,
                sort_by="oldest" if oldest else "newest",
            )
        except ChatError as e:
            fail(e)

        if json_output:
            print_json(asdict(result))
            return

        if not result.items:
            print("No messages.")
            return
        for message in result.items:
            print(format_message(message))
        p = result.pagination
        print(f"-- page {p.page}/{max(p.pages, 1)}, {p.total} messages")


@app.command
def read(
    user: str,
    counterpart: str,
    *,
    message_id: int | None = None,
    db: str | None = None,
):
    """Mark a direct thread as read.

    Args:
        user: Reading user ID.
        counterpart: The other user ID.
        message_id: Mark read up to this message (default: the latest).
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            result = chat.mark_direct_read(user, counterpart, message_id)
        except ChatError as e:
            fail(e)
        print(
            f"Read up to {result.last_read_message_id}; "
            f"{result.unread_count} unread in {result.conversation_id}"
        )


@app.command
def conversations(
    user: str,
    *,
    page: int = 1,
    limit: int | None = None,
    db: str | None = None,
):
    """List a user's conversations with unread counts.

    Args:
        user: User ID.
        page: Page number.
        limit: Page size.
        db: Database path.
    """
    with open_chat(db) as chat:
        try:
            result = chat.list_conversations(user, page=page, limit=limit)
        except ChatError as e:
            fail(e)

        if not result.items:
            print("No conversations.")
            return
        for summary in result.items:
            who = summary.counterpart_id or ", ".join(
                p for p in summary.conversation.participant_ids if p != user
            )
            last = summary.last_message.content if summary.last_message else "-"
            print(f"{who}  unread={summary.unread_count}  last: {last}")


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    no_auth: bool = False,
    db: str | None = None,
):
    """Run the chatcore HTTP server.

    Caller identity modes:
    - --no-auth: Trust the X-User-Id header (development only!)
    - CHATCORE_AUTH_MODULE: Bearer tokens verified by a custom module

    Args:
        host: Interface to bind.
        port: Port to listen on.
        reload: Reload on code changes.
        no_auth: Trust the X-User-Id header.
        db: Database path (":memory:" for ephemeral storage).
    """
    import uvicorn

    if db:
        os.environ["CHATCORE_DB"] = db

    if no_auth:
        os.environ["CHATCORE_NO_AUTH"] = "1"
        print("WARNING: Running in no-auth mode. Any caller can act as any user!")
        print("         Do not use in production.\n")
    elif not os.environ.get("CHATCORE_AUTH_MODULE"):
        print("Error: No auth method configured.", file=sys.stderr)
        print("Options:", file=sys.stderr)
        print("  --no-auth                   Development mode (trust X-User-Id)", file=sys.stderr)
        print("  CHATCORE_AUTH_MODULE=...    Custom bearer token module", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        "chatcore.api:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
