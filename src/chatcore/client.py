"""ChatCore facade wiring a backend into the chat components.

This module provides the `ChatCore` class that the HTTP adapter, the CLI
and tests use. It builds the four components on one backend and adds the
caller-centric flows (send a direct message to a user, read my direct
thread with a user, mark it read).

Usage:
    chat = ChatCore.in_memory()
    chat.register_user("alice")
    chat.register_user("bob")

    result = chat.send_direct_message("alice", "bob", "Hello!")
    page = chat.list_direct_messages("bob", "alice")
    chat.mark_direct_read("bob", "alice")

    # File-backed
    chat = ChatCore.local("chat.db", create_if_missing=True)

    # With explicit options
    chat = ChatCore(ChatOptions(path="chat.db", max_page_limit=50))
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from .backends import Backend, BackendInfo, InMemoryBackend, LocalBackend
from .cache import UnreadCache
from .errors import NotFound
from .message_store import MessageStore
from .models import (
    Conversation,
    ConversationSummary,
    DirectMessageResult,
    MarkReadResult,
    Message,
    MessageType,
    Page,
    SortOrder,
    Target,
    UnreadSummary,
)
from .options import ChatOptions
from .query import QueryEngine
from .repositories import ModerationPolicy
from .resolver import ConversationResolver
from .unread import UnreadTracker

logger = logging.getLogger(__name__)


class ChatCore:
    """Entry point for chat operations.

    Examples:
        # In-memory for testing
        chat = ChatCore.in_memory()

        # Local SQLite file
        chat = ChatCore.local("chat.db", create_if_missing=True)

        # Bring your own backend and moderation policy
        chat = ChatCore(backend=my_backend, moderation=ModeratorSet({"mod"}))
    """

    def __init__(
        self,
        options: ChatOptions | None = None,
        *,
        backend: Backend | None = None,
        moderation: ModerationPolicy | None = None,
    ):
        """Initialize ChatCore.

        Args:
            options: Configuration options. If None, read from the environment.
            backend: Use this backend instead of building one from options.
            moderation: Policy granting non-authors the right to delete messages.
        """
        self._options = options or ChatOptions()
        self._backend = backend or self._create_backend()

        opts = self._options
        self._unread_cache: UnreadCache | None = None
        if opts.unread_cache_enabled:
            assert opts.unread_cache_size is not None and opts.unread_cache_ttl is not None
            self._unread_cache = UnreadCache(
                ttl=opts.unread_cache_ttl, max_size=opts.unread_cache_size
            )

        assert opts.max_page_limit is not None
        assert opts.default_page_limit is not None
        assert opts.conversation_page_limit is not None

        self.resolver = ConversationResolver(self._backend)
        self.messages = MessageStore(self._backend, moderation, self._unread_cache)
        self.unread = UnreadTracker(self._backend, self._unread_cache)
        self.query = QueryEngine(
            self._backend,
            self.unread,
            max_limit=opts.max_page_limit,
            default_message_limit=opts.default_page_limit,
            default_conversation_limit=opts.conversation_page_limit,
        )

    def _create_backend(self) -> Backend:
        """Create the appropriate backend based on options."""
        opts = self._options
        if opts.is_local():
            assert opts.resolved_path is not None
            return LocalBackend(opts.resolved_path, create_if_missing=opts.create_if_missing)
        return InMemoryBackend()

    # --- Factory Methods ---

    @classmethod
    def in_memory(cls, **kwargs: Any) -> "ChatCore":
        """Create an instance backed by ephemeral in-memory storage.

        Keyword arguments are passed to ChatOptions.
        """
        return cls(ChatOptions(in_memory=True, **kwargs))

    @classmethod
    def local(
        cls, path: str | Path, create_if_missing: bool = False, **kwargs: Any
    ) -> "ChatCore":
        """Create an instance backed by a SQLite file.

        Raises:
            FileNotFoundError: If the file is missing and create_if_missing is False.
        """
        return cls(ChatOptions(path=path, create_if_missing=create_if_missing, **kwargs))

    # --- Properties ---

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def options(self) -> ChatOptions:
        return self._options

    @property
    def unread_cache(self) -> UnreadCache | None:
        return self._unread_cache

    def get_info(self) -> BackendInfo:
        return self._backend.get_info()

    def close(self) -> None:
        """Close backend resources."""
        self._backend.close()

    def __enter__(self) -> "ChatCore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        info = self.get_info()
        return f"ChatCore(backend={info.backend_type!r}, location={info.location!r})"

    # --- Directory ---

    def register_user(self, user_id: str, display_name: str | None = None) -> dict[str, Any]:
        """Add a user to the local user directory.

        Raises:
            Conflict: If the user already exists.
        """
        return self._backend.add_user(user_id, display_name)

    def list_users(self) -> list[dict[str, Any]]:
        return self._backend.list_users()

    def register_stream(
        self, stream_id: str, title: str | None = None, allow_comments: bool | None = None
    ) -> dict[str, Any]:
        """Add a stream to the local stream directory.

        Args:
            allow_comments: False rejects chat messages on the stream.

        Raises:
            Conflict: If the stream already exists.
        """
        return self._backend.add_stream(stream_id, title, allow_comments)

    def set_stream_comments(self, stream_id: str, allowed: bool) -> None:
        """Switch chat on or off for a registered stream.

        Raises:
            NotFound: If the stream is unknown.
        """
        if not self._backend.set_stream_allow_comments(stream_id, allowed):
            raise NotFound("Stream not found")
        logger.info(f"Comments {'enabled' if allowed else 'disabled'} for stream {stream_id}")

    # --- Stream Chat ---

    def send_stream_message(
        self,
        caller_id: str,
        stream_id: str,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message:
        return self.messages.send_message(
            Target.stream(stream_id), caller_id, content, type=type, metadata=metadata
        )

    def list_stream_messages(
        self,
        stream_id: str,
        page: int = 1,
        limit: int | None = None,
        sort_by: SortOrder | str = SortOrder.NEWEST,
        type_filter: MessageType | str | None = None,
        include_deleted: bool = False,
    ) -> Page[Message]:
        return self.query.list_messages(
            Target.stream(stream_id),
            page=page,
            limit=limit,
            sort_by=sort_by,
            type_filter=type_filter,
            include_deleted=include_deleted,
        )

    def iter_stream_messages(self, stream_id: str, **kwargs: Any) -> Iterator[Message]:
        return self.query.iter_messages(Target.stream(stream_id), **kwargs)

    # --- Editing and Deleting ---

    def edit_message(
        self,
        caller_id: str,
        message_id: int,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message:
        return self.messages.edit_message(message_id, caller_id, content, metadata=metadata)

    def delete_message(
        self, caller_id: str, message_id: int, reason: str | None = None
    ) -> Message:
        return self.messages.delete_message(message_id, caller_id, reason=reason)

    # --- Direct Messages ---

    def send_direct_message(
        self,
        caller_id: str,
        recipient_id: str,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: Mapping[str, Any] | None = None,
        attachments: Mapping[str, Any] | None = None,
    ) -> DirectMessageResult:
        """Send a direct message, creating the conversation on first contact.

        The sender's own unread count is untouched; the recipient's grows
        until they mark the conversation read.
        """
        conversation = self.resolver.resolve_or_create_direct(caller_id, recipient_id)
        message = self.messages.send_message(
            Target.conversation(conversation.id),
            caller_id,
            content,
            type=type,
            metadata=metadata,
            attachments=attachments,
        )
        conversation = self._backend.get_conversation(conversation.id) or conversation
        return DirectMessageResult(conversation=conversation, message=message)

    def _find_direct_or_check_users(
        self, caller_id: str, counterpart_id: str
    ) -> Conversation | None:
        """The pair's conversation, or None when both users exist but have none yet."""
        conversation = self.resolver.find_direct(caller_id, counterpart_id)
        if conversation is None:
            for user_id in (caller_id, counterpart_id):
                if not self._backend.user_exists(user_id):
                    raise NotFound(f"User {user_id} not found")
        return conversation

    def list_direct_messages(
        self,
        caller_id: str,
        counterpart_id: str,
        page: int = 1,
        limit: int | None = None,
        sort_by: SortOrder | str = SortOrder.NEWEST,
        type_filter: MessageType | str | None = None,
        include_deleted: bool = False,
    ) -> Page[Message]:
        """List the caller's direct thread with another user.

        Reading never creates a conversation: before the first message the
        result is an empty page.

        Raises:
            NotFound: If either user is unknown.
            ValidationError: If the users are the same or an ID is empty.
        """
        conversation = self._find_direct_or_check_users(caller_id, counterpart_id)
        if conversation is None:
            return self.query.empty_page(page, limit, sort_by, type_filter)

        return self.query.list_messages(
            Target.conversation(conversation.id),
            page=page,
            limit=limit,
            sort_by=sort_by,
            type_filter=type_filter,
            include_deleted=include_deleted,
        )

    def mark_direct_read(
        self,
        caller_id: str,
        counterpart_id: str,
        last_read_message_id: int | None = None,
    ) -> MarkReadResult:
        """Mark the caller's direct thread with another user as read.

        Raises:
            NotFound: If the two users have no conversation yet, or either user is unknown.
        """
        conversation = self._find_direct_or_check_users(caller_id, counterpart_id)
        if conversation is None:
            raise NotFound(f"No conversation between {caller_id} and {counterpart_id}")
        return self.unread.mark_read(conversation.id, caller_id, last_read_message_id)

    # --- Conversations ---

    def list_conversations(
        self, caller_id: str, page: int = 1, limit: int | None = None
    ) -> Page[ConversationSummary]:
        return self.query.list_conversations(caller_id, page=page, limit=limit)

    def unread_summary(self, caller_id: str) -> UnreadSummary:
        return self.unread.unread_summary(caller_id)
