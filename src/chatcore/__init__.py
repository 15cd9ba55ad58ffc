"""chatcore - Stream chat and direct messaging core.

Usage:
    from chatcore import ChatCore, ChatOptions

    chat = ChatCore.in_memory()
    chat.register_user("alice")
    chat.register_user("bob")
    chat.register_stream("live-1")

    # Public stream chat
    chat.send_stream_message("alice", "live-1", "First!")
    page = chat.list_stream_messages("live-1", sort_by="oldest")

    # Direct messages with unread tracking
    chat.send_direct_message("alice", "bob", "Hello!")
    chat.unread_summary("bob").total  # 1
    chat.mark_direct_read("bob", "alice")

    # File-backed storage
    chat = ChatCore.local("chat.db", create_if_missing=True)
"""

from chatcore._version import __version__
from chatcore.client import ChatCore
from chatcore.errors import ChatError, Conflict, Forbidden, NotFound, ValidationError
from chatcore.models import (
    Conversation,
    ConversationKind,
    Message,
    MessageState,
    MessageType,
    Page,
    Pagination,
    SortOrder,
    Target,
)
from chatcore.options import ChatConfigError, ChatOptions
from chatcore.repositories import ModerationPolicy, ModeratorSet

__all__ = [
    "__version__",
    "ChatCore",
    "ChatOptions",
    "ChatConfigError",
    "ChatError",
    "NotFound",
    "Forbidden",
    "ValidationError",
    "Conflict",
    "Conversation",
    "ConversationKind",
    "Message",
    "MessageState",
    "MessageType",
    "Page",
    "Pagination",
    "SortOrder",
    "Target",
    "ModerationPolicy",
    "ModeratorSet",
]
