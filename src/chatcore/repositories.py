"""Storage and collaborator interfaces used by the chatcore components.

The components never touch SQL. They are constructed with an object that
implements these interfaces (normally a `Backend`), which keeps them
testable against any storage that honors the same contracts:

- a unique direct-conversation key (`insert_conversation` raises Conflict)
- forward-only pointer and cursor updates (`advance_*` return False when
  the stored value is already at or past the new one)
- conditional message mutations that only touch live messages
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .models import (
    Conversation,
    ConversationKind,
    EditRecord,
    Message,
    MessageType,
    Participant,
    ParticipantRole,
    Target,
)


class MessageRepository(ABC):
    @abstractmethod
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
        """Append a message; the store assigns the next ID."""
        ...

    @abstractmethod
    def get_message(self, message_id: int) -> Message | None:
        ...

    @abstractmethod
    def update_message_content(
        self,
        message_id: int,
        content: str,
        metadata: dict,
        edit_history: list[EditRecord],
        edited_at: str,
    ) -> bool:
        """Replace content of a live message. False if it is deleted or missing."""
        ...

    @abstractmethod
    def mark_message_deleted(
        self,
        message_id: int,
        deleted_by: str,
        reason: str | None,
        deleted_at: str,
    ) -> bool:
        """Soft-delete a live message. False if it is already deleted or missing."""
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    def count_messages(
        self,
        target: Target,
        *,
        message_type: MessageType | None,
        include_deleted: bool,
    ) -> int:
        ...

    @abstractmethod
    def count_unread(
        self, conversation_id: str, user_id: str, after_message_id: int | None
    ) -> int:
        """Live messages not authored by `user_id` with ID above the cursor."""
        ...


class ConversationRepository(ABC):
    @abstractmethod
    def insert_conversation(
        self,
        conversation_id: str,
        kind: ConversationKind,
        direct_key: str | None,
        created_at: str,
    ) -> Conversation:
        """Insert a conversation.

        Raises:
            Conflict: If `direct_key` is already taken.
        """
        ...

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    def find_by_direct_key(self, direct_key: str) -> Conversation | None:
        ...

    @abstractmethod
    def advance_last_message(
        self, conversation_id: str, message_id: int, updated_at: str
    ) -> bool:
        """Move the last-message pointer forward only."""
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int, offset: int) -> list[Conversation]:
        """Conversations the user participates in, by updated_at descending."""
        ...

    @abstractmethod
    def count_for_user(self, user_id: str) -> int:
        ...

    @abstractmethod
    def list_ids_for_user(self, user_id: str) -> list[str]:
        ...


class ParticipantRepository(ABC):
    @abstractmethod
    def add_participant(
        self,
        conversation_id: str,
        user_id: str,
        role: ParticipantRole,
        joined_at: str,
    ) -> Participant:
        ...

    @abstractmethod
    def get_participant(self, conversation_id: str, user_id: str) -> Participant | None:
        ...

    @abstractmethod
    def advance_read_cursor(
        self, conversation_id: str, user_id: str, message_id: int, read_at: str
    ) -> bool:
        """Move the read cursor forward only."""
        ...


class UserDirectory(ABC):
    """Source of truth for which user IDs exist."""

    @abstractmethod
    def user_exists(self, user_id: str) -> bool:
        ...


class StreamDirectory(ABC):
    """Source of truth for which stream IDs exist and whether they take chat."""

    @abstractmethod
    def stream_exists(self, stream_id: str) -> bool:
        ...

    @abstractmethod
    def stream_allows_comments(self, stream_id: str) -> bool:
        """True when the stream exists and chat has not been switched off for it."""
        ...


class ModerationPolicy(ABC):
    """Decides whether a non-author may delete a message.

    Participant roles stored on conversations grant nothing by themselves;
    moderation rights only come from the policy the core is built with.
    """

    @abstractmethod
    def can_moderate(self, user_id: str, message: Message) -> bool:
        ...


class NoModeration(ModerationPolicy):
    """Only authors may delete their own messages."""

    def can_moderate(self, user_id: str, message: Message) -> bool:
        return False


@dataclass
class ModeratorSet(ModerationPolicy):
    """Grants moderation to a fixed set of users, optionally per stream.

    Args:
        moderators: Users who may delete any message.
        stream_moderators: stream_id -> users who may delete messages on that stream.
    """

    moderators: set[str] = field(default_factory=set)
    stream_moderators: dict[str, set[str]] = field(default_factory=dict)

    def can_moderate(self, user_id: str, message: Message) -> bool:
        if user_id in self.moderators:
            return True
        if message.target.is_conversation:
            return False
        return user_id in self.stream_moderators.get(message.target.id, set())
