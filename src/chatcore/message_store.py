"""Append, edit and soft-delete messages on streams and conversations.

Message lifecycle:

    CREATED --edit--> CREATED (is_edited) --edit--> ...
       |
       +--delete--> DELETED (terminal)

Every mutation runs in one backend transaction. Edits and deletes are
conditional on the message still being CREATED, so a delete that commits
first makes a concurrent edit fail with Conflict instead of resurrecting
the message.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .backends import Backend
from .cache import UnreadCache
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .metrics import metrics, timed_operation
from .models import (
    EditRecord,
    Message,
    MessageType,
    Target,
    parse_enum,
    utc_now,
    validate_content,
)
from .repositories import ModerationPolicy, NoModeration

logger = logging.getLogger(__name__)


def _as_dict(value: Mapping[str, Any] | None, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field_name} must be an object")
    return dict(value)


class MessageStore:
    """Owns message writes and the conversation last-message pointer.

    Args:
        backend: Storage for messages, conversations and participants, and
                 the user and stream directories.
        moderation: Who besides the author may delete a message. Defaults
                    to nobody.
        unread_cache: Cache of derived unread counts to invalidate on writes.
    """

    def __init__(
        self,
        backend: Backend,
        moderation: ModerationPolicy | None = None,
        unread_cache: UnreadCache | None = None,
    ):
        self._backend = backend
        self._moderation = moderation or NoModeration()
        self._unread_cache = unread_cache

    def get_message(self, message_id: int) -> Message:
        """Fetch a message by ID.

        Raises:
            NotFound: If no such message exists.
        """
        message = self._backend.get_message(message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")
        return message

    @timed_operation("send_message")
    def send_message(
        self,
        target: Target,
        author_id: str,
        content: str,
        type: MessageType | str = MessageType.TEXT,
        metadata: Mapping[str, Any] | None = None,
        attachments: Mapping[str, Any] | None = None,
    ) -> Message:
        """Append a message to a stream or conversation.

        For a conversation target the conversation's last-message pointer is
        moved to the new message in the same transaction.

        Raises:
            ValidationError: Content length or type out of range.
            NotFound: Unknown author, stream or conversation.
            Forbidden: Author is not a participant of the conversation, or the
                       stream has comments switched off.
        """
        content = validate_content(content)
        message_type = parse_enum(MessageType, type, "message type")
        metadata_dict = _as_dict(metadata, "metadata")
        attachments_dict = _as_dict(attachments, "attachments")

        with self._backend.transaction():
            if not self._backend.user_exists(author_id):
                raise NotFound(f"User {author_id} not found")

            if target.is_conversation:
                if self._backend.get_conversation(target.id) is None:
                    raise NotFound(f"Conversation {target.id} not found")
                if self._backend.get_participant(target.id, author_id) is None:
                    raise Forbidden(
                        f"User {author_id} is not a participant of conversation {target.id}"
                    )
            elif not self._backend.stream_exists(target.id):
                raise NotFound("Stream not found")
            elif not self._backend.stream_allows_comments(target.id):
                raise Forbidden("Comments are disabled for this stream")

            message = self._backend.insert_message(
                target,
                author_id,
                content,
                message_type,
                metadata_dict,
                attachments_dict,
                utc_now(),
            )
            if target.is_conversation:
                self._backend.advance_last_message(target.id, message.id, message.created_at)

        metrics.increment("messages_sent")
        if target.is_conversation and self._unread_cache is not None:
            self._unread_cache.forget_conversation(target.id)
        return message

    @timed_operation("edit_message")
    def edit_message(
        self,
        message_id: int,
        requester_id: str,
        new_content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Message:
        """Replace a message's content, keeping the old content in its edit history.

        Args:
            message_id: Message to edit
            requester_id: Must be the author
            new_content: Replacement body (1..1000 characters)
            metadata: Replacement metadata; None keeps the current metadata

        Raises:
            NotFound: No such message.
            Forbidden: Requester is not the author.
            Conflict: The message is deleted; `current` holds the stored message.
            ValidationError: New content out of range.
        """
        new_content = validate_content(new_content)
        new_metadata = None if metadata is None else _as_dict(metadata, "metadata")

        with self._backend.transaction():
            message = self.get_message(message_id)
            if message.author_id != requester_id:
                raise Forbidden("Only the author can edit this message")
            if message.is_deleted:
                raise Conflict("Cannot edit a deleted message", current=message)

            now = utc_now()
            history = message.edit_history + [
                EditRecord(previous_content=message.content, edited_at=now, editor_id=requester_id)
            ]
            updated = self._backend.update_message_content(
                message_id,
                new_content,
                message.metadata if new_metadata is None else new_metadata,
                history,
                now,
            )
            if not updated:
                current = self.get_message(message_id)
                raise Conflict("Cannot edit a deleted message", current=current)

            edited = self.get_message(message_id)

        metrics.increment("messages_edited")
        return edited

    @timed_operation("delete_message")
    def delete_message(
        self,
        message_id: int,
        requester_id: str,
        reason: str | None = None,
    ) -> Message:
        """Soft-delete a message.

        Deleting an already deleted message changes nothing and succeeds, so
        retries are safe. The conversation's last-message pointer is left on
        the deleted message.

        Returns:
            The message as stored after the call.

        Raises:
            NotFound: No such message.
            Forbidden: Requester is neither the author nor allowed by the
                       moderation policy.
        """
        with self._backend.transaction():
            message = self.get_message(message_id)
            if message.author_id != requester_id and not self._moderation.can_moderate(
                requester_id, message
            ):
                raise Forbidden("Only the author or a moderator can delete this message")

            if message.is_deleted:
                return message

            self._backend.mark_message_deleted(message_id, requester_id, reason, utc_now())
            deleted = self.get_message(message_id)

        metrics.increment("messages_deleted")
        logger.info(f"Message {message_id} deleted by {requester_id}")
        if deleted.target.is_conversation and self._unread_cache is not None:
            self._unread_cache.forget_conversation(deleted.target.id)
        return deleted
