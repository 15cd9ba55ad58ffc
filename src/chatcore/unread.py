"""Per-participant read cursors and derived unread counts.

Unread counts are never stored. A participant's count is the number of
live messages in the conversation, authored by someone else, whose ID is
greater than the participant's read cursor (every such message when the
cursor is empty).
"""

from __future__ import annotations

import logging

from .backends import Backend
from .cache import UnreadCache
from .errors import NotFound
from .metrics import timed_block, timed_operation
from .models import MarkReadResult, Participant, Target, UnreadSummary, utc_now

logger = logging.getLogger(__name__)

class UnreadTracker:
    def __init__(self, backend: Backend, unread_cache: UnreadCache | None = None):
        self._backend = backend
        self._cache = unread_cache

    def _require_participant(self, conversation_id: str, user_id: str) -> Participant:
        participant = self._backend.get_participant(conversation_id, user_id)
        if participant is None:
            raise NotFound(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        return participant

    def _count(self, participant: Participant) -> int:
        with timed_block("count_unread"):
            return self._backend.count_unread(
                participant.conversation_id,
                participant.user_id,
                participant.last_read_message_id,
            )

    def _count_and_cache(self, conversation_id: str, user_id: str) -> tuple[Participant, int]:
        """Count a participant's unread messages and store the count.

        The generation is read before counting so a send that commits in
        between keeps its invalidation.
        """
        generation = self._cache.generation(conversation_id) if self._cache is not None else None
        participant = self._require_participant(conversation_id, user_id)
        unread = self._count(participant)
        if self._cache is not None:
            self._cache.put(conversation_id, user_id, unread, generation)
        return participant, unread

    @timed_operation("mark_read")
    def mark_read(
        self,
        conversation_id: str,
        user_id: str,
        last_read_message_id: int | None = None,
    ) -> MarkReadResult:
        """Advance a participant's read cursor.

        Args:
            conversation_id: Conversation being read
            user_id: Participant whose cursor moves
            last_read_message_id: Message to mark as read up to. Defaults to
                                  the conversation's last message.

        The cursor only moves forward; marking an older message leaves it
        where it is. The result carries the cursor and a freshly computed
        unread count.

        Raises:
            NotFound: Unknown conversation, user not a participant, or the
                      message does not belong to the conversation.
        """
        with self._backend.transaction():
            conversation = self._backend.get_conversation(conversation_id)
            if conversation is None:
                raise NotFound(f"Conversation {conversation_id} not found")
            self._require_participant(conversation_id, user_id)

            target_id = last_read_message_id
            if target_id is None:
                target_id = conversation.last_message_id
            else:
                message = self._backend.get_message(target_id)
                if message is None or message.target != Target.conversation(conversation_id):
                    raise NotFound(
                        f"Message {target_id} not found in conversation {conversation_id}"
                    )

            if target_id is not None:
                moved = self._backend.advance_read_cursor(
                    conversation_id, user_id, target_id, utc_now()
                )
                if not moved:
                    logger.debug(
                        f"Read cursor for {user_id} in {conversation_id} already at or past {target_id}"
                    )

        if self._cache is not None:
            self._cache.forget(conversation_id, user_id)
        participant, unread = self._count_and_cache(conversation_id, user_id)

        return MarkReadResult(
            conversation_id=conversation_id,
            user_id=user_id,
            last_read_message_id=participant.last_read_message_id,
            unread_count=unread,
        )

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        """Number of unread messages for a participant.

        May be served from the unread cache. A send or delete drops the
        conversation's cached counts, and a count computed while one commits
        is not stored.

        Raises:
            NotFound: User is not a participant.
        """
        if self._cache is not None:
            cached = self._cache.get(conversation_id, user_id)
            if cached is not None:
                return cached

        return self._count_and_cache(conversation_id, user_id)[1]

    @timed_operation("unread_summary")
    def unread_summary(self, user_id: str) -> UnreadSummary:
        """Total unread messages across a user's conversations.

        `per_conversation` lists only conversations with unread messages.
        """
        per_conversation: dict[str, int] = {}
        for conversation_id in self._backend.list_ids_for_user(user_id):
            count = self.unread_count(conversation_id, user_id)
            if count:
                per_conversation[conversation_id] = count
        return UnreadSummary(total=sum(per_conversation.values()), per_conversation=per_conversation)
