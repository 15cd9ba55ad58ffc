"""Find or create the canonical direct conversation between two users."""

from __future__ import annotations

import logging

from uuid_extensions import uuid7 as make_uuid7

from .backends import Backend
from .errors import Conflict, NotFound, ValidationError
from .metrics import metrics, timed_operation
from .models import Conversation, ConversationKind, ParticipantRole, utc_now

logger = logging.getLogger(__name__)


def direct_key(user_a: str, user_b: str) -> str:
    """Canonical key for an unordered user pair.

    The key is the same whichever user is passed first, and the storage
    layer keeps it unique, so a pair can only ever have one DIRECT
    conversation.
    """
    return "direct:" + ":".join(sorted((user_a, user_b)))


class ConversationResolver:
    """Resolves user pairs to their DIRECT conversation.

    Creation races are settled by the unique direct key: the losing
    transaction fails with Conflict, and the loser re-reads the winner's row.
    """

    def __init__(self, backend: Backend):
        self._backend = backend

    def _check_pair(self, user_a: str, user_b: str) -> None:
        if not user_a or not user_b:
            raise ValidationError("Both user IDs are required")
        if user_a == user_b:
            raise ValidationError("Cannot open a direct conversation with yourself")

    def find_direct(self, user_a: str, user_b: str) -> Conversation | None:
        """Look up the pair's conversation without creating it."""
        self._check_pair(user_a, user_b)
        return self._backend.find_by_direct_key(direct_key(user_a, user_b))

    @timed_operation("resolve_or_create_direct")
    def resolve_or_create_direct(self, user_a: str, user_b: str) -> Conversation:
        """Return the pair's DIRECT conversation, creating it on first use.

        Idempotent and commutative: concurrent callers with the same pair, in
        either order, all receive the same conversation.

        Raises:
            ValidationError: If the users are the same or an ID is empty.
            NotFound: If either user is unknown.
        """
        self._check_pair(user_a, user_b)
        for user_id in (user_a, user_b):
            if not self._backend.user_exists(user_id):
                raise NotFound(f"User {user_id} not found")

        key = direct_key(user_a, user_b)
        existing = self._backend.find_by_direct_key(key)
        if existing is not None:
            return existing

        try:
            return self._create(key, user_a, user_b)
        except Conflict:
            # Another request created it between our read and our insert
            logger.info(f"Lost creation race for {key}, using existing conversation")
            existing = self._backend.find_by_direct_key(key)
            if existing is None:
                raise
            return existing

    def _create(self, key: str, user_a: str, user_b: str) -> Conversation:
        now = utc_now()
        conversation_id = str(make_uuid7())
        with self._backend.transaction():
            conversation = self._backend.insert_conversation(
                conversation_id, ConversationKind.DIRECT, key, now
            )
            for user_id in sorted((user_a, user_b)):
                self._backend.add_participant(
                    conversation_id, user_id, ParticipantRole.MEMBER, now
                )
        conversation.participant_ids = sorted((user_a, user_b))
        metrics.increment("conversations_created")
        logger.info(f"Created direct conversation {conversation_id} for {key}")
        return conversation
