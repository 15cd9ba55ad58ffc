"""Read-only listings of messages and conversations.

Nothing in this module writes to storage. Page parameters outside their
allowed range are rejected with ValidationError rather than clamped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from .backends import Backend
from .errors import NotFound, ValidationError
from .metrics import timed_operation
from .models import (
    ConversationSummary,
    Message,
    MessageType,
    Page,
    Pagination,
    SortOrder,
    Target,
    parse_enum,
)
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_PAGE_LIMIT = 50
DEFAULT_CONVERSATION_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


class QueryEngine:
    """Paginated, sorted and filtered views over messages and conversations.

    Args:
        backend: Storage to read from.
        unread: Tracker used to attach the viewer's unread count to each
                conversation in a listing.
        max_limit: Largest accepted page size.
        default_message_limit: Page size for message listings when none is given.
        default_conversation_limit: Page size for conversation listings when none is given.
    """

    def __init__(
        self,
        backend: Backend,
        unread: UnreadTracker,
        max_limit: int = MAX_PAGE_LIMIT,
        default_message_limit: int = DEFAULT_MESSAGE_PAGE_LIMIT,
        default_conversation_limit: int = DEFAULT_CONVERSATION_PAGE_LIMIT,
    ):
        self._backend = backend
        self._unread = unread
        self.max_limit = max_limit
        self.default_message_limit = min(default_message_limit, max_limit)
        self.default_conversation_limit = min(default_conversation_limit, max_limit)

    def _check_page(self, page: int, limit: int) -> None:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(f"page must be an integer >= 1 (got {page!r})")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_limit:
            raise ValidationError(
                f"limit must be an integer between 1 and {self.max_limit} (got {limit!r})"
            )

    def _check_listing(
        self,
        page: int,
        limit: int | None,
        sort_by: SortOrder | str,
        type_filter: MessageType | str | None,
    ) -> tuple[int, SortOrder, MessageType | None]:
        if limit is None:
            limit = self.default_message_limit
        self._check_page(page, limit)
        order = parse_enum(SortOrder, sort_by, "sortBy")
        message_type = (
            parse_enum(MessageType, type_filter, "message type") if type_filter else None
        )
        return limit, order, message_type

    def empty_page(
        self,
        page: int = 1,
        limit: int | None = None,
        sort_by: SortOrder | str = SortOrder.NEWEST,
        type_filter: MessageType | str | None = None,
    ) -> Page[Message]:
        """An empty message page, validated like a real listing.

        Used for direct threads that have no conversation yet.
        """
        limit, _, _ = self._check_listing(page, limit, sort_by, type_filter)
        return Page(items=[], pagination=Pagination.build(page, limit, 0))

    def _check_target(self, target: Target) -> None:
        if target.is_conversation:
            if self._backend.get_conversation(target.id) is None:
                raise NotFound(f"Conversation {target.id} not found")
        elif not self._backend.stream_exists(target.id):
            raise NotFound("Stream not found")

    @timed_operation("list_messages")
    def list_messages(
        self,
        target: Target,
        page: int = 1,
        limit: int | None = None,
        sort_by: SortOrder | str = SortOrder.NEWEST,
        type_filter: MessageType | str | None = None,
        include_deleted: bool = False,
    ) -> Page[Message]:
        """One page of a stream's or conversation's messages.

        Args:
            target: Stream or conversation to list
            page: 1-based page number
            limit: Page size (1..max_limit)
            sort_by: "newest" (highest ID first) or "oldest"
            type_filter: Only messages of this type
            include_deleted: Include soft-deleted messages in items and total

        Raises:
            ValidationError: Page, limit, sort or type out of range.
            NotFound: Unknown stream or conversation.
        """
        limit, order, message_type = self._check_listing(page, limit, sort_by, type_filter)
        self._check_target(target)

        total = self._backend.count_messages(
            target, message_type=message_type, include_deleted=include_deleted
        )
        items = self._backend.list_messages(
            target,
            newest_first=order is SortOrder.NEWEST,
            message_type=message_type,
            include_deleted=include_deleted,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return Page(items=items, pagination=Pagination.build(page, limit, total))

    def iter_messages(
        self,
        target: Target,
        sort_by: SortOrder | str = SortOrder.NEWEST,
        type_filter: MessageType | str | None = None,
        include_deleted: bool = False,
        page_size: int | None = None,
    ) -> Iterator[Message]:
        """Lazily walk every page of a target's messages.

        Pages are fetched on demand; calling again starts over from page 1.
        Messages appended while iterating newest-first shift later pages, so
        this is not a snapshot.
        """
        page = 1
        while True:
            result = self.list_messages(
                target,
                page=page,
                limit=page_size,
                sort_by=sort_by,
                type_filter=type_filter,
                include_deleted=include_deleted,
            )
            yield from result.items
            if not result.pagination.has_next:
                return
            page += 1

    @timed_operation("list_conversations")
    def list_conversations(
        self,
        user_id: str,
        page: int = 1,
        limit: int | None = None,
    ) -> Page[ConversationSummary]:
        """A user's conversations, most recently active first.

        Each entry carries the conversation's last message (None before the
        first message) and the user's unread count. Direct conversations also
        name the other participant.

        Raises:
            ValidationError: Page or limit out of range.
        """
        if limit is None:
            limit = self.default_conversation_limit
        self._check_page(page, limit)

        total = self._backend.count_for_user(user_id)
        conversations = self._backend.list_for_user(user_id, limit, (page - 1) * limit)

        summaries = []
        for conversation in conversations:
            last_message = None
            if conversation.last_message_id is not None:
                last_message = self._backend.get_message(conversation.last_message_id)
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    last_message=last_message,
                    unread_count=self._unread.unread_count(conversation.id, user_id),
                    counterpart_id=conversation.counterpart_of(user_id),
                )
            )
        return Page(items=summaries, pagination=Pagination.build(page, limit, total))
