"""Tests for message and conversation listings."""

import pytest

from chatcore.client import ChatCore
from chatcore.errors import NotFound, ValidationError
from chatcore.models import MessageType, Target
from chatcore.testing import send_test_messages


@pytest.fixture
def stream(chat_with_users):
    """stream-1 with twelve text messages."""
    messages = [
        chat_with_users.send_stream_message("alice", "stream-1", f"msg {i}") for i in range(12)
    ]
    return chat_with_users, messages


class TestListMessages:
    """Test QueryEngine.list_messages."""

    def test_newest_first_by_default(self, stream):
        chat, messages = stream
        page = chat.list_stream_messages("stream-1", limit=5)
        assert [m.id for m in page.items] == [m.id for m in reversed(messages)][:5]

    def test_oldest_first(self, stream):
        chat, messages = stream
        page = chat.list_stream_messages("stream-1", limit=5, sort_by="oldest")
        assert [m.id for m in page.items] == [m.id for m in messages][:5]

    def test_pagination_metadata(self, stream):
        chat, _ = stream
        page = chat.list_stream_messages("stream-1", page=2, limit=5)
        p = page.pagination
        assert (p.page, p.limit, p.total, p.pages) == (2, 5, 12, 3)
        assert p.has_next
        assert p.has_prev

    def test_last_page(self, stream):
        chat, _ = stream
        page = chat.list_stream_messages("stream-1", page=3, limit=5)
        assert len(page.items) == 2
        assert not page.pagination.has_next

    def test_pages_do_not_overlap(self, stream):
        chat, messages = stream
        seen = []
        for number in (1, 2, 3):
            seen.extend(m.id for m in chat.list_stream_messages("stream-1", page=number, limit=5).items)
        assert len(seen) == len(set(seen)) == len(messages)

    def test_page_past_end_is_empty(self, stream):
        chat, _ = stream
        page = chat.list_stream_messages("stream-1", page=10, limit=5)
        assert page.items == []
        assert page.pagination.total == 12
        assert not page.pagination.has_next

    def test_default_limit(self, stream):
        chat, _ = stream
        assert chat.list_stream_messages("stream-1").pagination.limit == 50

    def test_type_filter(self, chat_with_users):
        chat_with_users.send_stream_message("alice", "stream-1", "text")
        gif = chat_with_users.send_stream_message("bob", "stream-1", "dance.gif", type="GIF")

        page = chat_with_users.list_stream_messages("stream-1", type_filter="GIF")
        assert [m.id for m in page.items] == [gif.id]
        assert page.pagination.total == 1

    def test_deleted_hidden_by_default(self, stream):
        chat, messages = stream
        chat.delete_message("alice", messages[0].id)

        page = chat.list_stream_messages("stream-1", limit=100)
        assert page.pagination.total == 11
        assert messages[0].id not in [m.id for m in page.items]

    def test_include_deleted(self, stream):
        chat, messages = stream
        chat.delete_message("alice", messages[0].id)

        page = chat.list_stream_messages("stream-1", limit=100, include_deleted=True)
        assert page.pagination.total == 12
        deleted = [m for m in page.items if m.id == messages[0].id]
        assert deleted[0].is_deleted

    def test_other_targets_excluded(self, stream):
        chat, _ = stream
        chat.register_stream("stream-2")
        chat.send_stream_message("bob", "stream-2", "elsewhere")
        chat.send_direct_message("alice", "bob", "private")
        assert chat.list_stream_messages("stream-1", limit=100).pagination.total == 12

    def test_empty_stream(self, chat_with_users):
        page = chat_with_users.list_stream_messages("stream-1")
        assert page.items == []
        assert page.pagination.total == 0
        assert page.pagination.pages == 0
        assert not page.pagination.has_prev

    def test_unknown_stream(self, chat_with_users):
        with pytest.raises(NotFound, match="Stream not found"):
            chat_with_users.list_stream_messages("nope")

    def test_unknown_conversation(self, chat_with_users):
        with pytest.raises(NotFound):
            chat_with_users.query.list_messages(Target.conversation("missing"))


class TestListingValidation:
    """Out-of-range parameters are rejected, not clamped."""

    @pytest.mark.parametrize("page", [0, -1])
    def test_bad_page(self, chat_with_users, page):
        with pytest.raises(ValidationError, match="page"):
            chat_with_users.list_stream_messages("stream-1", page=page)

    @pytest.mark.parametrize("limit", [0, 101])
    def test_bad_limit(self, chat_with_users, limit):
        with pytest.raises(ValidationError, match="limit"):
            chat_with_users.list_stream_messages("stream-1", limit=limit)

    def test_max_limit_accepted(self, chat_with_users):
        page = chat_with_users.list_stream_messages("stream-1", limit=100)
        assert page.pagination.limit == 100

    def test_bad_sort(self, chat_with_users):
        with pytest.raises(ValidationError, match="sortBy"):
            chat_with_users.list_stream_messages("stream-1", sort_by="random")

    def test_bad_type(self, chat_with_users):
        with pytest.raises(ValidationError):
            chat_with_users.list_stream_messages("stream-1", type_filter="POLL")

    def test_configured_max_limit(self):
        chat = ChatCore.in_memory(max_page_limit=10)
        chat.register_stream("s")
        with pytest.raises(ValidationError):
            chat.list_stream_messages("s", limit=11)
        assert chat.list_stream_messages("s").pagination.limit == 10
        chat.close()


class TestIterMessages:
    """Test lazy iteration over all pages."""

    def test_walks_every_page(self, stream):
        chat, messages = stream
        ids = [m.id for m in chat.iter_stream_messages("stream-1", sort_by="oldest", page_size=5)]
        assert ids == [m.id for m in messages]

    def test_restartable(self, stream):
        chat, _ = stream
        first = [m.id for m in chat.iter_stream_messages("stream-1", page_size=4)]
        second = [m.id for m in chat.iter_stream_messages("stream-1", page_size=4)]
        assert first == second

    def test_lazy(self, stream):
        chat, messages = stream
        iterator = chat.iter_stream_messages("stream-1", page_size=5)
        assert next(iterator).id == messages[-1].id

    def test_empty(self, chat_with_users):
        assert list(chat_with_users.iter_stream_messages("stream-1")) == []


class TestListDirectMessages:
    """Test ChatCore.list_direct_messages."""

    def test_both_sides_see_thread(self, chat_with_users):
        sent = send_test_messages(chat_with_users, "alice", "bob", count=3)
        for viewer, other in (("alice", "bob"), ("bob", "alice")):
            page = chat_with_users.list_direct_messages(viewer, other, sort_by="oldest")
            assert [m.id for m in page.items] == [m.id for m in sent]

    def test_before_first_message(self, chat_with_users):
        page = chat_with_users.list_direct_messages("alice", "bob")
        assert page.items == []
        assert page.pagination.total == 0
        assert chat_with_users.resolver.find_direct("alice", "bob") is None

    def test_unknown_counterpart(self, chat_with_users):
        with pytest.raises(NotFound, match="nobody-here"):
            chat_with_users.list_direct_messages("alice", "nobody-here")

    def test_unknown_caller(self, chat_with_users):
        with pytest.raises(NotFound, match="nobody-here"):
            chat_with_users.list_direct_messages("nobody-here", "alice")

    def test_before_first_message_still_validates(self, chat_with_users):
        with pytest.raises(ValidationError):
            chat_with_users.list_direct_messages("alice", "bob", limit=0)

    def test_type_filter(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "hi")
        image = chat_with_users.send_direct_message(
            "alice", "bob", "photo", type=MessageType.IMAGE
        ).message
        page = chat_with_users.list_direct_messages("bob", "alice", type_filter="IMAGE")
        assert [m.id for m in page.items] == [image.id]


class TestListConversations:
    """Test QueryEngine.list_conversations."""

    def test_most_recent_first(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "first")
        chat_with_users.send_direct_message("alice", "carol", "second")

        page = chat_with_users.list_conversations("alice")
        others = [s.conversation.participant_ids for s in page.items]
        assert others == [["alice", "carol"], ["alice", "bob"]]

    def test_activity_reorders(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "first")
        chat_with_users.send_direct_message("alice", "carol", "second")
        chat_with_users.send_direct_message("bob", "alice", "bump")

        page = chat_with_users.list_conversations("alice")
        assert page.items[0].conversation.participant_ids == ["alice", "bob"]

    def test_last_message_and_unread(self, chat_with_users):
        send_test_messages(chat_with_users, "alice", "bob", count=2)

        summary = chat_with_users.list_conversations("bob").items[0]
        assert summary.last_message.content == "Message 2"
        assert summary.unread_count == 2

        own = chat_with_users.list_conversations("alice").items[0]
        assert own.unread_count == 0

    def test_counterpart(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "hi")
        assert chat_with_users.list_conversations("alice").items[0].counterpart_id == "bob"
        assert chat_with_users.list_conversations("bob").items[0].counterpart_id == "alice"

    def test_conversation_without_messages(self, chat_with_users):
        chat_with_users.resolver.resolve_or_create_direct("alice", "bob")
        summary = chat_with_users.list_conversations("alice").items[0]
        assert summary.last_message is None
        assert summary.unread_count == 0

    def test_only_own_conversations(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "hi")
        page = chat_with_users.list_conversations("carol")
        assert page.items == []
        assert page.pagination.total == 0

    def test_pagination(self, chat_with_users):
        chat_with_users.register_user("dave")
        for other in ("bob", "carol", "dave"):
            chat_with_users.send_direct_message("alice", other, "hi")

        first = chat_with_users.list_conversations("alice", page=1, limit=2)
        second = chat_with_users.list_conversations("alice", page=2, limit=2)
        assert first.pagination.total == 3
        assert first.pagination.has_next
        assert len(second.items) == 1
        ids = {s.conversation.id for s in first.items + second.items}
        assert len(ids) == 3

    def test_default_limit(self, chat_with_users):
        assert chat_with_users.list_conversations("alice").pagination.limit == 20

    def test_bad_limit(self, chat_with_users):
        with pytest.raises(ValidationError):
            chat_with_users.list_conversations("alice", limit=500)
