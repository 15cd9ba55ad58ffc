"""Tests for read cursors and unread counts."""

import pytest

from chatcore.client import ChatCore
from chatcore.errors import NotFound
from chatcore.testing import make_test_users, send_test_messages


@pytest.fixture
def thread(chat_with_users):
    """alice has sent bob three messages."""
    messages = send_test_messages(chat_with_users, "alice", "bob", count=3)
    conversation = chat_with_users.resolver.find_direct("alice", "bob")
    return chat_with_users, conversation, messages


class TestUnreadCount:
    """Test derived unread counts."""

    def test_recipient_counts_incoming(self, thread):
        chat, conversation, _ = thread
        assert chat.unread.unread_count(conversation.id, "bob") == 3

    def test_own_messages_not_counted(self, thread):
        chat, conversation, _ = thread
        assert chat.unread.unread_count(conversation.id, "alice") == 0

    def test_deleted_messages_not_counted(self, thread):
        chat, conversation, messages = thread
        chat.delete_message("alice", messages[1].id)
        assert chat.unread.unread_count(conversation.id, "bob") == 2

    def test_edits_do_not_change_count(self, thread):
        chat, conversation, messages = thread
        chat.edit_message("alice", messages[0].id, "edited")
        assert chat.unread.unread_count(conversation.id, "bob") == 3

    def test_non_participant(self, thread):
        chat, conversation, _ = thread
        with pytest.raises(NotFound):
            chat.unread.unread_count(conversation.id, "carol")

    def test_send_invalidates_cached_count(self, thread):
        chat, conversation, _ = thread
        assert chat.unread.unread_count(conversation.id, "bob") == 3
        chat.send_direct_message("alice", "bob", "one more")
        assert chat.unread.unread_count(conversation.id, "bob") == 4

    def test_delete_invalidates_cached_count(self, thread):
        chat, conversation, messages = thread
        assert chat.unread.unread_count(conversation.id, "bob") == 3
        chat.delete_message("alice", messages[2].id)
        assert chat.unread.unread_count(conversation.id, "bob") == 2

    def test_send_during_count_is_not_cached_stale(self, thread, monkeypatch):
        chat, conversation, _ = thread
        count_unread = chat.backend.count_unread
        interleaved = []

        def count_then_send(*args, **kwargs):
            count = count_unread(*args, **kwargs)
            if not interleaved:
                interleaved.append(chat.send_direct_message("alice", "bob", "mid-count"))
            return count

        monkeypatch.setattr(chat.backend, "count_unread", count_then_send)

        assert chat.unread.unread_count(conversation.id, "bob") == 3
        assert chat.unread.unread_count(conversation.id, "bob") == 4
        assert chat.list_conversations("bob").items[0].unread_count == 4

    def test_send_during_mark_read_count_is_not_cached_stale(self, thread, monkeypatch):
        chat, conversation, _ = thread
        count_unread = chat.backend.count_unread
        interleaved = []

        def count_then_send(*args, **kwargs):
            count = count_unread(*args, **kwargs)
            if not interleaved:
                interleaved.append(chat.send_direct_message("alice", "bob", "mid-count"))
            return count

        monkeypatch.setattr(chat.backend, "count_unread", count_then_send)

        assert chat.unread.mark_read(conversation.id, "bob").unread_count == 0
        assert chat.unread.unread_count(conversation.id, "bob") == 1

    def test_without_cache(self):
        chat = ChatCore.in_memory(unread_cache_ttl=0)
        assert chat.unread_cache is None
        make_test_users(chat, ["alice", "bob"])
        send_test_messages(chat, "alice", "bob", count=2)
        assert chat.unread_summary("bob").total == 2
        chat.close()


class TestMarkRead:
    """Test UnreadTracker.mark_read."""

    def test_mark_all_read(self, thread):
        chat, conversation, messages = thread
        result = chat.unread.mark_read(conversation.id, "bob")

        assert result.conversation_id == conversation.id
        assert result.user_id == "bob"
        assert result.last_read_message_id == messages[-1].id
        assert result.unread_count == 0

    def test_mark_up_to_message(self, thread):
        chat, conversation, messages = thread
        result = chat.unread.mark_read(conversation.id, "bob", messages[0].id)

        assert result.last_read_message_id == messages[0].id
        assert result.unread_count == 2

    def test_idempotent(self, thread):
        chat, conversation, _ = thread
        first = chat.unread.mark_read(conversation.id, "bob")
        second = chat.unread.mark_read(conversation.id, "bob")
        assert first == second

    def test_cursor_never_moves_backward(self, thread):
        chat, conversation, messages = thread
        chat.unread.mark_read(conversation.id, "bob", messages[2].id)
        result = chat.unread.mark_read(conversation.id, "bob", messages[0].id)

        assert result.last_read_message_id == messages[2].id
        assert result.unread_count == 0

    def test_new_messages_after_read(self, thread):
        chat, conversation, _ = thread
        chat.unread.mark_read(conversation.id, "bob")
        chat.send_direct_message("alice", "bob", "are you there?")
        assert chat.unread.unread_count(conversation.id, "bob") == 1

    def test_empty_conversation(self, chat_with_users):
        conversation = chat_with_users.resolver.resolve_or_create_direct("alice", "bob")
        result = chat_with_users.unread.mark_read(conversation.id, "bob")
        assert result.last_read_message_id is None
        assert result.unread_count == 0

    def test_updates_last_read_at(self, thread):
        chat, conversation, _ = thread
        chat.unread.mark_read(conversation.id, "bob")
        participant = chat.backend.get_participant(conversation.id, "bob")
        assert participant.last_read_at is not None

    def test_unknown_conversation(self, chat_with_users):
        with pytest.raises(NotFound):
            chat_with_users.unread.mark_read("missing", "bob")

    def test_non_participant(self, thread):
        chat, conversation, _ = thread
        with pytest.raises(NotFound):
            chat.unread.mark_read(conversation.id, "carol")

    def test_message_from_other_target(self, thread):
        chat, conversation, _ = thread
        stream_message = chat.send_stream_message("alice", "stream-1", "elsewhere")
        with pytest.raises(NotFound):
            chat.unread.mark_read(conversation.id, "bob", stream_message.id)

    def test_unknown_message(self, thread):
        chat, conversation, _ = thread
        with pytest.raises(NotFound):
            chat.unread.mark_read(conversation.id, "bob", 9999)

    def test_does_not_affect_other_participant(self, thread):
        chat, conversation, _ = thread
        chat.send_direct_message("bob", "alice", "reply")
        chat.unread.mark_read(conversation.id, "bob")
        assert chat.unread.unread_count(conversation.id, "alice") == 1


class TestMarkDirectRead:
    """Test ChatCore.mark_direct_read."""

    def test_by_counterpart(self, thread):
        chat, conversation, _ = thread
        result = chat.mark_direct_read("bob", "alice")
        assert result.conversation_id == conversation.id
        assert result.unread_count == 0

    def test_no_conversation(self, chat_with_users):
        with pytest.raises(NotFound):
            chat_with_users.mark_direct_read("bob", "carol")

    def test_unknown_counterpart(self, chat_with_users):
        with pytest.raises(NotFound, match="User nobody-here not found"):
            chat_with_users.mark_direct_read("bob", "nobody-here")


class TestUnreadSummary:
    """Test totals across conversations."""

    def test_totals(self, chat_with_users):
        send_test_messages(chat_with_users, "alice", "bob", count=3)
        send_test_messages(chat_with_users, "carol", "bob", count=2)
        ab = chat_with_users.resolver.find_direct("alice", "bob")
        cb = chat_with_users.resolver.find_direct("carol", "bob")

        summary = chat_with_users.unread_summary("bob")
        assert summary.total == 5
        assert summary.per_conversation == {ab.id: 3, cb.id: 2}

    def test_read_conversations_omitted(self, chat_with_users):
        send_test_messages(chat_with_users, "alice", "bob", count=3)
        send_test_messages(chat_with_users, "carol", "bob", count=2)
        chat_with_users.mark_direct_read("bob", "alice")
        cb = chat_with_users.resolver.find_direct("carol", "bob")

        summary = chat_with_users.unread_summary("bob")
        assert summary.total == 2
        assert summary.per_conversation == {cb.id: 2}

    def test_no_conversations(self, chat_with_users):
        summary = chat_with_users.unread_summary("carol")
        assert summary.total == 0
        assert summary.per_conversation == {}

    def test_stream_messages_never_unread(self, chat_with_users):
        chat_with_users.send_stream_message("alice", "stream-1", "hello everyone")
        assert chat_with_users.unread_summary("bob").total == 0
