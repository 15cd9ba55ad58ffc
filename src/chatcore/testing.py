"""Pytest fixtures for testing with ChatCore.

Usage in conftest.py:
    pytest_plugins = ["chatcore.testing"]

Or import specific fixtures:
    from chatcore.testing import chat, chat_with_users

Available fixtures:
    - chat: Fresh in-memory ChatCore
    - chat_local: File-backed ChatCore (uses tmp_path)
    - chat_with_users: ChatCore with alice, bob, carol and stream "stream-1"
    - chat_any_backend: Parametrized over in-memory and local backends
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Generator

import pytest

from .client import ChatCore
from .models import Message

if TYPE_CHECKING:
    from pathlib import Path

TEST_USERS = ["alice", "bob", "carol"]
TEST_STREAM = "stream-1"


@pytest.fixture
def chat() -> Generator[ChatCore, None, None]:
    """Fresh in-memory ChatCore.

    No cleanup needed - all data is ephemeral.

    Example:
        def test_something(chat):
            chat.register_user("alice")
            ...
    """
    client = ChatCore.in_memory()
    yield client
    client.close()


@pytest.fixture
def chat_local(tmp_path: "Path") -> Generator[ChatCore, None, None]:
    """File-backed ChatCore.

    Creates chat.db in tmp_path. Useful for testing persistence behavior.

    Example:
        def test_persistence(chat_local, tmp_path):
            chat_local.register_user("alice")
            chat_local.close()

            reopened = ChatCore.local(tmp_path / "chat.db")
            assert reopened.list_users()
    """
    client = ChatCore.local(tmp_path / "chat.db", create_if_missing=True)
    yield client
    client.close()


@pytest.fixture
def chat_with_users(chat: ChatCore) -> Generator[ChatCore, None, None]:
    """ChatCore with users alice, bob and carol and the stream "stream-1".

    Example:
        def test_messaging(chat_with_users):
            chat_with_users.send_direct_message("alice", "bob", "Hi!")
            assert chat_with_users.unread_summary("bob").total == 1
    """
    make_test_users(chat)
    chat.register_stream(TEST_STREAM, title="Test Stream")
    yield chat


# --- Parametrized Fixtures for Backend Parity Testing ---


def _create_backend(request: Any, tmp_path: "Path") -> ChatCore:
    """Helper to create backends based on parameter."""
    if request.param == "in_memory":
        return ChatCore.in_memory()
    elif request.param == "local":
        return ChatCore.local(tmp_path / "chat.db", create_if_missing=True)
    else:
        raise ValueError(f"Unknown backend type: {request.param}")


@pytest.fixture(params=["in_memory", "local"])
def chat_any_backend(
    request: Any,
    tmp_path: "Path",
) -> Generator[ChatCore, None, None]:
    """Parametrized fixture that runs tests against multiple backends.

    Use this to verify behavior is consistent across backends.

    Example:
        def test_works_everywhere(chat_any_backend):
            make_test_users(chat_any_backend)
            # This test runs twice: once with in_memory, once with local
    """
    client = _create_backend(request, tmp_path)
    yield client
    client.close()


# --- Utility Functions ---


def make_test_users(client: ChatCore, user_ids: list[str] | None = None) -> list[str]:
    """Register test users.

    Args:
        client: ChatCore instance
        user_ids: IDs to register (default: alice, bob, carol)

    Returns:
        The registered IDs
    """
    if user_ids is None:
        user_ids = list(TEST_USERS)
    for user_id in user_ids:
        client.register_user(user_id, display_name=user_id.title())
    return user_ids


def send_test_messages(
    client: ChatCore,
    sender: str,
    recipient: str,
    count: int = 5,
    content_prefix: str = "Message",
) -> list[Message]:
    """Send multiple direct messages.

    Args:
        client: ChatCore instance
        sender: Sending user ID
        recipient: Receiving user ID
        count: Number of messages to send
        content_prefix: Prefix for message bodies

    Returns:
        List of sent messages, oldest first
    """
    messages = []
    for i in range(count):
        result = client.send_direct_message(sender, recipient, f"{content_prefix} {i + 1}")
        messages.append(result.message)
    return messages
