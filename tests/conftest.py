"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
# Trust X-User-Id in API tests (no auth module)
os.environ["CHATCORE_NO_AUTH"] = "1"
os.environ.pop("CHATCORE_AUTH_MODULE", None)
os.environ.pop("CHATCORE_DB", None)
for _name in ("CHATCORE_MAX_PAGE_LIMIT", "CHATCORE_UNREAD_CACHE_TTL", "CHATCORE_UNREAD_CACHE_SIZE"):
    os.environ.pop(_name, None)


import pytest

from chatcore import api
from chatcore.client import ChatCore
from chatcore.metrics import metrics

# Register the fixtures from chatcore.testing
pytest_plugins = ["chatcore.testing"]


@pytest.fixture(autouse=True, scope="function")
def served_chat():
    """Serve a fresh in-memory ChatCore from the API for each test."""
    chat = ChatCore.in_memory()
    api.set_chat(chat)
    metrics.reset()
    yield chat
    api.set_chat(None)
    chat.close()
