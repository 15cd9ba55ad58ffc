"""Error taxonomy for chatcore.

Every failure the core reports to a caller is one of four kinds. The HTTP
adapter maps each kind to a status code through a single exception handler,
so callers never need to inspect message text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Message


class ChatError(Exception):
    """Base class for errors raised by chatcore components."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ChatError):
    """Raised when a referenced user, stream, conversation or message does not exist."""

    kind = "not_found"
    status_code = 404


class Forbidden(ChatError):
    """Raised when the requester may not perform the operation."""

    kind = "forbidden"
    status_code = 403


class ValidationError(ChatError):
    """Raised when input is out of range or malformed."""

    kind = "validation_error"
    status_code = 400


class Conflict(ChatError):
    """Raised when the operation clashes with the current state.

    When the clash is with an existing message (editing a deleted message),
    `current` carries that message as it is now stored.
    """

    kind = "conflict"
    status_code = 409

    def __init__(self, message: str, current: Message | None = None):
        super().__init__(message)
        self.current = current
