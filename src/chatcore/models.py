"""Typed records and results passed between chatcore components.

Storage rows are plain dicts (see `db`); these dataclasses are what the
components and the client hand back to callers.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import ValidationError

T = TypeVar("T")

# Maximum number of characters in a message body
MAX_CONTENT_LENGTH = 1000


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string (the storage format)."""
    return datetime.now(timezone.utc).isoformat()


class MessageType(str, Enum):
    TEXT = "TEXT"
    EMOJI = "EMOJI"
    STICKER = "STICKER"
    GIF = "GIF"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"


class MessageState(str, Enum):
    """Lifecycle of a message. DELETED is terminal."""

    CREATED = "CREATED"
    DELETED = "DELETED"


class TargetKind(str, Enum):
    STREAM = "STREAM"
    CONVERSATION = "CONVERSATION"


class ConversationKind(str, Enum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


class ParticipantRole(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


class SortOrder(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"


def parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    """Coerce a string (or enum member) into `enum_cls`.

    Raises:
        ValidationError: If the value is not one of the enum's values.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} {value!r}; expected one of: {allowed}"
        ) from None


def validate_content(content: Any) -> str:
    """Check a message body is a string of 1..MAX_CONTENT_LENGTH characters."""
    if not isinstance(content, str):
        raise ValidationError("Message content must be a string")
    if len(content) < 1:
        raise ValidationError("Message content cannot be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Message content cannot exceed {MAX_CONTENT_LENGTH} characters (got {len(content)})"
        )
    return content


def _load_json(value: str | None, default: Any) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


@dataclass(frozen=True)
class Target:
    """Where a message lives: a public stream or a conversation."""

    kind: TargetKind
    id: str

    @classmethod
    def stream(cls, stream_id: str) -> "Target":
        return cls(TargetKind.STREAM, stream_id)

    @classmethod
    def conversation(cls, conversation_id: str) -> "Target":
        return cls(TargetKind.CONVERSATION, conversation_id)

    @property
    def is_conversation(self) -> bool:
        return self.kind is TargetKind.CONVERSATION


@dataclass
class EditRecord:
    """One entry of a message's edit history."""

    previous_content: str
    edited_at: str
    editor_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "previous_content": self.previous_content,
            "edited_at": self.edited_at,
            "editor_id": self.editor_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EditRecord":
        return cls(
            previous_content=data["previous_content"],
            edited_at=data["edited_at"],
            editor_id=data["editor_id"],
        )


@dataclass
class Message:
    id: int
    target: Target
    author_id: str
    content: str
    type: MessageType = MessageType.TEXT
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: dict[str, Any] = field(default_factory=dict)
    state: MessageState = MessageState.CREATED
    is_edited: bool = False
    edited_at: str | None = None
    edit_history: list[EditRecord] = field(default_factory=list)
    deleted_at: str | None = None
    deleted_by: str | None = None
    deletion_reason: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_deleted(self) -> bool:
        return self.state is MessageState.DELETED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Message":
        history = _load_json(row.get("edit_history"), [])
        return cls(
            id=row["id"],
            target=Target(TargetKind(row["target_kind"]), row["target_id"]),
            author_id=row["author_id"],
            content=row["content"],
            type=MessageType(row["type"]),
            metadata=_load_json(row.get("metadata"), {}),
            attachments=_load_json(row.get("attachments"), {}),
            state=MessageState(row["state"]),
            is_edited=bool(row.get("is_edited")),
            edited_at=row.get("edited_at"),
            edit_history=[EditRecord.from_dict(entry) for entry in history],
            deleted_at=row.get("deleted_at"),
            deleted_by=row.get("deleted_by"),
            deletion_reason=row.get("deletion_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Conversation:
    id: str
    kind: ConversationKind
    participant_ids: list[str]
    direct_key: str | None = None
    last_message_id: int | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any], participant_ids: list[str]) -> "Conversation":
        return cls(
            id=row["id"],
            kind=ConversationKind(row["kind"]),
            participant_ids=participant_ids,
            direct_key=row.get("direct_key"),
            last_message_id=row.get("last_message_id"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def counterpart_of(self, user_id: str) -> str | None:
        """The other participant of a DIRECT conversation, else None."""
        if self.kind is not ConversationKind.DIRECT:
            return None
        others = [p for p in self.participant_ids if p != user_id]
        return others[0] if len(others) == 1 else None


@dataclass
class Participant:
    conversation_id: str
    user_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    joined_at: str = ""
    last_read_message_id: int | None = None
    last_read_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Participant":
        return cls(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=ParticipantRole(row["role"]),
            joined_at=row["joined_at"],
            last_read_message_id=row.get("last_read_message_id"),
            last_read_at=row.get("last_read_at"),
        )


@dataclass
class Pagination:
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
            has_next=page * limit < total,
            has_prev=page > 1,
        )


@dataclass
class Page(Generic[T]):
    items: list[T]
    pagination: Pagination


@dataclass
class ConversationSummary:
    """A conversation as seen by one participant in their conversation list."""

    conversation: Conversation
    last_message: Message | None
    unread_count: int
    # The other user in a DIRECT conversation
    counterpart_id: str | None = None


@dataclass
class MarkReadResult:
    conversation_id: str
    user_id: str
    last_read_message_id: int | None
    unread_count: int


@dataclass
class UnreadSummary:
    total: int
    per_conversation: dict[str, int] = field(default_factory=dict)


@dataclass
class DirectMessageResult:
    conversation: Conversation
    message: Message
