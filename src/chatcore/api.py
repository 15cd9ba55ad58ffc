"""FastAPI application for chatcore.

A thin adapter: it resolves the caller, hands the request to a ChatCore
instance and wraps the result in the response envelope

    {"success": true, "data": ...}

Errors raised by the core become

    {"success": false, "error": "<kind>", "message": "..."}

with the status code of the error kind.
"""

import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ._version import __version__
from .auth_provider import CallerRejected, resolve_caller
from .client import ChatCore
from .errors import ChatError, Conflict
from .metrics import metrics
from .models import Conversation, ConversationSummary, Message, Page, Pagination
from .options import ChatOptions

logger = logging.getLogger(__name__)


# --- ChatCore Instance ---

_chat: ChatCore | None = None
_chat_lock = threading.Lock()


def get_chat() -> ChatCore:
    """Get the ChatCore the app serves, creating it from the environment on first use."""
    global _chat
    with _chat_lock:
        if _chat is None:
            _chat = ChatCore(ChatOptions(create_if_missing=True))
            logger.info(f"Serving {_chat!r}")
        return _chat


def set_chat(chat: ChatCore | None) -> None:
    """Replace the served ChatCore (used by tests and embedding applications)."""
    global _chat
    with _chat_lock:
        _chat = chat


def close_chat() -> None:
    global _chat
    with _chat_lock:
        if _chat is not None:
            _chat.close()
            _chat = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open storage on startup and close it on shutdown."""
    get_chat()
    yield
    close_chat()


app = FastAPI(
    title="chatcore",
    description="Stream chat and direct messaging core",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Aggregate by route template so IDs don't explode the key space
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    endpoint = f"{request.method} {path}"

    metrics.record_request(endpoint, duration_ms, failed=response.status_code >= 500)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handling ---


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map core errors to status codes without inspecting their text."""
    metrics.increment(f"errors.{exc.kind}")
    body: dict[str, Any] = {"success": False, "error": exc.kind, "message": exc.message}
    if isinstance(exc, Conflict) and exc.current is not None:
        body["current"] = MessageInfo.from_message(exc.current).model_dump(by_alias=True)
    return JSONResponse(status_code=exc.status_code, content=body)


# --- Request/Response Models ---


class ApiModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendStreamMessageRequest(ApiModel):
    stream_id: str
    content: str
    type: str = "TEXT"
    metadata: dict[str, Any] | None = None


class EditMessageRequest(ApiModel):
    content: str
    metadata: dict[str, Any] | None = None


class DeleteMessageRequest(ApiModel):
    reason: str | None = None


class SendDirectMessageRequest(ApiModel):
    content: str
    type: str = "TEXT"
    metadata: dict[str, Any] | None = None
    attachments: dict[str, Any] | None = None


class MarkReadRequest(ApiModel):
    last_read_message_id: int | None = None


class EditRecordInfo(ApiModel):
    previous_content: str
    edited_at: str
    editor_id: str


class MessageInfo(ApiModel):
    id: int
    author_id: str
    target_kind: str
    target_id: str
    stream_id: str | None = None
    conversation_id: str | None = None
    content: str
    type: str
    metadata: dict[str, Any]
    attachments: dict[str, Any]
    state: str
    is_deleted: bool
    is_edited: bool
    edited_at: str | None = None
    edit_history: list[EditRecordInfo]
    deleted_at: str | None = None
    deleted_by: str | None = None
    deletion_reason: str | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_message(cls, message: Message) -> "MessageInfo":
        is_conversation = message.target.is_conversation
        return cls(
            id=message.id,
            author_id=message.author_id,
            target_kind=message.target.kind.value,
            target_id=message.target.id,
            stream_id=None if is_conversation else message.target.id,
            conversation_id=message.target.id if is_conversation else None,
            content=message.content,
            type=message.type.value,
            metadata=message.metadata,
            attachments=message.attachments,
            state=message.state.value,
            is_deleted=message.is_deleted,
            is_edited=message.is_edited,
            edited_at=message.edited_at,
            edit_history=[
                EditRecordInfo(
                    previous_content=entry.previous_content,
                    edited_at=entry.edited_at,
                    editor_id=entry.editor_id,
                )
                for entry in message.edit_history
            ],
            deleted_at=message.deleted_at,
            deleted_by=message.deleted_by,
            deletion_reason=message.deletion_reason,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class PaginationInfo(ApiModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_pagination(cls, pagination: Pagination) -> "PaginationInfo":
        return cls(
            page=pagination.page,
            limit=pagination.limit,
            total=pagination.total,
            pages=pagination.pages,
            has_next=pagination.has_next,
            has_prev=pagination.has_prev,
        )


class ConversationInfo(ApiModel):
    id: str
    kind: str
    participant_ids: list[str]
    last_message_id: int | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationInfo":
        return cls(
            id=conversation.id,
            kind=conversation.kind.value,
            participant_ids=conversation.participant_ids,
            last_message_id=conversation.last_message_id,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationSummaryInfo(ConversationInfo):
    last_message: MessageInfo | None = None
    unread_count: int
    counterpart_id: str | None = None

    @classmethod
    def from_summary(cls, summary: ConversationSummary) -> "ConversationSummaryInfo":
        base = ConversationInfo.from_conversation(summary.conversation)
        return cls(
            **base.model_dump(),
            last_message=(
                MessageInfo.from_message(summary.last_message) if summary.last_message else None
            ),
            unread_count=summary.unread_count,
            counterpart_id=summary.counterpart_id,
        )


def _ok(data: Any, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True)


def _message_page(page: Page[Message]) -> dict[str, Any]:
    return {
        "messages": [_dump(MessageInfo.from_message(m)) for m in page.items],
        "pagination": _dump(PaginationInfo.from_pagination(page.pagination)),
    }


# --- Auth Helpers ---


def require_caller(authorization: str | None, x_user_id: str | None) -> str:
    """Resolve the calling user or fail the request (401, 403 or 500)."""
    try:
        return resolve_caller(authorization, x_user_id)
    except CallerRejected as e:
        raise HTTPException(e.status_code, e.message) from e


# --- Stream Chat ---


@app.post("/messages", status_code=201)
def send_stream_message(
    request: SendStreamMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Send a chat message to a stream."""
    caller = require_caller(authorization, x_user_id)
    message = get_chat().send_stream_message(
        caller,
        request.stream_id,
        request.content,
        type=request.type,
        metadata=request.metadata,
    )
    return _ok(_dump(MessageInfo.from_message(message)), "Message sent")


@app.get("/messages/stream/{stream_id}")
def list_stream_messages(
    stream_id: str,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    sort_by: Annotated[str, Query(alias="sortBy")] = "newest",
    message_type: Annotated[str | None, Query(alias="type")] = None,
    include_deleted: Annotated[bool, Query(alias="includeDeleted")] = False,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """List a stream's messages.

    Query parameters:
    - page, limit: 1-based page and page size (max configurable, default 100)
    - sortBy: newest (default) or oldest
    - type: only messages of this type
    - includeDeleted: include soft-deleted messages
    """
    require_caller(authorization, x_user_id)
    result = get_chat().list_stream_messages(
        stream_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        type_filter=message_type,
        include_deleted=include_deleted,
    )
    return _ok(_message_page(result))


@app.patch("/messages/{message_id}")
def edit_message(
    message_id: int,
    request: EditMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Edit a message. Only the author may edit; deleted messages answer 409."""
    caller = require_caller(authorization, x_user_id)
    message = get_chat().edit_message(caller, message_id, request.content, request.metadata)
    return _ok(_dump(MessageInfo.from_message(message)), "Message updated")


@app.delete("/messages/{message_id}")
def delete_message(
    message_id: int,
    request: DeleteMessageRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Soft-delete a message. Deleting twice succeeds."""
    caller = require_caller(authorization, x_user_id)
    reason = request.reason if request else None
    message = get_chat().delete_message(caller, message_id, reason)
    return _ok(_dump(MessageInfo.from_message(message)), "Message deleted")


# --- Direct Messages ---


@app.post("/direct-messages/{user_id}", status_code=201)
def send_direct_message(
    user_id: str,
    request: SendDirectMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Send a direct message to a user, opening the conversation if needed."""
    caller = require_caller(authorization, x_user_id)
    result = get_chat().send_direct_message(
        caller,
        user_id,
        request.content,
        type=request.type,
        metadata=request.metadata,
        attachments=request.attachments,
    )
    return _ok(
        {
            "conversation": _dump(ConversationInfo.from_conversation(result.conversation)),
            "message": _dump(MessageInfo.from_message(result.message)),
        },
        "Message sent",
    )


@app.get("/direct-messages/{user_id}")
def list_direct_messages(
    user_id: str,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    sort_by: Annotated[str, Query(alias="sortBy")] = "newest",
    message_type: Annotated[str | None, Query(alias="type")] = None,
    include_deleted: Annotated[bool, Query(alias="includeDeleted")] = False,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """List the caller's direct thread with a user. Never creates a conversation."""
    caller = require_caller(authorization, x_user_id)
    result = get_chat().list_direct_messages(
        caller,
        user_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        type_filter=message_type,
        include_deleted=include_deleted,
    )
    return _ok(_message_page(result))


# --- Conversations ---


@app.post("/conversations/{user_id}/read")
def mark_conversation_read(
    user_id: str,
    request: MarkReadRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Mark the caller's direct thread with a user as read.

    Without a body the whole thread is marked read. The cursor never moves
    backward.
    """
    caller = require_caller(authorization, x_user_id)
    last_read = request.last_read_message_id if request else None
    result = get_chat().mark_direct_read(caller, user_id, last_read)
    return _ok(
        {
            "conversationId": result.conversation_id,
            "lastReadMessageId": result.last_read_message_id,
            "unreadCount": result.unread_count,
        },
        "Conversation marked as read",
    )


@app.get("/conversations")
def list_conversations(
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """List the caller's conversations, most recently active first."""
    caller = require_caller(authorization, x_user_id)
    result = get_chat().list_conversations(caller, page=page, limit=limit)
    return _ok(
        {
            "conversations": [
                _dump(ConversationSummaryInfo.from_summary(s)) for s in result.items
            ],
            "pagination": _dump(PaginationInfo.from_pagination(result.pagination)),
        }
    )


@app.get("/conversations/unread")
def get_unread_counts(
    per_conversation: Annotated[bool, Query(alias="perConversation")] = False,
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Total unread direct messages for the caller, optionally per conversation."""
    caller = require_caller(authorization, x_user_id)
    summary = get_chat().unread_summary(caller)
    data: dict[str, Any] = {"totalUnread": summary.total}
    if per_conversation:
        data["perConversation"] = summary.per_conversation
    return _ok(data)


# --- Health & Metrics ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics(
    authorization: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires an authenticated caller."""
    require_caller(authorization, x_user_id)
    chat = get_chat()
    info = chat.get_info()
    result = metrics.to_dict()
    result["backend"] = {"type": info.backend_type, "location": info.location}
    cache = chat.unread_cache
    result["unread_cache"] = cache.stats() if cache is not None else {"enabled": False}
    return result
