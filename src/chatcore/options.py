"""Configuration options for chatcore.

Provides ChatOptions for configuring storage and listing limits. Supports
environment variable overrides for containerized deployments and a YAML
file loader.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .cache import DEFAULT_UNREAD_CACHE_SIZE, DEFAULT_UNREAD_CACHE_TTL
from .query import DEFAULT_CONVERSATION_PAGE_LIMIT, DEFAULT_MESSAGE_PAGE_LIMIT, MAX_PAGE_LIMIT


class ChatConfigError(Exception):
    """Raised when ChatOptions configuration is invalid."""

    pass


def _env_number(name: str, cast: type) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError as e:
        raise ChatConfigError(f"{name} must be a {cast.__name__}, got {raw!r}") from e


@dataclass
class ChatOptions:
    """Configuration options for a ChatCore instance.

    Storage modes (mutually exclusive):
    1. Local: SQLite database file at `path`
    2. In-memory: Ephemeral SQLite for testing (the default)

    Explicit arguments take priority over environment variables; a value
    left as None is read from the environment, then falls back to the
    default.

    Environment Variables:
        CHATCORE_DB: Database path (":memory:" selects in-memory)
        CHATCORE_MAX_PAGE_LIMIT: Largest accepted page size
        CHATCORE_UNREAD_CACHE_TTL: Seconds an unread count stays cached (0 disables)
        CHATCORE_UNREAD_CACHE_SIZE: Maximum cached unread counts

    Examples:
        options = ChatOptions(path="chat.db", create_if_missing=True)
        options = ChatOptions(in_memory=True, max_page_limit=50)
        options = ChatOptions.from_yaml("chatcore.yaml")
    """

    path: str | Path | None = None
    """SQLite database file. Implies local mode."""

    in_memory: bool = False
    """Use ephemeral in-memory SQLite."""

    create_if_missing: bool = False
    """If True, create the database file if it doesn't exist. Ignored in memory."""

    max_page_limit: int | None = None
    """Largest page size listings accept."""

    default_page_limit: int | None = None
    """Page size for message listings when the caller gives none."""

    conversation_page_limit: int | None = None
    """Page size for conversation listings when the caller gives none."""

    unread_cache_ttl: float | None = None
    """Seconds an unread count stays cached. 0 disables the cache."""

    unread_cache_size: int | None = None
    """Maximum number of cached unread counts."""

    _backend_type: str | None = field(default=None, repr=False)
    _resolved_path: Path | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate options and apply environment variable overrides."""
        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()
        self._resolve_backend()

    def _apply_env_overrides(self) -> None:
        """Fill unset options from the environment."""
        if self.path is None and not self.in_memory:
            env_db = os.environ.get("CHATCORE_DB")
            if env_db == ":memory:":
                self.in_memory = True
            elif env_db:
                self.path = env_db

        if self.max_page_limit is None:
            self.max_page_limit = _env_number("CHATCORE_MAX_PAGE_LIMIT", int)
        if self.unread_cache_ttl is None:
            self.unread_cache_ttl = _env_number("CHATCORE_UNREAD_CACHE_TTL", float)
        if self.unread_cache_size is None:
            self.unread_cache_size = _env_number("CHATCORE_UNREAD_CACHE_SIZE", int)

    def _apply_defaults(self) -> None:
        if self.max_page_limit is None:
            self.max_page_limit = MAX_PAGE_LIMIT
        if self.default_page_limit is None:
            self.default_page_limit = min(DEFAULT_MESSAGE_PAGE_LIMIT, self.max_page_limit)
        if self.conversation_page_limit is None:
            self.conversation_page_limit = min(
                DEFAULT_CONVERSATION_PAGE_LIMIT, self.max_page_limit
            )
        if self.unread_cache_ttl is None:
            self.unread_cache_ttl = DEFAULT_UNREAD_CACHE_TTL
        if self.unread_cache_size is None:
            self.unread_cache_size = DEFAULT_UNREAD_CACHE_SIZE

    def _validate(self) -> None:
        """Validate that options are consistent."""
        if self.in_memory and self.path is not None:
            raise ChatConfigError("in_memory cannot be combined with path.")

        assert self.max_page_limit is not None
        if self.max_page_limit < 1:
            raise ChatConfigError("max_page_limit must be at least 1.")

        for name in ("default_page_limit", "conversation_page_limit"):
            value = getattr(self, name)
            if not 1 <= value <= self.max_page_limit:
                raise ChatConfigError(
                    f"{name} must be between 1 and max_page_limit ({self.max_page_limit})."
                )

        if self.unread_cache_ttl is not None and self.unread_cache_ttl < 0:
            raise ChatConfigError("unread_cache_ttl cannot be negative.")

        if self.unread_cache_size is not None and self.unread_cache_size < 1:
            raise ChatConfigError("unread_cache_size must be at least 1.")

    def _resolve_backend(self) -> None:
        """Determine the backend type and resolve the database path."""
        if self.path is not None:
            self._backend_type = "local"
            self._resolved_path = Path(self.path).expanduser().resolve()
        else:
            self._backend_type = "in_memory"
            self.in_memory = True

    @property
    def backend_type(self) -> str | None:
        """The resolved backend type: 'local' or 'in_memory'."""
        return self._backend_type

    @property
    def resolved_path(self) -> Path | None:
        """The resolved database path (for local backends)."""
        return self._resolved_path

    def is_local(self) -> bool:
        return self._backend_type == "local"

    def is_in_memory(self) -> bool:
        return self._backend_type == "in_memory"

    @property
    def unread_cache_enabled(self) -> bool:
        return bool(self.unread_cache_ttl)

    @classmethod
    def for_local(cls, path: str | Path, create_if_missing: bool = False) -> "ChatOptions":
        """Create options for a local database file."""
        return cls(path=path, create_if_missing=create_if_missing)

    @classmethod
    def for_in_memory(cls) -> "ChatOptions":
        """Create options for in-memory storage (testing)."""
        return cls(in_memory=True)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ChatOptions":
        """Load options from a YAML mapping.

        Example file:
            path: /var/lib/chatcore/chat.db
            create_if_missing: true
            max_page_limit: 100
            unread_cache_ttl: 2.5

        Raises:
            ChatConfigError: If the file is not a mapping or has unknown keys.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ChatConfigError(f"{path}: expected a mapping of options")

        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ChatConfigError(f"{path}: unknown options: {', '.join(unknown)}")

        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "backend_type": self._backend_type,
            "path": str(self._resolved_path) if self._resolved_path else None,
            "create_if_missing": self.create_if_missing,
            "max_page_limit": self.max_page_limit,
            "default_page_limit": self.default_page_limit,
            "conversation_page_limit": self.conversation_page_limit,
            "unread_cache_ttl": self.unread_cache_ttl,
            "unread_cache_size": self.unread_cache_size,
        }
