"""Caller identity for the chatcore HTTP adapter.

chatcore does not authenticate anyone itself. `resolve_caller` turns the
request headers into a user ID using one of two modes:

- CHATCORE_AUTH_MODULE: dotted path of a module that verifies the bearer
  token from the Authorization header (e.g. 'myapp.chat_auth').
- CHATCORE_NO_AUTH=1: development mode. The X-User-Id header is trusted.

A token module must expose:
- verify_bearer_token(token: str) -> AuthResult

and may expose:
- is_enabled() -> bool (defaults to enabled)
- extract_bearer_token(authorization: str | None) -> str | None
"""

import importlib
import logging
import os
from dataclasses import dataclass
from types import ModuleType

logger = logging.getLogger(__name__)

AUTH_MODULE_ENV = "CHATCORE_AUTH_MODULE"
NO_AUTH_ENV = "CHATCORE_NO_AUTH"


@dataclass
class AuthResult:
    """What a token module reports about one bearer token."""

    valid: bool
    user_id: str | None = None
    error: str | None = None


class CallerRejected(Exception):
    """The request carries no acceptable caller identity.

    `status_code` is 401 when credentials are missing, 403 when they are
    refused and 500 when no identity mode is configured at all.
    """

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def is_no_auth_mode() -> bool:
    """True when the X-User-Id header is trusted (development only)."""
    return os.environ.get(NO_AUTH_ENV, "").lower() in ("1", "true", "yes")


def _load_token_module() -> ModuleType | None:
    module_path = os.environ.get(AUTH_MODULE_ENV)
    if not module_path:
        return None
    try:
        return importlib.import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Failed to import auth module '{module_path}': {e}") from e


def is_auth_enabled() -> bool:
    """True when a token module is configured and has not disabled itself."""
    module = _load_token_module()
    if module is None:
        return False
    is_enabled = getattr(module, "is_enabled", None)
    return bool(is_enabled()) if is_enabled is not None else True


def extract_bearer_token(authorization: str | None) -> str | None:
    """Token from an `Authorization: Bearer <token>` header value.

    A token module's own `extract_bearer_token` wins when it has one.
    """
    module = _load_token_module()
    custom = getattr(module, "extract_bearer_token", None) if module else None
    if custom is not None:
        return custom(authorization)

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def verify_bearer_token(token: str) -> AuthResult:
    """Ask the token module about `token`.

    A result that claims validity without naming a user is treated as
    invalid, since every chat operation needs a caller.
    """
    module = _load_token_module()
    if module is None:
        return AuthResult(valid=False, error="No auth module configured")

    result = module.verify_bearer_token(token)
    if result.valid and not result.user_id:
        return AuthResult(valid=False, error="Auth module returned no user id")
    return result


def get_auth_method_name() -> str:
    """Short name of the active mode, for logs and error messages."""
    module_path = os.environ.get(AUTH_MODULE_ENV)
    if module_path:
        return f"custom:{module_path}"
    if is_no_auth_mode():
        return "no-auth"
    return "none"


def resolve_caller(authorization: str | None, user_header: str | None) -> str:
    """User ID of the caller behind a request.

    Args:
        authorization: Authorization header value
        user_header: X-User-Id header value (only read in no-auth mode)

    Raises:
        CallerRejected: Missing or refused credentials, or no mode configured.
    """
    if is_auth_enabled():
        token = extract_bearer_token(authorization)
        if not token:
            raise CallerRejected(401, "Authorization: Bearer <token> header required")
        result = verify_bearer_token(token)
        if not result.valid:
            logger.info(f"Rejected bearer token: {result.error or 'invalid'}")
            raise CallerRejected(403, result.error or "Invalid token")
        return result.user_id

    if is_no_auth_mode():
        if not user_header:
            raise CallerRejected(401, "X-User-Id header required")
        return user_header

    raise CallerRejected(
        500,
        f"No auth method configured ({get_auth_method_name()}). "
        f"Set {AUTH_MODULE_ENV}, or {NO_AUTH_ENV}=1 for development",
    )
