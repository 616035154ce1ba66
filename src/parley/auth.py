"""Caller identity for the HTTP layer.

Identity is owned by the surrounding platform; parley only needs to turn a
request into a user id. Resolvers:

- HeaderCallerResolver: trusts ``X-User-Id`` (behind a gateway, or no-auth
  development mode)
- TokenCallerResolver: HS256 JWT bearer tokens with ``sub``, ``iat`` and ``exp``
- ModuleCallerResolver: a custom module named by ``PARLEY_AUTH_MODULE``

Custom auth modules must expose:
- verify_bearer_token(token: str) -> AuthResult
- extract_bearer_token(authorization: str | None) -> str | None (optional)

The AuthResult dataclass is provided by this module for custom implementations.
"""

from __future__ import annotations

import importlib
import time
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Mapping, Protocol

import jwt

from .config import DEFAULT_TOKEN_TTL_MINUTES, Settings
from .errors import ParleyConfigError, Unauthenticated

USER_ID_HEADER = "x-user-id"
TOKEN_ALGORITHM = "HS256"


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    user_id: str | None = None
    metadata: dict | None = None
    error: str | None = None


@dataclass
class Caller:
    user_id: str
    claims: dict[str, Any] = field(default_factory=dict)


class CallerResolver(Protocol):
    def resolve(self, headers: Mapping[str, str]) -> Caller: ...


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip()


# --- Signed tokens ---


def sign_token(
    user_id: str,
    secret: str,
    ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES,
    *,
    now: float | None = None,
) -> str:
    """Mint an HS256 bearer token for ``user_id`` that expires after ``ttl_minutes``."""
    if not user_id:
        raise ValueError("user_id must be non-empty")
    issued_at = int(time.time() if now is None else now)
    payload = {"sub": user_id, "iat": issued_at, "exp": issued_at + 60 * ttl_minutes}
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def verify_token(token: str, secret: str) -> dict[str, Any]:
    """Decode a bearer token and return its claims.

    Raises:
        Unauthenticated: If the token is expired, tampered with or malformed
    """
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["sub", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired") from None
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid bearer token") from None


# --- Resolvers ---


class HeaderCallerResolver:
    """Trust the ``X-User-Id`` header."""

    def resolve(self, headers: Mapping[str, str]) -> Caller:
        user_id = (headers.get(USER_ID_HEADER) or "").strip()
        if not user_id:
            raise Unauthenticated("X-User-Id header required")
        return Caller(user_id=user_id)


class TokenCallerResolver:
    """Accept bearer tokens minted by ``sign_token``."""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def resolve(self, headers: Mapping[str, str]) -> Caller:
        token = extract_bearer_token(headers.get("authorization"))
        if token is None:
            raise Unauthenticated("Bearer token required")
        claims = verify_token(token, self.secret)
        return Caller(user_id=claims["sub"], claims=claims)


class ModuleCallerResolver:
    """Delegate token checks to a custom auth module."""

    def __init__(self, module: ModuleType) -> None:
        if not hasattr(module, "verify_bearer_token"):
            raise ParleyConfigError(f"Auth module {module.__name__} has no verify_bearer_token")
        self.module = module

    @classmethod
    def from_path(cls, module_path: str) -> "ModuleCallerResolver":
        try:
            return cls(importlib.import_module(module_path))
        except ImportError as e:
            raise ParleyConfigError(f"Failed to import auth module '{module_path}': {e}") from e

    def resolve(self, headers: Mapping[str, str]) -> Caller:
        extract = getattr(self.module, "extract_bearer_token", extract_bearer_token)
        token = extract(headers.get("authorization"))
        if token is None:
            raise Unauthenticated("Bearer token required")
        result: AuthResult = self.module.verify_bearer_token(token)
        if not result.valid or not result.user_id:
            raise Unauthenticated(result.error or "Invalid bearer token")
        return Caller(user_id=result.user_id, claims=result.metadata or {})


def resolver_from_settings(settings: Settings) -> CallerResolver:
    """Pick the resolver configured in settings."""
    if settings.auth_module:
        return ModuleCallerResolver.from_path(settings.auth_module)
    if settings.auth_token_secret:
        return TokenCallerResolver(settings.auth_token_secret)
    if settings.no_auth:
        return HeaderCallerResolver()
    raise ParleyConfigError(
        "No authentication configured: set auth_token_secret, auth_module, or no_auth"
    )


def get_auth_method_name(settings: Settings) -> str:
    """Get the name of the current auth method for logging/debugging."""
    if settings.auth_module:
        return f"custom:{settings.auth_module}"
    if settings.auth_token_secret:
        return "signed-token"
    if settings.no_auth:
        return "header"
    return "none"
