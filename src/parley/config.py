"""Configuration for parley.

Settings come from three layers, later ones winning:
- dataclass defaults
- an optional YAML file (``Settings.load(path)``)
- ``PARLEY_*`` environment variables

Environment Variables:
    PARLEY_CONFIG: Path to a YAML settings file
    PARLEY_DB: SQLite path, or ":memory:"
    PARLEY_INVITATION_TTL_HOURS: Lifetime of room invitations
    PARLEY_EXPIRE_INVITATIONS_ON_ACCEPT: Mark invitations expired on a late accept
    PARLEY_KDF_ITERATIONS: PBKDF2 iterations for private-key encryption
    PARLEY_WRAP_ALGORITHM: Default room-key wrap algorithm
    PARLEY_ROOM_KEY_SECRET: base64url 32-byte key sealing room keys at rest
    PARLEY_NO_AUTH: Trust the X-User-Id header (development only)
    PARLEY_AUTH_TOKEN_SECRET: Secret for signed bearer tokens
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .crypto import WrapAlgorithm, base64url_to_bytes, bytes_to_base64url, generate_key
from .errors import ParleyConfigError

logger = logging.getLogger(__name__)

DEFAULT_INVITATION_TTL_HOURS = 7 * 24
DEFAULT_KDF_ITERATIONS = 100_000
DEFAULT_TOKEN_TTL_MINUTES = 24 * 60

_TRUTHY = ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings shared by every parley component."""

    db_path: str = ":memory:"
    """SQLite database path. ":memory:" keeps everything in-process."""

    invitation_ttl_hours: float = DEFAULT_INVITATION_TTL_HOURS
    expire_invitations_on_accept: bool = False
    """When True, a late accept also moves the invitation to 'expired'."""

    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    wrap_algorithm: str = WrapAlgorithm.SEALED_BOX.value
    room_key_secret: str | None = None
    """base64url key-encryption key for room keys at rest."""

    delete_batch_size: int = 500
    export_batch_size: int = 500
    page_size: int = 100
    session_queue_size: int = 256

    store_retry_attempts: int = 3
    store_retry_backoff: float = 0.05

    no_auth: bool = False
    auth_token_secret: str | None = None
    auth_token_ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES
    """Lifetime of tokens minted by ``parley token``."""
    auth_module: str | None = None

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if self.invitation_ttl_hours <= 0:
            raise ParleyConfigError("invitation_ttl_hours must be positive")
        if self.kdf_iterations < 1:
            raise ParleyConfigError("kdf_iterations must be at least 1")
        if self.auth_token_ttl_minutes < 1:
            raise ParleyConfigError("auth_token_ttl_minutes must be at least 1")
        for name in ("delete_batch_size", "export_batch_size", "page_size", "session_queue_size"):
            if getattr(self, name) < 1:
                raise ParleyConfigError(f"{name} must be at least 1")
        if self.store_retry_attempts < 0:
            raise ParleyConfigError("store_retry_attempts cannot be negative")
        try:
            WrapAlgorithm(self.wrap_algorithm)
        except ValueError:
            supported = ", ".join(a.value for a in WrapAlgorithm)
            raise ParleyConfigError(
                f"Unknown wrap_algorithm {self.wrap_algorithm!r}. Supported: {supported}"
            ) from None
        if self.room_key_secret is not None:
            try:
                key = base64url_to_bytes(self.room_key_secret)
            except ValueError as e:
                raise ParleyConfigError(f"room_key_secret is not base64url: {e}") from e
            if len(key) != 32:
                raise ParleyConfigError("room_key_secret must decode to 32 bytes")

    def room_key_encryption_key(self) -> bytes:
        """Key sealing room keys at rest.

        Generates and pins a process-local key when none is configured, which
        is only acceptable for in-memory databases.
        """
        if self.room_key_secret is None:
            if self.db_path != ":memory:":
                logger.warning(
                    "No room_key_secret configured for %s; room keys will not be "
                    "readable after restart",
                    self.db_path,
                )
            self.room_key_secret = bytes_to_base64url(generate_key())
        return base64url_to_bytes(self.room_key_secret)

    @property
    def invitation_ttl_seconds(self) -> float:
        return self.invitation_ttl_hours * 3600

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        data = asdict(self)
        if redact:
            for secret in ("room_key_secret", "auth_token_secret"):
                if data.get(secret):
                    data[secret] = "***"
        return data

    @classmethod
    def load(cls, path: str | Path, **overrides: Any) -> "Settings":
        """Load settings from a YAML file, then apply environment overrides."""
        path = Path(path)
        if not path.exists():
            raise ParleyConfigError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ParleyConfigError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ParleyConfigError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")

        data.update(_env_overrides())
        data.update(overrides)
        return cls(**data)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from PARLEY_CONFIG (if set) and PARLEY_* variables."""
        config_path = os.environ.get("PARLEY_CONFIG")
        if config_path:
            return cls.load(config_path, **overrides)

        data = _env_overrides()
        data.update(overrides)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Write settings to a YAML file (secrets included)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(redact=False), f, default_flow_style=False, sort_keys=False)


def _env_overrides() -> dict[str, Any]:
    """Collect PARLEY_* environment variables as typed setting overrides."""
    env = os.environ
    data: dict[str, Any] = {}

    if "PARLEY_DB" in env:
        data["db_path"] = env["PARLEY_DB"]
    if "PARLEY_INVITATION_TTL_HOURS" in env:
        data["invitation_ttl_hours"] = _parse_number(
            "PARLEY_INVITATION_TTL_HOURS", env["PARLEY_INVITATION_TTL_HOURS"], float
        )
    if "PARLEY_EXPIRE_INVITATIONS_ON_ACCEPT" in env:
        data["expire_invitations_on_accept"] = (
            env["PARLEY_EXPIRE_INVITATIONS_ON_ACCEPT"].lower() in _TRUTHY
        )
    if "PARLEY_KDF_ITERATIONS" in env:
        data["kdf_iterations"] = _parse_number(
            "PARLEY_KDF_ITERATIONS", env["PARLEY_KDF_ITERATIONS"], int
        )
    if "PARLEY_WRAP_ALGORITHM" in env:
        data["wrap_algorithm"] = env["PARLEY_WRAP_ALGORITHM"]
    if "PARLEY_ROOM_KEY_SECRET" in env:
        data["room_key_secret"] = env["PARLEY_ROOM_KEY_SECRET"]
    if "PARLEY_NO_AUTH" in env:
        data["no_auth"] = env["PARLEY_NO_AUTH"].lower() in _TRUTHY
    if "PARLEY_AUTH_TOKEN_SECRET" in env:
        data["auth_token_secret"] = env["PARLEY_AUTH_TOKEN_SECRET"]
    if "PARLEY_AUTH_TOKEN_TTL_MINUTES" in env:
        data["auth_token_ttl_minutes"] = _parse_number(
            "PARLEY_AUTH_TOKEN_TTL_MINUTES", env["PARLEY_AUTH_TOKEN_TTL_MINUTES"], int
        )
    if "PARLEY_AUTH_MODULE" in env:
        data["auth_module"] = env["PARLEY_AUTH_MODULE"]

    return data


def _parse_number(name: str, raw: str, kind: type) -> Any:
    try:
        return kind(raw)
    except ValueError:
        raise ParleyConfigError(f"{name} must be a number, got {raw!r}") from None
