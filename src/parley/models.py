"""Domain records for parley.

Records are plain dataclasses built from store rows (``from_row``) and
serialized for the HTTP layer, events and exports (``to_dict``). Byte fields
serialize as base64url. Enum members are ``str`` subclasses, so a record's
string fields compare equal to them directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal

from uuid_extensions import uuid7 as make_uuid7

from .crypto import bytes_to_base64url

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601, so timestamps also order correctly as strings."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    """Time-ordered UUIDv7 string."""
    return str(make_uuid7())


class RoomKind(str, Enum):
    GENERAL = "general"
    GROUP = "group"
    DIRECT = "direct"


class RoomStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class Role(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"
    GUEST = "guest"


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    REVOKED = "revoked"


class MessageStatus(str, Enum):
    SENT = "sent"
    EDITED = "edited"
    DELETED = "deleted"


class EpochReason(str, Enum):
    CREATED = "created"
    MEMBER_REMOVED = "member_removed"
    MANUAL = "manual"


# Kinds whose new participants become active immediately instead of invited
DIRECT_ADD_KINDS = frozenset({RoomKind.GENERAL})

# Active participants plus pending invitees a direct room may hold
DIRECT_ROOM_CAPACITY = 2


class _Record:
    """Row conversion shared by all records."""

    @classmethod
    def from_row(cls, row: dict[str, Any]):
        return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in row})

    def to_dict(self) -> dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bytes):
                value = bytes_to_base64url(value)
            data[f.name] = value
        return data


@dataclass
class Room(_Record):
    room_id: str
    workspace_id: str
    kind: str
    name: str
    status: str
    created_by: str
    created_at: str
    updated_at: str
    last_seq: int = 0
    current_epoch: int = 0
    description: str | None = None
    archived_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RoomStatus.ACTIVE


@dataclass
class RoomSummary:
    """A room as listed for one user."""

    room: Room
    role: str
    unread_count: int

    def to_dict(self) -> dict[str, Any]:
        return {**self.room.to_dict(), "role": self.role, "unread_count": self.unread_count}


@dataclass
class Participant(_Record):
    room_id: str
    user_id: str
    role: str
    status: str
    joined_at: str | None = None
    invited_by: str | None = None
    removed_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE


@dataclass
class Invitation(_Record):
    invitation_id: str
    room_id: str
    invitee_id: str
    inviter_id: str
    status: str
    created_at: str
    expires_at: str
    resolved_at: str | None = None
    token: str | None = None
    """Invite link secret, kept out of room events."""

    def is_expired(self, now: str) -> bool:
        return self.expires_at <= now

    def public_dict(self) -> dict[str, Any]:
        data = self.to_dict()
        data.pop("token", None)
        return data


@dataclass
class Message(_Record):
    message_id: str
    room_id: str
    seq: int
    sender_id: str
    ciphertext: bytes
    nonce: bytes
    key_epoch: int
    status: str
    created_at: str
    reply_to: str | None = None
    client_token: str | None = None
    edited_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.status == MessageStatus.DELETED


@dataclass
class Reaction(_Record):
    message_id: str
    user_id: str
    kind: str
    created_at: str


@dataclass
class ReadReceipt(_Record):
    message_id: str
    room_id: str
    user_id: str
    seq: int
    read_at: str


@dataclass
class KeyBundle(_Record):
    """A user's public key and passphrase-protected private key."""

    user_id: str
    public_key: bytes
    encrypted_private_key: bytes
    kdf: str
    kdf_salt: bytes
    kdf_iterations: int
    nonce: bytes
    key_version: int
    initialized_at: str


@dataclass
class RoomEpoch(_Record):
    room_id: str
    epoch: int
    reason: str
    created_at: str
    triggered_by: str | None = None
    membership_hash: str | None = None

    # Sealed under the server key-encryption key; never serialized
    sealed_key: bytes = field(default=b"", repr=False)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.pop("sealed_key")
        return data


@dataclass
class RoomKeyGrant(_Record):
    room_id: str
    user_id: str
    epoch: int
    algorithm: str
    wrapped_key: bytes
    granted_at: str
    granted_by: str | None = None


@dataclass
class AuditEntry(_Record):
    audit_id: str
    room_id: str
    actor_id: str
    action: str
    detail: str
    created_at: str


@dataclass
class AddParticipantsResult:
    added: list[Participant] = field(default_factory=list)
    invited: list[Invitation] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [p.to_dict() for p in self.added],
            "invited": [i.to_dict() for i in self.invited],
            "skipped": list(self.skipped),
        }


@dataclass
class Pagination:
    """Cursor window over a room's messages.

    ``forward`` yields oldest first, ``backward`` newest first. Cursors are
    exclusive sequence numbers.
    """

    direction: Literal["forward", "backward"] = "forward"
    after_seq: int | None = None
    before_seq: int | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.direction not in ("forward", "backward"):
            raise ValueError(f"direction must be 'forward' or 'backward', got {self.direction!r}")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit cannot be negative")
