"""Database layer for parley.

SQL lives in plain module-level functions that take the connection as the
``conn`` keyword. ``Store`` owns the one SQLite connection and runs those
functions on a dedicated single-thread executor, so the event loop never
blocks and every store call is atomic with respect to every other.

    store = Store(":memory:")
    room = await store.run(db.get_room, room_id)
    await store.aclose()

Invariants enforced here as well as by callers:
- per-room sequence numbers come from a counter column updated in the same
  transaction as the message insert (gapless, strictly increasing)
- one general room per workspace (partial unique index)
- reactions and grants are unique per key (``INSERT OR IGNORE``)
- invitation resolution is a conditional update on ``status = 'pending'``
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import secrets
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from .errors import TransientStoreFailure
from .metrics import Metrics
from .models import new_id

logger = logging.getLogger(__name__)

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 3


# --- Connection Management ---


def connect(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection configured for parley.

    Args:
        db_path: Path to database file, or ":memory:" for in-memory.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    if db_path != ":memory:":
        # Enable WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
    # Set busy timeout to wait for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def _is_transient(error: sqlite3.OperationalError) -> bool:
    """Check if an error is a lock/busy condition worth retrying."""
    error_str = str(error).lower()
    return "locked" in error_str or "busy" in error_str


class Store:
    """Async handle over one SQLite connection."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        metrics: Metrics | None = None,
    ) -> None:
        self.db_path = db_path
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.metrics = metrics or Metrics()
        self._conn = connect(db_path)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="parley-db")
        self._closed = False
        applied = run_migrations(self._conn)
        if applied:
            logger.info(f"Applied migrations {applied} to {db_path}")

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a db function on the store thread and return its result."""
        if self._closed:
            raise RuntimeError("Store is closed")
        loop = asyncio.get_running_loop()
        call = functools.partial(self._execute_with_retry, fn, args, kwargs)
        return await loop.run_in_executor(self._executor, call)

    def _execute_with_retry(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        """Execute a database operation, retrying lock/busy errors with backoff.

        Raises:
            TransientStoreFailure: If the database stays locked after all retries
        """
        name = getattr(fn, "__name__", "store_call")
        for attempt in range(self.retry_attempts + 1):
            try:
                with self.metrics.timed(f"store.{name}"):
                    return fn(*args, conn=self._conn, **kwargs)
            except sqlite3.OperationalError as e:
                if not _is_transient(e):
                    raise
                if attempt >= self.retry_attempts:
                    logger.error(f"Store call {name} failed after {attempt + 1} attempts: {e}")
                    raise TransientStoreFailure() from e
                self.metrics.record_store_retry(name)
                delay = self.retry_backoff * (2**attempt)
                logger.warning(
                    f"Store call {name} busy (attempt {attempt + 1}/{self.retry_attempts + 1}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    async def aclose(self) -> None:
        """Close the connection and stop the store thread."""
        if self._closed:
            return
        self._closed = True
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._conn.close)
        self._executor.shutdown(wait=True)


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(*, conn: sqlite3.Connection) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def _migrate_001_initial_schema(conn: sqlite3.Connection) -> None:
    """Migration 001: rooms, participants, invitations, messages, reactions, receipts."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS rooms (
            room_id TEXT PRIMARY KEY,
            workspace_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            archived_at TEXT,
            deleted_at TEXT,
            last_seq INTEGER NOT NULL DEFAULT 0,
            current_epoch INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_rooms_workspace ON rooms(workspace_id);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_rooms_one_general
            ON rooms(workspace_id) WHERE kind = 'general';

        CREATE TABLE IF NOT EXISTS participants (
            room_id TEXT NOT NULL REFERENCES rooms(room_id),
            user_id TEXT NOT NULL,
            role TEXT NOT NULL,
            status TEXT NOT NULL,
            joined_at TEXT,
            invited_by TEXT,
            removed_at TEXT,
            PRIMARY KEY (room_id, user_id)
        );

        CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id, status);

        CREATE TABLE IF NOT EXISTS invitations (
            invitation_id TEXT PRIMARY KEY,
            room_id TEXT NOT NULL REFERENCES rooms(room_id),
            invitee_id TEXT NOT NULL,
            inviter_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            resolved_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_invitations_invitee ON invitations(invitee_id, status);
        CREATE INDEX IF NOT EXISTS idx_invitations_room ON invitations(room_id, status);

        CREATE TABLE IF NOT EXISTS messages (
            message_id TEXT PRIMARY KEY,
            room_id TEXT NOT NULL REFERENCES rooms(room_id),
            seq INTEGER NOT NULL,
            sender_id TEXT NOT NULL,
            ciphertext BLOB NOT NULL,
            nonce BLOB NOT NULL,
            key_epoch INTEGER NOT NULL,
            reply_to TEXT,
            client_token TEXT,
            status TEXT NOT NULL DEFAULT 'sent',
            created_at TEXT NOT NULL,
            edited_at TEXT,
            deleted_at TEXT,
            UNIQUE (room_id, seq),
            UNIQUE (room_id, sender_id, client_token)
        );

        CREATE TABLE IF NOT EXISTS reactions (
            message_id TEXT NOT NULL REFERENCES messages(message_id),
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (message_id, user_id, kind)
        );

        CREATE TABLE IF NOT EXISTS read_receipts (
            message_id TEXT NOT NULL REFERENCES messages(message_id),
            room_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            read_at TEXT NOT NULL,
            PRIMARY KEY (message_id, user_id)
        );

        CREATE INDEX IF NOT EXISTS idx_read_receipts_user ON read_receipts(room_id, user_id, seq);

        CREATE TABLE IF NOT EXISTS audit_log (
            audit_id TEXT PRIMARY KEY,
            room_id TEXT NOT NULL,
            actor_id TEXT NOT NULL,
            action TEXT NOT NULL,
            detail TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_room ON audit_log(room_id, created_at);
    """)


def _migrate_002_add_encryption(conn: sqlite3.Connection) -> None:
    """Migration 002: key bundles, room key epochs and per-user grants."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS key_bundles (
            user_id TEXT PRIMARY KEY,
            public_key BLOB NOT NULL,
            encrypted_private_key BLOB NOT NULL,
            kdf TEXT NOT NULL,
            kdf_salt BLOB NOT NULL,
            kdf_iterations INTEGER NOT NULL,
            nonce BLOB NOT NULL,
            key_version INTEGER NOT NULL DEFAULT 1,
            initialized_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS room_epochs (
            room_id TEXT NOT NULL REFERENCES rooms(room_id),
            epoch INTEGER NOT NULL,
            sealed_key BLOB NOT NULL,
            reason TEXT NOT NULL,
            triggered_by TEXT,
            membership_hash TEXT,
            created_at TEXT NOT NULL,
            PRIMARY KEY (room_id, epoch)
        );

        CREATE TABLE IF NOT EXISTS room_key_grants (
            room_id TEXT NOT NULL REFERENCES rooms(room_id),
            user_id TEXT NOT NULL,
            epoch INTEGER NOT NULL,
            algorithm TEXT NOT NULL,
            wrapped_key BLOB NOT NULL,
            granted_by TEXT,
            granted_at TEXT NOT NULL,
            PRIMARY KEY (room_id, user_id, epoch)
        );
    """)


def _migrate_003_add_invitation_tokens(conn: sqlite3.Connection) -> None:
    """Migration 003: unguessable invite link token per invitation."""
    columns = {row[1] for row in conn.execute("PRAGMA table_info(invitations)").fetchall()}
    if "token" not in columns:
        conn.execute("ALTER TABLE invitations ADD COLUMN token TEXT")
    for (invitation_id,) in conn.execute(
        "SELECT invitation_id FROM invitations WHERE token IS NULL"
    ).fetchall():
        conn.execute(
            "UPDATE invitations SET token = ? WHERE invitation_id = ?",
            (new_invitation_token(), invitation_id),
        )
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_invitations_token ON invitations(token)")


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Initial rooms, participants and messages schema", _migrate_001_initial_schema),
    (2, "Add key bundles, room epochs and key grants", _migrate_002_add_encryption),
    (3, "Add invite link tokens to invitations", _migrate_003_add_invitation_tokens),
]


def run_migrations(conn: sqlite3.Connection) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn=conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
                conn.commit()
                applied.append(version)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Rooms ---


def create_room(
    room_id: str,
    workspace_id: str,
    kind: str,
    name: str,
    description: str | None,
    created_by: str,
    members: list[tuple[str, str]],
    sealed_key: bytes,
    membership_hash: str,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    """Create a room with its initial participants and key epoch 0.

    Args:
        members: (user_id, role) pairs added as active participants
        sealed_key: Epoch-0 room key sealed under the server KEK
        membership_hash: Hash of the initial member ids

    Raises:
        sqlite3.IntegrityError: If a general room already exists for the workspace
    """
    with conn:
        conn.execute(
            """
            INSERT INTO rooms (room_id, workspace_id, kind, name, description, status,
                               created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?)
            """,
            (room_id, workspace_id, kind, name, description, created_by, now, now),
        )
        for user_id, role in members:
            conn.execute(
                """
                INSERT INTO participants (room_id, user_id, role, status, joined_at, invited_by)
                VALUES (?, ?, ?, 'active', ?, ?)
                """,
                (room_id, user_id, role, now, None if user_id == created_by else created_by),
            )
        conn.execute(
            """
            INSERT INTO room_epochs (room_id, epoch, sealed_key, reason, triggered_by,
                                     membership_hash, created_at)
            VALUES (?, 0, ?, 'created', ?, ?, ?)
            """,
            (room_id, sealed_key, created_by, membership_hash, now),
        )
    return get_room(room_id, conn=conn)


def get_room(room_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute("SELECT * FROM rooms WHERE room_id = ?", (room_id,))
    return _row_to_dict(cursor.fetchone())


def get_general_room(workspace_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM rooms WHERE workspace_id = ? AND kind = 'general'", (workspace_id,)
    )
    return _row_to_dict(cursor.fetchone())


def list_rooms_for_user(
    user_id: str, workspace_id: str | None = None, *, conn: sqlite3.Connection
) -> list[dict]:
    """List non-deleted rooms where the user is active, with role and unread count."""
    query = """
        SELECT r.*, p.role AS participant_role,
               (SELECT COUNT(*) FROM messages m
                WHERE m.room_id = r.room_id
                  AND m.seq > COALESCE(
                      (SELECT MAX(rr.seq) FROM read_receipts rr
                       WHERE rr.room_id = r.room_id AND rr.user_id = p.user_id), 0)
               ) AS unread_count
        FROM rooms r
        JOIN participants p ON p.room_id = r.room_id
        WHERE p.user_id = ? AND p.status = 'active' AND r.status != 'deleted'
    """
    params: list[Any] = [user_id]
    if workspace_id is not None:
        query += " AND r.workspace_id = ?"
        params.append(workspace_id)
    query += " ORDER BY r.created_at, r.room_id"
    return _rows_to_dicts(conn.execute(query, params).fetchall())


def update_room(
    room_id: str,
    name: str | None,
    description: str | None,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict | None:
    with conn:
        conn.execute(
            """
            UPDATE rooms SET name = COALESCE(?, name),
                             description = COALESCE(?, description),
                             updated_at = ?
            WHERE room_id = ?
            """,
            (name, description, now, room_id),
        )
    return get_room(room_id, conn=conn)


def set_room_status(room_id: str, status: str, now: str, *, conn: sqlite3.Connection) -> dict | None:
    """Move a room to 'archived' or 'deleted', stamping the matching column."""
    column = {"archived": "archived_at", "deleted": "deleted_at"}[status]
    with conn:
        conn.execute(
            f"UPDATE rooms SET status = ?, {column} = ?, updated_at = ? WHERE room_id = ?",
            (status, now, now, room_id),
        )
    return get_room(room_id, conn=conn)


# --- Participants ---


def get_participant(room_id: str, user_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM participants WHERE room_id = ? AND user_id = ?", (room_id, user_id)
    )
    return _row_to_dict(cursor.fetchone())


def list_participants(room_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM participants WHERE room_id = ? AND status = 'active' ORDER BY joined_at, user_id",
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def active_member_ids(room_id: str, *, conn: sqlite3.Connection) -> list[str]:
    cursor = conn.execute(
        "SELECT user_id FROM participants WHERE room_id = ? AND status = 'active' ORDER BY user_id",
        (room_id,),
    )
    return [row[0] for row in cursor.fetchall()]


def activate_participant(
    room_id: str,
    user_id: str,
    role: str,
    invited_by: str | None,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    """Insert an active participant, or re-activate a removed one."""
    with conn:
        conn.execute(
            """
            INSERT INTO participants (room_id, user_id, role, status, joined_at, invited_by)
            VALUES (?, ?, ?, 'active', ?, ?)
            ON CONFLICT (room_id, user_id) DO UPDATE SET
                role = excluded.role,
                status = 'active',
                joined_at = excluded.joined_at,
                invited_by = excluded.invited_by,
                removed_at = NULL
            """,
            (room_id, user_id, role, now, invited_by),
        )
    return get_participant(room_id, user_id, conn=conn)


def remove_participant(room_id: str, user_id: str, now: str, *, conn: sqlite3.Connection) -> dict | None:
    with conn:
        conn.execute(
            """
            UPDATE participants SET status = 'removed', removed_at = ?
            WHERE room_id = ? AND user_id = ?
            """,
            (now, room_id, user_id),
        )
    return get_participant(room_id, user_id, conn=conn)


def set_participant_role(room_id: str, user_id: str, role: str, *, conn: sqlite3.Connection) -> dict | None:
    with conn:
        conn.execute(
            "UPDATE participants SET role = ? WHERE room_id = ? AND user_id = ?",
            (role, room_id, user_id),
        )
    return get_participant(room_id, user_id, conn=conn)


def count_active_admins(room_id: str, *, conn: sqlite3.Connection) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM participants WHERE room_id = ? AND status = 'active' AND role = 'admin'",
        (room_id,),
    )
    return cursor.fetchone()[0]


# --- Invitations ---


def new_invitation_token() -> str:
    """Unguessable token for an invite link."""
    return secrets.token_urlsafe(32)


def create_invitation(
    room_id: str,
    invitee_id: str,
    inviter_id: str,
    now: str,
    expires_at: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    invitation_id = new_id()
    with conn:
        conn.execute(
            """
            INSERT INTO invitations (invitation_id, room_id, invitee_id, inviter_id, status,
                                     created_at, expires_at, token)
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (invitation_id, room_id, invitee_id, inviter_id, now, expires_at, new_invitation_token()),
        )
    return get_invitation(invitation_id, conn=conn)


def get_invitation(invitation_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute("SELECT * FROM invitations WHERE invitation_id = ?", (invitation_id,))
    return _row_to_dict(cursor.fetchone())


def get_invitation_by_token(token: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute("SELECT * FROM invitations WHERE token = ?", (token,))
    return _row_to_dict(cursor.fetchone())


def find_pending_invitation(
    room_id: str, invitee_id: str, now: str, *, conn: sqlite3.Connection
) -> dict | None:
    """Find an unexpired pending invitation for a user to a room."""
    cursor = conn.execute(
        """
        SELECT * FROM invitations
        WHERE room_id = ? AND invitee_id = ? AND status = 'pending' AND expires_at > ?
        ORDER BY created_at DESC LIMIT 1
        """,
        (room_id, invitee_id, now),
    )
    return _row_to_dict(cursor.fetchone())


def pending_invitee_ids(room_id: str, now: str, *, conn: sqlite3.Connection) -> list[str]:
    cursor = conn.execute(
        """
        SELECT DISTINCT invitee_id FROM invitations
        WHERE room_id = ? AND status = 'pending' AND expires_at > ?
        """,
        (room_id, now),
    )
    return [row[0] for row in cursor.fetchall()]


def list_pending_invitations(user_id: str, now: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        """
        SELECT i.* FROM invitations i
        JOIN rooms r ON r.room_id = i.room_id
        WHERE i.invitee_id = ? AND i.status = 'pending' AND i.expires_at > ?
          AND r.status = 'active'
        ORDER BY i.created_at
        """,
        (user_id, now),
    )
    return _rows_to_dicts(cursor.fetchall())


def resolve_invitation(
    invitation_id: str, status: str, now: str, *, conn: sqlite3.Connection
) -> bool:
    """Move a pending invitation to a terminal status.

    Returns:
        True if this call resolved it, False if it was no longer pending.
    """
    with conn:
        cursor = conn.execute(
            """
            UPDATE invitations SET status = ?, resolved_at = ?
            WHERE invitation_id = ? AND status = 'pending'
            """,
            (status, now, invitation_id),
        )
    return cursor.rowcount == 1


def accept_invitation(
    invitation_id: str, role: str, now: str, *, conn: sqlite3.Connection
) -> dict | None:
    """Accept a pending invitation and activate the invitee in one transaction.

    Returns:
        The participant dict, or None if the invitation was no longer pending.
    """
    with conn:
        cursor = conn.execute(
            """
            UPDATE invitations SET status = 'accepted', resolved_at = ?
            WHERE invitation_id = ? AND status = 'pending'
            """,
            (now, invitation_id),
        )
        if cursor.rowcount != 1:
            return None
        invitation = get_invitation(invitation_id, conn=conn)
        conn.execute(
            """
            INSERT INTO participants (room_id, user_id, role, status, joined_at, invited_by)
            VALUES (?, ?, ?, 'active', ?, ?)
            ON CONFLICT (room_id, user_id) DO UPDATE SET
                role = excluded.role,
                status = 'active',
                joined_at = excluded.joined_at,
                invited_by = excluded.invited_by,
                removed_at = NULL
            """,
            (invitation["room_id"], invitation["invitee_id"], role, now, invitation["inviter_id"]),
        )
    return get_participant(invitation["room_id"], invitation["invitee_id"], conn=conn)


def expire_overdue_invitations(now: str, *, conn: sqlite3.Connection) -> int:
    """Mark every pending invitation past its expiry as 'expired'.

    Returns:
        Number of invitations expired.
    """
    with conn:
        cursor = conn.execute(
            """
            UPDATE invitations SET status = 'expired', resolved_at = ?
            WHERE status = 'pending' AND expires_at <= ?
            """,
            (now, now),
        )
    return cursor.rowcount


# --- Messages ---


def insert_message(
    room_id: str,
    sender_id: str,
    ciphertext: bytes,
    nonce: bytes,
    key_epoch: int,
    reply_to: str | None,
    client_token: str | None,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> tuple[dict, bool]:
    """Assign the next sequence number and insert a message.

    Returns:
        (message dict, created). ``created`` is False when ``client_token``
        matched an earlier message from the same sender, which is returned
        unchanged.
    """
    if client_token is not None:
        existing = get_message_by_client_token(room_id, sender_id, client_token, conn=conn)
        if existing is not None:
            return existing, False

    message_id = new_id()
    with conn:
        conn.execute("UPDATE rooms SET last_seq = last_seq + 1 WHERE room_id = ?", (room_id,))
        seq = conn.execute("SELECT last_seq FROM rooms WHERE room_id = ?", (room_id,)).fetchone()[0]
        conn.execute(
            """
            INSERT INTO messages (message_id, room_id, seq, sender_id, ciphertext, nonce,
                                  key_epoch, reply_to, client_token, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'sent', ?)
            """,
            (
                message_id,
                room_id,
                seq,
                sender_id,
                ciphertext,
                nonce,
                key_epoch,
                reply_to,
                client_token,
                now,
            ),
        )
    return get_message(message_id, conn=conn), True


def get_message(message_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute("SELECT * FROM messages WHERE message_id = ?", (message_id,))
    return _row_to_dict(cursor.fetchone())


def get_message_by_client_token(
    room_id: str, sender_id: str, client_token: str, *, conn: sqlite3.Connection
) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM messages WHERE room_id = ? AND sender_id = ? AND client_token = ?",
        (room_id, sender_id, client_token),
    )
    return _row_to_dict(cursor.fetchone())


def edit_message(
    message_id: str,
    ciphertext: bytes,
    nonce: bytes,
    key_epoch: int,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict | None:
    with conn:
        conn.execute(
            """
            UPDATE messages SET ciphertext = ?, nonce = ?, key_epoch = ?,
                                status = 'edited', edited_at = ?
            WHERE message_id = ? AND status != 'deleted'
            """,
            (ciphertext, nonce, key_epoch, now, message_id),
        )
    return get_message(message_id, conn=conn)


def tombstone_message(message_id: str, now: str, *, conn: sqlite3.Connection) -> dict | None:
    """Clear a message's content and drop its reactions."""
    with conn:
        conn.execute(
            """
            UPDATE messages SET ciphertext = X'', nonce = X'', status = 'deleted', deleted_at = ?
            WHERE message_id = ? AND status != 'deleted'
            """,
            (now, message_id),
        )
        conn.execute("DELETE FROM reactions WHERE message_id = ?", (message_id,))
    return get_message(message_id, conn=conn)


def count_messages(room_id: str, up_to_seq: int, *, conn: sqlite3.Connection) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM messages WHERE room_id = ? AND seq <= ?", (room_id, up_to_seq)
    )
    return cursor.fetchone()[0]


def tombstone_message_batch(
    room_id: str,
    after_seq: int,
    up_to_seq: int,
    limit: int,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> tuple[int, int | None]:
    """Tombstone the next batch of messages in ``(after_seq, up_to_seq]``.

    The whole batch commits or none of it does.

    Returns:
        (messages in the batch, highest seq in the batch or None when done)
    """
    rows = conn.execute(
        """
        SELECT message_id, seq FROM messages
        WHERE room_id = ? AND seq > ? AND seq <= ?
        ORDER BY seq LIMIT ?
        """,
        (room_id, after_seq, up_to_seq, limit),
    ).fetchall()
    if not rows:
        return 0, None

    message_ids = [row[0] for row in rows]
    placeholders = ",".join("?" * len(message_ids))
    with conn:
        conn.execute(
            f"""
            UPDATE messages SET ciphertext = X'', nonce = X'', status = 'deleted', deleted_at = ?
            WHERE message_id IN ({placeholders}) AND status != 'deleted'
            """,
            (now, *message_ids),
        )
        conn.execute(f"DELETE FROM reactions WHERE message_id IN ({placeholders})", message_ids)
    return len(rows), rows[-1][1]


def list_messages(
    room_id: str,
    after_seq: int,
    before_seq: int,
    limit: int,
    descending: bool = False,
    *,
    conn: sqlite3.Connection,
) -> list[dict]:
    """List messages with ``after_seq < seq < before_seq``, ordered by seq."""
    order = "DESC" if descending else "ASC"
    cursor = conn.execute(
        f"""
        SELECT * FROM messages
        WHERE room_id = ? AND seq > ? AND seq < ?
        ORDER BY seq {order} LIMIT ?
        """,
        (room_id, after_seq, before_seq, limit),
    )
    return _rows_to_dicts(cursor.fetchall())


def latest_message(room_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM messages WHERE room_id = ? ORDER BY seq DESC LIMIT 1", (room_id,)
    )
    return _row_to_dict(cursor.fetchone())


# --- Reactions ---


def add_reaction(
    message_id: str, user_id: str, kind: str, now: str, *, conn: sqlite3.Connection
) -> bool:
    """Store a reaction. Returns False if the triple already existed."""
    with conn:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO reactions (message_id, user_id, kind, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (message_id, user_id, kind, now),
        )
    return cursor.rowcount == 1


def remove_reaction(message_id: str, user_id: str, kind: str, *, conn: sqlite3.Connection) -> bool:
    """Delete a reaction. Returns False if there was nothing to delete."""
    with conn:
        cursor = conn.execute(
            "DELETE FROM reactions WHERE message_id = ? AND user_id = ? AND kind = ?",
            (message_id, user_id, kind),
        )
    return cursor.rowcount == 1


def list_reactions(message_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM reactions WHERE message_id = ? ORDER BY created_at, user_id, kind",
        (message_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Read receipts ---


def upsert_read_receipt(
    message_id: str,
    room_id: str,
    user_id: str,
    seq: int,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    with conn:
        conn.execute(
            """
            INSERT INTO read_receipts (message_id, room_id, user_id, seq, read_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (message_id, user_id) DO UPDATE SET read_at = excluded.read_at
            """,
            (message_id, room_id, user_id, seq, now),
        )
    cursor = conn.execute(
        "SELECT * FROM read_receipts WHERE message_id = ? AND user_id = ?", (message_id, user_id)
    )
    return dict(cursor.fetchone())


def list_read_receipts(message_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM read_receipts WHERE message_id = ? ORDER BY read_at, user_id", (message_id,)
    )
    return _rows_to_dicts(cursor.fetchall())


def unread_count(room_id: str, user_id: str, *, conn: sqlite3.Connection) -> int:
    """Count messages with seq above the user's highest read seq."""
    cursor = conn.execute(
        """
        SELECT COUNT(*) FROM messages
        WHERE room_id = ? AND seq > COALESCE(
            (SELECT MAX(seq) FROM read_receipts WHERE room_id = ? AND user_id = ?), 0)
        """,
        (room_id, room_id, user_id),
    )
    return cursor.fetchone()[0]


# --- Encryption ---


def get_key_bundle(user_id: str, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute("SELECT * FROM key_bundles WHERE user_id = ?", (user_id,))
    return _row_to_dict(cursor.fetchone())


def insert_key_bundle(
    user_id: str,
    public_key: bytes,
    encrypted_private_key: bytes,
    kdf: str,
    kdf_salt: bytes,
    kdf_iterations: int,
    nonce: bytes,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> tuple[dict, bool]:
    """Insert a key bundle unless the user already has one.

    Returns:
        (stored bundle dict, created)
    """
    with conn:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO key_bundles (user_id, public_key, encrypted_private_key, kdf,
                                               kdf_salt, kdf_iterations, nonce, key_version,
                                               initialized_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (user_id, public_key, encrypted_private_key, kdf, kdf_salt, kdf_iterations, nonce, now),
        )
    return get_key_bundle(user_id, conn=conn), cursor.rowcount == 1


def insert_epoch(
    room_id: str,
    epoch: int,
    sealed_key: bytes,
    reason: str,
    triggered_by: str | None,
    membership_hash: str,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    """Record a new key epoch and make it the room's current one."""
    with conn:
        conn.execute(
            """
            INSERT INTO room_epochs (room_id, epoch, sealed_key, reason, triggered_by,
                                     membership_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (room_id, epoch, sealed_key, reason, triggered_by, membership_hash, now),
        )
        conn.execute("UPDATE rooms SET current_epoch = ? WHERE room_id = ?", (epoch, room_id))
    return get_epoch(room_id, epoch, conn=conn)


def get_epoch(room_id: str, epoch: int, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM room_epochs WHERE room_id = ? AND epoch = ?", (room_id, epoch)
    )
    return _row_to_dict(cursor.fetchone())


def list_epochs(room_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute("SELECT * FROM room_epochs WHERE room_id = ? ORDER BY epoch", (room_id,))
    return _rows_to_dicts(cursor.fetchall())


def insert_grant(
    room_id: str,
    user_id: str,
    epoch: int,
    algorithm: str,
    wrapped_key: bytes,
    granted_by: str | None,
    now: str,
    *,
    conn: sqlite3.Connection,
) -> tuple[dict, bool]:
    """Store a room key grant unless one exists for (room, user, epoch)."""
    with conn:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO room_key_grants (room_id, user_id, epoch, algorithm,
                                                   wrapped_key, granted_by, granted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (room_id, user_id, epoch, algorithm, wrapped_key, granted_by, now),
        )
    return get_grant(room_id, user_id, epoch, conn=conn), cursor.rowcount == 1


def get_grant(room_id: str, user_id: str, epoch: int, *, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(
        "SELECT * FROM room_key_grants WHERE room_id = ? AND user_id = ? AND epoch = ?",
        (room_id, user_id, epoch),
    )
    return _row_to_dict(cursor.fetchone())


def list_grants(room_id: str, user_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM room_key_grants WHERE room_id = ? AND user_id = ? ORDER BY epoch",
        (room_id, user_id),
    )
    return _rows_to_dicts(cursor.fetchall())


def rooms_missing_current_grant(user_id: str, *, conn: sqlite3.Connection) -> list[str]:
    """Rooms where the user is active but holds no grant for the current epoch."""
    cursor = conn.execute(
        """
        SELECT r.room_id FROM rooms r
        JOIN participants p ON p.room_id = r.room_id
        WHERE p.user_id = ? AND p.status = 'active' AND r.status != 'deleted'
          AND NOT EXISTS (
              SELECT 1 FROM room_key_grants g
              WHERE g.room_id = r.room_id AND g.user_id = p.user_id
                AND g.epoch = r.current_epoch)
        ORDER BY r.room_id
        """,
        (user_id,),
    )
    return [row[0] for row in cursor.fetchall()]


# --- Audit ---


def insert_audit(
    room_id: str,
    actor_id: str,
    action: str,
    detail: dict[str, Any],
    now: str,
    *,
    conn: sqlite3.Connection,
) -> dict:
    audit_id = new_id()
    with conn:
        conn.execute(
            """
            INSERT INTO audit_log (audit_id, room_id, actor_id, action, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (audit_id, room_id, actor_id, action, json.dumps(detail, sort_keys=True), now),
        )
    cursor = conn.execute("SELECT * FROM audit_log WHERE audit_id = ?", (audit_id,))
    return dict(cursor.fetchone())


def list_audit(room_id: str, *, conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute(
        "SELECT * FROM audit_log WHERE room_id = ? ORDER BY created_at, audit_id", (room_id,)
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Export ---


def read_export_snapshot(room_id: str, *, conn: sqlite3.Connection) -> dict:
    """Read everything an export needs as of one sequence watermark.

    Runs as a single store call inside one read transaction, so no write can
    land between the watermark read and the row reads.
    """
    conn.execute("BEGIN")
    try:
        room = get_room(room_id, conn=conn)
        if room is None:
            return {"room": None, "watermark": 0, "participants": [], "messages": [],
                    "reactions": [], "read_receipts": []}
        watermark = room["last_seq"]
        participants = list_participants(room_id, conn=conn)
        messages = _rows_to_dicts(
            conn.execute(
                """
                SELECT * FROM messages
                WHERE room_id = ? AND seq <= ? AND status != 'deleted'
                ORDER BY seq
                """,
                (room_id, watermark),
            ).fetchall()
        )
        reactions = _rows_to_dicts(
            conn.execute(
                """
                SELECT rx.* FROM reactions rx
                JOIN messages m ON m.message_id = rx.message_id
                WHERE m.room_id = ? AND m.seq <= ? AND m.status != 'deleted'
                ORDER BY m.seq, rx.created_at, rx.user_id, rx.kind
                """,
                (room_id, watermark),
            ).fetchall()
        )
        receipts = _rows_to_dicts(
            conn.execute(
                """
                SELECT * FROM read_receipts
                WHERE room_id = ? AND seq <= ?
                ORDER BY seq, user_id
                """,
                (room_id, watermark),
            ).fetchall()
        )
    finally:
        conn.execute("COMMIT")

    return {
        "room": room,
        "watermark": watermark,
        "participants": participants,
        "messages": messages,
        "reactions": reactions,
        "read_receipts": receipts,
    }
