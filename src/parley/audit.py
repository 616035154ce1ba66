"""Audit trail for privileged room operations.

Entries are stored in the ``audit_log`` table and mirrored to the
``parley.audit`` logger so they can be shipped separately from
application logs.
"""

from __future__ import annotations

import logging
from typing import Any

from . import db
from .db import Store
from .models import AuditEntry

audit_logger = logging.getLogger("parley.audit")

ROOM_ARCHIVED = "room.archived"
ROOM_DELETED = "room.deleted"
CONVERSATION_DELETE_STARTED = "conversation.delete.started"
CONVERSATION_DELETE_COMPLETED = "conversation.delete.completed"
CONVERSATION_DELETE_CANCELLED = "conversation.delete.cancelled"
HISTORY_REWRAPPED = "keys.history_rewrapped"


async def record(
    store: Store,
    room_id: str,
    actor_id: str,
    action: str,
    now: str,
    **detail: Any,
) -> AuditEntry:
    row = await store.run(db.insert_audit, room_id, actor_id, action, detail, now)
    audit_logger.info(f"{action} room={room_id} actor={actor_id} {detail}")
    return AuditEntry.from_row(row)


async def entries(store: Store, room_id: str) -> list[AuditEntry]:
    rows = await store.run(db.list_audit, room_id)
    return [AuditEntry.from_row(r) for r in rows]
