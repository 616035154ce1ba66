"""Room lifecycle: creation, the workspace general room, archival, deletion,
and the long-running conversation delete and export jobs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable

from . import audit, db
from .config import Settings
from .crypto import compute_membership_hash
from .db import Store
from .encryption import EncryptionService
from .errors import Forbidden, InvalidKind, RoomNotFound
from .events import EventType, RealtimeBroadcaster, RoomEvent
from .jobs import Job, JobCancelled, JobManager
from .locks import LockArena
from .models import (
    AuditEntry,
    Clock,
    Message,
    Participant,
    Role,
    Room,
    RoomKind,
    RoomStatus,
    RoomSummary,
    new_id,
    to_timestamp,
    utcnow,
)
from .participants import ParticipantRegistry

logger = logging.getLogger(__name__)

GENERAL_ROOM_NAME = "general"

JOB_DELETE_CONVERSATION = "delete_conversation"
JOB_EXPORT_ROOM = "export_room"


class RoomManager:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        room_locks: LockArena,
        workspace_locks: LockArena,
        participants: ParticipantRegistry,
        encryption: EncryptionService,
        broadcaster: RealtimeBroadcaster,
        jobs: JobManager,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.room_locks = room_locks
        self.workspace_locks = workspace_locks
        self.participants = participants
        self.encryption = encryption
        self.broadcaster = broadcaster
        self.jobs = jobs
        self.clock = clock

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def _publish(self, type: EventType, room_id: str, payload: dict[str, Any], at: str) -> None:
        self.broadcaster.publish(RoomEvent(type=type, room_id=room_id, payload=payload, committed_at=at))

    # --- Creation ---

    async def _insert_room(
        self,
        workspace_id: str,
        kind: RoomKind,
        name: str,
        description: str | None,
        creator_id: str,
        members: list[tuple[str, str]],
    ) -> Room:
        room_id = new_id()
        row = await self.store.run(
            db.create_room,
            room_id,
            workspace_id,
            kind.value,
            name,
            description,
            creator_id,
            members,
            self.encryption.seal_new_room_key(room_id, 0),
            compute_membership_hash([user_id for user_id, _ in members]),
            self._now(),
        )
        async with self.room_locks.hold(room_id):
            for user_id, _ in members:
                await self.encryption.issue_grant(room_id, user_id, 0, granted_by=creator_id)
        logger.info(f"Created {kind.value} room {room_id} in workspace {workspace_id} by {creator_id}")
        return Room.from_row(row)

    async def create_room(
        self,
        workspace_id: str,
        creator_id: str,
        kind: str,
        name: str,
        *,
        member_ids: Iterable[str] = (),
        description: str | None = None,
    ) -> Room:
        """Create a group or direct room with the creator as admin.

        General rooms only come from ``ensure_workspace_general_room``.
        """
        try:
            kind = RoomKind(kind)
        except ValueError:
            raise InvalidKind(f"Unknown room kind {kind!r}") from None
        if kind == RoomKind.GENERAL:
            raise InvalidKind("General rooms are created with ensure_workspace_general_room")

        member_ids = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        members: list[tuple[str, str]] = [(creator_id, Role.ADMIN.value)]

        if kind == RoomKind.DIRECT:
            if len(member_ids) != 1:
                raise InvalidKind("Direct rooms need exactly one other member")
            members.append((member_ids[0], Role.MEMBER.value))

        room = await self._insert_room(workspace_id, kind, name, description, creator_id, members)

        if kind == RoomKind.GROUP and member_ids:
            await self.participants.add_participants(room.room_id, creator_id, member_ids)
        return room

    async def ensure_workspace_general_room(self, workspace_id: str, user_id: str) -> Room:
        """Get or create the workspace's general room and make ``user_id`` active in it."""
        async with self.workspace_locks.hold(workspace_id):
            row = await self.store.run(db.get_general_room, workspace_id)
            if row is None:
                try:
                    room = await self._insert_room(
                        workspace_id,
                        RoomKind.GENERAL,
                        GENERAL_ROOM_NAME,
                        None,
                        user_id,
                        [(user_id, Role.ADMIN.value)],
                    )
                    return room
                except sqlite3.IntegrityError:
                    # Another process created it first
                    row = await self.store.run(db.get_general_room, workspace_id)
                    if row is None:
                        raise

            room = Room.from_row(row)
            async with self.room_locks.hold(room.room_id):
                participant = await self.participants.get_participant(room.room_id, user_id)
                if participant is None or not participant.is_active:
                    await self.participants.join(room.room_id, user_id, Role.MEMBER.value)
            return room

    # --- Queries ---

    async def get_room(self, room_id: str, user_id: str) -> Room:
        room = await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        return room

    async def list_rooms_for_user(self, user_id: str, workspace_id: str | None = None) -> list[RoomSummary]:
        rows = await self.store.run(db.list_rooms_for_user, user_id, workspace_id)
        return [
            RoomSummary(room=Room.from_row(r), role=r["participant_role"], unread_count=r["unread_count"])
            for r in rows
        ]

    # --- Lifecycle ---

    async def update_room(
        self,
        room_id: str,
        actor_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Room:
        async with self.room_locks.hold(room_id):
            await self.participants.load_active_room(room_id)
            await self.participants.require_role(room_id, actor_id, Role.ADMIN)
            row = await self.store.run(db.update_room, room_id, name, description, self._now())
            room = Room.from_row(row)
            self._publish(EventType.ROOM_UPDATED, room_id, room.to_dict(), room.updated_at)
            return room

    async def archive_room(self, room_id: str, actor_id: str) -> Room:
        """Archive a room (admin only). Archiving an archived room is a no-op."""
        async with self.room_locks.hold(room_id):
            room = await self.participants.load_room(room_id)
            await self.participants.require_role(room_id, actor_id, Role.ADMIN)
            if room.status == RoomStatus.ARCHIVED:
                return room

            now = self._now()
            room = Room.from_row(
                await self.store.run(db.set_room_status, room_id, RoomStatus.ARCHIVED.value, now)
            )
            await audit.record(self.store, room_id, actor_id, audit.ROOM_ARCHIVED, now)
            self._publish(EventType.ROOM_ARCHIVED, room_id, room.to_dict(), now)
            return room

    async def delete_room(self, room_id: str, actor_id: str) -> Room:
        """Soft-delete a room (admin only). General rooms cannot be deleted."""
        async with self.room_locks.hold(room_id):
            room = await self.participants.load_room(room_id)
            await self.participants.require_role(room_id, actor_id, Role.ADMIN)
            if room.kind == RoomKind.GENERAL:
                raise Forbidden("The workspace general room cannot be deleted")

            now = self._now()
            room = Room.from_row(
                await self.store.run(db.set_room_status, room_id, RoomStatus.DELETED.value, now)
            )
            await audit.record(self.store, room_id, actor_id, audit.ROOM_DELETED, now)
            self._publish(EventType.ROOM_DELETED, room_id, room.to_dict(), now)
            for handle in self.broadcaster.sessions(room_id):
                self.broadcaster.disconnect(handle)
            return room

    async def audit_log(self, room_id: str, actor_id: str) -> list[AuditEntry]:
        """Audit entries for a room, oldest first (admin only)."""
        await self.participants.load_room(room_id)
        await self.participants.require_role(room_id, actor_id, Role.ADMIN)
        return await audit.entries(self.store, room_id)

    # --- Background jobs ---

    async def delete_conversation(self, room_id: str, actor_id: str) -> Job:
        """Tombstone every message up to the current seq, in batches (admin only).

        Room and participant records are kept. Each batch commits atomically
        under the room's writer section, so cancelling leaves every message
        either fully tombstoned or untouched. Every committed batch publishes
        ``messages.tombstoned`` with the seq range it covered.
        """
        async with self.room_locks.hold(room_id):
            room = await self.participants.load_room(room_id)
            await self.participants.require_role(room_id, actor_id, Role.ADMIN)
            watermark = room.last_seq
            await audit.record(
                self.store,
                room_id,
                actor_id,
                audit.CONVERSATION_DELETE_STARTED,
                self._now(),
                watermark=watermark,
            )

        async def worker(job: Job) -> dict[str, Any]:
            job.total = await self.store.run(db.count_messages, room_id, watermark)
            after_seq = 0
            try:
                while True:
                    job.raise_if_cancelled()
                    async with self.room_locks.hold(room_id):
                        now = self._now()
                        count, last_seq = await self.store.run(
                            db.tombstone_message_batch,
                            room_id,
                            after_seq,
                            watermark,
                            self.settings.delete_batch_size,
                            now,
                        )
                        if last_seq is not None:
                            self._publish(
                                EventType.MESSAGES_TOMBSTONED,
                                room_id,
                                {
                                    "from_seq": after_seq + 1,
                                    "through_seq": last_seq,
                                    "count": count,
                                    "deleted_by": actor_id,
                                },
                                now,
                            )
                    if last_seq is None:
                        break
                    job.done += count
                    after_seq = last_seq
                    # Let other rooms' writers in between batches
                    await asyncio.sleep(0)
            except JobCancelled:
                await audit.record(
                    self.store,
                    room_id,
                    actor_id,
                    audit.CONVERSATION_DELETE_CANCELLED,
                    self._now(),
                    watermark=watermark,
                    tombstoned_through=after_seq,
                )
                raise

            async with self.room_locks.hold(room_id):
                now = self._now()
                self._publish(
                    EventType.CONVERSATION_DELETED,
                    room_id,
                    {"watermark": watermark, "deleted_by": actor_id},
                    now,
                )
            await audit.record(
                self.store,
                room_id,
                actor_id,
                audit.CONVERSATION_DELETE_COMPLETED,
                now,
                watermark=watermark,
                tombstoned=job.done,
            )
            return {"watermark": watermark, "tombstoned": job.done}

        return self.jobs.start(JOB_DELETE_CONVERSATION, room_id, actor_id, worker)

    async def export_room_data(
        self, room_id: str, actor_id: str, *, output_path: str | Path | None = None
    ) -> Job:
        """Export a consistent snapshot of a room (admin only).

        The job's result is the export document. When ``output_path`` is given
        the document is also written there as JSON.
        """
        await self.participants.load_room(room_id)
        await self.participants.require_role(room_id, actor_id, Role.ADMIN)

        async def worker(job: Job) -> dict[str, Any]:
            snapshot = await self.store.run(db.read_export_snapshot, room_id)
            if snapshot["room"] is None:
                raise RoomNotFound()
            rows = snapshot["messages"]
            job.total = len(rows)

            reactions: dict[str, list[dict]] = {}
            for r in snapshot["reactions"]:
                reactions.setdefault(r["message_id"], []).append(
                    {"user_id": r["user_id"], "kind": r["kind"], "created_at": r["created_at"]}
                )
            receipts: dict[str, list[dict]] = {}
            for r in snapshot["read_receipts"]:
                receipts.setdefault(r["message_id"], []).append(
                    {"user_id": r["user_id"], "read_at": r["read_at"]}
                )

            messages = []
            batch_size = self.settings.export_batch_size
            for start in range(0, len(rows), batch_size):
                job.raise_if_cancelled()
                for row in rows[start : start + batch_size]:
                    data = Message.from_row(row).to_dict()
                    data["reactions"] = reactions.get(row["message_id"], [])
                    data["read_receipts"] = receipts.get(row["message_id"], [])
                    messages.append(data)
                job.done = len(messages)
                await asyncio.sleep(0)

            document = {
                "room": Room.from_row(snapshot["room"]).to_dict(),
                "watermark": snapshot["watermark"],
                "exported_at": self._now(),
                "exported_by": actor_id,
                "participants": [Participant.from_row(p).to_dict() for p in snapshot["participants"]],
                "messages": messages,
            }
            if output_path is not None:
                job.raise_if_cancelled()
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, _write_json, Path(output_path), document)
                logger.info(f"Exported room {room_id} to {output_path}")
            return document

        return self.jobs.start(JOB_EXPORT_ROOM, room_id, actor_id, worker)


def _write_json(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(document, f, indent=2)
