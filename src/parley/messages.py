"""Message lifecycle: send, edit, delete, reactions, read receipts and listing.

Message bodies are opaque to the server: clients encrypt with the room key of
the current epoch and send ciphertext plus nonce. Every message gets the
room's next sequence number, assigned under the room's writer section and
again guarded by the store's counter column, so sequence numbers within a
room are strictly increasing with no gaps.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from . import db
from .config import Settings
from .db import Store
from .errors import Forbidden, MessageNotFound, StaleKeyEpoch
from .events import EventType, RealtimeBroadcaster, RoomEvent
from .locks import LockArena
from .models import Clock, Message, Pagination, Reaction, ReadReceipt, Role, to_timestamp, utcnow
from .participants import ParticipantRegistry

logger = logging.getLogger(__name__)


class RoomMessages:
    """Lazy, restartable view over a room's messages.

    Each ``async for`` starts a fresh pass bounded by the room's sequence
    watermark at that moment and fetches ``page_size`` rows per store call.
    Tombstoned messages are included.
    """

    def __init__(self, store: Store, room_id: str, pagination: Pagination, page_size: int) -> None:
        self.store = store
        self.room_id = room_id
        self.pagination = pagination
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Message]:
        room = await self.store.run(db.get_room, self.room_id)
        if room is None:
            return
        p = self.pagination
        lower = p.after_seq if p.after_seq is not None else 0
        upper = room["last_seq"] + 1
        if p.before_seq is not None:
            upper = min(upper, p.before_seq)
        remaining = p.limit
        descending = p.direction == "backward"

        while remaining is None or remaining > 0:
            size = self.page_size if remaining is None else min(self.page_size, remaining)
            rows = await self.store.run(db.list_messages, self.room_id, lower, upper, size, descending)
            for row in rows:
                yield Message.from_row(row)
            if len(rows) < size:
                return
            if remaining is not None:
                remaining -= len(rows)
            if descending:
                upper = rows[-1]["seq"]
            else:
                lower = rows[-1]["seq"]

    async def to_list(self) -> list[Message]:
        return [m async for m in self]


class MessageStore:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        room_locks: LockArena,
        participants: ParticipantRegistry,
        broadcaster: RealtimeBroadcaster,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.room_locks = room_locks
        self.participants = participants
        self.broadcaster = broadcaster
        self.clock = clock

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def _publish(
        self, type: EventType, message: Message, payload: dict[str, Any], at: str
    ) -> None:
        self.broadcaster.publish(
            RoomEvent(type=type, room_id=message.room_id, payload=payload, seq=message.seq, committed_at=at)
        )

    async def _load_message(self, message_id: str) -> Message:
        row = await self.store.run(db.get_message, message_id)
        if row is None:
            raise MessageNotFound()
        return Message.from_row(row)

    # --- Send / edit / delete ---

    async def send_message(
        self,
        room_id: str,
        sender_id: str,
        ciphertext: bytes,
        nonce: bytes,
        *,
        key_epoch: int | None = None,
        reply_to: str | None = None,
        client_token: str | None = None,
    ) -> Message:
        """Commit a message with the room's next sequence number.

        A repeated ``client_token`` from the same sender returns the message
        committed the first time, without a new seq or event.

        Raises:
            StaleKeyEpoch: If ``key_epoch`` is not the room's current epoch
        """
        async with self.room_locks.hold(room_id):
            room = await self.participants.load_active_room(room_id)
            await self.participants.require_active_participant(room_id, sender_id)

            if client_token is not None:
                existing = await self.store.run(
                    db.get_message_by_client_token, room_id, sender_id, client_token
                )
                if existing is not None:
                    return Message.from_row(existing)

            if key_epoch is None:
                key_epoch = room.current_epoch
            elif key_epoch != room.current_epoch:
                raise StaleKeyEpoch(
                    f"Room is at key epoch {room.current_epoch}, message used {key_epoch}"
                )

            if reply_to is not None:
                parent = await self.store.run(db.get_message, reply_to)
                if parent is None or parent["room_id"] != room_id:
                    raise MessageNotFound("Replied-to message is not in this room")

            row, created = await self.store.run(
                db.insert_message,
                room_id,
                sender_id,
                ciphertext,
                nonce,
                key_epoch,
                reply_to,
                client_token,
                self._now(),
            )
            message = Message.from_row(row)
            if created:
                self._publish(EventType.MESSAGE_SENT, message, message.to_dict(), message.created_at)
            return message

    async def edit_message(
        self,
        message_id: str,
        actor_id: str,
        new_ciphertext: bytes,
        new_nonce: bytes,
        *,
        key_epoch: int | None = None,
    ) -> Message:
        """Replace a message's content (original sender only). The seq is kept."""
        message = await self._load_message(message_id)
        async with self.room_locks.hold(message.room_id):
            room = await self.participants.load_active_room(message.room_id)
            await self.participants.require_active_participant(message.room_id, actor_id)
            message = await self._load_message(message_id)
            if message.sender_id != actor_id:
                raise Forbidden("Only the sender can edit a message")
            if message.is_deleted:
                raise MessageNotFound("Message was deleted")
            if key_epoch is None:
                key_epoch = room.current_epoch
            elif key_epoch != room.current_epoch:
                raise StaleKeyEpoch(
                    f"Room is at key epoch {room.current_epoch}, edit used {key_epoch}"
                )

            row = await self.store.run(
                db.edit_message, message_id, new_ciphertext, new_nonce, key_epoch, self._now()
            )
            message = Message.from_row(row)
            self._publish(EventType.MESSAGE_EDITED, message, message.to_dict(), message.edited_at)
            return message

    async def delete_message(self, message_id: str, actor_id: str) -> Message:
        """Tombstone a message (its sender or a room admin). Idempotent."""
        message = await self._load_message(message_id)
        async with self.room_locks.hold(message.room_id):
            await self.participants.load_active_room(message.room_id)
            actor = await self.participants.require_active_participant(message.room_id, actor_id)
            message = await self._load_message(message_id)
            if message.sender_id != actor_id and actor.role != Role.ADMIN:
                raise Forbidden("Only the sender or a room admin can delete a message")
            if message.is_deleted:
                return message

            row = await self.store.run(db.tombstone_message, message_id, self._now())
            message = Message.from_row(row)
            self._publish(
                EventType.MESSAGE_DELETED,
                message,
                {"message_id": message_id, "deleted_by": actor_id},
                message.deleted_at,
            )
            return message

    async def get_message(self, message_id: str, user_id: str) -> Message:
        message = await self._load_message(message_id)
        await self.participants.load_room(message.room_id)
        await self.participants.require_active_participant(message.room_id, user_id)
        return message

    # --- Reactions ---

    async def _reactable(self, message_id: str, user_id: str) -> Message:
        # Room writer section held by caller; archived rooms still take reactions
        message = await self._load_message(message_id)
        await self.participants.load_room(message.room_id)
        await self.participants.require_active_participant(message.room_id, user_id)
        if message.is_deleted:
            raise MessageNotFound("Message was deleted")
        return message

    async def add_reaction(self, message_id: str, user_id: str, kind: str) -> bool:
        """Add a reaction. Returns False if it was already there."""
        room_id = (await self._load_message(message_id)).room_id
        async with self.room_locks.hold(room_id):
            message = await self._reactable(message_id, user_id)
            now = self._now()
            added = await self.store.run(db.add_reaction, message_id, user_id, kind, now)
            if added:
                reaction = Reaction(message_id=message_id, user_id=user_id, kind=kind, created_at=now)
                self._publish(EventType.REACTION_ADDED, message, reaction.to_dict(), now)
            return added

    async def remove_reaction(self, message_id: str, user_id: str, kind: str) -> bool:
        """Remove a reaction. Returns False if there was none."""
        room_id = (await self._load_message(message_id)).room_id
        async with self.room_locks.hold(room_id):
            message = await self._reactable(message_id, user_id)
            removed = await self.store.run(db.remove_reaction, message_id, user_id, kind)
            if removed:
                self._publish(
                    EventType.REACTION_REMOVED,
                    message,
                    {"message_id": message_id, "user_id": user_id, "kind": kind},
                    self._now(),
                )
            return removed

    async def toggle_reaction(self, message_id: str, user_id: str, kind: str) -> bool:
        """Add the reaction if absent, remove it if present.

        Returns:
            True if the reaction is present afterwards.
        """
        room_id = (await self._load_message(message_id)).room_id
        async with self.room_locks.hold(room_id):
            message = await self._reactable(message_id, user_id)
            now = self._now()
            if await self.store.run(db.add_reaction, message_id, user_id, kind, now):
                reaction = Reaction(message_id=message_id, user_id=user_id, kind=kind, created_at=now)
                self._publish(EventType.REACTION_ADDED, message, reaction.to_dict(), now)
                return True
            await self.store.run(db.remove_reaction, message_id, user_id, kind)
            self._publish(
                EventType.REACTION_REMOVED,
                message,
                {"message_id": message_id, "user_id": user_id, "kind": kind},
                now,
            )
            return False

    async def list_reactions(self, message_id: str, user_id: str) -> list[Reaction]:
        await self.get_message(message_id, user_id)
        rows = await self.store.run(db.list_reactions, message_id)
        return [Reaction.from_row(r) for r in rows]

    # --- Read state ---

    async def mark_message_as_read(self, message_id: str, user_id: str) -> ReadReceipt:
        room_id = (await self._load_message(message_id)).room_id
        async with self.room_locks.hold(room_id):
            await self.participants.load_room(room_id)
            await self.participants.require_active_participant(room_id, user_id)
            message = await self._load_message(message_id)
            row = await self.store.run(
                db.upsert_read_receipt, message_id, room_id, user_id, message.seq, self._now()
            )
            receipt = ReadReceipt.from_row(row)
            self._publish(EventType.MESSAGE_READ, message, receipt.to_dict(), receipt.read_at)
            return receipt

    async def mark_room_read(self, room_id: str, user_id: str) -> ReadReceipt | None:
        """Mark the room's latest message read. Returns None for an empty room."""
        await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        latest = await self.store.run(db.latest_message, room_id)
        if latest is None:
            return None
        return await self.mark_message_as_read(latest["message_id"], user_id)

    async def list_read_receipts(self, message_id: str, user_id: str) -> list[ReadReceipt]:
        await self.get_message(message_id, user_id)
        rows = await self.store.run(db.list_read_receipts, message_id)
        return [ReadReceipt.from_row(r) for r in rows]

    async def unread_count(self, room_id: str, user_id: str) -> int:
        """Messages with a seq above the user's highest read seq."""
        await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        return await self.store.run(db.unread_count, room_id, user_id)

    # --- Listing ---

    async def get_room_messages(
        self, room_id: str, user_id: str, pagination: Pagination | None = None
    ) -> RoomMessages:
        """Check access and return a lazy iterable over the room's messages."""
        await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        return RoomMessages(
            self.store, room_id, pagination or Pagination(), self.settings.page_size
        )
