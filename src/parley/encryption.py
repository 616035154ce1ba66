"""Per-user key bundles and per-room key epochs.

Each user has at most one bundle: an X25519 public key stored in the clear
and the private key encrypted under a passphrase-derived key. The server
never sees the passphrase after ``initialize_user_encryption`` returns.

Each room has a sequence of key epochs. Every epoch has a fresh 32-byte room
key, sealed at rest under the server key-encryption key. Active participants
receive the key of an epoch as a grant wrapped under their public key. A new
epoch starts when a participant is removed (or an admin rotates manually), so
removed users never receive keys for later messages. Joiners receive only the
current epoch unless an admin re-wraps history for them.

Participants without a bundle are skipped when grants are issued; their grants
are issued when they initialize encryption.
"""

from __future__ import annotations

import asyncio
import logging

from . import audit, db
from .config import Settings
from .crypto import (
    compute_membership_hash,
    generate_keypair,
    generate_room_key,
    open_room_key,
    protect_private_key,
    seal_room_key,
    wrap_room_key,
)
from .db import Store
from .errors import EncryptionNotInitialized, Forbidden, NotParticipant, RoomDeleted, RoomNotFound
from .events import EventType, RealtimeBroadcaster, RoomEvent
from .locks import LockArena
from .models import (
    Clock,
    EpochReason,
    KeyBundle,
    Role,
    Room,
    RoomEpoch,
    RoomKeyGrant,
    RoomStatus,
    to_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)


class EncryptionService:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        room_locks: LockArena,
        user_locks: LockArena,
        broadcaster: RealtimeBroadcaster | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.room_locks = room_locks
        self.user_locks = user_locks
        self.broadcaster = broadcaster
        self.clock = clock
        self._kek = settings.room_key_encryption_key()

    def _now(self) -> str:
        return to_timestamp(self.clock())

    # --- Bundles ---

    async def initialize_user_encryption(self, user_id: str, passphrase: str) -> KeyBundle:
        """Create the user's key bundle, or return the existing one unchanged.

        Also issues any room key grants that were deferred because the user
        had no bundle when they joined.
        """
        async with self.user_locks.hold(user_id):
            existing = await self.get_bundle(user_id)
            if existing is not None:
                return existing

            keypair = generate_keypair()
            loop = asyncio.get_running_loop()
            # PBKDF2 is CPU-bound; run it off the event loop
            protected = await loop.run_in_executor(
                None,
                protect_private_key,
                keypair.private_key,
                passphrase,
                user_id,
                self.settings.kdf_iterations,
            )
            row, created = await self.store.run(
                db.insert_key_bundle,
                user_id,
                keypair.public_key,
                protected.ciphertext,
                protected.kdf,
                protected.salt,
                protected.iterations,
                protected.nonce,
                self._now(),
            )
            bundle = KeyBundle.from_row(row)
            if created:
                logger.info(f"Initialized encryption for user {user_id}")
                await self._issue_deferred_grants(bundle)
            return bundle

    async def get_bundle(self, user_id: str) -> KeyBundle | None:
        row = await self.store.run(db.get_key_bundle, user_id)
        return KeyBundle.from_row(row) if row else None

    async def require_bundle(self, user_id: str) -> KeyBundle:
        bundle = await self.get_bundle(user_id)
        if bundle is None:
            raise EncryptionNotInitialized(f"User {user_id} has not initialized encryption")
        return bundle

    async def _issue_deferred_grants(self, bundle: KeyBundle) -> None:
        # User lock is held; room locks may be taken after it
        room_ids = await self.store.run(db.rooms_missing_current_grant, bundle.user_id)
        for room_id in room_ids:
            async with self.room_locks.hold(room_id):
                participant = await self.store.run(db.get_participant, room_id, bundle.user_id)
                room_row = await self.store.run(db.get_room, room_id)
                if not participant or participant["status"] != "active" or room_row is None:
                    continue
                room = Room.from_row(room_row)
                if room.status == RoomStatus.DELETED:
                    continue
                await self._grant_with_bundle(room_id, bundle, room.current_epoch, granted_by=None)
        if room_ids:
            logger.info(f"Issued {len(room_ids)} deferred room key grants to {bundle.user_id}")

    # --- Epochs ---

    def seal_new_room_key(self, room_id: str, epoch: int) -> bytes:
        """Generate a room key for ``epoch`` and return it sealed for storage."""
        return seal_room_key(generate_room_key(), self._kek, room_id, epoch)

    async def _room_key(self, room_id: str, epoch: int) -> bytes:
        row = await self.store.run(db.get_epoch, room_id, epoch)
        if row is None:
            raise RoomNotFound(f"Room {room_id} has no key epoch {epoch}")
        return open_room_key(row["sealed_key"], self._kek, room_id, epoch)

    async def create_epoch(
        self,
        room_id: str,
        reason: str,
        triggered_by: str | None,
        member_ids: list[str],
    ) -> RoomEpoch:
        """Start a new key epoch and grant it to ``member_ids``.

        The caller holds the room's writer section.
        """
        room = await self._load_room(room_id)
        epoch = room.current_epoch + 1
        row = await self.store.run(
            db.insert_epoch,
            room_id,
            epoch,
            self.seal_new_room_key(room_id, epoch),
            EpochReason(reason).value,
            triggered_by,
            compute_membership_hash(member_ids),
            self._now(),
        )
        for user_id in member_ids:
            await self.issue_grant(room_id, user_id, epoch, granted_by=triggered_by)
        logger.info(f"Room {room_id} rotated to key epoch {epoch} ({reason})")
        return RoomEpoch.from_row(row)

    async def rotate_room_key(self, room_id: str, actor_id: str) -> RoomEpoch:
        """Manually start a new epoch (admin only)."""
        async with self.room_locks.hold(room_id):
            room = await self._load_room(room_id)
            await self._require_admin(room_id, actor_id)
            members = await self.store.run(db.active_member_ids, room_id)
            epoch = await self.create_epoch(room_id, EpochReason.MANUAL, actor_id, members)
            self._publish_rotation(room, epoch)
            return epoch

    def _publish_rotation(self, room: Room, epoch: RoomEpoch) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(
            RoomEvent(
                type=EventType.KEY_ROTATED,
                room_id=room.room_id,
                payload={"epoch": epoch.epoch, "reason": epoch.reason},
                committed_at=epoch.created_at,
            )
        )

    async def list_epochs(self, room_id: str) -> list[RoomEpoch]:
        rows = await self.store.run(db.list_epochs, room_id)
        return [RoomEpoch.from_row(r) for r in rows]

    # --- Grants ---

    async def issue_grant(
        self,
        room_id: str,
        user_id: str,
        epoch: int,
        granted_by: str | None = None,
    ) -> RoomKeyGrant | None:
        """Grant ``epoch`` to a user if they have a bundle.

        The caller holds the room's writer section. Returns None when the
        grant is deferred because the user has not initialized encryption.
        """
        bundle = await self.get_bundle(user_id)
        if bundle is None:
            logger.debug(f"Deferring key grant for {user_id} in room {room_id}")
            return None
        return await self._grant_with_bundle(room_id, bundle, epoch, granted_by)

    async def _grant_with_bundle(
        self,
        room_id: str,
        bundle: KeyBundle,
        epoch: int,
        granted_by: str | None,
    ) -> RoomKeyGrant:
        existing = await self.store.run(db.get_grant, room_id, bundle.user_id, epoch)
        if existing is not None:
            return RoomKeyGrant.from_row(existing)
        room_key = await self._room_key(room_id, epoch)
        algorithm = self.settings.wrap_algorithm
        wrapped = wrap_room_key(room_key, bundle.public_key, room_id, epoch, algorithm)
        row, _ = await self.store.run(
            db.insert_grant,
            room_id,
            bundle.user_id,
            epoch,
            algorithm,
            wrapped,
            granted_by,
            self._now(),
        )
        return RoomKeyGrant.from_row(row)

    async def grant_room_key(
        self, room_id: str, user_id: str, *, granted_by: str | None = None
    ) -> RoomKeyGrant:
        """Grant the current epoch key to an active participant.

        Idempotent per (room, user, epoch).

        Raises:
            EncryptionNotInitialized: If the user has no key bundle
        """
        bundle = await self.require_bundle(user_id)
        async with self.room_locks.hold(room_id):
            room = await self._load_room(room_id)
            await self._require_active(room_id, user_id)
            return await self._grant_with_bundle(room_id, bundle, room.current_epoch, granted_by)

    async def rewrap_history(self, room_id: str, actor_id: str, user_id: str) -> list[RoomKeyGrant]:
        """Grant every epoch of a room to an active participant (admin only)."""
        bundle = await self.require_bundle(user_id)
        async with self.room_locks.hold(room_id):
            await self._load_room(room_id)
            await self._require_admin(room_id, actor_id)
            await self._require_active(room_id, user_id)
            grants = []
            for epoch in await self.list_epochs(room_id):
                grants.append(
                    await self._grant_with_bundle(room_id, bundle, epoch.epoch, granted_by=actor_id)
                )
            await audit.record(
                self.store,
                room_id,
                actor_id,
                audit.HISTORY_REWRAPPED,
                self._now(),
                user_id=user_id,
                epochs=[g.epoch for g in grants],
            )
            return grants

    async def list_grants(self, room_id: str, user_id: str) -> list[RoomKeyGrant]:
        """A user's own grants for a room, including those from before removal."""
        participant = await self.store.run(db.get_participant, room_id, user_id)
        if participant is None:
            raise NotParticipant()
        rows = await self.store.run(db.list_grants, room_id, user_id)
        return [RoomKeyGrant.from_row(r) for r in rows]

    # --- Helpers ---

    async def _load_room(self, room_id: str) -> Room:
        row = await self.store.run(db.get_room, room_id)
        if row is None:
            raise RoomNotFound()
        room = Room.from_row(row)
        if room.status == RoomStatus.DELETED:
            raise RoomDeleted()
        return room

    async def _require_active(self, room_id: str, user_id: str) -> None:
        participant = await self.store.run(db.get_participant, room_id, user_id)
        if participant is None or participant["status"] != "active":
            raise NotParticipant()

    async def _require_admin(self, room_id: str, actor_id: str) -> None:
        participant = await self.store.run(db.get_participant, room_id, actor_id)
        if participant is None or participant["status"] != "active":
            raise NotParticipant()
        if participant["role"] != Role.ADMIN:
            raise Forbidden("Only room admins can manage room keys")
