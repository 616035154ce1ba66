"""Room membership and invitations.

``ParticipantRegistry`` is the authority on who may act in a room. Other
components call ``require_active_participant`` / ``require_role`` before
mutating anything.

Invitation expiry is lazy: an accept after ``expires_at`` fails with
``InvitationExpired`` and leaves the invitation pending, unless
``Settings.expire_invitations_on_accept`` is set. ``sweep_expired_invitations``
marks every overdue invitation expired.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from . import db
from .config import Settings
from .db import Store
from .encryption import EncryptionService
from .errors import (
    Forbidden,
    InvalidKind,
    InvalidRole,
    InvitationAlreadyResolved,
    InvitationExpired,
    InvitationNotFound,
    NotParticipant,
    RoomArchived,
    RoomDeleted,
    RoomNotFound,
)
from .events import EventType, RealtimeBroadcaster, RoomEvent
from .locks import LockArena
from .models import (
    DIRECT_ADD_KINDS,
    DIRECT_ROOM_CAPACITY,
    AddParticipantsResult,
    Clock,
    EpochReason,
    Invitation,
    InvitationStatus,
    Participant,
    Role,
    Room,
    RoomKind,
    RoomStatus,
    to_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

MANAGER_ROLES = (Role.ADMIN, Role.MODERATOR)


class ParticipantRegistry:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        room_locks: LockArena,
        encryption: EncryptionService,
        broadcaster: RealtimeBroadcaster,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.room_locks = room_locks
        self.encryption = encryption
        self.broadcaster = broadcaster
        self.clock = clock

    def _now(self) -> str:
        return to_timestamp(self.clock())

    def _publish(self, type: EventType, room_id: str, payload: dict[str, Any], at: str) -> None:
        self.broadcaster.publish(RoomEvent(type=type, room_id=room_id, payload=payload, committed_at=at))

    # --- Authorization helpers ---

    async def load_room(self, room_id: str) -> Room:
        """Fetch a room that has not been deleted."""
        row = await self.store.run(db.get_room, room_id)
        if row is None:
            raise RoomNotFound()
        room = Room.from_row(row)
        if room.status == RoomStatus.DELETED:
            raise RoomDeleted()
        return room

    async def load_active_room(self, room_id: str) -> Room:
        """Fetch a room that accepts writes (not archived or deleted)."""
        room = await self.load_room(room_id)
        if room.status == RoomStatus.ARCHIVED:
            raise RoomArchived()
        return room

    async def get_participant(self, room_id: str, user_id: str) -> Participant | None:
        row = await self.store.run(db.get_participant, room_id, user_id)
        return Participant.from_row(row) if row else None

    async def require_active_participant(self, room_id: str, user_id: str) -> Participant:
        participant = await self.get_participant(room_id, user_id)
        if participant is None or not participant.is_active:
            raise NotParticipant()
        return participant

    async def require_role(self, room_id: str, user_id: str, *roles: str) -> Participant:
        participant = await self.require_active_participant(room_id, user_id)
        if participant.role not in roles:
            allowed = ", ".join(str(Role(r).value) for r in roles)
            raise Forbidden(f"Requires role: {allowed}")
        return participant

    async def _check_last_admin(self, room: Room, target: Participant) -> None:
        if room.status != RoomStatus.ACTIVE or target.role != Role.ADMIN:
            return
        if await self.store.run(db.count_active_admins, room.room_id) <= 1:
            raise Forbidden("A room must keep at least one active admin")

    # --- Membership ---

    async def add_participants(
        self, room_id: str, actor_id: str, user_ids: list[str]
    ) -> AddParticipantsResult:
        """Add users to a room, or invite them when the room kind requires it."""
        result = AddParticipantsResult()
        async with self.room_locks.hold(room_id):
            room = await self.load_active_room(room_id)
            await self.require_role(room_id, actor_id, *MANAGER_ROLES)
            now = self._now()
            if room.kind == RoomKind.DIRECT:
                await self._check_direct_capacity(room, user_ids, now)
            seen: set[str] = set()

            for user_id in user_ids:
                if user_id in seen:
                    result.skipped.append(user_id)
                    continue
                seen.add(user_id)

                existing = await self.get_participant(room_id, user_id)
                if existing is not None and existing.is_active:
                    result.skipped.append(user_id)
                    continue

                if room.kind in DIRECT_ADD_KINDS:
                    participant = await self._activate(room, user_id, Role.MEMBER, actor_id, now)
                    result.added.append(participant)
                    continue

                pending = await self.store.run(db.find_pending_invitation, room_id, user_id, now)
                if pending is not None:
                    result.skipped.append(user_id)
                    continue

                expires_at = to_timestamp(
                    self.clock() + timedelta(seconds=self.settings.invitation_ttl_seconds)
                )
                row = await self.store.run(
                    db.create_invitation, room_id, user_id, actor_id, now, expires_at
                )
                invitation = Invitation.from_row(row)
                result.invited.append(invitation)
                self._publish(EventType.PARTICIPANT_INVITED, room_id, invitation.public_dict(), now)

        logger.info(
            f"Room {room_id}: added={len(result.added)} invited={len(result.invited)} "
            f"skipped={len(result.skipped)} by {actor_id}"
        )
        return result

    async def _check_direct_capacity(self, room: Room, user_ids: list[str], now: str) -> None:
        members = set(await self.store.run(db.active_member_ids, room.room_id))
        members.update(await self.store.run(db.pending_invitee_ids, room.room_id, now))
        if len(members | set(user_ids)) > DIRECT_ROOM_CAPACITY:
            raise InvalidKind(f"Direct rooms hold at most {DIRECT_ROOM_CAPACITY} participants")

    async def _activate(
        self, room: Room, user_id: str, role: str, invited_by: str | None, now: str
    ) -> Participant:
        # Room writer section held by caller
        row = await self.store.run(db.activate_participant, room.room_id, user_id, role, invited_by, now)
        participant = Participant.from_row(row)
        await self.encryption.issue_grant(room.room_id, user_id, room.current_epoch, granted_by=invited_by)
        self._publish(EventType.PARTICIPANT_JOINED, room.room_id, participant.to_dict(), now)
        return participant

    async def join(self, room_id: str, user_id: str, role: str, invited_by: str | None = None) -> Participant:
        """Activate a participant directly. The caller holds the room's writer section."""
        room = await self.load_active_room(room_id)
        return await self._activate(room, user_id, role, invited_by, self._now())

    async def remove_participant(self, room_id: str, actor_id: str, target_id: str) -> Participant:
        """Remove a participant (admin, or the participant leaving).

        Rotates the room key to a new epoch granted only to remaining members
        and closes the removed user's live sessions.
        """
        async with self.room_locks.hold(room_id):
            room = await self.load_room(room_id)
            if actor_id == target_id:
                target = await self.require_active_participant(room_id, target_id)
            else:
                await self.require_role(room_id, actor_id, Role.ADMIN)
                target = await self.require_active_participant(room_id, target_id)
            await self._check_last_admin(room, target)

            now = self._now()
            row = await self.store.run(db.remove_participant, room_id, target_id, now)
            removed = Participant.from_row(row)
            remaining = await self.store.run(db.active_member_ids, room_id)
            epoch = await self.encryption.create_epoch(
                room_id, EpochReason.MEMBER_REMOVED, actor_id, remaining
            )
            closed = self.broadcaster.disconnect_user(room_id, target_id)

            self._publish(
                EventType.PARTICIPANT_REMOVED,
                room_id,
                {**removed.to_dict(), "removed_by": actor_id},
                now,
            )
            self._publish(
                EventType.KEY_ROTATED,
                room_id,
                {"epoch": epoch.epoch, "reason": epoch.reason},
                epoch.created_at,
            )

        logger.info(
            f"Removed {target_id} from room {room_id} by {actor_id}; "
            f"key epoch {epoch.epoch}, closed {closed} sessions"
        )
        return removed

    async def set_participant_role(
        self, room_id: str, actor_id: str, target_id: str, role: str
    ) -> Participant:
        try:
            role = Role(role)
        except ValueError:
            raise InvalidRole(f"Unknown role {role!r}") from None

        async with self.room_locks.hold(room_id):
            room = await self.load_room(room_id)
            await self.require_role(room_id, actor_id, Role.ADMIN)
            target = await self.require_active_participant(room_id, target_id)
            if target.role == role:
                return target
            if role != Role.ADMIN:
                await self._check_last_admin(room, target)

            row = await self.store.run(db.set_participant_role, room_id, target_id, role.value)
            participant = Participant.from_row(row)
            self._publish(
                EventType.PARTICIPANT_ROLE_CHANGED,
                room_id,
                {**participant.to_dict(), "previous_role": target.role, "changed_by": actor_id},
                self._now(),
            )
            return participant

    async def list_participants(self, room_id: str, user_id: str) -> list[Participant]:
        await self.load_room(room_id)
        await self.require_active_participant(room_id, user_id)
        rows = await self.store.run(db.list_participants, room_id)
        return [Participant.from_row(r) for r in rows]

    # --- Invitations ---

    async def _load_invitation(self, invitation_id: str) -> Invitation:
        row = await self.store.run(db.get_invitation, invitation_id)
        if row is None:
            raise InvitationNotFound()
        return Invitation.from_row(row)

    async def accept_room_invitation(self, invitation_id: str, user_id: str) -> Participant:
        """Accept an invitation exactly once and join the room as a member."""
        return await self._accept(await self._load_invitation(invitation_id), user_id)

    async def accept_room_invitation_by_token(self, token: str, user_id: str) -> Participant:
        """Accept the invitation behind an invite link token."""
        row = await self.store.run(db.get_invitation_by_token, token)
        if row is None:
            raise InvitationNotFound()
        return await self._accept(Invitation.from_row(row), user_id)

    async def _accept(self, invitation: Invitation, user_id: str) -> Participant:
        if invitation.invitee_id != user_id:
            raise Forbidden("Invitation belongs to another user")
        invitation_id = invitation.invitation_id

        async with self.room_locks.hold(invitation.room_id):
            invitation = await self._load_invitation(invitation_id)
            if invitation.status != InvitationStatus.PENDING:
                raise InvitationAlreadyResolved()

            now = self._now()
            if invitation.is_expired(now):
                if self.settings.expire_invitations_on_accept:
                    await self.store.run(
                        db.resolve_invitation, invitation_id, InvitationStatus.EXPIRED.value, now
                    )
                raise InvitationExpired()

            room = await self.load_active_room(invitation.room_id)
            row = await self.store.run(db.accept_invitation, invitation_id, Role.MEMBER.value, now)
            if row is None:
                raise InvitationAlreadyResolved()

            participant = Participant.from_row(row)
            await self.encryption.issue_grant(
                room.room_id, user_id, room.current_epoch, granted_by=invitation.inviter_id
            )
            self._publish(EventType.PARTICIPANT_JOINED, room.room_id, participant.to_dict(), now)

        logger.info(f"User {user_id} accepted invitation {invitation_id} to room {room.room_id}")
        return participant

    async def decline_room_invitation(self, invitation_id: str, user_id: str) -> Invitation:
        invitation = await self._load_invitation(invitation_id)
        if invitation.invitee_id != user_id:
            raise Forbidden("Invitation belongs to another user")
        return await self._resolve(invitation, InvitationStatus.DECLINED)

    async def revoke_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        """Revoke a pending invitation (its inviter, or a room admin or moderator)."""
        invitation = await self._load_invitation(invitation_id)
        if invitation.inviter_id != actor_id:
            await self.require_role(invitation.room_id, actor_id, *MANAGER_ROLES)
        return await self._resolve(invitation, InvitationStatus.REVOKED)

    async def _resolve(self, invitation: Invitation, status: InvitationStatus) -> Invitation:
        async with self.room_locks.hold(invitation.room_id):
            resolved = await self.store.run(
                db.resolve_invitation, invitation.invitation_id, status.value, self._now()
            )
            if not resolved:
                raise InvitationAlreadyResolved()
        return await self._load_invitation(invitation.invitation_id)

    async def list_pending_invitations(self, user_id: str) -> list[Invitation]:
        rows = await self.store.run(db.list_pending_invitations, user_id, self._now())
        return [Invitation.from_row(r) for r in rows]

    async def sweep_expired_invitations(self) -> int:
        """Mark every overdue pending invitation expired. Returns the count."""
        count = await self.store.run(db.expire_overdue_invitations, self._now())
        if count:
            logger.info(f"Expired {count} overdue invitations")
        return count
