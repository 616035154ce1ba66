"""Tests for room membership and invitations."""

import asyncio

import pytest

from parley.errors import (
    Forbidden,
    InvalidKind,
    InvalidRole,
    InvitationAlreadyResolved,
    InvitationExpired,
    InvitationNotFound,
    NotParticipant,
    RoomArchived,
)
from parley.service import Parley
from parley.testing import ListTransport, fixture_settings


async def invite(parley, room_id, user_id, actor_id="alice"):
    result = await parley.participants.add_participants(room_id, actor_id, [user_id])
    return result.invited[0]


class TestAddParticipants:
    @pytest.mark.asyncio
    async def test_group_rooms_invite(self, group_room):
        parley, room = group_room
        transport = ListTransport()
        await parley.connect(room.room_id, "bob", transport)

        result = await parley.participants.add_participants(room.room_id, "alice", ["carol"])

        assert result.added == []
        assert [i.invitee_id for i in result.invited] == ["carol"]
        invitation = result.invited[0]
        assert invitation.status == "pending"
        assert invitation.inviter_id == "alice"
        assert invitation.expires_at == "2025-01-08T12:00:00.000000+00:00"
        carol = await parley.participants.get_participant(room.room_id, "carol")
        assert carol is None
        events = await transport.wait_for(1)
        assert events[0]["type"] == "participant.invited"

    @pytest.mark.asyncio
    async def test_duplicates_and_members_are_skipped(self, group_room):
        parley, room = group_room

        first = await parley.participants.add_participants(
            room.room_id, "alice", ["carol", "carol", "bob"]
        )
        second = await parley.participants.add_participants(room.room_id, "alice", ["carol"])

        assert len(first.invited) == 1
        assert sorted(first.skipped) == ["bob", "carol"]
        assert second.invited == []
        assert second.skipped == ["carol"]

    @pytest.mark.asyncio
    async def test_members_cannot_invite(self, group_room):
        parley, room = group_room
        with pytest.raises(Forbidden):
            await parley.participants.add_participants(room.room_id, "bob", ["carol"])

    @pytest.mark.asyncio
    async def test_moderators_can_invite(self, group_room):
        parley, room = group_room
        await parley.participants.set_participant_role(room.room_id, "alice", "bob", "moderator")

        result = await parley.participants.add_participants(room.room_id, "bob", ["carol"])

        assert result.invited[0].inviter_id == "bob"

    @pytest.mark.asyncio
    async def test_general_room_adds_directly(self, parley):
        room = await parley.rooms.ensure_workspace_general_room("ws-1", "alice")

        result = await parley.participants.add_participants(room.room_id, "alice", ["bob"])

        assert [p.user_id for p in result.added] == ["bob"]
        assert result.added[0].role == "member"
        assert result.invited == []

    @pytest.mark.asyncio
    async def test_direct_room_rejects_a_third_participant(self, parley):
        room = await parley.rooms.create_room("ws-1", "alice", "direct", "dm", member_ids=["bob"])

        with pytest.raises(InvalidKind):
            await parley.participants.add_participants(room.room_id, "alice", ["carol"])

        assert await parley.participants.get_participant(room.room_id, "carol") is None
        assert await parley.participants.list_pending_invitations("carol") == []

    @pytest.mark.asyncio
    async def test_direct_room_invites_back_its_counterpart(self, parley):
        room = await parley.rooms.create_room("ws-1", "alice", "direct", "dm", member_ids=["bob"])
        await parley.participants.remove_participant(room.room_id, "bob", "bob")

        result = await parley.participants.add_participants(room.room_id, "alice", ["bob"])

        assert result.added == []
        assert [i.invitee_id for i in result.invited] == ["bob"]
        with pytest.raises(InvalidKind):
            await parley.participants.add_participants(room.room_id, "alice", ["carol"])

    @pytest.mark.asyncio
    async def test_archived_room_rejects_additions(self, group_room):
        parley, room = group_room
        await parley.rooms.archive_room(room.room_id, "alice")
        with pytest.raises(RoomArchived):
            await parley.participants.add_participants(room.room_id, "alice", ["carol"])


class TestInvitations:
    @pytest.mark.asyncio
    async def test_accept_joins_as_member(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        participant = await parley.participants.accept_room_invitation(
            invitation.invitation_id, "carol"
        )

        assert participant.status == "active"
        assert participant.role == "member"
        assert participant.invited_by == "alice"
        assert await parley.participants.list_pending_invitations("carol") == []

    @pytest.mark.asyncio
    async def test_only_invitee_can_accept(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")
        with pytest.raises(Forbidden):
            await parley.participants.accept_room_invitation(invitation.invitation_id, "bob")

    @pytest.mark.asyncio
    async def test_unknown_invitation(self, parley):
        with pytest.raises(InvitationNotFound):
            await parley.participants.accept_room_invitation("missing", "carol")

    @pytest.mark.asyncio
    async def test_accept_by_token(self, group_room):
        parley, room = group_room
        transport = ListTransport()
        await parley.connect(room.room_id, "bob", transport)
        invitation = await invite(parley, room.room_id, "carol")

        participant = await parley.participants.accept_room_invitation_by_token(
            invitation.token, "carol"
        )

        assert participant.user_id == "carol"
        assert participant.is_active
        assert await parley.participants.list_pending_invitations("carol") == []
        events = await transport.wait_for(2)
        assert [e["type"] for e in events] == ["participant.invited", "participant.joined"]
        assert "token" not in events[0]["payload"]

    @pytest.mark.asyncio
    async def test_token_checks_match_id_accept(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        with pytest.raises(InvitationNotFound):
            await parley.participants.accept_room_invitation_by_token("guess", "carol")
        with pytest.raises(Forbidden):
            await parley.participants.accept_room_invitation_by_token(invitation.token, "bob")

        results = await asyncio.gather(
            parley.participants.accept_room_invitation_by_token(invitation.token, "carol"),
            parley.participants.accept_room_invitation(invitation.invitation_id, "carol"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, InvitationAlreadyResolved) for r in results) == 1

    @pytest.mark.asyncio
    async def test_concurrent_accepts_succeed_once(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        results = await asyncio.gather(
            parley.participants.accept_room_invitation(invitation.invitation_id, "carol"),
            parley.participants.accept_room_invitation(invitation.invitation_id, "carol"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        joined = [r for r in results if not isinstance(r, Exception)]
        assert len(joined) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvitationAlreadyResolved)

    @pytest.mark.asyncio
    async def test_expired_accept_leaves_invitation_pending(self, group_room, clock):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        clock.advance(hours=168, seconds=1)

        with pytest.raises(InvitationExpired):
            await parley.participants.accept_room_invitation(invitation.invitation_id, "carol")
        row = await parley.participants._load_invitation(invitation.invitation_id)
        assert row.status == "pending"
        assert await parley.participants.list_pending_invitations("carol") == []

        assert await parley.participants.sweep_expired_invitations() == 1
        row = await parley.participants._load_invitation(invitation.invitation_id)
        assert row.status == "expired"
        with pytest.raises(InvitationAlreadyResolved):
            await parley.participants.accept_room_invitation(invitation.invitation_id, "carol")

    @pytest.mark.asyncio
    async def test_accept_at_last_moment(self, group_room, clock):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        clock.advance(hours=168, seconds=-1)

        participant = await parley.participants.accept_room_invitation(
            invitation.invitation_id, "carol"
        )
        assert participant.is_active

    @pytest.mark.asyncio
    async def test_expire_on_accept(self, clock):
        async with Parley.in_memory(
            clock=clock, **fixture_settings(expire_invitations_on_accept=True)
        ) as parley:
            room = await parley.rooms.create_room("ws-1", "alice", "group", "design")
            invitation = await invite(parley, room.room_id, "carol")
            clock.advance(hours=169)

            with pytest.raises(InvitationExpired):
                await parley.participants.accept_room_invitation(invitation.invitation_id, "carol")

            row = await parley.participants._load_invitation(invitation.invitation_id)
            assert row.status == "expired"
            assert await parley.participants.sweep_expired_invitations() == 0

    @pytest.mark.asyncio
    async def test_decline(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        declined = await parley.participants.decline_room_invitation(
            invitation.invitation_id, "carol"
        )

        assert declined.status == "declined"
        assert declined.resolved_at is not None
        with pytest.raises(InvitationAlreadyResolved):
            await parley.participants.accept_room_invitation(invitation.invitation_id, "carol")
        # A declined invitation does not block a new one
        again = await invite(parley, room.room_id, "carol")
        assert again.invitation_id != invitation.invitation_id

    @pytest.mark.asyncio
    async def test_revoke(self, group_room):
        parley, room = group_room
        invitation = await invite(parley, room.room_id, "carol")

        with pytest.raises(Forbidden):
            await parley.participants.revoke_invitation(invitation.invitation_id, "bob")
        revoked = await parley.participants.revoke_invitation(invitation.invitation_id, "alice")

        assert revoked.status == "revoked"
        with pytest.raises(InvitationAlreadyResolved):
            await parley.participants.revoke_invitation(invitation.invitation_id, "alice")

    @pytest.mark.asyncio
    async def test_list_pending_invitations(self, parley):
        one = await parley.rooms.create_room("ws-1", "alice", "group", "one")
        two = await parley.rooms.create_room("ws-1", "bob", "group", "two")
        await invite(parley, one.room_id, "carol", "alice")
        await invite(parley, two.room_id, "carol", "bob")
        await parley.rooms.archive_room(two.room_id, "bob")

        pending = await parley.participants.list_pending_invitations("carol")

        assert [i.room_id for i in pending] == [one.room_id]


class TestRemoval:
    @pytest.mark.asyncio
    async def test_admin_removes_member(self, group_room):
        parley, room = group_room

        removed = await parley.participants.remove_participant(room.room_id, "alice", "bob")

        assert removed.status == "removed"
        assert removed.removed_at is not None
        with pytest.raises(NotParticipant):
            await parley.rooms.get_room(room.room_id, "bob")

    @pytest.mark.asyncio
    async def test_member_cannot_remove_others(self, group_room):
        parley, room = group_room
        with pytest.raises(Forbidden):
            await parley.participants.remove_participant(room.room_id, "bob", "alice")

    @pytest.mark.asyncio
    async def test_self_leave(self, group_room):
        parley, room = group_room
        removed = await parley.participants.remove_participant(room.room_id, "bob", "bob")
        assert removed.user_id == "bob"

    @pytest.mark.asyncio
    async def test_last_admin_cannot_leave(self, group_room):
        parley, room = group_room
        with pytest.raises(Forbidden, match="admin"):
            await parley.participants.remove_participant(room.room_id, "alice", "alice")

    @pytest.mark.asyncio
    async def test_removal_closes_sessions_of_removed_user(self, group_room):
        parley, room = group_room
        bob = ListTransport()
        alice = ListTransport()
        await parley.connect(room.room_id, "bob", bob)
        await parley.connect(room.room_id, "alice", alice)

        await parley.participants.remove_participant(room.room_id, "alice", "bob")

        await bob.wait_for(1)
        assert bob.closed
        assert "participant.removed" not in bob.types()
        await alice.wait_for(2)
        assert alice.types() == ["participant.removed", "key.rotated"]
        assert alice.events[0]["payload"]["removed_by"] == "alice"

    @pytest.mark.asyncio
    async def test_removed_user_can_be_invited_back(self, group_room):
        parley, room = group_room
        await parley.participants.remove_participant(room.room_id, "alice", "bob")

        invitation = await invite(parley, room.room_id, "bob")
        participant = await parley.participants.accept_room_invitation(
            invitation.invitation_id, "bob"
        )

        assert participant.is_active
        assert participant.removed_at is None


class TestRoles:
    @pytest.mark.asyncio
    async def test_change_role(self, group_room):
        parley, room = group_room
        transport = ListTransport()
        await parley.connect(room.room_id, "bob", transport)

        participant = await parley.participants.set_participant_role(
            room.room_id, "alice", "bob", "moderator"
        )

        assert participant.role == "moderator"
        events = await transport.wait_for(1)
        assert events[0]["type"] == "participant.role_changed"
        assert events[0]["payload"]["previous_role"] == "member"

    @pytest.mark.asyncio
    async def test_unknown_role(self, group_room):
        parley, room = group_room
        with pytest.raises(InvalidRole):
            await parley.participants.set_participant_role(room.room_id, "alice", "bob", "owner")

    @pytest.mark.asyncio
    async def test_only_admins_change_roles(self, group_room):
        parley, room = group_room
        with pytest.raises(Forbidden):
            await parley.participants.set_participant_role(room.room_id, "bob", "bob", "admin")

    @pytest.mark.asyncio
    async def test_cannot_demote_last_admin(self, group_room):
        parley, room = group_room
        with pytest.raises(Forbidden):
            await parley.participants.set_participant_role(room.room_id, "alice", "alice", "member")

        await parley.participants.set_participant_role(room.room_id, "alice", "bob", "admin")
        demoted = await parley.participants.set_participant_role(
            room.room_id, "bob", "alice", "member"
        )
        assert demoted.role == "member"

    @pytest.mark.asyncio
    async def test_list_participants(self, group_room):
        parley, room = group_room
        participants = await parley.participants.list_participants(room.room_id, "bob")
        assert {(p.user_id, p.role) for p in participants} == {("alice", "admin"), ("bob", "member")}
        with pytest.raises(NotParticipant):
            await parley.participants.list_participants(room.room_id, "mallory")
