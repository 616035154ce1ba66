"""Pytest fixtures for testing with parley.

Usage in conftest.py:
    pytest_plugins = ["parley.testing"]

Or import specific helpers:
    from parley.testing import FakeClock, ListTransport, make_group_room

Available fixtures:
    - clock: FakeClock starting at a fixed instant
    - parley: Fresh in-memory Parley on the fake clock (fast KDF)
    - parley_local: File-backed Parley (uses tmp_path)
    - group_room: (parley, room) with alice as admin and bob as member
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, AsyncGenerator, Iterable

import pytest
import pytest_asyncio

from .crypto import bytes_to_base64url, generate_key
from .models import Room
from .service import Parley

if TYPE_CHECKING:
    from pathlib import Path

# Low enough to keep tests fast; never use outside tests
TEST_KDF_ITERATIONS = 1_000
TEST_TOKEN_SECRET = "parley-test-token-secret-0123456789abcdef"

EPOCH = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock, usable wherever parley takes a ``Clock``."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move forward by ``timedelta(**kwargs)`` and return the new time."""
        self.now += timedelta(**kwargs)
        return self.now


class ListTransport:
    """Transport that records every delivered event."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.closed = False
        self._changed = asyncio.Event()

    async def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)
        self._changed.set()

    async def close(self) -> None:
        self.closed = True
        self._changed.set()

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    async def wait_for(self, count: int, timeout: float = 1.0) -> list[dict[str, Any]]:
        """Wait until at least ``count`` events arrived (or the transport closed)."""

        async def _wait() -> None:
            while len(self.events) < count and not self.closed:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout)
        return self.events


def fixture_settings(**overrides: Any) -> dict[str, Any]:
    """Settings overrides used by the fixtures."""
    settings = {
        "kdf_iterations": TEST_KDF_ITERATIONS,
        "room_key_secret": bytes_to_base64url(generate_key()),
        "auth_token_secret": TEST_TOKEN_SECRET,
    }
    settings.update(overrides)
    return settings


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock shared by the ``parley`` fixture.

    Example:
        async def test_expiry(parley, clock):
            ...
            clock.advance(hours=200)
    """
    return FakeClock()


@pytest_asyncio.fixture
async def parley(clock: FakeClock) -> AsyncGenerator[Parley, None]:
    """Fresh in-memory Parley on the fake clock.

    Example:
        @pytest.mark.asyncio
        async def test_something(parley):
            room = await parley.rooms.create_room("ws-1", "alice", "group", "design")
            ...
    """
    instance = Parley.in_memory(clock=clock, **fixture_settings())
    yield instance
    await instance.aclose()


@pytest_asyncio.fixture
async def parley_local(tmp_path: "Path", clock: FakeClock) -> AsyncGenerator[Parley, None]:
    """File-backed Parley in tmp_path. Useful for persistence behavior."""
    from .config import Settings

    settings = Settings(db_path=str(tmp_path / "parley.db"), **fixture_settings())
    instance = Parley(settings, clock)
    yield instance
    await instance.aclose()


@pytest_asyncio.fixture
async def group_room(parley: Parley) -> AsyncGenerator[tuple[Parley, Room], None]:
    """Parley with a group room where alice is admin and bob an active member.

    Returns:
        Tuple of (parley, room)
    """
    room = await make_group_room(parley, "alice", ["bob"])
    yield parley, room


# --- Utility Functions ---


async def make_group_room(
    parley: Parley,
    admin_id: str,
    member_ids: Iterable[str] = (),
    *,
    workspace_id: str = "ws-1",
    name: str = "design",
) -> Room:
    """Create a group room and have every member accept their invitation.

    Utility function for custom fixtures.
    """
    room = await parley.rooms.create_room(workspace_id, admin_id, "group", name)
    member_ids = list(member_ids)
    if member_ids:
        result = await parley.participants.add_participants(room.room_id, admin_id, member_ids)
        for invitation in result.invited:
            await parley.participants.accept_room_invitation(
                invitation.invitation_id, invitation.invitee_id
            )
    return await parley.rooms.get_room(room.room_id, admin_id)


async def send_test_messages(
    parley: Parley,
    room_id: str,
    sender_id: str,
    count: int = 5,
) -> list:
    """Send ``count`` messages with distinct placeholder ciphertexts."""
    messages = []
    for i in range(count):
        message = await parley.messages.send_message(
            room_id, sender_id, f"ciphertext-{i + 1}".encode(), b"n" * 24
        )
        messages.append(message)
    return messages
