"""The Parley facade: builds and owns every component.

    parley = Parley.in_memory()
    room = await parley.rooms.create_room("ws-1", "alice", "group", "design")
    ...
    await parley.aclose()

Nothing in parley is a process-wide singleton; tests and the HTTP app each
build their own ``Parley``.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from .config import Settings
from .db import Store
from .encryption import EncryptionService
from .events import EventType, RealtimeBroadcaster, RoomEvent, SessionHandle, Transport
from .jobs import JobManager
from .locks import LockArena
from .messages import MessageStore
from .metrics import Metrics
from .models import Clock, to_timestamp, utcnow
from .participants import ParticipantRegistry
from .rooms import RoomManager

logger = logging.getLogger(__name__)


class Parley:
    def __init__(self, settings: Settings | None = None, clock: Clock = utcnow) -> None:
        self.settings = settings or Settings()
        self.clock = clock
        self.metrics = Metrics()
        self.store = Store(
            self.settings.db_path,
            retry_attempts=self.settings.store_retry_attempts,
            retry_backoff=self.settings.store_retry_backoff,
            metrics=self.metrics,
        )
        self.room_locks = LockArena("room")
        self.workspace_locks = LockArena("workspace")
        self.user_locks = LockArena("user")

        self.broadcaster = RealtimeBroadcaster(self.metrics, queue_size=self.settings.session_queue_size)
        self.jobs = JobManager(clock)
        self.encryption = EncryptionService(
            self.store, self.settings, self.room_locks, self.user_locks, self.broadcaster, clock
        )
        self.participants = ParticipantRegistry(
            self.store, self.settings, self.room_locks, self.encryption, self.broadcaster, clock
        )
        self.messages = MessageStore(
            self.store, self.settings, self.room_locks, self.participants, self.broadcaster, clock
        )
        self.rooms = RoomManager(
            self.store,
            self.settings,
            self.room_locks,
            self.workspace_locks,
            self.participants,
            self.encryption,
            self.broadcaster,
            self.jobs,
            clock,
        )
        logger.info(f"Parley ready (db={self.settings.db_path})")

    @classmethod
    def open(cls, settings: Settings | None = None, clock: Clock = utcnow) -> "Parley":
        """Build from explicit settings, or from the environment when omitted."""
        return cls(settings or Settings.from_env(), clock)

    @classmethod
    def in_memory(cls, clock: Clock = utcnow, **overrides: Any) -> "Parley":
        """Build on an in-memory database (tests, local experiments)."""
        return cls(Settings(db_path=":memory:", **overrides), clock)

    async def aclose(self) -> None:
        await self.jobs.aclose()
        await self.broadcaster.aclose()
        await self.store.aclose()

    async def __aenter__(self) -> "Parley":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # --- Live sessions ---

    async def connect(self, room_id: str, user_id: str, transport: Transport) -> SessionHandle:
        """Attach a transport to a room for an active participant."""
        await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        return self.broadcaster.connect(room_id, user_id, transport)

    async def stream(self, room_id: str, user_id: str) -> AsyncIterator[dict[str, Any]]:
        """Check access, then yield the room's events as they are committed."""
        await self.participants.load_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        async for event in self.broadcaster.stream(room_id, user_id):
            yield event

    async def notify_typing(self, room_id: str, user_id: str, is_typing: bool = True) -> None:
        """Publish an ephemeral typing indicator. Nothing is stored."""
        await self.participants.load_active_room(room_id)
        await self.participants.require_active_participant(room_id, user_id)
        self.broadcaster.publish(
            RoomEvent(
                type=EventType.TYPING,
                room_id=room_id,
                payload={"user_id": user_id, "is_typing": is_typing},
                committed_at=to_timestamp(self.clock()),
            )
        )
