"""Live fan-out of committed room events to connected sessions.

Architecture:
    - RealtimeBroadcaster maps room id -> connected sessions
    - Each session owns a bounded asyncio.Queue and a writer task that
      delivers queued events to its Transport in enqueue order
    - publish() never awaits delivery: it enqueues with put_nowait. Callers
      publish while holding the room's writer section, so every session of a
      room sees that room's events in commit order
    - Delivery is at-most-once per connection. A full queue drops the event
      for that session; a transport failure closes the session. There is no
      replay buffer: clients reconcile by listing messages from their last
      known seq

Event payloads are JSON-ready dicts (bytes already base64url-encoded).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from .metrics import Metrics
from .models import new_id

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    MESSAGE_SENT = "message.sent"
    MESSAGE_EDITED = "message.edited"
    MESSAGE_DELETED = "message.deleted"
    REACTION_ADDED = "reaction.added"
    REACTION_REMOVED = "reaction.removed"
    MESSAGE_READ = "message.read"
    PARTICIPANT_JOINED = "participant.joined"
    PARTICIPANT_INVITED = "participant.invited"
    PARTICIPANT_REMOVED = "participant.removed"
    PARTICIPANT_ROLE_CHANGED = "participant.role_changed"
    ROOM_UPDATED = "room.updated"
    ROOM_ARCHIVED = "room.archived"
    ROOM_DELETED = "room.deleted"
    MESSAGES_TOMBSTONED = "messages.tombstoned"
    CONVERSATION_DELETED = "conversation.deleted"
    KEY_ROTATED = "key.rotated"
    # Ephemeral, never persisted
    TYPING = "typing"


@dataclass
class RoomEvent:
    """A committed change to one room."""

    type: str
    room_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int | None = None
    committed_at: str | None = None
    event_id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": str(EventType(self.type).value),
            "room_id": self.room_id,
            "seq": self.seq,
            "committed_at": self.committed_at,
            "payload": self.payload,
        }


class Transport(Protocol):
    """Where a session's events go (a websocket, an SSE response, a test list)."""

    async def send(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


_CLOSE = object()


class QueueTransport:
    """Transport backed by a queue, consumed with ``async for``.

    Used by the SSE endpoint. A consumer that falls ``maxsize`` events behind
    makes ``send`` fail, which closes the session.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def send(self, event: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("transport closed")
        self._queue.put_nowait(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # Consumer is gone or far behind; pending events are dropped
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSE)

    def __aiter__(self) -> "QueueTransport":
        return self

    async def __anext__(self) -> dict[str, Any]:
        event = await self._queue.get()
        if event is _CLOSE:
            raise StopAsyncIteration
        return event


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    room_id: str
    user_id: str


class _Session:
    def __init__(self, handle: SessionHandle, transport: Transport, queue_size: int) -> None:
        self.handle = handle
        self.transport = transport
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: asyncio.Task | None = None


class RealtimeBroadcaster:
    """Fan-out of room events to connected sessions."""

    def __init__(self, metrics: Metrics | None = None, queue_size: int = 256) -> None:
        self.metrics = metrics or Metrics()
        self.queue_size = queue_size
        self._rooms: dict[str, dict[str, _Session]] = {}

    def connect(self, room_id: str, user_id: str, transport: Transport) -> SessionHandle:
        """Register a session and start its writer task.

        Callers check that the user is an active participant first.
        """
        handle = SessionHandle(session_id=new_id(), room_id=room_id, user_id=user_id)
        session = _Session(handle, transport, self.queue_size)
        session.task = asyncio.create_task(
            self._writer(session), name=f"parley-session-{handle.session_id}"
        )
        self._rooms.setdefault(room_id, {})[handle.session_id] = session
        logger.debug(f"Session {handle.session_id} connected: user={user_id} room={room_id}")
        return handle

    def disconnect(self, handle: SessionHandle) -> bool:
        """Close a session. Returns False if it was already gone."""
        sessions = self._rooms.get(handle.room_id)
        if not sessions or handle.session_id not in sessions:
            return False
        session = sessions.pop(handle.session_id)
        if not sessions:
            del self._rooms[handle.room_id]
        self._stop(session)
        logger.debug(f"Session {handle.session_id} disconnected")
        return True

    def disconnect_user(self, room_id: str, user_id: str) -> int:
        """Close every session a user holds in a room. Returns how many were closed."""
        handles = [h for h in self.sessions(room_id) if h.user_id == user_id]
        for handle in handles:
            self.disconnect(handle)
        return len(handles)

    def sessions(self, room_id: str) -> list[SessionHandle]:
        return [s.handle for s in self._rooms.get(room_id, {}).values()]

    def publish(self, event: RoomEvent) -> int:
        """Enqueue an event for every session in its room, without waiting.

        Returns:
            Number of sessions the event was queued for.
        """
        data = event.to_dict()
        queued = 0
        # Snapshot: writer tasks may remove sessions while we iterate
        for session in list(self._rooms.get(event.room_id, {}).values()):
            try:
                session.queue.put_nowait(data)
                queued += 1
            except asyncio.QueueFull:
                self.metrics.record_drop(data["type"])
                logger.warning(
                    f"Dropped {data['type']} for slow session {session.handle.session_id}"
                )
        return queued

    async def stream(self, room_id: str, user_id: str) -> AsyncIterator[dict[str, Any]]:
        """Connect a queue-backed session and yield its events until it closes."""
        transport = QueueTransport(maxsize=self.queue_size)
        handle = self.connect(room_id, user_id, transport)
        try:
            async for event in transport:
                yield event
        finally:
            self.disconnect(handle)

    async def aclose(self) -> None:
        """Close every session and wait for writer tasks to finish."""
        tasks = []
        for room_id in list(self._rooms):
            for handle in self.sessions(room_id):
                session = self._rooms[room_id][handle.session_id]
                if session.task is not None:
                    tasks.append(session.task)
                self.disconnect(handle)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _stop(self, session: _Session) -> None:
        try:
            session.queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            if session.task is not None:
                session.task.cancel()

    async def _writer(self, session: _Session) -> None:
        handle = session.handle
        try:
            while True:
                event = await session.queue.get()
                if event is _CLOSE:
                    break
                try:
                    await session.transport.send(event)
                except Exception as e:
                    self.metrics.record_drop(event["type"])
                    logger.info(f"Transport failed for session {handle.session_id}, closing: {e}")
                    self.disconnect(handle)
                    break
                self.metrics.record_delivery(event["type"])
        finally:
            try:
                await session.transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport for session {handle.session_id}: {e}")
