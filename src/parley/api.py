"""FastAPI application for parley.

    app = create_app()                      # settings from PARLEY_* env
    uvicorn.run("parley.api:create_app", factory=True)

Bytes (ciphertext, nonce, keys) travel as base64url strings. Every
``ParleyError`` becomes a JSON error with the error's HTTP status.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from ._version import __version__
from .auth import Caller, CallerResolver, get_auth_method_name, resolver_from_settings
from .config import Settings
from .crypto import base64url_to_bytes
from .errors import JobNotFound, ParleyError
from .models import Pagination
from .service import Parley

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 1000


# --- Request Models ---


class InitEncryptionRequest(BaseModel):
    passphrase: str = Field(min_length=1)


class CreateRoomRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    kind: str
    name: str = Field(min_length=1, max_length=200)
    member_ids: list[str] = []
    description: str | None = None


class UpdateRoomRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None


class AddParticipantsRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1)


class SetRoleRequest(BaseModel):
    role: str


class AcceptInvitationTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class RewrapRequest(BaseModel):
    user_id: str


class EncryptedPayload(BaseModel):
    """Ciphertext and nonce as base64url strings."""

    ciphertext: bytes
    nonce: bytes
    key_epoch: int | None = None

    @field_validator("ciphertext", "nonce", mode="before")
    @classmethod
    def decode_base64url(cls, value: Any) -> bytes:
        if not isinstance(value, str):
            raise ValueError("must be a base64url string")
        try:
            decoded = base64url_to_bytes(value)
        except ValueError as e:
            raise ValueError(f"not valid base64url: {e}") from e
        if not decoded:
            raise ValueError("must not be empty")
        return decoded


class SendMessageRequest(EncryptedPayload):
    reply_to: str | None = None
    client_token: str | None = Field(default=None, max_length=200)


class EditMessageRequest(EncryptedPayload):
    pass


class ReactionRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=64)


class TypingRequest(BaseModel):
    is_typing: bool = True


# --- Dependencies ---


def get_parley(request: Request) -> Parley:
    return request.app.state.parley


def get_caller(request: Request) -> Caller:
    resolver: CallerResolver = request.app.state.resolver
    return resolver.resolve(request.headers)


ParleyDep = Annotated[Parley, Depends(get_parley)]
CallerDep = Annotated[Caller, Depends(get_caller)]

router = APIRouter()


# --- Health / Metrics ---


@router.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@router.get("/metrics")
def get_metrics(parley: ParleyDep, caller: CallerDep):
    """Get application metrics."""
    return parley.metrics.to_dict()


# --- Encryption ---


@router.post("/encryption/init")
async def init_encryption(body: InitEncryptionRequest, parley: ParleyDep, caller: CallerDep):
    """Create the caller's key bundle (idempotent)."""
    bundle = await parley.encryption.initialize_user_encryption(caller.user_id, body.passphrase)
    return bundle.to_dict()


@router.get("/encryption/bundle")
async def get_bundle(parley: ParleyDep, caller: CallerDep):
    bundle = await parley.encryption.require_bundle(caller.user_id)
    return bundle.to_dict()


@router.get("/rooms/{room_id}/keys")
async def list_grants(room_id: str, parley: ParleyDep, caller: CallerDep):
    grants = await parley.encryption.list_grants(room_id, caller.user_id)
    return {"grants": [g.to_dict() for g in grants]}


@router.post("/rooms/{room_id}/keys/rotate")
async def rotate_key(room_id: str, parley: ParleyDep, caller: CallerDep):
    epoch = await parley.encryption.rotate_room_key(room_id, caller.user_id)
    return epoch.to_dict()


@router.post("/rooms/{room_id}/keys/rewrap")
async def rewrap_history(room_id: str, body: RewrapRequest, parley: ParleyDep, caller: CallerDep):
    grants = await parley.encryption.rewrap_history(room_id, caller.user_id, body.user_id)
    return {"grants": [g.to_dict() for g in grants]}


# --- Rooms ---


@router.post("/rooms", status_code=201)
async def create_room(body: CreateRoomRequest, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.create_room(
        body.workspace_id,
        caller.user_id,
        body.kind,
        body.name,
        member_ids=body.member_ids,
        description=body.description,
    )
    return room.to_dict()


@router.get("/rooms")
async def list_rooms(
    parley: ParleyDep,
    caller: CallerDep,
    workspace_id: Annotated[str | None, Query()] = None,
):
    summaries = await parley.rooms.list_rooms_for_user(caller.user_id, workspace_id)
    return {"rooms": [s.to_dict() for s in summaries]}


@router.post("/workspaces/{workspace_id}/general")
async def ensure_general_room(workspace_id: str, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.ensure_workspace_general_room(workspace_id, caller.user_id)
    return room.to_dict()


@router.get("/rooms/{room_id}")
async def get_room(room_id: str, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.get_room(room_id, caller.user_id)
    return room.to_dict()


@router.patch("/rooms/{room_id}")
async def update_room(room_id: str, body: UpdateRoomRequest, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.update_room(
        room_id, caller.user_id, name=body.name, description=body.description
    )
    return room.to_dict()


@router.delete("/rooms/{room_id}")
async def delete_room(room_id: str, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.delete_room(room_id, caller.user_id)
    return room.to_dict()


@router.post("/rooms/{room_id}/archive")
async def archive_room(room_id: str, parley: ParleyDep, caller: CallerDep):
    room = await parley.rooms.archive_room(room_id, caller.user_id)
    return room.to_dict()


@router.post("/rooms/{room_id}/conversation/delete", status_code=202)
async def delete_conversation(room_id: str, parley: ParleyDep, caller: CallerDep):
    job = await parley.rooms.delete_conversation(room_id, caller.user_id)
    return job.to_dict()


@router.post("/rooms/{room_id}/export", status_code=202)
async def export_room(room_id: str, parley: ParleyDep, caller: CallerDep):
    """Start an export job. The export document is the job's result."""
    job = await parley.rooms.export_room_data(room_id, caller.user_id)
    return job.to_dict()


@router.get("/rooms/{room_id}/audit")
async def room_audit(room_id: str, parley: ParleyDep, caller: CallerDep):
    entries = await parley.rooms.audit_log(room_id, caller.user_id)
    return {"entries": [{**e.to_dict(), "detail": json.loads(e.detail)} for e in entries]}


def _caller_job(parley: Parley, room_id: str, job_id: str, caller: Caller):
    job = parley.jobs.get(job_id)
    # Jobs are visible only to the admin who started them
    if job.room_id != room_id or job.actor_id != caller.user_id:
        raise JobNotFound()
    return job


@router.get("/rooms/{room_id}/jobs/{job_id}")
def get_job(room_id: str, job_id: str, parley: ParleyDep, caller: CallerDep):
    return _caller_job(parley, room_id, job_id, caller).to_dict()


@router.post("/rooms/{room_id}/jobs/{job_id}/cancel")
def cancel_job(room_id: str, job_id: str, parley: ParleyDep, caller: CallerDep):
    _caller_job(parley, room_id, job_id, caller)
    return parley.jobs.cancel(job_id).to_dict()


# --- Participants / Invitations ---


@router.get("/rooms/{room_id}/participants")
async def list_participants(room_id: str, parley: ParleyDep, caller: CallerDep):
    participants = await parley.participants.list_participants(room_id, caller.user_id)
    return {"participants": [p.to_dict() for p in participants]}


@router.post("/rooms/{room_id}/participants")
async def add_participants(
    room_id: str, body: AddParticipantsRequest, parley: ParleyDep, caller: CallerDep
):
    result = await parley.participants.add_participants(room_id, caller.user_id, body.user_ids)
    return result.to_dict()


@router.delete("/rooms/{room_id}/participants/{user_id}")
async def remove_participant(room_id: str, user_id: str, parley: ParleyDep, caller: CallerDep):
    participant = await parley.participants.remove_participant(room_id, caller.user_id, user_id)
    return participant.to_dict()


@router.put("/rooms/{room_id}/participants/{user_id}/role")
async def set_role(
    room_id: str, user_id: str, body: SetRoleRequest, parley: ParleyDep, caller: CallerDep
):
    participant = await parley.participants.set_participant_role(
        room_id, caller.user_id, user_id, body.role
    )
    return participant.to_dict()


@router.get("/invitations")
async def list_invitations(parley: ParleyDep, caller: CallerDep):
    invitations = await parley.participants.list_pending_invitations(caller.user_id)
    return {"invitations": [i.to_dict() for i in invitations]}


@router.post("/invitations/accept")
async def accept_invitation_by_token(
    body: AcceptInvitationTokenRequest, parley: ParleyDep, caller: CallerDep
):
    participant = await parley.participants.accept_room_invitation_by_token(
        body.token, caller.user_id
    )
    return participant.to_dict()


@router.post("/invitations/{invitation_id}/accept")
async def accept_invitation(invitation_id: str, parley: ParleyDep, caller: CallerDep):
    participant = await parley.participants.accept_room_invitation(invitation_id, caller.user_id)
    return participant.to_dict()


@router.post("/invitations/{invitation_id}/decline")
async def decline_invitation(invitation_id: str, parley: ParleyDep, caller: CallerDep):
    invitation = await parley.participants.decline_room_invitation(invitation_id, caller.user_id)
    return invitation.to_dict()


@router.post("/invitations/{invitation_id}/revoke")
async def revoke_invitation(invitation_id: str, parley: ParleyDep, caller: CallerDep):
    invitation = await parley.participants.revoke_invitation(invitation_id, caller.user_id)
    return invitation.to_dict()


# --- Messages ---


@router.post("/rooms/{room_id}/messages", status_code=201)
async def send_message(
    room_id: str, body: SendMessageRequest, parley: ParleyDep, caller: CallerDep
):
    message = await parley.messages.send_message(
        room_id,
        caller.user_id,
        body.ciphertext,
        body.nonce,
        key_epoch=body.key_epoch,
        reply_to=body.reply_to,
        client_token=body.client_token,
    )
    return message.to_dict()


@router.get("/rooms/{room_id}/messages")
async def list_messages(
    room_id: str,
    parley: ParleyDep,
    caller: CallerDep,
    direction: Annotated[Literal["forward", "backward"], Query()] = "forward",
    after_seq: Annotated[int | None, Query(ge=0)] = None,
    before_seq: Annotated[int | None, Query(ge=1)] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_LIMIT)] = 100,
):
    """List messages by seq. Pass the last seq seen as the next cursor."""
    pagination = Pagination(
        direction=direction, after_seq=after_seq, before_seq=before_seq, limit=limit
    )
    view = await parley.messages.get_room_messages(room_id, caller.user_id, pagination)
    messages = await view.to_list()
    return {"messages": [m.to_dict() for m in messages], "count": len(messages)}


@router.get("/messages/{message_id}")
async def get_message(message_id: str, parley: ParleyDep, caller: CallerDep):
    message = await parley.messages.get_message(message_id, caller.user_id)
    return message.to_dict()


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: str, body: EditMessageRequest, parley: ParleyDep, caller: CallerDep
):
    message = await parley.messages.edit_message(
        message_id, caller.user_id, body.ciphertext, body.nonce, key_epoch=body.key_epoch
    )
    return message.to_dict()


@router.delete("/messages/{message_id}")
async def delete_message(message_id: str, parley: ParleyDep, caller: CallerDep):
    message = await parley.messages.delete_message(message_id, caller.user_id)
    return message.to_dict()


@router.get("/messages/{message_id}/reactions")
async def list_reactions(message_id: str, parley: ParleyDep, caller: CallerDep):
    reactions = await parley.messages.list_reactions(message_id, caller.user_id)
    return {"reactions": [r.to_dict() for r in reactions]}


@router.post("/messages/{message_id}/reactions")
async def add_reaction(
    message_id: str, body: ReactionRequest, parley: ParleyDep, caller: CallerDep
):
    added = await parley.messages.add_reaction(message_id, caller.user_id, body.kind)
    return {"kind": body.kind, "present": True, "changed": added}


@router.delete("/messages/{message_id}/reactions/{kind}")
async def remove_reaction(message_id: str, kind: str, parley: ParleyDep, caller: CallerDep):
    removed = await parley.messages.remove_reaction(message_id, caller.user_id, kind)
    return {"kind": kind, "present": False, "changed": removed}


@router.post("/messages/{message_id}/reactions/toggle")
async def toggle_reaction(
    message_id: str, body: ReactionRequest, parley: ParleyDep, caller: CallerDep
):
    present = await parley.messages.toggle_reaction(message_id, caller.user_id, body.kind)
    return {"kind": body.kind, "present": present, "changed": True}


@router.post("/messages/{message_id}/read")
async def mark_read(message_id: str, parley: ParleyDep, caller: CallerDep):
    receipt = await parley.messages.mark_message_as_read(message_id, caller.user_id)
    return receipt.to_dict()


@router.post("/rooms/{room_id}/read")
async def mark_room_read(room_id: str, parley: ParleyDep, caller: CallerDep):
    receipt = await parley.messages.mark_room_read(room_id, caller.user_id)
    return {"receipt": receipt.to_dict() if receipt else None}


@router.get("/rooms/{room_id}/unread")
async def unread_count(room_id: str, parley: ParleyDep, caller: CallerDep):
    count = await parley.messages.unread_count(room_id, caller.user_id)
    return {"room_id": room_id, "unread_count": count}


# --- Live events ---


@router.post("/rooms/{room_id}/typing", status_code=204)
async def typing(room_id: str, body: TypingRequest, parley: ParleyDep, caller: CallerDep):
    await parley.notify_typing(room_id, caller.user_id, body.is_typing)


@router.get("/rooms/{room_id}/events")
async def room_events(room_id: str, parley: ParleyDep, caller: CallerDep):
    """Server-Sent Events stream of the room's committed events.

    Delivery is at-most-once; after a reconnect, list messages from the last
    seq seen to catch up.
    """
    # Check access before the response starts so failures get a status code
    await parley.participants.load_room(room_id)
    await parley.participants.require_active_participant(room_id, caller.user_id)

    async def event_generator():
        # Send initial connected event
        yield "event: connected\ndata: {}\n\n"
        async for event in parley.broadcaster.stream(room_id, caller.user_id):
            yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# --- Application ---


async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
    )


def _endpoint_name(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "other"


def create_app(
    parley: Parley | None = None,
    settings: Settings | None = None,
    resolver: CallerResolver | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        parley: Use this facade (owned by the caller). Built from settings when omitted.
        settings: Settings for a facade built here; defaults to ``Settings.from_env()``.
        resolver: Caller resolver; defaults to the one configured in settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = parley is None
        instance = parley or Parley.open(settings)
        app.state.parley = instance
        app.state.resolver = resolver or resolver_from_settings(instance.settings)
        logger.info(f"parley API started (auth: {get_auth_method_name(instance.settings)})")
        try:
            yield
        finally:
            if owned:
                await instance.aclose()

    app = FastAPI(
        title="parley",
        description="Encrypted real-time room messaging",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_exception_handler(ParleyError, parley_error_handler)

    @app.middleware("http")
    async def add_timing_middleware(request: Request, call_next):
        """Middleware to track request timing for metrics."""
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        instance = getattr(request.app.state, "parley", None)
        if instance is not None:
            instance.metrics.record_request(_endpoint_name(request), duration_ms)

        # Add timing header for debugging
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
        return response

    app.include_router(router)
    return app
