"""
API routes.

Endpoints (all JSON; every intent answers with the committed session snapshot):
- POST `/api/sessions`: create a session (caller becomes host).
- GET  `/api/sessions/{id}`: current snapshot.
- POST `/api/sessions/{id}/participants`: join.
- PUT  `/api/sessions/{id}/participants/{pid}/location` | `/ready`, POST `/heartbeat`, `/remove`.
- PUT  `/api/sessions/{id}/lock` | `/midpoint-mode` | `/filters`.
- POST `/api/sessions/{id}/venues/refresh`, `/votes`, `/match/clear`, `/end`.
- GET  `/api/sessions/{id}/tallies` | `/insights`.
- GET  `/api/geocode`, `/api/geocode/reverse`: manual-entry helpers.
- WS   `/api/sessions/{id}/stream`: current snapshot on connect, then every change.

Domain errors are turned into `{"detail": {"code", "message"}}` by the handler in
`midmeet.api.app`.
"""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from midmeet.config.settings import get_settings
from midmeet.core.cache import FileCache
from midmeet.domain.errors import DomainError
from midmeet.domain.models import Decision, Location, LocationKind, MidpointMode, Session, VenueFilters
from midmeet.engine import registry
from midmeet.engine.factory import build_cache, build_geocoder, build_service
from midmeet.engine.service import SessionService
from midmeet.providers.geocoding import GeocodingClient

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def _cache() -> FileCache:
    return build_cache(get_settings())


@lru_cache
def _service() -> SessionService:
    return build_service(get_settings(), cache=_cache())


@lru_cache
def _geocoder() -> GeocodingClient:
    return build_geocoder(get_settings(), _cache())


class CreateSessionRequest(BaseModel):
    host_name: str
    max_participants: int | None = None
    filters: VenueFilters | None = None


class JoinRequest(BaseModel):
    name: str


class LocationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    kind: LocationKind = LocationKind.MANUAL
    address: str | None = None


class ReadyRequest(BaseModel):
    ready: bool


class ActorRequest(BaseModel):
    actor_id: str


class LockRequest(BaseModel):
    actor_id: str
    locked: bool


class MidpointModeRequest(BaseModel):
    participant_id: str
    mode: MidpointMode


class FiltersRequest(BaseModel):
    participant_id: str
    filters: VenueFilters


class ParticipantRequest(BaseModel):
    participant_id: str


class VoteRequest(BaseModel):
    participant_id: str
    venue_id: str
    decision: Decision


def _snapshot(session: Session) -> dict[str, Any]:
    return session.model_dump(mode="json")


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/api/sessions", status_code=201)
async def create_session(body: CreateSessionRequest) -> dict:
    session = await _service().create_session(
        body.host_name, max_participants=body.max_participants, filters=body.filters
    )
    return {"participant_id": session.host_id, "session": _snapshot(session)}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    return _snapshot(await _service().get_session(session_id))


@router.post("/api/sessions/{session_id}/participants", status_code=201)
async def join_session(session_id: str, body: JoinRequest) -> dict:
    session, participant = await _service().join(session_id, body.name)
    return {"participant_id": participant.id, "session": _snapshot(session)}


@router.put("/api/sessions/{session_id}/participants/{participant_id}/location")
async def set_location(session_id: str, participant_id: str, body: LocationRequest) -> dict:
    location = Location(lat=body.lat, lng=body.lng, kind=body.kind, address=body.address)
    return _snapshot(await _service().set_location(session_id, participant_id, location))


@router.put("/api/sessions/{session_id}/participants/{participant_id}/ready")
async def set_ready(session_id: str, participant_id: str, body: ReadyRequest) -> dict:
    return _snapshot(await _service().set_ready(session_id, participant_id, body.ready))


@router.post("/api/sessions/{session_id}/participants/{participant_id}/heartbeat")
async def heartbeat(session_id: str, participant_id: str) -> dict:
    return _snapshot(await _service().touch(session_id, participant_id))


@router.post("/api/sessions/{session_id}/participants/{participant_id}/remove")
async def remove_participant(session_id: str, participant_id: str, body: ActorRequest) -> dict:
    return _snapshot(await _service().remove_participant(session_id, body.actor_id, participant_id))


@router.put("/api/sessions/{session_id}/lock")
async def set_locked(session_id: str, body: LockRequest) -> dict:
    return _snapshot(await _service().set_locked(session_id, body.actor_id, body.locked))


@router.put("/api/sessions/{session_id}/midpoint-mode")
async def set_midpoint_mode(session_id: str, body: MidpointModeRequest) -> dict:
    return _snapshot(await _service().set_midpoint_mode(session_id, body.participant_id, body.mode))


@router.put("/api/sessions/{session_id}/filters")
async def change_filters(session_id: str, body: FiltersRequest) -> dict:
    return _snapshot(await _service().change_filters(session_id, body.participant_id, body.filters))


@router.post("/api/sessions/{session_id}/venues/refresh")
async def refresh_venues(session_id: str, body: ParticipantRequest) -> dict:
    service = _service()
    registry.require_participant(await service.get_session(session_id), body.participant_id)
    return _snapshot(await service.refresh_venues(session_id))


@router.post("/api/sessions/{session_id}/votes")
async def cast_vote(session_id: str, body: VoteRequest) -> dict:
    session = await _service().cast_vote(session_id, body.participant_id, body.venue_id, body.decision)
    return _snapshot(session)


@router.get("/api/sessions/{session_id}/tallies")
async def get_tallies(session_id: str) -> dict:
    tallies = await _service().tallies(session_id)
    return {"tallies": [t.model_dump(mode="json") for t in tallies.values()]}


@router.get("/api/sessions/{session_id}/insights")
async def get_insights(session_id: str) -> dict:
    return (await _service().insights(session_id)).model_dump(mode="json")


@router.post("/api/sessions/{session_id}/match/clear")
async def clear_match(session_id: str, body: ActorRequest) -> dict:
    return _snapshot(await _service().clear_match(session_id, body.actor_id))


@router.post("/api/sessions/{session_id}/end")
async def end_session(session_id: str, body: ActorRequest) -> dict:
    return _snapshot(await _service().end_session(session_id, body.actor_id))


@router.get("/api/geocode")
async def geocode(address: str = Query(..., min_length=1)) -> dict:
    location = await asyncio.to_thread(_geocoder().forward, address)
    return {"location": location.model_dump(mode="json") if location else None}


@router.get("/api/geocode/reverse")
async def reverse_geocode(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180)) -> dict:
    address = await asyncio.to_thread(_geocoder().reverse, lat, lng)
    return {"address": address}


@router.websocket("/api/sessions/{session_id}/stream")
async def stream_session(websocket: WebSocket, session_id: str) -> None:
    """Push full snapshots until the client leaves or the session ends."""
    queue: asyncio.Queue[Session] = asyncio.Queue()
    try:
        unsubscribe, current = await _service().subscribe(session_id, queue.put_nowait)
    except DomainError as e:
        await websocket.close(code=1008, reason=e.message)
        return

    await websocket.accept()
    logger.debug("Snapshot stream opened for session %s", current.id)

    async def pump() -> None:
        await websocket.send_json(_snapshot(current))
        while True:
            snapshot = await queue.get()
            await websocket.send_json(_snapshot(snapshot))
            if snapshot.ended_at is not None:
                return

    async def watch_client() -> None:
        # Clients only listen; this returns when they disconnect.
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    pump_task = asyncio.create_task(pump())
    watch_task = asyncio.create_task(watch_client())
    try:
        done, pending = await asyncio.wait({pump_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if pump_task in done:
            exc = pump_task.exception()
            if exc is None:
                await websocket.close()
            elif not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        unsubscribe()
