"""
Participant registry.

Pure operations over a `Session` copy. Each function validates every precondition
before touching the session, so a raised `DomainError` never leaves a half-applied
change behind.

Readiness policy: a participant is ready iff they have a location and have confirmed
intent to proceed. With `require_ready_confirmation=False` (default) setting a location
is the confirmation; with `True` an explicit `set_ready(..., True)` is needed.
"""

from __future__ import annotations

from datetime import datetime

from midmeet.config.settings import SessionSettings
from midmeet.domain.errors import (
    ForbiddenError,
    InvalidArgumentError,
    ParticipantNotFoundError,
    SessionFullError,
    SessionLockedError,
)
from midmeet.domain.models import Location, Participant, Session, VenueFilters
from midmeet.engine.votes import VoteLedger


def validate_name(name: str, *, max_length: int) -> str:
    cleaned = " ".join((name or "").split())
    if not cleaned:
        raise InvalidArgumentError("Enter a name so the group knows who you are.")
    if len(cleaned) > max_length:
        raise InvalidArgumentError(f"Names can be at most {max_length} characters.")
    return cleaned


def validate_capacity(max_participants: int | None, settings: SessionSettings) -> int:
    if max_participants is None:
        return settings.max_participants_default
    if max_participants < 1:
        raise InvalidArgumentError("A session needs room for at least one participant.")
    return max_participants


def new_session(
    *,
    code: str,
    host_id: str,
    host_name: str,
    now: datetime,
    filters: VenueFilters,
    max_participants: int,
) -> Session:
    host = Participant(
        id=host_id,
        name=host_name,
        is_host=True,
        joined_at=now,
        last_active_at=now,
    )
    return Session(
        id=code,
        host_id=host_id,
        participants={host_id: host},
        filters=filters,
        max_participants=max_participants,
        created_at=now,
    )


def require_participant(session: Session, participant_id: str) -> Participant:
    participant = session.participants.get(participant_id)
    if participant is None:
        raise ParticipantNotFoundError(participant_id)
    return participant


def require_host(session: Session, actor_id: str) -> None:
    require_participant(session, actor_id)
    if actor_id != session.host_id:
        raise ForbiddenError()


def add_participant(session: Session, *, participant_id: str, name: str, now: datetime) -> Participant:
    if session.is_locked:
        raise SessionLockedError(session.id)
    if len(session.participants) >= session.max_participants:
        raise SessionFullError(session.id, session.max_participants)
    participant = Participant(id=participant_id, name=name, joined_at=now, last_active_at=now)
    session.participants[participant_id] = participant
    return participant


def set_location(
    session: Session,
    participant_id: str,
    location: Location,
    *,
    now: datetime,
    require_confirmation: bool = False,
) -> Participant:
    participant = require_participant(session, participant_id)
    participant.location = location
    if not require_confirmation:
        participant.is_ready = True
    participant.last_active_at = now
    return participant


def set_ready(session: Session, participant_id: str, ready: bool, *, now: datetime) -> Participant:
    participant = require_participant(session, participant_id)
    if ready and participant.location is None:
        raise InvalidArgumentError("Set your location before marking yourself ready.")
    participant.is_ready = ready
    participant.last_active_at = now
    return participant


def remove_participant(
    session: Session, ledger: VoteLedger, *, actor_id: str, participant_id: str
) -> Participant:
    """Host-only removal of a non-host participant and exactly their votes."""
    require_host(session, actor_id)
    target = require_participant(session, participant_id)
    if participant_id == session.host_id:
        raise ForbiddenError("The host cannot be removed. End the session instead.")
    del session.participants[participant_id]
    ledger.remove_participant(participant_id)
    session.votes = ledger.votes()
    return target


def set_locked(session: Session, *, actor_id: str, locked: bool) -> None:
    require_host(session, actor_id)
    session.is_locked = locked


def touch(session: Session, participant_id: str, *, now: datetime) -> Participant:
    participant = require_participant(session, participant_id)
    participant.last_active_at = now
    return participant
