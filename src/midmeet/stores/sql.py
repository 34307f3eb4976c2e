"""Relational implementation of the SessionStore (SQLModel / SQLAlchemy).

One table per entity, keyed the same way the engine keys them:
- `sessions` by session code, with `version` used for compare-and-set commits
- `participants` by participant id
- `venues` by (session_id, venue id), ordered by `position`
- `votes` by (session_id, participant_id, venue_id), so a re-vote is an update

`commit` runs the guarded version UPDATE and every child write in one transaction;
any failure rolls all of it back.

SQLite Configuration Choices:
    - **WAL**: concurrent readers while the API writes.
    - **Foreign keys**: enforced, which is why deletes remove children first.
    - **check_same_thread=False**: calls run in worker threads via `asyncio.to_thread`.
"""

import asyncio
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, delete, event as sa_event, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session as DbSession, SQLModel, create_engine, select

from midmeet.core.time import ensure_utc
from midmeet.domain.errors import ConcurrentModificationError, SessionNotFoundError
from midmeet.domain.models import (
    Decision,
    Location,
    LocationKind,
    MidpointMode,
    Participant,
    Session,
    Venue,
    VenueFilters,
    Vote,
)
from midmeet.stores.interfaces import SessionChanges, SessionStore


class SessionRow(SQLModel, table=True):
    __tablename__ = "sessions"

    id: str = Field(primary_key=True, max_length=16)
    host_id: str
    midpoint_lat: float | None = None
    midpoint_lng: float | None = None
    midpoint_mode: str = Field(default=MidpointMode.DYNAMIC.value)
    matched_venue: dict | None = Field(default=None, sa_column=Column(JSON))
    filters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_locked: bool = False
    max_participants: int = 10
    venues_requested: bool = False
    notice: str | None = None
    version: int = 0
    created_at: datetime
    ended_at: datetime | None = None


class ParticipantRow(SQLModel, table=True):
    __tablename__ = "participants"

    id: str = Field(primary_key=True, max_length=64)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    name: str
    location_lat: float | None = None
    location_lng: float | None = None
    location_kind: str | None = None
    location_address: str | None = None
    is_ready: bool = False
    is_host: bool = False
    joined_at: datetime
    last_active_at: datetime


class VenueRow(SQLModel, table=True):
    __tablename__ = "venues"

    session_id: str = Field(foreign_key="sessions.id", primary_key=True)
    id: str = Field(primary_key=True)
    position: int
    name: str
    category: str | None = None
    address: str = ""
    lat: float
    lng: float
    rating: float | None = None
    price_level: int | None = None
    photo_ref: str | None = None
    types: list = Field(default_factory=list, sa_column=Column(JSON))
    distance_km: float | None = None


class VoteRow(SQLModel, table=True):
    __tablename__ = "votes"

    session_id: str = Field(foreign_key="sessions.id", primary_key=True)
    participant_id: str = Field(primary_key=True)
    venue_id: str = Field(primary_key=True)
    decision: str
    cast_at: datetime


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine; SQLite URLs get the pragmas described in the module docstring."""
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(database_url, connect_args=connect_args, echo=echo)

    if is_sqlite:

        @sa_event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def _session_values(session: Session) -> dict[str, Any]:
    return {
        "host_id": session.host_id,
        "midpoint_lat": session.midpoint.lat if session.midpoint else None,
        "midpoint_lng": session.midpoint.lng if session.midpoint else None,
        "midpoint_mode": session.midpoint_mode.value,
        "matched_venue": session.matched_venue.model_dump(mode="json") if session.matched_venue else None,
        "filters": session.filters.model_dump(mode="json"),
        "is_locked": session.is_locked,
        "max_participants": session.max_participants,
        "venues_requested": session.venues_requested,
        "notice": session.notice,
        "version": session.version,
        "created_at": session.created_at,
        "ended_at": session.ended_at,
    }


def _participant_values(session_id: str, p: Participant) -> dict[str, Any]:
    loc = p.location
    return {
        "session_id": session_id,
        "name": p.name,
        "location_lat": loc.lat if loc else None,
        "location_lng": loc.lng if loc else None,
        "location_kind": loc.kind.value if loc else None,
        "location_address": loc.address if loc else None,
        "is_ready": p.is_ready,
        "is_host": p.is_host,
        "joined_at": p.joined_at,
        "last_active_at": p.last_active_at,
    }


def _to_participant(row: ParticipantRow) -> Participant:
    location = None
    if row.location_lat is not None and row.location_lng is not None:
        location = Location(
            lat=row.location_lat,
            lng=row.location_lng,
            kind=LocationKind(row.location_kind or LocationKind.MANUAL.value),
            address=row.location_address,
        )
    return Participant(
        id=row.id,
        name=row.name,
        location=location,
        is_ready=row.is_ready and location is not None,
        is_host=row.is_host,
        joined_at=ensure_utc(row.joined_at),
        last_active_at=ensure_utc(row.last_active_at),
    )


def _to_venue(row: VenueRow) -> Venue:
    return Venue(
        id=row.id,
        name=row.name,
        category=row.category,
        address=row.address,
        lat=row.lat,
        lng=row.lng,
        rating=row.rating,
        price_level=row.price_level,
        photo_ref=row.photo_ref,
        types=list(row.types or []),
        distance_km=row.distance_km,
    )


class SqlSessionStore(SessionStore):
    """Relational session store; blocking SQL runs in worker threads."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False) -> "SqlSessionStore":
        store = cls(build_engine(database_url, echo=echo))
        store.create_tables()
        return store

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(self._engine)

    # -- reads ---------------------------------------------------------------

    def _get_sync(self, session_id: str) -> Session | None:
        with DbSession(self._engine) as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                return None
            participants = db.exec(
                select(ParticipantRow)
                .where(ParticipantRow.session_id == session_id)
                .order_by(ParticipantRow.joined_at, ParticipantRow.id)
            ).all()
            venues = db.exec(
                select(VenueRow).where(VenueRow.session_id == session_id).order_by(VenueRow.position)
            ).all()
            votes = db.exec(
                select(VoteRow).where(VoteRow.session_id == session_id).order_by(VoteRow.cast_at)
            ).all()

            midpoint = None
            if row.midpoint_lat is not None and row.midpoint_lng is not None:
                midpoint = Location(lat=row.midpoint_lat, lng=row.midpoint_lng)
            return Session(
                id=row.id,
                host_id=row.host_id,
                participants={p.id: _to_participant(p) for p in participants},
                midpoint=midpoint,
                midpoint_mode=MidpointMode(row.midpoint_mode),
                venues=[_to_venue(v) for v in venues],
                votes=[
                    Vote(
                        participant_id=v.participant_id,
                        venue_id=v.venue_id,
                        decision=Decision(v.decision),
                        cast_at=ensure_utc(v.cast_at),
                    )
                    for v in votes
                ],
                matched_venue=Venue.model_validate(row.matched_venue) if row.matched_venue else None,
                filters=VenueFilters.model_validate(row.filters or {}),
                is_locked=row.is_locked,
                max_participants=row.max_participants,
                venues_requested=row.venues_requested,
                notice=row.notice,
                version=row.version,
                created_at=ensure_utc(row.created_at),
                ended_at=ensure_utc(row.ended_at) if row.ended_at else None,
            )

    def _exists_sync(self, session_id: str) -> bool:
        with DbSession(self._engine) as db:
            return db.get(SessionRow, session_id) is not None

    async def get(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._get_sync, session_id)

    async def exists(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, session_id)

    # -- writes --------------------------------------------------------------

    def _write_session_row(self, db: DbSession, session: Session, expected_version: int | None) -> None:
        values = _session_values(session)
        if expected_version is None:
            if db.get(SessionRow, session.id) is not None:
                raise ConcurrentModificationError(session.id)
            db.add(SessionRow(id=session.id, **values))
            db.flush()
            return

        # The guarded UPDATE takes the write lock, so competing commits queue behind it.
        result = db.exec(
            update(SessionRow)
            .where(SessionRow.id == session.id, SessionRow.version == expected_version)
            .values(**values)
        )
        if result.rowcount == 0:
            if db.get(SessionRow, session.id) is None:
                raise SessionNotFoundError(session.id)
            raise ConcurrentModificationError(session.id)

    def _write_children(self, db: DbSession, session_id: str, changes: SessionChanges) -> None:
        for participant_id in changes.removed_participants:
            db.exec(
                delete(VoteRow).where(VoteRow.session_id == session_id, VoteRow.participant_id == participant_id)
            )
            db.exec(
                delete(ParticipantRow).where(
                    ParticipantRow.session_id == session_id, ParticipantRow.id == participant_id
                )
            )

        for participant in changes.participants:
            values = _participant_values(session_id, participant)
            row = db.get(ParticipantRow, participant.id)
            if row is None:
                db.add(ParticipantRow(id=participant.id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                db.add(row)

        if changes.venues is not None:
            db.exec(delete(VenueRow).where(VenueRow.session_id == session_id))
            for position, venue in enumerate(changes.venues):
                db.add(
                    VenueRow(
                        session_id=session_id,
                        id=venue.id,
                        position=position,
                        name=venue.name,
                        category=venue.category,
                        address=venue.address,
                        lat=venue.lat,
                        lng=venue.lng,
                        rating=venue.rating,
                        price_level=venue.price_level,
                        photo_ref=venue.photo_ref,
                        types=list(venue.types),
                        distance_km=venue.distance_km,
                    )
                )

        for vote in changes.votes:
            row = db.get(VoteRow, (session_id, vote.participant_id, vote.venue_id))
            if row is None:
                row = VoteRow(
                    session_id=session_id,
                    participant_id=vote.participant_id,
                    venue_id=vote.venue_id,
                    decision=vote.decision.value,
                    cast_at=vote.cast_at,
                )
            else:
                row.decision = vote.decision.value
                row.cast_at = vote.cast_at
            db.add(row)

    def _commit_sync(self, session: Session, changes: SessionChanges, expected_version: int | None) -> None:
        with DbSession(self._engine) as db:
            try:
                self._write_session_row(db, session, expected_version)
                self._write_children(db, session.id, changes)
                db.commit()
            except IntegrityError as e:
                # Another process created the same session code first.
                db.rollback()
                if expected_version is None:
                    raise ConcurrentModificationError(session.id) from e
                raise
            except Exception:
                db.rollback()
                raise

    def _delete_session_sync(self, session_id: str) -> None:
        with DbSession(self._engine) as db:
            db.exec(delete(VoteRow).where(VoteRow.session_id == session_id))
            db.exec(delete(VenueRow).where(VenueRow.session_id == session_id))
            db.exec(delete(ParticipantRow).where(ParticipantRow.session_id == session_id))
            db.exec(delete(SessionRow).where(SessionRow.id == session_id))
            db.commit()

    async def commit(
        self,
        session: Session,
        changes: SessionChanges | None = None,
        *,
        expected_version: int | None = None,
    ) -> None:
        await asyncio.to_thread(self._commit_sync, session, changes or SessionChanges(), expected_version)

    async def delete_session_cascade(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete_session_sync, session_id)
