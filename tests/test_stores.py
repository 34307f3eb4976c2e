import asyncio
from datetime import datetime, timezone

import pytest
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

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
from midmeet.stores.interfaces import SessionChanges
from midmeet.stores.memory import MemorySessionStore
from midmeet.stores.sql import SqlSessionStore

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="any_store", params=["memory", "sql"])
def any_store_fixture(request, engine):
    if request.param == "memory":
        return MemorySessionStore()
    return SqlSessionStore(engine)


def _session() -> Session:
    return Session(
        id="ABC123",
        host_id="host",
        midpoint=Location(lat=40.01, lng=-74.01),
        midpoint_mode=MidpointMode.LOCKED,
        filters=VenueFilters(radius_m=1500, categories=["cafe"], min_rating=4, max_price_level=2),
        max_participants=4,
        notice="hello",
        created_at=T0,
    )


def _host() -> Participant:
    return Participant(
        id="host",
        name="Alice",
        location=Location(lat=40.0, lng=-74.0, kind=LocationKind.LIVE, address="1 Main St"),
        is_ready=True,
        is_host=True,
        joined_at=T0,
        last_active_at=T0,
    )


def _venues() -> list[Venue]:
    return [
        Venue(id="v2", name="Second", lat=40.0, lng=-74.0, rating=4.5, price_level=2, types=["cafe"], distance_km=0.5),
        Venue(id="v1", name="First", lat=40.1, lng=-74.1, category="cafe"),
    ]


def _vote(participant_id: str, venue_id: str, decision: Decision = Decision.APPROVE) -> Vote:
    return Vote(participant_id=participant_id, venue_id=venue_id, decision=decision, cast_at=T0)


def _next(session: Session, version: int) -> Session:
    return session.model_copy(update={"version": version})


async def _create(store, *, venues: list[Venue] | None = None) -> Session:
    session = _session()
    await store.commit(session, SessionChanges(participants=[_host()], venues=venues))
    return session


def test_store_round_trips_a_full_session(any_store):
    async def scenario():
        session = _session().model_copy(
            update={"participants": {"host": _host()}, "venues": _venues(), "votes": [_vote("host", "v2")]}
        )
        await any_store.commit(session, SessionChanges.everything(session))

        loaded = await any_store.get(session.id)
        assert loaded.participants == {"host": _host()}
        assert [v.id for v in loaded.venues] == ["v2", "v1"]
        assert loaded.venues == _venues()
        assert loaded.votes[0].decision is Decision.APPROVE
        assert loaded.votes[0].cast_at == T0
        assert loaded.filters == session.filters
        assert loaded.midpoint == session.midpoint
        assert loaded.midpoint_mode is MidpointMode.LOCKED
        assert loaded.notice == "hello"
        assert loaded.created_at == T0
        assert await any_store.exists(session.id)
        assert not await any_store.exists("NOPE00")

    asyncio.run(scenario())


def test_vote_upsert_is_last_write_wins(any_store):
    async def scenario():
        session = await _create(any_store)
        await any_store.commit(_next(session, 1), SessionChanges(votes=[_vote("host", "v1")]), expected_version=0)
        await any_store.commit(
            _next(session, 2), SessionChanges(votes=[_vote("host", "v1", Decision.REJECT)]), expected_version=1
        )
        loaded = await any_store.get("ABC123")
        assert [(v.venue_id, v.decision) for v in loaded.votes] == [("v1", Decision.REJECT)]

    asyncio.run(scenario())


def test_venue_list_is_replaced_as_a_whole(any_store):
    async def scenario():
        session = await _create(any_store, venues=_venues())
        await any_store.commit(
            _next(session, 1), SessionChanges(venues=[Venue(id="v9", name="Only", lat=0, lng=0)]), expected_version=0
        )
        loaded = await any_store.get("ABC123")
        assert [v.id for v in loaded.venues] == ["v9"]

    asyncio.run(scenario())


def test_compare_and_set_on_version(any_store):
    async def scenario():
        session = await _create(any_store)

        await any_store.commit(session.model_copy(update={"version": 1, "is_locked": True}), expected_version=0)
        assert (await any_store.get("ABC123")).is_locked

        with pytest.raises(ConcurrentModificationError):
            await any_store.commit(_next(session, 1), expected_version=0)
        with pytest.raises(SessionNotFoundError):
            await any_store.commit(session.model_copy(update={"id": "GONE00", "version": 1}), expected_version=0)
        # Creating over a live code is a conflict, not an overwrite.
        with pytest.raises(ConcurrentModificationError):
            await any_store.commit(_session())
        assert (await any_store.get("ABC123")).is_locked

    asyncio.run(scenario())


def test_rejected_commit_writes_no_children(any_store):
    async def scenario():
        session = await _create(any_store, venues=_venues())
        bob = Participant(id="bob", name="Bob", joined_at=T0, last_active_at=T0)
        changes = SessionChanges(participants=[bob], venues=[], votes=[_vote("host", "v1")])

        with pytest.raises(ConcurrentModificationError):
            await any_store.commit(_next(session, 8), changes, expected_version=7)

        loaded = await any_store.get("ABC123")
        assert loaded.version == 0
        assert set(loaded.participants) == {"host"}
        assert [v.id for v in loaded.venues] == ["v2", "v1"]
        assert loaded.votes == []

    asyncio.run(scenario())


def test_session_only_commit_keeps_children(any_store):
    async def scenario():
        session = await _create(any_store)
        await any_store.commit(_next(session, 1), expected_version=0)
        assert set((await any_store.get("ABC123")).participants) == {"host"}

    asyncio.run(scenario())


def test_removed_participant_takes_their_votes_along(any_store):
    async def scenario():
        session = await _create(any_store)
        bob = Participant(id="bob", name="Bob", joined_at=T0, last_active_at=T0)
        await any_store.commit(
            _next(session, 1),
            SessionChanges(participants=[bob], votes=[_vote("host", "v1"), _vote("bob", "v1")]),
            expected_version=0,
        )

        await any_store.commit(_next(session, 2), SessionChanges(removed_participants=["bob"]), expected_version=1)
        loaded = await any_store.get("ABC123")
        assert set(loaded.participants) == {"host"}
        assert [v.participant_id for v in loaded.votes] == ["host"]

    asyncio.run(scenario())


def test_delete_session_cascade_removes_everything(any_store):
    async def scenario():
        session = await _create(any_store, venues=_venues())
        await any_store.delete_session_cascade("ABC123")
        assert await any_store.get("ABC123") is None
        with pytest.raises(SessionNotFoundError):
            await any_store.commit(_next(session, 1), SessionChanges(participants=[_host()]), expected_version=0)

    asyncio.run(scenario())


def test_sql_commit_rolls_back_the_version_when_a_child_write_fails(engine, monkeypatch):
    store = SqlSessionStore(engine)

    def broken_children(db, session_id, changes):
        raise RuntimeError("disk full")

    async def scenario():
        session = await _create(store)
        monkeypatch.setattr(store, "_write_children", broken_children)
        with pytest.raises(RuntimeError):
            await store.commit(_next(session, 1), SessionChanges(votes=[_vote("host", "v1")]), expected_version=0)

        loaded = await store.get("ABC123")
        assert loaded.version == 0
        assert loaded.votes == []

    asyncio.run(scenario())


def test_changes_between_two_snapshots():
    before = _session().model_copy(
        update={"participants": {"host": _host()}, "venues": _venues(), "votes": [_vote("host", "v1")]}
    )
    bob = Participant(id="bob", name="Bob", joined_at=T0, last_active_at=T0)
    after = before.model_copy(
        update={
            "participants": {"bob": bob},
            "votes": [_vote("host", "v1"), _vote("bob", "v2", Decision.REJECT)],
        }
    )

    changes = SessionChanges.between(before, after)
    assert changes.removed_participants == ["host"]
    assert changes.participants == [bob]
    assert changes.venues is None
    assert changes.votes == [_vote("bob", "v2", Decision.REJECT)]


def test_memory_store_never_aliases_caller_objects():
    store = MemorySessionStore()

    async def scenario():
        await _create(store)
        loaded = await store.get("ABC123")
        loaded.notice = "changed"
        loaded.participants["host"].name = "Mallory"
        reloaded = await store.get("ABC123")
        assert reloaded.notice == "hello"
        assert reloaded.participants["host"].name == "Alice"

    asyncio.run(scenario())
