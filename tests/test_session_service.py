import asyncio
import gc
import time

import pytest

from midmeet.config.settings import SessionSettings, Settings, VenueSettings
from midmeet.core.ids import SESSION_CODE_ALPHABET
from midmeet.domain.errors import (
    ConcurrentModificationError,
    ErrorCode,
    ForbiddenError,
    InvalidArgumentError,
    ParticipantNotFoundError,
    SessionFullError,
    SessionLockedError,
    SessionNotFoundError,
    UpstreamUnavailableError,
    VenueNotFoundError,
)
from midmeet.domain.models import Decision, Location, MidpointMode, SessionPhase, VenueFilters, VoteTally
from midmeet.engine.service import SessionService
from midmeet.stores.memory import MemorySessionStore

ALICE_AT = Location(lat=40.0, lng=-74.0)
BOB_AT = Location(lat=40.02, lng=-74.02)


async def _ready_pair(service: SessionService) -> tuple[str, str, str]:
    """Alice hosts, Bob joins, both share a location; waits for the automatic search."""
    session = await service.create_session("Alice")
    _, bob = await service.join(session.id, "Bob")
    await service.set_location(session.id, session.host_id, ALICE_AT)
    await service.set_location(session.id, bob.id, BOB_AT)
    await service.drain()
    return session.id, session.host_id, bob.id


def test_create_session_issues_a_code_and_a_host(service):
    async def scenario():
        session = await service.create_session("  Alice ")
        assert len(session.id) == 6 and set(session.id) <= set(SESSION_CODE_ALPHABET)
        host = session.participants[session.host_id]
        assert host.name == "Alice" and host.is_host
        assert len(session.host_id) == 20
        assert session.phase is SessionPhase.FORMING
        assert session.filters.categories == ["restaurant"]
        # Codes are typed by humans.
        again = await service.get_session(session.id.lower())
        assert again.id == session.id

    asyncio.run(scenario())


def test_create_session_retries_code_collisions(service, store, monkeypatch):
    codes = iter(["TAKEN1", "TAKEN1", "FRESH1"])
    monkeypatch.setattr("midmeet.engine.service.new_session_code", lambda length: next(codes))

    async def scenario():
        first = await service.create_session("Alice")
        second = await service.create_session("Bob")
        assert (first.id, second.id) == ("TAKEN1", "FRESH1")

    asyncio.run(scenario())


def test_dynamic_midpoint_for_two_participants(service):
    async def scenario():
        session_id, _, _ = await _ready_pair(service)
        session = await service.get_session(session_id)
        assert session.midpoint.lat == pytest.approx(40.01)
        assert session.midpoint.lng == pytest.approx(-74.01)

    asyncio.run(scenario())


def test_everyone_ready_triggers_exactly_one_automatic_search(service, places):
    async def scenario():
        session_id, alice, _ = await _ready_pair(service)
        session = await service.get_session(session_id)
        assert [v.id for v in session.venues] == ["v-near", "v-far", "v-low"]
        assert session.phase is SessionPhase.VOTING
        assert session.venues_requested

        await service.set_ready(session_id, alice, False)
        await service.set_location(session_id, alice, Location(lat=40.001, lng=-74.001))
        await service.drain()
        assert len(places.calls) == 1

    asyncio.run(scenario())


def test_two_voters_reach_a_match(service, places, place):
    places.results = [place("V1", "Only Option", 40.01, -74.01, rating=4.0)]

    async def scenario():
        session_id, alice, bob = await _ready_pair(service)

        after_alice = await service.cast_vote(session_id, alice, "V1", Decision.APPROVE)
        assert after_alice.matched_venue is None

        after_bob = await service.cast_vote(session_id, bob, "V1", Decision.APPROVE)
        assert after_bob.matched_venue.id == "V1"
        assert after_bob.phase is SessionPhase.MATCHED

    asyncio.run(scenario())


def test_third_join_is_rejected_when_full(service):
    async def scenario():
        session = await service.create_session("Alice", max_participants=2)
        await service.join(session.id, "Bob")
        with pytest.raises(SessionFullError) as exc:
            await service.join(session.id, "Carol")
        assert exc.value.code is ErrorCode.FULL
        assert len((await service.get_session(session.id)).participants) == 2

    asyncio.run(scenario())


def test_locked_midpoint_survives_a_new_participant(service):
    async def scenario():
        session = await service.create_session("Alice")
        await service.set_location(session.id, session.host_id, Location(lat=10, lng=10))
        await service.set_midpoint_mode(session.id, session.host_id, MidpointMode.LOCKED)

        _, bob = await service.join(session.id, "Bob")
        after = await service.set_location(session.id, bob.id, Location(lat=50, lng=50))
        assert (after.midpoint.lat, after.midpoint.lng) == (10, 10)
        await service.drain()

    asyncio.run(scenario())


def test_locked_session_rejects_joins_and_lock_is_host_only(service):
    async def scenario():
        session = await service.create_session("Alice")
        _, bob = await service.join(session.id, "Bob")

        with pytest.raises(ForbiddenError):
            await service.set_locked(session.id, bob.id, True)

        await service.set_locked(session.id, session.host_id, True)
        with pytest.raises(SessionLockedError):
            await service.join(session.id, "Carol")

    asyncio.run(scenario())


def test_unknown_session_participant_and_venue_are_not_found(service):
    async def scenario():
        with pytest.raises(SessionNotFoundError):
            await service.get_session("NOPE00")
        with pytest.raises(SessionNotFoundError):
            await service.join("NOPE00", "Bob")

        session_id, alice, _ = await _ready_pair(service)
        before = await service.get_session(session_id)
        with pytest.raises(ParticipantNotFoundError):
            await service.cast_vote(session_id, "ghost", "v-near", Decision.APPROVE)
        with pytest.raises(VenueNotFoundError):
            await service.cast_vote(session_id, alice, "v-missing", Decision.APPROVE)
        assert (await service.get_session(session_id)).version == before.version

    asyncio.run(scenario())


def test_failed_search_leaves_empty_list_and_notice_then_recovers(service, places):
    places.error = UpstreamUnavailableError()

    async def scenario():
        session_id, alice, _ = await _ready_pair(service)
        session = await service.get_session(session_id)
        assert session.venues == []
        assert session.notice
        assert session.phase is SessionPhase.SEARCHING

        places.error = None
        after = await service.change_filters(session_id, alice, VenueFilters(radius_m=3000, categories=["cafe"]))
        assert [v.id for v in after.venues] == ["v-near", "v-far", "v-low"]
        assert after.notice is None
        assert places.calls[-1]["radius_m"] == 3000
        assert places.calls[-1]["categories"] == ["cafe"]

    asyncio.run(scenario())


def test_slow_search_times_out_without_blocking_the_session(store):
    class _SlowPlaces:
        def search_nearby(self, *, center, radius_m, categories):
            time.sleep(0.3)
            return []

    settings = Settings(venues=VenueSettings(search_timeout_seconds=0.05))
    service = SessionService(store, _SlowPlaces(), settings=settings)

    async def scenario():
        session = await service.create_session("Alice")
        await service.set_location(session.id, session.host_id, ALICE_AT)
        await service.drain()
        after = await service.get_session(session.id)
        assert after.venues == []
        assert after.notice

    asyncio.run(scenario())


def test_refresh_requires_a_midpoint(service):
    async def scenario():
        session = await service.create_session("Alice")
        with pytest.raises(InvalidArgumentError):
            await service.refresh_venues(session.id)
        # Filters are still stored; the search waits for a midpoint.
        after = await service.change_filters(session.id, session.host_id, VenueFilters(min_rating=4))
        assert after.filters.min_rating == 4

    asyncio.run(scenario())


def test_refresh_keeps_votes_for_venues_that_dropped_out(service, places, place):
    async def scenario():
        session_id, alice, _ = await _ready_pair(service)
        await service.cast_vote(session_id, alice, "v-far", Decision.APPROVE)

        places.results = [place("v-new", "Brand New", 40.01, -74.01, rating=4.8)]
        after = await service.refresh_venues(session_id)
        assert [v.id for v in after.venues] == ["v-new"]
        assert [(v.participant_id, v.venue_id) for v in after.votes] == [(alice, "v-far")]
        assert (await service.tallies(session_id)) == {"v-new": VoteTally(venue_id="v-new")}

    asyncio.run(scenario())


def test_removal_drops_votes_recomputes_midpoint_and_keeps_match(service, places, place):
    places.results = [place("V1", "Only Option", 40.01, -74.01, rating=4.0)]

    async def scenario():
        session_id, alice, bob = await _ready_pair(service)
        await service.cast_vote(session_id, alice, "V1", Decision.APPROVE)
        await service.cast_vote(session_id, bob, "V1", Decision.APPROVE)

        with pytest.raises(ForbiddenError):
            await service.remove_participant(session_id, bob, alice)
        with pytest.raises(ForbiddenError):
            await service.remove_participant(session_id, alice, alice)

        after = await service.remove_participant(session_id, alice, bob)
        assert set(after.participants) == {alice}
        assert [v.participant_id for v in after.votes] == [alice]
        assert (after.midpoint.lat, after.midpoint.lng) == (40.0, -74.0)
        assert after.matched_venue.id == "V1"

    asyncio.run(scenario())


def test_clear_match_is_host_only_and_redetects(service, places, place):
    places.results = [
        place("V1", "First", 40.01, -74.01, rating=4.9),
        place("V2", "Second", 40.01, -74.01, rating=4.0),
    ]

    async def scenario():
        session_id, alice, bob = await _ready_pair(service)
        for pid in (alice, bob):
            await service.cast_vote(session_id, pid, "V1", Decision.APPROVE)
        await service.cast_vote(session_id, alice, "V2", Decision.APPROVE)

        with pytest.raises(ForbiddenError):
            await service.clear_match(session_id, bob)

        await service.cast_vote(session_id, alice, "V1", Decision.REJECT)
        sticky = await service.get_session(session_id)
        assert sticky.matched_venue.id == "V1"

        cleared = await service.clear_match(session_id, alice)
        assert cleared.matched_venue is None

        rematched = await service.cast_vote(session_id, bob, "V2", Decision.APPROVE)
        assert rematched.matched_venue.id == "V2"

    asyncio.run(scenario())


def test_subscribers_receive_every_snapshot_and_the_final_one(service):
    async def scenario():
        session = await service.create_session("Alice")
        received = []
        unsubscribe, current = await service.subscribe(session.id, received.append)
        assert current.id == session.id

        _, bob = await service.join(session.id, "Bob")
        await service.touch(session.id, session.host_id)
        assert [s.version for s in received] == [1, 2]

        with pytest.raises(ForbiddenError):
            await service.end_session(session.id, bob.id)

        final = await service.end_session(session.id, session.host_id)
        assert final.phase is SessionPhase.ENDED
        assert received[-1].phase is SessionPhase.ENDED
        assert service.subscribers.subscriber_count(session.id) == 0
        with pytest.raises(SessionNotFoundError):
            await service.get_session(session.id)
        unsubscribe()

    asyncio.run(scenario())


def test_explicit_ready_policy_waits_for_confirmation(store, places):
    settings = Settings(session=SessionSettings(require_ready_confirmation=True))
    service = SessionService(store, places, settings=settings)

    async def scenario():
        session = await service.create_session("Alice")
        after = await service.set_location(session.id, session.host_id, ALICE_AT)
        assert not after.participants[session.host_id].is_ready
        assert after.midpoint is not None
        await service.drain()
        assert places.calls == []

        await service.set_ready(session.id, session.host_id, True)
        await service.drain()
        assert len(places.calls) == 1

    asyncio.run(scenario())


class _RacingStore(MemorySessionStore):
    """Simulates another process committing right before each of our first `races` commits."""

    def __init__(self, races: int):
        super().__init__()
        self.races = races

    async def commit(self, session, changes=None, *, expected_version=None):
        if expected_version is not None and self.races > 0:
            self.races -= 1
            self._sessions[session.id].version += 1
        await super().commit(session, changes, expected_version=expected_version)


def test_conflicting_commit_is_retried_on_fresh_state(places, settings):
    store = _RacingStore(races=1)
    service = SessionService(store, places, settings=settings)

    async def scenario():
        session = await service.create_session("Alice")
        _, bob = await service.join(session.id, "Bob")
        after = await service.get_session(session.id)
        assert bob.id in after.participants
        assert after.version == 2

    asyncio.run(scenario())


def test_conflicts_beyond_the_retry_budget_surface(places):
    store = _RacingStore(races=5)
    service = SessionService(store, places, settings=Settings(session=SessionSettings(max_commit_attempts=2)))

    async def scenario():
        session = await service.create_session("Alice")
        with pytest.raises(ConcurrentModificationError) as exc:
            await service.join(session.id, "Bob")
        assert exc.value.code is ErrorCode.CONFLICT
        assert set((await service.get_session(session.id)).participants) == {session.host_id}

    asyncio.run(scenario())


def test_concurrent_votes_are_all_applied(service, places, place):
    places.results = [place(f"V{i}", f"Venue {i}", 40.01, -74.01, rating=4.0) for i in range(5)]

    async def scenario():
        session_id, alice, bob = await _ready_pair(service)
        await asyncio.gather(
            *(service.cast_vote(session_id, pid, f"V{i}", Decision.REJECT) for pid in (alice, bob) for i in range(5))
        )
        session = await service.get_session(session_id)
        assert len(session.votes) == 10

    asyncio.run(scenario())


class _RemoteStore(MemorySessionStore):
    """Shared store with a network round trip in front of every commit."""

    async def commit(self, session, changes=None, *, expected_version=None):
        await asyncio.sleep(0.05)
        await super().commit(session, changes, expected_version=expected_version)


def test_two_processes_voting_at_once_still_reach_the_match(places, place, settings):
    places.results = [place("V1", "Only Option", 40.01, -74.01, rating=4.0)]
    store = _RemoteStore()
    process_a = SessionService(store, places, settings=settings)
    process_b = SessionService(store, places, settings=settings)

    async def scenario():
        session_id, alice, bob = await _ready_pair(process_a)
        await asyncio.gather(
            process_a.cast_vote(session_id, alice, "V1", Decision.APPROVE),
            process_b.cast_vote(session_id, bob, "V1", Decision.APPROVE),
        )
        final = await process_b.get_session(session_id)
        assert {v.participant_id for v in final.votes} == {alice, bob}
        assert final.matched_venue is not None and final.matched_venue.id == "V1"

    asyncio.run(scenario())


def test_session_locks_are_not_kept_once_released(service):
    async def scenario():
        for i in range(50):
            with pytest.raises(SessionNotFoundError):
                await service.join(f"Z{i:05d}", "Mallory")
        session = await service.create_session("Alice")
        await service.join(session.id, "Bob")
        gc.collect()
        assert len(service._locks) == 0

    asyncio.run(scenario())
