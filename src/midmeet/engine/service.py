"""
Session orchestrator.

`SessionService` is the single entrypoint for participant intents. Every intent follows
the same path:

1. take the session's `asyncio.Lock` (one per session code, per process)
2. load the session from the store and apply the change to a private copy
3. commit with compare-and-set on `Session.version`; on a conflict reload and reapply
4. publish the committed snapshot to the session's subscribers

Venue search is the one step that talks to the outside world. It runs in a worker
thread with a timeout and never while the session lock is held: the search reads the
midpoint/filters under the lock, releases it, searches, then applies the result to
whatever the session looks like by then.

Notes:
- The automatic search fires once per session, the first time everyone is ready and
  a midpoint exists. It runs as a background task; `drain()` awaits pending tasks.
- A failed search leaves an empty candidate list and a `notice` on the session.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from midmeet.config.settings import Settings, get_settings
from midmeet.core.ids import new_opaque_id, new_session_code, normalize_session_code
from midmeet.core.time import utc_now
from midmeet.domain.errors import (
    ConcurrentModificationError,
    DomainError,
    ErrorCode,
    InvalidArgumentError,
    SessionNotFoundError,
    UpstreamUnavailableError,
    VenueNotFoundError,
)
from midmeet.domain.models import (
    Decision,
    Location,
    MidpointMode,
    Participant,
    Session,
    Venue,
    VenueFilters,
    Vote,
    VoteTally,
)
from midmeet.engine import midpoint, registry
from midmeet.engine.insights import SessionInsights, build_insights
from midmeet.engine.match import resolve_match
from midmeet.engine.pubsub import SubscriberRegistry, Subscriber
from midmeet.engine.venues import VenueSearchProvider, default_filters, search_candidates
from midmeet.engine.votes import VoteLedger
from midmeet.stores.interfaces import SessionChanges, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Returned by a mutation that turned out to be a no-op; nothing is committed or published.
_UNCHANGED = object()

SEARCH_FAILED_NOTICE = "We couldn't load venues right now. Adjust the filters or try again in a moment."
NO_VENUES_NOTICE = "No venues matched. Try a wider radius or fewer filters."


class SessionService:
    """Applies intents to sessions, persists them and fans out snapshots."""

    def __init__(
        self,
        store: SessionStore,
        venue_search: VenueSearchProvider,
        *,
        settings: Settings | None = None,
        subscribers: SubscriberRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._venue_search = venue_search
        self._settings = settings or get_settings()
        self._subscribers = subscribers or SubscriberRegistry()
        self._clock = clock
        # A lock lives only while some intent holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._search_generation: dict[str, int] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def subscribers(self) -> SubscriberRegistry:
        return self._subscribers

    # -- plumbing ------------------------------------------------------------

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _load(self, session_id: str) -> Session:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _commit(self, before: Session, after: Session) -> None:
        after.version = before.version + 1
        await self._store.commit(after, SessionChanges.between(before, after), expected_version=before.version)

    def _claim_auto_search(self, session: Session) -> bool:
        if session.venues_requested or session.midpoint is None or not session.all_ready:
            return False
        session.venues_requested = True
        return True

    async def _apply(self, session_id: str, mutate: Callable[[Session], T]) -> tuple[Session, T]:
        """Run `mutate` against a fresh copy under the session lock and commit it."""
        session_id = normalize_session_code(session_id)
        attempts = self._settings.session.max_commit_attempts
        async with self._lock(session_id):
            for attempt in range(1, attempts + 1):
                before = await self._load(session_id)
                after = before.model_copy(deep=True)
                result = mutate(after)
                if result is _UNCHANGED:
                    return before, result
                auto_search = self._claim_auto_search(after)
                try:
                    await self._commit(before, after)
                except ConcurrentModificationError:
                    if attempt == attempts:
                        logger.warning("Giving up on session %s after %d conflicting commits", session_id, attempts)
                        raise
                    logger.info("Session %s changed underneath us; retrying (%d/%d)", session_id, attempt, attempts)
                    continue
                self._subscribers.publish(session_id, after)
                if auto_search:
                    self._schedule_search(session_id)
                return after, result
        raise ConcurrentModificationError(session_id)

    def _schedule_search(self, session_id: str) -> None:
        logger.info("Everyone in session %s is ready; searching venues", session_id)
        task = asyncio.get_running_loop().create_task(self._background_search(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_search(self, session_id: str) -> None:
        try:
            await self.refresh_venues(session_id)
        except DomainError as e:
            # Typically the session ended or lost its midpoint while we were queued.
            logger.warning("Automatic venue search for session %s skipped: %s", session_id, e)
        except Exception:
            logger.exception("Automatic venue search for session %s failed", session_id)

    async def drain(self) -> None:
        """Wait until every background venue search has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # -- lifecycle -----------------------------------------------------------

    async def create_session(
        self,
        host_name: str,
        *,
        max_participants: int | None = None,
        filters: VenueFilters | None = None,
    ) -> Session:
        """Open a new session with the caller as host; returns the first snapshot."""
        cfg = self._settings.session
        name = registry.validate_name(host_name, max_length=cfg.max_name_length)
        capacity = registry.validate_capacity(max_participants, cfg)

        host_id = new_opaque_id(cfg.participant_id_length)
        for _ in range(cfg.code_generation_attempts):
            candidate = new_session_code(cfg.code_length)
            if await self._store.exists(candidate):
                continue
            session = registry.new_session(
                code=candidate,
                host_id=host_id,
                host_name=name,
                now=self._clock(),
                filters=filters or default_filters(self._settings.venues),
                max_participants=capacity,
            )
            try:
                await self._store.commit(session, SessionChanges.everything(session))
            except ConcurrentModificationError:
                # Another process claimed the code between the check and the insert.
                continue
            logger.info("Created session %s (max %d participants)", session.id, capacity)
            return session
        raise DomainError(code=ErrorCode.CONFLICT, message="Could not allocate a session code. Please try again.")

    async def get_session(self, session_id: str) -> Session:
        return await self._load(normalize_session_code(session_id))

    async def join(self, session_id: str, name: str) -> tuple[Session, Participant]:
        cfg = self._settings.session
        cleaned = registry.validate_name(name, max_length=cfg.max_name_length)
        participant_id = new_opaque_id(cfg.participant_id_length)
        now = self._clock()

        session, participant = await self._apply(
            session_id,
            lambda s: registry.add_participant(s, participant_id=participant_id, name=cleaned, now=now),
        )
        logger.info("Participant %s joined session %s", participant.id, session.id)
        return session, participant

    async def end_session(self, session_id: str, actor_id: str) -> Session:
        """Host-only: delete the session, publish a final `ended` snapshot, drop subscribers."""
        session_id = normalize_session_code(session_id)
        async with self._lock(session_id):
            session = await self._load(session_id)
            registry.require_host(session, actor_id)
            final = session.model_copy(update={"ended_at": self._clock()})
            await self._store.delete_session_cascade(session_id)
            self._subscribers.publish(session_id, final)
            self._subscribers.close(session_id)
        self._search_generation.pop(session_id, None)
        logger.info("Session %s ended by host", session_id)
        return final

    # -- participants --------------------------------------------------------

    async def set_location(self, session_id: str, participant_id: str, location: Location) -> Session:
        require_confirmation = self._settings.session.require_ready_confirmation
        now = self._clock()

        def mutate(s: Session) -> None:
            registry.set_location(s, participant_id, location, now=now, require_confirmation=require_confirmation)
            midpoint.recompute(s)

        session, _ = await self._apply(session_id, mutate)
        return session

    async def set_ready(self, session_id: str, participant_id: str, ready: bool) -> Session:
        now = self._clock()
        session, _ = await self._apply(
            session_id, lambda s: registry.set_ready(s, participant_id, ready, now=now)
        )
        return session

    async def remove_participant(self, session_id: str, actor_id: str, participant_id: str) -> Session:
        def mutate(s: Session) -> None:
            registry.remove_participant(s, VoteLedger(s.votes), actor_id=actor_id, participant_id=participant_id)
            midpoint.recompute(s)

        session, _ = await self._apply(session_id, mutate)
        logger.info("Participant %s removed from session %s", participant_id, session.id)
        return session

    async def set_locked(self, session_id: str, actor_id: str, locked: bool) -> Session:
        session, _ = await self._apply(
            session_id, lambda s: registry.set_locked(s, actor_id=actor_id, locked=locked)
        )
        return session

    async def touch(self, session_id: str, participant_id: str) -> Session:
        now = self._clock()
        session, _ = await self._apply(session_id, lambda s: registry.touch(s, participant_id, now=now))
        return session

    async def set_midpoint_mode(self, session_id: str, participant_id: str, mode: MidpointMode) -> Session:
        def mutate(s: Session) -> None:
            registry.require_participant(s, participant_id)
            midpoint.set_mode(s, mode)

        session, _ = await self._apply(session_id, mutate)
        return session

    # -- venues & votes ------------------------------------------------------

    async def refresh_venues(self, session_id: str) -> Session:
        """Search venues around the current midpoint and replace the candidate list.

        Raises:
            InvalidArgumentError: If the session has no midpoint yet.
        """
        session_id = normalize_session_code(session_id)
        async with self._lock(session_id):
            session = await self._load(session_id)
            if session.midpoint is None:
                raise InvalidArgumentError("Set at least one location before searching for venues.")
            center, filters = session.midpoint, session.filters
            generation = self._search_generation.get(session_id, 0) + 1
            self._search_generation[session_id] = generation

        cfg = self._settings.venues
        venues: list[Venue] = []
        notice: str | None = None
        try:
            venues = await asyncio.wait_for(
                asyncio.to_thread(
                    search_candidates, self._venue_search, center=center, filters=filters, settings=cfg
                ),
                timeout=cfg.search_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Venue search for session %s timed out after %ss", session_id, cfg.search_timeout_seconds)
            notice = SEARCH_FAILED_NOTICE
        except UpstreamUnavailableError as e:
            logger.warning("Venue search for session %s failed: %s", session_id, e)
            notice = e.message
        else:
            if not venues:
                notice = NO_VENUES_NOTICE

        def apply_result(s: Session) -> Any:
            if self._search_generation.get(session_id) != generation:
                # A newer search started while this one was in flight.
                return _UNCHANGED
            s.venues = venues
            s.notice = notice
            resolve_match(s, VoteLedger(s.votes))
            return None

        result, _ = await self._apply(session_id, apply_result)
        logger.info("Session %s now has %d venue candidates", session_id, len(result.venues))
        return result

    async def change_filters(self, session_id: str, participant_id: str, filters: VenueFilters) -> Session:
        """Store new filters and, once a midpoint exists, re-run the venue search."""

        def mutate(s: Session) -> None:
            registry.require_participant(s, participant_id)
            s.filters = filters

        session, _ = await self._apply(session_id, mutate)
        if session.midpoint is None:
            return session
        return await self.refresh_venues(session.id)

    async def cast_vote(self, session_id: str, participant_id: str, venue_id: str, decision: Decision) -> Session:
        now = self._clock()

        def mutate(s: Session) -> None:
            registry.require_participant(s, participant_id)
            if s.venue(venue_id) is None:
                raise VenueNotFoundError(venue_id)
            ledger = VoteLedger(s.votes)
            ledger.cast(Vote(participant_id=participant_id, venue_id=venue_id, decision=decision, cast_at=now))
            s.votes = ledger.votes()
            s.participants[participant_id].last_active_at = now
            resolve_match(s, ledger)

        session, _ = await self._apply(session_id, mutate)
        return session

    async def clear_match(self, session_id: str, actor_id: str) -> Session:
        """Host-only: drop the current match and look for one again."""

        def mutate(s: Session) -> None:
            registry.require_host(s, actor_id)
            s.matched_venue = None
            resolve_match(s, VoteLedger(s.votes))

        session, _ = await self._apply(session_id, mutate)
        return session

    # -- read side -----------------------------------------------------------

    async def subscribe(self, session_id: str, callback: Subscriber) -> tuple[Callable[[], None], Session]:
        """Attach `callback` to the session; returns (unsubscribe, current snapshot)."""
        session = await self.get_session(session_id)
        return self._subscribers.subscribe(session.id, callback), session

    async def tallies(self, session_id: str) -> dict[str, VoteTally]:
        session = await self.get_session(session_id)
        return VoteLedger(session.votes).tally(v.id for v in session.venues)

    async def insights(self, session_id: str) -> SessionInsights:
        session = await self.get_session(session_id)
        return build_insights(session, now=self._clock())
