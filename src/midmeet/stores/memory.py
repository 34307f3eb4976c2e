"""In-process implementation of the SessionStore.

Useful for a single-process deployment and for tests. Records are deep-copied on the
way in and out so callers can never alias stored state. A commit builds the new record
off to the side and swaps it in with one assignment, so there is no await point where
a reader could observe half of it.
"""

from __future__ import annotations

from midmeet.domain.errors import ConcurrentModificationError, SessionNotFoundError
from midmeet.domain.models import Session
from midmeet.stores.interfaces import SessionChanges, SessionStore


class MemorySessionStore(SessionStore):
    """Dict-backed session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def get(self, session_id: str) -> Session | None:
        record = self._sessions.get(session_id)
        return record.model_copy(deep=True) if record is not None else None

    async def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def commit(
        self,
        session: Session,
        changes: SessionChanges | None = None,
        *,
        expected_version: int | None = None,
    ) -> None:
        existing = self._sessions.get(session.id)
        if expected_version is None:
            if existing is not None:
                raise ConcurrentModificationError(session.id)
            participants, venues, votes = {}, [], []
        else:
            if existing is None:
                raise SessionNotFoundError(session.id)
            if existing.version != expected_version:
                raise ConcurrentModificationError(session.id)
            participants = dict(existing.participants)
            venues = list(existing.venues)
            votes = list(existing.votes)

        changes = changes or SessionChanges()
        for pid in changes.removed_participants:
            participants.pop(pid, None)
        removed = set(changes.removed_participants)
        votes = [v for v in votes if v.participant_id not in removed]
        for participant in changes.participants:
            participants[participant.id] = participant
        if changes.venues is not None:
            venues = list(changes.venues)
        by_key = {v.key: i for i, v in enumerate(votes)}
        for vote in changes.votes:
            if vote.key in by_key:
                votes[by_key[vote.key]] = vote
            else:
                by_key[vote.key] = len(votes)
                votes.append(vote)

        record = session.model_copy(update={"participants": participants, "venues": venues, "votes": votes})
        self._sessions[session.id] = record.model_copy(deep=True)

    async def delete_session_cascade(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
