"""Store interfaces (repository pattern).

Stores must be swappable and speak domain models. Every method is a coroutine because
real backends are remote request/response services.

Consistency contract:
- `commit(session, changes, expected_version=n)` writes the session fields and the
  changed children as one unit, guarded by a compare-and-set on `Session.version`.
  A mismatch raises `ConcurrentModificationError` and writes nothing.
- A reader sees either the whole commit or none of it, never a bumped version with
  stale children.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from midmeet.domain.models import Participant, Session, Venue, Vote


@dataclass
class SessionChanges:
    """Child records touched by one commit.

    `venues` is None when the venue list is unchanged; otherwise it replaces the
    stored list in order. Removing a participant also removes every vote they cast.
    """

    participants: list[Participant] = field(default_factory=list)
    removed_participants: list[str] = field(default_factory=list)
    venues: list[Venue] | None = None
    votes: list[Vote] = field(default_factory=list)

    @classmethod
    def everything(cls, session: Session) -> SessionChanges:
        return cls(
            participants=list(session.participants.values()),
            venues=list(session.venues),
            votes=list(session.votes),
        )

    @classmethod
    def between(cls, before: Session, after: Session) -> SessionChanges:
        previous_votes = {v.key: v for v in before.votes}
        return cls(
            participants=[p for pid, p in after.participants.items() if before.participants.get(pid) != p],
            removed_participants=sorted(before.participants.keys() - after.participants.keys()),
            venues=list(after.venues) if before.venues != after.venues else None,
            votes=[v for v in after.votes if previous_votes.get(v.key) != v],
        )


class SessionStore(ABC):
    """Interface for session persistence operations."""

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        """Return the full session (with children), or None if not found."""
        ...

    @abstractmethod
    async def exists(self, session_id: str) -> bool:
        """Check whether a live session uses this code."""
        ...

    @abstractmethod
    async def commit(
        self,
        session: Session,
        changes: SessionChanges | None = None,
        *,
        expected_version: int | None = None,
    ) -> None:
        """Atomically write session fields plus `changes`.

        With `expected_version=None` the session is created and the code must be free.

        Raises:
            ConcurrentModificationError: If the stored version is not `expected_version`,
                or on create when the code is already taken.
            SessionNotFoundError: If `expected_version` is given and the session is gone.
        """
        ...

    @abstractmethod
    async def delete_session_cascade(self, session_id: str) -> None:
        """Delete the session and all participants, venues and votes."""
        ...
