"""
Vote ledger.

Votes are keyed by `(participant_id, venue_id)` with last-write-wins semantics: casting
again for the same pair replaces the previous decision in place. The ledger never
looks at the venue list, so votes for venues dropped by a refresh stay addressable;
the match detector only ever asks about venues that are currently listed.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from midmeet.domain.models import Decision, Vote, VoteTally


class VoteLedger:
    """In-memory view over a session's votes."""

    def __init__(self, votes: Iterable[Vote] = ()):
        self._votes: dict[tuple[str, str], Vote] = {}
        for vote in votes:
            self._votes[vote.key] = vote

    def __len__(self) -> int:
        return len(self._votes)

    def __iter__(self) -> Iterator[Vote]:
        return iter(self._votes.values())

    def cast(self, vote: Vote) -> Vote | None:
        """Upsert `vote`; return the decision it replaced, if any."""
        previous = self._votes.get(vote.key)
        self._votes[vote.key] = vote
        return previous

    def get(self, participant_id: str, venue_id: str) -> Vote | None:
        return self._votes.get((participant_id, venue_id))

    def approvers(self, venue_id: str) -> set[str]:
        return {
            v.participant_id
            for v in self._votes.values()
            if v.venue_id == venue_id and v.decision is Decision.APPROVE
        }

    def remove_participant(self, participant_id: str) -> int:
        """Drop every vote cast by `participant_id`; return how many were removed."""
        keys = [k for k in self._votes if k[0] == participant_id]
        for k in keys:
            del self._votes[k]
        return len(keys)

    def votes(self) -> list[Vote]:
        return list(self._votes.values())

    def tally(self, venue_ids: Iterable[str] | None = None) -> dict[str, VoteTally]:
        """Per-venue approve/reject counts.

        With `venue_ids`, every listed venue gets an entry (zeros included) and votes
        for unlisted venues are ignored; without it, every voted venue is counted.
        """
        out: dict[str, VoteTally] = {}
        if venue_ids is not None:
            out = {vid: VoteTally(venue_id=vid) for vid in venue_ids}
        for vote in self._votes.values():
            tally = out.get(vote.venue_id)
            if tally is None:
                if venue_ids is not None:
                    continue
                tally = out[vote.venue_id] = VoteTally(venue_id=vote.venue_id)
            if vote.decision is Decision.APPROVE:
                tally.approvals += 1
            else:
                tally.rejections += 1
        return out

    def counts_by_participant(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for vote in self._votes.values():
            counts[vote.participant_id] = counts.get(vote.participant_id, 0) + 1
        return counts
