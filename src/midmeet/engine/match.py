"""
Match detection (all-approve rule).

A venue matches when every current participant has an approve vote for it. Venues are
scanned in candidate-list order and the first one that qualifies wins.

Matches are sticky: once set, a match is only replaced when the matched venue has
dropped out of the candidate list (after a refresh) and a different venue qualifies,
or when the host clears it explicitly. Removing a participant does not re-run
detection, so a match computed for the old participant set stays in place.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence

from midmeet.domain.models import Session, Venue
from midmeet.engine.votes import VoteLedger

logger = logging.getLogger(__name__)


def detect_match(
    participant_ids: Collection[str], ledger: VoteLedger, venues: Sequence[Venue]
) -> Venue | None:
    """Return the first venue every participant approved, or None."""
    if not participant_ids:
        return None
    required = set(participant_ids)
    for venue in venues:
        if required <= ledger.approvers(venue.id):
            return venue
    return None


def resolve_match(session: Session, ledger: VoteLedger) -> bool:
    """Update `session.matched_venue` in place; return True when it changed."""
    current = session.matched_venue
    if current is not None and session.venue(current.id) is not None:
        return False

    found = detect_match(session.participants.keys(), ledger, session.venues)
    if found is None or (current is not None and found.id == current.id):
        return False

    session.matched_venue = found
    logger.info("Session %s matched on venue %s (%s)", session.id, found.id, found.name)
    return True
