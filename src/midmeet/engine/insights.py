"""
Session insights.

Read-only statistics shown next to the swipe deck: how long the group has been at it,
how the votes split, who is most engaged, and which venue categories dominate.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from midmeet.core.time import utc_now
from midmeet.domain.models import Decision, Session
from midmeet.engine.votes import VoteLedger


class ParticipantEngagement(BaseModel):
    participant_id: str
    name: str
    votes: int
    is_ready: bool
    has_location: bool


class CategoryCount(BaseModel):
    category: str
    count: int


class SessionInsights(BaseModel):
    session_id: str
    duration_minutes: int = Field(..., ge=0)
    total_votes: int
    total_approvals: int
    total_rejections: int
    approval_rate: float
    venues_shown: int
    venues_with_votes: int
    matched: bool
    participants: list[ParticipantEngagement]
    most_active: ParticipantEngagement | None
    top_categories: list[CategoryCount]


def build_insights(session: Session, *, now: datetime | None = None, top_n: int = 3) -> SessionInsights:
    now = now or utc_now()
    ledger = VoteLedger(session.votes)
    votes = ledger.votes()

    approvals = sum(1 for v in votes if v.decision is Decision.APPROVE)
    rejections = len(votes) - approvals
    approval_rate = round(approvals / len(votes) * 100, 1) if votes else 0.0

    per_participant = ledger.counts_by_participant()
    engagement = [
        ParticipantEngagement(
            participant_id=p.id,
            name=p.name,
            votes=per_participant.get(p.id, 0),
            is_ready=p.is_ready,
            has_location=p.location is not None,
        )
        for p in session.participants.values()
    ]
    # Ties go to whoever joined first.
    most_active = max(engagement, key=lambda e: e.votes, default=None)
    if most_active is not None and most_active.votes == 0:
        most_active = None

    category_counts: dict[str, int] = {}
    for venue in session.venues:
        category = venue.category or "other"
        category_counts[category] = category_counts.get(category, 0) + 1
    top = sorted(category_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]

    elapsed = max(0.0, (now - session.created_at).total_seconds())
    return SessionInsights(
        session_id=session.id,
        duration_minutes=int(elapsed // 60),
        total_votes=len(votes),
        total_approvals=approvals,
        total_rejections=rejections,
        approval_rate=approval_rate,
        venues_shown=len(session.venues),
        venues_with_votes=len({v.venue_id for v in votes}),
        matched=session.matched_venue is not None,
        participants=engagement,
        most_active=most_active,
        top_categories=[CategoryCount(category=c, count=n) for c, n in top],
    )
