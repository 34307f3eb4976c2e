"""
Midpoint calculator.

- Dynamic mode: the midpoint follows every location change and removal.
- Locked mode: the first computed midpoint is frozen; later joins and moves do not
  shift it.

Every participant with a known location contributes, ready or not: someone who set a
location and then un-readied still counts with their last known position.
"""

from __future__ import annotations

from midmeet.core.geo import centroid
from midmeet.domain.models import Location, LocationKind, MidpointMode, Session


def recompute(session: Session) -> bool:
    """Recompute `session.midpoint` in place; return True when it changed."""
    if session.midpoint_mode is MidpointMode.LOCKED and session.midpoint is not None:
        return False

    known = [p.location for p in session.participants.values() if p.location is not None]
    if known:
        lat, lng = centroid(known)
        midpoint: Location | None = Location(lat=lat, lng=lng, kind=LocationKind.MANUAL)
    else:
        midpoint = None

    changed = midpoint != session.midpoint
    session.midpoint = midpoint
    return changed


def set_mode(session: Session, mode: MidpointMode) -> None:
    """Switch modes; locking snapshots the freshest midpoint before freezing it."""
    if mode is session.midpoint_mode is MidpointMode.LOCKED:
        return
    session.midpoint_mode = MidpointMode.DYNAMIC
    recompute(session)
    session.midpoint_mode = mode
