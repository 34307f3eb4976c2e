"""
Domain models (Pydantic).

These types are the stable "contract" between layers:
- session state owned by the engine (`Session`, `Participant`, `Vote`)
- provider-derived values (`Location`, `Venue`)
- participant input (`VenueFilters`)
- the snapshot JSON pushed to subscribers (`Session.model_dump(mode="json")`)

Value types (`Location`, `Venue`, `Vote`) are frozen; `Session` and `Participant` are
mutated only by `midmeet.engine` on a private copy before being committed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


class LocationKind(str, Enum):
    LIVE = "live"
    MANUAL = "manual"


class MidpointMode(str, Enum):
    DYNAMIC = "dynamic"
    LOCKED = "locked"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class SessionPhase(str, Enum):
    FORMING = "forming"
    SEARCHING = "searching"
    VOTING = "voting"
    MATCHED = "matched"
    ENDED = "ended"


class Location(BaseModel):
    """A point in decimal degrees, from a device sensor (live) or a geocoder (manual)."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    kind: LocationKind = LocationKind.MANUAL
    address: str | None = None


class Participant(BaseModel):
    """One person in a session, identified by an anonymous session-scoped id."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    name: str
    location: Location | None = None
    is_ready: bool = False
    is_host: bool = False
    joined_at: datetime
    last_active_at: datetime

    @model_validator(mode="after")
    def _ready_requires_location(self) -> "Participant":
        if self.is_ready and self.location is None:
            raise ValueError("a participant cannot be ready without a location")
        return self


class Venue(BaseModel):
    """A candidate place; immutable within one search generation."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str | None = None
    address: str = ""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    rating: float | None = Field(default=None, ge=0, le=5)
    price_level: int | None = Field(default=None, ge=1, le=4)
    photo_ref: str | None = None
    types: list[str] = Field(default_factory=list)
    distance_km: float | None = Field(default=None, ge=0)


class Vote(BaseModel):
    """A participant's swipe on a venue; unique per (participant_id, venue_id)."""

    model_config = ConfigDict(frozen=True)

    participant_id: str
    venue_id: str
    decision: Decision
    cast_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.participant_id, self.venue_id)


class VenueFilters(BaseModel):
    """Search knobs any participant can change; a change triggers a venue refresh."""

    radius_m: int = Field(2000, ge=100, le=50_000)
    categories: list[str] = Field(default_factory=list)
    min_rating: float = Field(0, ge=0, le=5)
    max_price_level: int = Field(4, ge=1, le=4)

    @field_validator("categories")
    @classmethod
    def _normalize_categories(cls, categories: list[str]) -> list[str]:
        seen: list[str] = []
        for c in categories:
            norm = c.strip().lower() if c else ""
            if norm and norm not in seen:
                seen.append(norm)
        return seen


class VoteTally(BaseModel):
    """Aggregate decisions for one venue."""

    venue_id: str
    approvals: int = 0
    rejections: int = 0


class Session(BaseModel):
    """Full session state; also the snapshot published to subscribers."""

    id: str
    host_id: str
    participants: dict[str, Participant] = Field(default_factory=dict)
    midpoint: Location | None = None
    midpoint_mode: MidpointMode = MidpointMode.DYNAMIC
    venues: list[Venue] = Field(default_factory=list)
    votes: list[Vote] = Field(default_factory=list)
    matched_venue: Venue | None = None
    filters: VenueFilters = Field(default_factory=VenueFilters)
    is_locked: bool = False
    max_participants: int = Field(10, ge=1)
    venues_requested: bool = False
    notice: str | None = None
    version: int = 0
    created_at: datetime
    ended_at: datetime | None = None

    @property
    def all_ready(self) -> bool:
        return bool(self.participants) and all(p.is_ready for p in self.participants.values())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def phase(self) -> SessionPhase:
        if self.ended_at is not None:
            return SessionPhase.ENDED
        if self.matched_venue is not None:
            return SessionPhase.MATCHED
        if not self.all_ready:
            return SessionPhase.FORMING
        if not self.venues:
            return SessionPhase.SEARCHING
        return SessionPhase.VOTING

    def venue(self, venue_id: str) -> Venue | None:
        for v in self.venues:
            if v.id == venue_id:
                return v
        return None
