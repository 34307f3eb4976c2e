from __future__ import annotations

# Venue candidate repository.
#
# Turns raw venue-search records into the ranked, capped candidate list a session
# votes on:
# - normalize provider records (tolerating missing optional fields),
# - re-filter locally by rating / price (providers do not always honour filters),
# - dedupe by place id (first occurrence wins),
# - rank by rating band, then distance from the midpoint,
# - cap at `venues.max_results`.
#
# The provider call itself happens in `search_candidates`; the session service runs it
# in a worker thread, outside the session lock.

import logging
import math
from collections.abc import Iterable
from typing import Any, Protocol

from midmeet.config.settings import VenueSettings
from midmeet.core.geo import distance_km
from midmeet.core.ids import new_opaque_id
from midmeet.domain.errors import UpstreamUnavailableError
from midmeet.domain.models import Location, Venue, VenueFilters

logger = logging.getLogger(__name__)


class VenueSearchProvider(Protocol):
    def search_nearby(
        self, *, center: Location, radius_m: int, categories: list[str]
    ) -> list[dict[str, Any]]: ...


def effective_filters(filters: VenueFilters, settings: VenueSettings) -> VenueFilters:
    """Fill empty categories with the configured defaults."""
    if filters.categories:
        return filters
    return filters.model_copy(update={"categories": list(settings.default_categories)})


def default_filters(settings: VenueSettings) -> VenueFilters:
    return VenueFilters(
        radius_m=settings.default_radius_m,
        categories=list(settings.default_categories),
        min_rating=settings.default_min_rating,
        max_price_level=settings.default_max_price_level,
    )


def _float_or_none(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _pick_category(types: list[str], requested: list[str]) -> str | None:
    for c in requested:
        if c in types:
            return c
    return types[0] if types else None


def venue_from_place(
    raw: dict[str, Any], *, center: Location, requested_categories: list[str]
) -> Venue | None:
    """Normalize one provider record; None when it lacks a name or coordinates."""
    name = str(raw.get("name") or "").strip()
    location = ((raw.get("geometry") or {}).get("location")) or {}
    lat = _float_or_none(location.get("lat"))
    lng = _float_or_none(location.get("lng"))
    if not name or lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None

    rating = _float_or_none(raw.get("rating"))
    if rating is not None:
        rating = min(5.0, max(0.0, rating))

    # Google uses 0 for "free"; we treat it (and anything out of range) as unknown.
    price = raw.get("price_level")
    price_level = price if isinstance(price, int) and not isinstance(price, bool) and 1 <= price <= 4 else None

    photos = raw.get("photos") or []
    photo_ref = None
    if isinstance(photos, list) and photos and isinstance(photos[0], dict):
        photo_ref = photos[0].get("photo_reference") or None

    types = [str(t).lower() for t in (raw.get("types") or []) if t]
    venue_id = str(raw.get("place_id") or "").strip() or f"local-{new_opaque_id()}"

    venue = Venue(
        id=venue_id,
        name=name,
        category=_pick_category(types, requested_categories),
        address=str(raw.get("vicinity") or raw.get("formatted_address") or ""),
        lat=lat,
        lng=lng,
        rating=rating,
        price_level=price_level,
        photo_ref=photo_ref,
        types=types,
    )
    return venue.model_copy(update={"distance_km": round(distance_km(center, venue), 3)})


def passes_filters(venue: Venue, filters: VenueFilters) -> bool:
    if filters.min_rating > 0 and (venue.rating is None or venue.rating < filters.min_rating):
        return False
    if venue.price_level is not None and venue.price_level > filters.max_price_level:
        return False
    return True


def dedupe(venues: Iterable[Venue]) -> list[Venue]:
    seen: set[str] = set()
    out: list[Venue] = []
    for v in venues:
        if v.id in seen:
            continue
        seen.add(v.id)
        out.append(v)
    return out


def rank_venues(venues: list[Venue], *, band: float = 0.5) -> list[Venue]:
    """Sort by rating band (descending), then distance from the midpoint (ascending).

    Ratings are bucketed into `band`-wide bands so that, e.g., 4.1 and 4.4 tie and the
    closer venue wins. Unrated venues sort as rating 0. The sort is stable, so full
    ties keep provider order.
    """

    def key(v: Venue) -> tuple[int, float]:
        bucket = math.floor((v.rating or 0.0) / band + 1e-9)
        dist = v.distance_km if v.distance_km is not None else math.inf
        return (-bucket, dist)

    return sorted(venues, key=key)


def build_candidates(
    raw_places: Iterable[dict[str, Any]],
    *,
    center: Location,
    filters: VenueFilters,
    settings: VenueSettings,
) -> list[Venue]:
    """Run the full normalize -> filter -> dedupe -> rank -> cap pipeline."""
    normalized = []
    skipped = 0
    for raw in raw_places:
        venue = venue_from_place(raw, center=center, requested_categories=filters.categories) if isinstance(raw, dict) else None
        if venue is None:
            skipped += 1
            continue
        normalized.append(venue)
    if skipped:
        logger.debug("Skipped %d venue records without name/coordinates", skipped)

    kept = [v for v in normalized if passes_filters(v, filters)]
    ranked = rank_venues(dedupe(kept), band=settings.rating_tie_band)
    return ranked[: settings.max_results]


def search_candidates(
    provider: VenueSearchProvider,
    *,
    center: Location,
    filters: VenueFilters,
    settings: VenueSettings,
) -> list[Venue]:
    """Query the provider and build the candidate list (blocking).

    Raises:
        UpstreamUnavailableError: When the provider fails.
    """
    filters = effective_filters(filters, settings)
    try:
        raw = provider.search_nearby(center=center, radius_m=filters.radius_m, categories=filters.categories)
    except UpstreamUnavailableError:
        raise
    except Exception as e:
        logger.warning("Venue search failed: %s", e)
        raise UpstreamUnavailableError() from e
    return build_candidates(raw or [], center=center, filters=filters, settings=settings)
