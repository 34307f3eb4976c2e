"""
Geocoding client (Google Geocoding API).

Used for the manual-entry path: a participant who will not share a live position types
an address instead. `forward` turns an address into a `Location`; `reverse` gives the
human-readable address shown next to a live position.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from midmeet.config.settings import Settings
from midmeet.core.cache import FileCache
from midmeet.core.http import get_json
from midmeet.domain.errors import InvalidArgumentError, UpstreamUnavailableError
from midmeet.domain.models import Location, LocationKind

logger = logging.getLogger(__name__)


class GeocodingClient:
    """Forward and reverse geocoding with an on-disk cache."""

    def __init__(self, settings: Settings, cache: FileCache):
        self._settings = settings
        self._cache = cache

    def _lookup(self, cache_key: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        if not self._settings.providers.api_key:
            raise UpstreamUnavailableError("Geocoding is not configured. Set GOOGLE_MAPS_API_KEY.")

        def builder() -> list[dict[str, Any]]:
            payload = get_json(
                self._settings.providers.geocoding.base_url,
                params={**params, "key": self._settings.providers.api_key},
                timeout_seconds=self._settings.app.http_timeout_seconds,
            )
            status = str((payload or {}).get("status") or "UNKNOWN") if isinstance(payload, dict) else "INVALID"
            if status not in {"OK", "ZERO_RESULTS"}:
                raise ValueError(f"Geocoding API status {status}")
            return [r for r in (payload.get("results") or []) if isinstance(r, dict)]

        try:
            return self._cache.get_or_set(
                "geocode",
                cache_key,
                builder,
                ttl_seconds=int(self._settings.providers.geocoding.cache_ttl_seconds),
                stale_if_error=True,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoding failed for %s: %s", cache_key, e)
            raise UpstreamUnavailableError() from e

    def forward(self, address: str) -> Location | None:
        """Resolve `address` to a manual location, or None when nothing matches."""
        query = " ".join((address or "").split())
        if not query:
            raise InvalidArgumentError("Enter an address to look up.")
        results = self._lookup(f"forward:{query.lower()}", {"address": query})
        if not results:
            return None
        first = results[0]
        loc = (first.get("geometry") or {}).get("location") or {}
        try:
            lat, lng = float(loc["lat"]), float(loc["lng"])
        except (KeyError, TypeError, ValueError):
            return None
        return Location(
            lat=lat,
            lng=lng,
            kind=LocationKind.MANUAL,
            address=first.get("formatted_address") or query,
        )

    def reverse(self, lat: float, lng: float) -> str | None:
        """Return the best formatted address for a coordinate, if any."""
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise InvalidArgumentError("Coordinates are out of range.")
        results = self._lookup(f"reverse:{lat:.5f}:{lng:.5f}", {"latlng": f"{lat},{lng}"})
        for r in results:
            address = r.get("formatted_address")
            if address:
                return str(address)
        return None
