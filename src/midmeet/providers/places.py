"""
Venue search client (Google Places Nearby Search).

`PlacesClient.search_nearby` returns raw Places result records; normalization,
filtering and ranking happen in `midmeet.engine.venues`. One request is made per
category because Nearby Search accepts a single `type` per call.

Responses are cached per (center, radius, category) and served stale when the
provider fails, so a flaky network does not blank out a group's candidate list.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from midmeet.config.settings import Settings
from midmeet.core.cache import FileCache
from midmeet.core.http import get_json
from midmeet.domain.errors import UpstreamUnavailableError
from midmeet.domain.models import Location

logger = logging.getLogger(__name__)

_OK_STATUSES = {"OK", "ZERO_RESULTS"}


class PlacesApiError(RuntimeError):
    """The Places API answered with a non-OK status."""

    def __init__(self, status: str, message: str | None = None):
        super().__init__(f"Places API status {status}: {message or 'no message'}")
        self.status = status


class PlacesClient:
    """Fetches and caches Nearby Search results."""

    def __init__(self, settings: Settings, cache: FileCache):
        self._settings = settings
        self._cache = cache

    def _fetch_nearby(self, center: Location, radius_m: int, category: str) -> list[dict[str, Any]]:
        params = {
            "location": f"{center.lat},{center.lng}",
            "radius": int(radius_m),
            "type": category,
            "key": self._settings.providers.api_key,
        }
        payload = get_json(
            self._settings.providers.places.base_url,
            params=params,
            timeout_seconds=self._settings.app.http_timeout_seconds,
        )
        if not isinstance(payload, dict):
            raise PlacesApiError("INVALID_RESPONSE")
        status = str(payload.get("status") or "UNKNOWN")
        if status not in _OK_STATUSES:
            raise PlacesApiError(status, payload.get("error_message"))
        results = payload.get("results") or []
        return [r for r in results if isinstance(r, dict)]

    def search_nearby(self, *, center: Location, radius_m: int, categories: list[str]) -> list[dict[str, Any]]:
        """Return raw place records for every category, in category order.

        Raises:
            UpstreamUnavailableError: Missing API key, transport error or a non-OK status
                with no cached fallback.
        """
        if not self._settings.providers.api_key:
            raise UpstreamUnavailableError("Venue search is not configured. Set GOOGLE_MAPS_API_KEY.")

        ttl_seconds = int(self._settings.providers.places.cache_ttl_seconds)
        records: list[dict[str, Any]] = []
        for category in categories:
            cache_key = f"nearby:{center.lat:.5f}:{center.lng:.5f}:{int(radius_m)}:{category}"

            def builder(category: str = category) -> list[dict[str, Any]]:
                logger.info(
                    "Searching places lat=%.5f lng=%.5f radius=%d type=%s",
                    center.lat,
                    center.lng,
                    radius_m,
                    category,
                )
                return self._fetch_nearby(center, radius_m, category)

            try:
                results = self._cache.get_or_set(
                    "places",
                    cache_key,
                    builder,
                    ttl_seconds=ttl_seconds,
                    stale_if_error=True,
                )
            except (httpx.HTTPError, PlacesApiError, ValueError) as e:
                logger.warning("Places search failed for type=%s: %s", category, e)
                raise UpstreamUnavailableError() from e
            records.extend(r for r in results if isinstance(r, dict))
        return records
