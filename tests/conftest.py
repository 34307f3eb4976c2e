"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from midmeet.config.settings import Settings
from midmeet.engine.service import SessionService
from midmeet.stores.memory import MemorySessionStore


def make_place(
    place_id: str | None,
    name: str,
    lat: float,
    lng: float,
    *,
    rating: float | None = None,
    price_level: int | None = None,
    types: tuple[str, ...] = ("restaurant", "food"),
) -> dict[str, Any]:
    """Build a raw record shaped like a Google Places Nearby Search result."""
    raw: dict[str, Any] = {
        "name": name,
        "vicinity": f"{name} Street 1",
        "geometry": {"location": {"lat": lat, "lng": lng}},
        "types": list(types),
    }
    if place_id is not None:
        raw["place_id"] = place_id
    if rating is not None:
        raw["rating"] = rating
    if price_level is not None:
        raw["price_level"] = price_level
    return raw


class StubPlaces:
    """Offline venue-search provider that records its calls."""

    def __init__(self, results: list[dict[str, Any]] | None = None, error: Exception | None = None):
        self.results = list(results or [])
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def search_nearby(self, *, center, radius_m, categories):
        self.calls.append({"center": center, "radius_m": radius_m, "categories": list(categories)})
        if self.error is not None:
            raise self.error
        return list(self.results)


@pytest.fixture(name="place")
def place_fixture():
    return make_place


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    # Built from model defaults so tests never depend on the developer's env or .env.
    return Settings()


@pytest.fixture(name="places")
def places_fixture() -> StubPlaces:
    return StubPlaces(
        [
            make_place("v-near", "Near Noodles", 40.011, -74.011, rating=4.2, price_level=2),
            make_place("v-far", "Far Pizza", 40.05, -74.05, rating=4.4, price_level=1),
            make_place("v-low", "Low Diner", 40.010, -74.010, rating=3.1),
        ]
    )


@pytest.fixture(name="store")
def store_fixture() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture(name="service")
def service_fixture(store, places, settings) -> SessionService:
    return SessionService(store, places, settings=settings)
