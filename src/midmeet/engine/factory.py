"""
Wiring helpers shared by the API and the CLI.

Everything here is a plain function of `Settings` so tests can build a fully wired
service around stubs without touching module-level singletons.
"""

from __future__ import annotations

import logging

from midmeet.config.settings import Settings
from midmeet.core.cache import FileCache
from midmeet.core.env import resolve_project_path
from midmeet.engine.service import SessionService
from midmeet.engine.venues import VenueSearchProvider
from midmeet.providers.geocoding import GeocodingClient
from midmeet.providers.places import PlacesClient
from midmeet.stores.interfaces import SessionStore
from midmeet.stores.memory import MemorySessionStore
from midmeet.stores.sql import SqlSessionStore

logger = logging.getLogger(__name__)


def build_cache(settings: Settings) -> FileCache:
    return FileCache(
        resolve_project_path(settings.cache.dir),
        enabled=settings.cache.enabled,
        default_ttl_seconds=settings.cache.default_ttl_seconds,
    )


def resolve_database_url(url: str) -> str:
    """Anchor relative SQLite paths (``sqlite:///./x.db``) at the project root."""
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url.startswith(prefix + "/") or url == prefix + ":memory:":
        return url
    return prefix + str(resolve_project_path(url[len(prefix):]))


def build_store(settings: Settings) -> SessionStore:
    if settings.store.backend == "sql":
        url = resolve_database_url(settings.store.database_url)
        logger.info("Using SQL session store at %s", url)
        return SqlSessionStore.from_url(url, echo=settings.store.echo_sql)
    return MemorySessionStore()


def build_service(
    settings: Settings,
    *,
    store: SessionStore | None = None,
    venue_search: VenueSearchProvider | None = None,
    cache: FileCache | None = None,
) -> SessionService:
    if venue_search is None:
        venue_search = PlacesClient(settings, cache or build_cache(settings))
    return SessionService(store or build_store(settings), venue_search, settings=settings)


def build_geocoder(settings: Settings, cache: FileCache | None = None) -> GeocodingClient:
    return GeocodingClient(settings, cache or build_cache(settings))
