# src/midmeet/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/midmeet/config/defaults.yaml`, then optionally overridden by:
- an external YAML file via `MIDMEET_CONFIG_PATH` (replaces the packaged defaults)
- environment variables (e.g., `GOOGLE_MAPS_API_KEY`, `MIDMEET_DATABASE_URL`)

Design rule:
- Tuning knobs live in YAML, not hard-coded in the session engine.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from midmeet.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `midmeet.config`."""
    text = resources.files("midmeet.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "MidMeet"
    http_timeout_seconds: float = 10
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000


class CacheSettings(BaseModel):
    enabled: bool = True
    dir: str = ".cache/midmeet"
    default_ttl_seconds: int = 60 * 60


class StoreSettings(BaseModel):
    backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./midmeet.db"
    echo_sql: bool = False


class SessionSettings(BaseModel):
    code_length: int = Field(6, ge=4, le=12)
    participant_id_length: int = Field(20, ge=16, le=64)
    max_participants_default: int = Field(10, ge=1, le=100)
    max_name_length: int = Field(40, ge=1, le=200)
    code_generation_attempts: int = Field(20, ge=1)
    max_commit_attempts: int = Field(3, ge=1)
    require_ready_confirmation: bool = False
    location_refresh_seconds: float = Field(300, gt=0)


class VenueSettings(BaseModel):
    max_results: int = Field(20, ge=1, le=30)
    rating_tie_band: float = Field(0.5, gt=0)
    search_timeout_seconds: float = Field(8, gt=0)
    default_radius_m: int = Field(2000, ge=100, le=50_000)
    default_categories: list[str] = Field(default_factory=lambda: ["restaurant"])
    default_min_rating: float = Field(0, ge=0, le=5)
    default_max_price_level: int = Field(4, ge=1, le=4)


class PlacesSettings(BaseModel):
    base_url: str = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
    cache_ttl_seconds: int = 60 * 15


class GeocodingSettings(BaseModel):
    base_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    cache_ttl_seconds: int = 60 * 60 * 24


class ProviderSettings(BaseModel):
    api_key: str | None = None
    places: PlacesSettings = Field(default_factory=PlacesSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    venues: VenueSettings = Field(default_factory=VenueSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small to avoid exposing unsafe overrides.
    """
    load_dotenv_if_present()
    data = dict(data)
    cache_dir = os.getenv("MIDMEET_CACHE_DIR")
    if cache_dir:
        data.setdefault("cache", {})["dir"] = cache_dir

    log_level = os.getenv("MIDMEET_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    backend = os.getenv("MIDMEET_STORE_BACKEND")
    if backend:
        data.setdefault("store", {})["backend"] = backend
    database_url = os.getenv("MIDMEET_DATABASE_URL")
    if database_url:
        data.setdefault("store", {})["database_url"] = database_url

    api_key = os.getenv("GOOGLE_MAPS_API_KEY")
    if api_key:
        data.setdefault("providers", {})["api_key"] = api_key

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("MIDMEET_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
