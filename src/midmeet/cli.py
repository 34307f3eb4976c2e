"""
MidMeet CLI entrypoint.

- `serve`: run the HTTP + WebSocket API with uvicorn.
- `midpoint`: compute the meeting point for a handful of coordinates or addresses.
- `venues`: run the venue search pipeline around a point, as a session would.

The offline commands are handy for checking an API key or tuning `venues.*` settings
without opening a session.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from midmeet.config.settings import get_settings
from midmeet.core.geo import centroid, distance_km
from midmeet.core.logging import configure_logging
from midmeet.domain.errors import DomainError, InvalidArgumentError
from midmeet.domain.models import Location, VenueFilters
from midmeet.engine.factory import build_cache, build_geocoder
from midmeet.engine.venues import search_candidates
from midmeet.providers.places import PlacesClient


def _parse_point(value: str) -> Location:
    """Parse `LAT,LNG` into a manual location."""
    try:
        lat_s, lng_s = value.split(",", 1)
        return Location(lat=float(lat_s), lng=float(lng_s))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid point '{value}', expected LAT,LNG") from e


def _resolve_points(args: argparse.Namespace) -> list[Location]:
    points = list(args.point or [])
    if args.address:
        geocoder = build_geocoder(get_settings())
        for address in args.address:
            location = geocoder.forward(address)
            if location is None:
                raise InvalidArgumentError(f"No match for address '{address}'.")
            points.append(location)
    return points


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "midmeet.api.app:app",
        host=args.host or settings.app.host,
        port=int(args.port or settings.app.port),
        reload=bool(args.reload),
        log_level=(args.log_level or settings.app.log_level).lower(),
    )
    return 0


def _cmd_midpoint(args: argparse.Namespace) -> int:
    points = _resolve_points(args)
    lat, lng = centroid(points)
    center = Location(lat=lat, lng=lng)

    if args.json:
        payload = {
            "midpoint": center.model_dump(mode="json"),
            "distances_km": [round(distance_km(p, center), 3) for p in points],
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0

    print(f"Midpoint: {lat:.6f},{lng:.6f}")
    for p in points:
        label = p.address or f"{p.lat:.5f},{p.lng:.5f}"
        print(f"  - {label}: {distance_km(p, center):.2f} km away")
    return 0


def _cmd_venues(args: argparse.Namespace) -> int:
    settings = get_settings()
    points = _resolve_points(args)
    if not points:
        raise InvalidArgumentError("Pass at least one --point or --address.")
    lat, lng = centroid(points)
    center = Location(lat=lat, lng=lng)

    filters = VenueFilters(
        radius_m=args.radius if args.radius is not None else settings.venues.default_radius_m,
        categories=args.category or list(settings.venues.default_categories),
        min_rating=args.min_rating if args.min_rating is not None else settings.venues.default_min_rating,
        max_price_level=(
            args.max_price if args.max_price is not None else settings.venues.default_max_price_level
        ),
    )
    client = PlacesClient(settings, build_cache(settings))
    venues = search_candidates(client, center=center, filters=filters, settings=settings.venues)

    if args.json:
        print(json.dumps([v.model_dump(mode="json") for v in venues], ensure_ascii=False, indent=2))
        return 0

    print(f"Venues around {lat:.5f},{lng:.5f} (radius {filters.radius_m} m):")
    for i, v in enumerate(venues, start=1):
        rating = f"{v.rating:.1f}" if v.rating is not None else "-"
        price = "$" * v.price_level if v.price_level else "?"
        print(f"{i:>2}. {v.name}  rating={rating} price={price} {v.distance_km or 0:.2f} km  [{v.category or 'other'}]")
    if not venues:
        print("  (no venues matched)")
    return 0


def _add_point_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--point", action="append", type=_parse_point, default=[], help="Repeatable. LAT,LNG")
    p.add_argument("--address", action="append", default=[], help="Repeatable. Geocoded via Google.")
    p.add_argument("--json", action="store_true", help="Output machine-readable JSON")


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the MidMeet CLI."""
    parser = argparse.ArgumentParser(prog="midmeet")
    sub = parser.add_subparsers(dest="command", required=True)

    srv = sub.add_parser("serve", help="Run the API server.")
    srv.add_argument("--host", type=str, default=None)
    srv.add_argument("--port", type=int, default=None)
    srv.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")
    srv.add_argument("--log-level", type=str, default=None)
    srv.set_defaults(func=_cmd_serve)

    mid = sub.add_parser("midpoint", help="Compute the meeting midpoint for several locations.")
    _add_point_args(mid)
    mid.set_defaults(func=_cmd_midpoint)

    ven = sub.add_parser("venues", help="Search and rank venues around the midpoint of several locations.")
    _add_point_args(ven)
    ven.add_argument("--radius", type=int, default=None, help="Search radius in metres.")
    ven.add_argument("--category", action="append", default=[], help="Repeatable. Google place type.")
    ven.add_argument("--min-rating", type=float, default=None)
    ven.add_argument("--max-price", type=int, default=None, choices=[1, 2, 3, 4])
    ven.set_defaults(func=_cmd_venues)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m midmeet.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    try:
        return int(func(args))
    except DomainError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
