"""Command-line entry points for the watchguard and tile-syncer robots."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

from clickplanet.client import ClickPlanetClient
from clickplanet.coordinates import TileCoordinatesMap, read_coordinates_from_file
from clickplanet.geolookup import CountryTilesMap, GeoLookup
from clickplanet.tile_syncer import TileSyncer
from clickplanet.watchguard import CountryWatchguard


def parse_watchguard_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="country-watchguard",
        description="Keep every tile of a country painted with a chosen country.",
    )
    parser.add_argument("--target-country", default="fr")
    parser.add_argument("--wanted-country", default="fr")
    parser.add_argument("--host", default="clickplanet.lol")
    parser.add_argument("--port", type=int, default=443)
    parser.add_argument("--unsecure", action="store_true", help="use plain HTTP and WS")
    parser.add_argument("--coordinates-file", default="coordinates.json")
    parser.add_argument("--geojson-file", default="countries.geojson", help="path to geojson file")
    return parser.parse_args(argv)


def parse_tile_syncer_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tile-syncer",
        description="Copy tile ownerships from a production server to a local one.",
    )
    parser.add_argument("--prod-host", default="clickplanet.lol", help="production server host")
    parser.add_argument("--prod-port", type=int, default=443, help="production server port")
    parser.add_argument("--coordinates-file", default="coordinates.json")
    parser.add_argument("--local-host", default="localhost", help="local server host")
    parser.add_argument("--local-port", type=int, default=3000, help="local server port")
    parser.add_argument(
        "--prod-unsecure", action="store_true", help="disable TLS for the production server"
    )
    parser.add_argument(
        "--local-unsecure",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="disable TLS for the local server",
    )
    return parser.parse_args(argv)


async def _run_watchguard(watchguard: CountryWatchguard, client: ClickPlanetClient) -> None:
    async with client:
        await watchguard.run()


def watchguard_main(argv: Sequence[str] | None = None) -> int:
    """Start the country watchguard robot."""
    args = parse_watchguard_args(argv)
    try:
        coordinates = read_coordinates_from_file(args.coordinates_file)
        tiles = TileCoordinatesMap.from_coordinates(coordinates)
        geo_lookup = GeoLookup.from_file(args.geojson_file)
        country_tiles = CountryTilesMap.load_or_build(geo_lookup, tiles)
        client = ClickPlanetClient(args.host, args.port, not args.unsecure)

        print(f"Initializing watchguard for {args.target_country} -> {args.wanted_country}")
        watchguard = CountryWatchguard(
            client,
            country_tiles,
            tiles,
            args.target_country.lower(),
            args.wanted_country.lower(),
        )
        asyncio.run(_run_watchguard(watchguard, client))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


async def _run_syncer(syncer: TileSyncer, *clients: ClickPlanetClient) -> None:
    try:
        await syncer.run()
    finally:
        for client in clients:
            await client.close()


def tile_syncer_main(argv: Sequence[str] | None = None) -> int:
    """Start the tile syncer robot."""
    args = parse_tile_syncer_args(argv)
    try:
        prod_client = ClickPlanetClient(args.prod_host, args.prod_port, not args.prod_unsecure)
        local_client = ClickPlanetClient(args.local_host, args.local_port, not args.local_unsecure)

        print(f"Initializing tile sync between {args.prod_host} and {args.local_host}")

        coordinates = read_coordinates_from_file(args.coordinates_file)
        tiles = TileCoordinatesMap.from_coordinates(coordinates)
        syncer = TileSyncer(prod_client, local_client, tiles)
        asyncio.run(_run_syncer(syncer, prod_client, local_client))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0