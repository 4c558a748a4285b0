"""Mapping tiles to the countries whose borders contain them."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Iterator, Sequence

from clickplanet.coordinates import TileCoordinatesMap
from clickplanet.model import TileVertex

TILE_TO_COUNTRIES_FILE = "tile_to_countries.json"
COUNTRY_TO_TILES_FILE = "country_to_tiles.json"
DEFAULT_GEOJSON_FILE = "countries.geojson"

Point = tuple[float, float]


def uv_to_latlong(u: float, v: float) -> tuple[float, float]:
    """Convert UV coordinates to (longitude, latitude) in degrees."""
    return (u - 0.5) * 360.0, (v - 0.5) * 180.0


def point_in_polygon(point: Point, polygon: Sequence[Point]) -> bool:
    """Even-odd ray casting test of a point against a ring."""
    if not polygon:
        return False
    x, y = point
    inside = False
    previous = list(polygon[-1:]) + list(polygon[:-1])
    for (xi, yi), (xj, yj) in zip(polygon, previous):
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
    return inside


@dataclass
class CountryPolygon:
    """A country's outline as a list of rings of (longitude, latitude) points."""

    country_code: str
    name: str
    coordinates: list[list[Point]] = field(default_factory=list)

    def envelope(self) -> tuple[Point, Point]:
        """Bounding box as ((min_x, min_y), (max_x, max_y))."""
        points = [p for ring in self.coordinates for p in ring]
        if not points:
            return (math.inf, math.inf), (-math.inf, -math.inf)
        xs = [x for x, _ in points]
        ys = [y for _, y in points]
        return (min(xs), min(ys)), (max(xs), max(ys))

    def distance_2(self, point: Point) -> float:
        """Squared distance from a point to the bounding box; zero inside it."""
        (min_x, min_y), (max_x, max_y) = self.envelope()
        x, y = point
        dx = max(min_x - x, 0.0, x - max_x)
        dy = max(min_y - y, 0.0, y - max_y)
        return dx * dx + dy * dy


class GeoLookup:
    """Finds the country containing a tile."""

    def __init__(self, polygons: Sequence[CountryPolygon] = ()) -> None:
        self.polygons = list(polygons)

    @classmethod
    def from_file(cls, path: str | PathLike) -> "GeoLookup":
        with open(path, encoding="utf-8") as handle:
            return cls.from_geojson(handle.read())

    @classmethod
    def from_default_location(cls) -> "GeoLookup":
        return cls.from_file(DEFAULT_GEOJSON_FILE)

    @classmethod
    def from_geojson(cls, geojson_data: str) -> "GeoLookup":
        """Load the MultiPolygon features of a GeoJSON FeatureCollection."""
        document = json.loads(geojson_data)
        if not isinstance(document, dict) or not isinstance(document.get("type"), str):
            raise ValueError("not a GeoJSON object")
        polygons = []
        if document["type"] == "FeatureCollection":
            for feature in document.get("features") or []:
                geometry = feature.get("geometry")
                if not geometry or geometry.get("type") != "MultiPolygon":
                    continue
                properties = feature.get("properties") or {}
                code = properties.get("ISO_A2")
                name = properties.get("ADMIN")
                rings = [
                    [(float(pos[0]), float(pos[1])) for pos in ring]
                    for polygon in geometry.get("coordinates", [])
                    for ring in polygon
                ]
                polygons.append(
                    CountryPolygon(
                        country_code=code if isinstance(code, str) else "",
                        name=name if isinstance(name, str) else "",
                        coordinates=rings,
                    )
                )
        return cls(polygons)

    def find_country(self, tile: TileVertex) -> str | None:
        """Lower-case country code of the country containing the tile, if any."""
        point = uv_to_latlong(tile.uv.u, tile.uv.v)
        for country in sorted(self.polygons, key=lambda c: c.distance_2(point)):
            if any(point_in_polygon(point, ring) for ring in country.coordinates):
                return country.country_code.lower()
        return None


@dataclass(frozen=True)
class CountryTilesStatistics:
    total_tiles: int
    assigned_tiles: int
    unassigned_tiles: int
    country_counts: dict[str, int]


@dataclass
class CountryTilesMap:
    """Which tiles belong to which country."""

    country_tiles: dict[str, list[int]] = field(default_factory=dict)
    unassigned_tiles: list[int] = field(default_factory=list)
    tile_to_country: dict[int, str] = field(default_factory=dict)

    @classmethod
    def load_or_build(
        cls,
        geo_lookup: GeoLookup,
        tile_coords: TileCoordinatesMap,
        directory: str | PathLike = ".",
    ) -> "CountryTilesMap":
        """Load the cached mapping from ``directory`` or build it and cache it there."""
        base = Path(directory)
        tile_path = base / TILE_TO_COUNTRIES_FILE
        country_path = base / COUNTRY_TO_TILES_FILE

        if tile_path.exists() and country_path.exists():
            tile_to_country = {
                int(tile_id): country
                for tile_id, country in json.loads(tile_path.read_text(encoding="utf-8")).items()
            }
            country_tiles = {
                country: [int(t) for t in tiles]
                for country, tiles in json.loads(country_path.read_text(encoding="utf-8")).items()
            }
            unassigned = sorted(t for t in tile_coords.tiles if t not in tile_to_country)
            return cls(country_tiles, unassigned, tile_to_country)

        mapping = cls.build(geo_lookup, tile_coords)
        tile_path.write_text(
            json.dumps({str(t): c for t, c in mapping.tile_to_country.items()}),
            encoding="utf-8",
        )
        country_path.write_text(json.dumps(mapping.country_tiles), encoding="utf-8")
        return mapping

    @classmethod
    def build(cls, geo_lookup: GeoLookup, tile_coords: TileCoordinatesMap) -> "CountryTilesMap":
        """Look up the country of every tile."""
        mapping = cls()
        for tile_id in sorted(tile_coords.tiles):
            country = geo_lookup.find_country(tile_coords.tiles[tile_id])
            if country is None:
                mapping.unassigned_tiles.append(tile_id)
            else:
                code = country.lower()
                mapping.country_tiles.setdefault(code, []).append(tile_id)
                mapping.tile_to_country[tile_id] = code
        return mapping

    def is_unassigned(self, tile_id: int) -> bool:
        return tile_id not in self.tile_to_country

    def get_country_for_tile(self, tile_id: int) -> str | None:
        return self.tile_to_country.get(tile_id)

    def get_tiles_for_country(self, country_code: str) -> list[int] | None:
        return self.country_tiles.get(country_code)

    def get_unassigned_tiles(self) -> list[int]:
        return self.unassigned_tiles

    def get_country_codes(self) -> list[str]:
        return list(self.country_tiles)

    def get_country_tile_count(self, country_code: str) -> int:
        return len(self.country_tiles.get(country_code, ()))

    def total_assigned_tiles(self) -> int:
        return sum(len(tiles) for tiles in self.country_tiles.values())

    def total_unassigned_tiles(self) -> int:
        return len(self.unassigned_tiles)

    def __iter__(self) -> Iterator[tuple[str, list[int]]]:
        return iter(self.country_tiles.items())

    def get_statistics(self) -> CountryTilesStatistics:
        assigned = self.total_assigned_tiles()
        unassigned = self.total_unassigned_tiles()
        return CountryTilesStatistics(
            total_tiles=assigned + unassigned,
            assigned_tiles=assigned,
            unassigned_tiles=unassigned,
            country_counts={code: len(tiles) for code, tiles in self.country_tiles.items()},
        )