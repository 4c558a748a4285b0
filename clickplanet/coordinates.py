"""Loading tile coordinates from their JSON description."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from itertools import islice
from os import PathLike
from typing import Iterable, Iterator

from clickplanet.model import TileVertex


class CoordinatesError(ValueError):
    """Raised when coordinate data is malformed or inconsistent."""


def _chunks(values: Iterable[float], size: int) -> Iterator[tuple[float, ...]]:
    iterator = iter(values)
    while chunk := tuple(islice(iterator, size)):
        yield chunk


@dataclass(frozen=True)
class Vertex:
    """A position and its UV coordinates."""

    position: tuple[float, float, float]
    uv: tuple[float, float]


@dataclass
class CoordinatesData:
    """Flat arrays of tile positions (x, y, z) and UVs (u, v)."""

    positions: list[float] = field(default_factory=list)
    uvs: list[float] = field(default_factory=list)

    def position_triplets(self) -> Iterator[tuple[float, ...]]:
        """Yield positions three values at a time."""
        return _chunks(self.positions, 3)

    def uv_pairs(self) -> Iterator[tuple[float, ...]]:
        """Yield UVs two values at a time."""
        return _chunks(self.uvs, 2)

    def length(self) -> int:
        """Number of vertices described by the positions."""
        return len(self.positions) // 3

    def validate(self) -> None:
        """Raise CoordinatesError unless positions and UVs describe the same vertices."""
        if len(self.positions) % 3:
            raise CoordinatesError("Positions length is not a multiple of 3")
        if len(self.uvs) % 2:
            raise CoordinatesError("UVs length is not a multiple of 2")
        position_vertices = len(self.positions) // 3
        uv_vertices = len(self.uvs) // 2
        if position_vertices != self.length() or uv_vertices != self.length():
            raise CoordinatesError(
                f"Inconsistent lengths: positions={position_vertices}, "
                f"uvs={uv_vertices}, length={self.length()}"
            )

    def to_vertices(self) -> list[Vertex]:
        """Pair each position with its UV coordinates."""
        return [
            Vertex(position=(pos[0], pos[1], pos[2]), uv=(uv[0], uv[1]))
            for pos, uv in zip(self.position_triplets(), self.uv_pairs())
        ]


@dataclass
class TileCoordinatesMap:
    """Tile vertices indexed by tile id."""

    tiles: dict[int, TileVertex] = field(default_factory=dict)

    @classmethod
    def from_coordinates(cls, data: CoordinatesData) -> "TileCoordinatesMap":
        """Number the vertices of ``data`` from zero and index them by that number."""
        tiles = {
            tile_id: TileVertex.from_components(tile_id, *pos[:3], *uv[:2])
            for tile_id, (pos, uv) in enumerate(zip(data.position_triplets(), data.uv_pairs()))
        }
        return cls(tiles)

    def get_tile(self, tile_id: int) -> TileVertex | None:
        return self.tiles.get(tile_id)

    def is_empty(self) -> bool:
        return not self.tiles

    def __len__(self) -> int:
        return len(self.tiles)


def _number_list(document: dict, key: str) -> list[float]:
    if key not in document:
        raise CoordinatesError(f"missing field `{key}`")
    values = document[key]
    if not isinstance(values, list) or not all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in values
    ):
        raise CoordinatesError(f"field `{key}` must be a list of numbers")
    return [float(v) for v in values]


def load_coordinates(json_str: str) -> CoordinatesData:
    """Parse and validate coordinates from a JSON document."""
    try:
        document = json.loads(json_str)
    except json.JSONDecodeError as exc:
        raise CoordinatesError(f"invalid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise CoordinatesError("coordinates document must be a JSON object")
    coords = CoordinatesData(
        positions=_number_list(document, "positions"),
        uvs=_number_list(document, "uvs"),
    )
    coords.validate()
    return coords


def read_coordinates_from_file(path: str | PathLike) -> CoordinatesData:
    """Read and validate coordinates from a JSON file."""
    with open(path, encoding="utf-8") as handle:
        return load_coordinates(handle.read())