"""Geometry of the tiles that cover the planet."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Position3D:
    """A point on the unit sphere."""

    x: float
    y: float
    z: float


@dataclass(frozen=True)
class UVCoordinate:
    """Texture coordinates of a point, both in [0, 1]."""

    u: float
    v: float


@dataclass(frozen=True)
class TileVertex:
    """The centre of one tile: its index, 3D position and UV coordinates."""

    index: int
    position: Position3D
    uv: UVCoordinate

    @classmethod
    def from_components(
        cls, index: int, x: float, y: float, z: float, u: float, v: float
    ) -> "TileVertex":
        """Build a vertex from raw numbers."""
        return cls(index, Position3D(x, y, z), UVCoordinate(u, v))