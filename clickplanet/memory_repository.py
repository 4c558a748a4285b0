"""An in-memory click repository that also keeps a per-country leaderboard."""

from __future__ import annotations

from dataclasses import dataclass

from clickplanet.messages import Click, Ownership, OwnershipState
from clickplanet.persistence import (
    ClickRepository,
    LeaderboardMaintainer,
    LeaderboardRepository,
)


@dataclass(frozen=True)
class TileData:
    """The owner of a tile and the timestamp of the click that made it so."""

    country_id: str
    timestamp_ns: int


class InMemoryClickRepository(ClickRepository, LeaderboardMaintainer, LeaderboardRepository):
    """Tile ownerships and country scores held in memory."""

    def __init__(self) -> None:
        self._tiles: dict[int, TileData] = {}
        self._country_tiles: dict[str, set[int]] = {}

    @classmethod
    async def populate_with(cls, repository: ClickRepository) -> "InMemoryClickRepository":
        """A new repository loaded with every ownership of another one."""
        memory = cls()
        state = await repository.get_ownerships()
        for ownership in state.ownerships:
            await memory.save_click(
                ownership.tile_id,
                Click(
                    tile_id=ownership.tile_id,
                    country_id=ownership.country_id,
                    timestamp_ns=ownership.timestamp_ns,
                    click_id="",
                ),
            )
            await memory.update_country_index(ownership.tile_id, ownership.country_id, None)
        return memory

    @staticmethod
    def _ownership(tile_id: int, data: TileData) -> Ownership:
        return Ownership(tile_id=tile_id, country_id=data.country_id, timestamp_ns=data.timestamp_ns)

    async def get_tile(self, tile_id: int) -> Ownership | None:
        data = self._tiles.get(tile_id)
        return None if data is None else self._ownership(tile_id, data)

    async def get_ownerships(self) -> OwnershipState:
        return OwnershipState(
            [self._ownership(tile_id, data) for tile_id, data in sorted(self._tiles.items())]
        )

    async def get_ownerships_by_batch(self, start_tile_id: int, end_tile_id: int) -> OwnershipState:
        return OwnershipState(
            [
                self._ownership(tile_id, data)
                for tile_id, data in sorted(self._tiles.items())
                if start_tile_id <= tile_id <= end_tile_id
            ]
        )

    async def save_click(self, tile_id: int, click: Click) -> Ownership | None:
        current = self._tiles.get(tile_id)
        previous = None if current is None else self._ownership(tile_id, current)
        if current is not None and click.timestamp_ns <= current.timestamp_ns:
            return previous
        self._tiles[tile_id] = TileData(click.country_id, click.timestamp_ns)
        return previous

    async def update_country_index(
        self, tile_id: int, new_country: str, old_country: str | None
    ) -> None:
        if old_country is not None:
            tiles = self._country_tiles.get(old_country)
            if tiles is not None:
                tiles.discard(tile_id)
                if not tiles:
                    del self._country_tiles[old_country]
        self._country_tiles.setdefault(new_country, set()).add(tile_id)

    async def get_score(self, country_id: str) -> int:
        return len(self._country_tiles.get(country_id, ()))

    async def leaderboard(self) -> dict[str, int]:
        return {country: len(tiles) for country, tiles in self._country_tiles.items() if tiles}