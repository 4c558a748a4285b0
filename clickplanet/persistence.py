"""Storage interfaces for tile ownership and the leaderboard derived from it."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter

from clickplanet.messages import Click, Ownership, OwnershipState


class ClickRepositoryError(Exception):
    """Raised when a click repository cannot complete an operation."""


class StorageError(ClickRepositoryError):
    """The underlying storage failed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class InvalidDataError(ClickRepositoryError):
    """Stored data could not be interpreted."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid data format: {message}")


class LeaderboardError(Exception):
    """Raised when scores cannot be computed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class ClickRepository(ABC):
    """Where tile ownerships are kept."""

    @abstractmethod
    async def get_tile(self, tile_id: int) -> Ownership | None:
        """The current ownership of a tile, or None if nobody owns it."""

    @abstractmethod
    async def get_ownerships(self) -> OwnershipState:
        """Every known ownership."""

    @abstractmethod
    async def get_ownerships_by_batch(self, start_tile_id: int, end_tile_id: int) -> OwnershipState:
        """Ownerships of tiles from start_tile_id to end_tile_id inclusive."""

    @abstractmethod
    async def save_click(self, tile_id: int, click: Click) -> Ownership | None:
        """Apply a click unless it is older than the stored one; return the previous ownership."""


class LeaderboardMaintainer(ABC):
    """Keeps a per-country index of tiles up to date."""

    @abstractmethod
    async def update_country_index(
        self, tile_id: int, new_country: str, old_country: str | None
    ) -> None:
        """Move a tile from old_country (if any) to new_country."""


class LeaderboardRepository(ABC):
    """Answers questions about country scores."""

    @abstractmethod
    async def get_score(self, country_id: str) -> int:
        """Number of tiles owned by a country."""

    @abstractmethod
    async def leaderboard(self) -> dict[str, int]:
        """Score of every country that owns at least one tile."""


class LeaderboardOnClicks(LeaderboardRepository):
    """A leaderboard computed on demand from a click repository."""

    def __init__(self, repository: ClickRepository) -> None:
        self.repository = repository

    async def _ownerships(self) -> OwnershipState:
        try:
            return await self.repository.get_ownerships()
        except ClickRepositoryError as exc:
            raise LeaderboardError(str(exc)) from exc

    async def get_score(self, country_id: str) -> int:
        state = await self._ownerships()
        return sum(1 for o in state.ownerships if o.country_id == country_id)

    async def leaderboard(self) -> dict[str, int]:
        state = await self._ownerships()
        return dict(Counter(o.country_id for o in state.ownerships))