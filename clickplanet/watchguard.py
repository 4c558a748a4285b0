"""Keeps every tile of a country painted with a chosen country."""

from __future__ import annotations

import asyncio
import sys
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from clickplanet.messages import OwnershipState, UpdateNotification

CLAIM_TIMEOUT = 5.0
CHECK_INTERVAL = 120.0
CONCURRENCY = 4

T = TypeVar("T")


async def _gather_bounded(
    handler: Callable[[T], Awaitable[None]], items: Iterable[T], limit: int
) -> None:
    semaphore = asyncio.Semaphore(limit)

    async def guarded(item: T) -> None:
        async with semaphore:
            await handler(item)

    await asyncio.gather(*(guarded(item) for item in items))


async def _consume_bounded(
    stream: AsyncIterator[T], handler: Callable[[T], Awaitable[None]], limit: int
) -> None:
    semaphore = asyncio.Semaphore(limit)
    pending: set[asyncio.Task] = set()

    async def guarded(item: T) -> None:
        try:
            await handler(item)
        finally:
            semaphore.release()

    try:
        async for item in stream:
            await semaphore.acquire()
            task = asyncio.create_task(guarded(item))
            pending.add(task)
            task.add_done_callback(pending.discard)
        if pending:
            await asyncio.gather(*pending)
    except BaseException:
        for task in pending:
            task.cancel()
        raise


class CountryWatchguard:
    """Reclaims tiles of a target country for a wanted country."""

    def __init__(self, client, country_tiles_map, tile_count, target_country, wanted_country) -> None:
        self.client = client
        self.tile_count = tile_count
        self.target_country = target_country
        self.wanted_country = wanted_country
        self.country_tiles: set[int] = set(
            country_tiles_map.get_tiles_for_country(target_country) or ()
        )
        self.claim_timeout = CLAIM_TIMEOUT
        self.check_interval = CHECK_INTERVAL

    def find_tiles_to_claim(self, ownerships: OwnershipState) -> set[int]:
        """Watched tiles that are unowned or owned by another country."""
        owners: dict[int, str] = {}
        for ownership in ownerships.ownerships:
            owners.setdefault(ownership.tile_id, ownership.country_id)
        return {t for t in self.country_tiles if owners.get(t) != self.wanted_country}

    async def claim_tile(self, tile_id: int) -> None:
        """Paint one tile with the wanted country, within the claim timeout."""
        try:
            await asyncio.wait_for(
                self.client.click_tile(tile_id, self.wanted_country), self.claim_timeout
            )
        except asyncio.TimeoutError:
            print(f"Timeout while claiming tile {tile_id}", file=sys.stderr)
            raise TimeoutError(
                f"Operation timed out after {self.claim_timeout:g} seconds"
            ) from None
        except Exception as exc:
            print(f"Failed to claim tile {tile_id}: {exc}", file=sys.stderr)
            raise
        print(f"Claimed tile {tile_id}")

    async def _claim_reporting(self, tile_id: int) -> None:
        print(f"Claiming tile {tile_id}")
        try:
            await self.claim_tile(tile_id)
        except Exception as exc:
            print(f"Failed to claim tile {tile_id}: {exc}", file=sys.stderr)

    async def claim_all_tiles(self) -> None:
        """Claim every watched tile the wanted country does not own."""
        ownerships = await self.client.get_ownerships(self.tile_count)
        tiles = self.find_tiles_to_claim(ownerships)
        print(f"Need to claim {len(tiles)} tiles")
        await _gather_bounded(self._claim_reporting, sorted(tiles), CONCURRENCY)

    def _is_unauthorized(self, update: UpdateNotification) -> bool:
        return update.tile_id in self.country_tiles and update.country_id != self.wanted_country

    async def _reclaim(self, update: UpdateNotification) -> None:
        print(
            f"Detected unauthorized change on tile {update.tile_id}: "
            f"{update.previous_country_id} -> {update.country_id}. Reclaiming..."
        )
        try:
            await self.claim_tile(update.tile_id)
        except Exception as exc:
            print(f"Error processing tile: {exc}", file=sys.stderr)

    async def monitor_updates(self) -> None:
        """Reclaim watched tiles as soon as another country takes them."""

        async def unauthorized() -> AsyncIterator[UpdateNotification]:
            async with aclosing(self.client.listen_for_updates()) as updates:
                async for update in updates:
                    if self._is_unauthorized(update):
                        yield update

        async with aclosing(unauthorized()) as stream:
            await _consume_bounded(stream, self._reclaim, CONCURRENCY)

    async def periodic_claim_check(self) -> None:
        """Claim all tiles, then again after every check interval."""
        while True:
            print("Performing periodic claim check...")
            await self.claim_all_tiles()
            print()
            print("Checker task completed")
            await asyncio.sleep(self.check_interval)

    async def run(self) -> None:
        """Monitor updates and check periodically until either task ends."""
        print(
            f"Starting watchguard for target country: {self.target_country} "
            f"/ wanted country: {self.wanted_country}"
        )
        print(f"Monitoring {len(self.country_tiles)} tiles")

        monitor = asyncio.create_task(self.monitor_updates())
        checker = asyncio.create_task(self.periodic_claim_check())
        try:
            done, _ = await asyncio.wait({monitor, checker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (monitor, checker):
                task.cancel()
            await asyncio.gather(monitor, checker, return_exceptions=True)

        finished = monitor if monitor in done else checker
        if finished is monitor:
            print(f"Monitor task completed: {finished.exception()!r}")
        finished.result()