"""Keeps a local server's tile ownerships in step with a production server."""

from __future__ import annotations

import asyncio
import sys
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from clickplanet.messages import OwnershipState, UpdateNotification

SYNC_INTERVAL = 300.0
RECONNECT_PAUSE = 1.0
CONCURRENCY = 8

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


@dataclass(frozen=True)
class OwnershipDiff:
    """A tile whose production owner differs from its local owner."""

    tile_id: int
    prod_country: str
    local_country: str | None


def diff_ownerships(prod_state: OwnershipState, local_state: OwnershipState) -> list[OwnershipDiff]:
    """Production ownerships that the local state lacks or disagrees with."""
    local = {o.tile_id: o.country_id for o in local_state.ownerships}
    return [
        OwnershipDiff(o.tile_id, o.country_id, local.get(o.tile_id))
        for o in prod_state.ownerships
        if local.get(o.tile_id) != o.country_id
    ]


class TileSyncer:
    """Copies ownerships from a production server onto a local one."""

    def __init__(self, prod_client, local_client, tile_count) -> None:
        self.prod_client = prod_client
        self.local_client = local_client
        self.tile_count = tile_count

    async def compute_ownership_diff(self) -> list[OwnershipDiff]:
        """Fetch both servers' ownerships and compare them."""
        prod_state = await self.prod_client.get_ownerships(self.tile_count)
        local_state = await self.local_client.get_ownerships(self.tile_count)
        return diff_ownerships(prod_state, local_state)

    async def _apply_diff(self, diff: OwnershipDiff) -> None:
        try:
            await self.local_client.click_tile(diff.tile_id, diff.prod_country)
        except Exception as exc:
            print(f"Failed to sync tile {diff.tile_id}: {exc}", file=sys.stderr)
        else:
            print(
                f"Successfully synced tile {diff.tile_id} "
                f"from {diff.local_country!r} to {diff.prod_country}"
            )

    async def sync_tiles(self) -> None:
        """Apply every production ownership that differs locally."""
        diffs = await self.compute_ownership_diff()
        print(f"Found {len(diffs)} tiles with different ownership")
        await _gather_bounded(self._apply_diff, diffs, CONCURRENCY)

    async def handle_update(self, update: UpdateNotification) -> None:
        """Apply one production update to the local server."""
        print(
            f"Received update for tile {update.tile_id}: "
            f"applying new ownership {update.country_id}"
        )
        try:
            await self.local_client.click_tile(update.tile_id, update.country_id)
        except Exception as exc:
            print(f"Failed to sync update for tile {update.tile_id}: {exc}", file=sys.stderr)
        else:
            print(f"Successfully synced tile {update.tile_id} to {update.country_id}")

    async def _handle_update_safely(self, update: UpdateNotification) -> None:
        try:
            await self.handle_update(update)
        except Exception as exc:
            print(f"Error handling update: {exc}", file=sys.stderr)

    async def monitor_updates(self) -> None:
        """Mirror production updates locally until the update stream ends."""
        async with aclosing(self.prod_client.listen_for_updates()) as updates:
            await _consume_bounded(updates, self._handle_update_safely, CONCURRENCY)

    async def _periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(SYNC_INTERVAL)
            try:
                await self.sync_tiles()
            except Exception as exc:
                print(f"Error during periodic sync: {exc}", file=sys.stderr)

    async def _monitor_forever(self) -> None:
        while True:
            try:
                await self.monitor_updates()
            except Exception as exc:
                print(f"Error in update monitoring: {exc}. Reconnecting...", file=sys.stderr)
                await asyncio.sleep(RECONNECT_PAUSE)

    async def run(self) -> None:
        """Sync once, then keep syncing periodically and on every update."""
        print("Starting diff-based tile sync between production and local")
        try:
            await self.sync_tiles()
        except Exception as exc:
            print(f"Error during initial sync: {exc}", file=sys.stderr)

        periodic = asyncio.create_task(self._periodic_sync())
        updates = asyncio.create_task(self._monitor_forever())
        try:
            done, _ = await asyncio.wait({periodic, updates}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (periodic, updates):
                task.cancel()
            await asyncio.gather(periodic, updates, return_exceptions=True)

        for task in done:
            label = "Periodic sync task" if task is periodic else "Update monitor task"
            outcome = task.exception() if not task.cancelled() else "cancelled"
            print(f"{label} ended: {outcome!r}")