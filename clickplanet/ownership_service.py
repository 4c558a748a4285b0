"""Applies clicks to the tile state and announces ownership changes."""

from __future__ import annotations

import asyncio
import logging

from clickplanet.click_service import Broadcaster, ConsumerConfig
from clickplanet.messages import Click, UpdateNotification
from clickplanet.persistence import ClickRepository, LeaderboardMaintainer

CONSUMER_NAME = "tile-ownership-update"

log = logging.getLogger(__name__)


class OwnershipUpdateService:
    """Saves broadcast clicks and broadcasts an update whenever a tile changes owner."""

    def __init__(
        self,
        click_repository: ClickRepository,
        leaderboard_maintainer: LeaderboardMaintainer,
        click_broadcaster: Broadcaster[Click],
        update_broadcaster: Broadcaster[UpdateNotification],
        consumer_config: ConsumerConfig | None = None,
    ) -> None:
        self.click_repository = click_repository
        self.leaderboard_maintainer = leaderboard_maintainer
        self.click_broadcaster = click_broadcaster
        self.update_broadcaster = update_broadcaster
        self.consumer_config = consumer_config or ConsumerConfig()

    async def process_click(self, click: Click) -> None:
        """Save a click; if it replaces another country's ownership, index and announce it."""
        previous = await self.click_repository.save_click(click.tile_id, click)
        if previous is None or previous.country_id == click.country_id:
            return

        notification = UpdateNotification(
            tile_id=click.tile_id,
            previous_country_id=previous.country_id,
            country_id=click.country_id,
        )
        await self.leaderboard_maintainer.update_country_index(
            click.tile_id,
            notification.country_id,
            notification.previous_country_id or None,
        )
        if self.update_broadcaster.send(notification) == 0:
            log.debug("No listener for ownership update: %r", notification)

    async def _process_safely(self, click: Click, semaphore: asyncio.Semaphore) -> None:
        try:
            await self.process_click(click)
        except Exception:
            log.exception("Error processing broadcast click")
        finally:
            semaphore.release()

    async def run(self) -> None:
        """Process broadcast clicks, a bounded number at a time, until the feed ends."""
        subscription = self.click_broadcaster.subscribe()
        semaphore = asyncio.Semaphore(max(1, self.consumer_config.concurrent_processors))
        pending: set[asyncio.Task] = set()
        try:
            async for click in subscription:
                await semaphore.acquire()
                task = asyncio.create_task(self._process_safely(click, semaphore))
                pending.add(task)
                task.add_done_callback(pending.discard)
            if pending:
                await asyncio.gather(*pending)
        finally:
            subscription.close()
            for task in pending:
                task.cancel()
        log.error("Unexpected click handle exit")