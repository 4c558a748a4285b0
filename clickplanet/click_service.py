"""Accepting clicks: stamping them, publishing them and broadcasting them in process."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from clickplanet.messages import Click, ClickRequest, ClickResponse, encode

CLICK_SUBJECT_PREFIX = "clicks.tile."
CLICK_STREAM_NAME = "CLICKS"

T = TypeVar("T")
Publisher = Callable[[str, bytes], Awaitable[Any]]

log = logging.getLogger(__name__)

_CLOSED = object()


def subject_for_tile(tile_id: int) -> str:
    """The subject clicks on a tile are published under."""
    return f"{CLICK_SUBJECT_PREFIX}{tile_id}"


@dataclass(frozen=True)
class ConsumerConfig:
    """Settings for consumers of the click stream; ack_wait is in seconds."""

    consumer_name: str = "tile-state-processor"
    ack_wait: float = 30.0
    max_deliver: int = 3
    concurrent_processors: int = 4


class Subscription(Generic[T]):
    """One receiver of a Broadcaster; keeps at most ``capacity`` pending items."""

    def __init__(self, broadcaster: "Broadcaster[T]", capacity: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    async def recv(self) -> T:
        """The next item; raises EOFError once the subscription is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise EOFError("subscription closed")
        return item

    def close(self) -> None:
        """Stop receiving; pending and future recv calls end."""
        if self._closed:
            return
        self._closed = True
        self._broadcaster._unsubscribe(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.recv()
        except EOFError:
            raise StopAsyncIteration from None


class Broadcaster(Generic[T]):
    """Delivers every sent item to every subscription; slow receivers lose the oldest."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._subscriptions: list[Subscription[T]] = []

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, self.capacity)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def send(self, item: T) -> int:
        """Deliver an item; return how many subscriptions received it."""
        for subscription in self._subscriptions:
            subscription._put(item)
        return len(self._subscriptions)


class ClickService:
    """Turns click requests into timestamped clicks and sends them on."""

    def __init__(self, click_broadcaster: Broadcaster[Click], publisher: Publisher | None = None) -> None:
        self.click_broadcaster = click_broadcaster
        self.publisher = publisher

    async def process_click(self, request: ClickRequest) -> ClickResponse:
        """Stamp, publish and broadcast a click; delivery failures are only logged."""
        click_id = str(uuid.uuid4())
        timestamp = time.time_ns()
        click = Click(
            tile_id=request.tile_id,
            country_id=request.country_id,
            timestamp_ns=timestamp,
            click_id=click_id,
        )
        payload = encode(click)

        if self.publisher is not None:
            try:
                await self.publisher(subject_for_tile(request.tile_id), payload)
            except Exception as exc:
                log.warning(
                    "Failed to send click to nats channel (service might be shutting down): %r",
                    exc,
                )

        if self.click_broadcaster.send(click) == 0:
            log.warning(
                "Failed to send click to in memory channel (service might be shutting down): "
                "no receivers"
            )

        log.info(
            "Click processed successfully for tile %s (country: %s, click %s, published at %s)",
            request.tile_id,
            request.country_id,
            click_id,
            time.time_ns(),
        )
        return ClickResponse(timestamp_ns=timestamp, click_id=click_id)