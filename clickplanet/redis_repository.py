"""A click repository backed by a Redis sorted set keyed by tile id."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Iterator

import redis.asyncio
from redis.exceptions import RedisError

from clickplanet.messages import Click, Ownership, OwnershipState
from clickplanet.persistence import ClickRepository, InvalidDataError, StorageError

TILES_KEY = "tiles"

_TIMESTAMP = re.compile(r"\+?[0-9]+", re.ASCII)
_UINT64_MAX = (1 << 64) - 1
_UINT32_MAX = (1 << 32) - 1

log = logging.getLogger(__name__)


def _text(value: bytes | str) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def parse_tile_value(value: bytes | str) -> tuple[str, int] | None:
    """Split a stored "country:timestamp" value; None if it is not of that form."""
    parts = _text(value).split(":")
    if len(parts) != 2:
        return None
    country_id, timestamp = parts
    if not _TIMESTAMP.fullmatch(timestamp):
        return None
    timestamp_ns = int(timestamp)
    if timestamp_ns > _UINT64_MAX:
        return None
    return country_id, timestamp_ns


def _tile_id_from_score(score: float | str) -> int:
    try:
        number = float(score)
    except (TypeError, ValueError) as exc:
        raise InvalidDataError(str(exc)) from exc
    if not number.is_integer() or not 0 <= number <= _UINT32_MAX:
        raise InvalidDataError(f"invalid tile id {score!r}")
    return int(number)


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as exc:
        raise StorageError(str(exc)) from exc


class RedisClickRepository(ClickRepository):
    """Stores each tile's owner as "country:timestamp" scored by the tile id."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisClickRepository":
        """A repository connected to the Redis server at ``redis_url``."""
        return cls(redis.asyncio.from_url(redis_url))

    async def close(self) -> None:
        """Release the connection pool."""
        await self._redis.aclose()

    async def get_tile(self, tile_id: int) -> Ownership | None:
        with _storage_errors():
            values = await self._redis.zrangebyscore(TILES_KEY, tile_id, tile_id, start=0, num=1)
        if not values:
            return None
        parsed = parse_tile_value(values[0])
        if parsed is None:
            return None
        country_id, timestamp_ns = parsed
        return Ownership(tile_id=tile_id, country_id=country_id, timestamp_ns=timestamp_ns)

    async def _ownerships_between(self, low, high) -> OwnershipState:
        with _storage_errors():
            entries = await self._redis.zrangebyscore(TILES_KEY, low, high, withscores=True)
        ownerships = []
        for member, score in entries:
            parsed = parse_tile_value(member)
            if parsed is None:
                continue
            country_id, timestamp_ns = parsed
            ownerships.append(
                Ownership(
                    tile_id=_tile_id_from_score(score),
                    country_id=country_id,
                    timestamp_ns=timestamp_ns,
                )
            )
        return OwnershipState(ownerships)

    async def get_ownerships(self) -> OwnershipState:
        return await self._ownerships_between("-inf", "+inf")

    async def get_ownerships_by_batch(self, start_tile_id: int, end_tile_id: int) -> OwnershipState:
        return await self._ownerships_between(start_tile_id, end_tile_id)

    async def save_click(self, tile_id: int, click: Click) -> Ownership | None:
        receive_time = time.time_ns()
        log.debug(
            "Received click for tile %s (country: %s, timestamp: %s)",
            tile_id,
            click.country_id,
            click.timestamp_ns,
        )

        with _storage_errors():
            current = await self._redis.zrangebyscore(TILES_KEY, tile_id, tile_id)
        current_value = _text(current[0]) if current else None
        log.debug("Current value for tile %s (%r)", tile_id, current_value)

        previous: Ownership | None = None
        if current_value is None:
            log.debug("No key for tile %s", tile_id)
        else:
            if len(current_value.split(":")) != 2:
                raise InvalidDataError(current_value)
            parsed = parse_tile_value(current_value)
            if parsed is not None:
                country_id, current_ts = parsed
                previous = Ownership(tile_id=tile_id, country_id=country_id, timestamp_ns=current_ts)
                if click.timestamp_ns <= current_ts:
                    log.info(
                        "Ignoring outdated update for tile %s (current: %s, received: %s)",
                        tile_id,
                        current_ts,
                        click.timestamp_ns,
                    )
                    return previous

        new_value = f"{click.country_id}:{click.timestamp_ns}"
        log.debug("New value for tile %s (%r)", tile_id, new_value)

        with _storage_errors():
            old_values = [
                _text(v) for v in await self._redis.zrangebyscore(TILES_KEY, tile_id, tile_id)
            ]
            stale = [v for v in old_values if v != new_value]
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(TILES_KEY, {new_value: float(tile_id)})
                if stale:
                    pipe.zrem(TILES_KEY, *stale)
                await pipe.execute()

        log.info(
            "Tile %s is now owned by %s (timestamp: %s, received at %s, processed at %s)",
            tile_id,
            click.country_id,
            click.timestamp_ns,
            receive_time,
            time.time_ns(),
        )
        return previous