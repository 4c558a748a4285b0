"""HTTP and WebSocket client for a ClickPlanet server."""

from __future__ import annotations

import asyncio
import base64
import os
import random
import sys
from dataclasses import dataclass
from itertools import islice
from typing import AsyncIterator, Iterator, Protocol, runtime_checkable

import aiohttp

from clickplanet.messages import (
    BatchRequest,
    ClickRequest,
    DecodeError,
    OwnershipState,
    UpdateNotification,
    decode,
    encode,
)

CLIENT_NAME = "clickplanet client"
BATCH_SIZE = 10000
RATE_LIMIT_PAUSE = 5.0
RECONNECT_PAUSE = 1.0

_HTTP_TIMEOUT = aiohttp.ClientTimeout(total=10, connect=5)
_CLICK_RETRY_BASE_MS = 100
_CLICK_RETRY_MAX_DELAY = 5.0
_CLICK_RETRIES = 2


@runtime_checkable
class TileCount(Protocol):
    """Anything that knows how many tiles the planet has."""

    def __len__(self) -> int: ...


@dataclass(frozen=True)
class WebSocketConfig:
    """Backoff bounds, in seconds, for WebSocket reconnection."""

    initial_interval: float = 1.0
    max_interval: float = 60.0


def generate_websocket_key() -> str:
    """A random base64-encoded 16-byte WebSocket key."""
    return base64.b64encode(os.urandom(16)).decode("ascii")


def _exponential_backoff(base_ms: int, max_delay: float) -> Iterator[float]:
    """Delays in seconds growing as base_ms**n milliseconds, capped and jittered."""
    cap_ms = max_delay * 1000
    current = base_ms
    while True:
        yield random.random() * min(current, cap_ms) / 1000
        current = min(current * base_ms, cap_ms)


class ClickPlanetClient:
    """Talks to a ClickPlanet server over its JSON RPC and WebSocket endpoints."""

    def __init__(self, host: str, port: int, secure: bool) -> None:
        self.host = host
        self.port = port
        self.secure = secure
        self.websocket_config = WebSocketConfig()
        self._session: aiohttp.ClientSession | None = None

    @property
    def _http_base(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": CLIENT_NAME,
            "Content-Type": "application/json",
            "Origin": f"https://{self.host}",
            "Referer": f"https://{self.host}/",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit_per_host=32, keepalive_timeout=30)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, connect=5),
            )
        return self._session

    async def close(self) -> None:
        """Release the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ClickPlanetClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def click_tile(self, tile_id: int, country_id: str) -> None:
        """Paint a tile, retrying twice with backoff before giving up."""
        payload = {"data": list(encode(ClickRequest(tile_id=tile_id, country_id=country_id)))}
        url = f"{self._http_base}/v2/rpc/click"
        delays = islice(
            _exponential_backoff(_CLICK_RETRY_BASE_MS, _CLICK_RETRY_MAX_DELAY), _CLICK_RETRIES
        )
        session = self._get_session()
        while True:
            try:
                async with session.post(
                    url, json=payload, headers=self._headers, timeout=_HTTP_TIMEOUT
                ) as response:
                    response.raise_for_status()
                return
            except (aiohttp.ClientError, asyncio.TimeoutError):
                delay = next(delays, None)
                if delay is None:
                    raise
                await asyncio.sleep(delay)

    async def get_ownerships_by_batch(self, start_tile_id: int, end_tile_id: int) -> OwnershipState:
        """Fetch ownerships of tiles from start_tile_id to end_tile_id inclusive."""
        request = BatchRequest(start_tile_id=start_tile_id, end_tile_id=end_tile_id)
        payload = {"data": list(encode(request))}
        url = f"{self._http_base}/v2/rpc/ownerships-by-batch"
        session = self._get_session()
        async with session.post(
            url, json=payload, headers=self._headers, timeout=_HTTP_TIMEOUT
        ) as response:
            response.raise_for_status()
            body = await response.json(content_type=None)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, str):
            raise ValueError("Invalid or missing data field in response")
        return decode(OwnershipState, base64.b64decode(data, validate=True))

    async def get_ownerships(self, tile_count: TileCount) -> OwnershipState:
        """Fetch the ownership of every tile, batch by batch."""
        max_tile_id = len(tile_count) - 1
        state = OwnershipState()
        start = 1
        while start <= max_tile_id:
            end = min(start + BATCH_SIZE, max_tile_id)
            await asyncio.sleep(random.randint(300, 1000) / 1000)
            try:
                batch = await self.get_ownerships_by_batch(start, end)
            except Exception as exc:
                print(f"Error fetching batch {start} to {end}: {exc!r}", file=sys.stderr)
                if isinstance(exc, aiohttp.ClientResponseError):
                    print(f"HTTP Status: {exc.status}", file=sys.stderr)
                    if exc.status == 429:
                        print("Rate limit hit, waiting before retry...", file=sys.stderr)
                        await asyncio.sleep(RATE_LIMIT_PAUSE)
                        continue
                if isinstance(exc, asyncio.TimeoutError):
                    print("Request timed out", file=sys.stderr)
                if isinstance(exc, aiohttp.ClientConnectionError):
                    print("Connection error", file=sys.stderr)
                raise
            state.ownerships.extend(batch.ownerships)
            start += BATCH_SIZE
        return state

    async def connect_websocket(self) -> aiohttp.ClientWebSocketResponse:
        """Open the update WebSocket, retrying with backoff until it succeeds."""
        scheme = "wss" if self.secure else "ws"
        url = f"{scheme}://{self.host}:{self.port}/v2/ws/listen"
        config = self.websocket_config
        delays = _exponential_backoff(round(config.initial_interval * 1000), config.max_interval)
        session = self._get_session()
        while True:
            print("Attempting WebSocket connection...")
            try:
                ws = await session.ws_connect(
                    url,
                    headers={
                        "User-Agent": CLIENT_NAME,
                        "Sec-WebSocket-Key": generate_websocket_key(),
                    },
                    origin=self._http_base,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                print(f"Connection attempt failed: {exc!r}")
                await asyncio.sleep(next(delays))
                continue
            print("Successfully connected to WebSocket")
            return ws

    async def listen_for_updates(self) -> AsyncIterator[UpdateNotification]:
        """Yield ownership updates forever, reconnecting whenever the socket drops."""
        while True:
            try:
                ws = await self.connect_websocket()
            except Exception as exc:
                print(f"Error in WebSocket connection: {exc}. Retrying...", file=sys.stderr)
                await asyncio.sleep(RECONNECT_PAUSE)
                continue
            try:
                async for message in ws:
                    if message.type == aiohttp.WSMsgType.ERROR:
                        print(f"WebSocket message error: {ws.exception()}", file=sys.stderr)
                        continue
                    if message.type == aiohttp.WSMsgType.BINARY:
                        data = message.data
                    elif message.type == aiohttp.WSMsgType.TEXT:
                        data = message.data.encode("utf-8")
                    else:
                        continue
                    try:
                        notification = decode(UpdateNotification, data)
                    except DecodeError as exc:
                        print(f"Error decoding message: {exc}", file=sys.stderr)
                        continue
                    yield notification
            finally:
                await ws.close()