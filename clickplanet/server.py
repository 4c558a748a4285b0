"""HTTP and WebSocket server for the ClickPlanet game."""

from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Sequence

from aiohttp import WSMsgType, web

from clickplanet.click_service import Broadcaster, ClickService, ConsumerConfig
from clickplanet.memory_repository import InMemoryClickRepository
from clickplanet.messages import (
    BatchRequest,
    ClickRequest,
    DecodeError,
    LeaderboardEntry,
    LeaderboardResponse,
    UpdateNotification,
    decode,
    encode,
)
from clickplanet.ownership_service import OwnershipUpdateService
from clickplanet.persistence import ClickRepository, LeaderboardOnClicks, LeaderboardRepository
from clickplanet.redis_repository import RedisClickRepository
from clickplanet.telemetry import TelemetryConfig, init_telemetry

CHANNEL_CAPACITY = 100000
CLICK_TIMEOUT = 10.0
QUERY_TIMEOUT = 5.0

log = logging.getLogger(__name__)


@dataclass
class AppState:
    """Everything the request handlers need."""

    click_service: ClickService
    click_repository: ClickRepository
    leaderboard_repo: LeaderboardRepository
    update_broadcaster: Broadcaster[UpdateNotification]
    ownership_update_service: OwnershipUpdateService | None = None


STATE_KEY = web.AppKey("state", AppState)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "content-type",
}


class _BadPayload(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(status)
        self.status = status


def leaderboard_entries(scores: dict[str, int]) -> list[LeaderboardEntry]:
    """Leaderboard entries ordered by score, highest first."""
    entries = [LeaderboardEntry(country_id=c, score=s) for c, s in scores.items()]
    return sorted(entries, key=lambda entry: entry.score, reverse=True)


def _encoded(message: Any) -> web.Response:
    return web.json_response({"data": base64.b64encode(encode(message)).decode("ascii")})


async def _payload_bytes(request: web.Request) -> bytes:
    if request.content_type != "application/json":
        raise _BadPayload(415)
    try:
        body = await request.json()
    except ValueError:
        raise _BadPayload(400) from None
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, list) or not all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in data
    ):
        raise _BadPayload(422)
    return bytes(data)


async def _decode_payload(request: web.Request, message_type: type) -> Any:
    raw = await _payload_bytes(request)
    try:
        return decode(message_type, raw)
    except DecodeError:
        raise _BadPayload(400) from None


async def _guarded(awaitable, timeout: float, what: str):
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        log.error("Timeout error while %s", what)
    except Exception as exc:
        log.error("Error while %s: %r", what, exc)
    raise web.HTTPInternalServerError()


async def _handle_click(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    try:
        click_request = await _decode_payload(request, ClickRequest)
    except _BadPayload as exc:
        return web.Response(status=exc.status)
    await _guarded(state.click_service.process_click(click_request), CLICK_TIMEOUT, "clicking")
    return web.json_response({})


async def _handle_get_ownerships(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    ownerships = await _guarded(
        state.click_repository.get_ownerships(), QUERY_TIMEOUT, "calling get_ownerships"
    )
    return _encoded(ownerships)


async def _handle_get_ownerships_by_batch(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    try:
        batch = await _decode_payload(request, BatchRequest)
    except _BadPayload as exc:
        return web.Response(status=exc.status)
    ownerships = await _guarded(
        state.click_repository.get_ownerships_by_batch(batch.start_tile_id, batch.end_tile_id),
        QUERY_TIMEOUT,
        "calling get_ownerships_by_batch",
    )
    return _encoded(ownerships)


async def _handle_get_leaderboard(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    scores = await _guarded(
        state.leaderboard_repo.leaderboard(), QUERY_TIMEOUT, "fetching leaderboard"
    )
    return _encoded(LeaderboardResponse(entries=leaderboard_entries(scores)))


async def _handle_ws(request: web.Request) -> web.WebSocketResponse:
    state = request.app[STATE_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    subscription = state.update_broadcaster.subscribe()

    async def send_updates() -> None:
        async for notification in subscription:
            try:
                await ws.send_bytes(encode(notification))
            except (ConnectionError, RuntimeError) as exc:
                print(f"Error sending WebSocket message: {exc}", file=sys.stderr)
                return

    async def receive() -> None:
        async for message in ws:
            if message.type == WSMsgType.ERROR:
                return

    sender = asyncio.create_task(send_updates())
    receiver = asyncio.create_task(receive())
    try:
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        subscription.close()
        await ws.close()
    return ws


@web.middleware
async def _cors(request: web.Request, handler) -> web.StreamResponse:
    log.debug("http-request method=%s uri=%s version=%s", request.method, request.rel_url, request.version)
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=_CORS_HEADERS)
    response = await handler(request)
    if not response.prepared:
        response.headers["Access-Control-Allow-Origin"] = "*"
    return response


def create_app(state: AppState) -> web.Application:
    """The web application serving the game's RPC and WebSocket endpoints."""
    app = web.Application(middlewares=[_cors])
    app[STATE_KEY] = state
    app.router.add_post("/api/click", _handle_click)
    app.router.add_post("/v2/rpc/click", _handle_click)
    app.router.add_post("/api/ownerships-by-batch", _handle_get_ownerships_by_batch)
    app.router.add_post("/v2/rpc/ownerships-by-batch", _handle_get_ownerships_by_batch)
    app.router.add_get("/v2/rpc/ownerships", _handle_get_ownerships)
    app.router.add_get("/v2/rpc/leaderboard", _handle_get_leaderboard)
    app.router.add_get("/ws/listen", _handle_ws)
    app.router.add_get("/v2/ws/listen", _handle_ws)
    return app


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(prog="clickplanet-server", description="Run the ClickPlanet server.")
    parser.add_argument("--nats-url", default=env.get("NATS_URL", "nats://localhost:4222"))
    parser.add_argument("--redis-url", default=env.get("REDIS_URL", "redis://localhost:6379"))
    parser.add_argument(
        "--otlp-endpoint",
        default=env.get("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"),
    )
    parser.add_argument("--service-name", default=env.get("SERVICE_NAME", "clickplanet-server"))
    parser.add_argument("--port", type=int, default=int(env.get("PORT", "3000")))
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    """Load the tile state, then serve requests and process clicks until stopped."""
    click_broadcaster: Broadcaster = Broadcaster(CHANNEL_CAPACITY)
    update_broadcaster: Broadcaster = Broadcaster(CHANNEL_CAPACITY)

    cold_repository = RedisClickRepository.from_url(args.redis_url)
    try:
        memory = await InMemoryClickRepository.populate_with(cold_repository)
    finally:
        await cold_repository.close()

    log.info("External click stream at %s is not used; clicks are processed in process", args.nats_url)
    update_service = OwnershipUpdateService(
        memory,
        memory,
        click_broadcaster,
        update_broadcaster,
        ConsumerConfig(concurrent_processors=2, ack_wait=20.0),
    )
    state = AppState(
        click_service=ClickService(click_broadcaster),
        click_repository=memory,
        leaderboard_repo=LeaderboardOnClicks(memory),
        update_broadcaster=update_broadcaster,
        ownership_update_service=update_service,
    )

    service_task = asyncio.create_task(update_service.run())
    await asyncio.sleep(0)
    runner = web.AppRunner(create_app(state))
    await runner.setup()
    try:
        await web.TCPSite(runner, "0.0.0.0", args.port).start()
        print(f"Server listening on 0.0.0.0:{args.port}")
        await service_task
        log.error("Unexpected update service exit")
    finally:
        service_task.cancel()
        await asyncio.gather(service_task, return_exceptions=True)
        await runner.cleanup()


def main(argv: Sequence[str] | None = None) -> int:
    """Start the server."""
    args = parse_args(argv)
    init_telemetry(TelemetryConfig(otlp_endpoint=args.otlp_endpoint, service_name=args.service_name))
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0
    except Exception as exc:
        log.error("Server error: %r", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0