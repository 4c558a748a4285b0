import asyncio
import base64
import binascii
import contextlib
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from clickplanet.client import (
    BATCH_SIZE,
    CLIENT_NAME,
    ClickPlanetClient,
    generate_websocket_key,
)
from clickplanet.messages import (
    BatchRequest,
    ClickRequest,
    Ownership,
    OwnershipState,
    UpdateNotification,
    decode,
    encode,
)


@contextlib.asynccontextmanager
async def serve(app):
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def state_payload(state):
    return {"data": base64.b64encode(encode(state)).decode("ascii")}


def test_websocket_key_is_16_random_bytes():
    key = generate_websocket_key()
    assert len(base64.b64decode(key, validate=True)) == 16
    assert generate_websocket_key() != key


@pytest.mark.asyncio
async def test_click_tile_posts_encoded_request():
    received = []

    async def handler(request):
        body = await request.json()
        received.append(
            (
                decode(ClickRequest, bytes(body["data"])),
                request.headers.get("User-Agent"),
                request.headers.get("Origin"),
            )
        )
        return web.json_response({})

    app = web.Application()
    app.router.add_post("/v2/rpc/click", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            await client.click_tile(42, "fr")

    assert received == [(ClickRequest(tile_id=42, country_id="fr"), CLIENT_NAME, "https://127.0.0.1")]


@pytest.mark.asyncio
async def test_click_tile_retries_twice_then_raises():
    calls = []

    async def handler(request):
        calls.append(1)
        return web.Response(status=500)

    app = web.Application()
    app.router.add_post("/v2/rpc/click", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with patch("clickplanet.client.asyncio.sleep", new=AsyncMock()) as sleep_mock:
                with pytest.raises(aiohttp.ClientResponseError) as info:
                    await client.click_tile(7, "de")

    assert info.value.status == 500
    assert len(calls) == 3
    assert sleep_mock.await_count == 2
    assert all(0 <= c.args[0] <= 5.0 for c in sleep_mock.await_args_list)


@pytest.mark.asyncio
async def test_get_ownerships_by_batch_round_trip():
    requests = []
    state = OwnershipState([Ownership(3, "fr", 10), Ownership(4, "it", 20)])

    async def handler(request):
        body = await request.json()
        requests.append(decode(BatchRequest, bytes(body["data"])))
        return web.json_response(state_payload(state))

    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            result = await client.get_ownerships_by_batch(3, 9)

    assert result == state
    assert requests == [BatchRequest(start_tile_id=3, end_tile_id=9)]


@pytest.mark.asyncio
async def test_get_ownerships_by_batch_missing_data():
    async def handler(request):
        return web.json_response({"other": 1})

    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with pytest.raises(ValueError, match="missing data"):
                await client.get_ownerships_by_batch(1, 2)


@pytest.mark.asyncio
async def test_get_ownerships_by_batch_invalid_base64():
    async def handler(request):
        return web.json_response({"data": "!!!"})

    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with pytest.raises(binascii.Error):
                await client.get_ownerships_by_batch(1, 2)


@pytest.mark.asyncio
async def test_get_ownerships_walks_all_batches():
    ranges = []

    async def handler(request):
        body = await request.json()
        batch = decode(BatchRequest, bytes(body["data"]))
        ranges.append((batch.start_tile_id, batch.end_tile_id))
        return web.json_response(state_payload(OwnershipState([Ownership(batch.start_tile_id, "fr", 1)])))

    tile_count = range(25001)
    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with patch("clickplanet.client.asyncio.sleep", new=AsyncMock()) as sleep_mock:
                result = await client.get_ownerships(tile_count)

    assert ranges[0][0] == 1
    assert ranges[-1][1] == len(tile_count) - 1
    assert all(b[0] - a[0] == BATCH_SIZE for a, b in zip(ranges, ranges[1:]))
    assert all(end - start <= BATCH_SIZE for start, end in ranges)
    assert [o.tile_id for o in result.ownerships] == [start for start, _ in ranges]
    assert all(0.3 <= c.args[0] <= 1.0 for c in sleep_mock.await_args_list)
    assert sleep_mock.await_count == len(ranges)


@pytest.mark.asyncio
async def test_get_ownerships_retries_after_rate_limit():
    calls = []
    state = OwnershipState([Ownership(1, "es", 5)])

    async def handler(request):
        calls.append(1)
        if len(calls) == 1:
            return web.Response(status=429)
        return web.json_response(state_payload(state))

    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with patch("clickplanet.client.asyncio.sleep", new=AsyncMock()) as sleep_mock:
                result = await client.get_ownerships(range(3))

    assert result == state
    assert len(calls) == 2
    assert any(c.args == (5,) for c in sleep_mock.await_args_list)


@pytest.mark.asyncio
async def test_get_ownerships_propagates_other_errors():
    async def handler(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_post("/v2/rpc/ownerships-by-batch", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            with patch("clickplanet.client.asyncio.sleep", new=AsyncMock()):
                with pytest.raises(aiohttp.ClientResponseError) as info:
                    await client.get_ownerships(range(3))

    assert info.value.status == 500


@pytest.mark.asyncio
async def test_get_ownerships_single_tile_makes_no_request():
    async with ClickPlanetClient("127.0.0.1", 1, False) as client:
        result = await client.get_ownerships(range(1))
    assert result.ownerships == []


@pytest.mark.asyncio
async def test_connect_websocket_sends_client_name():
    agents = []

    async def handler(request):
        agents.append(request.headers.get("User-Agent"))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str("hello")
        async for _ in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_get("/v2/ws/listen", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            ws = await client.connect_websocket()
            message = await ws.receive()
            await ws.close()

    assert message.data == "hello"
    assert agents == [CLIENT_NAME]


@pytest.mark.asyncio
async def test_listen_for_updates_skips_undecodable_messages():
    first = UpdateNotification(tile_id=5, country_id="fr", previous_country_id="de")
    second = UpdateNotification(tile_id=6, country_id="it", previous_country_id="")

    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_bytes(encode(first))
        await ws.send_bytes(b"\xff")
        await ws.send_bytes(encode(second))
        async for _ in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_get("/v2/ws/listen", handler)
    async with serve(app) as server:
        async with ClickPlanetClient("127.0.0.1", server.port, False) as client:
            updates = client.listen_for_updates()
            received = [
                await asyncio.wait_for(anext(updates), 5),
                await asyncio.wait_for(anext(updates), 5),
            ]
            await updates.aclose()

    assert received == [first, second]