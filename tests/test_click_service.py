import uuid

import pytest

from clickplanet.click_service import (
    CLICK_STREAM_NAME,
    Broadcaster,
    ClickService,
    ConsumerConfig,
    subject_for_tile,
)
from clickplanet.messages import Click, ClickRequest, decode


def test_subject_for_tile():
    assert subject_for_tile(42) == "clicks.tile.42"
    assert CLICK_STREAM_NAME == "CLICKS" and subject_for_tile(0).startswith("clicks.tile.")


def test_consumer_config_defaults():
    config = ConsumerConfig()
    assert config.consumer_name == "tile-state-processor"
    assert config.max_deliver == 3
    assert config.concurrent_processors == 4
    assert config.ack_wait == 30.0


def test_broadcaster_rejects_zero_capacity():
    with pytest.raises(ValueError):
        Broadcaster(0)


@pytest.mark.asyncio
async def test_broadcast_reaches_every_subscription():
    broadcaster = Broadcaster(10)
    first, second = broadcaster.subscribe(), broadcaster.subscribe()
    assert broadcaster.send("a") == 2
    assert await first.recv() == "a"
    assert await second.recv() == "a"


@pytest.mark.asyncio
async def test_send_without_subscribers():
    broadcaster = Broadcaster(1)
    sub = broadcaster.subscribe()
    sub.close()
    assert broadcaster.send("x") == 0


@pytest.mark.asyncio
async def test_overflow_drops_oldest():
    broadcaster = Broadcaster(2)
    sub = broadcaster.subscribe()
    for item in ("a", "b", "c"):
        broadcaster.send(item)
    assert [await sub.recv(), await sub.recv()] == ["b", "c"]


@pytest.mark.asyncio
async def test_close_ends_iteration():
    broadcaster = Broadcaster(4)
    sub = broadcaster.subscribe()
    sub.close()
    received = [item async for item in sub]
    assert received == []
    with pytest.raises(EOFError):
        await sub.recv()


@pytest.mark.asyncio
async def test_process_click_publishes_and_broadcasts():
    published = []

    async def publisher(subject, payload):
        published.append((subject, payload))

    broadcaster = Broadcaster(8)
    sub = broadcaster.subscribe()
    service = ClickService(broadcaster, publisher)

    response = await service.process_click(ClickRequest(tile_id=12, country_id="fr"))

    assert uuid.UUID(response.click_id).version == 4
    (subject, payload), = published
    assert subject == subject_for_tile(12)
    click = decode(Click, payload)
    assert click == Click(
        tile_id=12, country_id="fr", timestamp_ns=response.timestamp_ns, click_id=response.click_id
    )
    assert await sub.recv() == click


@pytest.mark.asyncio
async def test_publisher_failure_is_not_fatal():
    async def publisher(subject, payload):
        raise ConnectionError("down")

    broadcaster = Broadcaster(8)
    sub = broadcaster.subscribe()
    service = ClickService(broadcaster, publisher)
    response = await service.process_click(ClickRequest(tile_id=3, country_id="de"))
    click = await sub.recv()
    assert click.click_id == response.click_id
    assert click.country_id == "de"


@pytest.mark.asyncio
async def test_click_ids_are_unique():
    service = ClickService(Broadcaster(4))
    first = await service.process_click(ClickRequest(tile_id=1, country_id="fr"))
    second = await service.process_click(ClickRequest(tile_id=1, country_id="fr"))
    assert first.click_id != second.click_id
    assert second.timestamp_ns >= first.timestamp_ns