# clickplanet

Tools for the ClickPlanet game, in which players claim tiles of a globe
for their country.

The package contains:

- the protobuf wire messages exchanged with a game server, with `encode`
  and `decode` (`clickplanet.messages`);
- an HTTP and WebSocket client (`clickplanet.client.ClickPlanetClient`);
- a tile coordinates loader and a GeoJSON country lookup
  (`clickplanet.coordinates`, `clickplanet.geolookup`);
- two robots: a country watchguard (`clickplanet.watchguard`) that keeps a
  country's tiles under the wanted flag, and a tile syncer
  (`clickplanet.tile_syncer`) that mirrors one server's ownerships onto
  another;
- a game server (`clickplanet.server`) with an in-memory repository
  (`clickplanet.memory_repository`), a Redis-backed repository
  (`clickplanet.redis_repository`) and a leaderboard
  (`clickplanet.persistence.LeaderboardOnClicks`).

## Commands

### country-watchguard

Watches every tile that lies inside a target country and reclaims any tile
taken by another country, both when live updates arrive and during a full
check that repeats every two minutes.

    country-watchguard --target-country fr --wanted-country fr \
        --coordinates-file coordinates.json --geojson-file countries.geojson

Options: `--target-country`, `--wanted-country` (both default `fr`),
`--host` (default `clickplanet.lol`), `--port` (default 443), `--unsecure`
(plain HTTP and WS), `--coordinates-file` (default `coordinates.json`),
`--geojson-file` (default `countries.geojson`).

On first run the tile-to-country assignment is computed from the GeoJSON
file and cached in the current directory as `tile_to_countries.json` and
`country_to_tiles.json`; later runs load those files instead.

### tile-syncer

Copies the ownership state of a production server onto a local server,
then follows live updates and repeats a full diff every five minutes.

    tile-syncer --prod-host prod.example.com --local-host localhost --local-port 3000

Options: `--prod-host`, `--prod-port` (default 443), `--coordinates-file`,
`--local-host` (default `localhost`), `--local-port` (default 3000),
`--prod-unsecure`, and `--local-unsecure` / `--no-local-unsecure` (the local
server is reached without TLS unless `--no-local-unsecure` is given).

### clickplanet-server

Runs the game server on `0.0.0.0`: the click endpoints (`/api/click`,
`/v2/rpc/click`), batch ownerships (`/api/ownerships-by-batch`,
`/v2/rpc/ownerships-by-batch`), all ownerships (`/v2/rpc/ownerships`), the
leaderboard (`/v2/rpc/leaderboard`) and a WebSocket feed of ownership
changes (`/ws/listen`, `/v2/ws/listen`). Request bodies are JSON objects
whose `data` field is a list of protobuf bytes; responses carry the
protobuf bytes base64-encoded in `data`.

    clickplanet-server --port 3000 --redis-url redis://localhost:6379

Options: `--nats-url`, `--redis-url`, `--otlp-endpoint`, `--service-name`,
`--port`; each may also be given through its environment variable
(`NATS_URL`, `REDIS_URL`, `OTEL_EXPORTER_OTLP_ENDPOINT`, `SERVICE_NAME`,
`PORT`). The log level is read from `LOG_LEVEL` and defaults to `DEBUG`.

At start-up the server reads every ownership stored in Redis into memory;
from then on clicks are applied to the in-memory state only.

## Library use

Storing clicks and reading scores with the in-memory repository:

```python
import asyncio

from clickplanet.messages import Click
from clickplanet.memory_repository import InMemoryClickRepository
from clickplanet.persistence import LeaderboardOnClicks


async def demo():
    repo = InMemoryClickRepository()
    await repo.save_click(1, Click(tile_id=1, country_id="fr", timestamp_ns=10, click_id=""))
    await repo.save_click(2, Click(tile_id=2, country_id="de", timestamp_ns=20, click_id=""))
    print(await LeaderboardOnClicks(repo).leaderboard())  # {'fr': 1, 'de': 1}


asyncio.run(demo())
```

A click that is not newer than the one already stored for a tile is
ignored; `save_click` always returns the ownership that was in place
before the click, or `None`.

Loading tile coordinates and finding the country of a tile:

```python
from clickplanet.coordinates import TileCoordinatesMap, read_coordinates_from_file
from clickplanet.geolookup import GeoLookup

tiles = TileCoordinatesMap.from_coordinates(read_coordinates_from_file("coordinates.json"))
lookup = GeoLookup.from_file("countries.geojson")
print(lookup.find_country(tiles.get_tile(0)))
```

## What it does not do

- The server does not write clicks back to Redis, and there is no separate
  process that persists clicks; changes made while it runs live in memory
  only.
- `--nats-url` is accepted but no message stream is used: clicks are
  passed to the ownership service inside the server process.
- `--otlp-endpoint` is only recorded in the log; no traces are exported.

## Tests

Install the `test` extra and run pytest from the project directory.