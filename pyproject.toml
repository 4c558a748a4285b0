[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clickplanet"
version = "0.1.0"
description = "Client, robots and server for the ClickPlanet tile-claiming game"
requires-python = ">=3.10"
keywords = ["clickplanet", "game", "tiles", "websocket", "leaderboard", "geojson", "protobuf"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Operating System :: OS Independent",
    "Topic :: Games/Entertainment",
]
dependencies = [
    "aiohttp",
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
country-watchguard = "clickplanet.robots:watchguard_main"
tile-syncer = "clickplanet.robots:tile_syncer_main"
clickplanet-server = "clickplanet.server:main"

[tool.hatch.build.targets.wheel]
packages = ["clickplanet"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
