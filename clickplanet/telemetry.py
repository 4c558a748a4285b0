"""Logging set-up shared by the server processes."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

LOG_LEVEL_ENV = "LOG_LEVEL"
DEFAULT_LEVEL = logging.DEBUG

_FORMAT = (
    "%(asctime)s %(levelname)s %(service)s "
    "[%(threadName)s/%(thread)d] %(filename)s:%(lineno)d: %(message)s"
)


@dataclass(frozen=True)
class TelemetryConfig:
    """Where traces go and under which service name."""

    otlp_endpoint: str = "http://localhost:4317"
    service_name: str = "clickplanet-server"


class _ServiceFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


class _TelemetryHandler(logging.StreamHandler):
    """Marker type so re-initialisation replaces the previous handler."""


def _level_from_env() -> int:
    value = os.environ.get(LOG_LEVEL_ENV, "").strip()
    if value:
        level = logging.getLevelName(value.upper())
        if isinstance(level, int):
            return level
    return DEFAULT_LEVEL


def init_telemetry(config: TelemetryConfig) -> logging.StreamHandler:
    """Install a root log handler on stderr tagged with the service name; return it.

    The level comes from the LOG_LEVEL environment variable, defaulting to DEBUG
    when it is unset or not a known level name.
    """
    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, _TelemetryHandler)]:
        root.removeHandler(handler)
        handler.close()

    level = _level_from_env()
    handler = _TelemetryHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(_ServiceFilter(config.service_name))
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger(__name__).debug(
        "Telemetry initialised for %s (collector %s)", config.service_name, config.otlp_endpoint
    )
    return handler