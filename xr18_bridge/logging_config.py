"""Logging configuration with JSON formatting for production."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

TRAFFIC_LOGGER = "xr18_bridge.traffic"
CLIENT_LOGGER = "xr18_bridge.client"

# Client-facing message types that carry meter values (~20 Hz per target)
_METER_BEARING = ("returnState", "channelState")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields if present
        for key in ("direction", "client", "msg_type", "tag"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data)


class MeterTrafficFilter(logging.Filter):
    """Drop traffic records for meter-bearing state messages.

    Records are expected to carry ``msg_type`` and ``has_meter`` extras, as
    written by ``log_traffic``.
    """

    def __init__(self, enabled: bool = True):
        super().__init__()
        self.enabled = enabled

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.enabled:
            return True
        return not getattr(record, "has_meter", False)


def is_meter_message(msg: dict) -> bool:
    return msg.get("type") in _METER_BEARING and "meter" in msg


def log_traffic(direction: str, client: str, msg: dict) -> None:
    """Record one client<->bridge JSON message on the traffic logger."""
    logger = logging.getLogger(TRAFFIC_LOGGER)
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug(
        f"{direction} {client} {json.dumps(msg)}",
        extra={
            "direction": direction,
            "client": client,
            "msg_type": msg.get("type"),
            "has_meter": is_meter_message(msg),
        },
    )


def configure_logging(
    level: int = logging.INFO,
    env: Optional[str] = None,
    log_meter_traffic: bool = False,
) -> None:
    """Configure logging based on environment.

    In production: structured JSON logs to stdout
    In development: human-readable logs to stdout
    """
    env = (env or os.environ.get("XR18_ENV", "development")).lower()
    is_production = env in ("production", "prod", "staging")

    # Root logger configuration
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    root_logger.handlers.clear()

    # Create console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if is_production:
        # JSON formatter for production
        formatter = JSONFormatter()
    else:
        # Human-readable format for development
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    traffic_logger = logging.getLogger(TRAFFIC_LOGGER)
    traffic_logger.filters.clear()
    traffic_logger.addFilter(MeterTrafficFilter(enabled=not log_meter_traffic))

    # Reduce noise from third-party libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
