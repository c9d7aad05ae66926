"""
XR18 Bridge Configuration - Centralized configuration management.

Provides:
- Type-safe configuration dataclasses (connection, timing, metering)
- Loading from environment variables
- Loading/saving from JSON
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from xr18_bridge.liveness import (
    LIVE_THRESHOLD_MS,
    METER_LIVE_THRESHOLD_MS,
    OFFLINE_THRESHOLD_MS,
    RECOVERY_DELAY_S,
)
from xr18_bridge.meters import (
    CHANNEL_METER_FLOOR_DB,
    MAX_METER_SAMPLES,
    RETURN_METER_FLOOR_DB,
    RETURN_METER_PAIRS,
    SIGNAL_PRESENT_THRESHOLD_DB,
)


@dataclass
class TimingConfig:
    """Timer cadences (seconds) and liveness thresholds (milliseconds)."""

    keepalive_interval: float = 5.0  # /xremotenfb, console drops the session after ~10s
    poll_interval: float = 1.0  # FX return poll
    channel_poll_interval: float = 1.0  # registered channel poll
    renew_interval: float = 1.0  # /renew meters
    bus_name_interval: float = 5.0
    liveness_tick: float = 0.25
    recovery_delay: float = RECOVERY_DELAY_S

    offline_ms: float = OFFLINE_THRESHOLD_MS
    live_ms: float = LIVE_THRESHOLD_MS
    meter_live_ms: float = METER_LIVE_THRESHOLD_MS

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TimingConfig":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class MeterConfig:
    """Meter subscription and display mapping."""

    block: str = "/meters/1"
    expected_count: int = 40
    max_samples: int = MAX_METER_SAMPLES  # hard cap regardless of declared count

    return_floor_db: float = RETURN_METER_FLOOR_DB
    channel_floor_db: float = CHANNEL_METER_FLOOR_DB
    signal_threshold_db: float = SIGNAL_PRESENT_THRESHOLD_DB

    # Return target -> (left, right) sample indices. Verify against the device.
    return_pairs: Dict[int, Tuple[int, int]] = field(
        default_factory=lambda: dict(RETURN_METER_PAIRS)
    )
    # Channel N reads sample (N - 1 + channel_offset)
    channel_offset: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["return_pairs"] = {str(k): list(v) for k, v in self.return_pairs.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MeterConfig":
        """Create from dictionary. JSON object keys arrive as strings."""
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "return_pairs" in values:
            values["return_pairs"] = {
                int(k): (int(v[0]), int(v[1])) for k, v in values["return_pairs"].items()
            }
        return cls(**values)


@dataclass
class BridgeConfig:
    """Complete bridge configuration."""

    # Console (XR18 OSC)
    console_host: str = "192.168.1.37"
    console_port: int = 10024
    local_host: str = "0.0.0.0"
    local_port: int = 62058

    # Client WebSocket
    ws_host: str = "127.0.0.1"
    ws_port: int = 18018

    # Health/metrics HTTP (None disables)
    metrics_port: Optional[int] = 18019

    # Relay
    client_queue_size: int = 256
    log_meter_traffic: bool = False

    timing: TimingConfig = field(default_factory=TimingConfig)
    meters: MeterConfig = field(default_factory=MeterConfig)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load configuration from environment variables."""
        metrics_port = os.environ.get("METRICS_PORT", "18019")
        return cls(
            console_host=os.environ.get("XR18_HOST", "192.168.1.37"),
            console_port=int(os.environ.get("XR18_PORT", "10024")),
            local_port=int(os.environ.get("XR18_LOCAL_PORT", "62058")),
            ws_host=os.environ.get("BRIDGE_HOST", "127.0.0.1"),
            ws_port=int(os.environ.get("BRIDGE_PORT", "18018")),
            metrics_port=int(metrics_port) if metrics_port else None,
        )

    def validate(self) -> "BridgeConfig":
        """Raise ValueError on values the bridge cannot run with."""
        for name in ("console_port", "local_port", "ws_port"):
            _check_port(name, getattr(self, name))
        if self.metrics_port is not None:
            _check_port("metrics_port", self.metrics_port)

        for name, value in self.timing.to_dict().items():
            if value <= 0:
                raise ValueError(f"timing.{name} must be positive, got {value}")
        if self.timing.live_ms >= self.timing.offline_ms:
            raise ValueError("timing.live_ms must be below timing.offline_ms")

        m = self.meters
        if not (m.signal_threshold_db < m.return_floor_db <= m.channel_floor_db < 0):
            raise ValueError(
                "meter floors must satisfy signal_threshold_db < return_floor_db "
                "<= channel_floor_db < 0"
            )
        if m.expected_count <= 0 or m.max_samples <= 0:
            raise ValueError("meter sample counts must be positive")
        if self.client_queue_size <= 0:
            raise ValueError("client_queue_size must be positive")
        return self

    def to_dict(self) -> dict:
        data = {k: v for k, v in asdict(self).items() if k not in ("timing", "meters")}
        data["timing"] = self.timing.to_dict()
        data["meters"] = self.meters.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BridgeConfig":
        config = cls(
            **{
                k: v
                for k, v in data.items()
                if k in cls.__dataclass_fields__ and k not in ("timing", "meters")
            }
        )
        if "timing" in data:
            config.timing = TimingConfig.from_dict(data["timing"])
        if "meters" in data:
            config.meters = MeterConfig.from_dict(data["meters"])
        return config

    def save(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "BridgeConfig":
        """Load configuration from JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)


def _check_port(name: str, value: int) -> None:
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise ValueError(f"{name} must be between 1 and 65535, got {value!r}")


# Default config file location
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "xr18-bridge" / "config.json"


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from file or return defaults."""
    if path is None:
        path = DEFAULT_CONFIG_PATH
    return BridgeConfig.load(path)


def save_config(config: BridgeConfig, path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    if path is None:
        path = DEFAULT_CONFIG_PATH
    config.save(path)
