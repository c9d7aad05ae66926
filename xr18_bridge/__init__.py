"""
XR18 Bridge - OSC/UDP console session relayed to WebSocket clients.

Keeps a live remote session with a Behringer XR18, decodes its replies and
meter blobs, tracks whether the session is actually healthy, and relays
partial state updates to any number of control-surface clients while
refusing control writes unless the console is demonstrably LIVE.
"""

from .bridge import XR18Bridge
from .config import BridgeConfig, MeterConfig, TimingConfig
from .liveness import LivenessMonitor, LivenessState, classify
from .meters import MeterFrame, db_to_level, decode_meter_blob, raw_to_db
from .osc import OscEncodeError, OscMessage, decode_message, encode_message
from .relay import BridgeRelay
from .session import ConsoleSession, SendResult
from .targets import ChannelTarget, ReturnTarget, TargetStore

__version__ = "1.0.0"

__all__ = [
    "XR18Bridge",
    "BridgeConfig",
    "BridgeRelay",
    "ChannelTarget",
    "ConsoleSession",
    "LivenessMonitor",
    "LivenessState",
    "MeterConfig",
    "MeterFrame",
    "OscEncodeError",
    "OscMessage",
    "ReturnTarget",
    "SendResult",
    "TargetStore",
    "TimingConfig",
    "classify",
    "db_to_level",
    "decode_meter_blob",
    "decode_message",
    "encode_message",
    "raw_to_db",
]
