"""Client-facing JSON protocol: inbound schemas and outbound message builders."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
SAFE_STATE_BLOCK = "SAFE_STATE_BLOCK"

# ---------------------------------------------------------------------------
# Client -> Bridge
# ---------------------------------------------------------------------------


class _ClientMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Hello(_ClientMessage):
    type: Literal["hello"]
    clientId: Optional[str] = None
    protocolVersion: Optional[int] = None


class RequestFullState(_ClientMessage):
    type: Literal["requestFullState"]


class RegisterTarget(_ClientMessage):
    type: Literal["registerTarget"]
    targetType: str = "ch"
    targetIndex: int


class Sync(_ClientMessage):
    type: Literal["sync"]
    targetIndex: Optional[int] = None


class ClientLog(_ClientMessage):
    type: Literal["log"]
    tag: Optional[str] = None
    payload: Any = None


# Control writes keep their payload fields loose: the relay gates on liveness
# first and only then checks ranges, so a malformed write that arrives while
# not LIVE is still answered with SAFE_STATE_BLOCK.


class SetFader(_ClientMessage):
    type: Literal["setFader"]
    targetIndex: Any = None
    value: Any = None


class SetMute(_ClientMessage):
    type: Literal["setMute"]
    targetIndex: Any = None
    mute: Any = None


class SetBusAssignment(_ClientMessage):
    type: Literal["setBusAssignment"]
    targetIndex: Any = None
    busSlot: Any = None
    assigned: Any = None


class ToggleChannelMute(_ClientMessage):
    type: Literal["toggleChannelMute"]
    targetType: str = "ch"
    targetIndex: Any = None


ClientMessage = Annotated[
    Union[
        Hello,
        RequestFullState,
        RegisterTarget,
        SetFader,
        SetMute,
        SetBusAssignment,
        ToggleChannelMute,
        Sync,
        ClientLog,
    ],
    Field(discriminator="type"),
]

WRITE_MESSAGES = (SetFader, SetMute, SetBusAssignment, ToggleChannelMute)

_client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[_ClientMessage]:
    """Decode one inbound frame. Returns None for anything that is not a known message."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (ValueError, UnicodeDecodeError, RecursionError) as e:
            logger.debug(f"Dropped non-JSON client frame: {e}")
            return None
    if not isinstance(raw, dict):
        return None
    try:
        return _client_message_adapter.validate_python(raw)
    except ValidationError as e:
        logger.debug(f"Dropped invalid client message {raw.get('type')!r}: {e.error_count()} errors")
        return None


def is_write(msg: _ClientMessage) -> bool:
    return isinstance(msg, WRITE_MESSAGES)


# ---------------------------------------------------------------------------
# Bridge -> Client
# ---------------------------------------------------------------------------

_RETURN_FIELDS = {
    "fader": "fader",
    "mute": "mute",
    "name": "name",
    "meter": "meter",
    "signal_present": "signalPresent",
    "bus_a": "busA",
    "bus_b": "busB",
    "bus_c": "busC",
}

_CHANNEL_FIELDS = {
    "muted": "muted",
    "name": "name",
    "meter": "meter",
    "signal_present": "signalPresent",
}


def welcome() -> dict:
    return {"type": "welcome", "protocolVersion": PROTOCOL_VERSION}


def bus_name_fields(names: Dict[str, str]) -> dict:
    """Slot letters -> busAName/busBName/busCName."""
    return {f"bus{slot.upper()}Name": name for slot, name in sorted(names.items())}


def return_state(
    index: int,
    changes: Dict[str, Any],
    bus_names: Optional[Dict[str, str]] = None,
) -> dict:
    """Partial returnState: only the given fields are included."""
    msg = {"type": "returnState", "targetIndex": index}
    for key, value in changes.items():
        if key in _RETURN_FIELDS:
            msg[_RETURN_FIELDS[key]] = value
    if bus_names:
        msg.update(bus_name_fields(bus_names))
    return msg


def channel_state(index: int, changes: Dict[str, Any], target_type: str = "ch") -> dict:
    """Partial channelState: only the given fields are included."""
    msg = {"type": "channelState", "targetType": target_type, "targetIndex": index}
    for key, value in changes.items():
        if key in _CHANNEL_FIELDS:
            msg[_CHANNEL_FIELDS[key]] = value
    return msg


def connection_state(state: str, last_console_reply_at: int, last_meter_frame_at: int) -> dict:
    return {
        "type": "connectionState",
        "state": getattr(state, "value", state),
        "lastConsoleReplyAt": last_console_reply_at,
        "lastMeterFrameAt": last_meter_frame_at,
    }


def error(code: str, message: str) -> dict:
    return {"type": "error", "code": code, "message": message}
