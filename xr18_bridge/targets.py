"""
Target registry: the bridge's in-memory copy of console state.

One ``TargetStore`` is created per process and shared by the console session
(which mutates it) and the relay (which reads it to greet new clients). All
access happens on the event loop thread, so there is no locking.

Every field starts as ``None`` (not yet reported by the console). ``apply``
returns only the fields whose value actually changed, which is what the relay
broadcasts as a partial update.
"""

import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterator, List, Optional, Tuple

RETURN_COUNT = 4
CHANNEL_COUNT = 16

# Bus slot letter -> console mixbus number used in /rtn/N/mix/XX/grpon
BUS_SLOTS: Dict[str, int] = {"a": 1, "b": 3, "c": 5}
MIXBUS_TO_SLOT: Dict[int, str] = {mixbus: slot for slot, mixbus in BUS_SLOTS.items()}

# Slot letter -> mixbus whose name labels that slot (stereo pairs are named on
# the second bus of the pair)
BUS_NAME_SOURCES: Dict[str, int] = {"a": 2, "b": 4, "c": 6}

# Float fields compare with a tolerance so float32 round-trips from the
# console don't register as changes.
_FLOAT_TOLERANCE = 1e-6


def is_return_index(index: Any) -> bool:
    return isinstance(index, int) and not isinstance(index, bool) and 1 <= index <= RETURN_COUNT


def is_channel_index(index: Any) -> bool:
    return isinstance(index, int) and not isinstance(index, bool) and 1 <= index <= CHANNEL_COUNT


def _same(old: Any, new: Any) -> bool:
    if isinstance(old, float) and isinstance(new, float):
        return math.isclose(old, new, rel_tol=0.0, abs_tol=_FLOAT_TOLERANCE)
    return old == new and type(old) is type(new)


class _Target:
    """Shared change-tracking behaviour for target dataclasses."""

    _identity: Tuple[str, ...] = ("index",)

    def apply(self, **changes: Any) -> Dict[str, Any]:
        """Set fields, returning only those whose value changed."""
        changed = {}
        for name, value in changes.items():
            if name in self._identity or not hasattr(self, name):
                raise AttributeError(f"{type(self).__name__} has no state field {name!r}")
            if value is None:
                continue
            if not _same(getattr(self, name), value):
                setattr(self, name, value)
                changed[name] = value
        return changed

    def known_state(self) -> Dict[str, Any]:
        """All fields the console has reported so far."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._identity and getattr(self, f.name) is not None
        }


@dataclass
class ReturnTarget(_Target):
    """An FX return strip (1..4)."""

    index: int
    fader: Optional[float] = None
    mute: Optional[bool] = None
    name: Optional[str] = None
    bus_a: Optional[bool] = None
    bus_b: Optional[bool] = None
    bus_c: Optional[bool] = None
    meter: Optional[float] = None
    signal_present: Optional[bool] = None


@dataclass
class ChannelTarget(_Target):
    """An input channel a client asked to monitor."""

    index: int
    target_type: str = "ch"
    muted: Optional[bool] = None
    name: Optional[str] = None
    meter: Optional[float] = None
    signal_present: Optional[bool] = None

    _identity = ("index", "target_type")


class TargetStore:
    """Owned registry of return targets, channel targets and bus names."""

    def __init__(self):
        self.returns: Dict[int, ReturnTarget] = {
            i: ReturnTarget(i) for i in range(1, RETURN_COUNT + 1)
        }
        self._channels: Dict[int, ChannelTarget] = {}
        self.bus_names: Dict[str, str] = {
            slot: f"BUS {mixbus}" for slot, mixbus in BUS_NAME_SOURCES.items()
        }

    def get_return(self, index: int) -> Optional[ReturnTarget]:
        return self.returns.get(index)

    def get_channel(self, index: int) -> Optional[ChannelTarget]:
        return self._channels.get(index)

    def register_channel(self, index: int) -> Tuple[ChannelTarget, bool]:
        """Idempotently register a channel target. Returns (target, created)."""
        if not is_channel_index(index):
            raise ValueError(f"Channel index out of range: {index!r}")
        existing = self._channels.get(index)
        if existing is not None:
            return existing, False
        target = ChannelTarget(index)
        self._channels[index] = target
        return target, True

    def channels(self) -> List[ChannelTarget]:
        return list(self._channels.values())

    def __iter__(self) -> Iterator[ReturnTarget]:
        return iter(self.returns.values())

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def set_bus_name(self, mixbus: int, name: str) -> bool:
        """Record a mixbus display name. Returns True if a label changed."""
        for slot, source in BUS_NAME_SOURCES.items():
            if source == mixbus:
                if name and self.bus_names[slot] != name:
                    self.bus_names[slot] = name
                    return True
                return False
        return False
