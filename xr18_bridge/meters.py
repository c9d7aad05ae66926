"""
Meter blob decoding for the XR18 ``/meters/1`` block.

Blob layout (little-endian, unlike the surrounding OSC framing):
    int32   declared sample count
    int16[] samples in 1/256 dB units

Return targets are stereo, so each one reads a left/right pair of samples and
reports the louder side. The pair table was captured from a real XR18 and is
configuration, not something derivable from the block layout.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

METER_HEADER_SIZE = 4
MAX_METER_SAMPLES = 4096

# Display floors differ per tile type: return tiles show more low-level
# ambience, channel tiles stay still at the noise floor.
RETURN_METER_FLOOR_DB = -75.0
CHANNEL_METER_FLOOR_DB = -60.0

# Must sit below both display floors.
SIGNAL_PRESENT_THRESHOLD_DB = -80.0

# Return target -> (left, right) sample indices in /meters/1
RETURN_METER_PAIRS: Dict[int, Tuple[int, int]] = {
    1: (18, 19),
    2: (20, 21),
    3: (22, 23),
    4: (24, 25),
}


@dataclass
class MeterFrame:
    """One decoded meter blob."""

    declared_count: int
    values: np.ndarray  # int16 samples, len <= declared_count

    @property
    def count(self) -> int:
        return int(self.values.shape[0])

    def sample(self, index: int) -> Optional[int]:
        if 0 <= index < self.count:
            return int(self.values[index])
        return None


@dataclass(frozen=True)
class MeterReading:
    """A normalized level plus the independent signal-present flag."""

    level: float
    signal_present: bool


def decode_meter_blob(data: bytes, max_samples: int = MAX_METER_SAMPLES) -> Optional[MeterFrame]:
    """Decode a meter blob, clamping to the samples actually present.

    Never raises; returns None for anything that cannot be decoded so the
    receive loop can skip the frame.
    """
    try:
        if data is None or len(data) < METER_HEADER_SIZE:
            return None
        declared = int.from_bytes(bytes(data[:METER_HEADER_SIZE]), "little", signed=True)
        if declared <= 0:
            return None

        available = (len(data) - METER_HEADER_SIZE) // 2
        count = min(declared, available, max_samples)
        if count <= 0:
            return None

        values = np.frombuffer(data, dtype="<i2", count=count, offset=METER_HEADER_SIZE)
        return MeterFrame(declared_count=declared, values=values.astype(np.int16))
    except (ValueError, TypeError) as e:
        logger.debug(f"Meter blob decode failed: {e}")
        return None


def raw_to_db(raw: float) -> float:
    """Convert a raw sample (1/256 dB per unit) to dB."""
    return raw / 256.0


def db_to_level(db: float, floor_db: float) -> float:
    """Map dB onto 0..1: 0 at or below the floor, 1 at or above 0 dB."""
    if db <= floor_db:
        return 0.0
    if db >= 0:
        return 1.0
    return (db - floor_db) / -floor_db


def is_signal_present(db: float, threshold_db: float = SIGNAL_PRESENT_THRESHOLD_DB) -> bool:
    """Signal flag computed from the sample itself, not from the floored level."""
    return math.isfinite(db) and db > threshold_db


def read_sample(raw: int, floor_db: float, threshold_db: float) -> MeterReading:
    db = raw_to_db(raw)
    return MeterReading(db_to_level(db, floor_db), is_signal_present(db, threshold_db))


def stereo_max(frame: MeterFrame, pair: Tuple[int, int]) -> Optional[int]:
    """Louder of a left/right pair; left alone if right is out of range."""
    left, right = pair
    raw_left = frame.sample(left)
    if raw_left is None:
        return None
    raw_right = frame.sample(right)
    if raw_right is None:
        return raw_left
    return max(raw_left, raw_right)
