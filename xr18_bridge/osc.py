"""
OSC wire codec for the XR18 console.

Encodes and decodes single OSC messages (no bundles) using only the type tags
the console speaks to us:

    f  32-bit big-endian float
    i  32-bit big-endian signed int
    s  null-terminated string, padded to a 4-byte boundary
    b  int32 length prefix + raw bytes, padded to a 4-byte boundary

Decoding is defensive: datagrams come off the network and may be truncated or
corrupt, so ``decode_message`` never raises. It returns ``None`` when nothing
usable could be read, or a partial message holding whatever arguments were
parsed before the corruption was detected.

Usage:
    data = encode_message("/rtn/1/mix/fader", "f", [0.75])
    msg = decode_message(data)
    msg.address   # "/rtn/1/mix/fader"
    msg.values    # [0.75]
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

TYPE_TAG_PREFIX = ","
SUPPORTED_TAGS = frozenset("fisb")

_INT32 = struct.Struct(">i")
_FLOAT32 = struct.Struct(">f")


class OscEncodeError(ValueError):
    """Raised when a message cannot be encoded (bad tag or argument count)."""


class OscArg(NamedTuple):
    """One decoded argument: its type tag and Python value."""

    tag: str
    value: Any


@dataclass
class OscMessage:
    """A decoded OSC message."""

    address: str
    args: List[OscArg] = field(default_factory=list)

    @property
    def type_tags(self) -> str:
        return "".join(arg.tag for arg in self.args)

    @property
    def values(self) -> list:
        return [arg.value for arg in self.args]

    def first(self, tag: str) -> Optional[Any]:
        """Return the first argument value if it has the given tag."""
        if self.args and self.args[0].tag == tag:
            return self.args[0].value
        return None


def _pad_length(length: int) -> int:
    """Bytes needed to pad ``length`` up to the next multiple of 4."""
    return (4 - length % 4) % 4


def _align4(offset: int) -> int:
    return offset + _pad_length(offset)


def encode_string(value: str) -> bytes:
    """Encode an OSC string: bytes + null terminator, padded to 4 bytes."""
    raw = value.encode("utf-8") + b"\x00"
    return raw + b"\x00" * _pad_length(len(raw))


def encode_blob(value: bytes) -> bytes:
    """Encode an OSC blob: int32 size prefix + bytes, padded to 4 bytes."""
    raw = bytes(value)
    return _INT32.pack(len(raw)) + raw + b"\x00" * _pad_length(len(raw))


def encode_message(address: str, type_tags: str = "", values: Sequence[Any] = ()) -> bytes:
    """Encode an OSC message.

    Args:
        address: OSC address, e.g. ``/rtn/1/mix/fader``
        type_tags: Argument types without the leading comma ("" for a query)
        values: One value per type tag

    Returns:
        The encoded datagram payload.

    Raises:
        OscEncodeError: On an unsupported tag or a tag/value count mismatch.
    """
    type_tags = type_tags or ""
    values = list(values or ())
    if len(type_tags) != len(values):
        raise OscEncodeError(
            f"{address}: {len(type_tags)} type tags but {len(values)} values"
        )

    parts = [encode_string(address), encode_string(TYPE_TAG_PREFIX + type_tags)]
    for tag, value in zip(type_tags, values):
        if tag == "f":
            parts.append(_FLOAT32.pack(float(value)))
        elif tag == "i":
            parts.append(_INT32.pack(int(value)))
        elif tag == "s":
            parts.append(encode_string(str(value)))
        elif tag == "b":
            parts.append(encode_blob(value))
        else:
            raise OscEncodeError(f"{address}: unsupported type tag {tag!r}")
    return b"".join(parts)


def _read_string(data: bytes, offset: int) -> Optional[Tuple[str, int]]:
    """Read a padded OSC string at ``offset``.

    Returns (string, next_offset), or None if there is no terminator before
    the end of the buffer.
    """
    end = data.find(b"\x00", offset)
    if end < 0:
        return None
    text = data[offset:end].decode("utf-8", errors="replace")
    return text, _align4(end + 1)


def decode_message(data: bytes) -> Optional[OscMessage]:
    """Decode a single OSC message without ever raising.

    Stops at the first sign of corruption and returns what was parsed so far.
    Unknown type tags are skipped as a 4-byte chunk so offsets stay aligned.
    """
    try:
        return _decode(bytes(data))
    except (struct.error, ValueError, TypeError) as e:
        # Bounds are checked before every read; this only guards against
        # inputs that are not bytes-like at all.
        logger.debug(f"OSC decode failed: {e}")
        return None


def _decode(data: bytes) -> Optional[OscMessage]:
    size = len(data)
    if size < 4:
        return None

    parsed = _read_string(data, 0)
    if parsed is None:
        return None
    address, offset = parsed
    if not address:
        return None

    message = OscMessage(address)
    if offset >= size:
        return message

    parsed = _read_string(data, offset)
    if parsed is None:
        return message
    type_tag, offset = parsed
    if not type_tag.startswith(TYPE_TAG_PREFIX):
        return message

    for tag in type_tag[1:]:
        if tag == "f":
            if offset + 4 > size:
                break
            message.args.append(OscArg("f", _FLOAT32.unpack_from(data, offset)[0]))
            offset += 4
        elif tag == "i":
            if offset + 4 > size:
                break
            message.args.append(OscArg("i", _INT32.unpack_from(data, offset)[0]))
            offset += 4
        elif tag == "s":
            parsed = _read_string(data, offset)
            if parsed is None:
                break
            text, offset = parsed
            message.args.append(OscArg("s", text))
        elif tag == "b":
            if offset + 4 > size:
                break
            blob_size = _INT32.unpack_from(data, offset)[0]
            offset += 4
            # Bound-check the declared size before slicing
            if blob_size < 0 or offset + blob_size > size:
                break
            message.args.append(OscArg("b", data[offset : offset + blob_size]))
            offset = _align4(offset + blob_size)
        else:
            if offset + 4 > size:
                break
            offset += 4

    return message
