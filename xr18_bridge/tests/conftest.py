"""Shared fakes and fixtures for the bridge test suite.

Nothing here opens a real socket: the console side uses a fake datagram
transport, the client side a mock websocket, and time is driven by a manual
clock plus a manual scheduler for the one-shot recovery timer.
"""

import asyncio
import json
import struct

import numpy as np
import pytest

from xr18_bridge.bridge import XR18Bridge
from xr18_bridge.config import BridgeConfig
from xr18_bridge.osc import decode_message, encode_message


class FakeClock:
    """Manual millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Stands in for loop.call_later; callbacks fire only when asked."""

    def __init__(self):
        self.handles = []

    def __call__(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]

    def fire_all(self):
        for handle in self.pending:
            handle.cancelled = True
            handle.callback()


class FakeTransport:
    """Records datagrams the session sends to the console."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.closed = False

    def sendto(self, data, addr=None):
        if self.fail:
            raise OSError("network unreachable")
        self.sent.append((data, addr))

    def get_extra_info(self, name, default=None):
        if name == "sockname":
            return ("0.0.0.0", 62058)
        return default

    def close(self):
        self.closed = True

    def messages(self):
        return [decode_message(data) for data, _ in self.sent]

    def addresses(self):
        return [msg.address for msg in self.messages()]

    def clear(self):
        self.sent.clear()


class MockWebSocket:
    """Mock WebSocket connection for testing."""

    def __init__(self, incoming=None, block_sends: bool = False):
        self.incoming = list(incoming or [])
        self.sent_messages = []
        self.closed = False
        self.close_code = None
        self.block_sends = block_sends
        self.remote_address = ("127.0.0.1", 54321)

    async def send(self, message):
        if self.block_sends:
            await asyncio.sleep(3600)
        self.sent_messages.append(message)

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def messages(self, msg_type=None):
        decoded = [json.loads(m) for m in self.sent_messages]
        if msg_type is None:
            return decoded
        return [m for m in decoded if m["type"] == msg_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.incoming:
            raise StopAsyncIteration
        item = self.incoming.pop(0)
        return item if isinstance(item, str) else json.dumps(item)


def meter_blob(samples, declared=None) -> bytes:
    """Little-endian count + int16 samples, as the console sends them."""
    count = len(samples) if declared is None else declared
    return struct.pack("<i", count) + np.asarray(samples, dtype="<i2").tobytes()


def meter_datagram(samples=None, address="/meters/1") -> bytes:
    if samples is None:
        samples = [0] * 40
    return encode_message(address, "b", [meter_blob(samples)])


def console_reply(address, type_tags="", values=()) -> bytes:
    return encode_message(address, type_tags, values)


async def settle(rounds: int = 3):
    """Let client writer tasks drain their queues."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def config():
    return BridgeConfig()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def bridge(config, clock, scheduler, transport):
    """Bridge with a connected fake socket; the initial burst is cleared."""
    bridge = XR18Bridge(config, clock=clock, scheduler=scheduler)
    bridge.session.connection_made(transport)
    transport.clear()
    return bridge


@pytest.fixture
def make_live(bridge, clock):
    """Feed one meter frame so both receipt timestamps are fresh."""

    def _make_live():
        bridge.session.handle_datagram(meter_datagram())
        assert bridge.liveness.state.value == "LIVE"

    return _make_live
