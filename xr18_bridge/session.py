"""
Console session - owns the single UDP socket to the XR18.

All console traffic (writes, queries, meter subscription, replies and meter
blobs) shares one socket because the console only forwards subscribed meters
to the port that subscribed.

Responsibilities:
- Subscribe to /meters/1 and keep the remote session alive (/xremotenfb)
- Poll FX returns, registered channels and bus names on fixed cadences
- Route decoded replies into the target registry and report changed fields
- Feed receipt timestamps into the liveness monitor
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from xr18_bridge.config import BridgeConfig
from xr18_bridge.liveness import LivenessMonitor
from xr18_bridge.meters import decode_meter_blob, read_sample, stereo_max
from xr18_bridge.osc import OscMessage, decode_message, encode_message
from xr18_bridge.targets import (
    BUS_NAME_SOURCES,
    MIXBUS_TO_SLOT,
    ChannelTarget,
    TargetStore,
    is_channel_index,
    is_return_index,
)

logger = logging.getLogger(__name__)

KEEPALIVE_ADDRESS = "/xremotenfb"
METER_SUBSCRIBE_ADDRESS = "/meters"
RENEW_ADDRESS = "/renew"

_METERS_RE = re.compile(r"^/?meters/(\d+)$")
_BUS_NAME_RE = re.compile(r"^/bus/(\d+)/config/name$")
_RETURN_NAME_RE = re.compile(r"^/rtn/(\d+)/config/name$")
_RETURN_BUS_RE = re.compile(r"^/rtn/(\d+)/mix/(\d+)/grpon$")
_RETURN_MIX_RE = re.compile(r"^/rtn/(\d+)/mix/(fader|on)$")
_CHANNEL_NAME_RE = re.compile(r"^/ch/(\d+)/config/name$")
_CHANNEL_ON_RE = re.compile(r"^/ch/(\d+)/mix/on$")


# ---------------------------------------------------------------------------
# Addressing and mute polarity
# ---------------------------------------------------------------------------


def return_address(index: int, suffix: str) -> str:
    return f"/rtn/{index}/{suffix}"


def channel_address(index: int, suffix: str) -> str:
    return f"/ch/{index:02d}/{suffix}"


def bus_assign_address(index: int, mixbus: int) -> str:
    return f"/rtn/{index}/mix/{mixbus:02d}/grpon"


def mute_to_console(muted: bool) -> int:
    """XR18 mix/on is 1 for ON (unmuted) and 0 for muted."""
    return 0 if muted else 1


def console_to_mute(on_value: int) -> bool:
    return on_value == 0


def _numeric_arg(msg: OscMessage) -> Optional[float]:
    if not msg.args or msg.args[0].tag not in ("f", "i"):
        return None
    value = float(msg.args[0].value)
    return value if math.isfinite(value) else None


def _string_arg(msg: OscMessage) -> Optional[str]:
    value = msg.first("s")
    return None if value is None else value.strip()


@dataclass(frozen=True)
class SendResult:
    """Outcome of one datagram send. Sends never raise."""

    address: str
    ok: bool
    error: Optional[str] = None


class SessionListener:
    """Receives changed fields as the console reports them. No-op by default."""

    def return_changed(self, index: int, changes: Dict[str, Any]) -> None:
        pass

    def channel_changed(self, index: int, changes: Dict[str, Any]) -> None:
        pass

    def bus_names_changed(self, names: Dict[str, str]) -> None:
        pass


class ConsoleSession(asyncio.DatagramProtocol):
    """
    UDP session with the XR18.

    Constructed once per process with the shared ``TargetStore`` and
    ``LivenessMonitor``; the relay installs itself as ``listener``.
    """

    def __init__(
        self,
        config: BridgeConfig,
        store: TargetStore,
        liveness: LivenessMonitor,
        listener: Optional[SessionListener] = None,
    ):
        self.config = config
        self.store = store
        self.liveness = liveness
        self.listener = listener or SessionListener()

        self.transport: Optional[asyncio.DatagramTransport] = None
        self._console = (config.console_host, config.console_port)
        self._tasks: List[asyncio.Task] = []

        meters = config.meters
        match = _METERS_RE.match(meters.block)
        self._meter_block = int(match.group(1)) if match else 1

        # Stats
        self.frames_received = 0
        self.meter_frames = 0
        self.decode_failures = 0
        self.send_failures = 0

    # ------------------------------------------------------------------
    # Socket lifecycle
    # ------------------------------------------------------------------

    async def bind(self) -> asyncio.DatagramTransport:
        """Bind the local UDP port. Raises OSError if the port is unavailable."""
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: self,
            local_addr=(self.config.local_host, self.config.local_port),
        )
        return transport

    def connection_made(self, transport) -> None:
        self.transport = transport
        local = transport.get_extra_info("sockname")
        logger.info(
            f"OSC UDP listening on {local}, console {self._console[0]}:{self._console[1]}"
        )
        self.on_ready()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            logger.warning(f"UDP socket closed with error: {exc}")
        self.transport = None

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"UDP error: {exc}")

    def datagram_received(self, data: bytes, addr) -> None:
        self.handle_datagram(data)

    def on_ready(self) -> None:
        """Initial subscription and full poll once the socket is up."""
        self.subscribe_meters()
        self.keepalive()
        self.poll_all()
        self.poll_bus_names()

    # ------------------------------------------------------------------
    # Send boundary
    # ------------------------------------------------------------------

    def send(self, address: str, type_tags: str = "", values=()) -> SendResult:
        data = encode_message(address, type_tags, values)
        if self.transport is None:
            self.send_failures += 1
            logger.warning(f"Send {address} skipped: socket not ready")
            return SendResult(address, False, "socket not ready")
        try:
            self.transport.sendto(data, self._console)
        except OSError as e:
            self.send_failures += 1
            logger.warning(f"Send {address} failed: {e}")
            return SendResult(address, False, str(e))
        logger.debug(f"OSC send {address} {type_tags} {list(values)}")
        return SendResult(address, True)

    def query(self, address: str) -> SendResult:
        return self.send(address)

    # ------------------------------------------------------------------
    # Session upkeep
    # ------------------------------------------------------------------

    def keepalive(self) -> SendResult:
        return self.query(KEEPALIVE_ADDRESS)

    def subscribe_meters(self) -> None:
        meters = self.config.meters
        self.send(METER_SUBSCRIBE_ADDRESS, "si", [meters.block, meters.expected_count])
        self.renew_meters()

    def renew_meters(self) -> None:
        # Firmware variants disagree on the leading slash; send both.
        block = self.config.meters.block.lstrip("/")
        self.send(RENEW_ADDRESS, "s", [block])
        self.send(RENEW_ADDRESS, "s", ["/" + block])

    def recover(self) -> None:
        """One-shot recovery: re-assert the remote session and meter subscription."""
        self.keepalive()
        self.subscribe_meters()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_return(self, index: int) -> None:
        self.query(return_address(index, "mix/fader"))
        self.query(return_address(index, "mix/on"))
        self.query(return_address(index, "config/name"))
        for mixbus in MIXBUS_TO_SLOT:
            self.query(bus_assign_address(index, mixbus))

    def poll_returns(self) -> None:
        for target in self.store:
            self.poll_return(target.index)

    def poll_channel(self, index: int) -> None:
        self.query(channel_address(index, "mix/on"))
        self.query(channel_address(index, "config/name"))

    def poll_channels(self) -> None:
        for target in self.store.channels():
            self.poll_channel(target.index)

    def poll_all(self) -> None:
        self.poll_returns()
        self.poll_channels()

    def poll_bus_names(self) -> None:
        for mixbus in BUS_NAME_SOURCES.values():
            self.query(f"/bus/{mixbus}/config/name")

    def register_channel_target(self, index: int) -> ChannelTarget:
        """Idempotently register a channel and query its mute + name once."""
        target, created = self.store.register_channel(index)
        if created:
            logger.info(f"Registered channel target ch{index:02d}")
        self.poll_channel(index)
        return target

    # ------------------------------------------------------------------
    # Control writes (callers gate on liveness first)
    # ------------------------------------------------------------------

    def set_return_fader(self, index: int, value: float) -> SendResult:
        result = self.send(return_address(index, "mix/fader"), "f", [value])
        if result.ok:
            self.store.returns[index].apply(fader=value)
        return result

    def set_return_mute(self, index: int, muted: bool) -> SendResult:
        result = self.send(return_address(index, "mix/on"), "i", [mute_to_console(muted)])
        if result.ok:
            self.store.returns[index].apply(mute=muted)
        return result

    def set_bus_assignment(self, index: int, mixbus: int, assigned: bool) -> SendResult:
        slot = MIXBUS_TO_SLOT[mixbus]
        result = self.send(bus_assign_address(index, mixbus), "i", [1 if assigned else 0])
        if result.ok:
            self.store.returns[index].apply(**{f"bus_{slot}": assigned})
        return result

    def toggle_channel_mute(self, index: int) -> Tuple[SendResult, bool]:
        """Flip the last known mute state. Returns (result, new muted value)."""
        target, _ = self.store.register_channel(index)
        next_muted = not bool(target.muted)
        result = self.send(channel_address(index, "mix/on"), "i", [mute_to_console(next_muted)])
        if result.ok:
            target.apply(muted=next_muted)
        return result, next_muted

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def handle_datagram(self, data: bytes, now: Optional[float] = None) -> None:
        """Decode and route one datagram. Bad frames are counted and dropped."""
        msg = decode_message(data)
        if msg is None:
            self.decode_failures += 1
            logger.debug(f"Dropped undecodable datagram ({len(data)} bytes)")
            return

        self.frames_received += 1
        self.liveness.note_console_reply(now)
        logger.debug(f"OSC recv {msg.address} {msg.values if msg.type_tags != 'b' else '<blob>'}")

        try:
            self._route(msg, now)
        except Exception as e:
            # A malformed reply must never take down the receive loop
            self.decode_failures += 1
            logger.warning(f"Failed to handle {msg.address}: {e}")

    def _route(self, msg: OscMessage, now: Optional[float]) -> None:
        address = msg.address

        m = _METERS_RE.match(address)
        if m:
            self._handle_meters(int(m.group(1)), msg, now)
            return

        m = _BUS_NAME_RE.match(address)
        if m:
            name = _string_arg(msg)
            if name and self.store.set_bus_name(int(m.group(1)), name):
                self.listener.bus_names_changed(dict(self.store.bus_names))
            return

        m = _RETURN_NAME_RE.match(address)
        if m:
            index, name = int(m.group(1)), _string_arg(msg)
            if is_return_index(index) and name is not None:
                self._return_update(index, name=name)
            return

        m = _RETURN_BUS_RE.match(address)
        if m:
            index, mixbus = int(m.group(1)), int(m.group(2))
            raw = _numeric_arg(msg)
            slot = MIXBUS_TO_SLOT.get(mixbus)
            if is_return_index(index) and slot and raw is not None:
                self._return_update(index, **{f"bus_{slot}": raw == 1})
            return

        m = _RETURN_MIX_RE.match(address)
        if m:
            index, kind = int(m.group(1)), m.group(2)
            raw = _numeric_arg(msg)
            if not is_return_index(index) or raw is None:
                return
            if kind == "fader":
                self._return_update(index, fader=raw)
            else:
                self._return_update(index, mute=console_to_mute(int(raw)))
            return

        m = _CHANNEL_NAME_RE.match(address)
        if m:
            name = _string_arg(msg)
            if name is not None:
                self._channel_update(int(m.group(1)), name=name)
            return

        m = _CHANNEL_ON_RE.match(address)
        if m:
            raw = _numeric_arg(msg)
            if raw is not None:
                self._channel_update(int(m.group(1)), muted=console_to_mute(int(raw)))
            return

    def _return_update(self, index: int, **fields) -> None:
        changes = self.store.returns[index].apply(**fields)
        if changes:
            self.listener.return_changed(index, changes)

    def _channel_update(self, index: int, **fields) -> None:
        # Replies for channels nobody registered are ignored
        target = self.store.get_channel(index) if is_channel_index(index) else None
        if target is None:
            return
        changes = target.apply(**fields)
        if changes:
            self.listener.channel_changed(index, changes)

    def _handle_meters(self, block: int, msg: OscMessage, now: Optional[float]) -> None:
        blob = msg.first("b")
        if blob is None:
            return
        meters = self.config.meters
        frame = decode_meter_blob(blob, meters.max_samples)
        if frame is None:
            self.decode_failures += 1
            return

        self.meter_frames += 1
        self.liveness.note_meter_frame(now)
        if block != self._meter_block:
            return

        for index, pair in meters.return_pairs.items():
            if not is_return_index(index):
                continue
            raw = stereo_max(frame, pair)
            if raw is None:
                continue
            reading = read_sample(raw, meters.return_floor_db, meters.signal_threshold_db)
            self._return_update(
                index, meter=reading.level, signal_present=reading.signal_present
            )

        for target in self.store.channels():
            raw = frame.sample(target.index - 1 + meters.channel_offset)
            if raw is None:
                continue
            reading = read_sample(raw, meters.channel_floor_db, meters.signal_threshold_db)
            self._channel_update(
                target.index, meter=reading.level, signal_present=reading.signal_present
            )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _periodic(self, name: str, interval: float, action: Callable[[], Any]) -> None:
        """Run ``action`` every ``interval`` seconds until cancelled."""
        while True:
            try:
                await asyncio.sleep(interval)
                action()
            except asyncio.CancelledError:
                logger.debug(f"[{name}] loop cancelled")
                break
            except Exception as e:
                logger.error(f"[{name}] loop error: {e}")

    def start(self) -> None:
        """Start the keep-alive, poll and meter-renewal timers (independent tasks)."""
        timing = self.config.timing
        schedule = [
            ("keepalive", timing.keepalive_interval, self.keepalive),
            ("return-poll", timing.poll_interval, self.poll_returns),
            ("channel-poll", timing.channel_poll_interval, self.poll_channels),
            ("meter-renew", timing.renew_interval, self.renew_meters),
            ("bus-names", timing.bus_name_interval, self.poll_bus_names),
        ]
        for name, interval, action in schedule:
            self._tasks.append(asyncio.create_task(self._periodic(name, interval, action)))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self.transport is not None:
            self.transport.close()
            self.transport = None
