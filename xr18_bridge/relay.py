"""
Relay - client-facing WebSocket side of the bridge.

Every connected client gets the same broadcasts. Each client has its own
bounded outbound queue drained by a writer task, so a slow or dead client is
dropped without stalling the console receive path or other clients.

Control writes (setFader, setMute, setBusAssignment, toggleChannelMute) are
gated on the liveness state before anything else is checked, then validated,
forwarded to the console and echoed optimistically to all clients.
"""

import asyncio
import json
import logging
import math
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException

from xr18_bridge import protocol
from xr18_bridge.liveness import LivenessMonitor, LivenessState
from xr18_bridge.logging_config import CLIENT_LOGGER, log_traffic
from xr18_bridge.protocol import (
    SAFE_STATE_BLOCK,
    ClientLog,
    Hello,
    RegisterTarget,
    RequestFullState,
    SetBusAssignment,
    SetFader,
    SetMute,
    Sync,
    ToggleChannelMute,
    is_write,
    parse_client_message,
)
from xr18_bridge.session import ConsoleSession, SessionListener
from xr18_bridge.targets import (
    MIXBUS_TO_SLOT,
    TargetStore,
    is_channel_index,
    is_return_index,
)

logger = logging.getLogger(__name__)
client_logger = logging.getLogger(CLIENT_LOGGER)

SEND_TIMEOUT = 0.5


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


class ClientChannel:
    """One connected client: websocket, outbound queue and writer task."""

    def __init__(
        self,
        websocket,
        client_id: str,
        queue_size: int = 256,
        send_timeout: float = SEND_TIMEOUT,
        on_dead: Optional[Callable[["ClientChannel"], None]] = None,
    ):
        self.websocket = websocket
        self.id = client_id
        self.name: Optional[str] = None
        self.send_timeout = send_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._on_dead = on_dead
        self._task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Future] = None
        self.closed = False
        self.sent = 0

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    def enqueue(self, msg: dict) -> bool:
        """Queue a message for this client. Never blocks."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(msg)
        except asyncio.QueueFull:
            self.drop("outbound queue full")
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _pump(self) -> None:
        while True:
            msg = await self._queue.get()
            log_traffic("->", self.id, msg)
            try:
                await asyncio.wait_for(self.websocket.send(json.dumps(msg)), timeout=self.send_timeout)
                self.sent += 1
            except asyncio.CancelledError:
                raise
            except (asyncio.TimeoutError, ConnectionClosed, OSError) as e:
                self.drop(f"send failed: {type(e).__name__}")
                return

    def drop(self, reason: str) -> None:
        """Mark the client dead, stop its writer and close its socket."""
        if self.closed:
            return
        self.closed = True
        logger.info(f"Dropping client {self.id}: {reason}")
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._close_task = asyncio.ensure_future(self._close_socket())
        if self._on_dead is not None:
            self._on_dead(self)

    async def _close_socket(self) -> None:
        try:
            await self.websocket.close()
        except (WebSocketException, OSError) as e:
            logger.debug(f"Error closing client {self.id}: {e}")

    async def aclose(self) -> None:
        self.closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._close_task is not None:
            await self._close_task
            self._close_task = None


class BridgeRelay(SessionListener):
    """Fans console state out to clients and turns client intent into console writes."""

    def __init__(
        self,
        session: ConsoleSession,
        store: TargetStore,
        liveness: LivenessMonitor,
        queue_size: int = 256,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self.session = session
        self.store = store
        self.liveness = liveness
        self.queue_size = queue_size
        self.send_timeout = send_timeout

        self.clients: Dict[Any, ClientChannel] = {}
        self._client_seq = 0

        # Stats
        self.messages_received = 0
        self.blocked_writes = 0
        self.dropped_messages = 0

        self._handlers = {
            Hello: self._on_hello,
            RequestFullState: self._on_request_full_state,
            RegisterTarget: self._on_register_target,
            Sync: self._on_sync,
            ClientLog: self._on_log,
            SetFader: self._on_set_fader,
            SetMute: self._on_set_mute,
            SetBusAssignment: self._on_set_bus_assignment,
            ToggleChannelMute: self._on_toggle_channel_mute,
        }

    @property
    def client_count(self) -> int:
        return len(self.clients)

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    async def handle_client(self, websocket) -> None:
        """websockets connection handler."""
        channel = self.add_client(websocket)
        try:
            async for raw in websocket:
                if channel.closed:
                    break
                self.handle_message(channel, raw)
        except ConnectionClosed:
            pass
        finally:
            await self.remove_client(channel)

    def add_client(self, websocket) -> ClientChannel:
        self._client_seq += 1
        remote = getattr(websocket, "remote_address", None)
        client_id = f"client-{self._client_seq}"
        channel = ClientChannel(
            websocket,
            client_id,
            queue_size=self.queue_size,
            send_timeout=self.send_timeout,
            on_dead=self._forget,
        )
        self.clients[websocket] = channel
        channel.start()
        logger.info(f"Client {client_id} connected from {remote}. Total: {len(self.clients)}")

        for msg in self.snapshot():
            channel.enqueue(msg)
        return channel

    def _forget(self, channel: ClientChannel) -> None:
        if self.clients.get(channel.websocket) is channel:
            del self.clients[channel.websocket]

    async def remove_client(self, channel: ClientChannel) -> None:
        self._forget(channel)
        await channel.aclose()
        logger.info(f"Client {channel.id} disconnected. Total: {len(self.clients)}")

    def snapshot(self) -> list:
        """Everything a new client needs so it is not blank until the next poll."""
        messages = [
            protocol.connection_state(self.liveness.state, *self.liveness.timestamps())
        ]
        for target in self.store:
            messages.append(
                protocol.return_state(
                    target.index, target.known_state(), bus_names=self.store.bus_names
                )
            )
        for target in self.store.channels():
            known = target.known_state()
            if known:
                messages.append(protocol.channel_state(target.index, known, target.target_type))
        return messages

    def broadcast(self, msg: dict) -> None:
        for channel in list(self.clients.values()):
            channel.enqueue(msg)

    async def close_all(self) -> None:
        for channel in list(self.clients.values()):
            self._forget(channel)
            await channel.aclose()
            await channel._close_socket()

    # ------------------------------------------------------------------
    # Console -> clients
    # ------------------------------------------------------------------

    def return_changed(self, index: int, changes: Dict[str, Any]) -> None:
        self.broadcast(protocol.return_state(index, changes))

    def channel_changed(self, index: int, changes: Dict[str, Any]) -> None:
        target = self.store.get_channel(index)
        target_type = target.target_type if target else "ch"
        self.broadcast(protocol.channel_state(index, changes, target_type))

    def bus_names_changed(self, names: Dict[str, str]) -> None:
        for target in self.store:
            self.broadcast(protocol.return_state(target.index, {}, bus_names=names))

    def connection_changed(
        self, state: LivenessState, last_console_reply_at: int, last_meter_frame_at: int
    ) -> None:
        self.broadcast(
            protocol.connection_state(state, last_console_reply_at, last_meter_frame_at)
        )

    # ------------------------------------------------------------------
    # Clients -> console
    # ------------------------------------------------------------------

    def handle_message(self, channel: ClientChannel, raw) -> None:
        """Parse, gate, validate and dispatch one inbound frame."""
        self.messages_received += 1
        msg = parse_client_message(raw)
        if msg is None:
            self.dropped_messages += 1
            return
        log_traffic("<-", channel.id, msg.model_dump(exclude_none=True))

        if is_write(msg) and not self.liveness.may_send_control():
            self.blocked_writes += 1
            state = self.liveness.state.value
            logger.info(f"Blocked {msg.type} from {channel.id} while {state}")
            channel.enqueue(protocol.error(SAFE_STATE_BLOCK, f"Control blocked while {state}"))
            return

        self._handlers[type(msg)](channel, msg)

    def _drop(self, channel: ClientChannel, msg, reason: str) -> None:
        self.dropped_messages += 1
        logger.debug(f"Dropped {msg.type} from {channel.id}: {reason}")

    def _on_hello(self, channel: ClientChannel, msg: Hello) -> None:
        channel.name = msg.clientId
        logger.info(
            f"Hello from {channel.id} (clientId={msg.clientId}, protocolVersion={msg.protocolVersion})"
        )
        channel.enqueue(protocol.welcome())

    def _on_request_full_state(self, channel: ClientChannel, msg: RequestFullState) -> None:
        self.session.poll_all()

    def _on_register_target(self, channel: ClientChannel, msg: RegisterTarget) -> None:
        if msg.targetType != "ch" or not is_channel_index(msg.targetIndex):
            self._drop(channel, msg, f"bad target {msg.targetType}{msg.targetIndex}")
            return
        target = self.session.register_channel_target(msg.targetIndex)
        known = target.known_state()
        if known:
            channel.enqueue(protocol.channel_state(target.index, known, target.target_type))

    def _on_sync(self, channel: ClientChannel, msg: Sync) -> None:
        if msg.targetIndex is None:
            self.session.poll_returns()
        elif is_return_index(msg.targetIndex):
            self.session.poll_return(msg.targetIndex)
        else:
            self._drop(channel, msg, f"bad return index {msg.targetIndex}")

    def _on_log(self, channel: ClientChannel, msg: ClientLog) -> None:
        client_logger.debug(f"[{msg.tag}] {msg.payload}", extra={"client": channel.id, "tag": msg.tag})

    def _on_set_fader(self, channel: ClientChannel, msg: SetFader) -> None:
        value = _finite_number(msg.value)
        if not is_return_index(msg.targetIndex) or value is None:
            self._drop(channel, msg, "invalid index or value")
            return
        value = max(0.0, min(1.0, value))
        if self.session.set_return_fader(msg.targetIndex, value).ok:
            self.broadcast(protocol.return_state(msg.targetIndex, {"fader": value}))

    def _on_set_mute(self, channel: ClientChannel, msg: SetMute) -> None:
        if not is_return_index(msg.targetIndex) or not isinstance(msg.mute, bool):
            self._drop(channel, msg, "invalid index or mute")
            return
        if self.session.set_return_mute(msg.targetIndex, msg.mute).ok:
            self.broadcast(protocol.return_state(msg.targetIndex, {"mute": msg.mute}))

    def _on_set_bus_assignment(self, channel: ClientChannel, msg: SetBusAssignment) -> None:
        bus = msg.busSlot
        valid_bus = isinstance(bus, int) and not isinstance(bus, bool) and bus in MIXBUS_TO_SLOT
        if not (is_return_index(msg.targetIndex) and valid_bus and isinstance(msg.assigned, bool)):
            self._drop(channel, msg, "invalid index, bus or flag")
            return
        if self.session.set_bus_assignment(msg.targetIndex, bus, msg.assigned).ok:
            field = f"bus_{MIXBUS_TO_SLOT[bus]}"
            self.broadcast(protocol.return_state(msg.targetIndex, {field: msg.assigned}))

    def _on_toggle_channel_mute(self, channel: ClientChannel, msg: ToggleChannelMute) -> None:
        if msg.targetType != "ch" or not is_channel_index(msg.targetIndex):
            self._drop(channel, msg, "invalid channel target")
            return
        result, muted = self.session.toggle_channel_mute(msg.targetIndex)
        if result.ok:
            self.broadcast(protocol.channel_state(msg.targetIndex, {"muted": muted}))
