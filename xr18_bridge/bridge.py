"""
XR18 Bridge - wires the console session, liveness model and client relay.

Usage:
    python -m xr18_bridge --xr18-host 192.168.1.37

Architecture:
    XR18 console <--UDP/OSC--> ConsoleSession --> TargetStore
                                    |                 |
                              LivenessMonitor         |
                                    |                 v
    Client 1..N  <--WebSocket/JSON--------------> BridgeRelay
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import websockets

from xr18_bridge.config import BridgeConfig
from xr18_bridge.liveness import LivenessMonitor, Scheduler, now_ms
from xr18_bridge.relay import BridgeRelay
from xr18_bridge.session import ConsoleSession
from xr18_bridge.targets import TargetStore

logger = logging.getLogger(__name__)

# Client frames are small JSON control messages
MAX_CLIENT_MESSAGE_SIZE = 65_536


class XR18Bridge:
    """One bridge process: one console socket, one WebSocket endpoint."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        clock: Callable[[], float] = now_ms,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config or BridgeConfig()
        timing = self.config.timing

        self.store = TargetStore()
        self.liveness = LivenessMonitor(
            offline_ms=timing.offline_ms,
            live_ms=timing.live_ms,
            meter_live_ms=timing.meter_live_ms,
            recovery_delay=timing.recovery_delay,
            clock=clock,
            scheduler=scheduler,
        )
        self.session = ConsoleSession(self.config, self.store, self.liveness)
        self.relay = BridgeRelay(
            self.session,
            self.store,
            self.liveness,
            queue_size=self.config.client_queue_size,
        )

        self.session.listener = self.relay
        self.liveness.on_change = self.relay.connection_changed
        self.liveness.on_recover = self.session.recover

        self.start_time = time.time()
        self._ws_server = None
        self._metrics_server: Optional[asyncio.Server] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Bind sockets and start timers. Raises OSError if a port cannot be bound."""
        config = self.config
        self._stop_event = asyncio.Event()

        await self.session.bind()

        self._ws_server = await websockets.serve(
            self.relay.handle_client,
            config.ws_host,
            config.ws_port,
            max_size=MAX_CLIENT_MESSAGE_SIZE,
        )
        logger.info(f"Client WebSocket: ws://{config.ws_host}:{config.ws_port}")

        if config.metrics_port is not None:
            from xr18_bridge.metrics import start_metrics_server

            self._metrics_server = await start_metrics_server(self, config.metrics_port)

        self.session.start()
        self.liveness.start(config.timing.liveness_tick)
        logger.info("XR18 bridge ready")

    async def run(self) -> None:
        """Start and serve until ``stop()`` is called."""
        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            await self.cleanup()

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def cleanup(self) -> None:
        """Cancel timers and close every socket."""
        await self.liveness.stop()
        await self.session.stop()
        await self.relay.close_all()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        if self._metrics_server is not None:
            self._metrics_server.close()
            await self._metrics_server.wait_closed()
            self._metrics_server = None
        logger.info("XR18 bridge stopped")
