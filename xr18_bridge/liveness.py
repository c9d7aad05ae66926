"""
Connection safe-state: OFFLINE / STALE / LIVE.

The state is never stored as independent truth. It is recomputed from two
receipt timestamps (last decoded console reply of any kind, last decoded meter
frame) on every received frame and on a fixed tick, and only broadcast when
the derived value changes.

Entering STALE schedules a single delayed recovery (re-assert the remote
session and meter subscription). The guard that limits recovery to once per
STALE episode resets only on a transition to LIVE or OFFLINE, and the pending
timer is cancelled the moment the state leaves STALE.
"""

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

OFFLINE_THRESHOLD_MS = 4000.0
LIVE_THRESHOLD_MS = 1500.0
METER_LIVE_THRESHOLD_MS = 1500.0
RECOVERY_DELAY_S = 0.25


class LivenessState(str, Enum):
    OFFLINE = "OFFLINE"
    STALE = "STALE"
    LIVE = "LIVE"


def now_ms() -> float:
    return time.time() * 1000.0


def classify(
    since_reply_ms: float,
    since_meter_ms: float,
    offline_ms: float = OFFLINE_THRESHOLD_MS,
    live_ms: float = LIVE_THRESHOLD_MS,
    meter_live_ms: float = METER_LIVE_THRESHOLD_MS,
) -> LivenessState:
    """Pure classification of the two receipt ages (ms, ``inf`` for never)."""
    if since_reply_ms >= offline_ms:
        return LivenessState.OFFLINE
    if since_reply_ms <= live_ms and since_meter_ms <= meter_live_ms:
        return LivenessState.LIVE
    return LivenessState.STALE


ChangeCallback = Callable[[LivenessState, float, float], None]
Scheduler = Callable[[float, Callable[[], None]], Any]


class LivenessMonitor:
    """Tracks receipt timestamps and drives edge-triggered state changes."""

    def __init__(
        self,
        offline_ms: float = OFFLINE_THRESHOLD_MS,
        live_ms: float = LIVE_THRESHOLD_MS,
        meter_live_ms: float = METER_LIVE_THRESHOLD_MS,
        recovery_delay: float = RECOVERY_DELAY_S,
        clock: Callable[[], float] = now_ms,
        scheduler: Optional[Scheduler] = None,
    ):
        self.offline_ms = offline_ms
        self.live_ms = live_ms
        self.meter_live_ms = meter_live_ms
        self.recovery_delay = recovery_delay
        self._clock = clock
        self._scheduler = scheduler

        self.last_console_reply_at: Optional[float] = None
        self.last_meter_frame_at: Optional[float] = None
        self._state = LivenessState.OFFLINE

        # Wired by the bridge after construction
        self.on_change: Optional[ChangeCallback] = None
        self.on_recover: Optional[Callable[[], None]] = None

        self._recovery_attempted = False
        self._recovery_handle: Optional[Any] = None
        self.recovery_attempts = 0
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> LivenessState:
        return self._state

    @property
    def recovery_pending(self) -> bool:
        return self._recovery_handle is not None

    def may_send_control(self) -> bool:
        """Control writes are only allowed when fully LIVE."""
        return self._state is LivenessState.LIVE

    def note_console_reply(self, now: Optional[float] = None) -> LivenessState:
        now = self._clock() if now is None else now
        self.last_console_reply_at = now
        return self.update(now)

    def note_meter_frame(self, now: Optional[float] = None) -> LivenessState:
        now = self._clock() if now is None else now
        self.last_meter_frame_at = now
        return self.update(now)

    def _age(self, stamp: Optional[float], now: float) -> float:
        return math.inf if stamp is None else now - stamp

    def update(self, now: Optional[float] = None) -> LivenessState:
        """Recompute the state; notify and drive recovery only on change."""
        now = self._clock() if now is None else now
        next_state = classify(
            self._age(self.last_console_reply_at, now),
            self._age(self.last_meter_frame_at, now),
            self.offline_ms,
            self.live_ms,
            self.meter_live_ms,
        )
        if next_state is self._state:
            return next_state

        previous = self._state
        self._state = next_state
        logger.info(f"Connection state {previous.value} -> {next_state.value}")

        if next_state is LivenessState.STALE:
            self._schedule_recovery()
        else:
            self._reset_recovery()

        if self.on_change is not None:
            self.on_change(next_state, *self.timestamps())
        return next_state

    def timestamps(self):
        """(lastConsoleReplyAt, lastMeterFrameAt) in epoch ms, 0 for never."""
        return (
            int(self.last_console_reply_at or 0),
            int(self.last_meter_frame_at or 0),
        )

    def _schedule_recovery(self) -> None:
        if self._recovery_attempted:
            return
        self._recovery_attempted = True
        self._cancel_pending()

        schedule = self._scheduler or asyncio.get_running_loop().call_later
        self._recovery_handle = schedule(self.recovery_delay, self._fire_recovery)

    def _fire_recovery(self) -> None:
        self._recovery_handle = None
        if self._state is not LivenessState.STALE:
            return
        self.recovery_attempts += 1
        logger.warning("STALE detected: one-shot recovery (re-assert session + renew meters)")
        if self.on_recover is None:
            return
        try:
            self.on_recover()
        except Exception as e:
            logger.warning(f"Recovery attempt failed: {e}")

    def _cancel_pending(self) -> None:
        if self._recovery_handle is not None:
            self._recovery_handle.cancel()
            self._recovery_handle = None

    def _reset_recovery(self) -> None:
        self._recovery_attempted = False
        self._cancel_pending()

    async def _tick_loop(self, interval: float) -> None:
        """Recompute on a fixed cadence so the state degrades when packets stop."""
        while True:
            try:
                await asyncio.sleep(interval)
                self.update()
            except asyncio.CancelledError:
                logger.debug("Liveness tick loop cancelled")
                break
            except Exception as e:
                logger.error(f"Liveness tick error: {e}")

    def start(self, interval: float = 0.25) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._tick_loop(interval))

    async def stop(self) -> None:
        self._cancel_pending()
        if self._tick_task and not self._tick_task.done():
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
        self._tick_task = None
