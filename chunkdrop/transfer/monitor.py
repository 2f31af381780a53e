"""
Transfer Watchdog

Wakes up every `interval` seconds and looks at one transfer (a sender or
a receiver). If the transfer is running, partially done, and has not
moved for longer than `stall_threshold`, the watchdog:

- reports a Stalled signal to its callback
- sends the transfer's restart request (if it has one) to the peer

After firing it stays quiet until another full threshold of inactivity
has passed. It reads the transfer's timestamps and progress, nothing else.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..errors import ChannelClosed, Stalled
from .channel import Channel
from .protocol import RestartRequest, encode_restart

logger = logging.getLogger(__name__)

# Called with each stall signal
StallCallback = Callable[[Stalled], None]


class TransferMonitor:
    """
    Periodic inactivity watchdog for one transfer.

    The watched object needs:
        is_active: bool
        progress: float (percent)
        last_activity: float (same clock as the monitor)
        restart_request() -> Optional[RestartRequest]
    """

    def __init__(self, target, channel: Optional[Channel] = None,
                 interval: float = 5.0, stall_threshold: float = 10.0,
                 on_stall: Optional[StallCallback] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.target = target
        self.channel = channel
        self.interval = interval
        self.stall_threshold = stall_threshold
        self.on_stall = on_stall
        self._clock = clock

        self._last_signal: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check(self, now: Optional[float] = None) -> Optional[Stalled]:
        """
        Decide whether the target is stalled right now.

        Returns:
            A Stalled signal, or None
        """
        if now is None:
            now = self._clock()

        if not self.target.is_active:
            return None
        if not 0 < self.target.progress < 100:
            return None

        quiet_since = self.target.last_activity
        if self._last_signal is not None and self._last_signal > quiet_since:
            quiet_since = self._last_signal

        elapsed = now - quiet_since
        if elapsed <= self.stall_threshold:
            return None

        self._last_signal = now
        return Stalled(now - self.target.last_activity)

    async def tick(self, now: Optional[float] = None) -> Optional[Stalled]:
        """Run one check and emit the stall signal and restart request if needed."""
        stalled = self.check(now)
        if stalled is None:
            return None

        logger.warning(f"{stalled}; last progress {self.target.progress:.2f}%")

        if self.on_stall:
            try:
                self.on_stall(stalled)
            except Exception as e:
                logger.error(f"Stall callback error: {e}")

        request: Optional[RestartRequest] = self.target.restart_request()
        if request is not None and self.channel is not None:
            try:
                await self.channel.send(encode_restart(request))
                logger.info(
                    f"Requested restart of {request.metadata.name}: "
                    f"{len(request.missing)} chunk(s) missing"
                )
            except ChannelClosed as e:
                logger.warning(f"Could not send restart request: {e}")

        return stalled

    def start(self):
        """Start ticking in the background."""
        if not self.is_running:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop ticking."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()
