"""
Interval driver for manager ticks.

Ticks never overlap. A tick requested while one is running (for example by
SIGUSR1 from `hive manager check`) is coalesced into a single follow-up run.
"""

import logging
import signal
import threading
from typing import Callable

from hive.db.client import is_busy_error
from hive.manager.locking import ManagerLock
from hive.manager.tick import ManagerContext, TickSummary, run_tick

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "skipped: database lock is busy"


def default_tick_fn(ctx: ManagerContext) -> Callable[[ManagerContext], TickSummary]:
    if ctx.config.manager.use_prefect:
        from hive.manager.flow import manager_tick_flow
        return manager_tick_flow
    return run_tick


class ManagerTicker:
    """Runs ticks on an interval with overlap protection."""

    def __init__(
        self,
        ctx: ManagerContext,
        lock: ManagerLock | None = None,
        tick_fn: Callable[[ManagerContext], TickSummary] | None = None,
    ):
        self.ctx = ctx
        self.lock = lock
        self.tick_fn = tick_fn or default_tick_fn(ctx)
        self.in_progress = False
        self.queued = False
        self.runs = 0
        self.last_result: str | None = None
        self._stop = threading.Event()
        self._wake = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def request_tick(self) -> bool:
        """Run a tick now, or queue one if a tick is already running.

        Returns False when the request was coalesced into a running tick.
        """
        if self.in_progress:
            self.queued = True
            return False

        self.in_progress = True
        try:
            while True:
                self.queued = False
                self._run_once()
                if not self.queued or self.stopped:
                    break
        finally:
            self.in_progress = False
        return True

    def _run_once(self) -> None:
        if self.lock is not None and not self.lock.heartbeat():
            logger.error("[ticker] Lost the manager lock, stopping")
            self.last_result = "stopped: manager lock lost"
            self.stop()
            return

        self.runs += 1
        try:
            summary = self.tick_fn(self.ctx)
            self.last_result = summary.describe()
        except Exception as e:
            if is_busy_error(e):
                logger.warning(f"[ticker] Tick {BUSY_MESSAGE}")
                self.last_result = BUSY_MESSAGE
            else:
                logger.exception(f"[ticker] Tick failed: {e}")
                self.last_result = f"failed: {e}"

    def _install_signal_handlers(self) -> dict:
        def on_stop(signum, frame):
            logger.info(f"[ticker] Received signal {signum}, stopping")
            self.stop()
            self._wake.set()

        def on_check(signum, frame):
            # Wakes the sleep below; a running tick gets a coalesced re-run
            self.queued = True
            self._wake.set()

        previous = {}
        for sig, handler in ((signal.SIGINT, on_stop), (signal.SIGTERM, on_stop), (signal.SIGUSR1, on_check)):
            previous[sig] = signal.signal(sig, handler)
        return previous

    def run_forever(self, interval_seconds: float) -> None:
        """Tick every `interval_seconds` until stopped by a signal or stop()."""
        previous = self._install_signal_handlers()
        logger.info(f"[ticker] Manager started, interval {interval_seconds:g}s")
        try:
            while not self.stopped:
                self.request_tick()
                if self.stopped:
                    break
                # Requests that arrived mid-tick were already served by the coalesced run
                self._wake.clear()
                self._wake.wait(interval_seconds)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            logger.info("[ticker] Manager stopped")
