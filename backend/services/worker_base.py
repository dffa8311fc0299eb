"""
Base class for periodic workers

Combines:
- Signal handling (graceful shutdown on SIGTERM/SIGINT)
- Fixed-interval loop: run_once(), then sleep
- Per-run error isolation with success/failure counters
"""
import asyncio
import signal
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """
    Base class for workers that run a pass on a fixed interval

    Subclasses implement run_once(). A failing pass is logged and counted;
    the loop keeps going until stop() or a shutdown signal.
    """

    def __init__(self, worker_name: str, interval: float):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.worker_name = worker_name
        self.interval = interval
        self.running = False
        self.runs_completed = 0
        self.runs_failed = 0
        self._wakeup: Optional[asyncio.Event] = None

    async def start(self, install_signal_handlers: bool = True):
        """
        Main worker loop

        Continuously:
        1. run_once()
        2. Sleep for interval (interrupted by stop())
        """
        if install_signal_handlers:
            self._setup_signal_handlers()

        self.running = True
        self._wakeup = asyncio.Event()
        logger.info(f"[{self.worker_name}] Started, interval {self.interval}s")

        while self.running:
            try:
                await self.run_once()
                self.runs_completed += 1
            except asyncio.CancelledError:
                logger.info(f"[{self.worker_name}] Received cancellation signal")
                break
            except Exception as e:
                self.runs_failed += 1
                logger.error(f"[{self.worker_name}] Run failed: {e}", exc_info=True)

            if not self.running:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info(f"[{self.worker_name}] Received cancellation signal")
                break

        self.running = False
        logger.info(
            f"[{self.worker_name}] Shutting down. "
            f"Completed: {self.runs_completed}, Failed: {self.runs_failed}"
        )

    def stop(self):
        """Ask the loop to exit after the current run"""
        self.running = False
        if self._wakeup is not None:
            self._wakeup.set()

    def _setup_signal_handlers(self):
        """Setup graceful shutdown on SIGTERM/SIGINT"""
        def shutdown_handler(signum, frame):
            logger.info(f"[{self.worker_name}] Received signal {signum}, shutting down...")
            self.stop()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

    async def run_once(self):
        """
        Override in subclass - do one pass of work
        """
        raise NotImplementedError(f"{self.__class__.__name__} must implement run_once()")
