"""
Periodic tick loop for the orchestrator.

The loop owns the orchestrator's mutations; presentation code only reads
orchestrator.snapshot() from its own thread or from the on_tick callback.
"""
import logging
import threading
from typing import Callable, Optional

from .config import TICK_INTERVAL
from .models import StateSnapshot
from .orchestrator import JobOrchestrator


logger = logging.getLogger(__name__)


class ReplicationScheduler:
    """Drives JobOrchestrator.tick() at a fixed interval."""

    def __init__(self, orchestrator: JobOrchestrator, interval: float = TICK_INTERVAL):
        if interval <= 0:
            raise ValueError("Tick interval must be positive")
        self.orchestrator = orchestrator
        self.interval = interval
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_until_complete(self, on_tick: Optional[Callable[[StateSnapshot], None]] = None) -> bool:
        """
        Tick until the run completes or is stopped.

        Args:
            on_tick: Called with a state snapshot after every tick

        Returns:
            True if the run succeeded
        """
        while not self.orchestrator.is_finished:
            self.orchestrator.tick()
            if on_tick is not None:
                on_tick(self.orchestrator.snapshot())
            if self.orchestrator.is_finished or self._halt.wait(self.interval):
                break
        return self.orchestrator.run_succeeded()

    def start(self, on_tick: Optional[Callable[[StateSnapshot], None]] = None) -> threading.Thread:
        """Run the loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Scheduler already running")
        self._halt.clear()
        self._thread = threading.Thread(
            target=self.run_until_complete,
            args=(on_tick,),
            name="chunksync-scheduler",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def halt(self) -> None:
        """Leave the loop without stopping the run; running jobs keep going."""
        self._halt.set()

    def stop(self) -> None:
        """Stop the run; the loop performs one more tick to kill running jobs."""
        self.orchestrator.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
