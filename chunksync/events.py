"""
Event emitter used as the structured event sink.

Log shippers, notification hooks and the CLI subscribe to orchestration
events; a failing listener is logged and never interrupts the run.
"""
import logging
from typing import Callable, Dict, List


logger = logging.getLogger(__name__)

# Event names
CHUNK_STARTED = "chunk_started"
CHUNK_COMPLETE = "chunk_complete"
CHUNK_RETRY = "chunk_retry"
CHUNK_FAILED = "chunk_failed"
CHUNK_SKIPPED = "chunk_skipped"
PROFILE_STARTED = "profile_started"
PROFILE_COMPLETE = "profile_complete"
RUN_COMPLETE = "run_complete"
RUN_STOPPED = "run_stopped"
DEGRADED = "degraded"


class EventEmitter:
    """Synchronous publish/subscribe by event name."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, callback: Callable) -> None:
        """Subscribe to an event."""
        listeners = self._listeners.setdefault(event_name, [])
        if callback not in listeners:
            listeners.append(callback)

    def off(self, event_name: str, callback: Callable) -> None:
        """Unsubscribe from an event."""
        listeners = self._listeners.get(event_name, [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event_name: str, **payload) -> None:
        """Call every listener of event_name with the payload as keyword arguments."""
        for callback in list(self._listeners.get(event_name, [])):
            try:
                callback(**payload)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
