"""Timeline event bus.

Session lifecycle events and job updates are recorded on the store's timeline
first, then fanned out to in-process listeners (the WebSocket bridge, the CLI).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Event types recorded by the session manager and orchestrator
EVENT_JOB_UPDATE = "job_update"
EVENT_SESSION_SPAWN = "session_spawn"
EVENT_SESSION_EXIT = "session_exit"
EVENT_SESSION_ERROR = "session_error"


class EventCollector:
    """Central event bus: writes to the timeline table and notifies listeners."""

    def __init__(self, store):
        self._store = store
        self._listeners: list[Callable] = []

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        job_id: str | None = None,
        session_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Record an event on the timeline, then hand it to every listener. Returns the event id."""
        event_id = self._store.record_event(
            event_type=event_type,
            summary=summary,
            session_id=session_id,
            job_id=job_id,
            metadata=metadata,
        )

        event_data = {
            "id": event_id,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "session_id": session_id,
            "job_id": job_id,
            "metadata": metadata,
        }

        for listener in list(self._listeners):
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_id

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register cb(event_data); registering the same callback twice is a no-op."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass
