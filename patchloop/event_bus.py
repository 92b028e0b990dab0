import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class PatchEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    session_id: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for session observability."""

    def __init__(self):
        self._subscribers: List[Callable[[PatchEvent], None]] = []

    def subscribe(self, callback: Callable[[PatchEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[PatchEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        event_type: str,
        source: str,
        payload: Dict[str, Any] | None = None,
        session_id: str = "",
    ) -> PatchEvent:
        """Construct and broadcast a PatchEvent to all subscribers."""
        event = PatchEvent(
            event_type=event_type,
            source=source,
            session_id=session_id,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber never stops a session.
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")
        return event
