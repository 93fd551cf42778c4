"""
Transition Events and Event Bus

State-machine operations return TransitionEvent records; the engine forwards
them to audit sinks. The EventBus is an in-process pub/sub sink.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
import logging
import threading

from pydantic import BaseModel, Field

from .schema import SessionStatus

logger = logging.getLogger(__name__)


class EventTypes:
    SESSION_TRANSITIONED = "session.transitioned"


class TransitionEvent(BaseModel):
    """One session status transition."""
    session_id: str
    from_status: Optional[SessionStatus] = None  # None on creation
    to_status: SessionStatus
    actor_id: str
    timestamp: datetime
    reason: str = ""
    stage_number: Optional[int] = None
    round_number: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditSink(ABC):
    """Receives one event per session state transition."""

    @abstractmethod
    def emit(self, event: TransitionEvent) -> None:
        """
        Record an event.

        Args:
            event: Transition to record
        """
        pass


class EventBus(AuditSink):
    """
    Simple event bus for publishing and subscribing to events

    Thread-safe. Handler failures are logged and do not reach the publisher.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.Lock()
        self._event_history: List[Dict[str, Any]] = []
        self._max_history = max_history

    def subscribe(self, event_type: str, handler: Callable):
        """
        Subscribe to event type

        Args:
            event_type: Event type to subscribe to
            handler: Callback receiving the event dict
        """
        with self._lock:
            if event_type not in self._subscribers:
                self._subscribers[event_type] = []
            self._subscribers[event_type].append(handler)

    def publish(self, event_type: str, data: Dict[str, Any]):
        """
        Publish event

        Args:
            event_type: Event type
            data: Event data
        """
        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                del self._event_history[:-self._max_history]
            handlers = list(self._subscribers.get(event_type, []))

        # Call handlers outside lock to avoid deadlock
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Error in event handler for {event_type}: {e}")

    def emit(self, event: TransitionEvent) -> None:
        self.publish(EventTypes.SESSION_TRANSITIONED, event.model_dump(mode="json"))

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get event history

        Args:
            event_type: Filter by event type (None for all)
            limit: Maximum number of events

        Returns:
            List of events (most recent first)
        """
        with self._lock:
            if event_type:
                filtered = [e for e in self._event_history if e["type"] == event_type]
            else:
                filtered = self._event_history

            return list(reversed(filtered[-limit:]))

    def clear_history(self):
        """Clear event history"""
        with self._lock:
            self._event_history.clear()
