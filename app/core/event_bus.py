"""
Event Bus - in-process notifications for agent task and autonomy changes.
Lets the execution engine and UI adapters react to owner decisions without
the services knowing who is listening.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.core.utc import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """All event types published by the agent core"""
    # Autonomy events
    AUTONOMY_PRESET_CHANGED = "autonomy_preset_changed"
    AUTONOMY_LEVEL_CHANGED = "autonomy_level_changed"
    AUTONOMY_GRADUATED = "autonomy_graduated"

    # Task events
    TASK_CREATED = "task_created"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_PROGRESS = "task_progress"
    TASK_STATUS_CHANGED = "task_status_changed"

    # Proactive action events
    PROACTIVE_ACTION_RECORDED = "proactive_action_recorded"


@dataclass
class Event:
    """Event data structure"""
    type: EventType
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)
    source: str = "system"
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "user_id": self.user_id,
        }


class EventBus:
    """
    Central event bus for the agent core.
    Singleton pattern - one bus for the entire application.
    """
    _instance: Optional["EventBus"] = None
    _initialized: bool = False

    def __new__(cls) -> "EventBus":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._event_history: List[Event] = []
        self._max_history = 500
        self._initialized = True

    def subscribe(self, event_type: EventType, callback: Callable) -> None:
        """Subscribe a sync or async callback to an event type"""
        self._subscribers.setdefault(event_type, []).append(callback)
        logger.debug("Subscribed to %s: %s", event_type.value, getattr(callback, "__name__", callback))

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: str = "system",
        user_id: Optional[str] = None,
    ) -> Event:
        """
        Publish an event to all subscribers.
        Subscriber errors are logged and never reach the publisher: the
        state change that triggered the event has already committed.
        """
        event = Event(type=event_type, data=data, source=source, user_id=user_id)

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        logger.debug("Event: %s from %s", event_type.value, source)

        for callback in list(self._subscribers.get(event_type, [])):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Error in subscriber %s for %s", getattr(callback, "__name__", callback), event_type.value)

        return event

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Event]:
        """Most recent events, optionally filtered, oldest first."""
        events = self._event_history
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if user_id is not None:
            events = [e for e in events if e.user_id == user_id]
        return events[-limit:]

    def clear(self) -> None:
        """Drop all subscribers and history (used by tests)."""
        self._subscribers = {}
        self._event_history = []


# Global instance
event_bus = EventBus()
