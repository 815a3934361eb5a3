"""
Event bus: post-commit notifications for workflow mutations.

The facade publishes the events a transaction queued only after it commits.
Delivery is best-effort: a failing subscriber is logged and skipped, and can
never undo or block the committed change.

Event types:
    task_created, task_updated, task_status_changed, task_deleted, task_moved,
    board_created, board_deleted, column_deleted, dependency_added
"""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class WorkflowEventBus:
    """Routes workflow events to subscribed callbacks."""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}  # event_type -> list of callbacks

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback for an event type (``"*"`` for every event)."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        callbacks = self.subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event_type: str, **payload: Any) -> None:
        """Deliver an event to its subscribers, then to wildcard subscribers."""
        callbacks = self.subscribers.get(event_type, []) + self.subscribers.get(ALL_EVENTS, [])
        for callback in callbacks:
            try:
                callback(event_type, **payload)
            except Exception as e:
                logger.warning(f"Error in {event_type} subscriber {getattr(callback, '__name__', callback)}: {e}")
