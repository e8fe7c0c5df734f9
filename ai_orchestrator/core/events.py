"""
In-process event bus.

Components publish named events; consumers subscribe explicitly. The bus is
owned by the orchestrator and passed to each component at construction.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, List

logger = logging.getLogger(__name__)

JOB_ENQUEUED = "job.enqueued"
JOB_PROGRESS = "job.progress"
JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_CANCELLED = "job.cancelled"
BATCH_ENQUEUED = "batch.enqueued"
BATCH_COMPLETED = "batch.completed"
DEAD_LETTER_ENTRY_ADDED = "dead-letter.entry-added"
DEAD_LETTER_ENTRY_RESOLVED = "dead-letter.entry-resolved"
DEAD_LETTER_PATTERN_DETECTED = "dead-letter.pattern-detected"
COST_ALERT_CREATED = "cost.alert-created"
COST_ALERT_ACKNOWLEDGED = "cost.alert-acknowledged"
COST_BUDGET_UPDATED = "cost.budget-updated"

EVENT_NAMES = frozenset({
    JOB_ENQUEUED,
    JOB_PROGRESS,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_CANCELLED,
    BATCH_ENQUEUED,
    BATCH_COMPLETED,
    DEAD_LETTER_ENTRY_ADDED,
    DEAD_LETTER_ENTRY_RESOLVED,
    DEAD_LETTER_PATTERN_DETECTED,
    COST_ALERT_CREATED,
    COST_ALERT_ACKNOWLEDGED,
    COST_BUDGET_UPDATED,
})

EventHandler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Synchronous observer list keyed by event name.

    A failing handler is logged and does not prevent delivery to the other
    subscribers.
    """

    def __init__(self):
        self._handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: EventHandler) -> None:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {name}")
        with self._lock:
            self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers.get(name, []):
                self._handlers[name].remove(handler)

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(name, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler for %s failed", name)
