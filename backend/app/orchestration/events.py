"""
In-process event bus for orchestration notifications.

Engines publish typed events ("pipeline registered", "alert triggered", ...)
and consumers such as the log subscriber and the Prometheus subscriber
register for the event types they care about. A subscriber that raises is
logged and skipped; the publisher never sees the error.
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Pipeline engine
    PIPELINE_REGISTERED = "pipeline.registered"
    PIPELINE_QUEUED = "pipeline.queued"
    PIPELINE_COMPLETED = "pipeline.completed"
    PIPELINE_FAILED = "pipeline.failed"
    PIPELINE_CANCELLED = "pipeline.cancelled"
    STAGE_COMPLETED = "pipeline.stage_completed"

    # Registry
    ALGORITHM_REGISTERED = "registry.algorithm_registered"
    DEPLOYMENT_STARTED = "registry.deployment_started"
    DEPLOYMENT_SUCCEEDED = "registry.deployment_succeeded"
    DEPLOYMENT_FAILED = "registry.deployment_failed"
    DEPLOYMENT_ROLLED_BACK = "registry.deployment_rolled_back"

    # Monitoring
    EXECUTION_RECORDED = "monitoring.execution_recorded"
    ALERT_TRIGGERED = "monitoring.alert_triggered"
    ALERT_RESOLVED = "monitoring.alert_resolved"

    # A/B testing
    TEST_CREATED = "abtest.created"
    TEST_STARTED = "abtest.started"
    TEST_PAUSED = "abtest.paused"
    TEST_RESUMED = "abtest.resumed"
    TEST_STOPPED = "abtest.stopped"
    TEST_EXECUTION_RECORDED = "abtest.execution_recorded"
    TEST_ANALYZED = "abtest.analyzed"


@dataclass
class Event:
    """A single notification emitted by an engine."""
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """Typed publish/subscribe channel shared by all engines."""

    def __init__(self):
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def subscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Register *handler* for one event type, or for every event when None."""
        if event_type is None:
            self._wildcard.append(handler)
        else:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        handlers = self._wildcard if event_type is None else self._handlers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event_type: EventType, **payload: Any) -> Event:
        event = Event(type=event_type, payload=payload)
        for handler in [*self._handlers.get(event_type, []), *self._wildcard]:
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type.value)
        return event
