"""
Governance event bus.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ATTEMPT_RECORDED = "attempt.recorded"
    TASK_ASSIGNED = "task.assigned"
    TASK_COMPLETED = "task.completed"
    TASK_BLOCKED = "task.blocked"
    TASK_ESCALATED = "task.escalated"
    TASK_STOPPED = "task.stopped"
    RETRY_SCHEDULED = "task.retry_scheduled"

    REQUEST_CREATED = "request.created"
    REQUEST_APPROVED = "request.approved"
    REQUEST_DENIED = "request.denied"

    LOOP_DECISION = "loop.decision"

    DLQ_RESOLVED = "dlq.resolved"
    ACTION_CREATED = "action.created"
    ACTION_RESOLVED = "action.resolved"


@dataclass
class GovernanceEvent:
    """Standardized event for the governance system."""

    type: EventType
    company_id: str | None = None
    id: UUID = field(default_factory=uuid4)
    task_id: str | None = None
    role_id: str | None = None
    request_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "company_id": self.company_id,
            "task_id": self.task_id,
            "role_id": self.role_id,
            "request_id": self.request_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[GovernanceEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    async def emit(self, event: GovernanceEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type.value)


event_bus = EventEmitter()


async def emit(
    event_type: EventType,
    *,
    company_id: str | None,
    message: str = "",
    task_id: str | None = None,
    role_id: str | None = None,
    request_id: str | None = None,
    emitter: EventEmitter | None = None,
    **data: Any,
) -> GovernanceEvent:
    event = GovernanceEvent(
        type=event_type,
        company_id=company_id,
        task_id=task_id,
        role_id=role_id,
        request_id=request_id,
        message=message,
        data=data,
    )
    await (emitter or event_bus).emit(event)
    return event


async def log_event_handler(event: GovernanceEvent) -> None:
    logger.info("%s %s", event.type.value, event.message)


async def publish_event_handler(event: GovernanceEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not event.company_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    channel = f"channel:company:{event.company_id}"
    await redis.publish(channel, json.dumps(event.to_dict()))


def install_default_handlers(emitter: EventEmitter | None = None) -> None:
    """Register the logging and Redis handlers (called by process entry points)."""
    emitter = emitter or event_bus
    emitter.on_event(log_event_handler)
    emitter.on_event(publish_event_handler)
