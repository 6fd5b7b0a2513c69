"""Dead letter queue: tasks that exhausted their retry budget."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import AlreadyProcessedError, InvalidRequestError, NotFoundError
from .events import EventEmitter, EventType, emit
from .models import DeadLetterEntry, Task, TaskStatus

logger = logging.getLogger(__name__)

LAST_OUTPUT_MAX_CHARS = 10000


class Resolution(StrEnum):
    ARCHIVE = "archive"
    RETRY = "retry"


@dataclass
class ResolveResult:
    entry_id: str
    task_id: str
    action: Resolution
    task_status: str

    def to_dict(self) -> dict[str, str]:
        return {
            "entry_id": self.entry_id,
            "task_id": self.task_id,
            "action": self.action.value,
            "task_status": self.task_status,
        }


async def get_unresolved_entry(session: AsyncSession, task_id: str) -> DeadLetterEntry | None:
    result = await session.execute(
        select(DeadLetterEntry).where(
            DeadLetterEntry.task_id == task_id, DeadLetterEntry.resolved_at.is_(None)
        )
    )
    return result.scalars().first()


async def escalate(
    session: AsyncSession,
    task: Task,
    *,
    failure_reason: str,
    last_output: str | None,
) -> DeadLetterEntry:
    """Record a task that failed its final attempt. At most one open entry per task."""
    existing = await get_unresolved_entry(session, task.id)
    if existing is not None:
        logger.info("Task %s already has an open dead letter entry %s", task.id, existing.id)
        return existing

    entry = DeadLetterEntry(
        task_id=task.id,
        role_id=task.role_id,
        company_id=task.company_id,
        failure_reason=failure_reason,
        attempts_made=task.current_attempt,
        last_output=(last_output or "")[:LAST_OUTPUT_MAX_CHARS],
    )
    session.add(entry)
    await session.flush()
    logger.warning(
        "Task %s escalated to dead letter queue after %s attempts", task.id, task.current_attempt
    )
    return entry


async def list_entries(
    session: AsyncSession,
    *,
    company_id: str | None = None,
    unresolved_only: bool = True,
    limit: int = 100,
) -> list[DeadLetterEntry]:
    query = select(DeadLetterEntry)
    if company_id:
        query = query.where(DeadLetterEntry.company_id == company_id)
    if unresolved_only:
        query = query.where(DeadLetterEntry.resolved_at.is_(None))
    result = await session.execute(query.order_by(DeadLetterEntry.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def get_entry(session: AsyncSession, entry_id: str) -> DeadLetterEntry:
    result = await session.execute(select(DeadLetterEntry).where(DeadLetterEntry.id == entry_id))
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Dead letter entry not found", entry_id=entry_id)
    return entry


async def resolve(
    session: AsyncSession,
    entry_id: str,
    action: str,
    *,
    resolved_by: str,
    notes: str | None = None,
    emitter: EventEmitter | None = None,
) -> ResolveResult:
    """Archive the task, or reset it to pending with a fresh attempt budget."""
    try:
        resolution = Resolution(action)
    except ValueError:
        raise InvalidRequestError("Invalid action. Must be 'archive' or 'retry'", action=action) from None

    entry = await get_entry(session, entry_id)
    now = datetime.now(UTC)
    claimed = await session.execute(
        update(DeadLetterEntry)
        .where(DeadLetterEntry.id == entry.id, DeadLetterEntry.resolved_at.is_(None))
        .values(resolved_at=now, resolved_by=resolved_by, resolution_notes=notes)
    )
    if claimed.rowcount != 1:
        raise AlreadyProcessedError("Dead letter entry has already been resolved", entry_id=entry.id)

    task = await db.require_task(session, entry.task_id)
    if resolution == Resolution.ARCHIVE:
        task.status = TaskStatus.ARCHIVED.value
    else:
        task.status = TaskStatus.PENDING.value
        task.current_attempt = 0
    task.updated_at = now

    role = await db.get_role(session, task.role_id)
    if role is not None:
        verb = "archived" if resolution == Resolution.ARCHIVE else "reset for retry"
        await db.add_role_message(session, role, f"Task {verb} from the dead letter queue: {task.title}")

    await session.commit()
    await session.refresh(entry)
    logger.info("Dead letter entry %s resolved with %s by %s", entry.id, resolution.value, resolved_by)
    await emit(
        EventType.DLQ_RESOLVED,
        company_id=task.company_id,
        task_id=task.id,
        message=f"Dead letter entry {resolution.value}",
        emitter=emitter,
        entry_id=entry.id,
        action=resolution.value,
    )
    return ResolveResult(entry_id=entry.id, task_id=task.id, action=resolution, task_status=task.status)
