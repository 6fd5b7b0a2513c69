"""Handoffs of work to execution outside the system, and their resolution."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import AlreadyProcessedError, AuthenticationError, InvalidRequestError, NotFoundError
from .events import EventType, emit
from .models import ActionStatus, ActionType, CompanyWebhook, OutputAction, Role, Task, TaskStatus
from .services import Services

logger = logging.getLogger(__name__)

Deferred = Callable[[], Awaitable[None]]

CALLBACK_STATUSES = tuple(status.value for status in ActionStatus)


async def create_external_action(
    session: AsyncSession,
    task: Task,
    role: Role,
    *,
    route: str,
    summary: str | None = None,
) -> OutputAction:
    """Record a mark_external handoff and move the task to running."""
    action = OutputAction(
        task_id=task.id,
        company_id=task.company_id,
        action_type=ActionType.MARK_EXTERNAL.value,
        action_data={
            "summary": summary or task.description[:500],
            "role_name": role.label,
            "task_title": task.title,
            "execution_route": route,
        },
        status=ActionStatus.PENDING.value,
    )
    session.add(action)
    task.status = TaskStatus.RUNNING.value
    task.updated_at = datetime.now(UTC)
    await session.flush()
    await db.add_role_message(
        session, role, f"Task routed to external execution ({route}): {task.title}"
    )
    return action


async def route_new_task(
    session: AsyncSession,
    services: Services,
    task: Task,
    role: Role,
    *,
    external: bool | None = None,
) -> Deferred:
    """Route a freshly created task; returns the queue call to make after commit."""
    text = f"{task.title}\n{task.description}"
    if external is None:
        external = services.classifier.routes_externally(text)

    if external:
        lane = services.classifier.execution_lane(text).lane.value
        action = await create_external_action(session, task, role, route=lane)
        action_id = action.id

        async def dispatch() -> None:
            await services.launcher.dispatch_webhooks(action_id)

        return dispatch

    task_id = task.id

    async def launch() -> None:
        await services.launcher.launch_task(task_id, expected_attempt=0)

    return launch


async def get_action(session: AsyncSession, action_id: str) -> OutputAction:
    result = await session.execute(select(OutputAction).where(OutputAction.id == action_id))
    action = result.scalar_one_or_none()
    if action is None:
        raise NotFoundError("Output action not found", action_id=action_id)
    return action


async def resolve_action(
    session: AsyncSession,
    services: Services,
    action_id: str,
    *,
    status: str = ActionStatus.COMPLETED.value,
    notes: str | None = None,
    completed_by: str | None = None,
    artifacts: list[dict[str, Any]] | None = None,
) -> OutputAction:
    """Apply a completion/failure (from a human or a callback) and propagate it to the task."""
    if status not in CALLBACK_STATUSES:
        raise InvalidRequestError(
            f"Invalid status. Must be one of: {', '.join(CALLBACK_STATUSES)}", status=status
        )
    action = await get_action(session, action_id)
    if action.status != ActionStatus.PENDING:
        raise AlreadyProcessedError(
            "Output action has already been resolved", action_id=action.id, status=action.status
        )

    now = datetime.now(UTC)
    data = dict(action.action_data or {})
    if artifacts:
        data["artifacts"] = list(data.get("artifacts", [])) + list(artifacts)
    values: dict[str, Any] = {"status": status, "action_data": data}
    if notes:
        values["notes"] = notes
    if status != ActionStatus.PENDING:
        values["completed_at"] = now
        values["completed_by"] = completed_by

    claimed = await session.execute(
        update(OutputAction)
        .where(OutputAction.id == action.id, OutputAction.status == ActionStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await session.rollback()
        raise AlreadyProcessedError("Output action has already been resolved", action_id=action.id)
    await session.refresh(action)

    task = await db.get_task(session, action.task_id)
    role = await db.get_role(session, task.role_id) if task is not None else None
    loop_role_id: str | None = None
    if task is not None and task.status == TaskStatus.RUNNING:
        if status == ActionStatus.COMPLETED:
            task.status = TaskStatus.COMPLETED.value
            task.completion_summary = notes or task.completion_summary or "Completed externally."
            await db.refresh_dependents(session, task)
            loop_role_id = task.role_id
        elif status == ActionStatus.FAILED:
            task.status = TaskStatus.BLOCKED.value
        task.updated_at = now
        if role is not None and status != ActionStatus.PENDING:
            await db.add_role_message(
                session,
                role,
                f"External execution {status} for task: {task.title}"
                + (f"\n\nNotes: {notes}" if notes else ""),
            )

    await session.commit()
    logger.info("Output action %s updated to %s", action.id, status)
    await emit(
        EventType.ACTION_RESOLVED,
        company_id=action.company_id,
        task_id=action.task_id,
        message=f"Output action {status}",
        emitter=services.events,
        action_id=action.id,
        status=status,
    )
    if loop_role_id is not None:
        await services.launcher.trigger_loop(loop_role_id)
    return action


async def verify_callback_key(session: AsyncSession, company_id: str, api_key: str | None) -> None:
    """The key must equal the secret of one of the company's active webhooks."""
    if not api_key:
        raise AuthenticationError("api_key is required")
    result = await session.execute(
        select(CompanyWebhook.secret).where(
            CompanyWebhook.company_id == company_id, CompanyWebhook.is_active.is_(True)
        )
    )
    secrets = [secret for secret in result.scalars().all() if secret]
    if not any(hmac.compare_digest(secret.encode(), api_key.encode()) for secret in secrets):
        raise AuthenticationError("Invalid API key")


def _callback_artifacts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    artifacts: list[dict[str, Any]] = []
    for item in payload.get("artifacts") or []:
        if isinstance(item, dict):
            artifacts.append(item)
        elif isinstance(item, str):
            artifacts.append({"url": item} if item.startswith(("http://", "https://")) else {"content": item})
    return artifacts


async def handle_callback(session: AsyncSession, services: Services, payload: dict[str, Any]) -> OutputAction:
    """Inbound webhook callback: ``{action_id, status, notes, api_key, artifacts?}``."""
    action_id = payload.get("action_id")
    if not action_id or not isinstance(action_id, str):
        raise InvalidRequestError("action_id is required")
    action = await get_action(session, action_id)
    await verify_callback_key(session, action.company_id, payload.get("api_key"))

    status = payload.get("status") or ActionStatus.COMPLETED.value
    notes = payload.get("notes")
    return await resolve_action(
        session,
        services,
        action.id,
        status=str(status),
        notes=str(notes) if notes else None,
        completed_by="webhook",
        artifacts=_callback_artifacts(payload),
    )
