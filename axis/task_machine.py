"""Task lifecycle: assignment, bounded execution attempts, escalation and stop.

States: ``pending -> running -> {completed, blocked, system_alert, stopped,
archived}``. ``blocked`` and ``system_alert`` only move again through an
explicit human action (a dead letter "retry" or "archive").
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .approval import review
from .attempts import format_previous_attempts, list_attempts, next_attempt_number, record_attempt
from .config import settings
from .dead_letter import escalate
from .errors import (
    AxisError,
    ExecutionBackendError,
    GatewayError,
    InternalError,
    InvalidRequestError,
    MaxAttemptsReachedError,
    StaleAttemptError,
    TaskStateError,
)
from .evaluator import Evaluation, evaluate
from .events import EventType, emit
from .execution import ExecutionRequest, ExecutionResult
from .models import (
    CompanyMemory,
    EvaluationResult,
    RequestType,
    Role,
    Task,
    TaskAttempt,
    TaskStatus,
    WorkflowRequest,
)
from .prompts import COMPLETION_SUMMARY_PROMPT, FOLLOWUP_PROMPT, build_execution_system_prompt
from .request_types import COMPLETION_UPDATE_PREFIX, TASK_COMPLETION
from .services import Services

logger = logging.getLogger(__name__)

MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10
SUMMARY_FALLBACK_CHARS = 500
AUTO_REVIEWER = "system:completion-routing"

EXECUTABLE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.RUNNING.value)
NON_EXECUTABLE_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.STOPPED,
        TaskStatus.ARCHIVED,
        TaskStatus.BLOCKED,
        TaskStatus.SYSTEM_ALERT,
    }
)

_MD_HEADER_RE = re.compile(r"^\s{0,3}#{1,6}\s+")


@dataclass
class AttemptOutcome:
    """What happened to a task after one execution attempt."""

    task_id: str
    attempt_number: int
    evaluation: Evaluation
    status: str
    current_attempt: int
    max_attempts: int
    retry_scheduled: bool = False
    dead_letter_id: str | None = None
    review_request_id: str | None = None
    followup_request_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "task_id": self.task_id,
            "attempt_number": self.attempt_number,
            "evaluation": self.evaluation.result.value,
            "evaluation_reason": self.evaluation.reason,
            "status": self.status,
            "current_attempt": self.current_attempt,
            "max_attempts": self.max_attempts,
            "retry_scheduled": self.retry_scheduled,
            "dead_letter_id": self.dead_letter_id,
            "review_request_id": self.review_request_id,
            "followup_request_ids": self.followup_request_ids,
        }


def _now() -> datetime:
    return datetime.now(UTC)


def validate_max_attempts(value: int) -> int:
    if not MIN_MAX_ATTEMPTS <= value <= MAX_MAX_ATTEMPTS:
        raise InvalidRequestError(
            f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}",
            max_attempts=value,
        )
    return value


# =============================================================================
# Assignment / stop
# =============================================================================


async def assign_task(
    session: AsyncSession,
    services: Services,
    *,
    role_id: str,
    title: str,
    description: str = "",
    completion_criteria: str = "",
    max_attempts: int | None = None,
    depends_on: Sequence[str] | None = None,
    assigned_by: str | None = None,
    start: bool = False,
) -> Task:
    """Create a pending task for a role, optionally queueing its first attempt."""
    if not title or not title.strip():
        raise InvalidRequestError("Task title is required")
    role = await db.require_role(session, role_id)
    max_attempts = validate_max_attempts(
        settings.default_max_attempts if max_attempts is None else max_attempts
    )

    task = Task(
        company_id=role.company_id,
        role_id=role.id,
        title=title.strip(),
        description=description,
        completion_criteria=completion_criteria,
        status=TaskStatus.PENDING.value,
        current_attempt=0,
        max_attempts=max_attempts,
        depends_on=list(depends_on or []),
        assigned_by=assigned_by,
    )
    session.add(task)
    await session.flush()
    task.dependency_status = await db.dependency_state(session, task)
    await db.add_role_message(session, role, f"New task assigned: {task.title}")
    await session.commit()

    logger.info("Assigned task %s to role %s", task.id, role.id)
    await emit(
        EventType.TASK_ASSIGNED,
        company_id=task.company_id,
        task_id=task.id,
        role_id=role.id,
        message=f"Task assigned: {task.title}",
        emitter=services.events,
    )
    if start and task.dependency_status != "waiting":
        await services.launcher.launch_task(task.id, expected_attempt=0)
    return task


async def stop_task(
    session: AsyncSession,
    services: Services,
    task_id: str,
    *,
    stopped_by: str | None = None,
) -> Task:
    """Terminal human stop. Does not interrupt an in-flight attempt, only its follow-ups."""
    task = await db.require_task(session, task_id)
    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status.in_(EXECUTABLE_STATUSES))
        .values(status=TaskStatus.STOPPED.value, updated_at=_now())
    )
    if result.rowcount != 1:
        await session.refresh(task)
        raise TaskStateError(f"Task cannot be stopped from status '{task.status}'", status=task.status)

    await session.refresh(task)
    role = await db.get_role(session, task.role_id)
    if role is not None:
        await db.add_role_message(session, role, f"Task stopped by {stopped_by or 'a user'}: {task.title}")
    await session.commit()
    await emit(
        EventType.TASK_STOPPED,
        company_id=task.company_id,
        task_id=task.id,
        message=f"Task stopped: {task.title}",
        emitter=services.events,
    )
    return task


# =============================================================================
# Execution
# =============================================================================


async def _claim_attempt(session: AsyncSession, task: Task) -> int:
    """Compare-and-swap on (id, current_attempt, status) to own the next attempt slot."""
    current = task.current_attempt
    result = await session.execute(
        update(Task)
        .where(
            Task.id == task.id,
            Task.current_attempt == current,
            Task.status.in_(EXECUTABLE_STATUSES),
        )
        .values(current_attempt=current + 1, status=TaskStatus.RUNNING.value, updated_at=_now())
    )
    if result.rowcount != 1:
        await session.rollback()
        raise StaleAttemptError("Attempt already claimed by another execution", task_id=task.id)
    attempt_number = await next_attempt_number(session, task.id)
    await session.commit()
    await session.refresh(task)
    return attempt_number


async def _build_request(session: AsyncSession, task: Task, role: Role) -> ExecutionRequest:
    previous = format_previous_attempts(await list_attempts(session, task.id))
    grounding = await db.get_confirmed_grounding(session, task.company_id)
    memories = (
        await session.execute(
            select(CompanyMemory)
            .where(CompanyMemory.company_id == task.company_id)
            .order_by(CompanyMemory.created_at.desc())
            .limit(15)
        )
    ).scalars().all()
    system_prompt = build_execution_system_prompt(
        role,
        task,
        grounding=grounding,
        memories=memories,
        previous_attempts=previous,
        attempt_number=task.current_attempt,
    )
    return ExecutionRequest(
        company_id=task.company_id,
        role_id=task.role_id,
        task_id=task.id,
        title=task.title,
        description=task.description,
        completion_criteria=task.completion_criteria,
        attempt_number=task.current_attempt,
        max_attempts=task.max_attempts,
        system_prompt=system_prompt,
        previous_attempts=previous,
    )


async def execute_attempt(
    session: AsyncSession,
    services: Services,
    task_id: str,
    *,
    expected_attempt: int | None = None,
) -> AttemptOutcome:
    """Run one bounded attempt: execute, evaluate, record, transition."""
    task = await db.require_task(session, task_id)

    if task.status in NON_EXECUTABLE_STATUSES:
        raise TaskStateError(f"Task is {task.status} and cannot be executed", status=task.status)
    if expected_attempt is not None and task.current_attempt != expected_attempt:
        raise StaleAttemptError(
            "Task has moved past the expected attempt",
            task_id=task.id,
            expected_attempt=expected_attempt,
            current_attempt=task.current_attempt,
        )
    dependency_status = await db.dependency_state(session, task)
    if dependency_status == "waiting":
        task.dependency_status = dependency_status
        await session.commit()
        raise TaskStateError("Task is waiting on unfinished dependencies", task_id=task.id)
    if task.current_attempt >= task.max_attempts:
        task.status = TaskStatus.BLOCKED.value
        role = await db.get_role(session, task.role_id)
        if role is not None:
            await db.add_role_message(
                session, role, f"Task blocked, maximum attempts reached: {task.title}"
            )
        await session.commit()
        raise MaxAttemptsReachedError(
            "Maximum attempts reached",
            current_attempt=task.current_attempt,
            max_attempts=task.max_attempts,
        )

    attempt_number = await _claim_attempt(session, task)
    try:
        role = await db.require_role(session, task.role_id)
        request = await _build_request(session, task, role)
        result = await _run_backend(services, request)
        verdict = result.verdict
        if verdict is None and not result.success:
            verdict = EvaluationResult.FAIL.value
        evaluation = evaluate(task, result.output, verdict, result.reason)

        await session.refresh(task)
        await record_attempt(session, task, attempt_number, result.output, evaluation)
        outcome = await _apply_evaluation(session, services, task, role, attempt_number, evaluation, result.output)
    except Exception as exc:
        await _fail_safe(session, task_id, attempt_number, exc)
        if isinstance(exc, AxisError):
            raise
        raise InternalError("Task execution failed unexpectedly", task_id=task_id) from exc

    await emit(
        EventType.ATTEMPT_RECORDED,
        company_id=task.company_id,
        task_id=task.id,
        role_id=task.role_id,
        message=f"Attempt {attempt_number}: {evaluation.result.value}",
        emitter=services.events,
        attempt_number=attempt_number,
        evaluation=evaluation.result.value,
    )
    if outcome.retry_scheduled:
        outcome.retry_scheduled = await _schedule_retry(session, services, task)
    return outcome


async def _run_backend(services: Services, request: ExecutionRequest) -> ExecutionResult:
    try:
        return await services.backend.execute(request)
    except ExecutionBackendError as e:
        logger.warning("Execution backend failed for task %s: %s", request.task_id, e.message)
        return ExecutionResult(
            output=f"Execution failed: {e.message}",
            verdict=EvaluationResult.FAIL.value,
            reason=e.message,
            success=False,
        )


async def _apply_evaluation(
    session: AsyncSession,
    services: Services,
    task: Task,
    role: Role,
    attempt_number: int,
    evaluation: Evaluation,
    output: str,
) -> AttemptOutcome:
    outcome = AttemptOutcome(
        task_id=task.id,
        attempt_number=attempt_number,
        evaluation=evaluation,
        status=task.status,
        current_attempt=task.current_attempt,
        max_attempts=task.max_attempts,
    )

    if task.status == TaskStatus.STOPPED:
        # Stopped while the attempt was in flight: keep the record, change nothing else.
        await session.commit()
        return outcome

    followups: list[WorkflowRequest] = []
    match evaluation.result:
        case EvaluationResult.PASS:
            task.status = TaskStatus.COMPLETED.value
            task.completion_summary = await summarize_completion(services, task, output)
            task.requires_verification = services.classifier.requires_verification(
                task.title, task.description
            )
            await db.add_role_message(session, role, f"Task completed: {task.title}\n\n{task.completion_summary}")
            await db.refresh_dependents(session, task)
            followups = await suggest_followups(session, services, task, role, output)
            outcome.followup_request_ids = [r.id for r in followups]
            request = await route_completion(session, services, task, role)
            outcome.review_request_id = request.id if request is not None else None
            event_type = EventType.TASK_COMPLETED
        case EvaluationResult.UNCLEAR:
            task.status = TaskStatus.BLOCKED.value
            await db.add_role_message(
                session, role, f"Task needs review ({evaluation.reason}): {task.title}"
            )
            event_type = EventType.TASK_BLOCKED
        case EvaluationResult.FAIL if task.current_attempt >= task.max_attempts:
            task.status = TaskStatus.SYSTEM_ALERT.value
            entry = await escalate(session, task, failure_reason=evaluation.reason, last_output=output)
            outcome.dead_letter_id = entry.id
            await db.add_role_message(
                session,
                role,
                f"System alert: task failed after {task.current_attempt} attempts and needs "
                f"human review: {task.title}\n\nLast failure: {evaluation.reason}",
            )
            event_type = EventType.TASK_ESCALATED
        case EvaluationResult.FAIL:
            outcome.retry_scheduled = True
            event_type = EventType.RETRY_SCHEDULED

    task.updated_at = _now()
    await session.commit()
    outcome.status = task.status

    await emit(
        event_type,
        company_id=task.company_id,
        task_id=task.id,
        role_id=role.id,
        message=f"{task.title}: {task.status}",
        emitter=services.events,
        attempt_number=attempt_number,
    )
    for request in followups:
        await emit(
            EventType.REQUEST_CREATED,
            company_id=task.company_id,
            role_id=role.id,
            request_id=request.id,
            message=request.summary,
            emitter=services.events,
            request_type=request.request_type,
        )
    return outcome


async def _schedule_retry(session: AsyncSession, services: Services, task: Task) -> bool:
    try:
        await services.launcher.schedule_retry(
            task.id,
            expected_attempt=task.current_attempt,
            delay_seconds=settings.retry_delay_seconds,
        )
        return True
    except Exception:
        logger.exception("Could not schedule retry for task %s", task.id)

    # Surface the stuck task rather than leaving it running with nothing queued.
    await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == TaskStatus.RUNNING.value)
        .values(status=TaskStatus.BLOCKED.value, updated_at=_now())
    )
    role = await db.get_role(session, task.role_id)
    if role is not None:
        await db.add_role_message(session, role, f"Task blocked, retry could not be scheduled: {task.title}")
    await session.commit()
    await session.refresh(task)
    return False


async def _fail_safe(session: AsyncSession, task_id: str, attempt_number: int, exc: BaseException) -> None:
    """Best-effort cleanup after an unexpected error in a claimed attempt."""
    logger.exception("Unexpected error executing task %s attempt %s", task_id, attempt_number)
    try:
        await session.rollback()
        task = await db.require_task(session, task_id)
        await session.refresh(task)

        exists = await session.execute(
            select(TaskAttempt.id).where(
                TaskAttempt.task_id == task_id, TaskAttempt.attempt_number == attempt_number
            )
        )
        if exists.first() is None:
            await record_attempt(
                session,
                task,
                attempt_number,
                f"Execution aborted: {exc}",
                Evaluation(EvaluationResult.FAIL, f"Internal error: {type(exc).__name__}"),
            )
        if task.status == TaskStatus.RUNNING:
            task.status = TaskStatus.BLOCKED.value
            task.updated_at = _now()
            role = await db.get_role(session, task.role_id)
            if role is not None:
                await db.add_role_message(session, role, f"Task blocked after an internal error: {task.title}")
        await session.commit()
    except Exception:
        logger.exception("Cleanup failed for task %s", task_id)
        await session.rollback()


# =============================================================================
# Completion
# =============================================================================


def fallback_summary(output: str) -> str:
    """First few content lines of the output, without markdown headers."""
    lines: list[str] = []
    for line in output.splitlines():
        text = _MD_HEADER_RE.sub("", line).strip()
        if text:
            lines.append(text)
        if sum(len(item) for item in lines) >= SUMMARY_FALLBACK_CHARS:
            break
    summary = " ".join(lines)
    if len(summary) > SUMMARY_FALLBACK_CHARS:
        summary = summary[: SUMMARY_FALLBACK_CHARS - 3].rstrip() + "..."
    return summary or "Task completed successfully."


async def summarize_completion(services: Services, task: Task, output: str) -> str:
    if services.gateway is None:
        return fallback_summary(output)
    try:
        summary = await services.gateway.complete(
            [
                {"role": "system", "content": COMPLETION_SUMMARY_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Task: {task.title}\n\nDescription: {task.description}\n\n"
                        f"Criteria: {task.completion_criteria}\n\nOutput: {output}"
                    ),
                },
            ]
        )
    except GatewayError as e:
        logger.warning("Completion summary fell back to heuristic for task %s: %s", task.id, e)
        return fallback_summary(output)
    return summary.strip() or fallback_summary(output)


def _suggestion(data: dict[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if not isinstance(value, dict):
        return {}
    return {k: v.strip() for k, v in value.items() if isinstance(v, str) and v.strip()}


async def suggest_followups(
    session: AsyncSession, services: Services, task: Task, role: Role, output: str
) -> list[WorkflowRequest]:
    """Ask whether finished work calls for a memo or a next task; both need approval.

    Follow-ups are optional: a missing gateway or an unusable answer yields none.
    """
    if services.gateway is None:
        return []
    try:
        data = await services.gateway.complete_json(
            [
                {"role": "system", "content": FOLLOWUP_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Task completed: {task.title}\n\nDescription: {task.description}\n\n"
                        f"Output delivered:\n{output}"
                    ),
                },
            ]
        )
    except GatewayError as e:
        logger.warning("Follow-up analysis skipped for task %s: %s", task.id, e.message)
        return []
    if data.get("has_suggestions") is not True:
        return []

    requests: list[WorkflowRequest] = []
    memo = _suggestion(data, "memo")
    if memo.get("target_role") and memo.get("content"):
        target = await db.match_role(session, task.company_id, memo["target_role"], exclude_id=role.id)
        if target is None:
            logger.info("No role matches follow-up memo target %r", memo["target_role"])
        else:
            requests.append(
                WorkflowRequest(
                    company_id=task.company_id,
                    requesting_role_id=role.id,
                    target_role_id=target.id,
                    request_type=RequestType.SEND_MEMO.value,
                    summary=memo.get("summary") or f"Notification about: {task.title}",
                    proposed_content=memo["content"],
                    source_task_id=task.id,
                )
            )

    next_task = _suggestion(data, "next_task")
    if next_task.get("title") and next_task.get("description"):
        requests.append(
            WorkflowRequest(
                company_id=task.company_id,
                requesting_role_id=role.id,
                request_type=RequestType.SUGGEST_NEXT_TASK.value,
                summary=next_task.get("summary") or f"Follow-up: {next_task['title']}",
                proposed_content=json.dumps(
                    {
                        "title": next_task["title"],
                        "description": next_task["description"],
                        "completion_criteria": next_task.get("completion_criteria")
                        or "Task completed successfully.",
                    }
                ),
                source_task_id=task.id,
            )
        )

    session.add_all(requests)
    await session.flush()
    return requests


def _review_payload(task: Task) -> str:
    return json.dumps(
        {
            "review_type": TASK_COMPLETION,
            "task_id": task.id,
            "summary": task.completion_summary,
        }
    )


async def _create_review_request(session: AsyncSession, task: Task, role: Role) -> WorkflowRequest:
    request = WorkflowRequest(
        company_id=task.company_id,
        requesting_role_id=role.id,
        target_role_id=role.id,
        request_type=RequestType.REVIEW_OUTPUT.value,
        summary=f"Review completed task: {task.title}",
        proposed_content=_review_payload(task),
        source_task_id=task.id,
    )
    session.add(request)
    await session.flush()
    return request


async def route_completion(
    session: AsyncSession, services: Services, task: Task, role: Role
) -> WorkflowRequest | None:
    """Send completed work to governance: self-review, completion memo, or review fallback."""
    policy = services.policy
    if policy.is_governance(role):
        return await _create_review_request(session, task, role)

    roles = await db.get_company_roles(session, task.company_id)
    governor = policy.best_governance_role(roles, exclude_id=role.id)
    if governor is None:
        return await _create_review_request(session, task, role)

    memo = WorkflowRequest(
        company_id=task.company_id,
        requesting_role_id=role.id,
        target_role_id=governor.id,
        request_type=RequestType.SEND_MEMO.value,
        summary=f"{COMPLETION_UPDATE_PREFIX}: {task.title}",
        proposed_content=(
            f"{role.label} completed the task \"{task.title}\".\n\n"
            f"Summary:\n{task.completion_summary}"
            + ("\n\nNote: this output needs independent verification." if task.requires_verification else "")
        ),
        source_task_id=task.id,
    )
    session.add(memo)
    await session.flush()

    # Internal handoff, not a decision: approve it on the spot.
    await session.commit()
    try:
        await review(
            session,
            services,
            memo.id,
            "approve",
            reviewer=AUTO_REVIEWER,
            notes="Auto-approved completion update",
            auto=True,
        )
    except AxisError:
        logger.exception("Completion memo %s left pending for manual review", memo.id)
    return memo
