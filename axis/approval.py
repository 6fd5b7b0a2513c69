"""Workflow approval gate.

AI-proposed actions wait as pending ``WorkflowRequest`` rows until a human
(or the auto-approval policy) approves or denies them. The pending -> terminal
flip is a conditional update, so only one reviewer ever runs the side effects;
everyone else gets ``AlreadyProcessedError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .derivation import create_from_memo, derive
from .errors import (
    AlreadyProcessedError,
    InvalidRequestError,
    MaxAttemptsReachedError,
    NotFoundError,
    TaskStateError,
)
from .events import EventType, emit
from .handoff import run_lane_handoff
from .models import (
    ObjectiveStatus,
    RequestStatus,
    Role,
    RoleMemo,
    RoleObjective,
    RoleWorkflowStatus,
    Task,
    TaskStatus,
    WorkflowRequest,
)
from .output_actions import Deferred, route_new_task
from .request_types import (
    ApprovalAction,
    ContinueTask,
    ReviewOutput,
    SendMemo,
    StartTask,
    SuggestNextTask,
    parse_request,
)
from .services import Services

logger = logging.getLogger(__name__)

ACTIONS = {"approve": RequestStatus.APPROVED, "deny": RequestStatus.DENIED}
UNRESUMABLE_STATUSES = frozenset(
    {TaskStatus.STOPPED, TaskStatus.ARCHIVED, TaskStatus.COMPLETED, TaskStatus.SYSTEM_ALERT}
)


@dataclass
class ReviewResult:
    request_id: str
    status: RequestStatus
    effects: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "request_id": self.request_id,
            "status": self.status.value,
            "message": (
                "Request approved and executed"
                if self.status == RequestStatus.APPROVED
                else "Request denied"
            ),
            "effects": self.effects,
        }


@dataclass
class _Outcome:
    effects: dict[str, Any] = field(default_factory=dict)
    deferred: list[Deferred] = field(default_factory=list)


async def get_request(session: AsyncSession, request_id: str) -> WorkflowRequest:
    result = await session.execute(select(WorkflowRequest).where(WorkflowRequest.id == request_id))
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("Workflow request not found", request_id=request_id)
    return request


async def _preflight(session: AsyncSession, action: ApprovalAction) -> None:
    """Reject unusable payloads before the status flip so nothing is half-applied."""
    match action:
        case SendMemo(target_role_id=target_id) | StartTask(target_role_id=target_id) | SuggestNextTask(
            target_role_id=target_id
        ):
            await db.require_role(session, target_id)
        case ContinueTask(task_id=task_id):
            task = await db.require_task(session, task_id)
            if task.status in UNRESUMABLE_STATUSES:
                raise TaskStateError(f"Task is {task.status} and cannot be continued", status=task.status)
            if task.current_attempt >= task.max_attempts:
                raise MaxAttemptsReachedError(
                    "Maximum attempts reached",
                    current_attempt=task.current_attempt,
                    max_attempts=task.max_attempts,
                )
        case ReviewOutput():
            pass


async def _claim(
    session: AsyncSession,
    request: WorkflowRequest,
    status: RequestStatus,
    *,
    reviewer: str,
    notes: str | None,
    content: str,
) -> None:
    result = await session.execute(
        update(WorkflowRequest)
        .where(WorkflowRequest.id == request.id, WorkflowRequest.status == RequestStatus.PENDING.value)
        .values(
            status=status.value,
            reviewed_by=reviewer,
            reviewed_at=datetime.now(UTC),
            review_notes=notes,
            proposed_content=content,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        await session.refresh(request)
        raise AlreadyProcessedError(request_id=request.id, status=request.status)
    await session.refresh(request)


async def review(
    session: AsyncSession,
    services: Services,
    request_id: str,
    action: str,
    *,
    reviewer: str,
    edited_content: str | None = None,
    notes: str | None = None,
    auto: bool = False,
) -> ReviewResult:
    """Approve or deny a pending request and run the approved side effect once."""
    if action not in ACTIONS:
        raise InvalidRequestError("Invalid action. Must be 'approve' or 'deny'", action=action)
    new_status = ACTIONS[action]

    request = await get_request(session, request_id)
    if request.status != RequestStatus.PENDING:
        raise AlreadyProcessedError(request_id=request.id, status=request.status)

    content = edited_content or request.proposed_content or ""
    parsed: ApprovalAction | None = None
    if new_status == RequestStatus.APPROVED:
        parsed = parse_request(request, content)
        await _preflight(session, parsed)

    await _claim(session, request, new_status, reviewer=reviewer, notes=notes, content=content)

    requester = await db.get_role(session, request.requesting_role_id)
    if requester is not None:
        requester.workflow_status = RoleWorkflowStatus.IDLE.value

    outcome = _Outcome()
    if parsed is None:
        if requester is not None:
            await db.add_role_message(
                session,
                requester,
                f"Request denied: {request.summary}" + (f"\n\nNotes: {notes}" if notes else ""),
            )
    else:
        outcome = await _apply(session, services, request, requester, parsed, reviewer=reviewer, auto=auto)

    await session.commit()
    logger.info("Workflow request %s %s by %s", request.id, new_status.value, reviewer)

    for call in outcome.deferred:
        try:
            await call()
        except Exception:
            logger.exception("Post-approval continuation failed for request %s", request.id)
            outcome.effects["continuation_failed"] = True

    await emit(
        EventType.REQUEST_APPROVED if new_status == RequestStatus.APPROVED else EventType.REQUEST_DENIED,
        company_id=request.company_id,
        role_id=request.requesting_role_id,
        request_id=request.id,
        message=f"{request.request_type} {new_status.value}: {request.summary}",
        emitter=services.events,
        reviewer=reviewer,
        auto=auto,
    )
    return ReviewResult(request_id=request.id, status=new_status, effects=outcome.effects)


async def _apply(
    session: AsyncSession,
    services: Services,
    request: WorkflowRequest,
    requester: Role | None,
    action: ApprovalAction,
    *,
    reviewer: str,
    auto: bool,
) -> _Outcome:
    outcome = _Outcome()
    match action:
        case SendMemo():
            await _send_memo(session, services, request, requester, action, reviewer, outcome)
        case StartTask() | SuggestNextTask():
            await _start_task(session, services, action, reviewer, outcome)
        case ContinueTask(task_id=task_id):
            task = await db.require_task(session, task_id)
            task.status = TaskStatus.RUNNING.value
            task.updated_at = datetime.now(UTC)
            expected = task.current_attempt

            async def resume() -> None:
                await services.launcher.launch_task(task_id, expected_attempt=expected)

            outcome.deferred.append(resume)
            outcome.effects["task_id"] = task_id
        case ReviewOutput():
            await _review_output(session, services, request, requester, action, reviewer, auto, outcome)
    return outcome


async def _send_memo(
    session: AsyncSession,
    services: Services,
    request: WorkflowRequest,
    requester: Role | None,
    memo: SendMemo,
    reviewer: str,
    outcome: _Outcome,
) -> None:
    target = await db.require_role(session, memo.target_role_id)
    sender = requester.label if requester is not None else "Unknown Role"
    record = RoleMemo(
        company_id=request.company_id,
        from_role_id=request.requesting_role_id,
        to_role_id=target.id,
        content=memo.content,
        workflow_request_id=request.id,
    )
    session.add(record)
    await session.flush()
    await db.add_role_message(session, target, f"Memo from {sender}:\n\n{memo.content}", sender="ai")
    outcome.effects["memo_id"] = record.id

    if services.policy.is_governance(target) or memo.is_completion_update:
        return

    derivation = await derive(memo.content, gateway=services.gateway, sender=sender)
    objective, task = await create_from_memo(
        session,
        target,
        derivation,
        created_by=reviewer,
        max_attempts=settings.default_max_attempts,
    )
    outcome.deferred.append(await route_new_task(session, services, task, target))
    outcome.effects.update(objective_id=objective.id, task_id=task.id, task_status=task.status)


async def _start_task(
    session: AsyncSession,
    services: Services,
    proposal: StartTask | SuggestNextTask,
    reviewer: str,
    outcome: _Outcome,
) -> None:
    target = await db.require_role(session, proposal.target_role_id)
    task = Task(
        company_id=target.company_id,
        role_id=target.id,
        title=proposal.title,
        description=proposal.description,
        completion_criteria=proposal.completion_criteria,
        status=TaskStatus.PENDING.value,
        current_attempt=0,
        max_attempts=settings.default_max_attempts,
        depends_on=[],
        assigned_by=reviewer,
    )
    session.add(task)
    await session.flush()
    await db.add_role_message(session, target, f"New task assigned: {task.title}")
    outcome.deferred.append(await route_new_task(session, services, task, target))
    outcome.effects.update(task_id=task.id, task_status=task.status)


async def _top_level_approval(session: AsyncSession, services: Services, request: WorkflowRequest) -> bool:
    """The review sits with the top of the governance hierarchy.

    A request addressed to another role is judged by that role; a self-review
    is judged by the company's most senior governance role.
    """
    approver: Role | None = None
    if request.target_role_id and request.target_role_id != request.requesting_role_id:
        approver = await db.get_role(session, request.target_role_id)
    else:
        roles = await db.get_company_roles(session, request.company_id)
        approver = services.policy.best_governance_role(roles, exclude_id=request.requesting_role_id)
    return approver is not None and services.policy.is_top_level(approver)


async def _review_output(
    session: AsyncSession,
    services: Services,
    request: WorkflowRequest,
    requester: Role | None,
    review_output: ReviewOutput,
    reviewer: str,
    auto: bool,
    outcome: _Outcome,
) -> None:
    if review_output.completes_objective:
        result = await session.execute(
            select(RoleObjective).where(RoleObjective.id == review_output.objective_id)
        )
        objective = result.scalar_one_or_none()
        if (
            objective is not None
            and objective.role_id == request.requesting_role_id
            and objective.status == ObjectiveStatus.ACTIVE
        ):
            objective.status = ObjectiveStatus.COMPLETED.value
            outcome.effects["objective_completed"] = objective.id
        else:
            logger.info(
                "Objective %s not completed: not an active objective of role %s",
                review_output.objective_id,
                request.requesting_role_id,
            )

    if requester is None:
        return

    role_id = requester.id

    async def rerun_loop() -> None:
        await services.launcher.trigger_loop(role_id)

    outcome.deferred.append(rerun_loop)
    outcome.effects["loop_triggered"] = True

    if (
        not auto
        and services.policy.is_product_role(requester)
        and await _top_level_approval(session, services, request)
    ):
        handoff, dispatch = await run_lane_handoff(
            session, services, requester, review_output, approved_by=reviewer
        )
        outcome.deferred.append(dispatch)
        outcome.effects["handoff"] = handoff.to_dict()
