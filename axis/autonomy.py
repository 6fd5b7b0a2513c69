"""Autonomous loop: observe a role's context, ask the model, propose the next step.

Proposals never take effect directly; they become pending workflow requests.
The only direct effect is completing one of the role's own active objectives.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .approval import review
from .config import settings
from .errors import AlreadyProcessedError, AxisError, GatewayError
from .events import EventType, emit
from .gateway import parse_json_object
from .models import (
    Company,
    CompanyGrounding,
    CompanyMemory,
    ObjectiveStatus,
    RequestStatus,
    RequestType,
    Role,
    RoleMessage,
    RoleObjective,
    RoleWorkflowStatus,
    WorkflowRequest,
)
from .prompts import LOOP_SYSTEM_PROMPT, build_loop_prompt
from .services import Services

logger = logging.getLogger(__name__)

LOOP_TEMPERATURE = 0.7
LOOP_MAX_TOKENS = 1000
OBJECTIVE_LIMIT = 5
MEMORY_LIMIT = 10
MESSAGE_LIMIT = 10
TICK_REVIEWER = "system:autonomy-tick"
TICK_REVIEW_NOTES = "Auto-approved by internal autonomy policy (memo/task transition)."
TICK_ERRORS_MAX = 50


@dataclass
class ContextSnapshot:
    """Everything the loop sees, fetched fresh on every invocation."""

    role: Role
    company_name: str
    stage: str | None
    is_grounded: bool
    grounding: CompanyGrounding | None
    objectives: Sequence[RoleObjective]
    memories: Sequence[CompanyMemory]
    recent_messages: Sequence[RoleMessage]
    pending_requests: int


@dataclass
class LoopDecision:
    action: str
    reasoning: str = ""
    mode: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    objective_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action, "reasoning": self.reasoning}
        if self.mode:
            data["mode"] = self.mode
        if self.details:
            data["details"] = self.details
        if self.request_id:
            data["request_id"] = self.request_id
        if self.objective_id:
            data["objective_id"] = self.objective_id
        return data


async def gather_context(session: AsyncSession, role: Role) -> ContextSnapshot:
    company = (
        await session.execute(select(Company).where(Company.id == role.company_id))
    ).scalar_one_or_none()
    context = await db.get_company_context(session, role.company_id)
    is_grounded = bool(context and context.is_grounded)
    grounding = await db.get_confirmed_grounding(session, role.company_id) if is_grounded else None

    objectives = (
        await session.execute(
            select(RoleObjective)
            .where(RoleObjective.role_id == role.id, RoleObjective.status == ObjectiveStatus.ACTIVE.value)
            .order_by(RoleObjective.priority, RoleObjective.created_at)
            .limit(OBJECTIVE_LIMIT)
        )
    ).scalars().all()
    memories = (
        await session.execute(
            select(CompanyMemory)
            .where(CompanyMemory.company_id == role.company_id)
            .order_by(CompanyMemory.created_at.desc())
            .limit(MEMORY_LIMIT)
        )
    ).scalars().all()
    pending = await db.get_pending_requests(session, role_id=role.id)

    return ContextSnapshot(
        role=role,
        company_name=company.name if company is not None else "Unknown",
        stage=context.stage if context is not None else None,
        is_grounded=is_grounded,
        grounding=grounding,
        objectives=list(objectives),
        memories=list(memories),
        recent_messages=await db.get_recent_role_messages(session, role.id, MESSAGE_LIMIT),
        pending_requests=len(pending),
    )


def precondition(snapshot: ContextSnapshot) -> LoopDecision | None:
    """First failing gate, in order, or None when the loop may run."""
    if not snapshot.is_grounded:
        return LoopDecision(
            action="blocked",
            mode="grounding_required",
            reasoning=(
                "Company has not completed the grounding phase. Autonomous behavior is "
                "disabled until foundational facts are established."
            ),
        )
    if not snapshot.role.is_activated:
        return LoopDecision(
            action="blocked",
            mode="activation_required",
            reasoning="Role has not been activated. Complete the activation wizard first.",
        )
    if snapshot.role.workflow_status == RoleWorkflowStatus.AWAITING_APPROVAL:
        return LoopDecision(action="wait", reasoning="Role is awaiting approval on existing request")
    if snapshot.pending_requests > 0:
        return LoopDecision(
            action="wait",
            reasoning=f"Role has {snapshot.pending_requests} pending workflow request(s)",
        )
    return None


def _detail(details: dict[str, Any], key: str) -> str:
    value = details.get(key)
    return value.strip() if isinstance(value, str) else ""


def _propose(role: Role, request_type: RequestType, summary: str, content: str, target_id: str | None) -> WorkflowRequest:
    role.workflow_status = RoleWorkflowStatus.AWAITING_APPROVAL.value
    return WorkflowRequest(
        company_id=role.company_id,
        requesting_role_id=role.id,
        target_role_id=target_id,
        request_type=request_type.value,
        summary=summary,
        proposed_content=content,
        status=RequestStatus.PENDING.value,
    )


async def _apply_decision(
    session: AsyncSession, snapshot: ContextSnapshot, decision: LoopDecision
) -> tuple[str, WorkflowRequest | None]:
    """Turn the decision into rows; returns the audit text and any new request."""
    role = snapshot.role
    details = decision.details
    reasoning = decision.reasoning or "No reasoning given."

    match decision.action:
        case "propose_task" if _detail(details, "title"):
            title = _detail(details, "title")
            description = _detail(details, "description")
            criteria = _detail(details, "completion_criteria")
            request = _propose(
                role,
                RequestType.START_TASK,
                f"Task: {title}",
                json.dumps({"title": title, "description": description, "completion_criteria": criteria}),
                None,
            )
            audit = (
                "Autonomous Action: Task Proposed\n\n"
                f"Reasoning: {reasoning}\n\n"
                f"Proposed Task:\n- Title: {title}\n- Description: {description}\n"
                f"- Completion Criteria: {criteria}\n\nAwaiting approval in the Workflow panel."
            )
            return audit, request
        case "propose_memo" if _detail(details, "to_role") and _detail(details, "content"):
            to_role = _detail(details, "to_role")
            target = await db.match_role(session, role.company_id, to_role, exclude_id=role.id)
            if target is None:
                return (
                    f"Autonomous Action: Memo Not Sent\n\nReasoning: {reasoning}\n\n"
                    f"No role named \"{to_role}\" exists in this company."
                ), None
            content = _detail(details, "content")
            request = _propose(role, RequestType.SEND_MEMO, f"Memo to {to_role}", content, target.id)
            audit = (
                "Autonomous Action: Memo Proposed\n\n"
                f"Reasoning: {reasoning}\n\n"
                f"Proposed Memo to {target.label}:\n{content}\n\nAwaiting approval in the Workflow panel."
            )
            return audit, request
        case "complete_objective" if _detail(details, "objective_id"):
            objective_id = _detail(details, "objective_id")
            objective = next((o for o in snapshot.objectives if o.id == objective_id), None)
            if objective is None:
                return (
                    f"Autonomous Action: Objective Not Completed\n\nReasoning: {reasoning}\n\n"
                    f"Objective {objective_id} is not an active objective of this role."
                ), None
            objective.status = ObjectiveStatus.COMPLETED.value
            decision.objective_id = objective.id
            return (
                f"Autonomous Action: Objective Completed\n\nReasoning: {reasoning}\n\n"
                f"Objective marked as complete: {objective.title}"
            ), None
        case "wait":
            return f"Autonomous Action: Waiting\n\nReasoning: {reasoning}\n\nNo action required at this time.", None
        case _:
            return f"Autonomous Action: {decision.action}\n\nReasoning: {reasoning}", None


async def run(session: AsyncSession, services: Services, role_id: str) -> LoopDecision:
    """One observe-decide-propose cycle for a role."""
    role = await db.require_role(session, role_id)
    snapshot = await gather_context(session, role)

    gated = precondition(snapshot)
    if gated is not None:
        logger.info("Loop for role %s short-circuited: %s", role.id, gated.reasoning)
        return gated

    if services.gateway is None:
        raise GatewayError("AI gateway is not configured")
    content = await services.gateway.complete(
        [
            {"role": "system", "content": LOOP_SYSTEM_PROMPT},
            {"role": "user", "content": build_loop_prompt(snapshot)},
        ],
        temperature=LOOP_TEMPERATURE,
        max_tokens=LOOP_MAX_TOKENS,
    )

    try:
        raw = parse_json_object(content)
    except ValueError:
        logger.warning("Unparseable loop decision for role %s: %r", role.id, content[:200])
        decision = LoopDecision(action="wait", reasoning="Could not parse the AI decision; waiting.")
        await db.add_role_message(
            session,
            role,
            "Autonomous Action: Waiting\n\nReasoning: the AI response was not a valid decision.",
            sender="ai",
        )
        await session.commit()
        return decision

    details = raw.get("details")
    decision = LoopDecision(
        action=str(raw.get("action") or "wait"),
        reasoning=str(raw.get("reasoning") or ""),
        details=details if isinstance(details, dict) else {},
    )
    audit, request = await _apply_decision(session, snapshot, decision)
    if request is not None:
        session.add(request)
        await session.flush()
        decision.request_id = request.id
    await db.add_role_message(session, role, audit, sender="ai")
    await session.commit()

    logger.info("Loop decision for role %s: %s", role.id, decision.action)
    if request is not None:
        await emit(
            EventType.REQUEST_CREATED,
            company_id=role.company_id,
            role_id=role.id,
            request_id=request.id,
            message=request.summary,
            emitter=services.events,
            request_type=request.request_type,
        )
    await emit(
        EventType.LOOP_DECISION,
        company_id=role.company_id,
        role_id=role.id,
        message=f"{role.label}: {decision.action}",
        emitter=services.events,
        action=decision.action,
    )
    return decision


# =============================================================================
# Tick
# =============================================================================


@dataclass
class TickSummary:
    companies_processed: int = 0
    roles_triggered: int = 0
    approvals_attempted: int = 0
    approvals_succeeded: int = 0
    approvals_already_processed: int = 0
    errors: list[str] = field(default_factory=list)
    tick_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "tick_at": self.tick_at.isoformat(),
            "companies_processed": self.companies_processed,
            "roles_triggered": self.roles_triggered,
            "approvals_attempted": self.approvals_attempted,
            "approvals_succeeded": self.approvals_succeeded,
            "approvals_already_processed": self.approvals_already_processed,
            "errors_count": len(self.errors),
            "errors": self.errors[:TICK_ERRORS_MAX],
        }


def _clamp(value: int | None, default: int, upper: int) -> int:
    return max(1, min(upper, default if value is None else value))


async def tick(
    session: AsyncSession,
    services: Services,
    *,
    company_id: str | None = None,
    max_companies: int | None = None,
    max_roles_per_company: int | None = None,
    max_auto_approvals_per_company: int | None = None,
) -> TickSummary:
    """Queue loops for activated roles and auto-approve internal transitions."""
    max_companies = _clamp(max_companies, settings.tick_max_companies, 100)
    max_roles = _clamp(max_roles_per_company, settings.tick_max_roles_per_company, 30)
    max_approvals = _clamp(max_auto_approvals_per_company, settings.tick_max_auto_approvals_per_company, 100)

    if company_id:
        company_ids = [company_id]
    else:
        result = await session.execute(
            select(Company.id).order_by(Company.created_at.desc()).limit(max_companies)
        )
        company_ids = list(result.scalars().all())

    summary = TickSummary(companies_processed=len(company_ids))
    for cid in company_ids:
        roles = (
            await session.execute(
                select(Role.id)
                .where(Role.company_id == cid, Role.is_activated.is_(True))
                .order_by(Role.created_at)
                .limit(max_roles)
            )
        ).scalars().all()
        for rid in roles:
            try:
                await services.launcher.trigger_loop(rid)
                summary.roles_triggered += 1
            except Exception as e:
                logger.exception("Could not queue loop for role %s", rid)
                summary.errors.append(f"autonomous loop failed for role {rid}: {e}")

        pending = (
            await session.execute(
                select(WorkflowRequest.id, WorkflowRequest.request_type)
                .where(
                    WorkflowRequest.company_id == cid,
                    WorkflowRequest.status == RequestStatus.PENDING.value,
                    WorkflowRequest.request_type.in_(list(settings.auto_approve_types)),
                )
                .order_by(WorkflowRequest.created_at)
                .limit(max_approvals)
            )
        ).all()
        for request_id, request_type in pending:
            summary.approvals_attempted += 1
            try:
                await review(
                    session,
                    services,
                    request_id,
                    "approve",
                    reviewer=TICK_REVIEWER,
                    notes=TICK_REVIEW_NOTES,
                    auto=True,
                )
                summary.approvals_succeeded += 1
            except AlreadyProcessedError:
                summary.approvals_already_processed += 1
            except AxisError as e:
                await session.rollback()
                summary.errors.append(f"auto-approve failed for {request_id} ({request_type}): {e.message}")

    logger.info(
        "Autonomy tick: %d companies, %d loops queued, %d/%d approvals",
        summary.companies_processed,
        summary.roles_triggered,
        summary.approvals_succeeded,
        summary.approvals_attempted,
    )
    return summary
