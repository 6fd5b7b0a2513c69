"""Lane handoff: move approved product work to a dedicated execution role."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .classifier import ExecutionLane
from .config import settings
from .models import AuthorityLevel, Notification, Role, RoleMemo, Task, TaskStatus
from .output_actions import Deferred, route_new_task
from .request_types import DEFAULT_TASK_CRITERIA, ReviewOutput
from .services import Services
from .webhooks import active_subscribers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaneProfile:
    name: str
    mandate: str
    system_prompt: str
    authority_level: str
    external: bool
    integration_hint: str


LANE_PROFILES: dict[ExecutionLane, LaneProfile] = {
    ExecutionLane.DEVELOPMENT: LaneProfile(
        name="Development Lead",
        mandate="Turn approved product specifications into shipped software through the connected coding tools.",
        system_prompt=(
            "You are the Development Lead. You receive approved product specifications and "
            "prepare precise implementation briefs: affected components, data changes, "
            "acceptance criteria and rollout notes. Implementation itself happens in the "
            "external coding tool connected to this company."
        ),
        authority_level=AuthorityLevel.OPERATOR.value,
        external=True,
        integration_hint="a coding agent or CI webhook",
    ),
    ExecutionLane.MARKETING: LaneProfile(
        name="Marketing Lead",
        mandate="Turn approved product work into campaigns, launch content and outreach plans.",
        system_prompt=(
            "You are the Marketing Lead. You receive approved product work and prepare "
            "campaign briefs, launch copy and channel plans. Publishing happens through "
            "the marketing automation connected to this company."
        ),
        authority_level=AuthorityLevel.OPERATOR.value,
        external=True,
        integration_hint="a marketing automation webhook",
    ),
    ExecutionLane.RESEARCH: LaneProfile(
        name="Research Analyst",
        mandate="Investigate open questions behind approved product work and report findings.",
        system_prompt=(
            "You are the Research Analyst. You turn approved product questions into written "
            "research: framing, sources of evidence available in the company context, "
            "findings and recommendations. State clearly what data is missing."
        ),
        authority_level=AuthorityLevel.ADVISOR.value,
        external=False,
        integration_hint="",
    ),
}


@dataclass
class HandoffResult:
    lane: ExecutionLane
    lane_role_id: str
    task_id: str
    created_role: bool
    coordinator_id: str | None = None
    notified_user_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "lane": self.lane.value,
            "lane_role_id": self.lane_role_id,
            "task_id": self.task_id,
            "created_role": self.created_role,
            "coordinator_id": self.coordinator_id,
            "notified_user_ids": self.notified_user_ids,
        }


async def find_or_create_lane_role(
    session: AsyncSession, company_id: str, profile: LaneProfile
) -> tuple[Role, bool]:
    existing = await db.find_role_by_name(session, company_id, profile.name)
    if existing is not None:
        if not existing.is_activated:
            existing.is_activated = True
        return existing, False
    role = Role(
        company_id=company_id,
        name=profile.name,
        display_name=profile.name,
        mandate=profile.mandate,
        system_prompt=profile.system_prompt,
        authority_level=profile.authority_level,
        is_activated=True,
    )
    session.add(role)
    await session.flush()
    logger.info("Created lane role %s (%s) for company %s", role.id, profile.name, company_id)
    return role, True


async def _handoff_text(session: AsyncSession, review: ReviewOutput) -> tuple[str, str]:
    source = await db.get_task(session, review.task_id) if review.task_id else None
    if source is not None:
        title = source.title
        body = "\n\n".join(
            part for part in (source.description, source.completion_summary or review.summary) if part
        )
        return title, body
    summary = review.summary or "Approved product work"
    return summary.splitlines()[0][:80], summary


async def run_lane_handoff(
    session: AsyncSession,
    services: Services,
    product_role: Role,
    review: ReviewOutput,
    *,
    approved_by: str | None,
) -> tuple[HandoffResult, Deferred]:
    """Classify, staff the lane, brief the coordinator and route the new task.

    Returns the result and the queue call to make once the caller commits.
    """
    title, body = await _handoff_text(session, review)
    lane = services.classifier.execution_lane(f"{title}\n{body}").lane
    profile = LANE_PROFILES[lane]
    lane_role, created = await find_or_create_lane_role(session, product_role.company_id, profile)

    task = Task(
        company_id=product_role.company_id,
        role_id=lane_role.id,
        title=f"{profile.name}: {title}"[:200],
        description=f"Approved handoff from {product_role.label}.\n\n{body}",
        completion_criteria=DEFAULT_TASK_CRITERIA,
        status=TaskStatus.PENDING.value,
        current_attempt=0,
        max_attempts=settings.default_max_attempts,
        depends_on=[],
        assigned_by=approved_by,
    )
    session.add(task)
    await session.flush()
    await db.add_role_message(session, lane_role, f"New task handed off from {product_role.label}: {task.title}")

    result = HandoffResult(lane=lane, lane_role_id=lane_role.id, task_id=task.id, created_role=created)

    roles = await db.get_company_roles(session, product_role.company_id)
    coordinator = services.policy.find_coordinator(roles)
    if coordinator is not None:
        memo_content = (
            f"{product_role.label}'s work was approved and handed to the {lane.value} lane.\n\n"
            f"Owner: {lane_role.label}\nTask: {task.title}\n\n"
            "Please coordinate dependencies and keep the other roles informed."
        )
        session.add(
            RoleMemo(
                company_id=product_role.company_id,
                from_role_id=product_role.id,
                to_role_id=coordinator.id,
                content=memo_content,
            )
        )
        await db.add_role_message(
            session, coordinator, f"Memo from {product_role.label}:\n\n{memo_content}", sender="ai"
        )
        result.coordinator_id = coordinator.id

    if profile.external and not await active_subscribers(session, product_role.company_id):
        for user_id in await db.get_company_owner_ids(session, product_role.company_id):
            session.add(
                Notification(
                    company_id=product_role.company_id,
                    user_id=user_id,
                    kind="integration_required",
                    title=f"Connect {profile.integration_hint} for the {lane.value} lane",
                    body=(
                        f"{lane_role.label} was assigned \"{task.title}\" but no active webhook "
                        "listens for external actions. Connect one so the work can be executed."
                    ),
                )
            )
            result.notified_user_ids.append(user_id)

    deferred = await route_new_task(session, services, task, lane_role, external=profile.external)
    return result, deferred
