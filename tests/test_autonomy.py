import json

import pytest
from sqlalchemy import select

from axis import autonomy
from axis.errors import GatewayError
from axis.events import EventType
from axis.models import (
    CompanyContext,
    ObjectiveStatus,
    RequestStatus,
    RequestType,
    RoleObjective,
    RoleWorkflowStatus,
    WorkflowRequest,
)


def _decision(action: str, **details: str) -> str:
    return json.dumps({"action": action, "reasoning": "Because the mandate says so", "details": details})


async def _requests_from(session, role_id: str) -> list[WorkflowRequest]:
    result = await session.execute(select(WorkflowRequest).where(WorkflowRequest.requesting_role_id == role_id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_ungrounded_company_blocks_loop(session, services, use_gateway, company, make_role) -> None:
    context = (
        await session.execute(select(CompanyContext).where(CompanyContext.company_id == company.id))
    ).scalar_one()
    context.is_grounded = False
    await session.commit()
    role = await make_role("Analyst")
    gateway = use_gateway()

    decision = await autonomy.run(session, services, role.id)

    assert decision.action == "blocked"
    assert decision.mode == "grounding_required"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_inactive_role_blocks_loop(session, services, make_role) -> None:
    role = await make_role("Analyst", is_activated=False)

    decision = await autonomy.run(session, services, role.id)

    assert decision.to_dict()["mode"] == "activation_required"


@pytest.mark.asyncio
async def test_pending_work_makes_loop_wait(session, services, make_role) -> None:
    waiting = await make_role("Analyst", workflow_status=RoleWorkflowStatus.AWAITING_APPROVAL.value)
    busy = await make_role("Designer")
    session.add(
        WorkflowRequest(
            company_id=busy.company_id,
            requesting_role_id=busy.id,
            request_type=RequestType.START_TASK.value,
            summary="Task: Mockups",
        )
    )
    await session.commit()

    assert (await autonomy.run(session, services, waiting.id)).action == "wait"
    decision = await autonomy.run(session, services, busy.id)
    assert decision.action == "wait"
    assert "1 pending" in decision.reasoning


@pytest.mark.asyncio
async def test_missing_gateway_is_an_error(session, services, make_role) -> None:
    role = await make_role("Analyst")
    with pytest.raises(GatewayError):
        await autonomy.run(session, services, role.id)


@pytest.mark.asyncio
async def test_propose_task_creates_pending_request(session, services, use_gateway, make_role, events) -> None:
    role = await make_role("Analyst")
    gateway = use_gateway(
        _decision(
            "propose_task",
            title="Churn analysis",
            description="Analyze churn by plan",
            completion_criteria="Table of churn per plan",
        )
    )

    decision = await autonomy.run(session, services, role.id)

    assert decision.action == "propose_task"
    requests = await _requests_from(session, role.id)
    assert len(requests) == 1
    assert requests[0].id == decision.request_id
    assert requests[0].request_type == RequestType.START_TASK
    assert requests[0].status == RequestStatus.PENDING
    assert json.loads(requests[0].proposed_content)["title"] == "Churn analysis"
    assert role.workflow_status == RoleWorkflowStatus.AWAITING_APPROVAL
    assert [e.type for e in events] == [EventType.REQUEST_CREATED, EventType.LOOP_DECISION]

    call = gateway.calls[0]
    assert call["temperature"] == autonomy.LOOP_TEMPERATURE
    assert call["max_tokens"] == autonomy.LOOP_MAX_TOKENS


@pytest.mark.asyncio
async def test_propose_memo_resolves_target_by_partial_name(session, services, use_gateway, make_role) -> None:
    role = await make_role("Analyst")
    cfo = await make_role("Chief Financial Officer")
    use_gateway(
        "```json\n" + _decision("propose_memo", to_role="financial officer", content="Budget needed") + "\n```"
    )

    decision = await autonomy.run(session, services, role.id)

    request = (await _requests_from(session, role.id))[0]
    assert request.id == decision.request_id
    assert request.request_type == RequestType.SEND_MEMO
    assert request.target_role_id == cfo.id
    assert request.proposed_content == "Budget needed"


@pytest.mark.asyncio
async def test_memo_to_unknown_role_is_only_audited(session, services, use_gateway, make_role) -> None:
    role = await make_role("Analyst")
    use_gateway(_decision("propose_memo", to_role="Astronaut", content="Hello"))

    decision = await autonomy.run(session, services, role.id)

    assert decision.request_id is None
    assert await _requests_from(session, role.id) == []
    assert role.workflow_status == RoleWorkflowStatus.IDLE


@pytest.mark.asyncio
async def test_complete_objective_only_touches_own_objectives(session, services, use_gateway, make_role) -> None:
    role = await make_role("Analyst")
    other = await make_role("Designer")
    own = RoleObjective(role_id=role.id, company_id=role.company_id, title="Pricing")
    foreign = RoleObjective(role_id=other.id, company_id=other.company_id, title="Logo")
    session.add_all([own, foreign])
    await session.commit()

    use_gateway(
        _decision("complete_objective", objective_id=foreign.id),
        _decision("complete_objective", objective_id=own.id),
    )
    first = await autonomy.run(session, services, role.id)
    second = await autonomy.run(session, services, role.id)

    assert first.objective_id is None
    assert second.objective_id == own.id
    await session.refresh(own)
    await session.refresh(foreign)
    assert own.status == ObjectiveStatus.COMPLETED
    assert foreign.status == ObjectiveStatus.ACTIVE


@pytest.mark.asyncio
async def test_malformed_decision_waits(session, services, use_gateway, make_role) -> None:
    role = await make_role("Analyst")
    use_gateway("I think we should probably do something")

    decision = await autonomy.run(session, services, role.id)

    assert decision.action == "wait"
    assert await _requests_from(session, role.id) == []


def test_tick_limits_are_clamped() -> None:
    assert autonomy._clamp(None, 8, 30) == 8
    assert autonomy._clamp(0, 8, 30) == 1
    assert autonomy._clamp(500, 8, 30) == 30


@pytest.mark.asyncio
async def test_tick_queues_loops_and_auto_approves(session, services, launcher, company, make_role) -> None:
    analyst = await make_role("Analyst")
    designer = await make_role("Designer")
    await make_role("Intern", is_activated=False)
    start = WorkflowRequest(
        company_id=company.id,
        requesting_role_id=analyst.id,
        request_type=RequestType.START_TASK.value,
        summary="Task: Research competitors",
        proposed_content="Research competitor pricing",
    )
    review = WorkflowRequest(
        company_id=company.id,
        requesting_role_id=designer.id,
        request_type=RequestType.REVIEW_OUTPUT.value,
        summary="Review completed task",
        proposed_content="{}",
    )
    session.add_all([start, review])
    await session.commit()

    summary = await autonomy.tick(session, services, company_id=company.id)

    assert summary.companies_processed == 1
    assert sorted(launcher.loops) == sorted([analyst.id, designer.id])
    assert summary.roles_triggered == 2
    assert summary.approvals_attempted == 1
    assert summary.approvals_succeeded == 1
    assert summary.to_dict()["errors_count"] == 0

    await session.refresh(start)
    await session.refresh(review)
    assert start.status == RequestStatus.APPROVED
    assert start.reviewed_by == autonomy.TICK_REVIEWER
    assert review.status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_tick_records_failed_auto_approvals(session, services, company, make_role) -> None:
    analyst = await make_role("Analyst")
    broken = WorkflowRequest(
        company_id=company.id,
        requesting_role_id=analyst.id,
        request_type=RequestType.SEND_MEMO.value,
        summary="Memo to nobody",
        proposed_content="Hello",
    )
    session.add(broken)
    await session.commit()
    broken_id = broken.id

    summary = await autonomy.tick(session, services, company_id=company.id)

    assert summary.approvals_succeeded == 0
    assert len(summary.errors) == 1
    assert broken_id in summary.errors[0]
