import pytest

from axis import dead_letter, task_machine
from axis.errors import AlreadyProcessedError, InvalidRequestError
from axis.events import EventType
from axis.execution import ExecutionResult
from axis.models import TaskStatus


@pytest.mark.asyncio
async def test_escalate_keeps_one_open_entry(session, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role, status=TaskStatus.SYSTEM_ALERT.value, current_attempt=3)

    first = await dead_letter.escalate(session, task, failure_reason="Output is empty", last_output="x" * 20000)
    second = await dead_letter.escalate(session, task, failure_reason="again", last_output=None)
    await session.commit()

    assert first.id == second.id
    assert len(first.last_output) == dead_letter.LAST_OUTPUT_MAX_CHARS
    assert [e.id for e in await dead_letter.list_entries(session)] == [first.id]


@pytest.mark.asyncio
async def test_retry_resets_budget_and_keeps_attempt_log(
    session, services, backend, make_role, make_task, events
) -> None:
    role = await make_role("Analyst")
    task = await make_task(role, max_attempts=1)
    backend.queue(ExecutionResult(output="too short"), ExecutionResult(output="still short"))

    outcome = await task_machine.execute_attempt(session, services, task.id)
    assert outcome.status == TaskStatus.SYSTEM_ALERT

    result = await dead_letter.resolve(
        session, outcome.dead_letter_id, "retry", resolved_by="owner-1", emitter=services.events
    )
    assert result.task_status == TaskStatus.PENDING
    await session.refresh(task)
    assert task.current_attempt == 0
    assert events[-1].type == EventType.DLQ_RESOLVED

    entry = await dead_letter.get_entry(session, outcome.dead_letter_id)
    assert entry.resolved_by == "owner-1"
    assert entry.resolved_at is not None
    assert await dead_letter.list_entries(session) == []
    assert len(await dead_letter.list_entries(session, unresolved_only=False)) == 1

    again = await task_machine.execute_attempt(session, services, task.id)
    assert again.attempt_number == 2
    assert again.current_attempt == 1


@pytest.mark.asyncio
async def test_archive_and_double_resolve(session, services, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role, status=TaskStatus.SYSTEM_ALERT.value, current_attempt=3)
    entry = await dead_letter.escalate(session, task, failure_reason="Output is empty", last_output="")
    await session.commit()

    result = await dead_letter.resolve(session, entry.id, "archive", resolved_by="owner-1", notes="obsolete")
    assert result.task_status == TaskStatus.ARCHIVED
    assert result.to_dict()["action"] == "archive"

    with pytest.raises(AlreadyProcessedError):
        await dead_letter.resolve(session, entry.id, "retry", resolved_by="owner-2")
    await session.refresh(task)
    assert task.status == TaskStatus.ARCHIVED


@pytest.mark.asyncio
async def test_resolve_rejects_unknown_action(session, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role, status=TaskStatus.SYSTEM_ALERT.value, current_attempt=3)
    entry = await dead_letter.escalate(session, task, failure_reason="x", last_output="")
    await session.commit()

    with pytest.raises(InvalidRequestError):
        await dead_letter.resolve(session, entry.id, "delete", resolved_by="owner-1")
