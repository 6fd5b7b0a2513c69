from contextlib import asynccontextmanager

import httpx
import pytest

from axis import db
from axis.errors import GatewayError
from axis.execution import ExecutionResult
from axis.models import TaskStatus
from axis.queue import STREAM_LOOP, JobPayload, stream_for_job
from axis.webhooks import WebhookDispatcher
from axis.workers.governance_worker import GovernanceWorker


@pytest.fixture
def worker(session, services, monkeypatch):
    @asynccontextmanager
    async def test_session():
        yield session

    monkeypatch.setattr(db, "get_session", test_session)
    transport = httpx.MockTransport(lambda request: httpx.Response(200))
    return GovernanceWorker(services, dispatcher=WebhookDispatcher(transport=transport))


def test_job_payload_from_stream_fields() -> None:
    job = JobPayload.from_dict(
        {"job_type": "execute", "task_id": "t-1", "expected_attempt": "2", "retry_count": "1", "job_id": "j-1"}
    )

    assert job.expected_attempt == 2
    assert job.retry_count == 1
    assert job.role_id is None
    assert "role_id" not in job.to_dict()
    assert job.to_dict()["expected_attempt"] == "2"


def test_stream_for_job() -> None:
    assert stream_for_job("loop") == STREAM_LOOP
    with pytest.raises(ValueError):
        stream_for_job("reindex")


@pytest.mark.asyncio
async def test_execute_job_runs_attempt(session, backend, worker, make_role, make_task, passing_output) -> None:
    role = await make_role("Analyst")
    task = await make_task(role)
    backend.queue(ExecutionResult(output=passing_output))

    await worker.process({"job_type": "execute", "task_id": task.id, "expected_attempt": "0"})

    await session.refresh(task)
    assert task.status == TaskStatus.COMPLETED
    assert task.current_attempt == 1


@pytest.mark.asyncio
async def test_stale_execute_job_is_skipped(session, backend, worker, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role)

    await worker.process({"job_type": "execute", "task_id": task.id, "expected_attempt": "2"})

    assert backend.requests == []
    await session.refresh(task)
    assert task.current_attempt == 0


@pytest.mark.asyncio
async def test_malformed_job_is_dropped(worker) -> None:
    await worker.process({"job_type": "execute"})


@pytest.mark.asyncio
async def test_gateway_failures_propagate_for_redelivery(worker, make_role) -> None:
    role = await make_role("Analyst")

    with pytest.raises(GatewayError):
        await worker.process({"job_type": "loop", "role_id": role.id})
