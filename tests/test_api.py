from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from axis import api, dead_letter
from axis.config import settings
from axis.models import ApiToken, OutputAction, RequestType, Task, TaskStatus, WorkflowRequest

SERVICE_KEY = "svc-test-key"


@pytest_asyncio.fixture
async def client(session, services, monkeypatch):
    monkeypatch.setattr(settings, "service_key", SERVICE_KEY)
    app = api.create_app(services)

    async def override_session():
        yield session

    app.dependency_overrides[api.get_db_session] = override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://axis.test") as client:
        yield client


@pytest.fixture
def make_token(session):
    async def factory(user_id: str, *, is_admin: bool = False) -> dict[str, str]:
        token = f"tok-{uuid4().hex}"
        session.add(ApiToken(user_id=user_id, token_hash=api.hash_token(token), is_admin=is_admin))
        await session.commit()
        return {"Authorization": f"Bearer {token}"}

    return factory


SERVICE = {"Authorization": f"Bearer {SERVICE_KEY}"}


@pytest.mark.asyncio
async def test_health(client) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_requests_without_auth_are_rejected(client, make_role) -> None:
    role = await make_role("Analyst")

    resp = await client.post("/tasks", json={"role_id": role.id, "title": "Pricing analysis"})

    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "unauthorized"

    resp = await client.post(
        "/tasks", json={"role_id": role.id, "title": "x"}, headers={"Authorization": "Bearer nope"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_service_key_assigns_task(client, session, launcher, make_role) -> None:
    role = await make_role("Analyst")

    resp = await client.post(
        "/tasks",
        json={"role_id": role.id, "title": "Pricing analysis", "max_attempts": 2, "start": True},
        headers=SERVICE,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["task"]["max_attempts"] == 2
    assert body["task"]["current_attempt"] == 0
    assert launcher.launched == [(body["task"]["id"], 0)]


@pytest.mark.asyncio
async def test_invalid_retry_budget_is_a_bad_request(client, make_role) -> None:
    role = await make_role("Analyst")

    resp = await client.post(
        "/tasks", json={"role_id": role.id, "title": "Pricing analysis", "max_attempts": 11}, headers=SERVICE
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_only_company_owners_may_act(client, make_role, make_token) -> None:
    role = await make_role("Analyst")
    owner = await make_token("owner-1")
    stranger = await make_token("stranger")
    payload = {"role_id": role.id, "title": "Pricing analysis"}

    denied = await client.post("/tasks", json=payload, headers=stranger)
    assert denied.status_code == 403
    assert denied.json()["code"] == "forbidden"

    allowed = await client.post("/tasks", json=payload, headers=owner)
    assert allowed.status_code == 200
    assert allowed.json()["task"]["status"] == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_stop_task(client, session, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role)

    resp = await client.post(f"/tasks/{task.id}/stop", headers=SERVICE)

    assert resp.status_code == 200
    assert resp.json()["status"] == TaskStatus.STOPPED
    await session.refresh(task)
    assert task.status == TaskStatus.STOPPED


@pytest.mark.asyncio
async def test_unknown_task_is_not_found(client) -> None:
    resp = await client.post("/tasks/missing-task/stop", headers=SERVICE)

    assert resp.status_code == 404
    assert resp.json() == {
        "success": False,
        "error": "Task not found",
        "code": "not_found",
        "task_id": "missing-task",
    }


@pytest.mark.asyncio
async def test_second_review_reports_already_processed(client, session, make_role, make_token) -> None:
    role = await make_role("Analyst")
    request = WorkflowRequest(
        company_id=role.company_id,
        requesting_role_id=role.id,
        request_type=RequestType.START_TASK.value,
        summary="Start pricing work",
        proposed_content="Pricing analysis\nCompare competitor pricing",
    )
    session.add(request)
    await session.commit()
    owner = await make_token("owner-1")

    first = await client.post(
        f"/workflow-requests/{request.id}/review", json={"action": "deny", "review_notes": "later"}, headers=owner
    )
    assert first.status_code == 200
    assert first.json()["status"] == "denied"

    second = await client.post(
        f"/workflow-requests/{request.id}/review", json={"action": "approve"}, headers=owner
    )
    assert second.status_code == 400
    assert second.json()["code"] == "already_processed"

    tasks = (await session.execute(select(Task).where(Task.role_id == role.id))).scalars().all()
    assert tasks == []


@pytest.mark.asyncio
async def test_dead_letter_list_and_retry(client, session, make_role, make_task, make_token) -> None:
    role = await make_role("Analyst")
    task = await make_task(role, status=TaskStatus.SYSTEM_ALERT.value, current_attempt=3)
    entry = await dead_letter.escalate(session, task, failure_reason="Output is empty", last_output="")
    await session.commit()
    owner = await make_token("owner-1")

    missing_company = await client.get("/dead-letter", headers=owner)
    assert missing_company.status_code == 400

    listed = await client.get("/dead-letter", params={"company_id": role.company_id}, headers=owner)
    assert listed.status_code == 200
    entries = listed.json()["entries"]
    assert [e["id"] for e in entries] == [entry.id]
    assert entries[0]["attempts_made"] == 3

    resolved = await client.post(
        f"/dead-letter/{entry.id}/resolve", json={"action": "retry", "notes": "try again"}, headers=owner
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == TaskStatus.PENDING

    again = await client.post(f"/dead-letter/{entry.id}/resolve", json={"action": "archive"}, headers=owner)
    assert again.status_code == 400
    assert again.json()["code"] == "already_processed"


@pytest.mark.asyncio
async def test_tick_requires_service_principal(client, make_token) -> None:
    admin = await make_token("platform-admin", is_admin=True)

    resp = await client.post("/autonomy/tick", json={}, headers=admin)

    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_webhook_callback_rejects_unknown_key(client, session, make_role, make_task) -> None:
    role = await make_role("Development Lead")
    task = await make_task(role, status=TaskStatus.RUNNING.value)
    action = OutputAction(
        task_id=task.id,
        company_id=task.company_id,
        action_type="mark_external",
        action_data={"task_title": task.title},
    )
    session.add(action)
    await session.commit()

    resp = await client.post(
        "/webhooks/callback", json={"action_id": action.id, "status": "completed", "api_key": "guess"}
    )

    assert resp.status_code == 401
    await session.refresh(task)
    assert task.status == TaskStatus.RUNNING
