"""HTTP endpoints for the governance service."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Any, cast

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import autonomy, db, dead_letter, output_actions, task_machine
from .approval import get_request, review
from .config import settings
from .errors import AuthenticationError, AxisError, InvalidRequestError, PermissionDeniedError
from .events import install_default_handlers
from .models import ApiToken, DeadLetterEntry, OutputAction, Task
from .services import Services, build_services

logger = logging.getLogger(__name__)


# =============================================================================
# Request bodies
# =============================================================================


class AssignTaskBody(BaseModel):
    role_id: str
    title: str
    description: str = ""
    completion_criteria: str = ""
    max_attempts: int | None = None
    depends_on: list[str] = Field(default_factory=list)
    start: bool = False


class ExecuteBody(BaseModel):
    expected_attempt: int | None = None
    queue: bool = False


class ReviewBody(BaseModel):
    action: str
    edited_content: str | None = None
    review_notes: str | None = None


class ResolveBody(BaseModel):
    action: str
    notes: str | None = None


class CompleteActionBody(BaseModel):
    status: str = "completed"
    notes: str | None = None


class TickBody(BaseModel):
    company_id: str | None = None
    max_companies: int | None = None
    max_roles_per_company: int | None = None
    max_auto_approvals_per_company: int | None = None


# =============================================================================
# Dependencies
# =============================================================================


@dataclass(frozen=True)
class Principal:
    user_id: str
    is_service: bool = False
    is_admin: bool = False


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with db.get_session() as session:
        yield session


def get_services(request: Request) -> Services:
    return request.app.state.services


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def get_principal(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    if not authorization:
        raise AuthenticationError("Missing authorization header")
    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise AuthenticationError("Invalid authorization")
    if settings.service_key and hmac.compare_digest(token, settings.service_key):
        return Principal(user_id="service", is_service=True, is_admin=True)

    result = await session.execute(
        select(ApiToken).where(ApiToken.token_hash == hash_token(token), ApiToken.revoked_at.is_(None))
    )
    api_token = result.scalar_one_or_none()
    if api_token is None:
        raise AuthenticationError("Invalid authorization")
    return Principal(user_id=api_token.user_id, is_admin=api_token.is_admin)


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]
ServicesDep = Annotated[Services, Depends(get_services)]
PrincipalDep = Annotated[Principal, Depends(get_principal)]


async def require_company_access(session: AsyncSession, principal: Principal, company_id: str) -> None:
    """Company owners, platform admins and the service principal may act."""
    if principal.is_service or principal.is_admin:
        return
    if not await db.is_company_owner(session, company_id, principal.user_id):
        raise PermissionDeniedError("Insufficient permissions", company_id=company_id)


# =============================================================================
# Serialization
# =============================================================================


def task_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "company_id": task.company_id,
        "role_id": task.role_id,
        "title": task.title,
        "status": task.status,
        "current_attempt": task.current_attempt,
        "max_attempts": task.max_attempts,
        "completion_summary": task.completion_summary,
        "requires_verification": task.requires_verification,
        "depends_on": list(task.depends_on or []),
        "dependency_status": task.dependency_status,
    }


def entry_dict(entry: DeadLetterEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "task_id": entry.task_id,
        "role_id": entry.role_id,
        "company_id": entry.company_id,
        "failure_reason": entry.failure_reason,
        "attempts_made": entry.attempts_made,
        "last_output": entry.last_output,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "resolved_at": entry.resolved_at.isoformat() if entry.resolved_at else None,
        "resolved_by": entry.resolved_by,
        "resolution_notes": entry.resolution_notes,
    }


def action_dict(action: OutputAction) -> dict[str, Any]:
    return {
        "id": action.id,
        "task_id": action.task_id,
        "action_type": action.action_type,
        "action_data": action.action_data,
        "status": action.status,
        "notes": action.notes,
        "completed_by": action.completed_by,
    }


# =============================================================================
# Application
# =============================================================================


async def axis_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Registered for AxisError only.
    error = cast(AxisError, exc)
    if error.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, error.message)
    return JSONResponse(status_code=error.status_code, content={"success": False, **error.to_dict()})


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        if owned:
            install_default_handlers()
        app.state.services = services or build_services()
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="Axis Governance", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(AxisError, axis_error_handler)
    if services is not None:
        app.state.services = services

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/tasks")
    async def assign(body: AssignTaskBody, session: SessionDep, services: ServicesDep, principal: PrincipalDep) -> dict[str, Any]:
        role = await db.require_role(session, body.role_id)
        await require_company_access(session, principal, role.company_id)
        task = await task_machine.assign_task(
            session,
            services,
            role_id=role.id,
            title=body.title,
            description=body.description,
            completion_criteria=body.completion_criteria,
            max_attempts=body.max_attempts,
            depends_on=body.depends_on,
            assigned_by=principal.user_id,
            start=body.start,
        )
        return {"success": True, "status": task.status, "task": task_dict(task)}

    @app.post("/tasks/{task_id}/execute")
    async def execute(
        task_id: str,
        session: SessionDep,
        services: ServicesDep,
        principal: PrincipalDep,
        body: ExecuteBody | None = None,
    ) -> dict[str, Any]:
        body = body or ExecuteBody()
        task = await db.require_task(session, task_id)
        await require_company_access(session, principal, task.company_id)
        if body.queue:
            await services.launcher.launch_task(task.id, expected_attempt=body.expected_attempt)
            return {"success": True, "status": "queued", "task_id": task.id}
        outcome = await task_machine.execute_attempt(
            session, services, task.id, expected_attempt=body.expected_attempt
        )
        return outcome.to_dict()

    @app.post("/tasks/{task_id}/stop")
    async def stop(task_id: str, session: SessionDep, services: ServicesDep, principal: PrincipalDep) -> dict[str, Any]:
        task = await db.require_task(session, task_id)
        await require_company_access(session, principal, task.company_id)
        task = await task_machine.stop_task(session, services, task.id, stopped_by=principal.user_id)
        return {"success": True, "status": task.status}

    @app.post("/workflow-requests/{request_id}/review")
    async def review_request(
        request_id: str, body: ReviewBody, session: SessionDep, services: ServicesDep, principal: PrincipalDep
    ) -> dict[str, Any]:
        request = await get_request(session, request_id)
        await require_company_access(session, principal, request.company_id)
        result = await review(
            session,
            services,
            request.id,
            body.action,
            reviewer=principal.user_id,
            edited_content=body.edited_content,
            notes=body.review_notes,
            auto=principal.is_service,
        )
        return result.to_dict()

    @app.post("/roles/{role_id}/autonomous-loop")
    async def autonomous_loop(role_id: str, session: SessionDep, services: ServicesDep, principal: PrincipalDep) -> dict[str, Any]:
        role = await db.require_role(session, role_id)
        await require_company_access(session, principal, role.company_id)
        decision = await autonomy.run(session, services, role.id)
        return decision.to_dict()

    @app.get("/dead-letter")
    async def list_dead_letter(
        session: SessionDep,
        principal: PrincipalDep,
        company_id: str | None = None,
        unresolved_only: bool = True,
        limit: int = 100,
    ) -> dict[str, Any]:
        if company_id:
            await require_company_access(session, principal, company_id)
        elif not (principal.is_service or principal.is_admin):
            raise InvalidRequestError("company_id is required")
        entries = await dead_letter.list_entries(
            session, company_id=company_id, unresolved_only=unresolved_only, limit=limit
        )
        return {"success": True, "entries": [entry_dict(e) for e in entries]}

    @app.post("/dead-letter/{entry_id}/resolve")
    async def resolve_dead_letter(
        entry_id: str, body: ResolveBody, session: SessionDep, services: ServicesDep, principal: PrincipalDep
    ) -> dict[str, Any]:
        entry = await dead_letter.get_entry(session, entry_id)
        await require_company_access(session, principal, entry.company_id)
        result = await dead_letter.resolve(
            session,
            entry.id,
            body.action,
            resolved_by=principal.user_id,
            notes=body.notes,
            emitter=services.events,
        )
        return {"success": True, "status": result.task_status, **result.to_dict()}

    @app.post("/output-actions/{action_id}/complete")
    async def complete_action(
        action_id: str,
        session: SessionDep,
        services: ServicesDep,
        principal: PrincipalDep,
        body: CompleteActionBody | None = None,
    ) -> dict[str, Any]:
        body = body or CompleteActionBody()
        action = await output_actions.get_action(session, action_id)
        await require_company_access(session, principal, action.company_id)
        action = await output_actions.resolve_action(
            session,
            services,
            action.id,
            status=body.status,
            notes=body.notes,
            completed_by=principal.user_id,
        )
        return {"success": True, "status": action.status, "action": action_dict(action)}

    @app.post("/webhooks/callback")
    async def webhook_callback(payload: dict[str, Any], session: SessionDep, services: ServicesDep) -> dict[str, Any]:
        action = await output_actions.handle_callback(session, services, payload)
        return {"success": True, "status": action.status, "action_id": action.id}

    @app.post("/autonomy/tick")
    async def autonomy_tick(
        session: SessionDep, services: ServicesDep, principal: PrincipalDep, body: TickBody | None = None
    ) -> dict[str, Any]:
        if not principal.is_service:
            raise PermissionDeniedError("Service role authorization required")
        body = body or TickBody()
        summary = await autonomy.tick(
            session,
            services,
            company_id=body.company_id,
            max_companies=body.max_companies,
            max_roles_per_company=body.max_roles_per_company,
            max_auto_approvals_per_company=body.max_auto_approvals_per_company,
        )
        return summary.to_dict()

    return app
