"""Async database connection and shared queries for the governance service."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import NotFoundError, SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    Base,
    CompanyContext,
    CompanyGrounding,
    CompanyMember,
    Role,
    RoleMessage,
    Task,
    TaskStatus,
    WorkflowRequest,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine, _session_factory
    if _engine is None:
        _engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


# =============================================================================
# Lookups
# =============================================================================


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def require_task(session: AsyncSession, task_id: str) -> Task:
    task = await get_task(session, task_id)
    if task is None:
        raise NotFoundError("Task not found", task_id=task_id)
    return task


async def get_role(session: AsyncSession, role_id: str) -> Role | None:
    """Get a role by its ID."""
    result = await session.execute(select(Role).where(Role.id == role_id))
    return result.scalar_one_or_none()


async def require_role(session: AsyncSession, role_id: str) -> Role:
    role = await get_role(session, role_id)
    if role is None:
        raise NotFoundError("Role not found", role_id=role_id)
    return role


async def get_company_roles(session: AsyncSession, company_id: str) -> list[Role]:
    """All roles of a company, oldest first."""
    result = await session.execute(
        select(Role).where(Role.company_id == company_id).order_by(Role.created_at, Role.id)
    )
    return list(result.scalars().all())


async def find_role_by_name(session: AsyncSession, company_id: str, name: str) -> Role | None:
    """Case-insensitive lookup by role name or display name."""
    needle = name.strip().lower()
    if not needle:
        return None
    for role in await get_company_roles(session, company_id):
        if role.name.lower() == needle or (role.display_name or "").lower() == needle:
            return role
    return None


async def match_role(
    session: AsyncSession, company_id: str, name: str, *, exclude_id: str | None = None
) -> Role | None:
    """Exact name match first, then a partial match in either direction."""
    needle = name.strip().lower()
    if not needle:
        return None
    candidates = [role for role in await get_company_roles(session, company_id) if role.id != exclude_id]
    for role in candidates:
        if needle in (role.name.lower(), (role.display_name or "").lower()):
            return role
    for role in candidates:
        names = [n for n in (role.name.lower(), (role.display_name or "").lower()) if n]
        if any(needle in n or n in needle for n in names):
            return role
    return None


async def get_company_context(session: AsyncSession, company_id: str) -> CompanyContext | None:
    result = await session.execute(
        select(CompanyContext).where(CompanyContext.company_id == company_id)
    )
    return result.scalar_one_or_none()


async def get_confirmed_grounding(session: AsyncSession, company_id: str) -> CompanyGrounding | None:
    result = await session.execute(
        select(CompanyGrounding).where(
            CompanyGrounding.company_id == company_id,
            CompanyGrounding.status == "confirmed",
        )
    )
    return result.scalars().first()


async def get_company_owner_ids(session: AsyncSession, company_id: str) -> list[str]:
    result = await session.execute(
        select(CompanyMember.user_id).where(
            CompanyMember.company_id == company_id, CompanyMember.role == "owner"
        )
    )
    return list(result.scalars().all())


async def is_company_owner(session: AsyncSession, company_id: str, user_id: str) -> bool:
    return user_id in await get_company_owner_ids(session, company_id)


async def list_tasks(
    session: AsyncSession,
    *,
    company_id: str | None = None,
    role_id: str | None = None,
    statuses: Sequence[str] | None = None,
    limit: int = 50,
) -> list[Task]:
    query = select(Task)
    if company_id:
        query = query.where(Task.company_id == company_id)
    if role_id:
        query = query.where(Task.role_id == role_id)
    if statuses:
        query = query.where(Task.status.in_(list(statuses)))
    query = query.order_by(Task.created_at.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_pending_requests(
    session: AsyncSession,
    *,
    company_id: str | None = None,
    role_id: str | None = None,
) -> list[WorkflowRequest]:
    query = select(WorkflowRequest).where(WorkflowRequest.status == "pending")
    if company_id:
        query = query.where(WorkflowRequest.company_id == company_id)
    if role_id:
        query = query.where(WorkflowRequest.requesting_role_id == role_id)
    result = await session.execute(query.order_by(WorkflowRequest.created_at))
    return list(result.scalars().all())


# =============================================================================
# Role activity stream
# =============================================================================


async def add_role_message(
    session: AsyncSession,
    role: Role,
    content: str,
    sender: str = "system",
) -> RoleMessage:
    """Append an entry to a role's activity stream."""
    message = RoleMessage(
        role_id=role.id,
        company_id=role.company_id,
        sender=sender,
        content=content,
    )
    session.add(message)
    await session.flush()
    return message


async def get_recent_role_messages(
    session: AsyncSession, role_id: str, limit: int = 20
) -> list[RoleMessage]:
    """Most recent messages, returned oldest first."""
    result = await session.execute(
        select(RoleMessage)
        .where(RoleMessage.role_id == role_id)
        .order_by(RoleMessage.created_at.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def dependency_state(session: AsyncSession, task: Task) -> str | None:
    """Return 'ready' / 'waiting' for tasks with dependencies, else None."""
    depends_on = list(task.depends_on or [])
    if not depends_on:
        return None
    result = await session.execute(select(Task.id, Task.status).where(Task.id.in_(depends_on)))
    statuses: dict[str, Any] = {row[0]: row[1] for row in result.all()}
    if all(statuses.get(dep_id) == TaskStatus.COMPLETED for dep_id in depends_on):
        return "ready"
    return "waiting"


async def refresh_dependents(session: AsyncSession, task: Task) -> list[Task]:
    """Re-evaluate dependency_status of open tasks that depend on ``task``."""
    result = await session.execute(
        select(Task).where(
            Task.company_id == task.company_id,
            Task.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
            Task.id != task.id,
        )
    )
    updated: list[Task] = []
    for dependent in result.scalars().all():
        if task.id not in (dependent.depends_on or []):
            continue
        dependent.dependency_status = await dependency_state(session, dependent)
        updated.append(dependent)
    return updated
