"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from axis.errors import GatewayError
from axis.events import EventEmitter, GovernanceEvent
from axis.execution import ExecutionRequest, ExecutionResult
from axis.gateway import parse_json_object
from axis.models import Base, Company, CompanyContext, CompanyMember, Role, Task, TaskStatus
from axis.services import Services

PASSING_OUTPUT = """## Pricing analysis

- Competitor pricing: three competitors charge between $10 and $40 per seat.
- Subscription tiers: we recommend Starter, Team and Enterprise tiers.
- Compare annual and monthly billing before launch.

## Recommendation

We recommend a Team tier at $24 per seat. Write the final price sheet after review.
"""


class FakeBackend:
    """Execution backend returning queued results (or raising queued errors)."""

    def __init__(self) -> None:
        self.results: list[ExecutionResult | Exception] = []
        self.requests: list[ExecutionRequest] = []

    def queue(self, *items: ExecutionResult | Exception) -> None:
        self.results.extend(items)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        item = self.results.pop(0) if self.results else ExecutionResult(output="")
        if isinstance(item, Exception):
            raise item
        return item


class FakeGateway:
    """Gateway double answering with queued completions."""

    def __init__(self, *responses: str | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        self.calls.append(
            {"messages": messages, "temperature": temperature, "max_tokens": max_tokens, "json_mode": json_mode}
        )
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def complete_json(
        self, messages: list[dict[str, str]], *, temperature: float | None = None
    ) -> dict[str, Any]:
        content = await self.complete(messages, temperature=temperature, json_mode=True)
        try:
            return parse_json_object(content)
        except ValueError as exc:
            raise GatewayError(str(exc)) from exc


class RecordingLauncher:
    """Launcher that records every continuation instead of queueing it."""

    def __init__(self) -> None:
        self.launched: list[tuple[str, int | None]] = []
        self.retries: list[tuple[str, int]] = []
        self.loops: list[str] = []
        self.dispatched: list[str] = []
        self.fail_retries = False

    async def launch_task(self, task_id: str, *, expected_attempt: int | None = None) -> None:
        self.launched.append((task_id, expected_attempt))

    async def schedule_retry(self, task_id: str, *, expected_attempt: int, delay_seconds: float) -> None:
        if self.fail_retries:
            raise ConnectionError("redis unavailable")
        self.retries.append((task_id, expected_attempt))

    async def trigger_loop(self, role_id: str) -> None:
        self.loops.append(role_id)

    async def dispatch_webhooks(self, action_id: str) -> None:
        self.dispatched.append(action_id)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture
def events() -> list[GovernanceEvent]:
    return []


@pytest.fixture
def services(backend: FakeBackend, launcher: RecordingLauncher, events: list[GovernanceEvent]) -> Services:
    emitter = EventEmitter()
    emitter.on_event(events.append)
    return Services(backend=backend, launcher=launcher, events=emitter)


@pytest.fixture
def passing_output() -> str:
    return PASSING_OUTPUT


@pytest_asyncio.fixture
async def company(session: AsyncSession) -> Company:
    company = Company(id=str(uuid4()), name="Acme")
    session.add(company)
    session.add(CompanyContext(company_id=company.id, stage="early", is_grounded=True))
    session.add(CompanyMember(company_id=company.id, user_id="owner-1", role="owner"))
    await session.commit()
    return company


@pytest.fixture
def make_role(session: AsyncSession, company: Company) -> Callable[..., Awaitable[Role]]:
    async def factory(name: str, **kwargs: Any) -> Role:
        kwargs.setdefault("is_activated", True)
        role = Role(id=str(uuid4()), company_id=company.id, name=name, **kwargs)
        session.add(role)
        await session.commit()
        return role

    return factory


@pytest.fixture
def make_task(session: AsyncSession) -> Callable[..., Awaitable[Task]]:
    async def factory(role: Role, **kwargs: Any) -> Task:
        kwargs.setdefault("title", "Pricing analysis")
        kwargs.setdefault("description", "Write a pricing analysis for the subscription tiers")
        kwargs.setdefault("completion_criteria", "Compare competitor pricing and recommend tiers")
        kwargs.setdefault("status", TaskStatus.PENDING.value)
        kwargs.setdefault("current_attempt", 0)
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("depends_on", [])
        task = Task(id=str(uuid4()), company_id=role.company_id, role_id=role.id, **kwargs)
        session.add(task)
        await session.commit()
        return task

    return factory


@pytest.fixture
def use_gateway(services: Services) -> Callable[..., FakeGateway]:
    """Install a FakeGateway with queued completions on the services."""

    def install(*responses: str | Exception) -> FakeGateway:
        gateway = FakeGateway(*responses)
        services.gateway = gateway  # type: ignore[assignment]
        return gateway

    return install
