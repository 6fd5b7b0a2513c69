"""Main CLI entry point for the Axis governance service."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import autonomy, db, dead_letter, task_machine
from .approval import review as review_request
from .attempts import list_attempts
from .errors import AxisError
from .events import install_default_handlers
from .logging_config import configure_logging
from .services import Services, build_services

console = Console()

T = TypeVar("T")

REQUIRED_TABLES = {
    "tasks",
    "task_attempts",
    "dead_letter_queue",
    "workflow_requests",
    "output_actions",
    "roles",
    "role_objectives",
    "role_memos",
    "role_messages",
    "company_context",
    "company_grounding",
    "company_memory",
    "company_webhooks",
    "webhook_deliveries",
}


def _run(operation: Callable[[Services], Awaitable[T]]) -> T:
    """Run one async operation with production services, mapping errors to click."""

    async def runner() -> T:
        install_default_handlers()
        services = build_services()
        try:
            return await operation(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except AxisError as e:
        raise click.ClickException(f"{e.message} ({e.code})") from e


def _print_json(data: dict[str, Any]) -> None:
    console.print_json(json.dumps(data, default=str))


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override the configured log level")
def main(log_level: str | None) -> None:
    """Axis governance CLI.

    Assign and execute role tasks, review workflow requests, drive autonomous
    loops and triage the dead letter queue.
    """
    configure_logging(log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables directly (development only; use alembic elsewhere)."""
    asyncio.run(db.init_db())
    console.print("[green]Database tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        async with db.get_engine().connect() as conn:
            tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        missing = REQUIRED_TABLES - tables
        if missing:
            console.print(f"[red]Missing required tables: {sorted(missing)}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
@click.argument("role_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--criteria", "-c", default="", help="Completion criteria")
@click.option("--max-attempts", type=int, default=None, help="Retry budget (1-10)")
@click.option("--depends-on", multiple=True, help="Task id this task waits for (repeatable)")
@click.option("--start", is_flag=True, help="Queue the first attempt immediately")
def assign(
    role_id: str,
    title: str,
    description: str,
    criteria: str,
    max_attempts: int | None,
    depends_on: tuple[str, ...],
    start: bool,
) -> None:
    """Assign a new task to a role."""

    async def do_assign(services: Services) -> None:
        async with db.get_session() as session:
            task = await task_machine.assign_task(
                session,
                services,
                role_id=role_id,
                title=title,
                description=description,
                completion_criteria=criteria,
                max_attempts=max_attempts,
                depends_on=list(depends_on),
                assigned_by="cli",
                start=start,
            )
            console.print(f"[green]Assigned task {task.id}[/green] ({task.status})")

    _run(do_assign)


@main.command()
@click.argument("task_id")
@click.option("--expected-attempt", type=int, default=None, help="Only run if the task is at this attempt")
def execute(task_id: str, expected_attempt: int | None) -> None:
    """Run one attempt of a task in-process."""

    async def do_execute(services: Services) -> None:
        async with db.get_session() as session:
            outcome = await task_machine.execute_attempt(
                session, services, task_id, expected_attempt=expected_attempt
            )
            color = {"pass": "green", "fail": "red"}.get(outcome.evaluation.result.value, "yellow")
            console.print(
                Panel(
                    f"Evaluation: [{color}]{outcome.evaluation.result.value}[/{color}]\n"
                    f"Reason: {outcome.evaluation.reason}\n"
                    f"Status: [cyan]{outcome.status}[/cyan]\n"
                    f"Attempt: {outcome.current_attempt}/{outcome.max_attempts}"
                    + ("\nRetry scheduled" if outcome.retry_scheduled else "")
                    + (f"\nDead letter entry: {outcome.dead_letter_id}" if outcome.dead_letter_id else ""),
                    title=f"Attempt {outcome.attempt_number}",
                )
            )

    _run(do_execute)


@main.command()
@click.argument("task_id")
def stop(task_id: str) -> None:
    """Stop a pending or running task (terminal)."""

    async def do_stop(services: Services) -> None:
        async with db.get_session() as session:
            task = await task_machine.stop_task(session, services, task_id, stopped_by="cli")
            console.print(f"[yellow]Task {task.id} stopped[/yellow]")

    _run(do_stop)


@main.command()
@click.argument("task_id")
def status(task_id: str) -> None:
    """Show a task and its attempt history."""

    async def show_status() -> None:
        async with db.get_session() as session:
            task = await db.get_task(session, task_id)
            if not task:
                console.print(f"[red]Task not found: {task_id}[/red]")
                return

            console.print(
                Panel(
                    f"[bold]{task.title}[/bold]\n\n"
                    f"Status: [cyan]{task.status}[/cyan]\n"
                    f"Attempt: {task.current_attempt}/{task.max_attempts}\n"
                    f"Created: {task.created_at.strftime('%Y-%m-%d %H:%M')}\n"
                    f"Dependencies: {task.dependency_status or '-'}\n"
                    f"Needs verification: {'yes' if task.requires_verification else 'no'}",
                    title=f"Task: {task.id}",
                )
            )

            attempts = await list_attempts(session, task.id)
            if attempts:
                table = Table(title="Attempts")
                table.add_column("#", style="cyan")
                table.add_column("Result")
                table.add_column("Reason")
                table.add_column("Created")
                for attempt in attempts:
                    table.add_row(
                        str(attempt.attempt_number),
                        attempt.evaluation_result,
                        (attempt.evaluation_reason or "")[:80],
                        attempt.created_at.strftime("%Y-%m-%d %H:%M"),
                    )
                console.print(table)

    asyncio.run(show_status())


@main.command()
@click.option("--company", "company_id", default=None, help="Filter by company")
@click.option("--role", "role_id", default=None, help="Filter by role")
@click.option("--status-filter", "status_filter", default=None, help="Filter by status")
@click.option("--limit", default=20, help="Number of tasks to show")
def list_tasks(company_id: str | None, role_id: str | None, status_filter: str | None, limit: int) -> None:
    """List recent tasks."""

    async def list_all() -> None:
        async with db.get_session() as session:
            tasks = await db.list_tasks(
                session,
                company_id=company_id,
                role_id=role_id,
                statuses=[status_filter] if status_filter else None,
                limit=limit,
            )
            if not tasks:
                console.print("[yellow]No tasks found[/yellow]")
                return

            table = Table(title="Tasks")
            table.add_column("ID", style="cyan")
            table.add_column("Title")
            table.add_column("Status")
            table.add_column("Attempt")
            table.add_column("Created")
            for t in tasks:
                table.add_row(
                    t.id,
                    t.title[:40] + "..." if len(t.title) > 40 else t.title,
                    t.status,
                    f"{t.current_attempt}/{t.max_attempts}",
                    t.created_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    asyncio.run(list_all())


@main.command()
@click.argument("request_id")
@click.argument("action", type=click.Choice(["approve", "deny"]))
@click.option("--notes", default=None, help="Review notes")
@click.option("--content", "edited_content", default=None, help="Replace the proposed content")
@click.option("--reviewer", default="cli", help="Recorded reviewer id")
def review(request_id: str, action: str, notes: str | None, edited_content: str | None, reviewer: str) -> None:
    """Approve or deny a pending workflow request."""

    async def do_review(services: Services) -> None:
        async with db.get_session() as session:
            result = await review_request(
                session,
                services,
                request_id,
                action,
                reviewer=reviewer,
                edited_content=edited_content,
                notes=notes,
            )
            _print_json(result.to_dict())

    _run(do_review)


@main.command()
@click.argument("role_id")
def loop(role_id: str) -> None:
    """Run one autonomous loop cycle for a role."""

    async def do_loop(services: Services) -> None:
        async with db.get_session() as session:
            decision = await autonomy.run(session, services, role_id)
            _print_json(decision.to_dict())

    _run(do_loop)


@main.command()
@click.option("--company", "company_id", default=None, help="Limit the tick to one company")
@click.option("--max-companies", type=int, default=None)
@click.option("--max-roles", "max_roles_per_company", type=int, default=None)
@click.option("--max-approvals", "max_auto_approvals_per_company", type=int, default=None)
def tick(
    company_id: str | None,
    max_companies: int | None,
    max_roles_per_company: int | None,
    max_auto_approvals_per_company: int | None,
) -> None:
    """Queue loops for activated roles and auto-approve internal transitions."""

    async def do_tick(services: Services) -> None:
        async with db.get_session() as session:
            summary = await autonomy.tick(
                session,
                services,
                company_id=company_id,
                max_companies=max_companies,
                max_roles_per_company=max_roles_per_company,
                max_auto_approvals_per_company=max_auto_approvals_per_company,
            )
            _print_json(summary.to_dict())

    _run(do_tick)


@main.group()
def dlq() -> None:
    """Dead letter queue triage."""


@dlq.command(name="list")
@click.option("--company", "company_id", default=None, help="Filter by company")
@click.option("--all", "show_all", is_flag=True, help="Include resolved entries")
@click.option("--limit", default=50, help="Number of entries to show")
def dlq_list(company_id: str | None, show_all: bool, limit: int) -> None:
    """List dead letter entries."""

    async def list_entries() -> None:
        async with db.get_session() as session:
            entries = await dead_letter.list_entries(
                session, company_id=company_id, unresolved_only=not show_all, limit=limit
            )
            if not entries:
                console.print("[green]Dead letter queue is empty[/green]")
                return

            table = Table(title="Dead Letter Queue")
            table.add_column("ID", style="cyan")
            table.add_column("Task")
            table.add_column("Attempts")
            table.add_column("Reason")
            table.add_column("Resolved")
            for entry in entries:
                table.add_row(
                    entry.id,
                    entry.task_id,
                    str(entry.attempts_made),
                    entry.failure_reason[:60],
                    entry.resolved_at.strftime("%Y-%m-%d %H:%M") if entry.resolved_at else "-",
                )
            console.print(table)

    asyncio.run(list_entries())


@dlq.command(name="resolve")
@click.argument("entry_id")
@click.argument("action", type=click.Choice(["archive", "retry"]))
@click.option("--notes", default=None, help="Resolution notes")
@click.option("--by", "resolved_by", default="cli", help="Recorded resolver id")
def dlq_resolve(entry_id: str, action: str, notes: str | None, resolved_by: str) -> None:
    """Archive a dead-lettered task or reset it for another round of attempts."""

    async def do_resolve(services: Services) -> None:
        async with db.get_session() as session:
            result = await dead_letter.resolve(
                session, entry_id, action, resolved_by=resolved_by, notes=notes, emitter=services.events
            )
            console.print(f"[green]Task {result.task_id} is now {result.task_status}[/green]")

    _run(do_resolve)


@main.command()
def worker() -> None:
    """Consume queued attempts, loops and webhook dispatches."""
    from .workers.governance_worker import run_worker

    asyncio.run(run_worker())


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
