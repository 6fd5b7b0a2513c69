"""Append-only log of task execution attempts."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .evaluator import Evaluation
from .models import Task, TaskAttempt

logger = logging.getLogger(__name__)


async def next_attempt_number(session: AsyncSession, task_id: str) -> int:
    """Next number in the task's attempt log (1-based, never reused)."""
    result = await session.execute(
        select(func.max(TaskAttempt.attempt_number)).where(TaskAttempt.task_id == task_id)
    )
    return int(result.scalar() or 0) + 1


async def record_attempt(
    session: AsyncSession,
    task: Task,
    attempt_number: int,
    model_output: str,
    evaluation: Evaluation,
) -> TaskAttempt:
    """Persist one attempt. Rows are never updated or deleted afterwards."""
    attempt = TaskAttempt(
        task_id=task.id,
        attempt_number=attempt_number,
        model_output=model_output,
        evaluation_result=evaluation.result.value,
        evaluation_reason=evaluation.reason,
    )
    session.add(attempt)
    await session.flush()
    logger.info(
        "Recorded attempt %s for task %s: %s", attempt_number, task.id, evaluation.result.value
    )
    return attempt


async def list_attempts(session: AsyncSession, task_id: str) -> list[TaskAttempt]:
    result = await session.execute(
        select(TaskAttempt)
        .where(TaskAttempt.task_id == task_id)
        .order_by(TaskAttempt.attempt_number)
    )
    return list(result.scalars().all())


def format_previous_attempts(attempts: list[TaskAttempt]) -> str:
    """Render earlier attempts and their feedback for the next execution prompt."""
    if not attempts:
        return ""
    blocks = [
        f"### Attempt {a.attempt_number} ({a.evaluation_result}):\n{a.model_output}\n\n"
        f"Feedback: {a.evaluation_reason or 'No specific feedback'}"
        for a in attempts
    ]
    return "## Previous Attempts:\n" + "\n\n".join(blocks)
