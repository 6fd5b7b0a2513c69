import pytest

from axis.attempts import format_previous_attempts, list_attempts, next_attempt_number, record_attempt
from axis.evaluator import Evaluation
from axis.models import EvaluationResult


@pytest.mark.asyncio
async def test_attempt_numbers_are_sequential(session, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role)

    assert await next_attempt_number(session, task.id) == 1
    await record_attempt(session, task, 1, "draft", Evaluation(EvaluationResult.FAIL, "Too short"))
    await record_attempt(session, task, 2, "better", Evaluation(EvaluationResult.UNCLEAR, "Needs review"))
    await session.commit()

    assert await next_attempt_number(session, task.id) == 3
    attempts = await list_attempts(session, task.id)
    assert [(a.attempt_number, a.evaluation_result) for a in attempts] == [(1, "fail"), (2, "unclear")]


@pytest.mark.asyncio
async def test_previous_attempts_are_rendered_for_the_next_prompt(session, make_role, make_task) -> None:
    role = await make_role("Analyst")
    task = await make_task(role)
    await record_attempt(session, task, 1, "draft", Evaluation(EvaluationResult.FAIL, "Too short"))
    await session.commit()

    text = format_previous_attempts(await list_attempts(session, task.id))

    assert text.startswith("## Previous Attempts:")
    assert "### Attempt 1 (fail):\ndraft" in text
    assert "Feedback: Too short" in text
    assert format_previous_attempts([]) == ""
