"""Task execution backends.

``SSEExecutionBackend`` talks to the external execution service, which
streams ``output`` chunks and finishes with a ``done`` (or ``error``) event.
``GatewayExecutionBackend`` runs the task directly against the AI gateway
and asks a strict evaluator prompt for the runtime verdict.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from httpx_sse import aconnect_sse

from .config import settings
from .errors import ExecutionBackendError, GatewayError
from .gateway import GatewayClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionRequest:
    company_id: str
    role_id: str
    task_id: str
    title: str
    description: str
    completion_criteria: str
    attempt_number: int
    max_attempts: int
    system_prompt: str = ""
    previous_attempts: str = ""

    def task_prompt(self) -> str:
        text = (
            f"Title: {self.title}\n\nDescription: {self.description}\n\n"
            f"Completion Criteria:\n{self.completion_criteria}\n\n"
            f"This is attempt {self.attempt_number} of {self.max_attempts}."
        )
        if self.previous_attempts:
            text += f"\n\n{self.previous_attempts}"
        return text

    def to_payload(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "role_id": self.role_id,
            "task": {
                "id": self.task_id,
                "title": self.title,
                "description": self.description,
                "completion_criteria": self.completion_criteria,
            },
            "attempt": {"number": self.attempt_number, "max": self.max_attempts},
            "system_prompt": self.system_prompt,
            "context": self.previous_attempts,
        }


@dataclass
class ExecutionResult:
    output: str
    verdict: str | None = None
    reason: str | None = None
    success: bool = True
    chunks: list[str] = field(default_factory=list)


class ExecutionBackend(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


class SSEExecutionBackend:
    """Async client for the external task execution service."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = base_url or settings.execution_url
        if not base_url:
            raise ExecutionBackendError("Execution backend URL is not configured")
        api_key = api_key if api_key is not None else settings.execution_api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds or settings.execution_timeout),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        chunks: list[str] = []
        try:
            async with aconnect_sse(
                self._client, "POST", "/task", json=request.to_payload()
            ) as event_source:
                if event_source.response.status_code >= 400:
                    await event_source.response.aread()
                    raise ExecutionBackendError(
                        f"Execution backend error {event_source.response.status_code}: "
                        f"{event_source.response.text[:500]}"
                    )
                async for sse in event_source.aiter_sse():
                    if sse.event == "output":
                        chunks.append(_chunk_text(sse.data))
                    elif sse.event == "done":
                        return _done_result(sse.data, chunks)
                    elif sse.event == "error":
                        raise ExecutionBackendError(f"Execution backend reported an error: {sse.data[:500]}")
        except httpx.RequestError as e:
            raise ExecutionBackendError(f"Execution backend request failed: {e}") from e

        if not chunks:
            raise ExecutionBackendError("Execution stream ended without output")
        logger.warning("Execution stream for task %s ended without a done event", request.task_id)
        return ExecutionResult(
            output="".join(chunks),
            verdict="unclear",
            reason="Execution stream ended without a completion event",
            chunks=chunks,
        )


def _chunk_text(data: str) -> str:
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return data
    if isinstance(parsed, dict):
        for key in ("content", "chunk", "text", "output"):
            if isinstance(parsed.get(key), str):
                return parsed[key]
        return ""
    return parsed if isinstance(parsed, str) else data


def _done_result(data: str, chunks: list[str]) -> ExecutionResult:
    try:
        parsed = json.loads(data) if data else {}
    except json.JSONDecodeError:
        parsed = {"output": data}
    if not isinstance(parsed, dict):
        parsed = {}

    output = parsed.get("output")
    if not isinstance(output, str) or not output:
        output = "".join(chunks)
    evaluation = parsed.get("evaluation")
    verdict = evaluation.get("result") if isinstance(evaluation, dict) else evaluation
    reason = parsed.get("evaluation_reason")
    if reason is None and isinstance(evaluation, dict):
        reason = evaluation.get("reason")
    return ExecutionResult(
        output=output,
        verdict=verdict if isinstance(verdict, str) else None,
        reason=reason if isinstance(reason, str) else None,
        success=bool(parsed.get("success", True)),
        chunks=chunks,
    )


EVALUATOR_SYSTEM_PROMPT = (
    "You are a strict evaluator. Determine if an AI output meets completion criteria. "
    "Be rigorous but fair. If uncertain, return \"unclear\". Your entire response must be "
    "a valid JSON object with \"result\" and \"reason\" fields only."
)


class GatewayExecutionBackend:
    """Executes tasks through the AI gateway when no execution service is configured."""

    def __init__(self, gateway: GatewayClient) -> None:
        self._gateway = gateway

    async def aclose(self) -> None:
        await self._gateway.aclose()

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        try:
            output = await self._gateway.complete(
                [
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.task_prompt()},
                ]
            )
        except GatewayError as e:
            raise ExecutionBackendError(str(e)) from e

        verdict, reason = "unclear", "Evaluation failed"
        try:
            evaluation = await self._gateway.complete_json(
                [
                    {"role": "system", "content": EVALUATOR_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            "Evaluate whether the following AI output meets the completion criteria.\n\n"
                            f"Task: {request.title}\nCompletion Criteria: {request.completion_criteria}\n\n"
                            f"AI Output to Evaluate:\n{output}\n\n"
                            'Return ONLY a JSON object: {"result": "pass|fail|unclear", "reason": "brief explanation"}'
                        ),
                    },
                ]
            )
            verdict = str(evaluation.get("result") or "unclear")
            reason = str(evaluation.get("reason") or "No reason provided")
        except GatewayError as e:
            logger.warning("Runtime evaluation failed for task %s: %s", request.task_id, e)
        return ExecutionResult(output=output, verdict=verdict, reason=reason)

