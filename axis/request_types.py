"""Typed payloads for workflow requests.

A stored ``WorkflowRequest`` carries its type as a string and its payload as
text (often JSON). ``parse_request`` turns both into one of the dataclasses
below so the approval gate can match on them exhaustively.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, assert_never

from .errors import InvalidRequestError
from .models import RequestType, WorkflowRequest

COMPLETION_UPDATE_PREFIX = "Completion update"
OBJECTIVE_COMPLETION = "objective_completion"
TASK_COMPLETION = "task_completion"
DEFAULT_TASK_CRITERIA = "Task completed successfully based on the description provided."


@dataclass(frozen=True)
class SendMemo:
    target_role_id: str
    content: str
    is_completion_update: bool = False


@dataclass(frozen=True)
class StartTask:
    target_role_id: str
    title: str
    description: str
    completion_criteria: str


@dataclass(frozen=True)
class SuggestNextTask:
    target_role_id: str
    title: str
    description: str
    completion_criteria: str


@dataclass(frozen=True)
class ContinueTask:
    task_id: str


@dataclass(frozen=True)
class ReviewOutput:
    review_type: str
    objective_id: str | None = None
    task_id: str | None = None
    summary: str = ""

    @property
    def completes_objective(self) -> bool:
        return self.review_type == OBJECTIVE_COMPLETION and bool(self.objective_id)


ApprovalAction = SendMemo | StartTask | SuggestNextTask | ContinueTask | ReviewOutput


def _load_json(content: str) -> dict[str, Any] | None:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _task_fields(request: WorkflowRequest, content: str) -> tuple[str, str, str]:
    data = _load_json(content)
    if data is None:
        # Raw text proposals become the task description.
        return request.summary or "Untitled task", content, DEFAULT_TASK_CRITERIA
    title = _text(data, "title") or request.summary or "Untitled task"
    description = _text(data, "description") or content
    criteria = _text(data, "completion_criteria") or DEFAULT_TASK_CRITERIA
    return title, description, criteria


def parse_request(request: WorkflowRequest, content: str | None = None) -> ApprovalAction:
    """Validate a request's payload; raises InvalidRequestError when unusable."""
    content = request.proposed_content if content is None else content
    content = content or ""
    try:
        request_type = RequestType(request.request_type)
    except ValueError:
        raise InvalidRequestError(
            f"Unknown request type: {request.request_type}", request_id=request.id
        ) from None

    match request_type:
        case RequestType.SEND_MEMO:
            if not request.target_role_id:
                raise InvalidRequestError("Memo request missing target role", request_id=request.id)
            if not content.strip():
                raise InvalidRequestError("Memo request has no content", request_id=request.id)
            return SendMemo(
                target_role_id=request.target_role_id,
                content=content,
                is_completion_update=(request.summary or "").startswith(COMPLETION_UPDATE_PREFIX),
            )
        case RequestType.START_TASK | RequestType.SUGGEST_NEXT_TASK:
            title, description, criteria = _task_fields(request, content)
            target = request.target_role_id or request.requesting_role_id
            if request_type == RequestType.START_TASK:
                return StartTask(target, title, description, criteria)
            return SuggestNextTask(target, title, description, criteria)
        case RequestType.CONTINUE_TASK:
            data = _load_json(content) or {}
            task_id = request.source_task_id or _text(data, "task_id")
            if not task_id:
                raise InvalidRequestError("Continue request missing source task", request_id=request.id)
            return ContinueTask(task_id=task_id)
        case RequestType.REVIEW_OUTPUT:
            data = _load_json(content) or {}
            return ReviewOutput(
                review_type=_text(data, "review_type") or TASK_COMPLETION,
                objective_id=_text(data, "objective_id") or None,
                task_id=_text(data, "task_id") or request.source_task_id,
                summary=_text(data, "summary") or request.summary or "",
            )
        case _:
            assert_never(request_type)
