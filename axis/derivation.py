"""Turn an approved directive memo into an objective and a first task."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import GatewayError
from .gateway import GatewayClient
from .models import ObjectiveStatus, Role, RoleObjective, Task, TaskStatus
from .prompts import MEMO_OBJECTIVE_PROMPT
from .request_types import DEFAULT_TASK_CRITERIA

logger = logging.getLogger(__name__)

OBJECTIVE_TITLE_MAX_CHARS = 50
OBJECTIVE_DESCRIPTION_MAX_CHARS = 100
TASK_TITLE_MAX_CHARS = 80
TASK_DESCRIPTION_MAX_CHARS = 2000

_GREETING_RE = re.compile(r"^(hi|hello|hey|dear|team|to|from|re|subject)\b[^\n]*$", re.IGNORECASE)
_MARKDOWN_RE = re.compile(r"^[#>*\-\s]+|[*_`]+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_DIRECTIVE_RE = re.compile(
    r"\b(please|need to|needs to|should|must|let's|we want|your task|i want you to|can you)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class MemoDerivation:
    objective_title: str
    objective_description: str
    task_title: str
    task_description: str
    completion_criteria: str


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip(" ,;:") + "..."


def _clean_lines(content: str) -> list[str]:
    lines: list[str] = []
    for raw in content.splitlines():
        line = _MARKDOWN_RE.sub("", raw).strip()
        if not line or _GREETING_RE.match(line):
            continue
        lines.append(line)
    return lines


def heuristic_derivation(content: str, *, sender: str | None = None) -> MemoDerivation:
    """Keyword/sentence extraction used when no AI refinement is available."""
    lines = _clean_lines(content)
    body = " ".join(lines) or content.strip() or "Follow up on memo"
    sentences = [s.strip() for s in _SENTENCE_RE.split(body) if s.strip()]
    directive = next((s for s in sentences if _DIRECTIVE_RE.search(s)), sentences[0] if sentences else body)
    directive = _DIRECTIVE_RE.sub("", directive, count=1).strip(" ,:;.") or directive

    title = directive[:1].upper() + directive[1:]
    source = f" from {sender}" if sender else ""
    return MemoDerivation(
        objective_title=_clip(title, OBJECTIVE_TITLE_MAX_CHARS),
        objective_description=_clip(directive, OBJECTIVE_DESCRIPTION_MAX_CHARS),
        task_title=_clip(title, TASK_TITLE_MAX_CHARS),
        task_description=_clip(f"Act on the directive memo{source}:\n\n{body}", TASK_DESCRIPTION_MAX_CHARS),
        completion_criteria=DEFAULT_TASK_CRITERIA,
    )


async def refine_derivation(
    gateway: GatewayClient, content: str, fallback: MemoDerivation
) -> MemoDerivation:
    """Ask the gateway for a strict JSON derivation; any problem keeps ``fallback``."""
    try:
        data = await gateway.complete_json(
            [
                {"role": "system", "content": MEMO_OBJECTIVE_PROMPT},
                {"role": "user", "content": f"Memo:\n{content}"},
            ]
        )
    except GatewayError as e:
        logger.warning("Memo derivation fell back to heuristic: %s", e.message)
        return fallback

    def pick(key: str, default: str, limit: int) -> str:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return _clip(value, limit)
        return default

    return MemoDerivation(
        objective_title=pick("objective_title", fallback.objective_title, OBJECTIVE_TITLE_MAX_CHARS),
        objective_description=pick(
            "objective_description", fallback.objective_description, OBJECTIVE_DESCRIPTION_MAX_CHARS
        ),
        task_title=pick("task_title", fallback.task_title, TASK_TITLE_MAX_CHARS),
        task_description=pick("task_description", fallback.task_description, TASK_DESCRIPTION_MAX_CHARS),
        completion_criteria=pick("completion_criteria", fallback.completion_criteria, TASK_DESCRIPTION_MAX_CHARS),
    )


async def derive(
    content: str, *, gateway: GatewayClient | None = None, sender: str | None = None
) -> MemoDerivation:
    fallback = heuristic_derivation(content, sender=sender)
    if gateway is None:
        return fallback
    return await refine_derivation(gateway, content, fallback)


async def create_from_memo(
    session: AsyncSession,
    target: Role,
    derivation: MemoDerivation,
    *,
    created_by: str | None,
    max_attempts: int,
) -> tuple[RoleObjective, Task]:
    """Persist one objective and one pending task, and activate the target role."""
    objective = RoleObjective(
        role_id=target.id,
        company_id=target.company_id,
        title=derivation.objective_title,
        description=derivation.objective_description,
        status=ObjectiveStatus.ACTIVE.value,
        priority=1,
        created_by=created_by,
    )
    task = Task(
        company_id=target.company_id,
        role_id=target.id,
        title=derivation.task_title,
        description=derivation.task_description,
        completion_criteria=derivation.completion_criteria,
        status=TaskStatus.PENDING.value,
        current_attempt=0,
        max_attempts=max_attempts,
        depends_on=[],
        assigned_by=created_by,
    )
    session.add_all([objective, task])
    target.is_activated = True
    await session.flush()
    logger.info("Derived objective %s and task %s for role %s", objective.id, task.id, target.id)
    return objective, task
