"""Prompt templates for task execution, autonomous loops and derivations."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .models import CompanyGrounding, CompanyMemory, Role, Task

if TYPE_CHECKING:
    from .autonomy import ContextSnapshot

STAGE_GUIDANCE = {
    "early": "Assume sparse data, prioritize speed over perfection, favor hypotheses over rigid frameworks.",
    "growth": "Balance speed with process, support scaling decisions.",
    "established": "Respect established processes, optimize for efficiency.",
}

LOOP_SYSTEM_PROMPT = (
    "You are an autonomous AI role in a company operating system. Respond only with valid JSON."
)

COMPLETION_SUMMARY_PROMPT = (
    "Generate a concise completion summary. Include: what was asked, what was delivered, "
    "and any assumptions made. Keep it brief and professional."
)

FOLLOWUP_PROMPT = """You are an AI role that just completed a task. Analyze if follow-up actions are needed.

Consider:
1. Should another role be notified about this work? (memo)
2. Is there a logical next task that should be done? (next_task)

Only suggest follow-ups if truly necessary. Most tasks do not need them.
For a memo, name the kind of role that should receive it (for example "CFO" or "Marketing Lead").

Respond with a JSON object only:
{
  "has_suggestions": true | false,
  "memo": {"target_role": "...", "summary": "...", "content": "..."},
  "next_task": {"title": "...", "description": "...", "completion_criteria": "...", "summary": "..."}
}"""

MEMO_OBJECTIVE_PROMPT = (
    "Extract a single actionable objective and a first task from this directive memo. "
    'Return JSON only: {"objective_title": "short title max 50 chars", '
    '"objective_description": "one sentence max 100 chars", "task_title": "short task title", '
    '"task_description": "what to produce", "completion_criteria": "how to know it is done"}'
)

CAPABILITY_RULES = """## What You CAN Do:
- Research and analysis (based on provided context)
- Creating documents, plans, specifications, and frameworks
- Synthesizing information and making recommendations
- Communicating with other roles via memos

## What You CANNOT Do (do not claim to have done these):
- Send external emails or messages
- Access CRM, analytics, or external databases
- Execute code or deploy software
- Make phone calls or schedule meetings"""

LOOP_INSTRUCTIONS = """AUTONOMOUS LOOP INSTRUCTIONS:
You are in an autonomous loop. Analyze the context above and decide what to do next.
Base all decisions on known facts from grounding. Do not assume information not provided.

Respond with a JSON object:
{
  "action": "propose_task" | "propose_memo" | "wait" | "complete_objective",
  "reasoning": "Brief explanation of your decision",
  "details": {
    "title": "...", "description": "...", "completion_criteria": "...",  (propose_task)
    "to_role": "Role name", "content": "Memo content",                   (propose_memo)
    "objective_id": "UUID", "summary": "What was accomplished",           (complete_objective)
    "reason": "Why waiting is appropriate"                                (wait)
  }
}

Rules:
- If you have pending workflow requests, action should be "wait"
- If objectives are complete, propose a new one or mark complete
- Be specific and actionable in proposals
- Never propose tasks claiming to deploy, send, or access external systems
- If external integrations are needed, propose a memo to the CEO requesting them"""


def _named_items(items: Iterable[Any], *, key: str = "name") -> list[str]:
    lines: list[str] = []
    for item in items or []:
        if isinstance(item, dict):
            name = item.get(key) or item.get("name") or item.get("type") or ""
            description = item.get("description") or ""
            lines.append(f"- {name}: {description}".rstrip(": ") if name else f"- {description}")
        else:
            lines.append(f"- {item}")
    return lines


def format_grounding(grounding: CompanyGrounding | None) -> str:
    if grounding is None:
        return (
            "## COMPANY GROUNDING\n"
            "WARNING: No confirmed grounding data available. Do NOT invent business metrics, "
            "customer data, or outcomes. If information is needed but not available, state what "
            "data is missing."
        )

    sections = [
        "## COMPANY GROUNDING (Source of Truth)",
        "The following is the ONLY verified factual information about this company.",
        f"### Intended Customer:\n{grounding.intended_customer or 'Not specified'}",
        "### What Exists (Products/Services):\n" + ("\n".join(_named_items(grounding.products)) or "None specified"),
        "### Entities:\n" + ("\n".join(_named_items(grounding.entities)) or "None specified"),
        "### What Does NOT Exist Yet:\n" + ("\n".join(_named_items(grounding.not_yet_exists)) or "Nothing specified"),
        "### Aspirations:\n" + ("\n".join(_named_items(grounding.aspirations, key="description")) or "None specified"),
        "### Constraints:\n" + ("\n".join(_named_items(grounding.constraints, key="description")) or "None specified"),
    ]
    summary = grounding.current_state_summary or {}
    for label, field in (
        ("Known Facts", "known_facts"),
        ("Assumptions", "assumptions"),
        ("Open Questions", "open_questions"),
    ):
        values = summary.get(field) or []
        if values:
            sections.append(f"### {label}:\n" + "\n".join(f"- {v}" for v in values))
    if grounding.technical_context:
        sections.append(
            "### Technical Context:\n" + json.dumps(grounding.technical_context, indent=2, default=str)
        )
    return "\n\n".join(sections)


def format_memory(memories: Iterable[CompanyMemory], *, limit: int | None = None, width: int | None = None) -> str:
    lines: list[str] = []
    for memory in list(memories)[:limit]:
        content = memory.content if width is None else memory.content[:width]
        lines.append(f"- [{memory.label or 'note'}] {content}")
    return "\n".join(lines)


def build_execution_system_prompt(
    role: Role,
    task: Task,
    *,
    grounding: CompanyGrounding | None,
    memories: Iterable[CompanyMemory],
    previous_attempts: str,
    attempt_number: int,
) -> str:
    memory_text = format_memory(memories)
    parts = [
        role.system_prompt or f"You are the {role.label}.",
        "You are executing a specific task. Your output must directly address the task requirements.",
        f"## Your Role Mandate:\n{role.mandate or 'Not specified'}",
        format_grounding(grounding),
    ]
    if memory_text:
        parts.append(f"## Company Memory (Verified Notes):\n{memory_text}")
    parts.extend(
        [
            f"## Task Details:\nTitle: {task.title}\nDescription: {task.description}",
            f"## Completion Criteria:\n{task.completion_criteria}",
            "## Rules:\n"
            "1. Only reference facts stated in Company Grounding or Company Memory\n"
            "2. Do not invent metrics, customer counts or business outcomes\n"
            "3. Include the full deliverable inline, do not point to files or links\n"
            "4. If the task requires data you do not have, state exactly what is missing",
            CAPABILITY_RULES,
        ]
    )
    if previous_attempts:
        parts.append(
            "## Learning from Previous Attempts:\n"
            "Review the previous attempts below and improve upon them. Address any feedback provided.\n\n"
            + previous_attempts
        )
    parts.append(f"This is attempt {attempt_number} of {task.max_attempts}.")
    return "\n\n".join(parts)


def build_loop_prompt(snapshot: ContextSnapshot) -> str:
    role = snapshot.role
    stage = ""
    if snapshot.stage:
        stage = f"Company Stage: {snapshot.stage}. {STAGE_GUIDANCE.get(snapshot.stage, '')}".strip()

    if snapshot.objectives:
        objectives = "Current Objectives:\n" + "\n".join(
            f"{i}. [{o.id}] {o.title}: {o.description}" for i, o in enumerate(snapshot.objectives, start=1)
        )
    else:
        objectives = "No active objectives assigned. Propose an initial objective based on your mandate."

    memory = format_memory(snapshot.memories, limit=5, width=200)
    memory = f"Recent Company Memory:\n{memory}" if memory else "No company memory recorded yet."

    if snapshot.recent_messages:
        activity = "Last Activity:\n" + "\n".join(
            f"[{m.sender}]: {m.content[:100]}" for m in snapshot.recent_messages[-3:]
        )
    else:
        activity = "No recent activity."

    return "\n\n".join(
        part
        for part in (
            role.system_prompt or f"You are the {role.label}.",
            "---\nCURRENT CONTEXT:",
            f"Company: {snapshot.company_name}",
            stage,
            f"Your Mandate:\n{role.mandate or 'Not specified'}",
            format_grounding(snapshot.grounding),
            objectives,
            memory,
            activity,
            f"Pending Workflow Requests: {snapshot.pending_requests}",
            "---\n" + CAPABILITY_RULES,
            "---\n" + LOOP_INSTRUCTIONS,
        )
        if part
    )
