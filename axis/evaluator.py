"""Heuristic quality gate for task outputs.

The upstream runtime (an AI evaluator) can be lenient or hallucinate a pass,
so every output is also checked here against the task's own description and
completion criteria. The checks are deterministic and make no AI call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from .models import EvaluationResult

POINTER_ONLY_MAX_CHARS = 1200
POINTER_ONLY_MAX_LINES = 2
SHORT_TASK_THRESHOLD = 180
LONG_TASK_THRESHOLD = 320
LONG_TASK_SPEC_CHARS = 220
MIN_OUTPUT_CHARS = 120
MIN_KEYWORD_COVERAGE = 0.22
PASS_KEYWORD_COVERAGE = 0.42
MAX_KEYWORDS = 24
MIN_KEYWORD_LENGTH = 4

STOPWORDS = frozenset(
    {
        "about", "above", "after", "again", "against", "also", "among", "another",
        "based", "because", "been", "before", "being", "below", "between", "both",
        "could", "does", "doing", "down", "during", "each", "ensure", "every",
        "from", "further", "have", "having", "here", "into", "itself", "just",
        "least", "less", "like", "make", "many", "more", "most", "must", "need",
        "needs", "only", "other", "over", "provide", "same", "should", "shall",
        "some", "such", "than", "that", "their", "them", "then", "there", "these",
        "they", "this", "those", "through", "under", "until", "very", "well",
        "were", "what", "when", "where", "which", "while", "will", "with",
        "within", "without", "would", "your", "yours", "task", "tasks",
        "complete", "completed", "completion", "criteria", "include", "includes",
        "including", "output", "document", "clear", "clearly",
    }
)

# Output that only points somewhere else instead of inlining the work.
_POINTER_PATTERNS = [
    re.compile(r"\b(see|refer to|check|view|open|find)\b.{0,40}\b(attached|attachment|file|document|doc|link|folder|repo|repository)\b", re.IGNORECASE),
    re.compile(r"\b(saved|written|uploaded|stored|placed|committed)\s+(it\s+|this\s+|the\s+\w+\s+)?(to|in|at|under)\s+\S*[/\\]\S*", re.IGNORECASE),
    re.compile(r"\b(available|located|can be found)\s+(at|in)\s+(https?://|\S*[/\\]|\S+\.(md|txt|pdf|docx?|json|csv|py|ts|js))", re.IGNORECASE),
    re.compile(r"\b(in|at|see)\s+`?[\w./-]+\.(md|txt|pdf|docx?|json|csv|xlsx?|py|ts|js)\b`?", re.IGNORECASE),
]

_HEADER_RE = re.compile(r"^\s{0,3}#{1,6}\s+\S", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*([-*+]|\d+[.)])\s+\S", re.MULTILINE)
_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'-]*")

# Roles produce documents and plans; they cannot deploy or contact anyone.
FALSE_IMPLEMENTATION_CLAIMS = (
    "has been implemented",
    "has been deployed",
    "is now live",
    "schema created",
    "triggers active",
    "function deployed",
    "successfully sent email",
    "crm updated",
    "integration complete",
    "migration executed",
    "database updated",
    "webhook configured",
)


class TaskSpec(Protocol):
    description: str
    completion_criteria: str


@dataclass(frozen=True)
class Evaluation:
    result: EvaluationResult
    reason: str

    @property
    def passed(self) -> bool:
        return self.result == EvaluationResult.PASS


def extract_keywords(text: str) -> list[str]:
    """Distinct non-stopword tokens of at least four characters, first-seen order."""
    seen: dict[str, None] = {}
    for token in _TOKEN_RE.findall(text.lower()):
        token = token.strip("'-")
        if len(token) < MIN_KEYWORD_LENGTH or token in STOPWORDS or token.isdigit():
            continue
        seen.setdefault(token, None)
        if len(seen) >= MAX_KEYWORDS:
            break
    return list(seen)


def keyword_coverage(keywords: list[str], output: str) -> float:
    if not keywords:
        return 1.0
    lowered = output.lower()
    matched = sum(1 for keyword in keywords if keyword in lowered)
    return matched / len(keywords)


def is_pointer_only(output: str, coverage: float = 0.0) -> bool:
    """True when the output is mostly a reference to work kept somewhere else.

    A structured, on-topic answer that merely mentions a document or link is
    not a pointer; a reference line or two, or unstructured low-coverage text
    around one, is.
    """
    if len(output) >= POINTER_ONLY_MAX_CHARS:
        return False
    if not any(pattern.search(output) for pattern in _POINTER_PATTERNS):
        return False
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) <= POINTER_ONLY_MAX_LINES:
        return True
    return not has_structure(output) and coverage < PASS_KEYWORD_COVERAGE


def has_structure(output: str) -> bool:
    return len(_HEADER_RE.findall(output)) >= 2 or len(_BULLET_RE.findall(output)) >= 4


def claims_false_implementation(output: str) -> bool:
    lowered = output.lower()
    return any(phrase in lowered for phrase in FALSE_IMPLEMENTATION_CLAIMS)


def _coerce_verdict(verdict: str | EvaluationResult | None) -> EvaluationResult | None:
    if verdict is None:
        return None
    try:
        return EvaluationResult(str(verdict).strip().lower())
    except ValueError:
        return EvaluationResult.UNCLEAR


def evaluate(
    task: TaskSpec,
    raw_output: str | None,
    runtime_verdict: str | EvaluationResult | None = None,
    runtime_reason: str | None = None,
) -> Evaluation:
    """Score an output against a task's description and completion criteria."""
    output = (raw_output or "").strip()
    verdict = _coerce_verdict(runtime_verdict)

    if not output:
        return Evaluation(EvaluationResult.FAIL, "Output is empty")

    if verdict == EvaluationResult.FAIL:
        return Evaluation(
            EvaluationResult.FAIL,
            f"Runtime evaluation failed: {runtime_reason or 'no reason given'}",
        )

    spec_text = f"{task.description or ''} {task.completion_criteria or ''}"
    threshold = LONG_TASK_THRESHOLD if len(spec_text.strip()) > LONG_TASK_SPEC_CHARS else SHORT_TASK_THRESHOLD
    keywords = extract_keywords(spec_text)
    coverage = keyword_coverage(keywords, output)

    if is_pointer_only(output, coverage):
        return Evaluation(
            EvaluationResult.FAIL,
            "Output references external files or links instead of including the work inline",
        )

    if len(output) < MIN_OUTPUT_CHARS:
        return Evaluation(
            EvaluationResult.FAIL,
            f"Output is too short ({len(output)} chars, minimum {MIN_OUTPUT_CHARS})",
        )
    if coverage < MIN_KEYWORD_COVERAGE:
        return Evaluation(
            EvaluationResult.FAIL,
            f"Output does not address the task (keyword coverage {coverage:.0%})",
        )

    if verdict == EvaluationResult.UNCLEAR:
        return Evaluation(
            EvaluationResult.UNCLEAR,
            f"Runtime evaluation was unclear: {runtime_reason or 'no reason given'}",
        )

    gaps: list[str] = []
    if len(output) < threshold:
        gaps.append(f"shorter than {threshold} chars")
    if not has_structure(output):
        gaps.append("missing section headers or bullet structure")
    if coverage < PASS_KEYWORD_COVERAGE:
        gaps.append(f"partial keyword coverage ({coverage:.0%})")
    if gaps:
        return Evaluation(EvaluationResult.UNCLEAR, "Output needs review: " + "; ".join(gaps))

    if claims_false_implementation(output):
        return Evaluation(
            EvaluationResult.FAIL,
            "Output claims implementation or deployment actions that roles cannot perform. "
            "Describe what should be done, not what was done.",
        )

    return Evaluation(
        EvaluationResult.PASS,
        runtime_reason or f"Output meets completion criteria (keyword coverage {coverage:.0%})",
    )
