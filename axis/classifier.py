"""
Keyword-heuristic classification of work items.

Call sites depend only on the ``Classifier`` protocol so the heuristic can be
replaced by a model-based or rule-table implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol


class ExecutionLane(StrEnum):
    DEVELOPMENT = "development"
    MARKETING = "marketing"
    RESEARCH = "research"


@dataclass
class LaneResult:
    """Result of execution-lane classification."""

    lane: ExecutionLane
    scores: dict[str, int]
    matched: list[str]


class Classifier(Protocol):
    def execution_lane(self, text: str) -> LaneResult: ...

    def routes_externally(self, text: str) -> bool: ...

    def requires_verification(self, title: str, description: str) -> bool: ...


class KeywordClassifier:
    """Classifies work by scoring keyword hits per lane."""

    DEVELOPMENT_KEYWORDS = {
        "implement",
        "build",
        "code",
        "coding",
        "develop",
        "deploy",
        "api",
        "endpoint",
        "database",
        "schema",
        "migration",
        "integration",
        "integrate",
        "feature",
        "bug",
        "frontend",
        "backend",
        "infrastructure",
        "script",
        "prototype",
        "mvp",
    }

    MARKETING_KEYWORDS = {
        "marketing",
        "campaign",
        "social media",
        "newsletter",
        "email sequence",
        "landing page",
        "seo",
        "content calendar",
        "blog post",
        "brand",
        "advertis",
        "outreach",
        "launch announcement",
        "copywriting",
        "lead generation",
    }

    RESEARCH_KEYWORDS = {
        "research",
        "analysis",
        "analyze",
        "investigate",
        "survey",
        "competitor",
        "market size",
        "benchmark",
        "interview",
        "study",
        "evaluate",
        "assessment",
    }

    # Work that the roles cannot perform themselves and that needs a human or
    # an automation hook to act on it.
    EXTERNAL_KEYWORDS = DEVELOPMENT_KEYWORDS | {
        "campaign",
        "social media",
        "newsletter",
        "email sequence",
        "landing page",
        "publish",
        "post on",
        "send email",
        "crm",
    }

    VERIFICATION_KEYWORDS = (
        "implement",
        "create table",
        "deploy",
        "migration",
        "execute migration",
        "send email",
        "crm",
        "access crm",
        "integrate with",
        "build feature",
        "run script",
        "install",
        "configure server",
    )

    def execution_lane(self, text: str) -> LaneResult:
        lowered = text.lower()
        hits = {
            ExecutionLane.DEVELOPMENT: sorted(kw for kw in self.DEVELOPMENT_KEYWORDS if kw in lowered),
            ExecutionLane.MARKETING: sorted(kw for kw in self.MARKETING_KEYWORDS if kw in lowered),
            ExecutionLane.RESEARCH: sorted(kw for kw in self.RESEARCH_KEYWORDS if kw in lowered),
        }
        scores = {lane.value: len(matched) for lane, matched in hits.items()}

        # Ties and empty matches fall to research, the lane with no external tooling.
        lane = ExecutionLane.RESEARCH
        best = scores[ExecutionLane.RESEARCH.value]
        for candidate in (ExecutionLane.DEVELOPMENT, ExecutionLane.MARKETING):
            if scores[candidate.value] > best:
                lane = candidate
                best = scores[candidate.value]
        return LaneResult(lane=lane, scores=scores, matched=hits[lane])

    def routes_externally(self, text: str) -> bool:
        result = self.execution_lane(text)
        if result.lane == ExecutionLane.RESEARCH:
            return False
        lowered = text.lower()
        return any(kw in lowered for kw in self.EXTERNAL_KEYWORDS)

    def requires_verification(self, title: str, description: str) -> bool:
        title = (title or "").lower()
        description = (description or "").lower()
        return any(kw in title or kw in description for kw in self.VERIFICATION_KEYWORDS)
