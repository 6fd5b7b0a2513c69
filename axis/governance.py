"""Configurable governance hierarchy.

Governance roles receive completion reviews and may approve work on behalf
of the company. Which roles count, and how they rank, is driven by settings
rather than hard-coded role names.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .config import settings
from .models import Role


def _created(role: Role) -> datetime:
    # SQLite hands back naive timestamps; compare everything as naive UTC.
    if role.created_at is None:
        return datetime.min
    return role.created_at.replace(tzinfo=None)


@dataclass
class GovernancePolicy:
    """Ranks roles by name patterns first, then by authority level."""

    name_ranking: Sequence[str] = field(default_factory=lambda: list(settings.governance_name_ranking))
    authority_levels: Sequence[str] = field(
        default_factory=lambda: list(settings.governance_authority_levels)
    )
    coordinator_names: Sequence[str] = field(
        default_factory=lambda: list(settings.coordinator_role_names)
    )
    product_keywords: Sequence[str] = field(
        default_factory=lambda: list(settings.product_role_keywords)
    )

    def __post_init__(self) -> None:
        self._name_patterns = [re.compile(p, re.IGNORECASE) for p in self.name_ranking]
        self._authority = [level.lower() for level in self.authority_levels]

    @staticmethod
    def _names(role: Role) -> str:
        return f"{role.name} {role.display_name or ''}".lower()

    def _name_rank(self, role: Role) -> int | None:
        names = self._names(role)
        for index, pattern in enumerate(self._name_patterns):
            if pattern.search(names):
                return index
        return None

    def rank(self, role: Role) -> int | None:
        """Lower is more senior; None means not a governance role."""
        name_rank = self._name_rank(role)
        if name_rank is not None:
            return name_rank
        level = (role.authority_level or "").lower()
        if level in self._authority:
            return len(self._name_patterns) + self._authority.index(level)
        return None

    def is_governance(self, role: Role) -> bool:
        return self.rank(role) is not None

    def is_top_level(self, role: Role) -> bool:
        """The most senior rung (a CEO by default)."""
        return self.rank(role) == 0

    def is_coordinator(self, role: Role) -> bool:
        names = self._names(role)
        return any(name.lower() in names for name in self.coordinator_names)

    def is_product_role(self, role: Role) -> bool:
        names = self._names(role)
        return any(keyword.lower() in names for keyword in self.product_keywords)

    def best_governance_role(
        self, roles: Iterable[Role], *, exclude_id: str | None = None
    ) -> Role | None:
        """Highest-ranked governance role, ties broken by earliest creation."""
        candidates: list[tuple[int, datetime, str, Role]] = []
        for role in roles:
            if exclude_id and role.id == exclude_id:
                continue
            rank = self.rank(role)
            if rank is None:
                continue
            candidates.append((rank, _created(role), role.id, role))
        if not candidates:
            return None
        candidates.sort(key=lambda item: (item[0], item[1], item[2]))
        return candidates[0][3]

    def find_coordinator(self, roles: Iterable[Role]) -> Role | None:
        matches = [role for role in roles if self.is_coordinator(role)]
        if not matches:
            return None
        return min(matches, key=lambda role: (_created(role), role.id))
