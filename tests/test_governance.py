from datetime import UTC, datetime, timedelta

from axis.classifier import ExecutionLane, KeywordClassifier
from axis.governance import GovernancePolicy
from axis.models import AuthorityLevel, Role

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _role(name: str, *, level: str = AuthorityLevel.ADVISOR.value, age: int = 0, display: str | None = None) -> Role:
    return Role(
        id=f"role-{name.lower().replace(' ', '-')}",
        company_id="company",
        name=name,
        display_name=display,
        authority_level=level,
        created_at=NOW + timedelta(minutes=age),
    )


def test_name_ranking_beats_authority_level() -> None:
    policy = GovernancePolicy()
    ceo = _role("CEO", age=5)
    chief_of_staff = _role("Chief of Staff")
    executive = _role("VP Sales", level=AuthorityLevel.EXECUTIVE.value)
    analyst = _role("Analyst")

    assert policy.best_governance_role([analyst, executive, chief_of_staff, ceo]) is ceo
    assert policy.best_governance_role([analyst, executive, chief_of_staff]) is chief_of_staff
    assert policy.best_governance_role([analyst, executive]) is executive
    assert policy.best_governance_role([analyst]) is None
    assert policy.is_top_level(ceo)
    assert not policy.is_governance(analyst)


def test_ceo_pattern_needs_word_boundary() -> None:
    policy = GovernancePolicy()
    assert policy.is_governance(_role("ceo"))
    assert policy.is_governance(_role("Lead", display="Chief Executive Officer"))
    assert not policy.is_governance(_role("Onceover Lead"))


def test_ties_break_on_creation_then_exclusion() -> None:
    policy = GovernancePolicy()
    older = _role("Executive A", level=AuthorityLevel.EXECUTIVE.value, age=0)
    newer = _role("Executive B", level=AuthorityLevel.EXECUTIVE.value, age=10)

    assert policy.best_governance_role([newer, older]) is older
    assert policy.best_governance_role([newer, older], exclude_id=older.id) is newer


def test_policy_is_configurable() -> None:
    policy = GovernancePolicy(name_ranking=[r"\bfounder\b"], authority_levels=[])
    assert policy.is_governance(_role("Founder"))
    assert not policy.is_governance(_role("CEO"))


def test_coordinator_and_product_roles() -> None:
    policy = GovernancePolicy()
    early = _role("Chief of Staff", age=0)
    late = _role("Chief of Staff", age=3, display="Deputy")
    assert policy.find_coordinator([late, early]) is early
    assert policy.find_coordinator([_role("Analyst")]) is None
    assert policy.is_product_role(_role("Head of Product"))
    assert not policy.is_product_role(_role("Analyst"))


def test_execution_lanes() -> None:
    classifier = KeywordClassifier()
    assert classifier.execution_lane("Build the signup API endpoint").lane == ExecutionLane.DEVELOPMENT
    assert classifier.execution_lane("Plan the newsletter campaign").lane == ExecutionLane.MARKETING
    assert classifier.execution_lane("Competitor research").lane == ExecutionLane.RESEARCH
    assert classifier.execution_lane("Tidy up the notes").lane == ExecutionLane.RESEARCH


def test_external_routing_and_verification() -> None:
    classifier = KeywordClassifier()
    assert classifier.routes_externally("Implement the billing integration")
    assert classifier.routes_externally("Launch the social media campaign")
    assert not classifier.routes_externally("Research competitor pricing")
    assert classifier.requires_verification("Run migration", "Execute migration on prod")
    assert not classifier.requires_verification("Pricing analysis", "Compare tiers")
