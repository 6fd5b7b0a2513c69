from dataclasses import dataclass

from axis.evaluator import (
    claims_false_implementation,
    evaluate,
    extract_keywords,
    has_structure,
    is_pointer_only,
    keyword_coverage,
)
from axis.models import EvaluationResult


@dataclass
class PricingTask:
    description: str = "Write a pricing analysis for the subscription tiers"
    completion_criteria: str = "Compare competitor pricing and recommend tiers"


def test_empty_output_fails() -> None:
    result = evaluate(PricingTask(), "   ")
    assert result.result == EvaluationResult.FAIL
    assert result.reason == "Output is empty"


def test_short_output_fails() -> None:
    result = evaluate(PricingTask(), "x" * 50)
    assert result.result == EvaluationResult.FAIL
    assert "too short" in result.reason


def test_runtime_fail_wins(passing_output: str) -> None:
    result = evaluate(PricingTask(), passing_output, "fail", "missing tiers")
    assert result.result == EvaluationResult.FAIL
    assert "missing tiers" in result.reason


def test_pointer_only_output_fails() -> None:
    result = evaluate(PricingTask(), "See the attached document for the full pricing analysis.")
    assert result.result == EvaluationResult.FAIL
    assert "external files" in result.reason


def test_off_topic_output_fails() -> None:
    output = "Lorem ipsum dolor sit amet, consectetur adipiscing elit. " * 4
    result = evaluate(PricingTask(), output)
    assert result.result == EvaluationResult.FAIL
    assert "keyword coverage" in result.reason


def test_structured_on_topic_output_passes(passing_output: str) -> None:
    result = evaluate(PricingTask(), passing_output)
    assert result.passed
    assert "keyword coverage" in result.reason


def test_runtime_reason_is_kept_on_pass(passing_output: str) -> None:
    result = evaluate(PricingTask(), passing_output, "pass", "All criteria covered")
    assert result.result == EvaluationResult.PASS
    assert result.reason == "All criteria covered"


def test_runtime_unclear_stays_unclear(passing_output: str) -> None:
    result = evaluate(PricingTask(), passing_output, "unclear", "could not verify tiers")
    assert result.result == EvaluationResult.UNCLEAR


def test_unknown_verdict_is_treated_as_unclear(passing_output: str) -> None:
    result = evaluate(PricingTask(), passing_output, "maybe")
    assert result.result == EvaluationResult.UNCLEAR


def test_unstructured_output_needs_review() -> None:
    output = (
        "Pricing analysis: competitor pricing ranges widely, so we compare the subscription "
        "tiers and recommend three tiers. Write the price sheet next. " * 2
    )
    result = evaluate(PricingTask(), output)
    assert result.result == EvaluationResult.UNCLEAR
    assert "missing section headers" in result.reason


def test_false_implementation_claim_fails(passing_output: str) -> None:
    output = passing_output + "\nThe new pricing page has been deployed.\n"
    result = evaluate(PricingTask(), output)
    assert result.result == EvaluationResult.FAIL
    assert "cannot perform" in result.reason


def test_keyword_helpers() -> None:
    keywords = extract_keywords("Compare the competitor pricing, then compare again in 2024")
    assert keywords == ["compare", "competitor", "pricing"]
    assert keyword_coverage(keywords, "Competitor pricing only") == 2 / 3
    assert keyword_coverage([], "anything") == 1.0


def test_structure_and_pointer_helpers() -> None:
    assert has_structure("# One\ntext\n## Two\nmore")
    assert has_structure("- a\n- b\n- c\n1. d")
    assert not has_structure("just a paragraph")
    assert is_pointer_only("The plan is available at https://example.com/plan")
    assert not is_pointer_only("x" * 1300 + " see the attached file")
    assert claims_false_implementation("CRM updated with all leads")


def test_structured_output_mentioning_a_document_passes(passing_output) -> None:
    output = passing_output + "- Next step: check the pricing document with finance before launch.\n"

    result = evaluate(PricingTask(), output, "pass", "All criteria covered")

    assert result.result == EvaluationResult.PASS


def test_unstructured_pointer_with_filler_fails() -> None:
    output = (
        "Thanks for the assignment.\n"
        "I spent the afternoon on this one.\n"
        "Please check the shared folder for everything you need."
    )

    result = evaluate(PricingTask(), output, "pass")

    assert result.result == EvaluationResult.FAIL
    assert "external files" in result.reason
