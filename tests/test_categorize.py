from dataclasses import dataclass

from categorize import (
    TransactionText,
    categorize_many,
    categorize_transaction,
    heuristic_category,
    resolve_category,
)
from llm_client import LLMFailure, LLMSuccess
from services import DEFAULT_CATEGORIES


@dataclass
class NamedRow:
    id: int
    name: str


class FakeLLM:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.prompts = []

    @property
    def is_configured(self) -> bool:
        return True

    def query_structured(self, prompt, schema, context=None):
        self.prompts.append(prompt)
        return self.results.pop(0)


def defaults():
    return [NamedRow(i, name) for i, (name, _, _) in enumerate(DEFAULT_CATEGORIES, 1)]


def test_keyword_heuristic_picks_first_matching_group() -> None:
    result = heuristic_category(TransactionText("Uber ride to airport", None, -2_350))

    assert result.category == "Transport"
    assert result.confidence == 0.7
    assert result.source == "heuristic"
    assert not result.ai_categorized
    assert "uber" in result.explanation


def test_positive_amount_or_payroll_is_income() -> None:
    assert heuristic_category(TransactionText("Refund", None, 1_000)).category == "Income"
    payroll = heuristic_category(TransactionText("ACME PAYROLL", None, -1))
    assert payroll.category == "Income"
    assert payroll.confidence == 0.6


def test_unmatched_text_is_other() -> None:
    result = heuristic_category(TransactionText("Misc 123", "XYZ", -900))
    assert result.category == "Other"
    assert result.confidence == 0.3


def test_llm_result_is_mapped_to_short_label() -> None:
    llm = FakeLLM(
        LLMSuccess(
            {"category": "Food & Dining", "confidence": "high", "explanation": "Coffee"}
        )
    )

    result = categorize_transaction(TransactionText("Blue Bottle", "Blue Bottle", -650), llm)

    assert result.category == "Food"
    assert result.confidence == 0.9
    assert result.ai_categorized
    assert "Blue Bottle" in llm.prompts[0]
    assert "expense of $6.50" in llm.prompts[0]


def test_llm_failure_or_bad_payload_falls_back() -> None:
    llm = FakeLLM(
        LLMFailure("http_503"),
        LLMSuccess(["not", "an", "object"]),
        LLMSuccess({"category": "Shopping", "confidence": "certain"}),
    )
    items = [
        TransactionText("Netflix", None, -1_599),
        TransactionText("Amazon order", None, -4_200),
        TransactionText("Pharmacy", None, -1_100),
    ]

    results = categorize_many(items, llm)

    assert [r.category for r in results] == ["Entertainment", "Shopping", "Healthcare"]
    assert all(r.source == "heuristic" for r in results)


def test_unconfigured_client_is_not_called() -> None:
    class Unconfigured(FakeLLM):
        @property
        def is_configured(self) -> bool:
            return False

    llm = Unconfigured()
    result = categorize_transaction(TransactionText("Spotify", None, -999), llm)

    assert result.category == "Entertainment"
    assert llm.prompts == []


def test_resolve_category_exact_prefix_and_near_miss() -> None:
    categories = defaults()

    assert resolve_category("shopping", categories).name == "Shopping"
    assert resolve_category("Food", categories).name == "Food & Dining"
    assert resolve_category("Transport", categories).name == "Transportation"
    assert resolve_category("Bills", categories).name == "Bills & Utilities"
    assert resolve_category("Helthcare", categories).name == "Healthcare"


def test_resolve_category_gives_none_when_absent_or_ambiguous() -> None:
    categories = defaults() + [NamedRow(99, "Food Delivery")]

    assert resolve_category("Income", categories) is None
    assert resolve_category("Food", categories) is None
    assert resolve_category("", categories) is None
