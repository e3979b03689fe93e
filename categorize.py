"""
Transaction categorization: LLM first, keyword heuristic as the fallback.

The heuristic needs nothing but the input, so a result is always produced.
Labels are the short names (Food, Transport, Bills, ...) and can be mapped
onto a user's own categories with ``resolve_category``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Protocol

from rapidfuzz.distance import Levenshtein

from llm_client import LLMClient, LLMFailure

logger = logging.getLogger(__name__)

LLM_LABELS = [
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Bills & Utilities",
    "Entertainment",
    "Healthcare",
    "Income",
    "Transfer",
    "Other",
]

LABEL_MAP = {
    "Food & Dining": "Food",
    "Transportation": "Transport",
    "Shopping": "Shopping",
    "Bills & Utilities": "Bills",
    "Entertainment": "Entertainment",
    "Healthcare": "Healthcare",
    "Income": "Income",
    "Transfer": "Transfer",
    "Other": "Other",
}

CONFIDENCE_MAP = {"high": 0.9, "medium": 0.7, "low": 0.5}

INCOME_KEYWORDS = ("salary", "payroll", "deposit")

# Checked in order; the first group with a hit wins.
KEYWORD_GROUPS: list[tuple[str, tuple[str, ...]]] = [
    ("Food", ("grocery", "restaurant", "food", "cafe", "starbucks", "mcdonald", "kfc")),
    ("Transport", ("gas", "fuel", "uber", "lyft", "taxi", "train", "bus", "parking")),
    ("Shopping", ("amazon", "walmart", "target", "shopping", "store", "mall")),
    ("Bills", ("electric", "water", "internet", "phone", "rent", "mortgage", "insurance")),
    ("Entertainment", ("movie", "netflix", "spotify", "cinema", "theater", "concert")),
    ("Healthcare", ("pharmacy", "doctor", "hospital", "medical", "dental")),
]

CATEGORIZATION_SCHEMA = {
    "type": "object",
    "properties": {
        "category": {"type": "string", "enum": LLM_LABELS},
        "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
        "explanation": {"type": "string", "maxLength": 100},
    },
    "required": ["category", "confidence", "explanation"],
}


@dataclass(frozen=True)
class TransactionText:
    description: str
    merchant: Optional[str]
    amount_cents: int


@dataclass(frozen=True)
class CategorizationResult:
    category: str
    confidence: float
    explanation: str
    source: Literal["llm", "heuristic"]

    @property
    def ai_categorized(self) -> bool:
        return self.source == "llm"


class NamedCategory(Protocol):
    id: int
    name: str


def heuristic_category(txn: TransactionText) -> CategorizationResult:
    text = f"{txn.description} {txn.merchant or ''}".lower()

    if txn.amount_cents > 0 or any(word in text for word in INCOME_KEYWORDS):
        return CategorizationResult(
            category="Income",
            confidence=0.6,
            explanation="Detected as income based on amount and keywords",
            source="heuristic",
        )

    for label, keywords in KEYWORD_GROUPS:
        hit = next((word for word in keywords if word in text), None)
        if hit:
            return CategorizationResult(
                category=label,
                confidence=0.7,
                explanation=f'Detected "{label}" category based on keywords: {hit}',
                source="heuristic",
            )

    return CategorizationResult(
        category="Other",
        confidence=0.3,
        explanation="Could not determine category from transaction details",
        source="heuristic",
    )


def _prompt(txn: TransactionText) -> str:
    direction = "income" if txn.amount_cents > 0 else "expense"
    dollars = abs(txn.amount_cents) / 100
    lines = [
        "Analyze this transaction and categorize it appropriately for personal "
        "finance tracking.",
        "",
        "Transaction Details:",
        f"- Description: {txn.description}",
    ]
    if txn.merchant:
        lines.append(f"- Merchant: {txn.merchant}")
    lines.append(f"- Amount: {direction} of ${dollars:.2f}")
    lines += [
        "",
        "Based on the transaction details, determine:",
        "1. The most appropriate category from these options: "
        + ", ".join(LLM_LABELS),
        "2. Your confidence level (high, medium, low)",
        "3. A brief explanation for your choice",
    ]
    return "\n".join(lines)


def categorize_transaction(
    txn: TransactionText, client: Optional[LLMClient]
) -> CategorizationResult:
    if client is None or not client.is_configured:
        return heuristic_category(txn)

    result = client.query_structured(_prompt(txn), CATEGORIZATION_SCHEMA)
    if isinstance(result, LLMFailure):
        logger.info(f"categorize_fallback: reason={result.reason}")
        return heuristic_category(txn)

    payload = result.content
    if not isinstance(payload, dict):
        logger.info("categorize_fallback: reason=not_an_object")
        return heuristic_category(txn)
    confidence = CONFIDENCE_MAP.get(str(payload.get("confidence", "")).lower())
    if confidence is None:
        logger.info("categorize_fallback: reason=unknown_confidence")
        return heuristic_category(txn)

    return CategorizationResult(
        category=LABEL_MAP.get(str(payload.get("category", "")), "Other"),
        confidence=confidence,
        explanation=str(payload.get("explanation") or "")[:200],
        source="llm",
    )


def categorize_many(
    items: Iterable[TransactionText], client: Optional[LLMClient]
) -> list[CategorizationResult]:
    # The client spaces requests itself, so a plain loop respects the rate limit.
    return [categorize_transaction(item, client) for item in items]


def resolve_category(
    label: str, categories: Iterable[NamedCategory]
) -> Optional[NamedCategory]:
    """Find the user's category that a label refers to.

    Tries a case-insensitive exact match, then a unique prefix match, then a
    unique category within one edit. Ambiguous or absent matches give None.
    """
    wanted = label.strip().lower()
    if not wanted:
        return None
    options = list(categories)

    for category in options:
        if (category.name or "").strip().lower() == wanted:
            return category

    prefixed = [
        c for c in options if (c.name or "").strip().lower().startswith(wanted)
    ]
    if len(prefixed) == 1:
        return prefixed[0]
    if len(prefixed) > 1:
        return None

    best_distance: Optional[int] = None
    best: list[NamedCategory] = []
    for category in options:
        dist = int(Levenshtein.distance(wanted, (category.name or "").strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None
