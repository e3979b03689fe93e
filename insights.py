"""
Insight generators and the natural-language query helpers.

Each generator reads a ``FinancialSnapshot`` (rows already scoped to one
user) and returns ``InsightDraft`` records. Confidence values are fixed per
rule; the spending generator may ask the LLM first and falls back to the
rule-based ranking.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Optional, Protocol

from aggregation import account_rollup, cash_flow
from errors import InvalidInputError
from llm_client import LLMClient, LLMFailure
from models import InsightPriority, InsightType, TransactionType
from periods import trailing_window

logger = logging.getLogger(__name__)

ALL_INSIGHT_TYPES = [
    InsightType.spending_pattern,
    InsightType.budget_recommendation,
    InsightType.anomaly_detection,
    InsightType.savings_opportunity,
]

SMALL_PURCHASE_CENTS = 500


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    description: str
    merchant: Optional[str]
    amount_cents: int
    type: TransactionType
    date: date
    category_name: Optional[str] = None


@dataclass(frozen=True)
class BudgetSpend:
    id: int
    name: str
    category_name: Optional[str]
    amount_cents: int
    spent_cents: int
    alert_threshold: float

    @property
    def label(self) -> str:
        return self.category_name or self.name

    @property
    def usage_rate(self) -> float:
        if self.amount_cents <= 0:
            return 0.0
        return self.spent_cents / self.amount_cents


class GoalRow(Protocol):
    name: str
    category: Optional[str]


@dataclass
class FinancialSnapshot:
    today: date
    transactions: list[LedgerEntry] = field(default_factory=list)
    budgets: list[BudgetSpend] = field(default_factory=list)
    accounts: list[Any] = field(default_factory=list)
    goals: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class InsightDraft:
    type: InsightType
    title: str
    content: str
    confidence: float
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> InsightPriority:
        return insight_priority(self.confidence)


def insight_priority(confidence: float) -> InsightPriority:
    if confidence > 0.8:
        return InsightPriority.high
    if confidence > 0.6:
        return InsightPriority.medium
    return InsightPriority.low


def _money(cents: float) -> str:
    return f"${cents / 100:,.2f}"


def _expenses(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    return [e for e in entries if e.type == TransactionType.expense]


def spending_by_category(entries: Iterable[LedgerEntry]) -> list[tuple[str, int]]:
    totals: dict[str, int] = {}
    for entry in _expenses(entries):
        name = entry.category_name or "Uncategorized"
        totals[name] = totals.get(name, 0) + abs(entry.amount_cents)
    return sorted(totals.items(), key=lambda item: (-item[1], item[0]))


def spending_insights(snapshot: FinancialSnapshot) -> list[InsightDraft]:
    if len(snapshot.transactions) < 5:
        return []

    top = spending_by_category(snapshot.transactions)[:3]
    if not top:
        return []

    top_name, top_cents = top[0]
    insights = [
        InsightDraft(
            type=InsightType.spending_pattern,
            title=f"{top_name} is Your Biggest Expense",
            content=(
                f"You've spent {_money(top_cents)} on {top_name} recently, making it "
                "your largest expense category."
            ),
            confidence=0.9,
            data={"category": top_name, "amount_cents": top_cents, "ranking": 1},
        )
    ]

    if len(top) >= 2:
        share = top_cents / sum(cents for _, cents in top) * 100
        if share > 60:
            insights.append(
                InsightDraft(
                    type=InsightType.spending_pattern,
                    title="Concentrated Spending Pattern",
                    content=(
                        f"{share:.0f}% of your spending is in {top_name}. Consider "
                        "diversifying your expenses for better financial balance."
                    ),
                    confidence=0.8,
                    data={"category": top_name, "percentage": share},
                )
            )
    return insights


SPENDING_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["spending_pattern"]},
            "title": {"type": "string", "maxLength": 50},
            "content": {"type": "string", "maxLength": 200},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "data": {"type": "object"},
        },
        "required": ["type", "title", "content", "confidence"],
    },
}


def _spending_prompt(entries: list[LedgerEntry]) -> str:
    lines = [
        f"{e.date.isoformat()}: {e.description} - {_money(abs(e.amount_cents))} "
        f"({e.category_name or 'Uncategorized'})"
        for e in entries[:50]
    ]
    return (
        "Analyze this spending data and identify key patterns and insights:\n\n"
        "Transactions (last 90 days):\n"
        + "\n".join(lines)
        + "\n\nIdentify 2-3 key spending patterns or insights. Focus on top "
        "spending categories, spending trends, unusual patterns and potential "
        "areas for optimization."
    )


def llm_spending_insights(
    snapshot: FinancialSnapshot, client: LLMClient
) -> Optional[list[InsightDraft]]:
    """LLM-written spending patterns, or None when the LLM result is unusable."""
    result = client.query_structured(
        _spending_prompt(snapshot.transactions), SPENDING_SCHEMA
    )
    if isinstance(result, LLMFailure):
        logger.info(f"spending_insights_fallback: reason={result.reason}")
        return None
    if not isinstance(result.content, list):
        logger.info("spending_insights_fallback: reason=not_a_list")
        return None

    drafts: list[InsightDraft] = []
    for item in result.content:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        content = str(item.get("content") or "").strip()
        try:
            confidence = float(item.get("confidence"))
        except (TypeError, ValueError):
            continue
        if not title or not content or not 0 <= confidence <= 1:
            continue
        data = item.get("data")
        drafts.append(
            InsightDraft(
                type=InsightType.spending_pattern,
                title=title[:120],
                content=content,
                confidence=confidence,
                data=data if isinstance(data, dict) else {},
            )
        )
    return drafts or None


def budget_insights(snapshot: FinancialSnapshot) -> list[InsightDraft]:
    if not snapshot.budgets:
        return [
            InsightDraft(
                type=InsightType.budget_recommendation,
                title="Start Budgeting Today",
                content=(
                    "You haven't set up any budgets yet. Creating budgets helps you "
                    "control spending and reach your financial goals."
                ),
                confidence=0.95,
                data={"action": "create_first_budget"},
            )
        ]

    insights: list[InsightDraft] = []
    for budget in snapshot.budgets:
        if budget.amount_cents <= 0 or budget.usage_rate < budget.alert_threshold:
            continue
        remaining = budget.amount_cents - budget.spent_cents
        insights.append(
            InsightDraft(
                type=InsightType.budget_recommendation,
                title=f"{budget.label} Budget Alert",
                content=(
                    f"You've used {budget.usage_rate * 100:.0f}% of your "
                    f"{budget.label} budget. Only {_money(remaining)} remaining."
                ),
                confidence=0.9,
                data={
                    "budget_id": budget.id,
                    "usage_rate": budget.usage_rate,
                    "remaining_cents": remaining,
                    "category": budget.label,
                },
            )
        )

    under_used = [
        b for b in snapshot.budgets if b.amount_cents > 0 and b.usage_rate < 0.3
    ]
    if under_used:
        count = len(under_used)
        insights.append(
            InsightDraft(
                type=InsightType.budget_recommendation,
                title="Consider Adjusting Budgets",
                content=(
                    f"You have {count} budget{'s' if count > 1 else ''} that "
                    f"{'are' if count > 1 else 'is'} under 30% utilized. Consider "
                    "reallocating funds to other categories."
                ),
                confidence=0.7,
                data={"under_utilized_count": count},
            )
        )
    return insights


def anomaly_insights(snapshot: FinancialSnapshot) -> list[InsightDraft]:
    expenses = _expenses(snapshot.transactions)
    if len(expenses) < 10:
        return []

    amounts = [abs(e.amount_cents) for e in expenses]
    mean = sum(amounts) / len(amounts)
    stddev = math.sqrt(sum((a - mean) ** 2 for a in amounts) / len(amounts))
    cutoff = mean + 2 * stddev

    insights: list[InsightDraft] = []
    outliers = [e for e in expenses if abs(e.amount_cents) > cutoff]
    for entry in outliers[:2]:
        amount = abs(entry.amount_cents)
        insights.append(
            InsightDraft(
                type=InsightType.anomaly_detection,
                title="Unusual Large Expense",
                content=(
                    f'You spent {_money(amount)} on "{entry.description}" - '
                    "significantly higher than your average transaction of "
                    f"{_money(mean)}."
                ),
                confidence=0.8,
                data={
                    "transaction_id": entry.id,
                    "amount_cents": amount,
                    "average_amount_cents": mean,
                    "date": entry.date.isoformat(),
                    "merchant": entry.merchant,
                },
            )
        )

    small = [a for a in amounts if a < SMALL_PURCHASE_CENTS]
    if len(small) > len(expenses) * 0.3:
        small_total = sum(small)
        insights.append(
            InsightDraft(
                type=InsightType.anomaly_detection,
                title="Frequent Small Purchases",
                content=(
                    f"{len(small)} transactions under {_money(SMALL_PURCHASE_CENTS)} "
                    f"total {_money(small_total)}. Consider tracking these more "
                    "carefully."
                ),
                confidence=0.6,
                data={
                    "small_transaction_count": len(small),
                    "small_total_cents": small_total,
                },
            )
        )
    return insights


def has_emergency_goal(goals: Iterable[GoalRow]) -> bool:
    for goal in goals:
        if (goal.category or "").strip().lower() in {"emergency", "essential"}:
            return True
        if "emergency" in (goal.name or "").lower():
            return True
    return False


def savings_insights(snapshot: FinancialSnapshot) -> list[InsightDraft]:
    flow = cash_flow(
        snapshot.transactions, trailing_window(90, today=snapshot.today), months=3
    )
    monthly_income = flow.income_cents
    monthly_expenses = flow.expenses_cents
    rate = flow.savings_rate

    insights: list[InsightDraft] = []
    if monthly_income > 0 and rate < 0.1:
        insights.append(
            InsightDraft(
                type=InsightType.savings_opportunity,
                title="Low Savings Rate Detected",
                content=(
                    f"Your current savings rate is {rate * 100:.1f}%. Aim for at "
                    "least 20% to build wealth faster."
                ),
                confidence=0.85,
                data={"savings_rate": rate, "target_rate": 0.2},
            )
        )
    elif rate > 0.3:
        insights.append(
            InsightDraft(
                type=InsightType.savings_opportunity,
                title="Excellent Savings Rate!",
                content=(
                    f"You're saving {rate * 100:.1f}% of your income. Keep up the "
                    "great work!"
                ),
                confidence=0.9,
                data={"savings_rate": rate},
            )
        )

    rollup = account_rollup(snapshot.accounts)
    recommended = monthly_expenses * 3
    if not has_emergency_goal(snapshot.goals) and rollup.liquid_balance_cents < recommended:
        insights.append(
            InsightDraft(
                type=InsightType.savings_opportunity,
                title="Build Your Emergency Fund",
                content=(
                    "Consider saving 3-6 months of expenses "
                    f"({_money(recommended)}) for emergencies. You currently have "
                    f"{_money(rollup.liquid_balance_cents)}."
                ),
                confidence=0.9,
                data={
                    "recommended_amount_cents": recommended,
                    "current_balance_cents": rollup.liquid_balance_cents,
                },
            )
        )

    if rollup.total_debt_cents > 0 and monthly_income > 0:
        ratio = rollup.total_debt_cents / monthly_income
        if ratio > 0.2:
            insights.append(
                InsightDraft(
                    type=InsightType.savings_opportunity,
                    title="Consider Debt Payoff Strategy",
                    content=(
                        f"Your debt-to-income ratio is {ratio * 100:.1f}%. Focus on "
                        "paying down high-interest debt to improve your financial "
                        "health."
                    ),
                    confidence=0.8,
                    data={
                        "total_debt_cents": rollup.total_debt_cents,
                        "debt_to_income_ratio": ratio,
                    },
                )
            )
    return insights


def parse_insight_types(value: Optional[str]) -> list[InsightType]:
    if value is None or value == "" or value == "all":
        return list(ALL_INSIGHT_TYPES)
    try:
        return [InsightType(value)]
    except ValueError as exc:
        raise InvalidInputError(f"Unknown insight type: {value}") from exc


def generate_insights(
    snapshot: FinancialSnapshot,
    types: Iterable[InsightType],
    client: Optional[LLMClient] = None,
) -> list[InsightDraft]:
    wanted = set(types)
    insights: list[InsightDraft] = []

    if InsightType.spending_pattern in wanted:
        drafts = None
        if (
            client is not None
            and client.is_configured
            and len(snapshot.transactions) >= 10
        ):
            drafts = llm_spending_insights(snapshot, client)
        insights.extend(drafts if drafts is not None else spending_insights(snapshot))
    if InsightType.budget_recommendation in wanted:
        insights.extend(budget_insights(snapshot))
    if InsightType.anomaly_detection in wanted:
        insights.extend(anomaly_insights(snapshot))
    if InsightType.savings_opportunity in wanted:
        insights.extend(savings_insights(snapshot))

    return sorted(insights, key=lambda i: i.confidence, reverse=True)


# Natural-language queries

QUERY_INTENTS: list[tuple[str, tuple[str, ...]]] = [
    ("spending_analysis", ("spend", "expense", "cost")),
    ("budget_management", ("budget", "limit", "track")),
    ("savings_planning", ("save", "saving", "goal")),
    ("account_overview", ("balance", "account", "money")),
    ("financial_advice", ("advice", "recommend", "should")),
]


def classify_query_intent(query: str) -> str:
    lowered = query.lower()
    for intent, keywords in QUERY_INTENTS:
        if any(word in lowered for word in keywords):
            return intent
    return "general_inquiry"


def build_query_context(snapshot: FinancialSnapshot) -> dict[str, Any]:
    window = trailing_window(30, today=snapshot.today)
    flow = cash_flow(snapshot.transactions, window)
    rollup = account_rollup(snapshot.accounts)
    recent = sorted(
        (e for e in snapshot.transactions if window.contains(e.date)),
        key=lambda e: (e.date, e.id),
        reverse=True,
    )[:10]
    return {
        "total_balance_cents": rollup.total_balance_cents,
        "monthly_income_cents": flow.income_cents,
        "monthly_expenses_cents": flow.expenses_cents,
        "net_flow_cents": flow.net_cents,
        "savings_rate": flow.savings_rate,
        "budgets_count": len(snapshot.budgets),
        "budget_spend_cents": sum(b.spent_cents for b in snapshot.budgets),
        "goals_count": len(snapshot.goals),
        "recent_transactions": [
            {
                "date": e.date.isoformat(),
                "description": e.description,
                "amount_cents": e.amount_cents,
                "type": e.type.value,
                "category": e.category_name,
            }
            for e in recent
        ],
        "accounts": [
            {
                "name": a.name,
                "type": a.type.value,
                "balance_cents": a.balance_cents,
            }
            for a in snapshot.accounts
        ],
    }


def render_query_prompt(query: str, context: dict[str, Any]) -> str:
    lines = ["Financial Context:"]
    lines.append(f"- Total Account Balance: {_money(context['total_balance_cents'])}")
    lines.append(f"- Income (last 30 days): {_money(context['monthly_income_cents'])}")
    lines.append(
        f"- Expenses (last 30 days): {_money(context['monthly_expenses_cents'])}"
    )
    net = context["net_flow_cents"]
    lines.append(f"- Net Cash Flow: {'+' if net >= 0 else '-'}{_money(abs(net))}")
    lines.append(f"- Savings Rate: {context['savings_rate'] * 100:.1f}%")
    lines.append(f"- Active Budgets: {context['budgets_count']}")
    lines.append(f"- Savings Goals: {context['goals_count']}")
    return (
        "You are a helpful financial assistant. Analyze the user's query and "
        "provide a helpful, accurate response based on their financial data.\n\n"
        f'User Query: "{query}"\n\n'
        + "\n".join(lines)
        + "\n\nGuidelines for responding:\n"
        "- Be concise but informative (aim for 2-4 sentences)\n"
        "- Use specific numbers from their data when relevant\n"
        "- Always format currency amounts properly (e.g., $1,234.56)\n"
        "- If the data doesn't support a definitive answer, say so clearly\n"
        "- If they ask for advice, be helpful but conservative"
    )
