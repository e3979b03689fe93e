"""
Derived figures for budgets, savings goals, accounts and the dashboard.

Everything here is a pure function of rows that were already loaded and
scoped to one user. Amounts are integer cents; percentages and rates are
floats.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional, Protocol

from models import AccountType, TransactionType
from periods import Period, trailing_window


class AccountRow(Protocol):
    id: int
    type: AccountType
    balance_cents: int
    is_active: bool


class TransactionRow(Protocol):
    amount_cents: int
    type: TransactionType
    date: date


@dataclass(frozen=True)
class BudgetProgress:
    spent_cents: int
    remaining_cents: int
    percentage_used: float
    is_at_risk: bool
    is_over_budget: bool


@dataclass(frozen=True)
class GoalProgress:
    progress: float
    remaining_cents: int
    months_to_goal: int
    is_overdue: bool


@dataclass(frozen=True)
class AccountStatus:
    available_balance_cents: int
    is_overdrawn: bool


@dataclass(frozen=True)
class AccountRollup:
    total_balance_cents: int
    liquid_balance_cents: int
    total_debt_cents: int
    account_count: int
    overdrawn_account_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class CashFlow:
    income_cents: float
    expenses_cents: float

    @property
    def net_cents(self) -> float:
        return self.income_cents - self.expenses_cents

    @property
    def savings_rate(self) -> float:
        if self.income_cents <= 0:
            return 0.0
        return self.net_cents / self.income_cents


@dataclass(frozen=True)
class DashboardSummary:
    cash_cents: int
    burn_cents: float
    runway_months: float
    today_spending_cents: int
    last_28_days_cents: int
    last_365_days_cents: int
    total_balance_cents: int
    liquid_balance_cents: int
    total_debt_cents: int
    account_count: int


def budget_progress(
    amount_cents: int, spent_cents: int, alert_threshold: float
) -> BudgetProgress:
    remaining = amount_cents - spent_cents
    if amount_cents <= 0:
        # Only reachable through legacy rows; creation requires a positive amount.
        return BudgetProgress(
            spent_cents=spent_cents,
            remaining_cents=remaining,
            percentage_used=0.0,
            is_at_risk=False,
            is_over_budget=spent_cents > 0,
        )
    usage = spent_cents / amount_cents
    return BudgetProgress(
        spent_cents=spent_cents,
        remaining_cents=remaining,
        percentage_used=usage * 100,
        is_at_risk=usage >= alert_threshold,
        is_over_budget=spent_cents > amount_cents,
    )


def months_to_goal(remaining_cents: int, monthly_contribution_cents: int) -> int:
    if remaining_cents <= 0 or monthly_contribution_cents <= 0:
        return 0
    return math.ceil(remaining_cents / monthly_contribution_cents)


def goal_progress(
    target_amount_cents: int,
    current_amount_cents: int,
    monthly_contribution_cents: int,
    deadline: Optional[date],
    is_completed: bool,
    *,
    today: date,
) -> GoalProgress:
    remaining = target_amount_cents - current_amount_cents
    progress = (
        current_amount_cents / target_amount_cents * 100
        if target_amount_cents > 0
        else 0.0
    )
    return GoalProgress(
        progress=progress,
        remaining_cents=remaining,
        months_to_goal=months_to_goal(remaining, monthly_contribution_cents),
        is_overdue=deadline is not None and deadline < today and not is_completed,
    )


def account_status(account_type: AccountType, balance_cents: int) -> AccountStatus:
    return AccountStatus(
        available_balance_cents=max(balance_cents, 0),
        is_overdrawn=account_type != AccountType.credit and balance_cents < 0,
    )


def account_rollup(accounts: Iterable[AccountRow]) -> AccountRollup:
    total = 0
    liquid = 0
    debt = 0
    count = 0
    overdrawn: list[int] = []
    for account in accounts:
        if not account.is_active:
            continue
        count += 1
        total += account.balance_cents
        if account.type == AccountType.credit:
            if account.balance_cents < 0:
                debt += -account.balance_cents
            continue
        liquid += account.balance_cents
        if account.balance_cents < 0:
            overdrawn.append(account.id)
    return AccountRollup(
        total_balance_cents=total,
        liquid_balance_cents=liquid,
        total_debt_cents=debt,
        account_count=count,
        overdrawn_account_ids=overdrawn,
    )


def expense_total_cents(
    transactions: Iterable[TransactionRow], period: Optional[Period] = None
) -> int:
    return sum(
        abs(t.amount_cents)
        for t in transactions
        if t.type == TransactionType.expense
        and (period is None or period.contains(t.date))
    )


def income_total_cents(
    transactions: Iterable[TransactionRow], period: Optional[Period] = None
) -> int:
    return sum(
        t.amount_cents
        for t in transactions
        if t.type == TransactionType.income
        and t.amount_cents > 0
        and (period is None or period.contains(t.date))
    )


def cash_flow(
    transactions: Iterable[TransactionRow], period: Period, *, months: float = 1
) -> CashFlow:
    rows = list(transactions)
    return CashFlow(
        income_cents=income_total_cents(rows, period) / months,
        expenses_cents=expense_total_cents(rows, period) / months,
    )


def burn_rate_cents(last_28_days_cents: int) -> float:
    return last_28_days_cents * (30 / 28)


def runway_months(cash_cents: int, burn_cents: float) -> float:
    if cash_cents <= 0 or burn_cents <= 0:
        return 0.0
    return cash_cents / burn_cents


def dashboard_summary(
    accounts: Iterable[AccountRow],
    transactions: Iterable[TransactionRow],
    *,
    today: date,
) -> DashboardSummary:
    rows = list(transactions)
    rollup = account_rollup(accounts)
    today_period = Period("today", today, today)
    last_28 = expense_total_cents(rows, trailing_window(28, today=today))
    last_365 = expense_total_cents(rows, trailing_window(365, today=today))
    burn = burn_rate_cents(last_28)
    cash = rollup.liquid_balance_cents
    return DashboardSummary(
        cash_cents=cash,
        burn_cents=burn,
        runway_months=runway_months(cash, burn),
        today_spending_cents=expense_total_cents(rows, today_period),
        last_28_days_cents=last_28,
        last_365_days_cents=last_365,
        total_balance_cents=rollup.total_balance_cents,
        liquid_balance_cents=rollup.liquid_balance_cents,
        total_debt_cents=rollup.total_debt_cents,
        account_count=rollup.account_count,
    )
