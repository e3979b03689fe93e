from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BusinessRuleError, ConflictError
from models import AccountType, BudgetPeriod, Category, TransactionType
from schemas import AccountIn, BudgetIn, BudgetUpdate, TransactionIn
from services import AccountService, BudgetFilters, BudgetService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_category(session, name="Groceries", user_id="user-a"):
    category = Category(user_id=user_id, name=name)
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


def monthly(category_id, amount_cents=50_000, **extra):
    return BudgetIn(
        category_id=category_id,
        name="Food budget",
        amount_cents=amount_cents,
        period=BudgetPeriod.monthly,
        start_date=date(2026, 3, 1),
        **extra,
    )


def test_one_active_budget_per_category_and_period() -> None:
    session = make_session()
    food = make_category(session)
    budgets = BudgetService(session, "user-a")

    first = budgets.create(monthly(food.id))
    with pytest.raises(BusinessRuleError):
        budgets.create(monthly(food.id))

    weekly = budgets.create(
        BudgetIn(
            category_id=food.id,
            name="Weekly food",
            amount_cents=12_000,
            period=BudgetPeriod.weekly,
            start_date=date(2026, 3, 2),
        )
    )
    assert weekly.id != first.id

    budgets.update(first.id, BudgetUpdate(is_active=False))
    replacement = budgets.create(monthly(food.id))
    assert replacement.is_active

    with pytest.raises(BusinessRuleError):
        budgets.update(first.id, BudgetUpdate(is_active=True))


def test_other_users_budgets_do_not_collide() -> None:
    session = make_session()
    mine = make_category(session)
    theirs = make_category(session, user_id="user-b")
    BudgetService(session, "user-b").create(monthly(theirs.id))

    budget = BudgetService(session, "user-a").create(monthly(mine.id))
    assert budget.user_id == "user-a"

    with pytest.raises(BusinessRuleError, match="Invalid category"):
        BudgetService(session, "user-a").create(monthly(theirs.id))


def test_update_checks_version_and_window() -> None:
    session = make_session()
    food = make_category(session)
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(monthly(food.id))

    updated = budgets.update(
        budget.id, BudgetUpdate(amount_cents=60_000, expected_version=1)
    )
    assert updated.amount_cents == 60_000
    assert updated.version == 2

    with pytest.raises(ConflictError):
        budgets.update(budget.id, BudgetUpdate(name="Stale", expected_version=1))
    with pytest.raises(ValueError):
        budgets.update(budget.id, BudgetUpdate(end_date=date(2026, 2, 1)))


def test_end_before_start_is_rejected_on_create() -> None:
    with pytest.raises(ValueError):
        BudgetIn(
            category_id=1,
            name="Backwards",
            amount_cents=1_000,
            start_date=date(2026, 3, 10),
            end_date=date(2026, 3, 1),
        )


def test_spent_counts_only_expenses_in_category_and_window() -> None:
    session = make_session()
    food = make_category(session)
    fun = make_category(session, name="Fun")
    account = AccountService(session, "user-a").create(
        AccountIn(name="Main", type=AccountType.checking, balance_cents=100_000)
    )
    txns = TransactionService(session, "user-a")

    def add(amount_cents, day, category_id=food.id, kind=TransactionType.expense):
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=category_id,
                description="Row",
                amount_cents=amount_cents,
                type=kind,
                date=day,
            )
        )

    add(12_000, date(2026, 3, 3))
    add(8_000, date(2026, 3, 20))
    add(5_000, date(2026, 2, 28))
    add(9_999, date(2026, 3, 5), category_id=fun.id)
    add(3_000, date(2026, 3, 6), kind=TransactionType.income)
    add(7_000, date(2026, 4, 2))

    budgets = BudgetService(session, "user-a")
    budget = budgets.create(monthly(food.id, end_date=date(2026, 3, 31)))

    progress = budgets.progress(budget, today=date(2026, 4, 15))
    assert progress.spent_cents == 20_000
    assert progress.remaining_cents == 30_000
    assert progress.percentage_used == pytest.approx(40.0)
    assert not progress.is_at_risk


def test_open_ended_budget_accumulates_through_today() -> None:
    session = make_session()
    food = make_category(session)
    account = AccountService(session, "user-a").create(
        AccountIn(name="Main", type=AccountType.checking, balance_cents=100_000)
    )
    txns = TransactionService(session, "user-a")
    for day in (date(2026, 3, 2), date(2026, 4, 10), date(2026, 5, 1)):
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=food.id,
                description="Shop",
                amount_cents=15_000,
                type=TransactionType.expense,
                date=day,
            )
        )
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(monthly(food.id, alert_threshold=0.5))

    progress = budgets.progress(budget, today=date(2026, 4, 30))
    assert progress.spent_cents == 30_000
    assert progress.is_at_risk


def test_list_filters_by_period_and_active() -> None:
    session = make_session()
    food = make_category(session)
    fun = make_category(session, name="Fun")
    budgets = BudgetService(session, "user-a")
    food_budget = budgets.create(monthly(food.id))
    budgets.create(monthly(fun.id))
    budgets.update(food_budget.id, BudgetUpdate(is_active=False))

    active = budgets.list_all(BudgetFilters(active_only=True))
    monthly_all = budgets.list_all(BudgetFilters(period=BudgetPeriod.monthly))

    assert [b.category_id for b in active] == [fun.id]
    assert len(monthly_all) == 2
