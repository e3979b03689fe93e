from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BusinessRuleError, NotFoundError
from models import AccountType, Budget, Transaction, TransactionType
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
)
from services import (
    DEFAULT_CATEGORIES,
    AccountService,
    BudgetService,
    CategoryService,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_defaults_are_seeded_once_per_user() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")

    first = categories.list_all()
    second = categories.list_all()

    assert len(first) == len(DEFAULT_CATEGORIES) == 10
    assert len(second) == 10
    assert all(c.is_default for c in first)
    assert CategoryService(session, "user-b").list_all()[0].user_id == "user-b"


def test_names_are_unique_case_insensitively() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")
    categories.create(CategoryIn(name="Pets"))

    with pytest.raises(BusinessRuleError):
        categories.create(CategoryIn(name="pets"))

    other = categories.create(CategoryIn(name="Garden"))
    with pytest.raises(BusinessRuleError):
        categories.update(other.id, CategoryUpdate(name="PETS"))

    renamed = categories.update(other.id, CategoryUpdate(name="Garden ", color="#00FF00"))
    assert renamed.name == "Garden"
    assert renamed.color == "#00FF00"


def test_foreign_category_is_not_found() -> None:
    session = make_session()
    category = CategoryService(session, "user-a").create(CategoryIn(name="Pets"))

    with pytest.raises(NotFoundError):
        CategoryService(session, "user-b").delete(category.id)


def test_delete_blocked_by_active_budget() -> None:
    session = make_session()
    category = CategoryService(session, "user-a").create(CategoryIn(name="Pets"))
    BudgetService(session, "user-a").create(
        BudgetIn(
            category_id=category.id,
            name="Pet food",
            amount_cents=10_000,
            start_date=date(2026, 3, 1),
        )
    )

    with pytest.raises(BusinessRuleError):
        CategoryService(session, "user-a").delete(category.id)


def test_delete_detaches_transactions_and_drops_inactive_budgets() -> None:
    session = make_session()
    categories = CategoryService(session, "user-a")
    category = categories.create(CategoryIn(name="Pets"))
    account = AccountService(session, "user-a").create(
        AccountIn(name="Main", type=AccountType.checking, balance_cents=50_000)
    )
    txn = TransactionService(session, "user-a").create(
        TransactionIn(
            account_id=account.id,
            category_id=category.id,
            description="Vet",
            amount_cents=8_000,
            type=TransactionType.expense,
            date=date(2026, 3, 4),
        )
    )
    budgets = BudgetService(session, "user-a")
    budget = budgets.create(
        BudgetIn(
            category_id=category.id,
            name="Pet costs",
            amount_cents=10_000,
            start_date=date(2026, 3, 1),
        )
    )
    budgets.update(budget.id, BudgetUpdate(is_active=False))

    categories.delete(category.id)

    assert session.get(Transaction, txn.id).category_id is None
    assert session.scalar(select(func.count(Budget.id))) == 0
    assert AccountService(session, "user-a").get(account.id).balance_cents == 42_000
