from datetime import date

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BusinessRuleError, NotFoundError
from models import AccountType, Category, Transaction, TransactionType
from schemas import AccountIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    TransactionFilters,
    TransactionService,
    signed_amount,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def match_no_rows_on_update(session, table):
    @event.listens_for(session.get_bind(), "before_cursor_execute", retval=True)
    def rewrite(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith(f"UPDATE {table} SET"):
            statement = statement.replace(" WHERE ", " WHERE 1 = 0 AND ", 1)
        return statement, parameters


def make_account(session, user_id="user-a", balance_cents=10_000, name="Main"):
    return AccountService(session, user_id).create(
        AccountIn(name=name, type=AccountType.checking, balance_cents=balance_cents)
    )


def expense(account_id, amount_cents, description="Groceries", day=date(2026, 3, 1), **extra):
    return TransactionIn(
        account_id=account_id,
        description=description,
        amount_cents=amount_cents,
        type=TransactionType.expense,
        date=day,
        **extra,
    )


def test_signed_amount_negates_expenses_only() -> None:
    assert signed_amount(TransactionType.expense, 3_000) == -3_000
    assert signed_amount(TransactionType.income, 3_000) == 3_000
    assert signed_amount(TransactionType.transfer, -3_000) == 3_000


def test_create_and_delete_move_the_balance() -> None:
    session = make_session()
    account = make_account(session)
    accounts = AccountService(session, "user-a")
    txns = TransactionService(session, "user-a")

    txn = txns.create(expense(account.id, 3_000))

    assert txn.amount_cents == -3_000
    assert accounts.get(account.id).balance_cents == 7_000

    txns.delete(txn.id)

    assert accounts.get(account.id).balance_cents == 10_000
    with pytest.raises(NotFoundError):
        txns.get(txn.id)


def test_balance_change_bumps_account_version() -> None:
    session = make_session()
    account = make_account(session)
    TransactionService(session, "user-a").create(expense(account.id, 1_000))

    assert AccountService(session, "user-a").get(account.id).version == 2


def test_income_adds_to_balance() -> None:
    session = make_session()
    account = make_account(session, balance_cents=0)
    TransactionService(session, "user-a").create(
        TransactionIn(
            account_id=account.id,
            description="Salary",
            amount_cents=250_000,
            type=TransactionType.income,
            date=date(2026, 3, 1),
        )
    )

    assert AccountService(session, "user-a").get(account.id).balance_cents == 250_000


def test_update_amount_applies_only_the_difference() -> None:
    session = make_session()
    account = make_account(session)
    txns = TransactionService(session, "user-a")
    txn = txns.create(expense(account.id, 3_000))

    txns.update(txn.id, TransactionUpdate(amount_cents=5_000))

    assert AccountService(session, "user-a").get(account.id).balance_cents == 5_000


def test_update_moving_account_reverts_old_and_applies_new() -> None:
    session = make_session()
    first = make_account(session, name="First")
    second = make_account(session, balance_cents=20_000, name="Second")
    accounts = AccountService(session, "user-a")
    txns = TransactionService(session, "user-a")
    txn = txns.create(expense(first.id, 3_000))

    moved = txns.update(
        txn.id, TransactionUpdate(account_id=second.id, type=TransactionType.income)
    )

    assert moved.account_id == second.id
    assert moved.amount_cents == 3_000
    assert accounts.get(first.id).balance_cents == 10_000
    assert accounts.get(second.id).balance_cents == 23_000


def test_foreign_account_or_category_is_invalid() -> None:
    session = make_session()
    theirs = make_account(session, user_id="user-b")
    mine = make_account(session)
    foreign_category = Category(user_id="user-b", name="Theirs")
    session.add(foreign_category)
    session.commit()
    txns = TransactionService(session, "user-a")

    with pytest.raises(BusinessRuleError, match="Invalid account"):
        txns.create(expense(theirs.id, 1_000))
    with pytest.raises(BusinessRuleError, match="Invalid category"):
        txns.create(expense(mine.id, 1_000, category_id=foreign_category.id))

    assert AccountService(session, "user-b").get(theirs.id).balance_cents == 10_000


def test_foreign_transaction_is_not_found() -> None:
    session = make_session()
    account = make_account(session)
    txn = TransactionService(session, "user-a").create(expense(account.id, 1_000))

    with pytest.raises(NotFoundError):
        TransactionService(session, "user-b").get(txn.id)
    with pytest.raises(NotFoundError):
        TransactionService(session, "user-b").delete(txn.id)


def test_paginate_filters_sorts_and_counts() -> None:
    session = make_session()
    account = make_account(session, balance_cents=100_000)
    txns = TransactionService(session, "user-a")
    for day in range(1, 8):
        txns.create(
            expense(
                account.id,
                day * 100,
                description=f"Lunch {day}",
                day=date(2026, 3, day),
                merchant="Cafe Blue" if day % 2 else "Deli",
            )
        )
    txns.create(
        TransactionIn(
            account_id=account.id,
            description="Refund",
            amount_cents=900,
            type=TransactionType.income,
            date=date(2026, 3, 4),
        )
    )

    page = txns.paginate(
        TransactionFilters(type=TransactionType.expense), page=2, limit=3
    )
    assert page.total == 7
    assert page.pages == 3
    assert [t.description for t in page.items] == ["Lunch 4", "Lunch 3", "Lunch 2"]

    by_amount = txns.paginate(
        TransactionFilters(sort_by="amount", sort_order="asc"), limit=2
    )
    assert [t.amount_cents for t in by_amount.items] == [-700, -600]

    search = txns.paginate(TransactionFilters(query="cafe blue"))
    assert search.total == 4

    window = txns.paginate(
        TransactionFilters(start_date=date(2026, 3, 2), end_date=date(2026, 3, 3))
    )
    assert {t.description for t in window.items} == {"Lunch 2", "Lunch 3"}


def test_paginate_clamps_limit_and_rejects_unknown_sort() -> None:
    session = make_session()
    txns = TransactionService(session, "user-a")

    assert txns.paginate(limit=500).limit == 100
    assert txns.paginate(limit=0).limit == 1
    with pytest.raises(ValueError):
        txns.paginate(TransactionFilters(sort_by="balance"))
    with pytest.raises(ValueError):
        txns.paginate(TransactionFilters(sort_order="sideways"))


def test_create_is_rolled_back_when_balance_update_misses() -> None:
    session = make_session()
    account = make_account(session)
    match_no_rows_on_update(session, "accounts")

    with pytest.raises(NotFoundError):
        TransactionService(session, "user-a").create(expense(account.id, 3_000))

    assert session.scalar(select(func.count()).select_from(Transaction)) == 0
    fetched = AccountService(session, "user-a").get(account.id)
    assert fetched.balance_cents == 10_000
    assert fetched.version == 1


def test_delete_is_rolled_back_when_balance_update_misses() -> None:
    session = make_session()
    account = make_account(session)
    txns = TransactionService(session, "user-a")
    txn = txns.create(expense(account.id, 3_000))
    match_no_rows_on_update(session, "accounts")

    with pytest.raises(NotFoundError):
        txns.delete(txn.id)

    assert txns.get(txn.id).amount_cents == -3_000
    assert AccountService(session, "user-a").get(account.id).balance_cents == 7_000
