from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from aggregation import (
    AccountStatus,
    BudgetProgress,
    DashboardSummary,
    GoalProgress,
    account_status,
    budget_progress,
    dashboard_summary,
    goal_progress,
)
from categorize import (
    CategorizationResult,
    TransactionText,
    categorize_many,
    categorize_transaction,
    resolve_category,
)
from config import get_settings
from errors import (
    BusinessRuleError,
    ConflictError,
    DependencyError,
    InvalidInputError,
    NotFoundError,
)
from insights import (
    BudgetSpend,
    FinancialSnapshot,
    InsightDraft,
    LedgerEntry,
    build_query_context,
    classify_query_intent,
    generate_insights,
    parse_insight_types,
    render_query_prompt,
)
from llm_client import LLMClient, LLMFailure
from models import (
    AIInsight,
    AIQuery,
    Account,
    AccountType,
    Budget,
    BudgetPeriod,
    Category,
    GoalPriority,
    SavingsGoal,
    SavingsGoalContribution,
    Subscription,
    Transaction,
    TransactionType,
)
from periods import budget_window, local_today, trailing_window
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    ContributionIn,
    SavingsGoalIn,
    SavingsGoalUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    ("Food & Dining", "🍽️", "#FF6B6B"),
    ("Transportation", "🚗", "#4ECDC4"),
    ("Shopping", "🛍️", "#45B7D1"),
    ("Bills & Utilities", "💡", "#FFA07A"),
    ("Entertainment", "🎬", "#98D8C8"),
    ("Healthcare", "🏥", "#F7DC6F"),
    ("Education", "📚", "#BB8FCE"),
    ("Travel", "✈️", "#85C1E2"),
    ("Personal Care", "💅", "#F1948A"),
    ("Gifts & Donations", "🎁", "#F8C471"),
]

TRANSACTION_SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "description": Transaction.description,
    "merchant": Transaction.merchant,
    "created_at": Transaction.created_at,
}


def commit_or_conflict(session: Session) -> None:
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError(
            "Record was modified by another request; reload and retry"
        ) from exc


def check_version(expected: Optional[int], actual: int) -> None:
    if expected is not None and expected != actual:
        raise ConflictError(
            f"Version mismatch: expected {expected}, current is {actual}"
        )


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -abs(amount_cents)
    return abs(amount_cents)


@dataclass
class AccountFilters:
    type: Optional[AccountType] = None
    active_only: bool = True


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    sort_by: str = "date"
    sort_order: str = "desc"


@dataclass
class BudgetFilters:
    period: Optional[BudgetPeriod] = None
    active_only: bool = False


@dataclass
class GoalFilters:
    completed: Optional[bool] = None
    category: Optional[str] = None
    priority: Optional[GoalPriority] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, filters: Optional[AccountFilters] = None) -> list[Account]:
        filters = filters or AccountFilters()
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        if filters.type:
            stmt = stmt.where(Account.type == filters.type)
        if filters.active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=data.balance_cents,
            currency=data.currency.upper(),
            institution=data.institution,
            account_number=data.account_number,
            last_four=data.last_four,
            is_active=data.is_active,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(f"account_created: user={self.user_id} id={account.id}")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        check_version(data.expected_version, account.version)
        changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        for key, value in changes.items():
            if value is None and key in {
                "name",
                "type",
                "balance_cents",
                "currency",
                "is_active",
            }:
                continue
            if key == "name":
                value = value.strip()
            if key == "currency":
                value = value.upper()
            setattr(account, key, value)
        commit_or_conflict(self.session)
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        txn_count = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.account_id == account.id,
                )
            ).scalar_one()
            or 0
        )
        if txn_count:
            raise BusinessRuleError(
                f"Account has {txn_count} transaction(s); delete or move them first"
            )
        self.session.delete(account)
        commit_or_conflict(self.session)
        logger.info(f"account_deleted: user={self.user_id} id={account_id}")

    def status(self, account: Account) -> AccountStatus:
        return account_status(account.type, account.balance_cents)

    def adjust_balance(self, account_id: int, delta_cents: int) -> None:
        """Apply a balance change in the current unit of work without committing."""
        if delta_cents == 0:
            return
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(
                balance_cents=Account.balance_cents + delta_cents,
                version=Account.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Account")
        cached = self.session.identity_map.get(
            self.session.identity_key(Account, account_id)
        )
        if cached is not None:
            self.session.expire(cached, ["balance_cents", "version"])


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        categories = self.session.scalars(stmt).all()
        if categories:
            return categories
        self.seed_defaults()
        return self.session.scalars(stmt).all()

    def seed_defaults(self) -> None:
        for name, icon, color in DEFAULT_CATEGORIES:
            self.session.add(
                Category(
                    user_id=self.user_id,
                    name=name,
                    icon=icon,
                    color=color,
                    is_default=True,
                )
            )
        self.session.commit()
        logger.info(
            f"categories_seeded: user={self.user_id} count={len(DEFAULT_CATEGORIES)}"
        )

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category")
        return category

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise BusinessRuleError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._ensure_unique_name(name)
        category = Category(
            user_id=self.user_id,
            name=name,
            icon=data.icon,
            color=data.color,
            is_default=False,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            changes["name"] = changes["name"].strip()
            self._ensure_unique_name(changes["name"], exclude_id=category.id)
        for key, value in changes.items():
            if key == "name" and value is None:
                continue
            setattr(category, key, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        active_budgets = int(
            self.session.execute(
                select(func.count(Budget.id)).where(
                    Budget.user_id == self.user_id,
                    Budget.category_id == category.id,
                    Budget.is_active.is_(True),
                )
            ).scalar_one()
            or 0
        )
        if active_budgets:
            raise BusinessRuleError("Category is used by an active budget")

        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(Budget)
            .where(Budget.user_id == self.user_id, Budget.category_id == category.id)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(category)
        self.session.commit()
        # Detached transactions still held in this session point at the old id.
        self.session.expire_all()


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.accounts = AccountService(session, user_id)

    def _check_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise BusinessRuleError("Invalid account")
        return account

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise BusinessRuleError("Invalid category")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_account(data.account_id)
        self._check_category(data.category_id)

        amount = signed_amount(data.type, data.amount_cents)
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            description=data.description.strip(),
            merchant=data.merchant,
            amount_cents=amount,
            type=data.type,
            date=data.date,
            notes=data.notes,
            tags=list(data.tags),
            is_recurring=data.is_recurring,
            ai_categorized=data.ai_categorized,
            ai_confidence=data.ai_confidence,
        )
        self.session.add(txn)
        try:
            self.session.flush()
            self.accounts.adjust_balance(data.account_id, amount)
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user={self.user_id} id={txn.id} "
            f"account={txn.account_id} amount_cents={amount}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        new_account_id = changes.get("account_id") or txn.account_id
        if new_account_id != txn.account_id:
            self._check_account(new_account_id)
        if "category_id" in changes:
            self._check_category(changes["category_id"])

        old_account_id = txn.account_id
        old_amount = txn.amount_cents
        new_type = changes.get("type") or txn.type
        new_magnitude = changes.get("amount_cents") or abs(txn.amount_cents)
        new_amount = signed_amount(new_type, new_magnitude)

        for key in ("category_id", "merchant", "notes"):
            if key in changes:
                setattr(txn, key, changes[key])
        if changes.get("is_recurring") is not None:
            txn.is_recurring = changes["is_recurring"]
        if changes.get("description") is not None:
            txn.description = changes["description"].strip()
        if changes.get("date") is not None:
            txn.date = changes["date"]
        if changes.get("tags") is not None:
            txn.tags = list(changes["tags"])
        txn.account_id = new_account_id
        txn.type = new_type
        txn.amount_cents = new_amount

        try:
            self.session.flush()
            if old_account_id == new_account_id:
                self.accounts.adjust_balance(new_account_id, new_amount - old_amount)
            else:
                self.accounts.adjust_balance(old_account_id, -old_amount)
                self.accounts.adjust_balance(new_account_id, new_amount)
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        account_id = txn.account_id
        amount = txn.amount_cents
        self.session.delete(txn)
        try:
            self.session.flush()
            self.accounts.adjust_balance(account_id, -amount)
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        logger.info(
            f"transaction_deleted: user={self.user_id} id={transaction_id} "
            f"account={account_id}"
        )

    def _filtered(self, filters: TransactionFilters):
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.merchant, "")).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                )
            )
        return stmt

    def paginate(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        if filters.sort_by not in TRANSACTION_SORT_COLUMNS:
            raise InvalidInputError(f"Unsupported sortBy: {filters.sort_by}")
        if filters.sort_order not in {"asc", "desc"}:
            raise InvalidInputError("sortOrder must be asc or desc")
        page = max(page, 1)
        limit = max(1, min(limit, 100))

        base = self._filtered(filters)
        total = int(
            self.session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
            or 0
        )

        column = TRANSACTION_SORT_COLUMNS[filters.sort_by]
        if filters.sort_order == "asc":
            ordering = (column.asc(), Transaction.id.asc())
        else:
            ordering = (column.desc(), Transaction.id.desc())
        stmt = (
            base.options(joinedload(Transaction.category))
            .order_by(*ordering)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        return TransactionPage(items=items, total=total, page=page, limit=limit)

    def since(self, start: date, end: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, filters: Optional[BudgetFilters] = None) -> list[Budget]:
        filters = filters or BudgetFilters()
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if filters.period:
            stmt = stmt.where(Budget.period == filters.period)
        if filters.active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget")
        return budget

    def _check_category(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise BusinessRuleError("Invalid category")

    def _ensure_no_active_duplicate(
        self,
        category_id: int,
        period: BudgetPeriod,
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.period == period,
            Budget.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise BusinessRuleError(
                "A budget already exists for this category and period"
            )

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        self._ensure_no_active_duplicate(data.category_id, data.period)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            alert_threshold=data.alert_threshold,
            is_active=True,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: user={self.user_id} id={budget.id} "
            f"category={budget.category_id} period={budget.period.value}"
        )
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        check_version(data.expected_version, budget.version)
        changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})

        category_id = changes.get("category_id") or budget.category_id
        period = changes.get("period") or budget.period
        is_active = changes.get("is_active")
        if is_active is None:
            is_active = budget.is_active
        if category_id != budget.category_id:
            self._check_category(category_id)
        if is_active:
            self._ensure_no_active_duplicate(category_id, period, exclude_id=budget.id)

        start = changes.get("start_date") or budget.start_date
        end = changes["end_date"] if "end_date" in changes else budget.end_date
        if end is not None and end < start:
            raise InvalidInputError("end_date must not be before start_date")

        for key, value in changes.items():
            if key in {"category_id", "period", "is_active", "start_date"}:
                continue
            if key in {"name", "amount_cents", "alert_threshold"} and value is None:
                continue
            if key == "name":
                value = value.strip()
            setattr(budget, key, value)
        budget.start_date = start
        budget.category_id = category_id
        budget.period = period
        budget.is_active = is_active
        commit_or_conflict(self.session)
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        commit_or_conflict(self.session)

    def spent_cents(self, budget: Budget, *, today: Optional[date] = None) -> int:
        window = budget_window(budget.start_date, budget.end_date, today=today)
        total = self.session.execute(
            select(func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id == budget.category_id,
                Transaction.date.between(window.start, window.end),
            )
        ).scalar_one()
        return int(total or 0)

    def progress(self, budget: Budget, *, today: Optional[date] = None) -> BudgetProgress:
        return budget_progress(
            budget.amount_cents,
            self.spent_cents(budget, today=today),
            budget.alert_threshold,
        )


class SavingsGoalService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, filters: Optional[GoalFilters] = None) -> list[SavingsGoal]:
        filters = filters or GoalFilters()
        stmt = (
            select(SavingsGoal)
            .where(SavingsGoal.user_id == self.user_id)
            .order_by(SavingsGoal.created_at.desc(), SavingsGoal.id.desc())
        )
        if filters.completed is not None:
            stmt = stmt.where(SavingsGoal.is_completed.is_(filters.completed))
        if filters.category:
            stmt = stmt.where(SavingsGoal.category == filters.category)
        if filters.priority:
            stmt = stmt.where(SavingsGoal.priority == filters.priority)
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Savings goal")
        return goal

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=data.current_amount_cents,
            deadline=data.deadline,
            priority=data.priority,
            category=data.category,
            monthly_contribution_cents=data.monthly_contribution_cents,
            description=data.description,
            is_completed=data.current_amount_cents >= data.target_amount_cents,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: SavingsGoalUpdate) -> SavingsGoal:
        goal = self.get(goal_id)
        check_version(data.expected_version, goal.version)
        changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        for key, value in changes.items():
            if value is None and key in {
                "name",
                "target_amount_cents",
                "current_amount_cents",
                "priority",
                "monthly_contribution_cents",
                "is_completed",
            }:
                continue
            if key == "name":
                value = value.strip()
            setattr(goal, key, value)
        if changes.get("is_completed") is None and (
            "target_amount_cents" in changes or "current_amount_cents" in changes
        ):
            goal.is_completed = goal.current_amount_cents >= goal.target_amount_cents
        commit_or_conflict(self.session)
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.execute(
            delete(SavingsGoalContribution)
            .where(SavingsGoalContribution.goal_id == goal.id)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(goal)
        commit_or_conflict(self.session)

    def contributions(self, goal_id: int) -> list[SavingsGoalContribution]:
        goal = self.get(goal_id)
        stmt = (
            select(SavingsGoalContribution)
            .where(SavingsGoalContribution.goal_id == goal.id)
            .order_by(SavingsGoalContribution.date, SavingsGoalContribution.id)
        )
        return self.session.scalars(stmt).all()

    def contribute(
        self, goal_id: int, data: ContributionIn, *, today: Optional[date] = None
    ) -> SavingsGoal:
        goal = self.get(goal_id)
        contribution = SavingsGoalContribution(
            goal_id=goal.id,
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            date=data.date or today or local_today(),
            notes=data.notes,
        )
        self.session.add(contribution)
        try:
            self.session.flush()
            new_amount = SavingsGoal.current_amount_cents + data.amount_cents
            result = self.session.execute(
                update(SavingsGoal)
                .where(
                    SavingsGoal.id == goal.id,
                    SavingsGoal.user_id == self.user_id,
                )
                .values(
                    current_amount_cents=new_amount,
                    is_completed=new_amount >= SavingsGoal.target_amount_cents,
                    version=SavingsGoal.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("Savings goal")
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        self.session.refresh(goal)
        logger.info(
            f"goal_contribution: user={self.user_id} goal={goal.id} "
            f"amount_cents={data.amount_cents} completed={goal.is_completed}"
        )
        return goal

    def progress(self, goal: SavingsGoal, *, today: Optional[date] = None) -> GoalProgress:
        return goal_progress(
            goal.target_amount_cents,
            goal.current_amount_cents,
            goal.monthly_contribution_cents,
            goal.deadline,
            goal.is_completed,
            today=today or local_today(),
        )


def load_snapshot(
    session: Session, user_id: str, *, today: date, days: int = 90
) -> FinancialSnapshot:
    window = trailing_window(days, today=today)
    transactions = TransactionService(session, user_id).since(window.start, window.end)
    budgets = BudgetService(session, user_id)
    active_budgets = budgets.list_all(BudgetFilters(active_only=True))
    return FinancialSnapshot(
        today=today,
        transactions=[
            LedgerEntry(
                id=t.id,
                description=t.description,
                merchant=t.merchant,
                amount_cents=t.amount_cents,
                type=t.type,
                date=t.date,
                category_name=t.category.name if t.category else None,
            )
            for t in transactions
        ],
        budgets=[
            BudgetSpend(
                id=b.id,
                name=b.name,
                category_name=b.category.name if b.category else None,
                amount_cents=b.amount_cents,
                spent_cents=budgets.spent_cents(b, today=today),
                alert_threshold=b.alert_threshold,
            )
            for b in active_budgets
        ],
        accounts=AccountService(session, user_id).list_all(),
        goals=SavingsGoalService(session, user_id).list_all(
            GoalFilters(completed=False)
        ),
    )


class DashboardService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self, *, today: Optional[date] = None) -> DashboardSummary:
        today = today or local_today()
        accounts = AccountService(self.session, self.user_id).list_all()
        window = trailing_window(365, today=today)
        transactions = TransactionService(self.session, self.user_id).since(
            window.start, window.end
        )
        return dashboard_summary(accounts, transactions, today=today)


class CategorizationService:
    def __init__(
        self, session: Session, user_id: str, client: Optional[LLMClient]
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    def _categories(self) -> list[Category]:
        return CategoryService(self.session, self.user_id).list_all()

    def categorize(
        self, item: TransactionText
    ) -> tuple[CategorizationResult, Optional[int]]:
        result = categorize_transaction(item, self.client)
        match = resolve_category(result.category, self._categories())
        return result, match.id if match else None

    def categorize_batch(
        self, items: list[TransactionText]
    ) -> list[tuple[CategorizationResult, Optional[int]]]:
        categories = self._categories()
        results = categorize_many(items, self.client)
        out = []
        for result in results:
            match = resolve_category(result.category, categories)
            out.append((result, match.id if match else None))
        logger.info(
            f"categorize_batch: user={self.user_id} count={len(out)} "
            f"llm={sum(1 for r, _ in out if r.ai_categorized)}"
        )
        return out


class InsightService:
    def __init__(
        self, session: Session, user_id: str, client: Optional[LLMClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    def cached(self, *, now: datetime) -> list[AIInsight]:
        stmt = (
            select(AIInsight)
            .where(
                AIInsight.user_id == self.user_id,
                AIInsight.expires_at.is_not(None),
                AIInsight.expires_at > now,
            )
            .order_by(AIInsight.confidence.desc(), AIInsight.id.asc())
        )
        return self.session.scalars(stmt).all()

    def list_or_generate(
        self,
        insight_type: Optional[str] = None,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> list[AIInsight]:
        types = parse_insight_types(insight_type)
        now = now or datetime.utcnow()
        if insight_type in (None, "", "all"):
            cached = self.cached(now=now)
            if cached:
                return cached

        snapshot = load_snapshot(self.session, self.user_id, today=today or local_today())
        drafts = generate_insights(snapshot, types, self.client)
        return self._store(drafts, types, now=now)

    def _store(self, drafts: list[InsightDraft], types, *, now: datetime) -> list[AIInsight]:
        expires_at = now + timedelta(days=get_settings().insight_ttl_days)
        rows = [
            AIInsight(
                user_id=self.user_id,
                type=draft.type,
                title=draft.title,
                content=draft.content,
                confidence=draft.confidence,
                priority=draft.priority,
                data=draft.data,
                is_read=False,
                expires_at=expires_at,
                created_at=now,
            )
            for draft in drafts
        ]
        try:
            # Replaced, so the cache never holds two generations of one type.
            self.session.execute(
                delete(AIInsight)
                .where(AIInsight.user_id == self.user_id, AIInsight.type.in_(types))
                .execution_options(synchronize_session=False)
            )
            self.session.add_all(rows)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"insights_store_failed: user={self.user_id}")
            return rows
        logger.info(
            f"insights_generated: user={self.user_id} count={len(rows)} "
            f"types={','.join(t.value for t in types)}"
        )
        return rows

    def mark_read(self, insight_id: int) -> AIInsight:
        insight = self.session.get(AIInsight, insight_id)
        if not insight or insight.user_id != self.user_id:
            raise NotFoundError("Insight")
        insight.is_read = True
        self.session.commit()
        return insight


class QueryService:
    def __init__(
        self, session: Session, user_id: str, client: Optional[LLMClient]
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    def ask(self, query: str, *, today: Optional[date] = None) -> dict:
        snapshot = load_snapshot(
            self.session, self.user_id, today=today or local_today(), days=30
        )
        context = build_query_context(snapshot)
        intent = classify_query_intent(query)

        if self.client is None:
            raise DependencyError("LLM client is not available")
        result = self.client.query(render_query_prompt(query, context), context)
        if isinstance(result, LLMFailure):
            raise DependencyError(f"LLM query failed: {result.reason}")

        try:
            self.session.add(
                AIQuery(
                    user_id=self.user_id,
                    query=query,
                    response=result.content,
                    context=context,
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"query_log_failed: user={self.user_id}")

        logger.info(f"query_answered: user={self.user_id} intent={intent}")
        return {"response": result.content, "context": context, "intent": intent}


class SubscriptionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        return self.session.scalars(stmt).all()
