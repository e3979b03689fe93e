import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from aggregation import DashboardSummary
from auth import current_user_id
from billing import BillingService, handle_webhook
from categorize import CategorizationResult, TransactionText
from database import get_db
from errors import InvalidInputError, register_error_handlers
from llm_client import LLMClient, get_llm_client
from models import (
    AIInsight,
    Account,
    AccountType,
    Budget,
    BudgetPeriod,
    Category,
    GoalPriority,
    SavingsGoal,
    Subscription,
    Transaction,
    TransactionType,
)
from periods import local_today, parse_date_param
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategorizeBatchIn,
    CategorizeIn,
    CategoryIn,
    CategoryUpdate,
    ContributionIn,
    QueryIn,
    SavingsGoalIn,
    SavingsGoalUpdate,
    SubscriptionIn,
    SubscriptionManageIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountFilters,
    AccountService,
    BudgetFilters,
    BudgetService,
    CategorizationService,
    CategoryService,
    DashboardService,
    GoalFilters,
    InsightService,
    QueryService,
    SavingsGoalService,
    SubscriptionService,
    TransactionFilters,
    TransactionService,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance API")
register_error_handlers(app)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_llm() -> LLMClient:
    return get_llm_client()


def _flag(request: Request, name: str, default: Optional[bool]) -> Optional[bool]:
    value = request.query_params.get(name)
    if value is None or value == "" or value == "all":
        return default
    lowered = value.lower()
    if lowered in {"true", "1", "yes"}:
        return True
    if lowered in {"false", "0", "no"}:
        return False
    raise InvalidInputError(f"{name} must be true or false")


def _int_param(request: Request, name: str, default: Optional[int]) -> Optional[int]:
    value = request.query_params.get(name)
    if value is None or value == "" or value == "all":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidInputError(f"{name} must be an integer") from exc


def _enum_param(request: Request, name: str, enum_cls):
    value = request.query_params.get(name)
    if not value or value == "all":
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidInputError(f"Invalid {name}: {value}") from exc


def serialize_account(account: Account, service: AccountService) -> dict:
    status = service.status(account)
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "available_balance_cents": status.available_balance_cents,
        "is_overdrawn": status.is_overdrawn,
        "currency": account.currency,
        "institution": account.institution,
        "account_number": account.account_number,
        "last_four": account.last_four,
        "is_active": account.is_active,
        "version": account.version,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }


def serialize_category(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "is_default": category.is_default,
    }


def serialize_transaction(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "description": txn.description,
        "merchant": txn.merchant,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "date": txn.date.isoformat(),
        "notes": txn.notes,
        "tags": list(txn.tags or []),
        "is_recurring": txn.is_recurring,
        "ai_categorized": txn.ai_categorized,
        "ai_confidence": txn.ai_confidence,
        "created_at": txn.created_at.isoformat(),
    }


def serialize_budget(budget: Budget, service: BudgetService) -> dict:
    progress = service.progress(budget, today=local_today())
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "category": budget.category.name if budget.category else None,
        "name": budget.name,
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
        "alert_threshold": budget.alert_threshold,
        "is_active": budget.is_active,
        "version": budget.version,
        "spent_cents": progress.spent_cents,
        "remaining_cents": progress.remaining_cents,
        "percentage_used": progress.percentage_used,
        "is_at_risk": progress.is_at_risk,
        "is_over_budget": progress.is_over_budget,
    }


def serialize_goal(goal: SavingsGoal, service: SavingsGoalService) -> dict:
    progress = service.progress(goal, today=local_today())
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount_cents": goal.target_amount_cents,
        "current_amount_cents": goal.current_amount_cents,
        "deadline": goal.deadline.isoformat() if goal.deadline else None,
        "priority": goal.priority.value,
        "category": goal.category,
        "monthly_contribution_cents": goal.monthly_contribution_cents,
        "description": goal.description,
        "is_completed": goal.is_completed,
        "version": goal.version,
        "progress": progress.progress,
        "remaining_cents": progress.remaining_cents,
        "months_to_goal": progress.months_to_goal,
        "is_overdue": progress.is_overdue,
    }


def serialize_insight(insight: AIInsight) -> dict:
    return {
        "id": insight.id,
        "type": insight.type.value,
        "title": insight.title,
        "content": insight.content,
        "confidence": insight.confidence,
        "priority": insight.priority.value,
        "data": insight.data or {},
        "is_read": bool(insight.is_read),
        "expires_at": insight.expires_at.isoformat() if insight.expires_at else None,
        "created_at": insight.created_at.isoformat() if insight.created_at else None,
    }


def serialize_subscription(sub: Subscription) -> dict:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "id": sub.id,
        "stripe_customer_id": sub.stripe_customer_id,
        "stripe_subscription_id": sub.stripe_subscription_id,
        "tier": sub.tier.value if sub.tier else None,
        "status": sub.status.value,
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "trial_end": _iso(sub.trial_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
    }


def serialize_categorization(
    result: CategorizationResult, category_id: Optional[int]
) -> dict:
    return {
        "category": result.category,
        "confidence": result.confidence,
        "explanation": result.explanation,
        "ai_categorized": result.ai_categorized,
        "source": result.source,
        "category_id": category_id,
    }


def serialize_summary(summary: DashboardSummary) -> dict:
    return {
        "cash_cents": summary.cash_cents,
        "burn_cents": summary.burn_cents,
        "runway_months": summary.runway_months,
        "today_spending_cents": summary.today_spending_cents,
        "last_28_days_cents": summary.last_28_days_cents,
        "last_365_days_cents": summary.last_365_days_cents,
        "total_balance_cents": summary.total_balance_cents,
        "liquid_balance_cents": summary.liquid_balance_cents,
        "total_debt_cents": summary.total_debt_cents,
        "account_count": summary.account_count,
    }


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Accounts


@app.get("/accounts")
def list_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    filters = AccountFilters(
        type=_enum_param(request, "type", AccountType),
        active_only=_flag(request, "activeOnly", True),
    )
    service = AccountService(db, user_id)
    return [serialize_account(a, service) for a in service.list_all(filters)]


@app.post("/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = AccountService(db, user_id)
    return serialize_account(service.create(payload), service)


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = AccountService(db, user_id)
    return serialize_account(service.get(account_id), service)


@app.put("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = AccountService(db, user_id)
    return serialize_account(service.update(account_id, payload), service)


@app.delete("/accounts/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    AccountService(db, user_id).delete(account_id)
    return {"success": True}


# Categories


@app.get("/categories")
def list_categories(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return [serialize_category(c) for c in CategoryService(db, user_id).list_all()]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return serialize_category(CategoryService(db, user_id).create(payload))


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return serialize_category(CategoryService(db, user_id).update(category_id, payload))


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return {"success": True}


# Transactions


def transaction_filters_from_request(request: Request) -> TransactionFilters:
    start = parse_date_param(request.query_params.get("startDate"), "startDate")
    end = parse_date_param(request.query_params.get("endDate"), "endDate")
    if start and end and end < start:
        raise InvalidInputError("endDate must not be before startDate")
    return TransactionFilters(
        type=_enum_param(request, "type", TransactionType),
        category_id=_int_param(request, "category", None),
        account_id=_int_param(request, "account", None),
        query=(request.query_params.get("search") or "").strip() or None,
        start_date=start,
        end_date=end,
        sort_by=request.query_params.get("sortBy") or "date",
        sort_order=(request.query_params.get("sortOrder") or "desc").lower(),
    )


@app.get("/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    filters = transaction_filters_from_request(request)
    page = _int_param(request, "page", 1)
    limit = _int_param(request, "limit", 50)
    if limit < 1 or limit > 100:
        raise InvalidInputError("limit must be between 1 and 100")
    result = TransactionService(db, user_id).paginate(filters, page=page, limit=limit)
    return {
        "transactions": [serialize_transaction(t) for t in result.items],
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "pages": result.pages,
        },
    }


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).create(payload)
    return serialize_transaction(txn)


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return serialize_transaction(TransactionService(db, user_id).get(transaction_id))


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).update(transaction_id, payload)
    return serialize_transaction(txn)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    TransactionService(db, user_id).delete(transaction_id)
    return {"success": True}


# Budgets


@app.get("/budgets")
def list_budgets(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    filters = BudgetFilters(
        period=_enum_param(request, "period", BudgetPeriod),
        active_only=_flag(request, "activeOnly", False),
    )
    service = BudgetService(db, user_id)
    return [serialize_budget(b, service) for b in service.list_all(filters)]


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return serialize_budget(service.create(payload), service)


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return serialize_budget(service.get(budget_id), service)


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return serialize_budget(service.update(budget_id, payload), service)


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    BudgetService(db, user_id).delete(budget_id)
    return {"success": True}


# Savings goals


@app.get("/savings-goals")
def list_goals(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    filters = GoalFilters(
        completed=_flag(request, "completed", None),
        category=request.query_params.get("category") or None,
        priority=_enum_param(request, "priority", GoalPriority),
    )
    service = SavingsGoalService(db, user_id)
    return [serialize_goal(g, service) for g in service.list_all(filters)]


@app.post("/savings-goals", status_code=201)
def create_goal(
    payload: SavingsGoalIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = SavingsGoalService(db, user_id)
    return serialize_goal(service.create(payload), service)


@app.get("/savings-goals/{goal_id}")
def get_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = SavingsGoalService(db, user_id)
    goal = service.get(goal_id)
    data = serialize_goal(goal, service)
    data["contributions"] = [
        {
            "id": c.id,
            "amount_cents": c.amount_cents,
            "date": c.date.isoformat(),
            "notes": c.notes,
        }
        for c in service.contributions(goal_id)
    ]
    return data


@app.post("/savings-goals/{goal_id}")
def goal_action(
    goal_id: int,
    payload: ContributionIn,
    action: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    if action != "contribute":
        raise InvalidInputError(f"Unsupported action: {action}")
    service = SavingsGoalService(db, user_id)
    goal = service.contribute(goal_id, payload, today=local_today())
    return serialize_goal(goal, service)


@app.put("/savings-goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: SavingsGoalUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = SavingsGoalService(db, user_id)
    return serialize_goal(service.update(goal_id, payload), service)


@app.delete("/savings-goals/{goal_id}")
def delete_goal(
    goal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    SavingsGoalService(db, user_id).delete(goal_id)
    return {"success": True}


# Dashboard


@app.get("/dashboard/summary")
def dashboard(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)):
    summary = DashboardService(db, user_id).summary(today=local_today())
    return serialize_summary(summary)


# AI


def _text(item: CategorizeIn) -> TransactionText:
    return TransactionText(
        description=item.description,
        merchant=item.merchant,
        amount_cents=item.amount_cents,
    )


@app.post("/ai/categorize")
def categorize(
    payload: CategorizeIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
    llm: LLMClient = Depends(get_llm),
):
    result, category_id = CategorizationService(db, user_id, llm).categorize(
        _text(payload)
    )
    return serialize_categorization(result, category_id)


@app.post("/ai/categorize/batch")
def categorize_batch(
    payload: CategorizeBatchIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
    llm: LLMClient = Depends(get_llm),
):
    results = CategorizationService(db, user_id, llm).categorize_batch(
        [_text(item) for item in payload.items]
    )
    return {"results": [serialize_categorization(r, cid) for r, cid in results]}


@app.get("/ai/insights")
def list_insights(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
    llm: LLMClient = Depends(get_llm),
):
    insight_type = request.query_params.get("type") or "all"
    rows = InsightService(db, user_id, llm).list_or_generate(
        insight_type, today=local_today()
    )
    return [serialize_insight(i) for i in rows]


@app.post("/ai/insights/{insight_id}/read")
def mark_insight_read(
    insight_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return serialize_insight(InsightService(db, user_id).mark_read(insight_id))


@app.post("/ai/query")
def ask(
    payload: QueryIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
    llm: LLMClient = Depends(get_llm),
):
    return QueryService(db, user_id, llm).ask(payload.query, today=local_today())


# Billing


@app.get("/subscriptions")
def list_subscriptions(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return [serialize_subscription(s) for s in SubscriptionService(db, user_id).list_all()]


@app.post("/subscriptions")
def create_subscription(
    payload: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return BillingService(db, user_id).create(payload.tier, payload.email)


@app.post("/subscriptions/manage")
def manage_subscription(
    payload: SubscriptionManageIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return BillingService(db, user_id).manage(
        payload.action, payload.subscription_id, payload.new_tier
    )


async def raw_body(request: Request) -> bytes:
    return await request.body()


@app.post("/webhooks/stripe")
def stripe_webhook(
    request: Request,
    payload: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
):
    event_type = handle_webhook(db, payload, request.headers.get("stripe-signature"))
    return {"received": True, "type": event_type}
