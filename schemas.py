import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    BudgetPeriod,
    GoalPriority,
    SubscriptionTier,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    currency: str = Field("USD", min_length=3, max_length=3)
    institution: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=34)
    last_four: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    is_active: bool = True


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance_cents: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    institution: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=34)
    last_four: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    is_active: Optional[bool] = None
    expected_version: Optional[int] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    description: str = Field(..., min_length=1, max_length=200)
    merchant: Optional[str] = Field(default=None, max_length=120)
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    date: dt.date
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    ai_categorized: bool = False
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    merchant: Optional[str] = Field(default=None, max_length=120)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None
    is_recurring: Optional[bool] = None


class BudgetIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    alert_threshold: float = Field(0.9, ge=0, le=1)

    @model_validator(mode="after")
    def _check_window(self) -> "BudgetIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    alert_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    is_active: Optional[bool] = None
    expected_version: Optional[int] = None


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_amount_cents: int = Field(..., gt=0)
    current_amount_cents: int = Field(0, ge=0)
    deadline: Optional[date] = None
    priority: GoalPriority = GoalPriority.medium
    category: Optional[str] = Field(default=None, max_length=50)
    monthly_contribution_cents: int = Field(0, ge=0)
    description: Optional[str] = None


class SavingsGoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    current_amount_cents: Optional[int] = Field(default=None, ge=0)
    deadline: Optional[date] = None
    priority: Optional[GoalPriority] = None
    category: Optional[str] = Field(default=None, max_length=50)
    monthly_contribution_cents: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    is_completed: Optional[bool] = None
    expected_version: Optional[int] = None


class ContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class CategorizeIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    merchant: Optional[str] = Field(default=None, max_length=120)
    amount_cents: int


class CategorizeBatchIn(BaseModel):
    items: list[CategorizeIn] = Field(..., min_length=1, max_length=50)


class QueryIn(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)


class SubscriptionIn(BaseModel):
    tier: SubscriptionTier
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)


class SubscriptionManageIn(BaseModel):
    action: Literal["cancel", "resume", "upgrade"]
    subscription_id: str = Field(..., min_length=1)
    new_tier: Optional[SubscriptionTier] = None

    @model_validator(mode="after")
    def _require_tier_for_upgrade(self) -> "SubscriptionManageIn":
        if self.action == "upgrade" and self.new_tier is None:
            raise ValueError("new_tier is required for upgrade")
        return self
