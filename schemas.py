from datetime import date, datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from amounts import MAX_CENTS
from models import Frequency, RecurrenceStatus, TemplateStatus


CurrencyCodeStr = Annotated[
    str,
    StringConstraints(strip_whitespace=True, to_upper=True, min_length=3, max_length=3),
]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: Optional[str]


class CurrencyIn(BaseModel):
    code: CurrencyCodeStr
    name: Optional[str] = Field(default=None, max_length=60)
    symbol: Optional[str] = Field(default=None, max_length=8)


class RecurringTemplateIn(BaseModel):
    amount_cents: int = Field(..., gt=0, le=MAX_CENTS)
    currency_code: CurrencyCodeStr
    category_id: int
    frequency: Frequency
    start_date: date
    notes: Optional[str] = Field(default=None, max_length=500)
    notification_enabled: bool = True

    @field_validator("frequency", mode="before")
    @classmethod
    def _lower_frequency(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ExpenseIn(BaseModel):
    date: date
    occurred_at: Optional[datetime] = None
    amount_cents: int = Field(..., gt=0, le=MAX_CENTS)
    currency_code: CurrencyCodeStr
    category_id: int
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    occurred_at: datetime
    amount_cents: int
    converted_amount_cents: int
    conversion_rate_micros: int
    currency_code: str
    category_id: int
    notes: Optional[str]
    is_recurring: bool
    recurrence_status: RecurrenceStatus
    recurring_template_id: Optional[int]


class TemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    currency_code: str
    converted_amount_cents: Optional[int]
    frequency: Frequency
    start_date: date
    next_due_date: date
    last_generated_date: Optional[date]
    status: TemplateStatus
    category_id: int
    notes: Optional[str]
    notification_enabled: bool


class BudgetIn(BaseModel):
    # Range checks live in the rollover engine so that they surface as its
    # InvalidAmount / InvalidThreshold errors.
    amount_cents: Optional[int] = None
    alert_threshold_cents: Optional[int] = None


class BudgetUpdateIn(BaseModel):
    amount_cents: int
    alert_threshold_cents: Optional[int] = None


class FutureBudgetsIn(BaseModel):
    months_ahead: int = Field(default=6, ge=1, le=36)


class CategoryLimitsIn(BaseModel):
    limits: dict[int, str] = Field(default_factory=dict)


class CategoryBudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: int
    amount_cents: int
    currency_code: str
    year: int
    month: int


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    start_date: date
    amount_cents: Optional[int]
    alert_threshold_cents: Optional[int]
    currency_code: str
    category_budgets: list[CategoryBudgetOut] = Field(default_factory=list)
