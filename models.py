from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TemplateStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"


class RecurrenceStatus(str, Enum):
    generated = "generated"
    manual = "manual"
    skipped = "skipped"


FREQUENCY_ENUM = SAEnum(Frequency, name="frequency", values_callable=_values)
TEMPLATE_STATUS_ENUM = SAEnum(
    TemplateStatus, name="templatestatus", values_callable=_values
)
RECURRENCE_STATUS_ENUM = SAEnum(
    RecurrenceStatus, name="recurrencestatus", values_callable=_values
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Currency(Base, TimestampMixin):
    __tablename__ = "currencies"

    code: Mapped[str] = mapped_column(String(3), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(60))
    symbol: Mapped[Optional[str]] = mapped_column(String(8))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base: Mapped[str] = mapped_column(String(3), nullable=False)
    quote: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_date: Mapped[date] = mapped_column(Date, nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "base", "quote", "requested_date", name="uq_exchange_rate_pair_day"
        ),
        CheckConstraint("rate_micros > 0", name="ck_exchange_rate_positive"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )
    templates: Mapped[list["RecurringTemplate"]] = relationship(
        "RecurringTemplate", back_populates="category"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", secondary="expense_tags", back_populates="tags"
    )


expense_tags = Table(
    "expense_tags",
    Base.metadata,
    Column(
        "expense_id",
        Integer,
        ForeignKey("expenses.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class RecurringTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    converted_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_generated_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[TemplateStatus] = mapped_column(
        TEMPLATE_STATUS_ENUM, default=TemplateStatus.active, nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    notification_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    category: Mapped["Category"] = relationship("Category", back_populates="templates")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="recurring_template", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_template_amount_positive"),
        Index("ix_templates_status_due", "status", "next_due_date"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    converted_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    conversion_rate_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_status: Mapped[RecurrenceStatus] = mapped_column(
        RECURRENCE_STATUS_ENUM, default=RecurrenceStatus.manual, nullable=False
    )
    # Lookup only; deleting the template keeps the expense.
    recurring_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_templates.id", ondelete="SET NULL")
    )

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")
    recurring_template: Mapped[Optional["RecurringTemplate"]] = relationship(
        "RecurringTemplate", back_populates="expenses"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="expense_tags", back_populates="expenses"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_template_id", "date", name="uq_expense_template_day"
        ),
        Index("ix_expenses_date", "date"),
        Index("ix_expenses_category_date", "category_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Always the first day of the month.
    start_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    alert_threshold_cents: Mapped[Optional[int]] = mapped_column(Integer)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )

    currency: Mapped["Currency"] = relationship("Currency")
    category_budgets: Mapped[list["CategoryBudget"]] = relationship(
        "CategoryBudget",
        back_populates="budget",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "amount_cents IS NULL OR amount_cents > 0",
            name="ck_budget_amount_positive",
        ),
        CheckConstraint(
            "alert_threshold_cents IS NULL OR (amount_cents IS NOT NULL"
            " AND alert_threshold_cents > 0"
            " AND alert_threshold_cents <= amount_cents)",
            name="ck_budget_threshold_within_amount",
        ),
    )


class CategoryBudget(Base, TimestampMixin):
    __tablename__ = "category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(
        ForeignKey("currencies.code"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="category_budgets")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_category_budget_scope"),
        Index("ix_category_budget_month", "year", "month"),
        CheckConstraint(
            "amount_cents >= 0", name="ck_category_budget_amount_positive"
        ),
    )
