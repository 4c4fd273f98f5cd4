from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from config import Settings, get_settings
from currencies import ConverterFactory, CurrencyService
from database import commit_or_rollback
from errors import NotFound, StateError, ValidationError
from events import EventBus, ExpensesUpdated
from fx_rates import FxRateService, MICROS
from models import (
    Category,
    Expense,
    Frequency,
    RecurrenceStatus,
    RecurringTemplate,
    Tag,
    TemplateStatus,
)
from notifications import (
    RECURRING_REMINDER_PREFIX,
    LoggingNotificationScheduler,
    NotificationScheduler,
    build_reminder,
    cancel_safely,
    notify_safely,
    reminder_id,
)
from periods import Month
from recurrence import advance_template, has_expense_for_day, to_local
from schemas import CategoryIn, ExpenseIn


logger = logging.getLogger(__name__)

Moment = Union[date, datetime, None]

MONTHLY_FACTORS = {
    Frequency.daily: Decimal("30"),
    Frequency.weekly: Decimal("4.33"),
    Frequency.monthly: Decimal("1"),
    Frequency.yearly: Decimal("1") / Decimal("12"),
}


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).order_by(Category.name)
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if category is None:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(func.lower(Category.name) == data.name.strip().lower())
        )
        if existing:
            raise ValidationError("Category with this name already exists")
        category = Category(name=data.name.strip(), color=data.color)
        self.session.add(category)
        commit_or_rollback(self.session)
        logger.info(f"category_created: id={category.id} name={category.name!r}")
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = datetime.utcnow()
        commit_or_rollback(self.session)
        logger.info(f"category_archived: id={category_id}")


class ExpenseService:
    """Manually entered expenses. A missing exchange rate aborts the entry."""

    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        *,
        converter_factory: Optional[ConverterFactory] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.converter_factory = converter_factory or (
            lambda s: FxRateService(s, self.settings)
        )
        self.events = events or EventBus()

    def create(self, data: ExpenseIn, now: Moment = None) -> Expense:
        category = self.session.get(Category, data.category_id)
        if category is None or category.archived_at is not None:
            raise NotFound("Category not found")
        currencies = CurrencyService(self.session, self.settings, self.converter_factory)
        currencies.ensure(data.currency_code)
        default = currencies.require_default()
        conversion = self.converter_factory(self.session).convert(
            data.amount_cents, data.currency_code, default.code, data.date
        )

        occurred_at = data.occurred_at or datetime.combine(
            data.date, to_local(now).time()
        )
        expense = Expense(
            date=data.date,
            occurred_at=to_local(occurred_at),
            amount_cents=data.amount_cents,
            converted_amount_cents=conversion.amount_cents,
            conversion_rate_micros=conversion.rate_micros,
            currency_code=data.currency_code,
            category=category,
            notes=data.notes,
            is_recurring=False,
            recurrence_status=RecurrenceStatus.manual,
        )
        expense.tags = self._tags(data.tags)
        self.session.add(expense)
        commit_or_rollback(self.session)
        logger.info(
            f"expense_created: id={expense.id} day={expense.date} "
            f"amount={expense.amount_cents} {expense.currency_code}"
        )
        self.events.publish(ExpensesUpdated(expense_ids=(expense.id,), reason="created"))
        return expense

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if expense is None:
            raise NotFound("Expense not found")
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        commit_or_rollback(self.session)
        logger.info(f"expense_deleted: id={expense_id}")
        self.events.publish(ExpensesUpdated(expense_ids=(expense_id,), reason="deleted"))

    def list_for_month(self, month: Month, *, include_skipped: bool = False) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(selectinload(Expense.tags))
            .where(Expense.date.between(month.start, month.end))
            .order_by(Expense.occurred_at.desc(), Expense.id.desc())
        )
        if not include_skipped:
            stmt = stmt.where(Expense.recurrence_status != RecurrenceStatus.skipped)
        return self.session.scalars(stmt).all()

    def _tags(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[str] = set()
        for name in names:
            clean = name.strip()
            if not clean or clean.lower() in seen:
                continue
            seen.add(clean.lower())
            tag = self.session.scalar(
                select(Tag).where(func.lower(Tag.name) == clean.lower())
            )
            if tag is None:
                tag = Tag(name=clean)
                self.session.add(tag)
            tags.append(tag)
        return tags


class RecurringTemplateService:
    """Lifecycle and reporting for recurring templates.

    Creation and edits that touch the schedule go through ExpenseGenerator;
    this service covers status changes, deletion, skipping and reminders.
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        *,
        events: Optional[EventBus] = None,
        notifier: Optional[NotificationScheduler] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.events = events or EventBus()
        self.notifier = notifier or LoggingNotificationScheduler()

    def get(self, template_id: int) -> RecurringTemplate:
        template = self.session.get(RecurringTemplate, template_id)
        if template is None:
            raise NotFound("Template not found")
        return template

    def list(self, include_cancelled: bool = False) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .options(joinedload(RecurringTemplate.category))
            .order_by(RecurringTemplate.next_due_date, RecurringTemplate.id)
        )
        if not include_cancelled:
            stmt = stmt.where(RecurringTemplate.status != TemplateStatus.cancelled)
        return self.session.scalars(stmt).all()

    def list_active(self) -> list[RecurringTemplate]:
        return [t for t in self.list() if t.status == TemplateStatus.active]

    def pause(self, template_id: int) -> RecurringTemplate:
        template = self.get(template_id)
        if template.status == TemplateStatus.cancelled:
            raise StateError("Cancelled templates cannot be paused")
        template.status = TemplateStatus.paused
        commit_or_rollback(self.session)
        cancel_safely(self.notifier, reminder_id(template.id))
        logger.info(f"template_paused: id={template.id}")
        return template

    def resume(self, template_id: int, now: Moment = None) -> RecurringTemplate:
        template = self.get(template_id)
        if template.status == TemplateStatus.cancelled:
            raise StateError("Cancelled templates cannot be resumed")
        template.status = TemplateStatus.active
        commit_or_rollback(self.session)
        self._schedule(template, to_local(now))
        logger.info(
            f"template_resumed: id={template.id} next_due={template.next_due_date}"
        )
        return template

    def cancel(self, template_id: int) -> RecurringTemplate:
        template = self.get(template_id)
        template.status = TemplateStatus.cancelled
        commit_or_rollback(self.session)
        cancel_safely(self.notifier, reminder_id(template.id))
        logger.info(f"template_cancelled: id={template.id}")
        return template

    def delete(self, template_id: int) -> None:
        """Delete the template; its generated expenses stay, unlinked."""
        template = self.get(template_id)
        result = self.session.execute(
            update(Expense)
            .where(Expense.recurring_template_id == template.id)
            .values(recurring_template_id=None)
        )
        self.session.delete(template)
        commit_or_rollback(self.session)
        cancel_safely(self.notifier, reminder_id(template_id))
        logger.info(
            f"template_deleted: id={template_id} expenses_unlinked={result.rowcount}"
        )

    def skip_next(self, template_id: int, now: Moment = None) -> RecurringTemplate:
        """Skip the next occurrence.

        A zero-amount ``skipped`` record is stored for the due day so the
        generation guard treats the day as handled, then the schedule advances.
        """
        current = to_local(now)
        template = self.get(template_id)
        if template.status == TemplateStatus.cancelled:
            raise StateError("Cancelled templates cannot be skipped")
        due = template.next_due_date
        if not has_expense_for_day(self.session, template.id, due):
            self.session.add(
                Expense(
                    date=due,
                    occurred_at=datetime.combine(due, current.time()),
                    amount_cents=0,
                    converted_amount_cents=0,
                    conversion_rate_micros=int(MICROS),
                    currency_code=template.currency_code,
                    category_id=template.category_id,
                    notes=template.notes,
                    is_recurring=True,
                    recurrence_status=RecurrenceStatus.skipped,
                    recurring_template=template,
                )
            )
        advance_template(template, due)
        commit_or_rollback(self.session)
        logger.info(
            f"template_skipped: id={template.id} day={due} "
            f"next_due={template.next_due_date}"
        )
        self.events.publish(ExpensesUpdated(reason="occurrence_skipped"))
        self._schedule(template, current)
        return template

    def monthly_total(self) -> int:
        """Approximate monthly cost of all active templates in the default currency."""
        total = Decimal("0")
        for template in self.list_active():
            cents = template.converted_amount_cents
            if cents is None:
                cents = template.amount_cents
            total += Decimal(cents) * MONTHLY_FACTORS[template.frequency]
        return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def schedule_upcoming_reminders(self, now: Moment = None) -> int:
        current = to_local(now)
        self.cancel_reminders()
        scheduled = 0
        for template in self.list_active():
            if template.notification_enabled and self._schedule(template, current):
                scheduled += 1
        logger.info(f"reminders_refreshed: scheduled={scheduled}")
        return scheduled

    def cancel_reminders(self) -> None:
        cancel_safely(self.notifier, RECURRING_REMINDER_PREFIX)

    def _schedule(self, template: RecurringTemplate, now: datetime) -> bool:
        cancel_safely(self.notifier, reminder_id(template.id))
        if not template.notification_enabled or template.status != TemplateStatus.active:
            return False
        reminder = build_reminder(template, self.settings, now)
        if reminder is None:
            return False
        notify_safely(self.notifier, *reminder)
        return True
