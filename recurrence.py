from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from currencies import ConverterFactory, CurrencyService
from database import SessionLocal, commit_or_rollback
from errors import ConversionError, InvalidDate, InvalidFrequency, NotFound, SaveFailed
from events import EventBus, ExpensesUpdated
from fx_rates import CurrencyConverter, FxRateService
from models import (
    Category,
    Expense,
    Frequency,
    RecurrenceStatus,
    RecurringTemplate,
    TemplateStatus,
)
from notifications import (
    LoggingNotificationScheduler,
    NotificationScheduler,
    build_reminder,
    cancel_safely,
    notify_safely,
    reminder_id,
)
from periods import add_months
from schemas import RecurringTemplateIn


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz)


def local_today() -> date:
    return local_now().date()


def to_local(value: Union[date, datetime, None]) -> datetime:
    """Naive local wall-clock datetime for ``value`` (``None`` means now)."""
    if value is None:
        value = local_now()
    if not isinstance(value, date):
        raise InvalidDate(f"Invalid date: {value!r}")
    if not isinstance(value, datetime):
        return datetime.combine(value, time(12, 0))
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(get_settings().timezone))
    return value.replace(tzinfo=None)


def parse_frequency(frequency: Union[Frequency, str]) -> Frequency:
    if isinstance(frequency, Frequency):
        return frequency
    try:
        return Frequency(str(frequency).strip().lower())
    except ValueError as exc:
        raise InvalidFrequency(f"Invalid frequency: {frequency!r}") from exc


def next_due_date(anchor: Union[date, datetime], frequency: Union[Frequency, str]) -> date:
    """Next due day after ``anchor``.

    Month and year steps keep the anchor's day, clamped to the last day of a
    shorter target month (Jan 31 -> Feb 28/29, Feb 29 -> Feb 28 next year).
    """
    unit = parse_frequency(frequency)
    day = to_local(anchor).date()
    if unit == Frequency.daily:
        return day + timedelta(days=1)
    if unit == Frequency.weekly:
        return day + timedelta(weeks=1)
    if unit == Frequency.monthly:
        return add_months(day, 1)
    return add_months(day, 12)


def advance_template(template: RecurringTemplate, due: date) -> None:
    template.last_generated_date = due
    template.next_due_date = next_due_date(due, template.frequency)


def has_expense_for_day(session: Session, template_id: Optional[int], day: date) -> bool:
    if template_id is None:
        return False
    stmt = (
        select(Expense.id)
        .where(Expense.recurring_template_id == template_id, Expense.date == day)
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none() is not None


@dataclass
class GenerationReport:
    generated: list[int] = field(default_factory=list)
    skipped_existing: list[int] = field(default_factory=list)
    skipped_conversion: list[int] = field(default_factory=list)
    saved: bool = True
    error: Optional[str] = None

    @property
    def generated_count(self) -> int:
        return len(self.generated)


class ExpenseGenerator:
    """Materializes expenses from due recurring templates.

    One pass handles each due template once and commits everything it did as
    a single batch. The ``(template, day)`` existence check makes re-running a
    pass safe.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        settings: Optional[Settings] = None,
        converter_factory: Optional[ConverterFactory] = None,
        events: Optional[EventBus] = None,
        notifier: Optional[NotificationScheduler] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.converter_factory = converter_factory or (
            lambda session: FxRateService(session, self.settings)
        )
        self.events = events or EventBus()
        self.notifier = notifier or LoggingNotificationScheduler()

    def generate_due(self, now: Union[date, datetime, None] = None) -> GenerationReport:
        current = to_local(now)
        today = current.date()
        report = GenerationReport()
        session = self.session_factory()
        try:
            currencies = CurrencyService(session, self.settings, self.converter_factory)
            default = currencies.default_currency()
            if default is None:
                logger.warning("generate_due: skipped, no default currency configured")
                report.saved = False
                report.error = "No default currency is set"
                return report

            converter = self.converter_factory(session)
            templates = session.scalars(
                select(RecurringTemplate)
                .where(
                    RecurringTemplate.status == TemplateStatus.active,
                    RecurringTemplate.next_due_date <= today,
                )
                .order_by(RecurringTemplate.next_due_date, RecurringTemplate.id)
            ).all()

            created: list[Expense] = []
            for template in templates:
                due = template.next_due_date
                if has_expense_for_day(session, template.id, due):
                    logger.info(
                        f"generate_due: template={template.id} day={due} already_generated"
                    )
                    advance_template(template, due)
                    report.skipped_existing.append(template.id)
                    continue
                try:
                    expense = self._materialize(
                        session, template, due, current, converter, default.code
                    )
                except ConversionError as exc:
                    logger.warning(
                        f"generate_due: template={template.id} day={due} "
                        f"skipped_conversion error={exc}"
                    )
                    report.skipped_conversion.append(template.id)
                    continue
                advance_template(template, due)
                created.append(expense)

            try:
                commit_or_rollback(session)
            except SaveFailed as exc:
                logger.exception("generate_due: commit failed, pass rolled back")
                report.saved = False
                report.error = str(exc)
                report.skipped_existing.clear()
                return report

            report.generated = [expense.id for expense in created]
            logger.info(
                f"generate_due: today={today} templates={len(templates)} "
                f"generated={report.generated_count} "
                f"existing={len(report.skipped_existing)} "
                f"conversion_skips={len(report.skipped_conversion)}"
            )
            if created:
                self.events.publish(
                    ExpensesUpdated(
                        expense_ids=tuple(report.generated), reason="recurring_generation"
                    )
                )
            return report
        finally:
            session.close()

    def catch_up(
        self, now: Union[date, datetime, None] = None, max_passes: Optional[int] = None
    ) -> int:
        """Run passes until nothing new is generated; returns the expense count.

        Each pass handles one occurrence per template, so a template that fell
        several periods behind needs several passes.
        """
        limit = self.settings.generation_max_passes if max_passes is None else max_passes
        total = 0
        for _ in range(max(limit, 1)):
            report = self.generate_due(now)
            total += report.generated_count
            if not report.saved or not (report.generated or report.skipped_existing):
                break
        return total

    def create_template(
        self, data: RecurringTemplateIn, now: Union[date, datetime, None] = None
    ) -> RecurringTemplate:
        current = to_local(now)
        session = self.session_factory()
        try:
            category = self._category(session, data.category_id)
            currencies = CurrencyService(session, self.settings, self.converter_factory)
            currencies.ensure(data.currency_code)
            default = currencies.require_default()
            converter = self.converter_factory(session)
            conversion = converter.convert(
                data.amount_cents, data.currency_code, default.code, data.start_date
            )

            template = RecurringTemplate(
                amount_cents=data.amount_cents,
                currency_code=data.currency_code,
                converted_amount_cents=conversion.amount_cents,
                frequency=data.frequency,
                start_date=data.start_date,
                next_due_date=data.start_date,
                status=TemplateStatus.active,
                category=category,
                notes=data.notes,
                notification_enabled=data.notification_enabled,
            )
            session.add(template)

            expense = None
            if data.start_date == current.date():
                expense = self._materialize(
                    session, template, data.start_date, current, converter, default.code
                )
                advance_template(template, data.start_date)

            commit_or_rollback(session)
            logger.info(
                f"template_created: id={template.id} frequency={template.frequency.value} "
                f"next_due={template.next_due_date}"
            )
            if expense is not None:
                self.events.publish(
                    ExpensesUpdated(expense_ids=(expense.id,), reason="template_created")
                )
            self._schedule_reminder(template, current)
            return template
        finally:
            session.close()

    def update_template(
        self,
        template_id: int,
        data: RecurringTemplateIn,
        now: Union[date, datetime, None] = None,
    ) -> RecurringTemplate:
        current = to_local(now)
        today = current.date()
        session = self.session_factory()
        try:
            template = session.get(RecurringTemplate, template_id)
            if template is None:
                raise NotFound("Template not found")
            category = self._category(session, data.category_id)
            currencies = CurrencyService(session, self.settings, self.converter_factory)
            currencies.ensure(data.currency_code)
            default = currencies.require_default()
            converter = self.converter_factory(session)
            # Validates the currency pair before anything on the template changes.
            conversion = converter.convert(
                data.amount_cents, data.currency_code, default.code, data.start_date
            )

            schedule_changed = (
                template.frequency != data.frequency
                or template.start_date != data.start_date
            )

            template.amount_cents = data.amount_cents
            template.converted_amount_cents = conversion.amount_cents
            template.category = category
            template.currency_code = data.currency_code
            template.frequency = data.frequency
            template.notes = data.notes
            template.notification_enabled = data.notification_enabled

            removed = 0
            expense = None
            if schedule_changed:
                removed = self._delete_future_expenses(session, template.id, today)
                template.start_date = data.start_date
                template.next_due_date = data.start_date
                if data.start_date == today and not has_expense_for_day(
                    session, template.id, today
                ):
                    expense = self._materialize(
                        session, template, today, current, converter, default.code
                    )
                    advance_template(template, today)

            commit_or_rollback(session)
            logger.info(
                f"template_updated: id={template.id} schedule_changed={schedule_changed} "
                f"future_removed={removed} generated={expense is not None}"
            )
            if removed or expense is not None:
                self.events.publish(
                    ExpensesUpdated(
                        expense_ids=(expense.id,) if expense is not None else (),
                        reason="template_updated",
                    )
                )
            self._schedule_reminder(template, current)
            return template
        finally:
            session.close()

    def _materialize(
        self,
        session: Session,
        template: RecurringTemplate,
        due: date,
        now: datetime,
        converter: CurrencyConverter,
        default_code: str,
    ) -> Expense:
        conversion = converter.convert(
            template.amount_cents, template.currency_code, default_code, due
        )
        expense = Expense(
            date=due,
            # Due day with the current wall-clock time, for display ordering.
            occurred_at=datetime.combine(due, now.time()),
            amount_cents=template.amount_cents,
            converted_amount_cents=conversion.amount_cents,
            conversion_rate_micros=conversion.rate_micros,
            currency_code=template.currency_code,
            category=template.category,
            notes=template.notes,
            is_recurring=True,
            recurrence_status=RecurrenceStatus.generated,
            recurring_template=template,
        )
        session.add(expense)
        template.converted_amount_cents = conversion.amount_cents
        return expense

    @staticmethod
    def _delete_future_expenses(session: Session, template_id: int, today: date) -> int:
        future = session.scalars(
            select(Expense).where(
                Expense.recurring_template_id == template_id, Expense.date > today
            )
        ).all()
        for expense in future:
            session.delete(expense)
        return len(future)

    @staticmethod
    def _category(session: Session, category_id: int) -> Category:
        category = session.get(Category, category_id)
        if category is None or category.archived_at is not None:
            raise NotFound("Category not found")
        return category

    def _schedule_reminder(self, template: RecurringTemplate, now: datetime) -> None:
        cancel_safely(self.notifier, reminder_id(template.id))
        if not template.notification_enabled or template.status != TemplateStatus.active:
            return
        reminder = build_reminder(template, self.settings, now)
        if reminder is not None:
            notify_safely(self.notifier, *reminder)
