from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Mapping, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from amounts import MAX_CENTS, parse_amount
from config import Settings, get_settings
from currencies import ConverterFactory, CurrencyService
from database import SessionLocal, commit_or_rollback
from errors import (
    BudgetExistsForCurrentMonth,
    InvalidAmount,
    InvalidThreshold,
    NotFound,
    OperationInProgress,
    SaveFailed,
)
from events import BudgetUpdated, EventBus
from models import Budget, Category, CategoryBudget, Expense, RecurrenceStatus
from periods import Month
from recurrence import SessionFactory, to_local


logger = logging.getLogger(__name__)

Moment = Union[date, datetime, None]


def validate_limits(
    amount_cents: Optional[int],
    alert_threshold_cents: Optional[int],
    *,
    amount_required: bool = False,
) -> None:
    if amount_cents is None:
        if amount_required:
            raise InvalidAmount()
    elif not 0 < amount_cents <= MAX_CENTS:
        raise InvalidAmount()
    if alert_threshold_cents is not None:
        if amount_cents is None or not 0 < alert_threshold_cents <= amount_cents:
            raise InvalidThreshold()


class BudgetRolloverEngine:
    """Monthly budgets: creation, forward cascades and the rolling horizon.

    Interactive entry points are serialized by a try-lock: a second call while
    one is running fails with OperationInProgress instead of waiting. The
    background ``ensure_future_budgets`` is idempotent and does not take the
    lock.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        settings: Optional[Settings] = None,
        converter_factory: Optional[ConverterFactory] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.converter_factory = converter_factory
        self.events = events or EventBus()
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise OperationInProgress()
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    # -- create ---------------------------------------------------------------

    def create_budget(
        self,
        amount_cents: Optional[int] = None,
        alert_threshold_cents: Optional[int] = None,
        now: Moment = None,
    ) -> Budget:
        month = Month.of(to_local(now))
        with self._exclusive(), self._session() as session:
            if self._budget_for(session, month) is not None:
                raise BudgetExistsForCurrentMonth()
            currency = CurrencyService(
                session, self.settings, self.converter_factory
            ).require_default()
            validate_limits(amount_cents, alert_threshold_cents)

            budget = Budget(
                start_date=month.start,
                amount_cents=amount_cents,
                alert_threshold_cents=alert_threshold_cents,
                currency_code=currency.code,
                category_budgets=[],
            )
            session.add(budget)
            commit_or_rollback(session)
            logger.info(
                f"budget_created: month={month} amount={amount_cents} "
                f"currency={currency.code}"
            )
        self.events.publish(BudgetUpdated(months=(str(month),), reason="created"))
        return budget

    def create_future_budgets(
        self, source_id: int, months_ahead: Optional[int] = None
    ) -> list[Budget]:
        months_ahead = (
            self.settings.future_budget_months if months_ahead is None else months_ahead
        )
        with self._exclusive(), self._session() as session:
            source = self._get(session, source_id)
            source_month = Month.of(source.start_date)
            existing = self._existing_months(session, source_month.shift(1))
            created: list[Budget] = []
            for offset in range(1, months_ahead + 1):
                target = source_month.shift(offset)
                if target in existing:
                    logger.info(f"future_budget_skipped: month={target} reason=exists")
                    continue
                created.append(self._clone(session, source, target))
            commit_or_rollback(session)
            months = tuple(str(Month.of(b.start_date)) for b in created)
            logger.info(
                f"future_budgets_created: source={source_month} months={len(created)}"
            )
        if created:
            self.events.publish(BudgetUpdated(months=months, reason="future_created"))
        return created

    def create_next_month_budget_if_needed(self, now: Moment = None) -> Optional[Budget]:
        """One rollover step: append the month after the latest budget if the
        latest is still short of the horizon."""
        target = self._horizon(now)
        with self._session() as session:
            latest = self._latest(session)
            if latest is None or Month.of(latest.start_date) >= target:
                logger.info("rollover: future budgets are up to date")
                return None
            budget = self._clone(session, latest, Month.of(latest.start_date).shift(1))
            try:
                commit_or_rollback(session)
            except SaveFailed:
                logger.exception("rollover: commit failed")
                return None
            month = Month.of(budget.start_date)
        logger.info(f"rollover: created month={month}")
        self.events.publish(BudgetUpdated(months=(str(month),), reason="rollover"))
        return budget

    def ensure_future_budgets(self, now: Moment = None) -> list[Budget]:
        """Repeat the rollover step until budgets reach ``now + horizon``.

        Each missing month, including holes between existing budgets, is
        cloned from the month before it and the whole run is committed at once.
        With no budgets at all this is a no-op.
        """
        target = self._horizon(now)
        with self._session() as session:
            existing = session.scalars(
                select(Budget)
                .options(selectinload(Budget.category_budgets))
                .order_by(Budget.start_date)
            ).all()
            if not existing:
                logger.info("rollover: no budgets yet, nothing to extend")
                return []
            by_month = {Month.of(b.start_date): b for b in existing}
            previous = existing[0]
            month = Month.of(previous.start_date).shift(1)
            last = max(target, Month.of(existing[-1].start_date))
            created: list[Budget] = []
            while month <= last:
                budget = by_month.get(month)
                if budget is None:
                    budget = self._clone(session, previous, month)
                    created.append(budget)
                previous = budget
                month = month.shift(1)
            if not created:
                logger.info("rollover: future budgets are up to date")
                return []
            try:
                commit_or_rollback(session)
            except SaveFailed:
                # A concurrent run already filled these months; the next
                # trigger re-reads and finds nothing to do.
                logger.exception("rollover: commit failed")
                return []
            months = tuple(str(Month.of(b.start_date)) for b in created)
        logger.info(f"rollover: created months={','.join(months)} target={target}")
        self.events.publish(BudgetUpdated(months=months, reason="rollover"))
        return created

    # -- update / delete ------------------------------------------------------

    def update_budget(
        self,
        budget_id: int,
        amount_cents: int,
        alert_threshold_cents: Optional[int] = None,
    ) -> Budget:
        """Set amount and threshold on the budget and every later month."""
        validate_limits(amount_cents, alert_threshold_cents, amount_required=True)
        with self._exclusive(), self._session() as session:
            budget = self._get(session, budget_id)
            affected = self._from_month(session, budget.start_date)
            for target in affected:
                target.amount_cents = amount_cents
                target.alert_threshold_cents = alert_threshold_cents
            commit_or_rollback(session)
            months = tuple(str(Month.of(b.start_date)) for b in affected)
            logger.info(
                f"budget_updated: from={months[0]} budgets={len(affected)} "
                f"amount={amount_cents} threshold={alert_threshold_cents}"
            )
        self.events.publish(BudgetUpdated(months=months, reason="updated"))
        return budget

    def delete_budget(self, budget_id: int) -> int:
        """Delete the budget and every later month, with their category limits."""
        with self._exclusive(), self._session() as session:
            budget = self._get(session, budget_id)
            doomed = self._from_month(session, budget.start_date)
            months = tuple(str(Month.of(b.start_date)) for b in doomed)
            for target in doomed:
                session.delete(target)
            commit_or_rollback(session)
        logger.info(f"budget_deleted: from={months[0]} budgets={len(months)}")
        self.events.publish(BudgetUpdated(months=months, reason="deleted"))
        return len(months)

    def save_category_budgets(
        self, budget_id: int, limits: Mapping[Union[int, Category], str]
    ) -> Budget:
        """Replace the category limits of the budget and of every later month."""
        with self._exclusive(), self._session() as session:
            budget = self._get(session, budget_id)
            symbol = budget.currency.symbol if budget.currency else None
            parsed: dict[int, int] = {}
            for key, text in limits.items():
                category_id = key.id if isinstance(key, Category) else int(key)
                try:
                    cents = parse_amount(text or "", symbol=symbol)
                except InvalidAmount:
                    logger.info(
                        f"category_limit_skipped: category={category_id} value={text!r}"
                    )
                    continue
                category = session.get(Category, category_id)
                if category is None:
                    raise NotFound(f"Category {category_id} not found")
                parsed[category_id] = cents

            affected = self._from_month(session, budget.start_date)
            for target in affected:
                self._replace_limits(target, parsed)
            commit_or_rollback(session)
            months = tuple(str(Month.of(b.start_date)) for b in affected)
            logger.info(
                f"category_budgets_saved: from={months[0]} budgets={len(affected)} "
                f"limits={len(parsed)}"
            )
        self.events.publish(BudgetUpdated(months=months, reason="category_limits"))
        return budget

    def recompute_budget_amount_from_categories(self, budget_id: int) -> Budget:
        """Raise the budget amount to the sum of its category limits, never lower it."""
        with self._exclusive(), self._session() as session:
            budget = self._get(session, budget_id)
            total = self.total_category_budget(budget)
            current = budget.amount_cents or 0
            if total <= current:
                logger.info(
                    f"budget_recompute: month={Month.of(budget.start_date)} "
                    f"categories={total} amount={current} unchanged"
                )
                return budget
            budget.amount_cents = total
            commit_or_rollback(session)
            month = Month.of(budget.start_date)
            logger.info(f"budget_recompute: month={month} amount={current}->{total}")
        self.events.publish(BudgetUpdated(months=(str(month),), reason="recomputed"))
        return budget

    # -- queries ---------------------------------------------------------------

    def list_budgets(self) -> list[Budget]:
        with self._session() as session:
            return session.scalars(
                select(Budget)
                .options(selectinload(Budget.category_budgets))
                .order_by(Budget.start_date)
            ).all()

    def get_budget(self, budget_id: int) -> Budget:
        with self._session() as session:
            return self._get(session, budget_id)

    def budget_for_month(self, day: Union[date, datetime]) -> Optional[Budget]:
        with self._session() as session:
            return self._budget_for(session, Month.of(day))

    def current_month_budget(self, now: Moment = None) -> Optional[Budget]:
        return self.budget_for_month(to_local(now))

    @staticmethod
    def total_category_budget(budget: Budget) -> int:
        return sum(cb.amount_cents for cb in budget.category_budgets)

    def everything_else_amount(self, budget: Budget) -> Optional[int]:
        """What is left of the overall amount outside the category limits."""
        if budget.amount_cents is None:
            return None
        total = self.total_category_budget(budget)
        if budget.amount_cents <= total:
            return None
        return budget.amount_cents - total

    def progress(self, budget_id: int) -> dict[str, object]:
        with self._session() as session:
            budget = self._get(session, budget_id)
            month = Month.of(budget.start_date)
            stmt = (
                select(
                    Expense.category_id,
                    func.coalesce(func.sum(Expense.converted_amount_cents), 0).label(
                        "spent"
                    ),
                )
                .where(
                    Expense.date.between(month.start, month.end),
                    Expense.recurrence_status != RecurrenceStatus.skipped,
                )
                .group_by(Expense.category_id)
            )
            spent_by_category = {
                row.category_id: int(row.spent or 0) for row in session.execute(stmt)
            }
            total_spent = sum(spent_by_category.values())

            categories: dict[int, dict[str, int]] = {}
            for cb in budget.category_budgets:
                spent = spent_by_category.get(cb.category_id, 0)
                categories[cb.category_id] = {
                    "budget_cents": cb.amount_cents,
                    "spent_cents": spent,
                    "remaining_cents": cb.amount_cents - spent,
                }
            unbudgeted = sum(
                spent
                for category_id, spent in spent_by_category.items()
                if category_id not in categories
            )
            threshold = budget.alert_threshold_cents
            return {
                "month": str(month),
                "budget_cents": budget.amount_cents,
                "spent_cents": total_spent,
                "remaining_cents": (
                    None
                    if budget.amount_cents is None
                    else budget.amount_cents - total_spent
                ),
                "threshold_reached": threshold is not None and total_spent >= threshold,
                "unbudgeted_spent_cents": unbudgeted,
                "categories": categories,
            }

    # -- helpers ----------------------------------------------------------------

    def _horizon(self, now: Moment) -> Month:
        return Month.of(to_local(now)).shift(self.settings.budget_horizon_months)

    @staticmethod
    def _get(session: Session, budget_id: int) -> Budget:
        budget = session.get(
            Budget, budget_id, options=[selectinload(Budget.category_budgets)]
        )
        if budget is None:
            raise NotFound("Budget not found")
        return budget

    @staticmethod
    def _budget_for(session: Session, month: Month) -> Optional[Budget]:
        return session.scalars(
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.start_date.between(month.start, month.end))
            .limit(1)
        ).first()

    @staticmethod
    def _latest(session: Session) -> Optional[Budget]:
        return session.scalars(
            select(Budget).order_by(Budget.start_date.desc()).limit(1)
        ).first()

    @staticmethod
    def _from_month(session: Session, start: date) -> list[Budget]:
        return session.scalars(
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.start_date >= Month.of(start).start)
            .order_by(Budget.start_date)
        ).all()

    @staticmethod
    def _existing_months(session: Session, first: Month) -> set[Month]:
        rows = session.scalars(
            select(Budget.start_date).where(Budget.start_date >= first.start)
        ).all()
        return {Month.of(start) for start in rows}

    @staticmethod
    def _clone(session: Session, source: Budget, month: Month) -> Budget:
        budget = Budget(
            start_date=month.start,
            amount_cents=source.amount_cents,
            alert_threshold_cents=source.alert_threshold_cents,
            currency_code=source.currency_code,
            category_budgets=[
                CategoryBudget(
                    category_id=cb.category_id,
                    amount_cents=cb.amount_cents,
                    currency_code=cb.currency_code,
                    year=month.year,
                    month=month.month,
                )
                for cb in source.category_budgets
            ],
        )
        session.add(budget)
        return budget

    @staticmethod
    def _replace_limits(budget: Budget, limits: Mapping[int, int]) -> None:
        # Reconciled in place: rows for kept categories are updated rather than
        # deleted and re-inserted, which would collide on (budget, category)
        # within a single flush.
        month = Month.of(budget.start_date)
        current = {cb.category_id: cb for cb in budget.category_budgets}
        for category_id, cb in current.items():
            if category_id not in limits:
                budget.category_budgets.remove(cb)
        for category_id, cents in limits.items():
            cb = current.get(category_id)
            if cb is None:
                budget.category_budgets.append(
                    CategoryBudget(
                        category_id=category_id,
                        amount_cents=cents,
                        currency_code=budget.currency_code,
                        year=month.year,
                        month=month.month,
                    )
                )
            else:
                cb.amount_cents = cents
                cb.currency_code = budget.currency_code
                cb.year = month.year
                cb.month = month.month
