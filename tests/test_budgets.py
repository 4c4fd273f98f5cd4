from datetime import date, datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from amounts import MAX_CENTS
from budgets import BudgetRolloverEngine
from errors import (
    BudgetExistsForCurrentMonth,
    InvalidAmount,
    InvalidThreshold,
    NoCurrencyAvailable,
    NotFound,
    OperationInProgress,
    SaveFailed,
)
from events import BudgetUpdated, EventBus
from models import (
    Budget,
    Category,
    CategoryBudget,
    Currency,
    Expense,
    RecurrenceStatus,
)


def _engine(session_factory, settings, events=None):
    return BudgetRolloverEngine(session_factory, settings=settings, events=events)


def _seed_budgets(session_factory, months, amount=50000, threshold=None):
    """Insert budgets for ``(year, month)`` pairs; returns ids keyed by pair."""
    ids = {}
    with session_factory() as session:
        if session.get(Currency, "EUR") is None:
            session.add(Currency(code="EUR", symbol="€", is_default=True))
            session.flush()
        for year, month in months:
            budget = Budget(
                start_date=date(year, month, 1),
                amount_cents=amount,
                alert_threshold_cents=threshold,
                currency_code="EUR",
            )
            session.add(budget)
            session.flush()
            ids[(year, month)] = budget.id
        session.commit()
    return ids


def _budgets(session_factory):
    with session_factory() as session:
        return session.scalars(
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .order_by(Budget.start_date)
        ).all()


def _months(budgets):
    return [(b.start_date.year, b.start_date.month) for b in budgets]


def _second_category(session_factory):
    with session_factory() as session:
        item = Category(name="Groceries")
        session.add(item)
        session.commit()
        return item


def test_create_budget_twice_in_same_month_fails(session_factory, settings):
    engine = _engine(session_factory, settings)

    budget = engine.create_budget(50000, 40000, now=datetime(2025, 3, 2, 9, 0))

    assert budget.start_date == date(2025, 3, 1)
    assert budget.currency_code == "EUR"
    with pytest.raises(BudgetExistsForCurrentMonth):
        engine.create_budget(10000, now=date(2025, 3, 28))


def test_create_budget_without_amount_is_allowed(session_factory, settings):
    budget = _engine(session_factory, settings).create_budget(now=date(2025, 3, 2))

    assert budget.amount_cents is None
    assert budget.alert_threshold_cents is None


def test_create_budget_requires_default_currency(session_factory, settings):
    settings.default_currency = ""

    with pytest.raises(NoCurrencyAvailable):
        _engine(session_factory, settings).create_budget(50000, now=date(2025, 3, 2))

    assert _budgets(session_factory) == []


@pytest.mark.parametrize(
    "amount, threshold, error",
    [
        (0, None, InvalidAmount),
        (-100, None, InvalidAmount),
        (10**20, None, InvalidAmount),
        (MAX_CENTS + 1, MAX_CENTS, InvalidAmount),
        (None, 100, InvalidThreshold),
        (1000, 0, InvalidThreshold),
        (1000, 1001, InvalidThreshold),
    ],
)
def test_create_budget_validates_limits(session_factory, settings, amount, threshold, error):
    with pytest.raises(error):
        _engine(session_factory, settings).create_budget(
            amount, threshold, now=date(2025, 3, 2)
        )

    assert _budgets(session_factory) == []


def test_threshold_equal_to_amount_is_valid(session_factory, settings):
    budget = _engine(session_factory, settings).create_budget(
        1000, 1000, now=date(2025, 3, 2)
    )

    assert budget.alert_threshold_cents == 1000


def test_create_future_budgets_skips_existing_months(session_factory, settings, category):
    ids = _seed_budgets(session_factory, [(2025, 3)])
    _seed_budgets(session_factory, [(2025, 6)], amount=70000)
    with session_factory() as session:
        session.add(
            CategoryBudget(
                budget_id=ids[(2025, 3)],
                category_id=category.id,
                amount_cents=12000,
                currency_code="EUR",
                year=2025,
                month=3,
            )
        )
        session.commit()

    created = _engine(session_factory, settings).create_future_budgets(ids[(2025, 3)], 6)

    assert _months(created) == [(2025, 4), (2025, 5), (2025, 7), (2025, 8), (2025, 9)]
    budgets = _budgets(session_factory)
    assert _months(budgets) == [(2025, m) for m in range(3, 10)]
    amounts = {b.start_date.month: b.amount_cents for b in budgets}
    assert amounts[6] == 70000
    assert all(amounts[m] == 50000 for m in (4, 5, 7, 8, 9))
    clone = next(b for b in budgets if b.start_date.month == 8)
    assert [(cb.category_id, cb.amount_cents, cb.year, cb.month)
            for cb in clone.category_budgets] == [(category.id, 12000, 2025, 8)]


def test_ensure_future_budgets_is_gap_free_through_horizon(session_factory, settings):
    _seed_budgets(session_factory, [(2025, 1)], amount=30000, threshold=25000)
    engine = _engine(session_factory, settings)

    created = engine.ensure_future_budgets(date(2025, 3, 10))

    budgets = _budgets(session_factory)
    assert _months(budgets) == [(2025, m) for m in range(1, 10)]
    assert len(created) == 8
    assert all(b.amount_cents == 30000 for b in budgets)
    assert all(b.alert_threshold_cents == 25000 for b in budgets)
    assert engine.ensure_future_budgets(date(2025, 3, 10)) == []


def test_ensure_future_budgets_fills_holes(session_factory, settings):
    _seed_budgets(session_factory, [(2025, 1)], amount=30000)
    _seed_budgets(session_factory, [(2025, 4)], amount=45000)

    _engine(session_factory, settings).ensure_future_budgets(date(2025, 4, 2))

    budgets = _budgets(session_factory)
    assert _months(budgets) == [(2025, m) for m in range(1, 11)]
    amounts = [b.amount_cents for b in budgets]
    assert amounts[:3] == [30000, 30000, 30000]
    assert set(amounts[3:]) == {45000}


def test_ensure_future_budgets_without_budgets_is_noop(session_factory, settings):
    assert _engine(session_factory, settings).ensure_future_budgets(date(2025, 3, 1)) == []
    assert _budgets(session_factory) == []


def test_single_rollover_step(session_factory, settings):
    _seed_budgets(session_factory, [(2025, 3)])
    engine = _engine(session_factory, settings)

    created = engine.create_next_month_budget_if_needed(date(2025, 3, 10))

    assert created.start_date == date(2025, 4, 1)
    _seed_budgets(session_factory, [(2025, 5), (2025, 6), (2025, 7), (2025, 8), (2025, 9)])
    assert engine.create_next_month_budget_if_needed(date(2025, 3, 10)) is None


def test_update_budget_cascades_forward_only(session_factory, settings):
    ids = _seed_budgets(session_factory, [(2025, m) for m in range(3, 7)])
    events = EventBus()
    seen = []
    events.subscribe(BudgetUpdated, seen.append)

    _engine(session_factory, settings, events).update_budget(ids[(2025, 5)], 80000, 60000)

    budgets = {b.start_date.month: b for b in _budgets(session_factory)}
    assert [budgets[m].amount_cents for m in (3, 4)] == [50000, 50000]
    assert [budgets[m].amount_cents for m in (5, 6)] == [80000, 80000]
    assert [budgets[m].alert_threshold_cents for m in (5, 6)] == [60000, 60000]
    assert seen[0].months == ("2025-05", "2025-06")


def test_update_budget_validates_before_writing(session_factory, settings):
    ids = _seed_budgets(session_factory, [(2025, 3), (2025, 4)])

    with pytest.raises(InvalidThreshold):
        _engine(session_factory, settings).update_budget(ids[(2025, 3)], 1000, 2000)

    assert all(b.amount_cents == 50000 for b in _budgets(session_factory))


def test_update_budget_rejects_out_of_range_amount(session_factory, settings):
    ids = _seed_budgets(session_factory, [(2025, 3), (2025, 4)])

    with pytest.raises(InvalidAmount):
        _engine(session_factory, settings).update_budget(ids[(2025, 3)], 10**20)

    assert all(b.amount_cents == 50000 for b in _budgets(session_factory))


class _FailingCommitSession(Session):
    def commit(self):
        raise OperationalError("COMMIT", {}, Exception("database is locked"))


def _failing_engine(engine, settings):
    factory = sessionmaker(
        bind=engine,
        class_=_FailingCommitSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return _engine(factory, settings)


def test_failed_cascade_leaves_every_month_untouched(
    engine, session_factory, settings, category
):
    ids = _seed_budgets(session_factory, [(2025, m) for m in range(3, 7)], threshold=40000)
    _engine(session_factory, settings).save_category_budgets(
        ids[(2025, 3)], {category.id: "100"}
    )
    rollover = _failing_engine(engine, settings)
    events = []
    rollover.events.subscribe(BudgetUpdated, events.append)

    with pytest.raises(SaveFailed):
        rollover.update_budget(ids[(2025, 4)], 90000, 80000)
    with pytest.raises(SaveFailed):
        rollover.save_category_budgets(ids[(2025, 4)], {category.id: "250"})
    with pytest.raises(SaveFailed):
        rollover.delete_budget(ids[(2025, 5)])

    assert not rollover.busy
    assert events == []
    budgets = _budgets(session_factory)
    assert _months(budgets) == [(2025, m) for m in range(3, 7)]
    assert {(b.amount_cents, b.alert_threshold_cents) for b in budgets} == {(50000, 40000)}
    assert {cb.amount_cents for b in budgets for cb in b.category_budgets} == {10000}

    rollover.session_factory = session_factory
    assert rollover.update_budget(ids[(2025, 4)], 90000).amount_cents == 90000


def test_delete_budget_cascades_forward_only(session_factory, settings, category):
    ids = _seed_budgets(session_factory, [(2025, m) for m in range(3, 7)])
    engine = _engine(session_factory, settings)
    engine.save_category_budgets(ids[(2025, 3)], {category.id: "100"})

    removed = engine.delete_budget(ids[(2025, 5)])

    assert removed == 2
    assert _months(_budgets(session_factory)) == [(2025, 3), (2025, 4)]
    with session_factory() as session:
        remaining = session.scalars(select(CategoryBudget)).all()
    assert sorted(cb.month for cb in remaining) == [3, 4]


def test_delete_unknown_budget(session_factory, settings):
    with pytest.raises(NotFound):
        _engine(session_factory, settings).delete_budget(999)


def test_save_category_budgets_replaces_forward(session_factory, settings, category):
    groceries = _second_category(session_factory)
    ids = _seed_budgets(session_factory, [(2025, m) for m in range(3, 7)])
    engine = _engine(session_factory, settings)

    engine.save_category_budgets(
        ids[(2025, 4)], {category.id: "120,50 €", groceries.id: "1e30"}
    )

    budgets = {b.start_date.month: b for b in _budgets(session_factory)}
    assert budgets[3].category_budgets == []
    for month in (4, 5, 6):
        limits = [(cb.category_id, cb.amount_cents, cb.month)
                  for cb in budgets[month].category_budgets]
        assert limits == [(category.id, 12050, month)]

    engine.save_category_budgets(ids[(2025, 5)], {groceries.id: "40"})

    budgets = {b.start_date.month: b for b in _budgets(session_factory)}
    assert [cb.category_id for cb in budgets[4].category_budgets] == [category.id]
    for month in (5, 6):
        limits = [(cb.category_id, cb.amount_cents)
                  for cb in budgets[month].category_budgets]
        assert limits == [(groceries.id, 4000)]


def test_recompute_only_raises_amount(session_factory, settings, category):
    groceries = _second_category(session_factory)
    ids = _seed_budgets(session_factory, [(2025, 3)], amount=10000)
    high = _seed_budgets(session_factory, [(2025, 4)], amount=90000)
    engine = _engine(session_factory, settings)
    engine.save_category_budgets(ids[(2025, 3)], {category.id: "100", groceries.id: "20,50"})

    raised = engine.recompute_budget_amount_from_categories(ids[(2025, 3)])
    kept = engine.recompute_budget_amount_from_categories(high[(2025, 4)])

    assert raised.amount_cents == 12050
    assert kept.amount_cents == 90000
    assert engine.total_category_budget(kept) == 12050
    assert engine.everything_else_amount(kept) == 90000 - 12050
    assert engine.everything_else_amount(raised) is None


def test_recompute_sets_amount_when_unset(session_factory, settings, category):
    budget = _engine(session_factory, settings).create_budget(now=date(2025, 3, 2))
    engine = _engine(session_factory, settings)
    engine.save_category_budgets(budget.id, {category.id: "75"})

    updated = engine.recompute_budget_amount_from_categories(budget.id)

    assert updated.amount_cents == 7500


def test_concurrent_interactive_call_fails_fast(session_factory, settings):
    ids = _seed_budgets(session_factory, [(2025, 3)])
    engine = _engine(session_factory, settings)

    assert engine._lock.acquire(blocking=False)
    try:
        assert engine.busy
        with pytest.raises(OperationInProgress):
            engine.update_budget(ids[(2025, 3)], 1000)
        with pytest.raises(OperationInProgress):
            engine.create_budget(1000, now=date(2025, 4, 2))
        assert len(engine.ensure_future_budgets(date(2025, 3, 10))) == 6
    finally:
        engine._lock.release()

    assert engine.update_budget(ids[(2025, 3)], 1000).amount_cents == 1000


def test_progress_counts_converted_amounts_and_ignores_skipped(
    session_factory, settings, category
):
    groceries = _second_category(session_factory)
    ids = _seed_budgets(session_factory, [(2025, 3)], amount=50000, threshold=1000)
    engine = _engine(session_factory, settings)
    engine.save_category_budgets(ids[(2025, 3)], {category.id: "10"})
    with session_factory() as session:
        for cat, cents, status, day in (
            (category.id, 900, RecurrenceStatus.generated, date(2025, 3, 15)),
            (groceries.id, 300, RecurrenceStatus.manual, date(2025, 3, 16)),
            (category.id, 0, RecurrenceStatus.skipped, date(2025, 3, 17)),
            (category.id, 5000, RecurrenceStatus.manual, date(2025, 4, 1)),
        ):
            session.add(
                Expense(
                    date=day,
                    occurred_at=datetime.combine(day, datetime.min.time()),
                    amount_cents=cents,
                    converted_amount_cents=cents,
                    conversion_rate_micros=1_000_000,
                    currency_code="EUR",
                    category_id=cat,
                    recurrence_status=status,
                )
            )
        session.commit()

    progress = engine.progress(ids[(2025, 3)])

    assert progress["spent_cents"] == 1200
    assert progress["remaining_cents"] == 48800
    assert progress["threshold_reached"] is True
    assert progress["unbudgeted_spent_cents"] == 300
    assert progress["categories"][category.id] == {
        "budget_cents": 1000,
        "spent_cents": 900,
        "remaining_cents": 100,
    }


def test_queries(session_factory, settings):
    _seed_budgets(session_factory, [(2025, 3), (2025, 4)])
    engine = _engine(session_factory, settings)

    assert engine.current_month_budget(date(2025, 4, 20)).start_date == date(2025, 4, 1)
    assert engine.budget_for_month(date(2025, 5, 1)) is None
    assert _months(engine.list_budgets()) == [(2025, 3), (2025, 4)]


def test_returned_budgets_carry_category_limits(session_factory, settings, category):
    engine = _engine(session_factory, settings)
    created = engine.create_budget(50000, now=date(2025, 3, 2))
    assert created.category_budgets == []

    engine.save_category_budgets(created.id, {category.id: "75"})
    following = engine.create_next_month_budget_if_needed(date(2025, 3, 10))
    future = engine.create_future_budgets(created.id, 2)

    for budget in (
        engine.get_budget(created.id),
        engine.budget_for_month(date(2025, 3, 15)),
        engine.recompute_budget_amount_from_categories(created.id),
        following,
        *future,
    ):
        assert [cb.amount_cents for cb in budget.category_budgets] == [7500]
    assert engine.total_category_budget(following) == 7500
