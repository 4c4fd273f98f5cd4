from datetime import date, datetime

from events import BudgetUpdated, EventBus, ExpensesUpdated
from models import Category, RecurringTemplate
from notifications import LoggingNotificationScheduler, build_reminder, reminder_id
from periods import Month, add_months, days_in_month, floor_to_month


def _template(next_due, currency="EUR", amount=1299):
    template = RecurringTemplate(
        id=7, amount_cents=amount, currency_code=currency, next_due_date=next_due
    )
    template.category = Category(name="Netflix")
    return template


def test_reminder_fires_days_before_due(settings):
    settings.reminder_days_before = 2
    settings.reminder_time = "08:30"

    identifier, fire_at, message = build_reminder(
        _template(date(2025, 3, 20)), settings, datetime(2025, 3, 1, 12, 0)
    )

    assert identifier == "recurringExpense-0000000007"
    assert fire_at == datetime(2025, 3, 18, 8, 30)
    assert message == "Netflix of 12,99 EUR is due in 2 days"


def test_reminder_in_the_past_is_dropped(settings):
    assert build_reminder(
        _template(date(2025, 3, 2)), settings, datetime(2025, 3, 1, 12, 0)
    ) is None


def test_invalid_reminder_time_falls_back(settings):
    settings.reminder_days_before = 0
    settings.reminder_time = "noon"

    _, fire_at, message = build_reminder(
        _template(date(2025, 3, 20)), settings, datetime(2025, 3, 1)
    )

    assert fire_at == datetime(2025, 3, 20, 9, 0)
    assert message.endswith("is due today")


def test_cancel_all_matches_prefix_only():
    scheduler = LoggingNotificationScheduler()
    scheduler.schedule(reminder_id(1), datetime(2025, 3, 1), "a")
    scheduler.schedule(reminder_id(12), datetime(2025, 3, 1), "b")
    scheduler.schedule("budgetAlert-1", datetime(2025, 3, 1), "c")

    scheduler.cancel_all(reminder_id(1))
    assert sorted(scheduler.pending) == ["budgetAlert-1", reminder_id(12)]

    scheduler.cancel_all("recurringExpense-")
    assert list(scheduler.pending) == ["budgetAlert-1"]


def test_event_bus_routes_by_type_and_isolates_failures():
    bus = EventBus()
    budgets, expenses = [], []

    def broken(event):
        raise ValueError("observer bug")

    bus.subscribe(BudgetUpdated, broken)
    bus.subscribe(BudgetUpdated, budgets.append)
    bus.subscribe(ExpensesUpdated, expenses.append)

    bus.publish(BudgetUpdated(months=("2025-03",), reason="updated"))
    bus.unsubscribe(BudgetUpdated, budgets.append)
    bus.publish(BudgetUpdated(months=("2025-04",)))

    assert [e.months for e in budgets] == [("2025-03",)]
    assert expenses == []


def test_month_helpers():
    assert Month(2024, 12).shift(1) == Month(2025, 1)
    assert Month(2025, 1).shift(-1) == Month(2024, 12)
    assert Month(2024, 2).end == date(2024, 2, 29)
    assert str(Month(2025, 3)) == "2025-03"
    assert days_in_month(2025, 2) == 28
    assert floor_to_month(datetime(2025, 3, 31, 23, 59)) == date(2025, 3, 1)
    assert add_months(date(2025, 8, 31), 6) == date(2026, 2, 28)
