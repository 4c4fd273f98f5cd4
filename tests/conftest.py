import copy
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from database import Base
from models import Category, ExchangeRate
from notifications import LoggingNotificationScheduler


def _foreign_keys_on(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(eng, "connect", _foreign_keys_on)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def settings():
    value = copy.copy(get_settings())
    value.fx_provider = "offline"
    value.default_currency = "EUR"
    value.fx_markup_bps = 0
    value.fx_max_staleness_days = 7
    value.budget_horizon_months = 6
    value.future_budget_months = 6
    value.generation_max_passes = 24
    value.reminder_days_before = 1
    value.reminder_time = "09:00"
    return value


@pytest.fixture
def notifier():
    return LoggingNotificationScheduler()


@pytest.fixture
def category(session_factory):
    with session_factory() as session:
        item = Category(name="Subscriptions", color="#336699")
        session.add(item)
        session.commit()
        return item


def add_rate(session_factory, base, quote, rate_micros, on):
    with session_factory() as session:
        session.add(
            ExchangeRate(
                base=base,
                quote=quote,
                rate_micros=rate_micros,
                rate_date=on,
                requested_date=on,
                provider="test",
                fetched_at=datetime(on.year, on.month, on.day, 16, 0),
            )
        )
        session.commit()


@pytest.fixture
def usd_rates(session_factory):
    """USD -> EUR at 0.9 for a handful of days used across the tests."""
    days = [
        date(2025, 1, 15),
        date(2025, 2, 15),
        date(2025, 3, 15),
        date(2025, 3, 1),
        date(2025, 3, 20),
    ]
    for day in days:
        add_rate(session_factory, "USD", "EUR", 900_000, day)
    return days
