import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        fx_provider: str,
        fx_markup_bps: int,
        fx_timeout_secs: float,
        fx_max_staleness_days: int,
        budget_horizon_months: int,
        future_budget_months: int,
        generation_max_passes: int,
        reminder_days_before: int,
        reminder_time: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_max_staleness_days = fx_max_staleness_days
        self.budget_horizon_months = budget_horizon_months
        self.future_budget_months = future_budget_months
        self.generation_max_passes = generation_max_passes
        self.reminder_days_before = reminder_days_before
        self.reminder_time = reminder_time


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    default_currency = os.getenv("EXPENSES_DEFAULT_CURRENCY", "EUR").upper()
    fx_provider = os.getenv("EXPENSES_FX_PROVIDER", "frankfurter")
    fx_markup_bps = int(os.getenv("EXPENSES_FX_MARKUP_BPS", "0"))
    fx_timeout_secs = float(os.getenv("EXPENSES_FX_TIMEOUT_SECS", "5"))
    fx_max_staleness_days = int(os.getenv("EXPENSES_FX_MAX_STALENESS_DAYS", "7"))
    budget_horizon_months = int(os.getenv("EXPENSES_BUDGET_HORIZON_MONTHS", "6"))
    future_budget_months = int(os.getenv("EXPENSES_FUTURE_BUDGET_MONTHS", "6"))
    generation_max_passes = int(os.getenv("EXPENSES_GENERATION_MAX_PASSES", "24"))
    reminder_days_before = int(os.getenv("EXPENSES_REMINDER_DAYS_BEFORE", "1"))
    reminder_time = os.getenv("EXPENSES_REMINDER_TIME", "09:00")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        fx_provider=fx_provider,
        fx_markup_bps=fx_markup_bps,
        fx_timeout_secs=fx_timeout_secs,
        fx_max_staleness_days=fx_max_staleness_days,
        budget_horizon_months=budget_horizon_months,
        future_budget_months=future_budget_months,
        generation_max_passes=generation_max_passes,
        reminder_days_before=reminder_days_before,
        reminder_time=reminder_time,
    )
