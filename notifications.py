import logging
from datetime import datetime, time, timedelta
from typing import Optional, Protocol

from amounts import format_amount


logger = logging.getLogger(__name__)

RECURRING_REMINDER_PREFIX = "recurringExpense-"


class NotificationScheduler(Protocol):
    def schedule(self, identifier: str, fire_at: datetime, message: str) -> None: ...

    def cancel_all(self, prefix: str) -> None: ...


class LoggingNotificationScheduler:
    """Keeps pending reminders in memory and logs them.

    Delivery belongs to the host platform; this is the default used when no
    push channel is wired in.
    """

    def __init__(self) -> None:
        self.pending: dict[str, tuple[datetime, str]] = {}

    def schedule(self, identifier: str, fire_at: datetime, message: str) -> None:
        self.pending[identifier] = (fire_at, message)
        logger.info(f"reminder_scheduled: id={identifier} fire_at={fire_at.isoformat()}")

    def cancel_all(self, prefix: str) -> None:
        removed = [key for key in self.pending if key.startswith(prefix)]
        for key in removed:
            del self.pending[key]
        logger.info(f"reminders_cancelled: prefix={prefix} count={len(removed)}")


def reminder_id(template_id: int) -> str:
    # Fixed width so one template's id is never a prefix of another's.
    return f"{RECURRING_REMINDER_PREFIX}{template_id:010d}"


def _reminder_time(value: str) -> time:
    try:
        hour, minute = value.split(":", 1)
        return time(int(hour), int(minute))
    except ValueError:
        logger.warning(f"reminder_time_invalid: value={value!r} fallback=09:00")
        return time(9, 0)


def build_reminder(template, settings, now: datetime) -> Optional[tuple[str, datetime, str]]:
    """Identifier, fire time and text of the reminder for the template's next due day.

    Returns ``None`` when the reminder time has already passed.
    """
    days = max(settings.reminder_days_before, 0)
    fire_day = template.next_due_date - timedelta(days=days)
    fire_at = datetime.combine(fire_day, _reminder_time(settings.reminder_time))
    if fire_at <= now:
        return None
    if days == 0:
        when = "today"
    elif days == 1:
        when = "tomorrow"
    else:
        when = f"in {days} days"
    name = template.category.name if template.category else "An expense"
    amount = format_amount(template.amount_cents, template.currency_code)
    return reminder_id(template.id), fire_at, f"{name} of {amount} is due {when}"


def notify_safely(
    scheduler: NotificationScheduler, identifier: str, fire_at: datetime, message: str
) -> None:
    try:
        scheduler.schedule(identifier, fire_at, message)
    except Exception:
        logger.warning(f"reminder_schedule_failed: id={identifier}", exc_info=True)


def cancel_safely(scheduler: NotificationScheduler, prefix: str) -> None:
    try:
        scheduler.cancel_all(prefix)
    except Exception:
        logger.warning(f"reminder_cancel_failed: prefix={prefix}", exc_info=True)
