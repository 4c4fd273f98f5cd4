import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Type, TypeVar


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    ts: datetime = field(default_factory=datetime.utcnow, compare=False)


@dataclass(frozen=True)
class BudgetUpdated(Event):
    months: tuple[str, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class ExpensesUpdated(Event):
    expense_ids: tuple[int, ...] = ()
    reason: str = ""


E = TypeVar("E", bound=Event)


class EventBus:
    """Synchronous in-process observer registry, keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: Dict[Type[Event], List[Callable[[Event], None]]] = {}

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event) -> None:
        # Publishing happens after a successful commit; a failing observer must
        # not turn a persisted change into an error for the caller.
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                logger.exception(f"event_handler_failed: event={type(event).__name__}")
