import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from budgets import BudgetRolloverEngine
from config import Settings, get_settings
from currencies import ConverterFactory, CurrencyService
from database import SessionLocal, commit_or_rollback
from errors import (
    ConversionError,
    ExpensesError,
    NotFound,
    PersistenceError,
    StateError,
    ValidationError,
)
from events import BudgetUpdated, Event, EventBus, ExpensesUpdated
from fx_rates import FxRateService
from notifications import LoggingNotificationScheduler, NotificationScheduler
from recurrence import ExpenseGenerator, SessionFactory
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryLimitsIn,
    CategoryOut,
    CurrencyIn,
    ExpenseIn,
    ExpenseOut,
    FutureBudgetsIn,
    RecurringTemplateIn,
    TemplateOut,
)
from services import CategoryService, ExpenseService, RecurringTemplateService


logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Long-lived collaborators shared by the API and the background jobs."""

    settings: Settings
    session_factory: SessionFactory
    converter_factory: ConverterFactory
    events: EventBus
    notifier: NotificationScheduler
    generator: ExpenseGenerator
    rollover: BudgetRolloverEngine
    scheduler: SchedulerManager


def _log_event(event: Event) -> None:
    logger.info(f"event: {event!r}")


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    *,
    converter_factory: Optional[ConverterFactory] = None,
    notifier: Optional[NotificationScheduler] = None,
) -> Container:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    converter_factory = converter_factory or (
        lambda session: FxRateService(session, settings)
    )
    events = EventBus()
    events.subscribe(BudgetUpdated, _log_event)
    events.subscribe(ExpensesUpdated, _log_event)
    notifier = notifier or LoggingNotificationScheduler()
    generator = ExpenseGenerator(
        session_factory,
        settings=settings,
        converter_factory=converter_factory,
        events=events,
        notifier=notifier,
    )
    rollover = BudgetRolloverEngine(
        session_factory,
        settings=settings,
        converter_factory=converter_factory,
        events=events,
    )
    scheduler = SchedulerManager(
        generator,
        rollover,
        session_factory=session_factory,
        notifier=notifier,
        settings=settings,
    )
    return Container(
        settings=settings,
        session_factory=session_factory,
        converter_factory=converter_factory,
        events=events,
        notifier=notifier,
        generator=generator,
        rollover=rollover,
        scheduler=scheduler,
    )


def status_for(exc: ExpensesError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, StateError):
        return 409
    if isinstance(exc, ConversionError):
        return 502
    if isinstance(exc, PersistenceError):
        return 500
    return 400


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_db(container: Container = Depends(get_container)):
    db = container.session_factory()
    try:
        yield db
    finally:
        db.close()


router = APIRouter()


# -- categories & currencies -------------------------------------------------


@router.get("/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@router.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(data)


@router.get("/currencies")
def list_currencies(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
):
    service = CurrencyService(db, container.settings, container.converter_factory)
    return [
        {
            "code": c.code,
            "name": c.name,
            "symbol": c.symbol,
            "is_default": c.is_default,
        }
        for c in service.list_all()
    ]


@router.put("/currencies/default")
def change_default_currency(
    data: CurrencyIn,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    service = CurrencyService(db, container.settings, container.converter_factory)
    currency = service.ensure(data.code, data.name, data.symbol)
    service.change_default_currency(currency.code)
    commit_or_rollback(db)
    return {"code": currency.code, "is_default": True}


# -- budgets -----------------------------------------------------------------


@router.get("/budgets", response_model=list[BudgetOut])
def list_budgets(container: Container = Depends(get_container)):
    return container.rollover.list_budgets()


@router.post("/budgets", response_model=BudgetOut, status_code=201)
def create_budget(data: BudgetIn, container: Container = Depends(get_container)):
    return container.rollover.create_budget(
        data.amount_cents, data.alert_threshold_cents
    )


@router.put("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int, data: BudgetUpdateIn, container: Container = Depends(get_container)
):
    return container.rollover.update_budget(
        budget_id, data.amount_cents, data.alert_threshold_cents
    )


@router.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, container: Container = Depends(get_container)):
    return {"deleted": container.rollover.delete_budget(budget_id)}


@router.post(
    "/budgets/{budget_id}/future", response_model=list[BudgetOut], status_code=201
)
def create_future_budgets(
    budget_id: int,
    data: Optional[FutureBudgetsIn] = None,
    container: Container = Depends(get_container),
):
    months = data.months_ahead if data is not None else None
    return container.rollover.create_future_budgets(budget_id, months)


@router.put("/budgets/{budget_id}/category-limits", response_model=BudgetOut)
def save_category_limits(
    budget_id: int,
    data: CategoryLimitsIn,
    recompute: bool = False,
    container: Container = Depends(get_container),
):
    budget = container.rollover.save_category_budgets(budget_id, data.limits)
    if recompute:
        budget = container.rollover.recompute_budget_amount_from_categories(budget_id)
    return budget


@router.get("/budgets/{budget_id}/progress")
def budget_progress(budget_id: int, container: Container = Depends(get_container)):
    return container.rollover.progress(budget_id)


# -- recurring templates -----------------------------------------------------


def _templates(db: Session, container: Container) -> RecurringTemplateService:
    return RecurringTemplateService(
        db, container.settings, events=container.events, notifier=container.notifier
    )


@router.get("/templates", response_model=list[TemplateOut])
def list_templates(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
):
    return _templates(db, container).list()


@router.get("/templates/monthly-total")
def templates_monthly_total(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
):
    return {"monthly_total_cents": _templates(db, container).monthly_total()}


@router.post("/templates", response_model=TemplateOut, status_code=201)
def create_template(
    data: RecurringTemplateIn, container: Container = Depends(get_container)
):
    return container.generator.create_template(data)


@router.put("/templates/{template_id}", response_model=TemplateOut)
def update_template(
    template_id: int,
    data: RecurringTemplateIn,
    container: Container = Depends(get_container),
):
    return container.generator.update_template(template_id, data)


@router.delete("/templates/{template_id}", status_code=204)
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    _templates(db, container).delete(template_id)


@router.post("/templates/{template_id}/pause", response_model=TemplateOut)
def pause_template(
    template_id: int,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return _templates(db, container).pause(template_id)


@router.post("/templates/{template_id}/resume", response_model=TemplateOut)
def resume_template(
    template_id: int,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return _templates(db, container).resume(template_id)


@router.post("/templates/{template_id}/skip", response_model=TemplateOut)
def skip_template(
    template_id: int,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return _templates(db, container).skip_next(template_id)


# -- expenses & jobs ---------------------------------------------------------


@router.post("/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    service = ExpenseService(
        db,
        container.settings,
        converter_factory=container.converter_factory,
        events=container.events,
    )
    return service.create(data)


@router.post("/jobs/generate")
def run_generation(container: Container = Depends(get_container)):
    return {"generated": container.generator.catch_up()}


@router.post("/jobs/rollover")
def run_rollover(container: Container = Depends(get_container)):
    created = container.rollover.ensure_future_budgets()
    return {"created": [budget.start_date.isoformat() for budget in created]}


def create_app(
    container: Optional[Container] = None, *, run_scheduler: bool = True
) -> FastAPI:
    container = container or build_container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            container.scheduler.start()
        try:
            yield
        finally:
            if run_scheduler:
                container.scheduler.stop()

    app = FastAPI(title="Expense Tracker", lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(ExpensesError)
    async def expenses_error_handler(request: Request, exc: ExpensesError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"request_failed: path={request.url.path} error={exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
