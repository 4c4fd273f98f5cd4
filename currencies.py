from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import InvalidCurrency, NoCurrencyAvailable
from fx_rates import CurrencyConverter, FxRateService
from models import Budget, Currency, Expense, RecurringTemplate


logger = logging.getLogger(__name__)

ConverterFactory = Callable[[Session], CurrencyConverter]


class CurrencyService:
    def __init__(
        self,
        session: Session,
        settings: Optional[Settings] = None,
        converter_factory: Optional[ConverterFactory] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.converter_factory = converter_factory or (
            lambda s: FxRateService(s, self.settings)
        )

    def list_all(self) -> list[Currency]:
        return self.session.scalars(select(Currency).order_by(Currency.code)).all()

    def get(self, code: str) -> Currency:
        currency = self.session.get(Currency, (code or "").upper())
        if currency is None:
            raise InvalidCurrency(f"Unknown currency: {code}")
        return currency

    def ensure(
        self, code: str, name: Optional[str] = None, symbol: Optional[str] = None
    ) -> Currency:
        clean = (code or "").strip().upper()
        if len(clean) != 3 or not clean.isalpha():
            raise InvalidCurrency(f"Invalid currency code: {code!r}")
        currency = self.session.get(Currency, clean)
        if currency is None:
            currency = Currency(code=clean, name=name, symbol=symbol, is_default=False)
            self.session.add(currency)
            self.session.flush()
        return currency

    def default_currency(self) -> Optional[Currency]:
        currency = self.session.scalars(
            select(Currency).where(Currency.is_default.is_(True)).limit(1)
        ).first()
        if currency is not None:
            return currency
        if not self.settings.default_currency:
            return None
        currency = self.ensure(self.settings.default_currency)
        currency.is_default = True
        return currency

    def require_default(self) -> Currency:
        currency = self.default_currency()
        if currency is None:
            raise NoCurrencyAvailable()
        return currency

    def set_default(self, code: str) -> Currency:
        currency = self.ensure(code)
        self.session.execute(
            update(Currency).where(Currency.code != currency.code).values(is_default=False)
        )
        currency.is_default = True
        return currency

    def change_default_currency(self, code: str) -> Currency:
        """Switch the default currency and re-express stored amounts in it.

        Every record is converted at the rate of its own date. A missing rate
        raises RateUnavailable before anything is written, so the caller's
        session can be discarded as a whole.
        """
        target = self.ensure(code)
        current = self.require_default()
        if current.code == target.code:
            return current

        converter = self.converter_factory(self.session)
        updates: list[tuple[object, str, int]] = []

        for expense in self.session.scalars(select(Expense)).all():
            conversion = converter.convert(
                expense.amount_cents, expense.currency_code, target.code, expense.date
            )
            updates.append((expense, "converted_amount_cents", conversion.amount_cents))
            updates.append((expense, "conversion_rate_micros", conversion.rate_micros))

        for template in self.session.scalars(select(RecurringTemplate)).all():
            conversion = converter.convert(
                template.amount_cents,
                template.currency_code,
                target.code,
                template.next_due_date,
            )
            updates.append((template, "converted_amount_cents", conversion.amount_cents))

        for budget in self.session.scalars(
            select(Budget).where(Budget.currency_code == current.code)
        ).all():
            for attr in ("amount_cents", "alert_threshold_cents"):
                cents = getattr(budget, attr)
                if cents is not None:
                    converted = self._convert(converter, budget, cents, target.code)
                    updates.append((budget, attr, converted))
            updates.append((budget, "currency_code", target.code))
            for category_budget in budget.category_budgets:
                converted = self._convert(
                    converter, budget, category_budget.amount_cents, target.code
                )
                updates.append((category_budget, "amount_cents", converted))
                updates.append((category_budget, "currency_code", target.code))

        for record, attr, value in updates:
            setattr(record, attr, value)
        self.set_default(target.code)
        logger.info(
            f"default_currency_changed: from={current.code} to={target.code} "
            f"records={len({id(record) for record, _, _ in updates})}"
        )
        return target

    @staticmethod
    def _convert(
        converter: CurrencyConverter, budget: Budget, cents: int, to_code: str
    ) -> int:
        conversion = converter.convert(
            cents, budget.currency_code, to_code, budget.start_date
        )
        return conversion.amount_cents
