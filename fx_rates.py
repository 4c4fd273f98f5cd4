from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from typing import Optional, Protocol
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import RateUnavailable
from models import ExchangeRate


logger = logging.getLogger(__name__)

MICROS = Decimal("1000000")


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


@dataclass(frozen=True)
class Conversion:
    amount_cents: int
    rate: Decimal
    rate_date: date

    @property
    def rate_micros(self) -> int:
        return FxRateService.rate_to_micros(self.rate)


class CurrencyConverter(Protocol):
    def convert(
        self, amount_cents: int, from_code: str, to_code: str, on_date: date
    ) -> Conversion: ...


class FxRateService:
    """Historical-rate converter.

    Rates are looked up for the requested day: first in the ``exchange_rates``
    cache, then from the configured provider (stored in the caller's session so
    the cache row commits with the caller's batch), and finally from the most
    recent cached rate no older than ``fx_max_staleness_days``. The current
    rate is never used for a past date.
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self._resolved: dict[tuple[str, str, date], tuple[Decimal, date]] = {}

    def convert(
        self, amount_cents: int, from_code: str, to_code: str, on_date: date
    ) -> Conversion:
        from_code = from_code.upper()
        to_code = to_code.upper()
        if from_code == to_code:
            return Conversion(amount_cents, Decimal("1"), on_date)

        rate, rate_date = self.rate_for_date(from_code, to_code, on_date)
        converted = (Decimal(amount_cents) * rate).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return Conversion(int(converted), rate, rate_date)

    def rate_for_date(self, base: str, quote: str, on_date: date) -> tuple[Decimal, date]:
        key = (base, quote, on_date)
        if key not in self._resolved:
            self._resolved[key] = self._resolve(base, quote, on_date)
        return self._resolved[key]

    def _resolve(self, base: str, quote: str, on_date: date) -> tuple[Decimal, date]:
        cached = self._cached(base, quote, on_date, exact=True)
        if cached is not None:
            return cached

        provider = (self.settings.fx_provider or "frankfurter").lower()
        if provider == "frankfurter":
            try:
                fx_quote = self._apply_markup(
                    _fetch_frankfurter_quote(
                        base, quote, on_date, timeout=self.settings.fx_timeout_secs
                    )
                )
            except RuntimeError as exc:
                logger.warning(
                    f"fx_fetch_failed: pair={base}/{quote} date={on_date} error={exc}"
                )
            else:
                self._store(fx_quote, on_date)
                return fx_quote.rate, fx_quote.rate_date
        elif provider != "offline":
            raise RateUnavailable(f"Unsupported FX provider: {provider}")

        stale = self._cached(base, quote, on_date, exact=False)
        if stale is not None:
            return stale
        raise RateUnavailable(f"No {base}/{quote} rate available for {on_date}")

    def _cached(
        self, base: str, quote: str, on_date: date, *, exact: bool
    ) -> Optional[tuple[Decimal, date]]:
        earliest = on_date - timedelta(days=self.settings.fx_max_staleness_days)
        for pair_base, pair_quote, inverse in ((base, quote, False), (quote, base, True)):
            stmt = select(ExchangeRate).where(
                ExchangeRate.base == pair_base,
                ExchangeRate.quote == pair_quote,
            )
            if exact:
                stmt = stmt.where(ExchangeRate.requested_date == on_date)
            else:
                stmt = stmt.where(
                    ExchangeRate.requested_date <= on_date,
                    ExchangeRate.requested_date >= earliest,
                )
            row = self.session.scalars(
                stmt.order_by(ExchangeRate.requested_date.desc()).limit(1)
            ).first()
            if row is None:
                continue
            rate = Decimal(row.rate_micros) / MICROS
            if inverse:
                rate = Decimal("1") / rate
            return rate, row.rate_date
        return None

    def _apply_markup(self, quote: FxQuote) -> FxQuote:
        markup_bps = self.settings.fx_markup_bps
        if not markup_bps:
            return quote
        factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
        return FxQuote(
            provider=quote.provider,
            base=quote.base,
            quote=quote.quote,
            rate=(quote.rate * factor),
            rate_date=quote.rate_date,
            fetched_at=quote.fetched_at,
        )

    def _store(self, quote: FxQuote, requested: date) -> None:
        self.session.add(
            ExchangeRate(
                base=quote.base,
                quote=quote.quote,
                rate_micros=self.rate_to_micros(quote.rate),
                rate_date=quote.rate_date,
                requested_date=requested,
                provider=quote.provider,
                fetched_at=quote.fetched_at.replace(tzinfo=None),
            )
        )

    @staticmethod
    def rate_to_micros(rate: Decimal) -> int:
        return int((rate * MICROS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote(
    base: str, quote: str, on_date: date, *, timeout: float
) -> FxQuote:
    url = f"https://api.frankfurter.app/{on_date.isoformat()}?from={base}&to={quote}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (OSError, http.client.HTTPException, UnicodeDecodeError, ValueError) as exc:
        raise RuntimeError(
            f"Failed to fetch FX rate from Frankfurter for {on_date}"
        ) from exc

    try:
        rate = Decimal(str(payload["rates"][quote]))
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise RuntimeError("Unexpected FX provider response") from exc
    if not rate.is_finite() or rate <= 0:
        raise RuntimeError(f"Unexpected FX rate {rate} for {base}/{quote}")

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=rate,
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
