from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import BusinessRuleViolation, StorageFailure
from models import ExchangeRate
from money import convert_units


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


def rate_to_micros(rate: Decimal) -> int:
    return int(
        (rate * Decimal("1000000")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def micros_to_rate(micros: int) -> Decimal:
    return Decimal(micros) / Decimal("1000000")


class RateProvider:
    """Converts fixed-point amounts between currencies."""

    name = "identity"

    def rate(self, base: str, quote: str, on_date: Optional[date] = None) -> Decimal:
        if base.upper() == quote.upper():
            return Decimal("1")
        raise BusinessRuleViolation(f"No exchange rate from {base} to {quote}")

    def convert_units(
        self, units: int, base: str, quote: str, on_date: Optional[date] = None
    ) -> int:
        if base.upper() == quote.upper():
            return units
        return convert_units(units, self.rate(base, quote, on_date))


class ExchangeRateTable(RateProvider):
    """Rates kept in the ``exchange_rates`` table; inverse pairs are derived."""

    name = "table"

    def __init__(self, session: Session) -> None:
        self.session = session
        self._cache: dict[tuple[str, str, Optional[date]], Decimal] = {}

    def _lookup(self, base: str, quote: str, on_date: Optional[date]) -> Optional[int]:
        stmt = select(ExchangeRate.rate_micros).where(
            ExchangeRate.from_currency == base,
            ExchangeRate.to_currency == quote,
        )
        if on_date is not None:
            stmt = stmt.where(ExchangeRate.rate_date <= on_date)
        stmt = stmt.order_by(ExchangeRate.rate_date.desc()).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def rate(self, base: str, quote: str, on_date: Optional[date] = None) -> Decimal:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal("1")
        key = (base, quote, on_date)
        if key in self._cache:
            return self._cache[key]
        direct = self._lookup(base, quote, on_date)
        if direct is not None:
            rate = micros_to_rate(direct)
        else:
            inverse = self._lookup(quote, base, on_date)
            if inverse is None:
                raise BusinessRuleViolation(f"No exchange rate from {base} to {quote}")
            rate = Decimal("1") / micros_to_rate(inverse)
        self._cache[key] = rate
        return rate


class FrankfurterRates(RateProvider):
    name = "frankfurter"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def quote_for_date(self, base: str, quote: str, on_date: date) -> FxQuote:
        return _fetch_frankfurter_quote(
            base.upper(), quote.upper(), on_date, timeout=self.settings.fx_timeout_secs
        )

    def rate(self, base: str, quote: str, on_date: Optional[date] = None) -> Decimal:
        if base.upper() == quote.upper():
            return Decimal("1")
        on_date = on_date or date.today()
        return self.quote_for_date(base, quote, on_date).rate


def get_rate_provider(session: Session) -> RateProvider:
    settings = get_settings()
    provider = (settings.fx_provider or "table").lower()
    if provider == "table":
        return ExchangeRateTable(session)
    if provider == "frankfurter":
        return FrankfurterRates(settings)
    raise ValueError(f"Unsupported FX provider: {provider}")


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
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise StorageFailure(
            f"Failed to fetch FX rate {base}->{quote} from Frankfurter for {on_date}"
        ) from exc

    try:
        rate_value = payload["rates"][quote]
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageFailure("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
