from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import BusinessRuleViolation, ValidationError
from fx_rates import ExchangeRateTable, RateProvider, micros_to_rate, rate_to_micros
from models import BudgetPeriod
from periods import budget_window, computed_end_date, resolve_period
from schemas import ExchangeRateIn
from services import ExchangeRateService


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _set(session: Session, base: str, quote: str, rate: str, on: date) -> None:
    ExchangeRateService(session).set_rate(
        ExchangeRateIn(from_currency=base, to_currency=quote, rate=rate, rate_date=on)
    )


def test_rate_micros_roundtrip_precision():
    assert rate_to_micros(Decimal("1.0842")) == 1_084_200
    assert micros_to_rate(1_084_200) == Decimal("1.0842")


def test_table_picks_latest_rate_on_or_before_date():
    with Session(_engine()) as session:
        _set(session, "EUR", "USD", "1.05", date(2024, 1, 1))
        _set(session, "EUR", "USD", "1.10", date(2024, 3, 1))
        table = ExchangeRateTable(session)

        assert table.rate("EUR", "USD", date(2024, 2, 15)) == Decimal("1.05")
        assert table.rate("eur", "usd", date(2024, 3, 2)) == Decimal("1.1")
        assert table.rate("EUR", "USD") == Decimal("1.1")


def test_table_falls_back_to_inverse_pair():
    with Session(_engine()) as session:
        _set(session, "EUR", "USD", "2", date(2024, 1, 1))
        table = ExchangeRateTable(session)

        assert table.rate("USD", "EUR") == Decimal("0.5")
        assert table.convert_units(1_000_000, "USD", "EUR") == 500_000


def test_missing_rate_is_a_business_rule_violation():
    with Session(_engine()) as session:
        table = ExchangeRateTable(session)
        assert table.convert_units(123, "GBP", "gbp") == 123
        with pytest.raises(BusinessRuleViolation):
            table.rate("GBP", "JPY")
        with pytest.raises(BusinessRuleViolation):
            RateProvider().rate("GBP", "JPY")


def test_setting_rate_twice_on_same_day_overwrites():
    with Session(_engine()) as session:
        _set(session, "EUR", "USD", "1.05", date(2024, 1, 1))
        _set(session, "EUR", "USD", "1.07", date(2024, 1, 1))
        rows = ExchangeRateService(session).list()
        assert len(rows) == 1
        assert rows[0].rate_micros == 1_070_000


def test_rate_needs_two_currencies():
    with Session(_engine()) as session:
        with pytest.raises(ValidationError):
            _set(session, "EUR", "eur", "1", date(2024, 1, 1))


def test_resolve_named_periods():
    today = date(2024, 3, 15)
    this_month = resolve_period(None, None, None, today=today)
    assert (this_month.start, this_month.end) == (date(2024, 3, 1), date(2024, 3, 31))
    last_month = resolve_period("last_month", None, None, today=today)
    assert (last_month.start, last_month.end) == (date(2024, 2, 1), date(2024, 2, 29))
    year = resolve_period("this_year", None, None, today=today)
    assert (year.start, year.end) == (date(2024, 1, 1), date(2024, 12, 31))


def test_resolve_custom_period_validation():
    custom = resolve_period(None, "2024-01-05", "2024-01-20")
    assert custom.slug == "custom"
    assert custom.end == date(2024, 1, 20)
    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-01-05", None)
    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-02-01", "2024-01-01")
    with pytest.raises(ValidationError):
        resolve_period("custom", "yesterday", "2024-01-01")
    with pytest.raises(ValidationError):
        resolve_period("fortnight", None, None)


def test_budget_windows():
    assert computed_end_date(date(2024, 1, 31), BudgetPeriod.monthly) == date(2024, 2, 29)
    assert computed_end_date(date(2024, 3, 1), BudgetPeriod.weekly) == date(2024, 3, 8)
    assert computed_end_date(date(2024, 2, 29), BudgetPeriod.yearly) == date(2025, 2, 28)
    window = budget_window(date(2024, 3, 1), BudgetPeriod.monthly, date(2024, 3, 15))
    assert window.end == date(2024, 3, 15)
