from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import BusinessRuleViolation, NotFound, ValidationError
from models import AccountType, BudgetPeriod, CategoryType, TransactionType
from schemas import AccountIn, BudgetIn, BudgetUpdate, CategoryIn, ExchangeRateIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ExchangeRateService,
    TransactionService,
)

USER = 1


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _seed(session: Session, entries, category_id=None) -> int:
    account = AccountService(session, USER).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="500")
    )
    txns = TransactionService(session, USER)
    for txn_type, amount, day in entries:
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=category_id,
                type=txn_type,
                amount=amount,
                date=day,
            )
        )
    return account.id


def test_uncategorized_budget_counts_only_expenses():
    with Session(_engine()) as session:
        _seed(
            session,
            [
                (TransactionType.expense, "50", date(2024, 3, 2)),
                (TransactionType.expense, "30", date(2024, 3, 10)),
                (TransactionType.income, "20", date(2024, 3, 5)),
                (TransactionType.expense, "999", date(2024, 4, 5)),
            ],
        )
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(name="March", amount="100", start_date=date(2024, 3, 1))
        )

        progress = service.evaluate(budget)

        assert progress.window.end == date(2024, 4, 1)
        assert progress.spent_units == 800_000
        assert progress.remaining_units == 200_000
        assert progress.percentage == Decimal("80.00")
        assert progress.alert_triggered is True


def test_category_budget_filters_by_category():
    with Session(_engine()) as session:
        groceries = CategoryService(session, USER).create(
            CategoryIn(name="Groceries", type=CategoryType.expense)
        )
        account_id = _seed(
            session,
            [(TransactionType.expense, "45.5", date(2024, 3, 3))],
            category_id=groceries.id,
        )
        TransactionService(session, USER).create(
            TransactionIn(
                account_id=account_id,
                type=TransactionType.expense,
                amount="70",
                date=date(2024, 3, 4),
            )
        )
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(
                name="Food",
                category_id=groceries.id,
                amount="200",
                start_date=date(2024, 3, 1),
            )
        )

        progress = service.evaluate(budget)

        assert progress.spent_units == 455_000
        assert progress.percentage == Decimal("22.75")
        assert progress.alert_triggered is False


def test_weekly_window_end_is_inclusive():
    with Session(_engine()) as session:
        _seed(
            session,
            [
                (TransactionType.expense, "10", date(2024, 3, 8)),
                (TransactionType.expense, "10", date(2024, 3, 9)),
            ],
        )
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(
                name="Week",
                amount="50",
                period=BudgetPeriod.weekly,
                start_date=date(2024, 3, 1),
            )
        )
        assert service.evaluate(budget).spent_units == 100_000


def test_zero_amount_budget_reports_zero_percent():
    with Session(_engine()) as session:
        _seed(session, [(TransactionType.expense, "10", date(2024, 3, 2))])
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(name="Nothing", amount="0", start_date=date(2024, 3, 1))
        )
        progress = service.evaluate(budget)
        assert progress.percentage == Decimal("0.00")
        assert progress.remaining_units == -100_000


def test_foreign_currency_budget_needs_rate():
    with Session(_engine()) as session:
        _seed(session, [(TransactionType.expense, "80", date(2024, 3, 2))])
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(
                name="Euro",
                amount="100",
                currency="EUR",
                start_date=date(2024, 3, 1),
            )
        )
        with pytest.raises(BusinessRuleViolation):
            service.evaluate(budget)

        ExchangeRateService(session).set_rate(
            ExchangeRateIn(
                from_currency="USD",
                to_currency="EUR",
                rate="0.5",
                rate_date=date(2024, 3, 1),
            )
        )
        progress = BudgetService(session, USER).evaluate(budget)
        assert progress.spent_units == 400_000


def test_budget_crud_is_owner_scoped():
    with Session(_engine()) as session:
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(
                name="Fun",
                amount="100",
                start_date=date(2024, 3, 1),
                alert_enabled=False,
            )
        )
        budget_id = budget.id

        updated = service.update(budget_id, BudgetUpdate(amount="150.5", name="More fun"))
        assert updated.amount_units == 1_505_000
        assert updated.name == "More fun"
        assert len(service.all_with_progress()) == 1

        with pytest.raises(NotFound):
            BudgetService(session, 2).get(budget_id)
        assert BudgetService(session, 2).delete(budget_id) is False
        assert service.delete(budget_id) is True
        assert service.list() == []


def test_rejected_date_change_leaves_budget_unchanged():
    with Session(_engine()) as session:
        service = BudgetService(session, USER)
        budget = service.create(
            BudgetIn(
                name="Trip",
                amount="300",
                start_date=date(2024, 3, 1),
                end_date=date(2024, 3, 31),
            )
        )
        budget_id = budget.id

        with pytest.raises(ValidationError, match="End date"):
            service.update(budget_id, BudgetUpdate(end_date=date(2024, 2, 1)))
        with pytest.raises(ValidationError, match="End date"):
            service.update(budget_id, BudgetUpdate(start_date=date(2024, 4, 15)))

        service.update(budget_id, BudgetUpdate(name="Spring trip"))
        session.expire_all()
        stored = service.get(budget_id)
        assert stored.name == "Spring trip"
        assert stored.start_date == date(2024, 3, 1)
        assert stored.end_date == date(2024, 3, 31)
