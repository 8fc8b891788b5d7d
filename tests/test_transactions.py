from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import BusinessRuleViolation, NotFound, ValidationError
from ledger import AccountLedger
from models import Account, AccountType, Category, CategoryType, Transaction, TransactionType
from schemas import AccountIn, AccountUpdate, SplitIn, TransactionIn, TransactionUpdate
from services import AccountService, TransactionFilters, TransactionService

USER = 1


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _balance(session: Session, account_id: int) -> int:
    return session.scalar(
        select(Account.current_balance_units).where(Account.id == account_id)
    )


def _assert_consistent(session: Session, *account_ids: int) -> None:
    ledger = AccountLedger(session, USER)
    for account_id in account_ids:
        assert _balance(session, account_id) == ledger.expected_balance(account_id)


def _accounts(session: Session) -> tuple[int, int]:
    service = AccountService(session, USER)
    checking = service.create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="1000.00")
    )
    savings = service.create(
        AccountIn(name="Savings", type=AccountType.savings, initial_balance="250")
    )
    return checking.id, savings.id


def _txn(account_id: int, txn_type: str, amount: str, **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        type=txn_type,
        amount=amount,
        date=extra.pop("date", date(2024, 3, 1)),
        **extra,
    )


def test_income_and_expense_move_balance():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)

        service.create(_txn(checking, "income", "50.25"))
        service.create(_txn(checking, "expense", "20"))

        assert _balance(session, checking) == 10_302_500
        assert _balance(session, savings) == 2_500_000
        _assert_consistent(session, checking, savings)


def test_transfer_moves_between_accounts_and_delete_restores():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)

        txn = service.create(_txn(checking, "transfer", "100", to_account_id=savings))
        assert _balance(session, checking) == 9_000_000
        assert _balance(session, savings) == 3_500_000

        assert service.delete(txn.id) is True
        assert _balance(session, checking) == 10_000_000
        assert _balance(session, savings) == 2_500_000
        assert service.delete(txn.id) is False


def test_update_amount_and_type_reapplies_effects():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        txn = service.create(_txn(checking, "expense", "20"))

        service.update(txn.id, TransactionUpdate(amount="35"))
        assert _balance(session, checking) == 9_650_000

        service.update(txn.id, TransactionUpdate(type=TransactionType.income))
        assert _balance(session, checking) == 10_350_000
        _assert_consistent(session, checking, savings)


def test_update_transfer_to_expense_clears_destination():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        txn = service.create(_txn(checking, "transfer", "100", to_account_id=savings))

        updated = service.update(txn.id, TransactionUpdate(type=TransactionType.expense))

        assert updated.to_account_id is None
        assert _balance(session, checking) == 9_000_000
        assert _balance(session, savings) == 2_500_000
        _assert_consistent(session, checking, savings)


def test_update_moves_expense_to_other_account():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        txn = service.create(_txn(checking, "expense", "40"))

        service.update(txn.id, TransactionUpdate(account_id=savings))

        assert _balance(session, checking) == 10_000_000
        assert _balance(session, savings) == 2_100_000
        _assert_consistent(session, checking, savings)


def test_update_with_identical_values_is_balance_noop():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        txn = service.create(_txn(checking, "transfer", "100", to_account_id=savings))

        updated = service.update(
            txn.id,
            TransactionUpdate(
                account_id=checking,
                type=TransactionType.transfer,
                amount="100",
                to_account_id=savings,
            ),
        )

        assert updated.to_account_id == savings
        assert _balance(session, checking) == 9_000_000
        assert _balance(session, savings) == 3_500_000
        _assert_consistent(session, checking, savings)


def test_transfer_without_destination_is_rejected():
    with Session(_engine()) as session:
        checking, _ = _accounts(session)
        service = TransactionService(session, USER)

        with pytest.raises(ValidationError):
            service.create(_txn(checking, "transfer", "10"))
        with pytest.raises(ValidationError):
            service.create(_txn(checking, "transfer", "10", to_account_id=checking))

        assert session.scalar(select(func.count(Transaction.id))) == 0
        assert _balance(session, checking) == 10_000_000


def test_destination_only_allowed_on_transfers():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        with pytest.raises(ValidationError):
            TransactionService(session, USER).create(
                _txn(checking, "expense", "10", to_account_id=savings)
            )


def test_failed_update_leaves_balances_untouched():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        txn = service.create(_txn(checking, "expense", "10"))

        with pytest.raises(ValidationError):
            service.update(txn.id, TransactionUpdate(type=TransactionType.transfer))

        assert _balance(session, checking) == 9_900_000
        assert _balance(session, savings) == 2_500_000
        _assert_consistent(session, checking, savings)


def test_non_positive_amounts_rejected():
    with Session(_engine()) as session:
        checking, _ = _accounts(session)
        service = TransactionService(session, USER)
        with pytest.raises(ValidationError):
            service.create(_txn(checking, "expense", "0"))
        with pytest.raises(ValidationError):
            service.create(_txn(checking, "expense", "-5.00"))


def test_inactive_account_blocks_new_transactions():
    with Session(_engine()) as session:
        checking, _ = _accounts(session)
        AccountService(session, USER).update(checking, AccountUpdate(is_active=False))

        with pytest.raises(BusinessRuleViolation):
            TransactionService(session, USER).create(_txn(checking, "expense", "5"))


def test_foreign_account_is_not_found():
    with Session(_engine()) as session:
        checking, _ = _accounts(session)
        with pytest.raises(NotFound):
            TransactionService(session, 2).create(_txn(checking, "income", "5"))
        with pytest.raises(NotFound):
            TransactionService(session, 2).get(1)


def test_currency_defaults_to_account_currency():
    with Session(_engine()) as session:
        account = AccountService(session, USER).create(
            AccountIn(name="Euro", type=AccountType.cash, currency="eur")
        )
        txn = TransactionService(session, USER).create(
            _txn(account.id, "income", "12")
        )
        assert account.currency == "EUR"
        assert txn.currency == "EUR"


def test_splits_must_sum_to_amount():
    with Session(_engine()) as session:
        checking, _ = _accounts(session)
        food = Category(user_id=USER, name="Food", type=CategoryType.expense)
        home = Category(user_id=USER, name="Home", type=CategoryType.expense)
        session.add_all([food, home])
        session.commit()
        service = TransactionService(session, USER)

        with pytest.raises(ValidationError):
            service.create(
                _txn(
                    checking,
                    "expense",
                    "30",
                    splits=[SplitIn(category_id=food.id, amount="10")],
                )
            )

        txn = service.create(
            _txn(
                checking,
                "expense",
                "30",
                splits=[
                    SplitIn(category_id=food.id, amount="12.5"),
                    SplitIn(category_id=home.id, amount="17.5"),
                ],
            )
        )
        loaded = service.get(txn.id)
        assert [s.amount_units for s in loaded.splits] == [125_000, 175_000]

        with pytest.raises(ValidationError):
            service.update(txn.id, TransactionUpdate(amount="31"))


def test_list_filters_by_account_and_date():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        service.create(_txn(checking, "expense", "1", date=date(2024, 2, 1)))
        service.create(_txn(checking, "expense", "2", date=date(2024, 3, 5)))
        service.create(_txn(savings, "income", "3", date=date(2024, 3, 6)))

        march = service.list(TransactionFilters(start=date(2024, 3, 1)))
        assert [t.amount_units for t in march] == [30_000, 20_000]
        only_checking = service.list(TransactionFilters(account_id=checking))
        assert len(only_checking) == 2
        assert len(service.list(limit=1)) == 1


def test_summary_totals_and_transfer_count():
    with Session(_engine()) as session:
        checking, savings = _accounts(session)
        service = TransactionService(session, USER)
        service.create(_txn(checking, "income", "100"))
        service.create(_txn(checking, "expense", "40"))
        service.create(_txn(checking, "transfer", "10", to_account_id=savings))
        service.create(_txn(checking, "expense", "99", date=date(2024, 4, 1)))

        summary = service.summary(date(2024, 3, 1), date(2024, 3, 31))

        assert summary.as_dict() == {
            "currency": "USD",
            "total_income": "100.0000",
            "total_expense": "40.0000",
            "net_income": "60.0000",
            "transaction_count": 3,
        }


def test_summary_without_data_is_zero():
    with Session(_engine()) as session:
        summary = TransactionService(session, USER).summary(
            date(2024, 1, 1), date(2024, 1, 31)
        )
        assert summary.total_income_units == 0
        assert summary.net_income_units == 0
        assert summary.transaction_count == 0
