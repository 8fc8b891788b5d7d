from __future__ import annotations

from typing import NamedTuple, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from errors import NotFound, ValidationError
from models import Account, Transaction, TransactionType


class BalanceEffect(NamedTuple):
    account_id: int
    delta_units: int


def balance_effects(
    txn_type: TransactionType,
    amount_units: int,
    account_id: int,
    to_account_id: Optional[int] = None,
) -> list[BalanceEffect]:
    """Signed balance changes caused by one transaction.

    income adds to the source account, expense subtracts from it, and a
    transfer moves the amount from the source to the destination account.
    """
    if txn_type == TransactionType.income:
        return [BalanceEffect(account_id, amount_units)]
    if txn_type == TransactionType.expense:
        return [BalanceEffect(account_id, -amount_units)]
    if txn_type == TransactionType.transfer:
        if to_account_id is None:
            raise ValidationError(
                "Transfer transactions require a destination account"
            )
        return [
            BalanceEffect(account_id, -amount_units),
            BalanceEffect(to_account_id, amount_units),
        ]
    raise ValidationError(f"Unsupported transaction type: {txn_type}")


def effects_of(txn: Transaction) -> list[BalanceEffect]:
    return balance_effects(
        txn.type, txn.amount_units, txn.account_id, txn.to_account_id
    )


def reverse(effects: list[BalanceEffect]) -> list[BalanceEffect]:
    return [BalanceEffect(e.account_id, -e.delta_units) for e in effects]


class AccountLedger:
    """Sole writer of ``Account.current_balance_units``.

    Balances are changed with an in-database increment so concurrent writers
    to the same account never lose an update.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def apply_delta(self, account_id: int, delta_units: int) -> int:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(
                current_balance_units=Account.current_balance_units + delta_units
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f"Account {account_id} not found")
        balance = self.session.execute(
            select(Account.current_balance_units).where(Account.id == account_id)
        ).scalar_one()
        loaded = self.session.identity_map.get(
            self.session.identity_key(Account, account_id)
        )
        if loaded is not None:
            self.session.expire(loaded, ["current_balance_units"])
        return int(balance)

    def apply_effects(self, effects: list[BalanceEffect]) -> dict[int, int]:
        merged: dict[int, int] = {}
        for effect in effects:
            merged[effect.account_id] = (
                merged.get(effect.account_id, 0) + effect.delta_units
            )
        balances: dict[int, int] = {}
        for account_id in sorted(merged):
            delta = merged[account_id]
            if delta == 0:
                continue
            balances[account_id] = self.apply_delta(account_id, delta)
        return balances

    def expected_balance(self, account_id: int) -> int:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFound(f"Account {account_id} not found")

        def _sum(*conditions) -> int:
            stmt = select(func.coalesce(func.sum(Transaction.amount_units), 0)).where(
                Transaction.user_id == self.user_id, *conditions
            )
            return int(self.session.execute(stmt).scalar_one() or 0)

        incoming = _sum(
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.income,
        ) + _sum(
            Transaction.to_account_id == account_id,
            Transaction.type == TransactionType.transfer,
        )
        outgoing = _sum(
            Transaction.account_id == account_id,
            Transaction.type.in_([TransactionType.expense, TransactionType.transfer]),
        )
        return account.initial_balance_units + incoming - outgoing

    def rebuild(self) -> dict[int, int]:
        """Rewrite every balance from its initial value and transaction history.

        Returns the accounts whose stored balance drifted, mapped to the
        correction applied.
        """
        account_ids = self.session.scalars(
            select(Account.id).where(Account.user_id == self.user_id)
        ).all()
        corrections: dict[int, int] = {}
        for account_id in account_ids:
            stored = self.session.execute(
                select(Account.current_balance_units).where(Account.id == account_id)
            ).scalar_one()
            drift = self.expected_balance(account_id) - int(stored)
            if drift:
                self.apply_delta(account_id, drift)
                corrections[account_id] = drift
        return corrections
