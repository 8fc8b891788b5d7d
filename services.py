from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, TypeVar

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from database import commit_or_raise
from errors import BusinessRuleViolation, NotFound, ValidationError
from fx_rates import RateProvider, get_rate_provider, rate_to_micros
from ledger import AccountLedger, effects_of, reverse
from models import (
    Account,
    Budget,
    Category,
    ExchangeRate,
    RecurringTemplate,
    Transaction,
    TransactionSplit,
    TransactionType,
)
from money import format_amount, percentage, positive_units, to_units
from periods import Period, budget_window
from recurrence import next_occurrence
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    ExchangeRateIn,
    RecurringTemplateIn,
    RecurringTemplateUpdate,
    SplitIn,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


def currency_code(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {value!r}")
    return code


def get_owned(
    session: Session, model: type[ModelT], user_id: int, obj_id: int
) -> Optional[ModelT]:
    return session.scalar(
        select(model).where(model.id == obj_id, model.user_id == user_id)
    )


class AccountService:
    def __init__(
        self, session: Session, user_id: int, rates: Optional[RateProvider] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.rates = rates

    def list(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = get_owned(self.session, Account, self.user_id, account_id)
        if not account:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        initial = to_units(data.initial_balance)
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            currency=currency_code(data.currency),
            initial_balance_units=initial,
            current_balance_units=initial,
            description=data.description,
            is_active=True,
        )
        if data.color:
            account.color = data.color
        self.session.add(account)
        commit_or_raise(self.session)
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        new_initial = changes.pop("initial_balance", None)
        for field in ("name", "type", "currency", "is_active"):
            if changes.get(field, "") is None:
                changes.pop(field)
        if "currency" in changes:
            changes["currency"] = currency_code(changes["currency"])
        for field, value in changes.items():
            setattr(account, field, value)

        if new_initial is not None:
            drift = to_units(new_initial) - account.initial_balance_units
            account.initial_balance_units += drift
            self.session.flush()
            if drift:
                AccountLedger(self.session, self.user_id).apply_delta(account.id, drift)
        commit_or_raise(self.session)
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> bool:
        """Remove an account and everything that depends on it.

        Transfers touching the account are reversed on their other side
        before deletion, so surviving balances stay consistent.
        """
        account = get_owned(self.session, Account, self.user_id, account_id)
        if not account:
            return False
        ledger = AccountLedger(self.session, self.user_id)
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.account_id == account_id,
                    Transaction.to_account_id == account_id,
                ),
            )
        ).all()
        for txn in txns:
            others = [e for e in reverse(effects_of(txn)) if e.account_id != account_id]
            ledger.apply_effects(others)
            self.session.delete(txn)
        self.session.flush()

        template_ids = self.session.scalars(
            select(RecurringTemplate.id).where(
                RecurringTemplate.user_id == self.user_id,
                RecurringTemplate.account_id == account_id,
            )
        ).all()
        if template_ids:
            self.session.execute(
                update(Transaction)
                .where(Transaction.recurring_template_id.in_(template_ids))
                .values(recurring_template_id=None)
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                delete(RecurringTemplate)
                .where(RecurringTemplate.id.in_(template_ids))
                .execution_options(synchronize_session=False)
            )
        self.session.delete(account)
        commit_or_raise(self.session)
        logger.info(
            f"account_deleted: user={self.user_id} account={account_id} "
            f"transactions={len(txns)} templates={len(template_ids)}"
        )
        return True

    def total_balance(self, currency: Optional[str] = None) -> dict[str, object]:
        target = currency_code(currency or get_settings().base_currency)
        rates = self.rates or get_rate_provider(self.session)
        accounts = [a for a in self.list() if a.is_active]
        total = 0
        for account in accounts:
            total += rates.convert_units(
                account.current_balance_units, account.currency, target
            )
        return {
            "currency": target,
            "total_units": total,
            "account_count": len(accounts),
        }


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = get_owned(self.session, Category, self.user_id, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise ValidationError("Category already exists")
        category = Category(user_id=self.user_id, name=name, type=data.type)
        if data.color:
            category.color = data.color
        self.session.add(category)
        commit_or_raise(self.session)
        self.session.refresh(category)
        return category


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None


@dataclass
class TransactionSummary:
    currency: str
    total_income_units: int
    total_expense_units: int
    transaction_count: int

    @property
    def net_income_units(self) -> int:
        return self.total_income_units - self.total_expense_units

    def as_dict(self) -> dict[str, object]:
        return {
            "currency": self.currency,
            "total_income": format_amount(self.total_income_units),
            "total_expense": format_amount(self.total_expense_units),
            "net_income": format_amount(self.net_income_units),
            "transaction_count": self.transaction_count,
        }


class TransactionService:
    def __init__(
        self, session: Session, user_id: int, rates: Optional[RateProvider] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.rates = rates

    def _account(self, account_id: int) -> Account:
        account = get_owned(self.session, Account, self.user_id, account_id)
        if not account:
            raise NotFound(f"Account {account_id} not found")
        return account

    def _check_category(self, category_id: int) -> None:
        if not get_owned(self.session, Category, self.user_id, category_id):
            raise NotFound(f"Category {category_id} not found")

    def _validate(
        self,
        *,
        txn_type: TransactionType,
        account_id: int,
        to_account_id: Optional[int],
        category_id: Optional[int],
        require_active: bool = True,
    ) -> Account:
        if txn_type == TransactionType.transfer:
            if to_account_id is None:
                raise ValidationError(
                    "Transfer transactions require a destination account"
                )
            if to_account_id == account_id:
                raise ValidationError(
                    "Transfer destination must differ from the source account"
                )
        elif to_account_id is not None:
            raise ValidationError("Only transfers can have a destination account")

        source = self._account(account_id)
        touched = [source]
        if to_account_id is not None:
            touched.append(self._account(to_account_id))
        if require_active:
            for account in touched:
                if not account.is_active:
                    raise BusinessRuleViolation(f"Account {account.id} is deactivated")
        if category_id is not None:
            self._check_category(category_id)
        return source

    def _build_splits(
        self, splits: list[SplitIn], amount_units: int
    ) -> list[TransactionSplit]:
        rows: list[TransactionSplit] = []
        total = 0
        for split in splits:
            units = positive_units(split.amount, "split amount")
            self._check_category(split.category_id)
            rows.append(
                TransactionSplit(
                    category_id=split.category_id,
                    amount_units=units,
                    description=split.description,
                )
            )
            total += units
        if total != amount_units:
            raise ValidationError("Splits must sum to the transaction amount")
        return rows

    def stage(
        self,
        data: TransactionIn,
        *,
        recurring_template_id: Optional[int] = None,
        occurrence_date: Optional[date] = None,
    ) -> Transaction:
        """Insert a transaction and move balances without committing."""
        amount_units = positive_units(data.amount)
        source = self._validate(
            txn_type=data.type,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
        )
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            type=data.type,
            amount_units=amount_units,
            currency=currency_code(data.currency) if data.currency else source.currency,
            date=data.date,
            description=data.description,
            notes=data.notes,
            payee=data.payee,
            reference=data.reference,
            to_account_id=data.to_account_id,
            recurring_template_id=recurring_template_id,
            occurrence_date=occurrence_date,
        )
        if data.splits:
            txn.splits = self._build_splits(data.splits, amount_units)
        self.session.add(txn)
        self.session.flush()
        AccountLedger(self.session, self.user_id).apply_effects(effects_of(txn))
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        try:
            txn = self.stage(data)
        except Exception:
            self.session.rollback()
            raise
        commit_or_raise(self.session)
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        new_type = changes.get("type") or txn.type
        new_account_id = changes.get("account_id") or txn.account_id
        if "to_account_id" in changes:
            new_to_account_id = changes["to_account_id"]
        elif new_type == TransactionType.transfer:
            new_to_account_id = txn.to_account_id
        else:
            new_to_account_id = None
        new_category_id = (
            changes["category_id"] if "category_id" in changes else txn.category_id
        )
        if changes.get("amount") is not None:
            new_amount_units = positive_units(changes["amount"])
        else:
            new_amount_units = txn.amount_units

        balance_changed = (
            new_type != txn.type
            or new_account_id != txn.account_id
            or new_to_account_id != txn.to_account_id
            or new_amount_units != txn.amount_units
        )
        self._validate(
            txn_type=new_type,
            account_id=new_account_id,
            to_account_id=new_to_account_id,
            category_id=new_category_id,
            require_active=balance_changed,
        )

        new_splits: Optional[list[TransactionSplit]] = None
        if "splits" in changes:
            new_splits = (
                self._build_splits(data.splits, new_amount_units) if data.splits else []
            )
        elif txn.splits and new_amount_units != txn.amount_units:
            if sum(s.amount_units for s in txn.splits) != new_amount_units:
                raise ValidationError("Splits must sum to the transaction amount")

        old_effects = effects_of(txn)
        try:
            txn.type = new_type
            txn.account_id = new_account_id
            txn.to_account_id = new_to_account_id
            txn.category_id = new_category_id
            txn.amount_units = new_amount_units
            if changes.get("currency"):
                txn.currency = currency_code(changes["currency"])
            if changes.get("date"):
                txn.date = changes["date"]
            for field in ("description", "notes", "payee", "reference"):
                if field in changes:
                    setattr(txn, field, changes[field])
            if new_splits is not None:
                txn.splits = new_splits
            self.session.flush()
            # Reversal and re-application net out per account in one pass.
            AccountLedger(self.session, self.user_id).apply_effects(
                reverse(old_effects) + effects_of(txn)
            )
        except Exception:
            self.session.rollback()
            raise
        commit_or_raise(self.session)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> bool:
        txn = get_owned(self.session, Transaction, self.user_id, transaction_id)
        if not txn:
            return False
        try:
            AccountLedger(self.session, self.user_id).apply_effects(
                reverse(effects_of(txn))
            )
            self.session.delete(txn)
            self.session.flush()
        except Exception:
            self.session.rollback()
            raise
        commit_or_raise(self.session)
        return True

    def summary(
        self,
        start: date,
        end: date,
        *,
        include_recurring: bool = False,
        currency: Optional[str] = None,
    ) -> TransactionSummary:
        """Income/expense totals for ``[start, end]``.

        Rows materialized from recurring templates are left out unless
        ``include_recurring`` is set.
        """
        target = currency_code(currency or get_settings().base_currency)
        stmt = (
            select(
                Transaction.type,
                Transaction.currency,
                func.coalesce(func.sum(Transaction.amount_units), 0).label("total"),
                func.count(Transaction.id).label("rows"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
            .group_by(Transaction.type, Transaction.currency)
        )
        if not include_recurring:
            stmt = stmt.where(Transaction.recurring_template_id.is_(None))

        rates = self.rates or get_rate_provider(self.session)
        income = 0
        expense = 0
        count = 0
        for row in self.session.execute(stmt):
            count += int(row.rows)
            if row.type == TransactionType.transfer:
                continue
            converted = rates.convert_units(int(row.total), row.currency, target)
            if row.type == TransactionType.income:
                income += converted
            else:
                expense += converted
        return TransactionSummary(
            currency=target,
            total_income_units=income,
            total_expense_units=expense,
            transaction_count=count,
        )


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, template_id: int) -> RecurringTemplate:
        template = get_owned(self.session, RecurringTemplate, self.user_id, template_id)
        if not template:
            raise NotFound("Recurring transaction not found")
        return template

    def list(self) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(RecurringTemplate.user_id == self.user_id)
            .order_by(RecurringTemplate.created_at.desc(), RecurringTemplate.id.desc())
        )
        return self.session.scalars(stmt).all()

    def list_active(self) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.user_id == self.user_id,
                RecurringTemplate.is_active.is_(True),
            )
            .order_by(RecurringTemplate.next_occurrence, RecurringTemplate.id)
        )
        return self.session.scalars(stmt).all()

    def _account(self, account_id: int) -> Account:
        account = get_owned(self.session, Account, self.user_id, account_id)
        if not account:
            raise NotFound(f"Account {account_id} not found")
        return account

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        if not get_owned(self.session, Category, self.user_id, category_id):
            raise NotFound(f"Category {category_id} not found")

    def create(self, data: RecurringTemplateIn) -> RecurringTemplate:
        if data.type == TransactionType.transfer:
            raise ValidationError("Recurring transactions must be income or expense")
        if data.end_date and data.end_date < data.start_date:
            raise ValidationError("End date must not be before the start date")
        account = self._account(data.account_id)
        self._check_category(data.category_id)
        template = RecurringTemplate(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            name=data.name,
            description=data.description,
            type=data.type,
            amount_units=positive_units(data.amount),
            currency=currency_code(data.currency) if data.currency else account.currency,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            next_occurrence=next_occurrence(
                data.start_date, data.frequency, data.day_of_month, data.day_of_week
            ),
            day_of_month=data.day_of_month,
            day_of_week=data.day_of_week,
            is_active=True,
            auto_create=data.auto_create,
        )
        self.session.add(template)
        commit_or_raise(self.session)
        self.session.refresh(template)
        return template

    def update(
        self, template_id: int, data: RecurringTemplateUpdate
    ) -> RecurringTemplate:
        template = self.get(template_id)
        changes = data.model_dump(exclude_unset=True)
        for field in (
            "account_id",
            "name",
            "type",
            "amount",
            "currency",
            "frequency",
            "start_date",
            "auto_create",
        ):
            if changes.get(field, "") is None:
                changes.pop(field)

        if changes.get("type") == TransactionType.transfer:
            raise ValidationError("Recurring transactions must be income or expense")
        if "account_id" in changes:
            self._account(changes["account_id"])
        if "category_id" in changes:
            self._check_category(changes["category_id"])
        if "amount" in changes:
            changes["amount_units"] = positive_units(changes.pop("amount"))
        if "currency" in changes:
            changes["currency"] = currency_code(changes["currency"])

        start = changes.get("start_date", template.start_date)
        end = changes["end_date"] if "end_date" in changes else template.end_date
        if end and end < start:
            raise ValidationError("End date must not be before the start date")

        for field, value in changes.items():
            setattr(template, field, value)
        if "start_date" in changes:
            template.next_occurrence = next_occurrence(
                template.start_date,
                template.frequency,
                template.day_of_month,
                template.day_of_week,
            )
        commit_or_raise(self.session)
        self.session.refresh(template)
        return template

    def toggle_active(self, template_id: int) -> RecurringTemplate:
        template = self.get(template_id)
        template.is_active = not template.is_active
        commit_or_raise(self.session)
        self.session.refresh(template)
        return template

    def delete(self, template_id: int) -> bool:
        template = get_owned(self.session, RecurringTemplate, self.user_id, template_id)
        if not template:
            return False
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_template_id == template_id,
            )
            .values(recurring_template_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(template)
        commit_or_raise(self.session)
        return True

    def occurrences(self, template_id: int) -> list[Transaction]:
        self.get(template_id)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_template_id == template_id,
            )
            .order_by(Transaction.occurrence_date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()


class BudgetService:
    @dataclass
    class Progress:
        budget: Budget
        window: Period
        spent_units: int
        remaining_units: int
        percentage: Decimal
        alert_triggered: bool

    def __init__(
        self, session: Session, user_id: int, rates: Optional[RateProvider] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.rates = rates

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = get_owned(self.session, Budget, self.user_id, budget_id)
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        if not get_owned(self.session, Category, self.user_id, category_id):
            raise NotFound(f"Category {category_id} not found")

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        if data.end_date and data.end_date < data.start_date:
            raise ValidationError("End date must not be before the start date")
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            name=data.name,
            amount_units=to_units(data.amount),
            currency=currency_code(data.currency),
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            allow_rollover=data.allow_rollover,
            alert_enabled=data.alert_enabled,
            alert_threshold=data.alert_threshold,
            is_active=True,
        )
        if budget.amount_units < 0:
            raise ValidationError("Budget amount must not be negative")
        self.session.add(budget)
        commit_or_raise(self.session)
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        changes = data.model_dump(exclude_unset=True)
        for field in (
            "name",
            "amount",
            "currency",
            "period",
            "start_date",
            "allow_rollover",
            "alert_enabled",
            "alert_threshold",
            "is_active",
        ):
            if changes.get(field, "") is None:
                changes.pop(field)
        if "category_id" in changes:
            self._check_category(changes["category_id"])
        if "amount" in changes:
            units = to_units(changes.pop("amount"))
            if units < 0:
                raise ValidationError("Budget amount must not be negative")
            changes["amount_units"] = units
        if "currency" in changes:
            changes["currency"] = currency_code(changes["currency"])
        start = changes.get("start_date", budget.start_date)
        end = changes["end_date"] if "end_date" in changes else budget.end_date
        if end and end < start:
            raise ValidationError("End date must not be before the start date")
        for field, value in changes.items():
            setattr(budget, field, value)
        commit_or_raise(self.session)
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> bool:
        budget = get_owned(self.session, Budget, self.user_id, budget_id)
        if not budget:
            return False
        self.session.delete(budget)
        commit_or_raise(self.session)
        return True

    def evaluate(self, budget: Budget) -> BudgetService.Progress:
        window = budget_window(budget.start_date, budget.period, budget.end_date)
        stmt = (
            select(
                Transaction.currency,
                func.coalesce(func.sum(Transaction.amount_units), 0).label("total"),
            )
            .where(
                Transaction.user_id == budget.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(window.start, window.end),
            )
            .group_by(Transaction.currency)
        )
        if budget.category_id is not None:
            stmt = stmt.where(Transaction.category_id == budget.category_id)

        rates = self.rates or get_rate_provider(self.session)
        spent = 0
        for row in self.session.execute(stmt):
            spent += rates.convert_units(int(row.total), row.currency, budget.currency)
        pct = percentage(spent, budget.amount_units)
        return BudgetService.Progress(
            budget=budget,
            window=window,
            spent_units=spent,
            remaining_units=budget.amount_units - spent,
            percentage=pct,
            alert_triggered=bool(budget.alert_enabled)
            and pct >= budget.alert_threshold,
        )

    def all_with_progress(self) -> list[BudgetService.Progress]:
        return [self.evaluate(budget) for budget in self.list()]


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[ExchangeRate]:
        stmt = select(ExchangeRate).order_by(
            ExchangeRate.from_currency,
            ExchangeRate.to_currency,
            ExchangeRate.rate_date.desc(),
        )
        return self.session.scalars(stmt).all()

    def set_rate(self, data: ExchangeRateIn) -> ExchangeRate:
        base = currency_code(data.from_currency)
        quote = currency_code(data.to_currency)
        if base == quote:
            raise ValidationError("Exchange rate needs two different currencies")
        rate = Decimal(data.rate)
        if rate <= 0:
            raise ValidationError("Exchange rate must be positive")
        rate_date = data.rate_date or date.today()
        existing = self.session.scalar(
            select(ExchangeRate).where(
                ExchangeRate.from_currency == base,
                ExchangeRate.to_currency == quote,
                ExchangeRate.rate_date == rate_date,
            )
        )
        if existing:
            existing.rate_micros = rate_to_micros(rate)
            row = existing
        else:
            row = ExchangeRate(
                from_currency=base,
                to_currency=quote,
                rate_micros=rate_to_micros(rate),
                rate_date=rate_date,
            )
            self.session.add(row)
        commit_or_raise(self.session)
        self.session.refresh(row)
        return row
