import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import commit_or_raise
from errors import BusinessRuleViolation, NotFound, ValidationError
from models import Frequency, RecurringTemplate, Transaction
from money import format_amount


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, day: Optional[int] = None) -> date:
    """Move ``base`` by whole calendar months, clamping to the target month's end."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    desired_day = day if day is not None else base.day
    return date(year, month, min(desired_day, days_in_month(year, month)))


def sunday_weekday(value: date) -> int:
    """Weekday number with 0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def next_occurrence(
    anchor: date,
    frequency: Union[Frequency, str],
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> date:
    try:
        frequency = Frequency(frequency)
    except ValueError as exc:
        raise ValidationError(f"Unsupported frequency: {frequency}") from exc

    if frequency == Frequency.daily:
        return anchor + timedelta(days=1)
    if frequency in (Frequency.weekly, Frequency.biweekly):
        step = 7 if frequency == Frequency.weekly else 14
        next_date = anchor + timedelta(days=step)
        if day_of_week is not None:
            # Only ever rolls forward, 0..6 days.
            next_date += timedelta(days=(day_of_week - sunday_weekday(next_date)) % 7)
        return next_date
    if frequency == Frequency.monthly:
        return add_months(anchor, 1, day=day_of_month)
    if frequency == Frequency.quarterly:
        return add_months(anchor, 3, day=day_of_month)
    return add_months(anchor, 12)


@dataclass
class ProcessResult:
    created: int = 0
    errors: list[str] = field(default_factory=list)
    processed: int = 0


class RecurringEngine:
    """Materializes due recurring templates into transactions.

    Each template is handled as its own unit of work: the transaction, the
    balance change and the template reschedule are committed together, or
    not at all.
    """

    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or local_now

    def due_templates(self, user_id: Optional[int] = None) -> list[RecurringTemplate]:
        today = self.clock().date()
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.is_active.is_(True),
                RecurringTemplate.auto_create.is_(True),
                RecurringTemplate.next_occurrence <= today,
            )
            .order_by(RecurringTemplate.next_occurrence, RecurringTemplate.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringTemplate.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def process_due_for_user(self, user_id: int) -> ProcessResult:
        result = ProcessResult()
        for template in self.due_templates(user_id):
            template_id = template.id
            try:
                if self._process(template) is not None:
                    result.created += 1
            except Exception as exc:
                self.session.rollback()
                message = (
                    f"Failed to create transaction for recurring {template_id}: {exc}"
                )
                logger.warning(f"recurring_failed: user={user_id} {message}")
                result.errors.append(message)
            result.processed += 1
        logger.info(
            f"recurring_sweep: user={user_id} processed={result.processed} "
            f"created={result.created} errors={len(result.errors)}"
        )
        return result

    def process_all_due(self) -> ProcessResult:
        result = ProcessResult()
        for template in self.due_templates():
            template_id = template.id
            owner_id = template.user_id
            result.processed += 1
            try:
                if self._process(template) is not None:
                    result.created += 1
            except Exception as exc:
                self.session.rollback()
                message = (
                    f"Failed to create transaction for recurring {template_id} "
                    f"(user: {owner_id}): {exc}"
                )
                logger.warning(f"recurring_failed: {message}")
                result.errors.append(message)
        logger.info(
            f"recurring_sweep: user=all processed={result.processed} "
            f"created={result.created} errors={len(result.errors)}"
        )
        return result

    def create_now(self, template_id: int, user_id: int) -> Optional[Transaction]:
        template = self.session.scalar(
            select(RecurringTemplate).where(
                RecurringTemplate.id == template_id,
                RecurringTemplate.user_id == user_id,
            )
        )
        if not template:
            raise NotFound("Recurring transaction not found")
        if not template.is_active:
            raise BusinessRuleViolation("Recurring transaction is not active")
        occurrence_date = template.next_occurrence
        try:
            txn = self._process(template)
        except Exception:
            self.session.rollback()
            raise
        if txn is None and template.is_active:
            # Occurrence was already on the books; hand back that row.
            txn = self.session.scalar(
                select(Transaction).where(
                    Transaction.user_id == user_id,
                    Transaction.recurring_template_id == template_id,
                    Transaction.occurrence_date == occurrence_date,
                )
            )
            logger.info(
                f"recurring_create_now_existing: template={template_id} "
                f"date={occurrence_date} transaction={txn.id if txn else None}"
            )
        return txn

    def _process(self, template: RecurringTemplate) -> Optional[Transaction]:
        now = self.clock()
        if template.end_date is not None and now.date() > template.end_date:
            template.is_active = False
            commit_or_raise(self.session)
            logger.info(
                f"recurring_expired: template={template.id} end_date={template.end_date}"
            )
            return None
        txn = self._materialize(template, now)
        commit_or_raise(self.session)
        return txn

    def _materialize(
        self, template: RecurringTemplate, now: datetime
    ) -> Optional[Transaction]:
        from schemas import TransactionIn
        from services import TransactionService

        occurrence_date = template.next_occurrence
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == template.user_id,
                Transaction.recurring_template_id == template.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        txn: Optional[Transaction] = None
        if self.session.execute(exists_stmt).scalar_one_or_none() is None:
            data = TransactionIn(
                account_id=template.account_id,
                category_id=template.category_id,
                type=template.type,
                amount=format_amount(template.amount_units),
                currency=template.currency,
                date=occurrence_date,
                description=template.description or template.name,
                notes=f"Auto-created from recurring: {template.name}",
            )
            txn = TransactionService(self.session, template.user_id).stage(
                data,
                recurring_template_id=template.id,
                occurrence_date=occurrence_date,
            )
        else:
            logger.info(
                f"recurring_skip_existing: template={template.id} date={occurrence_date}"
            )

        template.next_occurrence = next_occurrence(
            occurrence_date,
            template.frequency,
            template.day_of_month,
            template.day_of_week,
        )
        template.last_created = now
        self.session.flush()
        return txn
