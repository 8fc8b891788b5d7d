import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import user_id_from_token
from config import get_settings
from database import SessionLocal, commit_or_raise
from errors import BusinessRuleViolation, NotFound, StorageFailure, ValidationError
from fx_rates import micros_to_rate
from ledger import AccountLedger
from models import (
    Account,
    Budget,
    Category,
    ExchangeRate,
    RecurringTemplate,
    Transaction,
    TransactionType,
)
from money import format_amount
from periods import resolve_period
from recurrence import ProcessResult, RecurringEngine
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    ExchangeRateIn,
    RecurringTemplateIn,
    RecurringTemplateUpdate,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ExchangeRateService,
    RecurringTemplateService,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Finance Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    user_id = user_id_from_token(authorization[7:].strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _error(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "message": message})


@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound):
    return _error(404, "Not Found", str(exc))


@app.exception_handler(ValidationError)
def validation_handler(request: Request, exc: ValidationError):
    return _error(400, "Validation Error", str(exc))


@app.exception_handler(BusinessRuleViolation)
def business_rule_handler(request: Request, exc: BusinessRuleViolation):
    return _error(400, "Business Rule Violation", str(exc))


@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError):
    return _error(400, "Bad Request", str(exc))


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation Error", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StorageFailure)
@app.exception_handler(SQLAlchemyError)
def storage_failure_handler(request: Request, exc: Exception):
    logger.exception(f"storage_failure: path={request.url.path}", exc_info=exc)
    return _error(500, "Internal Server Error", "Unexpected storage failure")


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):
    kind = "Unauthorized" if exc.status_code == 401 else "Error"
    if exc.status_code == 404:
        kind = "Not Found"
    return _error(exc.status_code, kind, str(exc.detail))


def ok(data) -> dict[str, object]:
    return {"success": True, "data": data}


def account_out(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "currency": account.currency,
        "initial_balance": format_amount(account.initial_balance_units),
        "current_balance": format_amount(account.current_balance_units),
        "description": account.description,
        "color": account.color,
        "is_active": account.is_active,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }


def category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "category_id": txn.category_id,
        "type": txn.type.value,
        "amount": format_amount(txn.amount_units),
        "currency": txn.currency,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "notes": txn.notes,
        "payee": txn.payee,
        "reference": txn.reference,
        "recurring_template_id": txn.recurring_template_id,
        "occurrence_date": (
            txn.occurrence_date.isoformat() if txn.occurrence_date else None
        ),
        "splits": [
            {
                "id": split.id,
                "category_id": split.category_id,
                "amount": format_amount(split.amount_units),
                "description": split.description,
            }
            for split in txn.splits
        ],
    }


def template_out(template: RecurringTemplate) -> dict[str, object]:
    return {
        "id": template.id,
        "account_id": template.account_id,
        "category_id": template.category_id,
        "name": template.name,
        "description": template.description,
        "type": template.type.value,
        "amount": format_amount(template.amount_units),
        "currency": template.currency,
        "frequency": template.frequency.value,
        "start_date": template.start_date.isoformat(),
        "end_date": template.end_date.isoformat() if template.end_date else None,
        "next_occurrence": template.next_occurrence.isoformat(),
        "day_of_month": template.day_of_month,
        "day_of_week": template.day_of_week,
        "is_active": template.is_active,
        "auto_create": template.auto_create,
        "last_created": (
            template.last_created.isoformat() if template.last_created else None
        ),
    }


def budget_out(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "amount": format_amount(budget.amount_units),
        "currency": budget.currency,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
        "allow_rollover": budget.allow_rollover,
        "alert_enabled": budget.alert_enabled,
        "alert_threshold": budget.alert_threshold,
        "is_active": budget.is_active,
    }


def progress_out(progress: BudgetService.Progress) -> dict[str, object]:
    payload = budget_out(progress.budget)
    payload.update(
        {
            "window_start": progress.window.start.isoformat(),
            "window_end": progress.window.end.isoformat(),
            "spent": format_amount(progress.spent_units),
            "remaining": format_amount(progress.remaining_units),
            "percentage": str(progress.percentage),
            "alert_triggered": progress.alert_triggered,
        }
    )
    return payload


def rate_out(rate: ExchangeRate) -> dict[str, object]:
    return {
        "from_currency": rate.from_currency,
        "to_currency": rate.to_currency,
        "rate": str(micros_to_rate(rate.rate_micros).normalize()),
        "rate_date": rate.rate_date.isoformat(),
    }


def sweep_out(result: ProcessResult) -> dict[str, object]:
    return {
        "processed": result.processed,
        "created": result.created,
        "errors": result.errors,
    }


@app.get("/accounts")
def list_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok([account_out(a) for a in AccountService(db, user_id).list()])


@app.post("/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(account_out(AccountService(db, user_id).create(payload)))


@app.get("/accounts/balances")
def account_balances(
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    total = AccountService(db, user_id).total_balance(currency)
    return ok(
        {
            "currency": total["currency"],
            "total": format_amount(total["total_units"]),
            "account_count": total["account_count"],
        }
    )


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(account_out(AccountService(db, user_id).get(account_id)))


@app.patch("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(account_out(AccountService(db, user_id).update(account_id, payload)))


@app.delete("/accounts/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    if not AccountService(db, user_id).delete(account_id):
        raise NotFound("Account not found")
    return ok({"id": account_id, "deleted": True})


@app.get("/categories")
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok([category_out(c) for c in CategoryService(db, user_id).list()])


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(category_out(CategoryService(db, user_id).create(payload)))


@app.get("/transactions")
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    txn_type: Optional[TransactionType] = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = TransactionFilters(
        start=start,
        end=end,
        account_id=account_id,
        category_id=category_id,
        type=txn_type,
    )
    items = TransactionService(db, user_id).list(filters, limit=limit, offset=offset)
    return ok([transaction_out(t) for t in items])


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(transaction_out(TransactionService(db, user_id).create(payload)))


@app.get("/transactions/summary")
def transaction_summary(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    include_recurring: bool = False,
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    window = resolve_period(period, start, end)
    summary = TransactionService(db, user_id).summary(
        window.start,
        window.end,
        include_recurring=include_recurring,
        currency=currency,
    )
    payload = summary.as_dict()
    payload.update(
        {
            "period": window.slug,
            "start": window.start.isoformat(),
            "end": window.end.isoformat(),
        }
    )
    return ok(payload)


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(transaction_out(TransactionService(db, user_id).get(transaction_id)))


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).update(transaction_id, payload)
    return ok(transaction_out(txn))


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    if not TransactionService(db, user_id).delete(transaction_id):
        raise NotFound("Transaction not found")
    return ok({"id": transaction_id, "deleted": True})


@app.get("/recurring")
def list_recurring(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok([template_out(t) for t in RecurringTemplateService(db, user_id).list()])


@app.get("/recurring/active")
def list_active_recurring(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    templates = RecurringTemplateService(db, user_id).list_active()
    return ok([template_out(t) for t in templates])


@app.post("/recurring", status_code=201)
def create_recurring(
    payload: RecurringTemplateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(template_out(RecurringTemplateService(db, user_id).create(payload)))


@app.post("/recurring/process-due")
def process_due(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(sweep_out(RecurringEngine(db).process_due_for_user(user_id)))


@app.get("/recurring/{template_id}")
def get_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(template_out(RecurringTemplateService(db, user_id).get(template_id)))


@app.patch("/recurring/{template_id}")
def update_recurring(
    template_id: int,
    payload: RecurringTemplateUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    template = RecurringTemplateService(db, user_id).update(template_id, payload)
    return ok(template_out(template))


@app.delete("/recurring/{template_id}")
def delete_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    if not RecurringTemplateService(db, user_id).delete(template_id):
        raise NotFound("Recurring transaction not found")
    return ok({"id": template_id, "deleted": True})


@app.patch("/recurring/{template_id}/toggle")
def toggle_recurring(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    template = RecurringTemplateService(db, user_id).toggle_active(template_id)
    return ok(template_out(template))


@app.post("/recurring/{template_id}/create-now")
def create_recurring_now(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = RecurringEngine(db).create_now(template_id, user_id)
    return ok({"transaction": transaction_out(txn) if txn else None})


@app.get("/recurring/{template_id}/occurrences")
def recurring_occurrences(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    items = RecurringTemplateService(db, user_id).occurrences(template_id)
    return ok([transaction_out(t) for t in items])


@app.get("/budgets")
def list_budgets(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    progress = BudgetService(db, user_id).all_with_progress()
    return ok([progress_out(p) for p in progress])


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(budget_out(BudgetService(db, user_id).create(payload)))


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return ok(progress_out(service.evaluate(service.get(budget_id))))


@app.patch("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(budget_out(BudgetService(db, user_id).update(budget_id, payload)))


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    if not BudgetService(db, user_id).delete(budget_id):
        raise NotFound("Budget not found")
    return ok({"id": budget_id, "deleted": True})


@app.get("/exchange-rates")
def list_exchange_rates(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok([rate_out(r) for r in ExchangeRateService(db).list()])


@app.put("/exchange-rates")
def set_exchange_rate(
    payload: ExchangeRateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(rate_out(ExchangeRateService(db).set_rate(payload)))


@app.post("/admin/rebuild-balances")
def rebuild_balances(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    corrections = AccountLedger(db, user_id).rebuild()
    commit_or_raise(db)
    if corrections:
        logger.warning(
            f"balances_rebuilt: user={user_id} corrected={sorted(corrections)}"
        )
    return ok(
        {
            "corrected": {
                str(account_id): format_amount(delta)
                for account_id, delta in corrections.items()
            }
        }
    )
