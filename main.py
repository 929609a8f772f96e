import logging
from decimal import Decimal
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from errors import (
    ConflictError,
    InternalError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from periods import MAX_PERIOD_DAYS, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    InitializeIn,
    RecurringIn,
    RecurringOut,
    RecurringUpdate,
    ResetIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    AccountService,
    BalanceService,
    CategoryService,
    Page,
    RecurringFilters,
    RecurringTransactionService,
    SetupService,
    TransactionFilters,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Pocket Ledger")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


ERROR_STATUS: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    InternalError: 500,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = 400
    for error_cls, code in ERROR_STATUS.items():
        if isinstance(exc, error_cls):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Authentication required") from exc


def _page_payload(page: Page) -> dict:
    return {
        "items": [TransactionOut.model_validate(txn) for txn in page.items],
        "next_cursor": page.next_cursor,
        "is_done": page.is_done,
    }


# Setup


@app.post("/api/setup", status_code=201)
def initialize_user(
    payload: InitializeIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = SetupService(db, user_id).initialize(
        account_name=payload.account_name,
        account_icon=payload.account_icon,
        opening_balance=payload.opening_balance,
    )
    return {
        "account_id": result.account_id,
        "categories_created": result.categories_created,
    }


@app.get("/api/setup/status")
def setup_status(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return SetupService(db, user_id).status()


@app.post("/api/setup/reset")
def reset_user(
    payload: ResetIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return {"deleted": SetupService(db, user_id).reset(payload.confirmation_phrase)}


# Accounts


@app.get("/api/accounts")
def list_accounts(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    accounts = AccountService(db, user_id).list_all()
    return [AccountOut.model_validate(account) for account in accounts]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).create(payload)
    return AccountOut.model_validate(account)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return AccountOut.model_validate(AccountService(db, user_id).get(account_id))


@app.patch("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).update(account_id, payload)
    return AccountOut.model_validate(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    AccountService(db, user_id).delete(account_id)


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    accounts = AccountService(db, user_id).set_default(account_id)
    return [AccountOut.model_validate(account) for account in accounts]


@app.post("/api/accounts/{account_id}/recalculate")
def recalculate_account(
    account_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).recalculate_balance(account_id)


@app.get("/api/accounts/{account_id}/balance")
def account_balance(
    account_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    balance = BalanceService(db, user_id).account_balance(account_id)
    if balance is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return balance


@app.get("/api/accounts/{account_id}/transactions")
def account_transactions(
    account_id: int,
    cursor: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    order: Literal["desc", "asc"] = "desc",
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    page = TransactionService(db, user_id).list_for_account(
        account_id, cursor=cursor, limit=limit, descending=order == "desc"
    )
    return _page_payload(page)


# Categories


@app.get("/api/categories")
def list_categories(
    user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return [
        {
            **CategoryOut.model_validate(row.category).model_dump(),
            "usage_count": row.usage_count,
        }
        for row in CategoryService(db, user_id).list_all()
    ]


@app.get("/api/categories/defaults")
def default_categories():
    return CategoryService.default_catalog()


@app.post("/api/categories/defaults")
def initialize_default_categories(
    user_id: int = Depends(get_user_id), db: Session = Depends(get_db)
):
    return {"created_ids": CategoryService(db, user_id).initialize_defaults()}


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).create(payload)
    return CategoryOut.model_validate(category)


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).update(category_id, payload)
    return CategoryOut.model_validate(category)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    reassign_to: Optional[int] = None,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = CategoryService(db, user_id).delete(category_id, reassign_to=reassign_to)
    return {
        "reassigned_transactions": result.reassigned_transactions,
        "target_category_id": result.target_category_id,
    }


# Transactions


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    cursor: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    order: Literal["desc", "asc"] = "desc",
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    try:
        start_at, end_at = resolve_period(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        start=start_at,
        end=end_at,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    page = TransactionService(db, user_id).list_for_user(
        filters, cursor=cursor, limit=limit, descending=order == "desc"
    )
    return _page_payload(page)


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).create(payload)
    return {
        "transaction": TransactionOut.model_validate(result.transaction),
        "new_balance": result.new_balance,
    }


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).get(transaction_id)
    return TransactionOut.model_validate(txn)


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).update(transaction_id, payload)
    return {
        "transaction": TransactionOut.model_validate(result.transaction),
        "old_account_balance": result.old_account_balance,
        "new_account_balance": result.new_account_balance,
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).delete(transaction_id)
    return {
        "account_id": result.account_id,
        "deleted_amount": result.deleted_amount,
        "new_balance": result.new_balance,
    }


# Recurring


@app.get("/api/recurring")
def list_recurring(
    account_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rows = RecurringTransactionService(db, user_id).list_all(
        RecurringFilters(account_id=account_id, is_active=is_active)
    )
    return [
        {
            **RecurringOut.model_validate(row.rule).model_dump(),
            "days_until_next": row.days_until_next,
        }
        for row in rows
    ]


@app.post("/api/recurring", status_code=201)
def create_recurring(
    payload: RecurringIn,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rule = RecurringTransactionService(db, user_id).create(payload)
    return RecurringOut.model_validate(rule)


@app.get("/api/recurring/{recurring_id}")
def get_recurring(
    recurring_id: int,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rule = RecurringTransactionService(db, user_id).get(recurring_id)
    return RecurringOut.model_validate(rule)


@app.patch("/api/recurring/{recurring_id}")
def update_recurring(
    recurring_id: int,
    payload: RecurringUpdate,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rule = RecurringTransactionService(db, user_id).update(recurring_id, payload)
    return RecurringOut.model_validate(rule)


@app.delete("/api/recurring/{recurring_id}")
def delete_recurring(
    recurring_id: int,
    delete_generated: bool = False,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    result = RecurringTransactionService(db, user_id).delete(
        recurring_id, delete_generated=delete_generated
    )
    return {"deleted_transactions": result.deleted_transactions}


# Balances


@app.get("/api/balances/total")
def total_balance(
    include_inactive: bool = False,
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return BalanceService(db, user_id).total_balance(include_inactive=include_inactive)


@app.get("/api/balances/summary")
def period_summary(
    period_days: int = Query(default=30, ge=1, le=MAX_PERIOD_DAYS),
    user_id: int = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return BalanceService(db, user_id).period_summary(period_days=period_days)


@app.get("/api/dashboard")
def dashboard(user_id: int = Depends(get_user_id), db: Session = Depends(get_db)):
    return BalanceService(db, user_id).dashboard()
