from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from database import Base, enable_sqlite_pragmas
from errors import ConflictError, ValidationError
from models import Account, Category, Frequency, RecurringTransaction, Transaction
from recurrence import RecurringEngine
from schemas import RecurringIn, TransactionIn
from services import (
    DEFAULT_CATEGORIES,
    RESET_CONFIRMATION,
    AccountService,
    RecurringTransactionService,
    SetupService,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    event.listen(engine, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _count(session, model, user_id: int) -> int:
    return session.execute(
        select(func.count(model.id)).where(model.user_id == user_id)
    ).scalar_one()


def _populate(session, user_id: int) -> None:
    result = SetupService(session, user_id).initialize(opening_balance=Decimal("100"))
    TransactionService(session, user_id).create(
        TransactionIn(account_id=result.account_id, amount=Decimal("-10"))
    )
    now = datetime(2025, 1, 1)
    RecurringTransactionService(session, user_id).create(
        RecurringIn(
            account_id=result.account_id,
            amount=Decimal("-5"),
            description="Coffee",
            frequency=Frequency.daily,
            next_execution_date=now + timedelta(days=1),
        ),
        now=now,
    )


def test_initialize_creates_default_account_and_catalog() -> None:
    session = make_session()

    result = SetupService(session, user_id=1).initialize()

    account = AccountService(session, user_id=1).get(result.account_id)
    assert account.name == "Main Account"
    assert account.description == "Your primary account"
    assert account.icon == "💳"
    assert account.is_default is True
    assert account.current_amount == Decimal("0")
    assert result.categories_created == len(DEFAULT_CATEGORIES)
    assert _count(session, Category, 1) == 10


def test_initialize_twice_is_rejected() -> None:
    session = make_session()
    setup = SetupService(session, user_id=1)
    setup.initialize(account_name="Everyday", opening_balance=Decimal("25"))

    with pytest.raises(ConflictError, match="already initialized"):
        setup.initialize()
    assert _count(session, Account, 1) == 1


def test_status_reflects_progress() -> None:
    session = make_session()
    setup = SetupService(session, user_id=1)

    empty = setup.status()
    assert empty["is_setup"] is False
    assert empty["account_count"] == 0

    _populate(session, user_id=1)
    status = setup.status()
    assert status["is_setup"] is True
    assert status["has_transactions"] is True
    assert status["category_count"] == 10
    assert status["total_balance"] == Decimal("90.00")


def test_reset_requires_exact_phrase() -> None:
    session = make_session()
    _populate(session, user_id=1)

    with pytest.raises(ValidationError, match="Invalid confirmation text"):
        SetupService(session, user_id=1).reset("delete all my finance data")

    assert _count(session, Transaction, 1) == 1
    assert _count(session, Account, 1) == 1


def test_reset_removes_only_callers_data_in_dependency_order() -> None:
    session = make_session()
    _populate(session, user_id=1)
    _populate(session, user_id=2)
    RecurringEngine(session).process_due(now=datetime(2025, 1, 2, 12, 0))

    counts = SetupService(session, user_id=1).reset(RESET_CONFIRMATION)

    assert list(counts) == [
        "transactions",
        "recurring_transactions",
        "categories",
        "accounts",
    ]
    assert counts == {
        "transactions": 2,
        "recurring_transactions": 1,
        "categories": 10,
        "accounts": 1,
    }
    for model in (Transaction, RecurringTransaction, Category, Account):
        assert _count(session, model, 1) == 0
    assert _count(session, Transaction, 2) == 2
    assert _count(session, Account, 2) == 1

    again = SetupService(session, user_id=1).initialize()
    assert again.categories_created == 10
