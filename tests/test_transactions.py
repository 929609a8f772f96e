import threading
from datetime import datetime
from decimal import Decimal

import pydantic
import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker

from cursors import encode_cursor
from database import Base, build_engine, enable_sqlite_pragmas
from errors import NotFoundError, ValidationError
from models import Account, Transaction
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    CategoryService,
    TransactionFilters,
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


def _account(session, name: str = "Main", opening: str = "0", user_id: int = 1):
    return AccountService(session, user_id=user_id).create(
        AccountIn(name=name, opening_balance=Decimal(opening))
    )


def test_create_moves_balance_and_defaults_date() -> None:
    session = make_session()
    account = _account(session, opening="1000")
    journal = TransactionService(session, user_id=1)

    result = journal.create(
        TransactionIn(account_id=account.id, amount=Decimal("-45.50"), description=" Lunch ")
    )

    assert result.new_balance == Decimal("954.50")
    assert result.transaction.description == "Lunch"
    assert result.transaction.is_recurring is False
    assert result.transaction.date is not None
    assert AccountService(session, user_id=1).get(account.id).current_amount == Decimal(
        "954.50"
    )


def test_zero_amount_allowed_unless_required_nonzero() -> None:
    session = make_session()
    account = _account(session)
    journal = TransactionService(session, user_id=1)

    result = journal.create(TransactionIn(account_id=account.id, amount=Decimal("0")))
    assert result.new_balance == Decimal("0")

    with pytest.raises(ValidationError, match="cannot be zero"):
        journal.create(
            TransactionIn(account_id=account.id, amount=Decimal("0")),
            require_nonzero=True,
        )


def test_create_rejects_foreign_account_and_category() -> None:
    session = make_session()
    mine = _account(session)
    theirs = _account(session, name="Theirs", user_id=2)
    foreign_category = CategoryService(session, user_id=2).create(
        CategoryIn(name="Secret")
    )
    journal = TransactionService(session, user_id=1)

    with pytest.raises(NotFoundError, match="Account not found"):
        journal.create(TransactionIn(account_id=theirs.id, amount=Decimal("1")))
    with pytest.raises(NotFoundError, match="Category not found"):
        journal.create(
            TransactionIn(
                account_id=mine.id,
                category_id=foreign_category.id,
                amount=Decimal("1"),
            )
        )
    assert AccountService(session, user_id=2).get(theirs.id).current_amount == 0


def test_update_amount_on_same_account_applies_difference() -> None:
    session = make_session()
    account = _account(session, opening="100")
    journal = TransactionService(session, user_id=1)
    txn = journal.create(
        TransactionIn(account_id=account.id, amount=Decimal("-30"))
    ).transaction

    result = journal.update(txn.id, TransactionUpdate(amount=Decimal("-50")))

    assert result.old_account_balance is None
    assert result.new_account_balance == Decimal("50")
    assert result.transaction.amount == Decimal("-50")


def test_update_moving_accounts_rebalances_both() -> None:
    session = make_session()
    checking = _account(session, name="Checking", opening="100")
    savings = _account(session, name="Savings", opening="500")
    journal = TransactionService(session, user_id=1)
    txn = journal.create(
        TransactionIn(account_id=checking.id, amount=Decimal("-40"))
    ).transaction

    result = journal.update(
        txn.id, TransactionUpdate(account_id=savings.id, amount=Decimal("-25"))
    )

    assert result.old_account_balance == Decimal("100")
    assert result.new_account_balance == Decimal("475")
    assert result.transaction.account_id == savings.id


def test_update_can_clear_category_and_keeps_unsent_fields() -> None:
    session = make_session()
    account = _account(session)
    food = CategoryService(session, user_id=1).create(CategoryIn(name="Food"))
    journal = TransactionService(session, user_id=1)
    when = datetime(2025, 3, 1, 12, 0)
    txn = journal.create(
        TransactionIn(
            account_id=account.id,
            category_id=food.id,
            amount=Decimal("-12"),
            description="Pizza",
            date=when,
        )
    ).transaction

    journal.update(txn.id, TransactionUpdate(description="Pasta"))
    unchanged = journal.get(txn.id)
    assert unchanged.category_id == food.id
    assert unchanged.date == when

    journal.update(txn.id, TransactionUpdate(category_id=None))
    cleared = journal.get(txn.id)
    assert cleared.category_id is None
    assert cleared.description == "Pasta"


def test_delete_reverses_effect() -> None:
    session = make_session()
    account = _account(session, opening="20")
    journal = TransactionService(session, user_id=1)
    txn = journal.create(
        TransactionIn(account_id=account.id, amount=Decimal("80"))
    ).transaction

    result = journal.delete(txn.id)

    assert result.deleted_amount == Decimal("80")
    assert result.new_balance == Decimal("20")
    with pytest.raises(NotFoundError, match="Transaction not found"):
        journal.get(txn.id)


def test_balance_matches_opening_plus_journal_after_mixed_operations() -> None:
    session = make_session()
    a = _account(session, name="A", opening="250")
    b = _account(session, name="B", opening="-10")
    journal = TransactionService(session, user_id=1)

    t1 = journal.create(TransactionIn(account_id=a.id, amount=Decimal("12.34"))).transaction
    t2 = journal.create(TransactionIn(account_id=a.id, amount=Decimal("-99.99"))).transaction
    journal.create(TransactionIn(account_id=b.id, amount=Decimal("40")))
    journal.update(t1.id, TransactionUpdate(account_id=b.id))
    journal.update(t2.id, TransactionUpdate(amount=Decimal("-9.99")))
    journal.delete(t1.id)

    for account in AccountService(session, user_id=1).list_all():
        total = session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.account_id == account.id
            )
        ).scalar_one()
        expected = account.default_value + Decimal(str(total))
        assert account.current_amount == expected.quantize(Decimal("0.01"))


def _seed_history(session, account_id: int) -> list[int]:
    journal = TransactionService(session, user_id=1)
    dates = [
        datetime(2025, 1, 1),
        datetime(2025, 1, 2),
        datetime(2025, 1, 2),
        datetime(2025, 1, 3),
        datetime(2025, 1, 5),
    ]
    return [
        journal.create(
            TransactionIn(account_id=account_id, amount=Decimal("-1"), date=when)
        ).transaction.id
        for when in dates
    ]


def test_account_listing_pages_newest_first_without_gaps() -> None:
    session = make_session()
    account = _account(session)
    ids = _seed_history(session, account.id)
    journal = TransactionService(session, user_id=1)

    seen: list[int] = []
    cursor = None
    pages = 0
    while True:
        page = journal.list_for_account(account.id, cursor=cursor, limit=2)
        seen.extend(txn.id for txn in page.items)
        pages += 1
        if page.is_done:
            assert page.next_cursor is None
            break
        cursor = page.next_cursor

    assert pages == 3
    assert seen == [ids[4], ids[3], ids[2], ids[1], ids[0]]


def test_account_listing_ascending() -> None:
    session = make_session()
    account = _account(session)
    ids = _seed_history(session, account.id)
    journal = TransactionService(session, user_id=1)

    first = journal.list_for_account(account.id, limit=3, descending=False)
    second = journal.list_for_account(
        account.id, cursor=first.next_cursor, limit=3, descending=False
    )

    assert [t.id for t in first.items] + [t.id for t in second.items] == ids
    assert second.is_done is True


def test_cursor_is_rejected_when_tampered_or_reused_elsewhere() -> None:
    session = make_session()
    account = _account(session)
    other = _account(session, name="Other")
    _seed_history(session, account.id)
    journal = TransactionService(session, user_id=1)
    page = journal.list_for_account(account.id, limit=2)

    with pytest.raises(ValidationError, match="Invalid pagination cursor"):
        journal.list_for_account(account.id, cursor=page.next_cursor + "x", limit=2)
    with pytest.raises(ValidationError):
        journal.list_for_account(other.id, cursor=page.next_cursor, limit=2)
    with pytest.raises(ValidationError):
        journal.list_for_user(cursor=page.next_cursor, limit=2)

    forged = encode_cursor((datetime(2025, 1, 1), 1), "account:999:desc")
    with pytest.raises(ValidationError):
        journal.list_for_account(account.id, cursor=forged)


def test_user_listing_applies_filters_and_isolates_users() -> None:
    session = make_session()
    account = _account(session)
    food = CategoryService(session, user_id=1).create(CategoryIn(name="Food"))
    journal = TransactionService(session, user_id=1)
    journal.create(
        TransactionIn(
            account_id=account.id,
            category_id=food.id,
            amount=Decimal("-15"),
            date=datetime(2025, 2, 10),
        )
    )
    journal.create(
        TransactionIn(
            account_id=account.id, amount=Decimal("2000"), date=datetime(2025, 2, 1)
        )
    )
    journal.create(
        TransactionIn(
            account_id=account.id, amount=Decimal("-5"), date=datetime(2025, 1, 1)
        )
    )
    stranger_account = _account(session, name="Theirs", user_id=2)
    TransactionService(session, user_id=2).create(
        TransactionIn(account_id=stranger_account.id, amount=Decimal("-1"))
    )

    everything = journal.list_for_user()
    assert len(everything.items) == 3
    assert everything.is_done is True

    by_category = journal.list_for_user(TransactionFilters(category_id=food.id))
    assert [t.amount for t in by_category.items] == [Decimal("-15")]

    february = journal.list_for_user(
        TransactionFilters(start=datetime(2025, 2, 1), end=datetime(2025, 2, 28))
    )
    assert len(february.items) == 2

    expenses = journal.list_for_user(TransactionFilters(max_amount=Decimal("0")))
    assert sorted(t.amount for t in expenses.items) == [Decimal("-15"), Decimal("-5")]


def test_running_balances_follow_each_posting() -> None:
    session = make_session()
    account = _account(session, opening="1000")
    journal = TransactionService(session, user_id=1)

    balances = [
        journal.create(
            TransactionIn(account_id=account.id, amount=Decimal(amount))
        ).new_balance
        for amount in ("-250", "500", "-100")
    ]

    assert balances == [Decimal("750"), Decimal("1250"), Decimal("1150")]
    assert AccountService(session, user_id=1).get(account.id).current_amount == Decimal(
        "1150"
    )


def test_amounts_beyond_cents_or_column_size_are_rejected() -> None:
    with pytest.raises(pydantic.ValidationError):
        TransactionIn(account_id=1, amount=Decimal("0.004"))
    with pytest.raises(pydantic.ValidationError):
        TransactionUpdate(amount=Decimal("1.005"))
    with pytest.raises(pydantic.ValidationError):
        AccountIn(name="Main", opening_balance=Decimal("10.001"))
    with pytest.raises(pydantic.ValidationError):
        TransactionIn(account_id=1, amount=Decimal("123456789012345"))

    assert TransactionIn(account_id=1, amount=Decimal("-0.01")).amount == Decimal("-0.01")


def test_stored_balance_matches_stored_journal_on_fresh_read() -> None:
    session = make_session()
    account = _account(session, opening="10.10")
    journal = TransactionService(session, user_id=1)

    reported = [
        journal.create(TransactionIn(account_id=account.id, amount=Decimal(amount)))
        for amount in ("0.01", "0.01", "0.01", "-3.33", "1234.56")
    ]

    fresh = Session(bind=session.get_bind())
    stored = fresh.get(Account, account.id)
    amounts = fresh.scalars(
        select(Transaction.amount).where(Transaction.account_id == account.id)
    ).all()
    assert sorted(amounts) == sorted(r.transaction.amount for r in reported)
    assert stored.current_amount == stored.default_value + sum(amounts)
    assert stored.current_amount == reported[-1].new_balance == Decimal("1241.36")
    fresh.close()


def test_concurrent_posts_to_one_account_serialize(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        account = _account(session, opening="100")
    errors: list[Exception] = []

    def post_many() -> None:
        with SessionLocal() as session:
            journal = TransactionService(session, user_id=1)
            for _ in range(10):
                try:
                    journal.create(
                        TransactionIn(account_id=account.id, amount=Decimal("1.25"))
                    )
                except Exception as exc:
                    errors.append(exc)

    workers = [threading.Thread(target=post_many) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    with SessionLocal() as session:
        stored = session.get(Account, account.id)
        count = session.scalar(
            select(func.count(Transaction.id)).where(Transaction.account_id == account.id)
        )
    engine.dispose()

    assert errors == []
    assert count == 80
    assert stored.current_amount == Decimal("200.00")
