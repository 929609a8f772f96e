from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional, Type, TypeVar

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from cursors import decode_cursor, encode_cursor
from errors import (
    ConflictError,
    InternalError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from models import (
    NEUTRAL_COLOR,
    Account,
    Category,
    CurrencyCode,
    RecurringTransaction,
    Transaction,
    utcnow,
)
from periods import current_month, trailing_period
from recurrence import days_until_next
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    RecurringIn,
    RecurringUpdate,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"
RESET_CONFIRMATION = "DELETE ALL MY FINANCE DATA"
CENTS = Decimal("0.01")

DEFAULT_CATEGORIES: list[dict[str, str]] = [
    {"name": "Food & Dining", "icon": "food", "color": "#FF6B6B"},
    {"name": "Transportation", "icon": "car", "color": "#4ECDC4"},
    {"name": "Shopping", "icon": "shopping", "color": "#45B7D1"},
    {"name": "Entertainment", "icon": "entertainment", "color": "#96CEB4"},
    {"name": "Bills & Utilities", "icon": "bills", "color": "#FFEAA7"},
    {"name": "Healthcare", "icon": "health", "color": "#DDA0DD"},
    {"name": "Education", "icon": "education", "color": "#98D8C8"},
    {"name": "Travel", "icon": "travel", "color": "#F7DC6F"},
    {"name": "Income", "icon": "income", "color": "#82E5AA"},
    {"name": OTHER_CATEGORY, "icon": "other", "color": NEUTRAL_COLOR},
]

# Children before parents: nothing may point at a row once it is removed.
RESET_PIPELINE: tuple[tuple[str, type], ...] = (
    ("transactions", Transaction),
    ("recurring_transactions", RecurringTransaction),
    ("categories", Category),
    ("accounts", Account),
)

ModelT = TypeVar("ModelT", Account, Category, Transaction, RecurringTransaction)


@contextmanager
def unit_of_work(
    session: Session, conflict_message: str = "Conflicting change, please retry"
) -> Iterator[None]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"commit_conflict: {exc.orig}")
        raise ConflictError(conflict_message) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("commit_failed")
        raise InternalError("Storage failure, please retry") from exc


def get_owned(
    session: Session, model: Type[ModelT], entity_id: int, user_id: int, label: str
) -> ModelT:
    obj = session.get(model, entity_id)
    if not obj or obj.user_id != user_id:
        raise NotFoundError(f"{label} not found")
    return obj


def adjust_balance(
    session: Session, account: Account, delta: Decimal, now: datetime
) -> Decimal:
    # Additive UPDATE so concurrent writers on one account never overwrite
    # each other's deltas.
    session.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(current_amount=Account.current_amount + delta, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.refresh(account, attribute_names=["current_amount", "updated_at"])
    return account.current_amount


def to_money(value: object) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


@dataclass
class RecurringFilters:
    account_id: Optional[int] = None
    is_active: Optional[bool] = None


@dataclass
class Page:
    items: list
    next_cursor: Optional[str]
    is_done: bool


@dataclass
class TransactionResult:
    transaction: Transaction
    new_balance: Decimal


@dataclass
class TransactionUpdateResult:
    transaction: Transaction
    old_account_balance: Optional[Decimal]
    new_account_balance: Decimal


@dataclass
class TransactionDeleteResult:
    account_id: int
    deleted_amount: Decimal
    new_balance: Decimal


@dataclass
class CategoryUsage:
    category: Category
    usage_count: int


@dataclass
class CategoryDeleteResult:
    reassigned_transactions: int
    target_category_id: Optional[int] = None


@dataclass
class ScheduledRecurring:
    rule: RecurringTransaction
    days_until_next: int


@dataclass
class RecurringDeleteResult:
    deleted_transactions: int


@dataclass
class AccountBalance:
    account_id: int
    current_amount: Decimal
    default_value: Decimal
    transaction_count: int
    last_transaction_date: Optional[datetime]
    last_updated: datetime


@dataclass
class TotalBalance:
    total_balance: Decimal
    account_count: int
    balances: list[dict[str, object]] = field(default_factory=list)


@dataclass
class PeriodSummary:
    total_income: Decimal
    total_expenses: Decimal
    net_flow: Decimal
    transaction_count: int
    average_transaction_amount: Decimal
    total_balance: Decimal
    account_count: int
    period_start: datetime
    period_end: datetime


@dataclass
class SetupResult:
    account_id: int
    categories_created: int


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.display_order, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        return get_owned(self.session, Account, account_id, self.user_id, "Account")

    def transaction_count(self, account_id: int) -> int:
        account = self.get(account_id)
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account.id
                )
            ).scalar_one()
            or 0
        )

    def insert(self, data: AccountIn, now: Optional[datetime] = None) -> Account:
        """Add an account to the current unit of work without committing."""
        name = data.name.strip()
        if not name:
            raise ValidationError("Account name cannot be empty")
        now = now or utcnow()

        count, max_order = self.session.execute(
            select(func.count(Account.id), func.max(Account.display_order)).where(
                Account.user_id == self.user_id
            )
        ).one()
        is_first = not count
        account = Account(
            user_id=self.user_id,
            name=name,
            description=_clean_text(data.description),
            icon=data.icon,
            current_amount=data.opening_balance,
            default_value=data.opening_balance,
            currency=data.currency,
            is_default=is_first,
            display_order=0 if is_first else int(max_order) + 1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)
        self.session.flush()
        return account

    def create(self, data: AccountIn) -> Account:
        with unit_of_work(self.session):
            account = self.insert(data)
        logger.info(f"account_created: user={self.user_id} account={account.id}")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        fields = data.model_dump(exclude_unset=True)
        with unit_of_work(self.session):
            account = self.get(account_id)
            if "name" in fields:
                name = (fields["name"] or "").strip()
                if not name:
                    raise ValidationError("Account name cannot be empty")
                account.name = name
            if "description" in fields:
                account.description = _clean_text(fields["description"])
            if fields.get("icon") is not None:
                account.icon = fields["icon"]
            if "currency" in fields:
                account.currency = fields["currency"]
            if fields.get("display_order") is not None:
                account.display_order = fields["display_order"]
            account.updated_at = utcnow()
        return account

    def set_default(self, account_id: int) -> list[Account]:
        with unit_of_work(self.session):
            target = self.get(account_id)
            now = utcnow()
            for account in self.list_all():
                should_be_default = account.id == target.id
                if account.is_default != should_be_default:
                    account.is_default = should_be_default
                    account.updated_at = now
        return self.list_all()

    def delete(self, account_id: int) -> None:
        with unit_of_work(self.session):
            account = self.get(account_id)
            txn_count = int(
                self.session.execute(
                    select(func.count(Transaction.id)).where(
                        Transaction.account_id == account.id
                    )
                ).scalar_one()
                or 0
            )
            recurring_count = int(
                self.session.execute(
                    select(func.count(RecurringTransaction.id)).where(
                        RecurringTransaction.account_id == account.id
                    )
                ).scalar_one()
                or 0
            )
            if txn_count or recurring_count:
                message = f"Cannot delete account with {txn_count} transactions"
                if recurring_count:
                    message += f" and {recurring_count} recurring transactions"
                raise ConflictError(message)

            was_default = account.is_default
            self.session.delete(account)
            self.session.flush()

            if was_default:
                successor = self.session.scalar(
                    select(Account)
                    .where(Account.user_id == self.user_id)
                    .order_by(Account.display_order, Account.id)
                    .limit(1)
                )
                if successor is not None:
                    successor.is_default = True
                    successor.updated_at = utcnow()
        logger.info(f"account_deleted: user={self.user_id} account={account_id}")

    def recalculate_balance(self, account_id: int) -> dict[str, object]:
        """Rebuild current_amount from the opening value and the journal."""
        with unit_of_work(self.session):
            account = self.get(account_id)
            previous = account.current_amount
            total, count = self.session.execute(
                select(
                    func.coalesce(func.sum(Transaction.amount), 0),
                    func.count(Transaction.id),
                ).where(Transaction.account_id == account.id)
            ).one()
            account.current_amount = to_money(account.default_value) + to_money(total)
            account.updated_at = utcnow()
        if to_money(previous) != to_money(account.current_amount):
            logger.warning(
                f"balance_drift: account={account.id} "
                f"stored={previous} computed={account.current_amount}"
            )
        return {
            "previous_balance": to_money(previous),
            "new_balance": to_money(account.current_amount),
            "transaction_count": int(count or 0),
        }


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def default_catalog() -> list[dict[str, str]]:
        return [dict(item) for item in DEFAULT_CATEGORIES]

    def get(self, category_id: int) -> Category:
        return get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )

    def list_all(self) -> list[CategoryUsage]:
        usage = func.count(Transaction.id).label("usage_count")
        stmt = (
            select(Category, usage)
            .outerjoin(Transaction, Transaction.category_id == Category.id)
            .where(Category.user_id == self.user_id)
            .group_by(Category.id)
            .order_by(usage.desc(), Category.name)
        )
        return [
            CategoryUsage(category=category, usage_count=int(count or 0))
            for category, count in self.session.execute(stmt).all()
        ]

    def _find_by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.name == name
            )
        )

    def _clean_name(self, name: Optional[str]) -> str:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        return clean_name

    def create(self, data: CategoryIn) -> Category:
        name = self._clean_name(data.name)
        with unit_of_work(
            self.session, conflict_message="Category with this name already exists"
        ):
            if self._find_by_name(name):
                raise ConflictError("Category with this name already exists")
            category = Category(
                user_id=self.user_id,
                name=name,
                icon=data.icon,
                color=data.color or NEUTRAL_COLOR,
                is_default=False,
            )
            self.session.add(category)
            self.session.flush()
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        fields = data.model_dump(exclude_unset=True)
        with unit_of_work(
            self.session, conflict_message="Category with this name already exists"
        ):
            category = self.get(category_id)
            if "name" in fields:
                name = self._clean_name(fields["name"])
                if name != category.name:
                    if self._find_by_name(name):
                        raise ConflictError("Category with this name already exists")
                    category.name = name
            if fields.get("icon") is not None:
                category.icon = fields["icon"]
            if fields.get("color") is not None:
                category.color = fields["color"]
            category.updated_at = utcnow()
        return category

    def _fallback_category(self, deleting: Category) -> Category:
        other = self._find_by_name(OTHER_CATEGORY)
        if other is not None and other.id == deleting.id:
            raise ConflictError(
                "Cannot delete the Other category while it is in use; "
                "choose a reassignment category"
            )
        if other is None:
            other = Category(
                user_id=self.user_id,
                name=OTHER_CATEGORY,
                icon="other",
                color=NEUTRAL_COLOR,
                is_default=True,
            )
            self.session.add(other)
            self.session.flush()
            logger.info(f"fallback_category_created: user={self.user_id}")
        return other

    def delete(
        self, category_id: int, reassign_to: Optional[int] = None
    ) -> CategoryDeleteResult:
        now = utcnow()
        with unit_of_work(self.session):
            category = self.get(category_id)

            target: Optional[Category] = None
            if reassign_to is not None:
                candidate = self.session.get(Category, reassign_to)
                if (
                    not candidate
                    or candidate.user_id != self.user_id
                    or candidate.id == category.id
                ):
                    raise ValidationError("Invalid reassignment category")
                target = candidate

            transactions = self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
            ).all()
            rules = self.session.scalars(
                select(RecurringTransaction).where(
                    RecurringTransaction.user_id == self.user_id,
                    RecurringTransaction.category_id == category.id,
                )
            ).all()

            if (transactions or rules) and target is None:
                target = self._fallback_category(category)
            for txn in transactions:
                txn.category = target
                txn.updated_at = now
            for rule in rules:
                rule.category = target
                rule.updated_at = now
            self.session.flush()

            self.session.delete(category)

        logger.info(
            f"category_deleted: user={self.user_id} category={category_id} "
            f"reassigned={len(transactions)}"
        )
        return CategoryDeleteResult(
            reassigned_transactions=len(transactions),
            target_category_id=target.id if target is not None else None,
        )

    def seed_defaults(self) -> list[int]:
        """Insert missing catalog entries into the current unit of work."""
        existing = set(
            self.session.scalars(
                select(Category.name).where(Category.user_id == self.user_id)
            ).all()
        )
        created: list[Category] = []
        for item in DEFAULT_CATEGORIES:
            if item["name"] in existing:
                continue
            category = Category(
                user_id=self.user_id,
                name=item["name"],
                icon=item["icon"],
                color=item["color"],
                is_default=True,
            )
            self.session.add(category)
            created.append(category)
        self.session.flush()
        return [category.id for category in created]

    def initialize_defaults(self) -> list[int]:
        with unit_of_work(
            self.session, conflict_message="Category with this name already exists"
        ):
            created = self.seed_defaults()
        return created


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _account(self, account_id: int) -> Account:
        return get_owned(self.session, Account, account_id, self.user_id, "Account")

    def _category(self, category_id: Optional[int]) -> Optional[Category]:
        if category_id is None:
            return None
        return get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def post(
        self,
        data: TransactionIn,
        *,
        recurring_transaction_id: Optional[int] = None,
        occurrence_at: Optional[datetime] = None,
        require_nonzero: bool = False,
        now: Optional[datetime] = None,
    ) -> TransactionResult:
        """Insert a transaction and apply it to its account, uncommitted."""
        now = now or utcnow()
        account = self._account(data.account_id)
        category = self._category(data.category_id)
        if require_nonzero and data.amount == 0:
            raise ValidationError("Transaction amount cannot be zero")

        txn = Transaction(
            user_id=self.user_id,
            account=account,
            category=category,
            amount=data.amount,
            description=_clean_text(data.description),
            date=data.date or now,
            is_recurring=recurring_transaction_id is not None,
            recurring_transaction_id=recurring_transaction_id,
            occurrence_at=occurrence_at,
            created_at=now,
            updated_at=now,
        )
        self.session.add(txn)
        self.session.flush()
        new_balance = adjust_balance(self.session, account, data.amount, now)
        return TransactionResult(transaction=txn, new_balance=new_balance)

    def create(
        self, data: TransactionIn, *, require_nonzero: bool = False
    ) -> TransactionResult:
        with unit_of_work(self.session):
            result = self.post(data, require_nonzero=require_nonzero)
        return result

    def update(
        self,
        transaction_id: int,
        data: TransactionUpdate,
        *,
        require_nonzero: bool = False,
    ) -> TransactionUpdateResult:
        fields = data.model_dump(exclude_unset=True)
        now = utcnow()
        with unit_of_work(self.session):
            txn = self.get(transaction_id)
            old_account = self._account(txn.account_id)
            old_amount = txn.amount

            new_account = old_account
            if fields.get("account_id") is not None:
                new_account = self._account(fields["account_id"])
            new_amount = old_amount
            if fields.get("amount") is not None:
                new_amount = fields["amount"]
                if require_nonzero and new_amount == 0:
                    raise ValidationError("Transaction amount cannot be zero")

            if "category_id" in fields:
                txn.category = self._category(fields["category_id"])
            if "description" in fields:
                txn.description = _clean_text(fields["description"])
            if fields.get("date") is not None:
                txn.date = fields["date"]
            txn.account = new_account
            txn.amount = new_amount
            txn.updated_at = now
            self.session.flush()

            old_account_balance: Optional[Decimal] = None
            if new_account.id != old_account.id:
                old_account_balance = adjust_balance(
                    self.session, old_account, -old_amount, now
                )
                new_account_balance = adjust_balance(
                    self.session, new_account, new_amount, now
                )
            elif new_amount != old_amount:
                new_account_balance = adjust_balance(
                    self.session, new_account, new_amount - old_amount, now
                )
            else:
                new_account_balance = new_account.current_amount
        return TransactionUpdateResult(
            transaction=txn,
            old_account_balance=old_account_balance,
            new_account_balance=new_account_balance,
        )

    def remove(
        self, txn: Transaction, now: Optional[datetime] = None
    ) -> TransactionDeleteResult:
        """Delete a transaction and reverse its effect, uncommitted."""
        now = now or utcnow()
        account = self._account(txn.account_id)
        amount = txn.amount
        self.session.delete(txn)
        self.session.flush()
        new_balance = adjust_balance(self.session, account, -amount, now)
        return TransactionDeleteResult(
            account_id=account.id, deleted_amount=amount, new_balance=new_balance
        )

    def delete(self, transaction_id: int) -> TransactionDeleteResult:
        with unit_of_work(self.session):
            result = self.remove(self.get(transaction_id))
        return result

    def _page_size(self, limit: Optional[int]) -> int:
        settings = get_settings()
        if limit is None:
            return settings.page_size
        return min(max(int(limit), 1), settings.max_page_size)

    def _paginate(
        self,
        stmt,
        scope: str,
        cursor: Optional[str],
        limit: Optional[int],
        descending: bool,
    ) -> Page:
        size = self._page_size(limit)
        scope = f"{scope}:{'desc' if descending else 'asc'}"
        position = decode_cursor(cursor, scope)
        if position is not None:
            when, row_id = position
            if descending:
                stmt = stmt.where(
                    or_(
                        Transaction.date < when,
                        and_(Transaction.date == when, Transaction.id < row_id),
                    )
                )
            else:
                stmt = stmt.where(
                    or_(
                        Transaction.date > when,
                        and_(Transaction.date == when, Transaction.id > row_id),
                    )
                )
        if descending:
            stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        else:
            stmt = stmt.order_by(Transaction.date.asc(), Transaction.id.asc())

        rows = list(self.session.scalars(stmt.limit(size + 1)).all())
        has_more = len(rows) > size
        items = rows[:size]
        next_cursor = None
        if has_more:
            last = items[-1]
            next_cursor = encode_cursor((last.date, last.id), scope)
        return Page(items=items, next_cursor=next_cursor, is_done=not has_more)

    def list_for_account(
        self,
        account_id: int,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = True,
    ) -> Page:
        account = self._account(account_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account.id,
            )
        )
        return self._paginate(
            stmt, f"account:{account.id}", cursor, limit, descending
        )

    def list_for_user(
        self,
        filters: Optional[TransactionFilters] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = True,
    ) -> Page:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
        )
        if filters.account_id is not None:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start is not None:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.min_amount is not None:
            stmt = stmt.where(Transaction.amount >= filters.min_amount)
        if filters.max_amount is not None:
            stmt = stmt.where(Transaction.amount <= filters.max_amount)
        return self._paginate(stmt, f"user:{self.user_id}", cursor, limit, descending)


class RecurringTransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, recurring_id: int) -> RecurringTransaction:
        return get_owned(
            self.session,
            RecurringTransaction,
            recurring_id,
            self.user_id,
            "Recurring transaction",
        )

    @staticmethod
    def _validate_amount(amount: Decimal) -> Decimal:
        if amount == 0:
            raise ValidationError("Recurring transaction amount cannot be zero")
        return amount

    @staticmethod
    def _validate_description(description: Optional[str]) -> str:
        clean = (description or "").strip()
        if not clean:
            raise ValidationError("Recurring transaction description cannot be empty")
        return clean

    @staticmethod
    def _validate_next_execution(next_execution: datetime, now: datetime) -> datetime:
        if next_execution <= now:
            raise ValidationError("Next execution date must be in the future")
        return next_execution

    @staticmethod
    def _validate_end_date(
        end_date: Optional[datetime], next_execution: datetime
    ) -> Optional[datetime]:
        if end_date is not None and end_date <= next_execution:
            raise ValidationError("End date must be after the next execution date")
        return end_date

    def list_all(
        self,
        filters: Optional[RecurringFilters] = None,
        now: Optional[datetime] = None,
    ) -> list[ScheduledRecurring]:
        filters = filters or RecurringFilters()
        now = now or utcnow()
        stmt = (
            select(RecurringTransaction)
            .options(
                joinedload(RecurringTransaction.account),
                joinedload(RecurringTransaction.category),
            )
            .where(RecurringTransaction.user_id == self.user_id)
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        if filters.account_id is not None:
            stmt = stmt.where(RecurringTransaction.account_id == filters.account_id)
        if filters.is_active is not None:
            stmt = stmt.where(RecurringTransaction.is_active.is_(filters.is_active))
        return [
            ScheduledRecurring(rule=rule, days_until_next=days_until_next(rule, now))
            for rule in self.session.scalars(stmt).all()
        ]

    def create(
        self, data: RecurringIn, now: Optional[datetime] = None
    ) -> RecurringTransaction:
        now = now or utcnow()
        with unit_of_work(self.session):
            account = get_owned(
                self.session, Account, data.account_id, self.user_id, "Account"
            )
            category = None
            if data.category_id is not None:
                category = get_owned(
                    self.session, Category, data.category_id, self.user_id, "Category"
                )
            amount = self._validate_amount(data.amount)
            description = self._validate_description(data.description)
            next_execution = self._validate_next_execution(
                data.next_execution_date, now
            )
            end_date = self._validate_end_date(data.end_date, next_execution)

            rule = RecurringTransaction(
                user_id=self.user_id,
                account=account,
                category=category,
                amount=amount,
                description=description,
                frequency=data.frequency,
                next_execution_date=next_execution,
                end_date=end_date,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self.session.add(rule)
            self.session.flush()
        logger.info(
            f"recurring_created: user={self.user_id} rule={rule.id} "
            f"frequency={rule.frequency.value}"
        )
        return rule

    def update(
        self,
        recurring_id: int,
        data: RecurringUpdate,
        now: Optional[datetime] = None,
    ) -> RecurringTransaction:
        fields = data.model_dump(exclude_unset=True)
        now = now or utcnow()
        with unit_of_work(self.session):
            rule = self.get(recurring_id)
            if fields.get("account_id") is not None:
                rule.account = get_owned(
                    self.session, Account, fields["account_id"], self.user_id, "Account"
                )
            if "category_id" in fields:
                category_id = fields["category_id"]
                rule.category = (
                    get_owned(
                        self.session, Category, category_id, self.user_id, "Category"
                    )
                    if category_id is not None
                    else None
                )
            if fields.get("amount") is not None:
                rule.amount = self._validate_amount(fields["amount"])
            if "description" in fields:
                rule.description = self._validate_description(fields["description"])
            if fields.get("frequency") is not None:
                rule.frequency = fields["frequency"]
            if fields.get("next_execution_date") is not None:
                rule.next_execution_date = self._validate_next_execution(
                    fields["next_execution_date"], now
                )
            if "end_date" in fields:
                rule.end_date = self._validate_end_date(
                    fields["end_date"], rule.next_execution_date
                )
            if fields.get("is_active") is not None:
                rule.is_active = fields["is_active"]
            rule.updated_at = now
        return rule

    def delete(
        self, recurring_id: int, delete_generated: bool = False
    ) -> RecurringDeleteResult:
        now = utcnow()
        deleted = 0
        with unit_of_work(self.session):
            rule = self.get(recurring_id)
            generated = self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.recurring_transaction_id == rule.id,
                )
            ).all()
            journal = TransactionService(self.session, self.user_id)
            for txn in generated:
                if delete_generated:
                    journal.remove(txn, now=now)
                    deleted += 1
                else:
                    txn.recurring_transaction_id = None
                    txn.updated_at = now
            self.session.flush()
            self.session.delete(rule)
        logger.info(
            f"recurring_deleted: user={self.user_id} rule={recurring_id} "
            f"generated_deleted={deleted}"
        )
        return RecurringDeleteResult(deleted_transactions=deleted)


class BalanceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _accounts(self) -> list[Account]:
        return AccountService(self.session, self.user_id).list_all()

    def account_balance(self, account_id: int) -> Optional[AccountBalance]:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            return None
        count, last_date = self.session.execute(
            select(func.count(Transaction.id), func.max(Transaction.date)).where(
                Transaction.account_id == account.id
            )
        ).one()
        return AccountBalance(
            account_id=account.id,
            current_amount=to_money(account.current_amount),
            default_value=to_money(account.default_value),
            transaction_count=int(count or 0),
            last_transaction_date=last_date,
            last_updated=account.updated_at,
        )

    def total_balance(self, include_inactive: bool = False) -> TotalBalance:
        # Accounts carry no active flag, so include_inactive changes nothing yet.
        accounts = self._accounts()
        total = sum((to_money(a.current_amount) for a in accounts), Decimal("0.00"))
        return TotalBalance(
            total_balance=total,
            account_count=len(accounts),
            balances=[
                {
                    "account_id": account.id,
                    "account_name": account.name,
                    "balance": to_money(account.current_amount),
                    "is_default": account.is_default,
                }
                for account in accounts
            ],
        )

    def _flows_between(self, start: datetime, end: datetime) -> tuple:
        income = func.coalesce(
            func.sum(case((Transaction.amount > 0, Transaction.amount), else_=0)), 0
        )
        expenses = func.coalesce(
            func.sum(case((Transaction.amount < 0, -Transaction.amount), else_=0)), 0
        )
        magnitude = func.coalesce(func.sum(func.abs(Transaction.amount)), 0)
        return self.session.execute(
            select(income, expenses, magnitude, func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.date >= start,
                Transaction.date <= end,
            )
        ).one()

    def period_summary(
        self, period_days: int = 30, now: Optional[datetime] = None
    ) -> PeriodSummary:
        try:
            period = trailing_period(period_days, now=now)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        income, expenses, magnitude, count = self._flows_between(
            period.start, period.end
        )
        count = int(count or 0)
        income = to_money(income)
        expenses = to_money(expenses)
        average = (to_money(magnitude) / count).quantize(CENTS) if count else to_money(0)
        totals = self.total_balance()
        return PeriodSummary(
            total_income=income,
            total_expenses=expenses,
            net_flow=income - expenses,
            transaction_count=count,
            average_transaction_amount=average,
            total_balance=totals.total_balance,
            account_count=totals.account_count,
            period_start=period.start,
            period_end=period.end,
        )

    def dashboard(
        self, recent_limit: int = 10, now: Optional[datetime] = None
    ) -> dict[str, object]:
        now = now or utcnow()
        accounts = self._accounts()
        recent = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(recent_limit)
        ).all()
        upcoming = self.session.scalars(
            select(RecurringTransaction)
            .options(
                joinedload(RecurringTransaction.account),
                joinedload(RecurringTransaction.category),
            )
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_execution_date <= now + timedelta(days=7),
            )
            .order_by(RecurringTransaction.next_execution_date)
        ).all()
        month = current_month(now=now)
        income, expenses, _magnitude, count = self._flows_between(
            month.start, month.end
        )
        income = to_money(income)
        expenses = to_money(expenses)

        return {
            "total_balance": sum(
                (to_money(a.current_amount) for a in accounts), Decimal("0.00")
            ),
            "accounts": [
                {
                    "id": account.id,
                    "name": account.name,
                    "icon": account.icon,
                    "current_amount": to_money(account.current_amount),
                    "is_default": account.is_default,
                }
                for account in sorted(accounts, key=lambda a: not a.is_default)
            ],
            "recent_transactions": [
                {
                    "id": txn.id,
                    "amount": to_money(txn.amount),
                    "description": txn.description,
                    "date": txn.date,
                    "account_name": txn.account.name,
                    "category_name": txn.category.name if txn.category else None,
                    "is_recurring": txn.is_recurring,
                }
                for txn in recent
            ],
            "upcoming_recurring": [
                {
                    "id": rule.id,
                    "amount": to_money(rule.amount),
                    "description": rule.description,
                    "next_execution_date": rule.next_execution_date,
                    "frequency": rule.frequency.value,
                    "account_name": rule.account.name,
                    "category_name": rule.category.name if rule.category else None,
                    "days_until_next": days_until_next(rule, now),
                }
                for rule in upcoming
            ],
            "monthly_stats": {
                "income": income,
                "expenses": expenses,
                "net": income - expenses,
                "transaction_count": int(count or 0),
            },
        }


class SetupService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _count(self, model: type) -> int:
        return int(
            self.session.execute(
                select(func.count(model.id)).where(model.user_id == self.user_id)
            ).scalar_one()
            or 0
        )

    def initialize(
        self,
        account_name: Optional[str] = None,
        account_icon: Optional[str] = None,
        opening_balance: Optional[Decimal] = None,
    ) -> SetupResult:
        with unit_of_work(self.session):
            if self._count(Account):
                raise ConflictError("User finance system already initialized")
            account = AccountService(self.session, self.user_id).insert(
                AccountIn(
                    name=account_name or "Main Account",
                    description="Your primary account",
                    icon=account_icon or "💳",
                    opening_balance=opening_balance or Decimal("0"),
                    currency=CurrencyCode.usd,
                )
            )
            created = CategoryService(self.session, self.user_id).seed_defaults()
        logger.info(
            f"setup_initialized: user={self.user_id} account={account.id} "
            f"categories={len(created)}"
        )
        return SetupResult(account_id=account.id, categories_created=len(created))

    def status(self) -> dict[str, object]:
        account_count = self._count(Account)
        category_count = self._count(Category)
        transaction_count = self._count(Transaction)
        total = self.session.execute(
            select(func.coalesce(func.sum(Account.current_amount), 0)).where(
                Account.user_id == self.user_id
            )
        ).scalar_one()
        return {
            "is_setup": account_count > 0 and category_count > 0,
            "has_accounts": account_count > 0,
            "has_categories": category_count > 0,
            "has_transactions": transaction_count > 0,
            "account_count": account_count,
            "category_count": category_count,
            "transaction_count": transaction_count,
            "total_balance": to_money(total),
        }

    def reset(self, confirmation_phrase: str) -> dict[str, int]:
        if confirmation_phrase != RESET_CONFIRMATION:
            raise ValidationError("Invalid confirmation text. Operation cancelled.")
        deleted_counts: dict[str, int] = {}
        with unit_of_work(self.session):
            for label, model in RESET_PIPELINE:
                result = self.session.execute(
                    delete(model).where(model.user_id == self.user_id)
                )
                deleted_counts[label] = int(result.rowcount or 0)
        logger.warning(f"finance_reset: user={self.user_id} counts={deleted_counts}")
        return deleted_counts
