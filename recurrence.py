import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Frequency, RecurringTransaction, Transaction, utcnow


logger = logging.getLogger(__name__)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def calculate_next_execution(current: datetime, frequency: Frequency) -> datetime:
    if frequency == Frequency.daily:
        return current + timedelta(days=1)
    if frequency == Frequency.weekly:
        return current + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return _add_months(current, 1)
    raise ValueError(f"Unsupported frequency: {frequency}")


def days_until_next(rule: RecurringTransaction, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    delta = rule.next_execution_date - now
    return math.ceil(delta / timedelta(days=1))


@dataclass
class SweepResult:
    processed_count: int = 0
    created_transactions: int = 0
    errors: list[str] = field(default_factory=list)


class RecurringEngine:
    """Materializes due recurring templates into journal transactions.

    Every template is handled as its own unit of work: it is locked,
    re-checked, fired, advanced and committed before the next one is looked
    at. A failure rolls back that template only and is reported in
    ``SweepResult.errors``.
    """

    CREATED = "created"
    DEACTIVATED = "deactivated"

    def __init__(self, session: Session) -> None:
        self.session = session

    def process_due(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()
        try:
            rule_ids = self.session.scalars(
                select(RecurringTransaction.id)
                .where(
                    RecurringTransaction.is_active.is_(True),
                    RecurringTransaction.next_execution_date <= now,
                )
                .order_by(
                    RecurringTransaction.next_execution_date,
                    RecurringTransaction.id,
                )
            ).all()
        except Exception as exc:
            logger.exception("recurring_sweep: failed to load due templates")
            result.errors.append(f"Failed to fetch due recurring transactions: {exc}")
            return result

        for rule_id in rule_ids:
            try:
                outcome = self._process_rule(rule_id, now)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                logger.warning(f"recurring_sweep: rule={rule_id} error={exc}")
                result.errors.append(
                    f"Failed to process recurring transaction {rule_id}: {exc}"
                )
                continue
            if outcome is None:
                continue
            result.processed_count += 1
            if outcome == self.CREATED:
                result.created_transactions += 1

        logger.info(
            f"recurring_sweep: processed={result.processed_count} "
            f"created={result.created_transactions} errors={len(result.errors)}"
        )
        return result

    def _process_rule(self, rule_id: int, now: datetime) -> Optional[str]:
        rule = self.session.scalar(
            select(RecurringTransaction)
            .where(RecurringTransaction.id == rule_id)
            .with_for_update()
        )
        # Another sweep may have advanced or deactivated it since the scan.
        if rule is None or not rule.is_active or rule.next_execution_date > now:
            return None

        if rule.end_date is not None and now > rule.end_date:
            rule.is_active = False
            rule.updated_at = now
            return self.DEACTIVATED

        scheduled = rule.next_execution_date
        self._post_occurrence(rule, scheduled, now)

        rule.next_execution_date = calculate_next_execution(scheduled, rule.frequency)
        if rule.end_date is not None and rule.next_execution_date > rule.end_date:
            rule.is_active = False
        rule.updated_at = now
        return self.CREATED

    def _post_occurrence(
        self, rule: RecurringTransaction, occurrence_at: datetime, now: datetime
    ) -> bool:
        from schemas import TransactionIn
        from services import TransactionService

        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == rule.user_id,
                Transaction.recurring_transaction_id == rule.id,
                Transaction.occurrence_at == occurrence_at,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return False

        TransactionService(self.session, rule.user_id).post(
            TransactionIn(
                account_id=rule.account_id,
                category_id=rule.category_id,
                amount=rule.amount,
                description=rule.description,
                date=occurrence_at,
            ),
            recurring_transaction_id=rule.id,
            occurrence_at=occurrence_at,
            require_nonzero=True,
            now=now,
        )
        return True
