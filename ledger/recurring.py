import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ledger.db import atomic, defer_event, get_or_404, lock
from ledger.domain import MonthlyProjection, SweepResult
from ledger.errors import ValidationError
from ledger.events import RECURRING_FIRED, EventBus, event_bus
from ledger.models import EXPENSE, FREQUENCIES, INCOME, RecurringTransaction, Transaction
from ledger.rates import CurrencyResolver
from ledger.schedule import Schedule, SchedulePreview, monthly_amount, yearly_amount
from ledger.transactions import TransactionRecorder, ensure_owner, positive_amount

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("frequency", "day_of_week", "day_of_month", "month_of_year", "start_date")
EDITABLE_FIELDS = SCHEDULE_FIELDS + (
    "name", "description", "amount", "category_id", "end_date", "auto_create",
)


def within_end_date():
    return (RecurringTransaction.end_date.is_(None)) | (
        RecurringTransaction.next_run_date <= RecurringTransaction.end_date)


def validate_schedule(frequency: str, start_date: Optional[date], day_of_week: Optional[int] = None,
                      day_of_month: Optional[int] = None, month_of_year: Optional[int] = None,
                      end_date: Optional[date] = None) -> None:
    if frequency not in FREQUENCIES:
        raise ValidationError(f"Unknown frequency: {frequency}", frequency=frequency)
    if start_date is None:
        raise ValidationError("Start date is required")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValidationError("day_of_week must be between 0 and 6", day_of_week=day_of_week)
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValidationError("day_of_month must be between 1 and 31", day_of_month=day_of_month)
    if month_of_year is not None and not 1 <= month_of_year <= 12:
        raise ValidationError("month_of_year must be between 1 and 12", month_of_year=month_of_year)
    if end_date is not None and end_date < start_date:
        raise ValidationError("End date must not precede start date")


class RecurringScheduler:
    """Keeps recurring definitions moving along their schedules.

    A definition is *due* when it is active and ``next_run_date <= today``,
    without running past its ``end_date``.
    Firing claims the definition with a conditional UPDATE on the
    ``next_run_date`` the caller observed, so two sweeps racing on the same
    definition produce a single posting.
    """

    def __init__(self, session: Session, recorder: TransactionRecorder, resolver: CurrencyResolver,
                 bus: EventBus = event_bus, now: Callable[[], datetime] = datetime.now,
                 reporting_currency: str = "VND", rate_source: Optional[str] = None, preview_count: int = 12):
        self.session = session
        self.recorder = recorder
        self.resolver = resolver
        self.bus = bus
        self.now = now
        self.reporting_currency = reporting_currency
        self.rate_source = rate_source
        self.preview_count = preview_count

    def today(self) -> date:
        return self.now().date()

    def get(self, definition_id: int) -> RecurringTransaction:
        return get_or_404(self.session, RecurringTransaction, definition_id)

    def _owned(self, owner_id: int, definition_id: int) -> RecurringTransaction:
        definition = lock(self.session, RecurringTransaction, definition_id)
        ensure_owner(owner_id, definition, "Recurring transaction")
        return definition

    def create(self, owner_id: int, account_id: int, name: str, transaction_type: str, amount,
               frequency: str, start_date: date, category_id: Optional[int] = None,
               description: Optional[str] = None, day_of_week: Optional[int] = None,
               day_of_month: Optional[int] = None, month_of_year: Optional[int] = None,
               end_date: Optional[date] = None, auto_create: bool = True) -> RecurringTransaction:
        if transaction_type not in (INCOME, EXPENSE):
            raise ValidationError(f"Recurring transactions must be income or expense, got {transaction_type}")
        if not name:
            raise ValidationError("Name is required")
        amount = positive_amount(amount)
        validate_schedule(frequency, start_date, day_of_week, day_of_month, month_of_year, end_date)

        with atomic(self.session):
            account = self.recorder.ledger.get(account_id)
            ensure_owner(owner_id, account, "Account")
            definition = RecurringTransaction(
                owner_id=owner_id,
                account_id=account_id,
                category_id=category_id,
                name=name,
                description=description,
                transaction_type=transaction_type,
                amount=amount,
                currency_code=account.currency_code,
                frequency=frequency,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                month_of_year=month_of_year,
                start_date=start_date,
                end_date=end_date,
                auto_create=auto_create,
            )
            definition.next_run_date = Schedule.of(definition).initial_next_run(self.today())
            definition.is_active = Schedule.of(definition).is_within(definition.next_run_date)
            self.session.add(definition)
            self.session.flush()
        logger.info("Created %s recurring %s %s, next run %s",
                    frequency, transaction_type, amount, definition.next_run_date)
        return definition

    def update(self, owner_id: int, definition_id: int, **changes) -> RecurringTransaction:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if "amount" in changes:
            changes["amount"] = positive_amount(changes["amount"])

        with atomic(self.session):
            definition = self._owned(owner_id, definition_id)
            reschedule = any(
                field in changes and changes[field] != getattr(definition, field)
                for field in SCHEDULE_FIELDS
            )
            for field, value in changes.items():
                setattr(definition, field, value)
            validate_schedule(definition.frequency, definition.start_date, definition.day_of_week,
                              definition.day_of_month, definition.month_of_year, definition.end_date)
            if reschedule:
                definition.next_run_date = Schedule.of(definition).initial_next_run(self.today())
            if not Schedule.of(definition).is_within(definition.next_run_date):
                definition.is_active = False
            self.session.flush()
        return definition

    def pause(self, owner_id: int, definition_id: int) -> RecurringTransaction:
        with atomic(self.session):
            definition = self._owned(owner_id, definition_id)
            definition.is_active = False
        return definition

    def resume(self, owner_id: int, definition_id: int) -> RecurringTransaction:
        """Reactivate, moving ``next_run_date`` forward to today or later.

        Occurrences missed while paused are skipped, not backfilled.
        """
        with atomic(self.session):
            definition = self._owned(owner_id, definition_id)
            schedule = Schedule.of(definition)
            skipped_from = definition.next_run_date
            definition.next_run_date = schedule.catch_up(definition.next_run_date, self.today())
            definition.is_active = schedule.is_within(definition.next_run_date)
        if definition.next_run_date != skipped_from:
            logger.info("Resumed recurring %s, skipped occurrences from %s to %s",
                        definition_id, skipped_from, definition.next_run_date)
        return definition

    def is_due(self, definition: RecurringTransaction, today: Optional[date] = None) -> bool:
        today = today or self.today()
        return (bool(definition.is_active) and definition.next_run_date <= today
                and Schedule.of(definition).is_within(definition.next_run_date))

    def due(self, today: Optional[date] = None, owner_id: Optional[int] = None) -> List[RecurringTransaction]:
        today = today or self.today()
        stmt = select(RecurringTransaction).where(
            RecurringTransaction.is_active.is_(True),
            RecurringTransaction.next_run_date <= today,
            within_end_date(),
        )
        if owner_id is not None:
            stmt = stmt.where(RecurringTransaction.owner_id == owner_id)
        return list(self.session.execute(stmt.order_by(RecurringTransaction.next_run_date,
                                                       RecurringTransaction.id)).scalars())

    def _claim(self, definition: RecurringTransaction, run_date: date, next_run: date, today: date) -> bool:
        result = self.session.execute(
            update(RecurringTransaction)
            .where(
                RecurringTransaction.id == definition.id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_run_date == run_date,
                RecurringTransaction.next_run_date <= today,
                within_end_date(),
            )
            .values(
                next_run_date=next_run,
                last_run_date=run_date,
                is_active=Schedule.of(definition).is_within(next_run),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def fire(self, definition: RecurringTransaction, today: Optional[date] = None) -> Optional[Transaction]:
        """Post one occurrence and advance the schedule in one unit.

        Returns ``None`` when another caller already claimed this occurrence.
        """
        today = today or self.today()
        run_date = definition.next_run_date
        next_run = Schedule.of(definition).next_after(run_date)

        with atomic(self.session):
            if not self._claim(definition, run_date, next_run, today):
                logger.warning("Recurring %s for %s already claimed, skipping", definition.id, run_date)
                self.session.expire(definition)
                return None
            txn = self.recorder.record(
                definition.transaction_type,
                definition.owner_id,
                definition.account_id,
                definition.amount,
                run_date,
                category_id=definition.category_id,
                description=definition.description or definition.name,
            )
            defer_event(self.session, self.bus, RECURRING_FIRED, {
                "recurring_id": definition.id,
                "transaction_id": txn.id,
                "run_date": run_date.isoformat(),
                "next_run_date": next_run.isoformat(),
            })
        self.session.expire(definition)
        logger.info("Fired recurring %s for %s, next run %s", definition.id, run_date, next_run)
        return txn

    def process_due(self, today: Optional[date] = None) -> SweepResult:
        """Fire every due definition once; one failing definition does not stop the sweep."""
        today = today or self.today()
        result = SweepResult()
        for definition in self.due(today):
            definition_id = definition.id
            if not definition.auto_create:
                result.skipped.append(definition_id)
                continue
            try:
                txn = self.fire(definition, today)
            except Exception as exc:
                logger.exception("Recurring %s failed", definition_id)
                result.errors[definition_id] = str(exc)
                continue
            if txn is None:
                result.skipped.append(definition_id)
            else:
                result.processed.append(definition_id)
        logger.info("Processed %d recurring transactions (%d skipped, %d failed)",
                    len(result.processed), len(result.skipped), len(result.errors))
        return result

    def preview(self, owner_id: int, definition_id: int, count: Optional[int] = None) -> SchedulePreview:
        definition = self.get(definition_id)
        ensure_owner(owner_id, definition, "Recurring transaction")
        return SchedulePreview(
            Schedule.of(definition),
            definition.next_run_date,
            definition.amount,
            definition.transaction_type,
            count or self.preview_count,
        )

    def upcoming(self, owner_id: int, days: int = 7) -> List[RecurringTransaction]:
        today = self.today()
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.owner_id == owner_id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_run_date <= today + timedelta(days=days),
                within_end_date(),
            )
            .order_by(RecurringTransaction.next_run_date)
        )
        return list(self.session.execute(stmt).scalars())

    def active_for(self, owner_id: int) -> List[RecurringTransaction]:
        stmt = select(RecurringTransaction).where(
            RecurringTransaction.owner_id == owner_id,
            RecurringTransaction.is_active.is_(True),
        )
        return list(self.session.execute(stmt.order_by(RecurringTransaction.id)).scalars())

    def monthly_projection(self, owner_id: int, currency: Optional[str] = None) -> MonthlyProjection:
        currency = currency or self.reporting_currency
        income = expense = passive = Decimal("0")
        for definition in self.active_for(owner_id):
            monthly = self.resolver.convert_or_original(
                monthly_amount(definition.amount, definition.frequency),
                definition.currency_code,
                currency,
                definition.account.rate_source or self.rate_source,
            )
            if definition.transaction_type == INCOME:
                income += monthly
                if definition.category is not None and definition.category.is_passive:
                    passive += monthly
            else:
                expense += monthly
        return MonthlyProjection(
            monthly_income=income,
            monthly_expense=expense,
            monthly_passive_income=passive,
            currency_code=currency,
        )

    def yearly_amount(self, definition: RecurringTransaction) -> Decimal:
        return yearly_amount(definition.amount, definition.frequency)
