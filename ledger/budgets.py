import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ledger.db import atomic, defer_event, get_or_404, lock
from ledger.domain import BudgetStatus, money
from ledger.errors import ValidationError
from ledger.events import BUDGET_ALERT, EventBus, event_bus
from ledger.models import EXPENSE, PERIOD_TYPES, Budget, Transaction
from ledger.rates import CurrencyResolver
from ledger.transactions import ensure_owner, positive_amount

logger = logging.getLogger(__name__)

ON_TRACK = "on_track"
WARNING = "warning"
OVER_BUDGET = "over_budget"


def period_dates(period_type: str, today: date) -> Tuple[date, date]:
    """The calendar period of ``period_type`` that contains ``today``."""
    if period_type == "weekly":
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    if period_type == "monthly":
        start = today.replace(day=1)
        return start, start + relativedelta(months=1, days=-1)
    if period_type == "quarterly":
        start = date(today.year, 3 * ((today.month - 1) // 3) + 1, 1)
        return start, start + relativedelta(months=3, days=-1)
    if period_type == "yearly":
        return date(today.year, 1, 1), date(today.year, 12, 31)
    raise ValidationError(f"No calendar period for {period_type} budgets", period_type=period_type)


def classify(spent_percent: Decimal, warning_percent: Decimal = Decimal("80")) -> str:
    if spent_percent >= 100:
        return OVER_BUDGET
    if spent_percent >= warning_percent:
        return WARNING
    return ON_TRACK


def alert_level(spent_percent: Decimal, warning_percent: Decimal = Decimal("80")) -> Optional[str]:
    return {OVER_BUDGET: "critical", WARNING: "warning"}.get(classify(spent_percent, warning_percent))


def rollover_allocation(budget: Budget) -> Decimal:
    if not budget.rollover:
        return budget.allocated_amount
    return budget.allocated_amount + max(budget.allocated_amount - budget.spent_amount, Decimal("0"))


class BudgetTracker:
    """Tracks spending against budgets.

    ``spent_amount`` is a cache over expense postings in the budget window and
    is rebuilt by ``refresh``. Transfer legs are not spending. Postings in
    other currencies are converted into the budget currency where a rate
    exists and counted unconverted otherwise.
    """

    def __init__(self, session: Session, resolver: CurrencyResolver, bus: EventBus = event_bus,
                 now: Callable[[], datetime] = datetime.now, warning_percent: Decimal = Decimal("80"),
                 rate_source: Optional[str] = None):
        self.session = session
        self.resolver = resolver
        self.bus = bus
        self.now = now
        self.warning_percent = Decimal(str(warning_percent))
        self.rate_source = rate_source

    def today(self) -> date:
        return self.now().date()

    def create_budget(self, owner_id: int, name: str, allocated_amount, currency_code: str,
                      period_type: str = "monthly", category_id: Optional[int] = None,
                      start_date: Optional[date] = None, end_date: Optional[date] = None,
                      rollover: bool = False) -> Budget:
        if period_type not in PERIOD_TYPES:
            raise ValidationError(f"Unknown period type: {period_type}", period_type=period_type)
        if not name:
            raise ValidationError("Budget name is required")
        allocated = positive_amount(allocated_amount)

        if period_type == "custom":
            if start_date is None or end_date is None:
                raise ValidationError("Custom budgets need a start and end date")
        elif start_date is None or end_date is None:
            start_date, end_date = period_dates(period_type, start_date or self.today())
        if end_date < start_date:
            raise ValidationError("End date must not precede start date")

        with atomic(self.session):
            budget = Budget(
                owner_id=owner_id,
                name=name,
                category_id=category_id,
                period_type=period_type,
                allocated_amount=allocated,
                spent_amount=Decimal("0"),
                currency_code=currency_code.upper(),
                start_date=start_date,
                end_date=end_date,
                rollover=rollover,
                is_active=True,
            )
            self.session.add(budget)
            self.session.flush()
            self.refresh(budget)
        logger.info("Created %s budget %s for %s-%s", period_type, budget.id, start_date, end_date)
        return budget

    def spending(self, budget: Budget) -> Decimal:
        stmt = (
            select(Transaction.currency_code, func.sum(Transaction.amount))
            .where(
                Transaction.owner_id == budget.owner_id,
                Transaction.transaction_type == EXPENSE,
                Transaction.transfer_transaction_id.is_(None),
                Transaction.transaction_date >= budget.start_date,
                Transaction.transaction_date <= budget.end_date,
            )
            .group_by(Transaction.currency_code)
        )
        if budget.category_id is not None:
            stmt = stmt.where(Transaction.category_id == budget.category_id)

        total = Decimal("0")
        for currency, amount in self.session.execute(stmt):
            total += self.resolver.convert_or_original(
                money(amount or 0), currency, budget.currency_code, self.rate_source
            )
        return money(total)

    def status(self, budget: Budget) -> BudgetStatus:
        percent = budget.spent_percent
        return BudgetStatus(
            budget_id=budget.id,
            allocated=budget.allocated_amount,
            spent=budget.spent_amount,
            variance=budget.variance,
            spent_percent=round(percent, 2),
            status=classify(percent, self.warning_percent),
            alert=alert_level(percent, self.warning_percent),
        )

    def alert_threshold(self, budget: Budget) -> Optional[str]:
        return alert_level(budget.spent_percent, self.warning_percent)

    def refresh(self, budget: Budget) -> Budget:
        with atomic(self.session):
            budget = lock(self.session, Budget, budget.id)
            before = classify(budget.spent_percent, self.warning_percent)
            budget.spent_amount = self.spending(budget)
            budget.refreshed_at = self.now()
            current = self.status(budget)
            if current.status != ON_TRACK and current.status != before:
                defer_event(self.session, self.bus, BUDGET_ALERT, {
                    "budget_id": budget.id,
                    "name": budget.name,
                    "owner_id": budget.owner_id,
                    "status": current.status,
                    "alert": current.alert,
                    "spent": str(current.spent),
                    "allocated": str(current.allocated),
                    "currency": budget.currency_code,
                })
        return budget

    def refresh_for(self, owner_id: int, budget_id: int) -> Budget:
        budget = get_or_404(self.session, Budget, budget_id)
        ensure_owner(owner_id, budget, "Budget")
        return self.refresh(budget)

    def _claim_expired(self, budget: Budget, today: date) -> bool:
        result = self.session.execute(
            update(Budget)
            .where(Budget.id == budget.id, Budget.is_active.is_(True), Budget.end_date < today)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def renew_expired(self, owner_id: int) -> List[Budget]:
        """Roll every expired non-custom budget into the period containing today."""
        today = self.today()
        expired = self.session.execute(
            select(Budget).where(
                Budget.owner_id == owner_id,
                Budget.is_active.is_(True),
                Budget.period_type != "custom",
                Budget.end_date < today,
            ).order_by(Budget.id)
        ).scalars().all()

        renewed = []
        for old in expired:
            with atomic(self.session):
                if not self._claim_expired(old, today):
                    logger.warning("Budget %s already renewed, skipping", old.id)
                    continue
                start, end = period_dates(old.period_type, today)
                budget = Budget(
                    owner_id=old.owner_id,
                    name=old.name,
                    category_id=old.category_id,
                    period_type=old.period_type,
                    allocated_amount=rollover_allocation(old),
                    spent_amount=Decimal("0"),
                    currency_code=old.currency_code,
                    start_date=start,
                    end_date=end,
                    rollover=old.rollover,
                    renewed_from_id=old.id,
                    is_active=True,
                )
                self.session.add(budget)
                self.session.flush()
                self.refresh(budget)
            self.session.expire(old)
            renewed.append(budget)
            logger.info("Renewed budget %s as %s for %s-%s", old.id, budget.id, start, end)
        return renewed

    def list_budgets(self, owner_id: int, active_only: bool = True) -> List[Budget]:
        self.renew_expired(owner_id)
        stmt = select(Budget).where(Budget.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        budgets = list(self.session.execute(stmt.order_by(Budget.id)).scalars())
        return [self.refresh(b) for b in budgets]
