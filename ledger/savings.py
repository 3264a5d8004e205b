import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger.db import atomic, defer_event, get_or_404, lock
from ledger.domain import money
from ledger.errors import AccountMismatch, ExceedsBalance, InvalidTransition, ValidationError
from ledger.events import EventBus, event_bus
from ledger.events import GOAL_COMPLETED as GOAL_COMPLETED_EVENT
from ledger.models import (
    GOAL_ACTIVE,
    GOAL_CANCELLED,
    GOAL_COMPLETED,
    GOAL_PAUSED,
    SavingsContribution,
    SavingsGoal,
    Transaction,
)
from ledger.transactions import TransactionRecorder, ensure_owner, positive_amount

logger = logging.getLogger(__name__)

GOAL_FIELDS = ("name", "description", "icon", "color", "target_amount", "target_date", "target_account_id")

# status -> statuses it may move to by explicit request
TRANSITIONS = {
    GOAL_ACTIVE: (GOAL_PAUSED, GOAL_CANCELLED),
    GOAL_PAUSED: (GOAL_ACTIVE, GOAL_CANCELLED),
    GOAL_COMPLETED: (GOAL_CANCELLED,),
    GOAL_CANCELLED: (),
}


def ensure_transition(goal: SavingsGoal, target: str) -> None:
    if target not in TRANSITIONS[goal.status]:
        raise InvalidTransition(
            f"Cannot move goal {goal.id} from {goal.status} to {target}",
            goal_id=goal.id, status=goal.status, target=target,
        )


class SavingsGoalEngine:
    """Lifecycle of savings goals driven by signed contributions.

    ``current_amount`` is always ``max(sum(contributions), 0)``. A goal
    completes automatically on reaching its target and drops back to
    ``active`` when a withdrawal or unlink takes it below the target.
    """

    def __init__(self, session: Session, recorder: TransactionRecorder, bus: EventBus = event_bus,
                 now: Callable[[], datetime] = datetime.now):
        self.session = session
        self.recorder = recorder
        self.bus = bus
        self.now = now

    def get(self, goal_id: int) -> SavingsGoal:
        return get_or_404(self.session, SavingsGoal, goal_id)

    def _owned(self, owner_id: int, goal_id: int) -> SavingsGoal:
        goal = lock(self.session, SavingsGoal, goal_id)
        ensure_owner(owner_id, goal, "Savings goal")
        return goal

    def create_goal(self, owner_id: int, name: str, target_amount, currency_code: str,
                    target_date: Optional[date] = None, target_account_id: Optional[int] = None,
                    description: Optional[str] = None, icon: Optional[str] = None,
                    color: Optional[str] = None) -> SavingsGoal:
        if not name:
            raise ValidationError("Goal name is required")
        with atomic(self.session):
            goal = SavingsGoal(
                owner_id=owner_id,
                name=name,
                target_amount=positive_amount(target_amount),
                current_amount=Decimal("0"),
                currency_code=currency_code.upper(),
                target_date=target_date,
                target_account_id=target_account_id,
                description=description,
                icon=icon,
                color=color,
                status=GOAL_ACTIVE,
            )
            self.session.add(goal)
            self.session.flush()
        logger.info("Created savings goal %s (target %s %s)", goal.id, goal.target_amount, goal.currency_code)
        return goal

    def update_goal(self, owner_id: int, goal_id: int, **changes) -> SavingsGoal:
        unknown = set(changes) - set(GOAL_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if "target_amount" in changes:
            changes["target_amount"] = positive_amount(changes["target_amount"])

        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            for field, value in changes.items():
                setattr(goal, field, value)
            self._settle(goal)
        return goal

    def recalculate(self, goal: SavingsGoal) -> Decimal:
        self.session.flush()
        total = self.session.execute(
            select(func.coalesce(func.sum(SavingsContribution.amount), 0))
            .where(SavingsContribution.savings_goal_id == goal.id)
        ).scalar()
        goal.current_amount = max(money(total), Decimal("0"))
        return goal.current_amount

    def check_completion(self, goal: SavingsGoal) -> bool:
        if goal.status not in (GOAL_ACTIVE, GOAL_PAUSED) or not goal.has_reached_target:
            return False
        goal.status = GOAL_COMPLETED
        goal.completed_at = self.now()
        defer_event(self.session, self.bus, GOAL_COMPLETED_EVENT, {
            "goal_id": goal.id,
            "owner_id": goal.owner_id,
            "name": goal.name,
            "target_amount": str(goal.target_amount),
            "current_amount": str(goal.current_amount),
        })
        logger.info("Savings goal %s completed", goal.id)
        return True

    def _revert_if_short(self, goal: SavingsGoal) -> None:
        if goal.status == GOAL_COMPLETED and not goal.has_reached_target:
            goal.status = GOAL_ACTIVE
            goal.completed_at = None
            logger.info("Savings goal %s fell below target, reopened", goal.id)

    def _settle(self, goal: SavingsGoal) -> None:
        self._revert_if_short(goal)
        self.check_completion(goal)
        self.session.flush()

    def _contribute(self, goal: SavingsGoal, amount: Decimal, contribution_date: Optional[date],
                    notes: Optional[str], transaction_id: Optional[int] = None) -> SavingsContribution:
        contribution = SavingsContribution(
            savings_goal_id=goal.id,
            transaction_id=transaction_id,
            amount=amount,
            currency_code=goal.currency_code,
            contribution_date=contribution_date or self.now().date(),
            notes=notes,
            contribution_type="linked" if transaction_id is not None else "manual",
        )
        self.session.add(contribution)
        self.recalculate(goal)
        self._settle(goal)
        return contribution

    def add_contribution(self, owner_id: int, goal_id: int, amount, contribution_date: Optional[date] = None,
                         notes: Optional[str] = None) -> SavingsContribution:
        amount = positive_amount(amount)
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            contribution = self._contribute(goal, amount, contribution_date, notes)
        return contribution

    def withdraw(self, owner_id: int, goal_id: int, amount, contribution_date: Optional[date] = None,
                 notes: Optional[str] = None) -> SavingsContribution:
        amount = positive_amount(amount)
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            if amount > goal.current_amount:
                raise ExceedsBalance(
                    "Withdrawal amount exceeds current savings",
                    goal_id=goal_id, amount=str(amount), current_amount=str(goal.current_amount),
                )
            contribution = self._contribute(goal, -amount, contribution_date, notes)
        return contribution

    def pause(self, owner_id: int, goal_id: int) -> SavingsGoal:
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            ensure_transition(goal, GOAL_PAUSED)
            goal.status = GOAL_PAUSED
        return goal

    def resume(self, owner_id: int, goal_id: int) -> SavingsGoal:
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            ensure_transition(goal, GOAL_ACTIVE)
            goal.status = GOAL_ACTIVE
            self.check_completion(goal)
        return goal

    def cancel(self, owner_id: int, goal_id: int) -> SavingsGoal:
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            ensure_transition(goal, GOAL_CANCELLED)
            goal.status = GOAL_CANCELLED
        return goal

    def _in_goal_currency(self, goal: SavingsGoal, amount: Decimal, currency_code: str,
                          rate_source: Optional[str] = None) -> Decimal:
        return self.recorder.resolver.convert(amount, currency_code, goal.currency_code, rate_source)

    def transfer_to_goal(self, owner_id: int, goal_id: int, from_account_id: int, amount,
                         transfer_date: Optional[date] = None, category_id: Optional[int] = None,
                         notes: Optional[str] = None) -> SavingsContribution:
        """Move real money out of an account into the goal.

        ``amount`` is in the account's currency; the contribution is stored in
        the goal's currency.
        """
        amount = positive_amount(amount)
        transfer_date = transfer_date or self.now().date()
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            txn = self.recorder.record_expense(
                owner_id, from_account_id, amount, transfer_date,
                category_id=category_id,
                description=notes or f"Transfer to savings: {goal.name}",
            )
            account = self.recorder.ledger.get(from_account_id)
            contributed = self._in_goal_currency(goal, amount, account.currency_code, account.rate_source)
            contribution = self._contribute(
                goal, contributed, transfer_date, notes or "Transfer from account", transaction_id=txn.id,
            )
        logger.info("Transferred %s from account %s to goal %s", amount, from_account_id, goal_id)
        return contribution

    def link_transaction(self, owner_id: int, goal_id: int, transaction_id: int) -> SavingsContribution:
        with atomic(self.session):
            goal = self._owned(owner_id, goal_id)
            txn = get_or_404(self.session, Transaction, transaction_id)
            if txn.owner_id != goal.owner_id:
                raise AccountMismatch(
                    "Transaction does not belong to the goal's owner",
                    goal_id=goal_id, transaction_id=transaction_id,
                )
            already = self.session.execute(
                select(SavingsContribution.id).where(
                    SavingsContribution.savings_goal_id == goal.id,
                    SavingsContribution.transaction_id == txn.id,
                )
            ).first()
            if already is not None:
                raise ValidationError(
                    "Transaction is already linked to this goal",
                    goal_id=goal_id, transaction_id=transaction_id,
                )
            contributed = self._in_goal_currency(goal, txn.amount, txn.currency_code)
            contribution = self._contribute(
                goal, contributed, txn.transaction_date,
                f"Linked from transaction: {txn.description or txn.id}", transaction_id=txn.id,
            )
        return contribution

    def unlink_contribution(self, owner_id: int, contribution_id: int) -> SavingsGoal:
        with atomic(self.session):
            contribution = get_or_404(self.session, SavingsContribution, contribution_id)
            goal = self._owned(owner_id, contribution.savings_goal_id)
            self.session.delete(contribution)
            self.recalculate(goal)
            self._settle(goal)
        return goal
