from datetime import date, datetime
from decimal import Decimal

import pytest

from ledger.domain import RateQuote
from ledger.errors import (
    AccountMismatch,
    ExceedsBalance,
    InsufficientFunds,
    InvalidTransition,
    ValidationError,
)
from ledger.events import GOAL_COMPLETED
from ledger.models import SavingsContribution, Transaction
from ledger.savings import TRANSITIONS

DAY = date(2025, 1, 10)


def make_goal(services, target=10_000_000, currency="VND", owner_id=1):
    return services.savings.create_goal(owner_id, "Emergency fund", target, currency)


def make_account(services, name="Bank", currency="VND", balance=20_000_000, owner_id=1):
    return services.ledger.create_account(owner_id, name, currency, initial_balance=balance)


def completions(published):
    return [payload for name, payload in published if name == GOAL_COMPLETED]


def test_create_goal(services):
    goal = make_goal(services)
    assert goal.status == "active"
    assert goal.current_amount == Decimal("0")
    assert goal.progress_percent == Decimal("0")
    with pytest.raises(ValidationError):
        services.savings.create_goal(1, "Nothing", 0, "VND")


def test_complete_withdraw_and_complete_again(services, clock, published):
    goal = make_goal(services)

    services.savings.add_contribution(1, goal.id, 6_000_000)
    assert goal.status == "active"
    services.savings.add_contribution(1, goal.id, 4_000_000)
    assert goal.status == "completed"
    assert goal.completed_at == datetime(2025, 1, 10, 9, 0)

    services.savings.withdraw(1, goal.id, 1_000_000)
    assert goal.current_amount == Decimal("9000000")
    assert goal.status == "active"
    assert goal.completed_at is None

    clock.set(date(2025, 2, 1))
    services.savings.add_contribution(1, goal.id, 1_000_000)
    assert goal.status == "completed"
    assert goal.completed_at == datetime(2025, 2, 1, 9, 0)
    assert len(completions(published)) == 2
    assert completions(published)[0]["goal_id"] == goal.id


def test_withdrawal_cannot_exceed_savings(services):
    goal = make_goal(services)
    services.savings.add_contribution(1, goal.id, 500)
    with pytest.raises(ExceedsBalance):
        services.savings.withdraw(1, goal.id, 501)
    assert goal.current_amount == Decimal("500")


def test_withdrawal_is_a_negative_contribution(services, session):
    goal = make_goal(services)
    services.savings.add_contribution(1, goal.id, 500)
    withdrawal = services.savings.withdraw(1, goal.id, 200, notes="Dentist")
    assert withdrawal.amount == Decimal("-200")
    assert withdrawal.contribution_type == "manual"
    assert goal.current_amount == Decimal("300")


def test_status_transitions(services):
    goal = make_goal(services)
    services.savings.pause(1, goal.id)
    assert goal.status == "paused"
    with pytest.raises(InvalidTransition):
        services.savings.pause(1, goal.id)

    services.savings.resume(1, goal.id)
    assert goal.status == "active"

    services.savings.cancel(1, goal.id)
    assert goal.status == "cancelled"
    for action in (services.savings.pause, services.savings.resume, services.savings.cancel):
        with pytest.raises(InvalidTransition):
            action(1, goal.id)
    assert TRANSITIONS["cancelled"] == ()


def test_paused_goal_still_completes(services):
    goal = make_goal(services, target=100)
    services.savings.pause(1, goal.id)
    services.savings.add_contribution(1, goal.id, 100)
    assert goal.status == "completed"


def test_lowering_the_target_completes_and_raising_reopens(services):
    goal = make_goal(services, target=1_000)
    services.savings.add_contribution(1, goal.id, 800)

    services.savings.update_goal(1, goal.id, target_amount=800)
    assert goal.status == "completed"

    services.savings.update_goal(1, goal.id, target_amount=900, name="Bigger fund")
    assert goal.status == "active"
    assert goal.name == "Bigger fund"
    with pytest.raises(ValidationError):
        services.savings.update_goal(1, goal.id, status="completed")


def test_other_owner_cannot_touch_goal(services):
    goal = make_goal(services, owner_id=2)
    with pytest.raises(AccountMismatch):
        services.savings.add_contribution(1, goal.id, 100)


def test_transfer_to_goal_moves_money(services, session):
    account = make_account(services)
    goal = make_goal(services)

    contribution = services.savings.transfer_to_goal(1, goal.id, account.id, 3_000_000, DAY)

    assert account.current_balance == Decimal("17000000")
    assert goal.current_amount == Decimal("3000000")
    assert contribution.contribution_type == "linked"
    txn = session.get(Transaction, contribution.transaction_id)
    assert txn.transaction_type == "expense"
    assert txn.description == "Transfer to savings: Emergency fund"


def test_transfer_to_goal_needs_funds(services, session):
    account = make_account(services, balance=100)
    goal = make_goal(services)
    with pytest.raises(InsufficientFunds):
        services.savings.transfer_to_goal(1, goal.id, account.id, 200, DAY)
    assert goal.current_amount == Decimal("0")
    assert session.query(SavingsContribution).count() == 0


def test_transfer_to_goal_converts_currency(services):
    services.resolver.ingest([RateQuote("USD", "VND", Decimal("25000"), DAY)], "static")
    account = make_account(services)
    goal = make_goal(services, target=1_000, currency="USD")

    contribution = services.savings.transfer_to_goal(1, goal.id, account.id, 2_500_000, DAY)

    assert contribution.amount == Decimal("100")
    assert contribution.currency_code == "USD"
    assert account.current_balance == Decimal("17500000")


def test_link_and_unlink(services, published):
    account = make_account(services)
    goal = make_goal(services, target=1_000_000)
    bonus = services.recorder.record_income(1, account.id, 1_000_000, DAY, description="Bonus")

    contribution = services.savings.link_transaction(1, goal.id, bonus.id)
    assert contribution.transaction_id == bonus.id
    assert contribution.notes == "Linked from transaction: Bonus"
    assert goal.status == "completed"

    services.savings.unlink_contribution(1, contribution.id)
    assert goal.current_amount == Decimal("0")
    assert goal.status == "active"
    assert account.current_balance == Decimal("21000000")


def test_link_same_transaction_once(services, session):
    account = make_account(services)
    goal = make_goal(services, target=5_000_000)
    bonus = services.recorder.record_income(1, account.id, 1_000_000, DAY, description="Bonus")
    services.savings.link_transaction(1, goal.id, bonus.id)

    with pytest.raises(ValidationError):
        services.savings.link_transaction(1, goal.id, bonus.id)
    assert goal.current_amount == Decimal("1000000")
    linked = session.query(SavingsContribution).filter_by(transaction_id=bonus.id).all()
    assert len(linked) == 1


def test_link_requires_same_owner(services):
    theirs = make_account(services, "Theirs", owner_id=2)
    txn = services.recorder.record_income(2, theirs.id, 100, DAY)
    goal = make_goal(services)
    with pytest.raises(AccountMismatch):
        services.savings.link_transaction(1, goal.id, txn.id)


def test_current_amount_never_negative(services, session):
    goal = make_goal(services)
    session.add(SavingsContribution(savings_goal_id=goal.id, amount=Decimal("-50"), currency_code="VND",
                                    contribution_date=DAY))
    session.commit()
    assert services.savings.recalculate(goal) == Decimal("0")


def test_deleting_linked_transaction_keeps_contribution(services, session):
    account = make_account(services)
    goal = make_goal(services)
    contribution = services.savings.transfer_to_goal(1, goal.id, account.id, 1_000, DAY)

    services.recorder.delete_transaction(1, contribution.transaction_id)

    session.refresh(contribution)
    assert contribution.transaction_id is None
    assert account.current_balance == Decimal("20000000")
    assert goal.current_amount == Decimal("1000")
