from datetime import date
from decimal import Decimal

import pytest

from ledger.budgets import alert_level, classify, period_dates, rollover_allocation
from ledger.domain import RateQuote
from ledger.errors import AccountMismatch, ValidationError
from ledger.events import BUDGET_ALERT
from ledger.models import Budget, Category
from ledger.services import build_services

DAY = date(2025, 1, 10)


def make_account(services, name="Bank", currency="VND", balance=10_000_000):
    return services.ledger.create_account(1, name, currency, initial_balance=balance)


def make_category(session, name, owner_id=1):
    category = Category(owner_id=owner_id, name=name, type="expense")
    session.add(category)
    session.commit()
    return category


def alerts(published):
    return [payload for name, payload in published if name == BUDGET_ALERT]


@pytest.mark.parametrize("period, today, expected", [
    ("weekly", date(2025, 1, 10), (date(2025, 1, 6), date(2025, 1, 12))),
    ("weekly", date(2025, 1, 6), (date(2025, 1, 6), date(2025, 1, 12))),
    ("monthly", date(2025, 2, 14), (date(2025, 2, 1), date(2025, 2, 28))),
    ("monthly", date(2024, 2, 14), (date(2024, 2, 1), date(2024, 2, 29))),
    ("quarterly", date(2025, 5, 20), (date(2025, 4, 1), date(2025, 6, 30))),
    ("quarterly", date(2025, 12, 31), (date(2025, 10, 1), date(2025, 12, 31))),
    ("yearly", date(2025, 7, 4), (date(2025, 1, 1), date(2025, 12, 31))),
])
def test_period_dates(period, today, expected):
    assert period_dates(period, today) == expected


def test_custom_period_has_no_calendar_dates():
    with pytest.raises(ValidationError):
        period_dates("custom", DAY)


def test_classification_thresholds():
    assert classify(Decimal("79.99")) == "on_track"
    assert classify(Decimal("80")) == "warning"
    assert classify(Decimal("100")) == "over_budget"
    assert classify(Decimal("70"), warning_percent=Decimal("70")) == "warning"
    assert alert_level(Decimal("120")) == "critical"
    assert alert_level(Decimal("85")) == "warning"
    assert alert_level(Decimal("10")) is None


def test_rollover_allocation():
    assert rollover_allocation(Budget(allocated_amount=Decimal("100"), spent_amount=Decimal("30"),
                                      rollover=True)) == Decimal("170")
    assert rollover_allocation(Budget(allocated_amount=Decimal("100"), spent_amount=Decimal("130"),
                                      rollover=True)) == Decimal("100")
    assert rollover_allocation(Budget(allocated_amount=Decimal("100"), spent_amount=Decimal("30"),
                                      rollover=False)) == Decimal("100")


def test_refresh_counts_category_expenses_in_window(services, session):
    food = make_category(session, "Food")
    travel = make_category(session, "Travel")
    bank = make_account(services)
    savings = make_account(services, "Savings", balance=0)
    recorder = services.recorder
    recorder.record_expense(1, bank.id, 300_000, DAY, category_id=food.id)
    recorder.record_expense(1, bank.id, 200_000, DAY, category_id=travel.id)
    recorder.record_expense(1, bank.id, 100_000, date(2024, 12, 31), category_id=food.id)
    recorder.record_income(1, bank.id, 5_000_000, DAY, category_id=food.id)
    recorder.record_transfer(1, bank.id, savings.id, 1_000_000, DAY)

    food_budget = services.budgets.create_budget(1, "Food", 1_000_000, "VND", category_id=food.id)
    everything = services.budgets.create_budget(1, "Everything", 2_000_000, "VND")

    assert (food_budget.start_date, food_budget.end_date) == (date(2025, 1, 1), date(2025, 1, 31))
    assert food_budget.spent_amount == Decimal("300000")
    assert everything.spent_amount == Decimal("500000")


def test_refresh_ignores_other_owners(services, session):
    bank = make_account(services)
    theirs = services.ledger.create_account(2, "Theirs", "VND", initial_balance=1_000_000)
    services.recorder.record_expense(2, theirs.id, 400_000, DAY)
    services.recorder.record_expense(1, bank.id, 100_000, DAY)

    budget = services.budgets.create_budget(1, "All", 1_000_000, "VND")
    assert budget.spent_amount == Decimal("100000")


def test_foreign_currency_spending_is_converted(services):
    services.resolver.ingest([RateQuote("USD", "VND", Decimal("25000"), DAY)], "static")
    usd = make_account(services, "Payoneer", "USD", balance=100)
    services.recorder.record_expense(1, usd.id, 10, DAY)

    budget = services.budgets.create_budget(1, "All", 1_000_000, "VND")
    assert budget.spent_amount == Decimal("250000")


def test_status(services, session):
    food = make_category(session, "Food")
    bank = make_account(services)
    services.recorder.record_expense(1, bank.id, 250_000, DAY, category_id=food.id)
    budget = services.budgets.create_budget(1, "Food", 300_000, "VND", category_id=food.id)

    status = services.budgets.status(budget)
    assert status.spent == Decimal("250000")
    assert status.variance == Decimal("50000")
    assert status.remaining == Decimal("50000")
    assert status.spent_percent == Decimal("83.33")
    assert status.status == "warning"
    assert status.alert == "warning"
    assert not status.is_over_budget
    assert services.budgets.alert_threshold(budget) == "warning"


def test_alert_fires_on_entering_a_worse_status(services, session, published):
    food = make_category(session, "Food")
    bank = make_account(services)
    services.recorder.record_expense(1, bank.id, 300_000, DAY, category_id=food.id)

    budget = services.budgets.create_budget(1, "Food", 350_000, "VND", category_id=food.id)
    assert [a["status"] for a in alerts(published)] == ["warning"]

    services.budgets.refresh(budget)
    assert len(alerts(published)) == 1

    services.recorder.record_expense(1, bank.id, 100_000, DAY, category_id=food.id)
    services.budgets.refresh(budget)
    assert [a["status"] for a in alerts(published)] == ["warning", "over_budget"]
    assert alerts(published)[-1]["alert"] == "critical"
    assert budget.refreshed_at is not None


def test_create_budget_validates(services):
    with pytest.raises(ValidationError):
        services.budgets.create_budget(1, "Food", 0, "VND")
    with pytest.raises(ValidationError):
        services.budgets.create_budget(1, "Trip", 100, "VND", period_type="custom")
    with pytest.raises(ValidationError):
        services.budgets.create_budget(1, "Food", 100, "VND", period_type="fortnightly")


def test_list_renews_expired_budgets_with_rollover(services, session):
    food = make_category(session, "Food")
    bank = make_account(services)
    services.recorder.record_expense(1, bank.id, 400_000, date(2024, 12, 15), category_id=food.id)
    services.recorder.record_expense(1, bank.id, 50_000, DAY, category_id=food.id)
    december = services.budgets.create_budget(1, "Food", 1_000_000, "VND", category_id=food.id,
                                              start_date=date(2024, 12, 1), rollover=True)
    assert december.end_date == date(2024, 12, 31)

    [current] = services.budgets.list_budgets(1)

    assert current.id != december.id
    assert current.renewed_from_id == december.id
    assert (current.start_date, current.end_date) == (date(2025, 1, 1), date(2025, 1, 31))
    assert current.allocated_amount == Decimal("1600000")
    assert current.spent_amount == Decimal("50000")
    assert services.budgets.renew_expired(1) == []
    assert session.get(Budget, december.id).is_active is False


def test_custom_budgets_never_renew(services):
    services.budgets.create_budget(1, "Trip", 500, "VND", period_type="custom",
                                   start_date=date(2024, 11, 1), end_date=date(2024, 11, 20))
    assert services.budgets.renew_expired(1) == []
    assert [b.name for b in services.budgets.list_budgets(1)] == ["Trip"]


def test_renewal_from_two_sessions_creates_one_successor(session_factory, bus, settings, clock):
    first = build_services(session_factory(), bus=bus, now=clock, settings=settings)
    second = build_services(session_factory(), bus=bus, now=clock, settings=settings)
    first.budgets.create_budget(1, "Food", 1_000, "VND", start_date=date(2024, 12, 1))

    renewed = first.budgets.renew_expired(1) + second.budgets.renew_expired(1)

    assert len(renewed) == 1
    assert len(second.budgets.list_budgets(1)) == 1
    first.session.close()
    second.session.close()


def test_refresh_for_checks_owner(services, session):
    food = make_category(session, "Food")
    bank = make_account(services)
    budget = services.budgets.create_budget(1, "Food", 1_000_000, "VND", category_id=food.id)
    services.recorder.record_expense(1, bank.id, 120_000, DAY, category_id=food.id)

    assert services.budgets.refresh_for(1, budget.id).spent_amount == Decimal("120000")
    with pytest.raises(AccountMismatch):
        services.budgets.refresh_for(2, budget.id)
