"""Calendar arithmetic for recurring definitions.

Everything here is pure: dates in, dates out. The scheduler service in
``ledger.recurring`` owns persistence and posting.

Monthly and yearly recurrences remember an *anchor day* (the configured
``day_of_month``, else the start date's day). Each step lands on
``min(anchor, days_in_month)``, so a schedule anchored on the 31st goes
Jan 31 -> Feb 28/29 -> Mar 31 -> Apr 30 without drifting.

Monthly-equivalent convention: daily x 30.44, weekly x 4.348, monthly x 1,
yearly / 12 (the average Gregorian month is 30.44 days, or 4.348 weeks).
"""
import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterator, Optional

from dateutil.relativedelta import relativedelta

from ledger.domain import Occurrence, money

MONTHLY_FACTORS = {
    "daily": Decimal("30.44"),
    "weekly": Decimal("4.348"),
    "monthly": Decimal("1"),
}
YEARLY_FACTORS = {
    "daily": Decimal("365"),
    "weekly": Decimal("52"),
    "monthly": Decimal("12"),
    "yearly": Decimal("1"),
}


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def advance(current: date, frequency: str, anchor_day: int, month_of_year: Optional[int] = None) -> date:
    if frequency == "daily":
        return current + timedelta(days=1)
    if frequency == "weekly":
        return current + timedelta(weeks=1)
    if frequency == "monthly":
        nxt = current + relativedelta(months=1)
        return clamp_day(nxt.year, nxt.month, anchor_day)
    if frequency == "yearly":
        nxt = current + relativedelta(years=1)
        return clamp_day(nxt.year, month_of_year or nxt.month, anchor_day)
    raise ValueError(f"Unknown frequency: {frequency}")


def monthly_amount(amount: Decimal, frequency: str) -> Decimal:
    if frequency == "yearly":
        return money(amount / 12)
    return money(amount * MONTHLY_FACTORS[frequency])


def yearly_amount(amount: Decimal, frequency: str) -> Decimal:
    return amount * YEARLY_FACTORS[frequency]


@dataclass(frozen=True)
class Schedule:
    frequency: str
    start_date: date
    day_of_month: Optional[int] = None
    month_of_year: Optional[int] = None
    end_date: Optional[date] = None

    @classmethod
    def of(cls, definition) -> "Schedule":
        return cls(
            frequency=definition.frequency,
            start_date=definition.start_date,
            day_of_month=definition.day_of_month,
            month_of_year=definition.month_of_year,
            end_date=definition.end_date,
        )

    @property
    def anchor_day(self) -> int:
        return self.day_of_month or self.start_date.day

    def next_after(self, current: date) -> date:
        return advance(current, self.frequency, self.anchor_day, self.month_of_year)

    def initial_next_run(self, today: date) -> date:
        if self.start_date > today:
            return self.start_date
        nxt = self.start_date
        while nxt <= today:
            nxt = self.next_after(nxt)
        return nxt

    def catch_up(self, current: date, today: date) -> date:
        while current < today:
            current = self.next_after(current)
        return current

    def is_within(self, day: date) -> bool:
        return self.end_date is None or day <= self.end_date

    def occurrences(self, first: date) -> Iterator[date]:
        current = first
        while self.is_within(current):
            yield current
            current = self.next_after(current)


class SchedulePreview:
    """Finite, lazy and restartable view over the next ``count`` occurrences."""

    def __init__(self, schedule: Schedule, first: date, amount: Decimal, type: str, count: int):
        self.schedule = schedule
        self.first = first
        self.amount = amount
        self.type = type
        self.count = count

    def __iter__(self):
        for i, day in enumerate(self.schedule.occurrences(self.first)):
            if i >= self.count:
                return
            yield Occurrence(date=day, amount=self.amount, type=self.type)

    def __repr__(self) -> str:
        return f"SchedulePreview({self.schedule.frequency} from {self.first}, count={self.count})"
