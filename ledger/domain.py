from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Union

from ledger.models import Transaction

CENT = Decimal("0.01")


def money(value: Union[Decimal, int, float, str]) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateQuote:
    base: str
    target: str
    rate: Decimal
    date: date
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None


@dataclass(frozen=True)
class Occurrence:
    date: date
    amount: Decimal
    type: str  # income | expense


@dataclass(frozen=True)
class TransferResult:
    debit: Transaction
    credit: Transaction
    exchange_rate: Optional[Decimal]
    converted_amount: Decimal


@dataclass(frozen=True)
class TransferPreview:
    same_currency: bool
    amount: Decimal
    from_currency: str
    to_currency: str
    converted_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    rate_source: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MonthlyProjection:
    monthly_income: Decimal
    monthly_expense: Decimal
    monthly_passive_income: Decimal
    currency_code: str

    @property
    def monthly_net(self) -> Decimal:
        return self.monthly_income - self.monthly_expense

    @property
    def passive_coverage(self) -> Decimal:
        # percent of monthly expense covered by passive income
        if self.monthly_expense <= 0:
            return Decimal("0")
        return round(self.monthly_passive_income / self.monthly_expense * 100, 1)


@dataclass(frozen=True)
class BudgetStatus:
    budget_id: int
    allocated: Decimal
    spent: Decimal
    variance: Decimal
    spent_percent: Decimal
    status: str  # on_track | warning | over_budget
    alert: Optional[str]  # None | warning | critical

    @property
    def remaining(self) -> Decimal:
        return self.variance

    @property
    def is_over_budget(self) -> bool:
        return self.spent > self.allocated


@dataclass(frozen=True)
class SweepResult:
    processed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ImportSummary:
    imported: int
    skipped: int
    errors: List[dict]
    transactions: List[Transaction] = field(default_factory=list)


@dataclass(frozen=True)
class BalanceDrift:
    account_id: int
    cached: Decimal
    replayed: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached - self.replayed


@dataclass(frozen=True)
class NetWorth:
    total_assets: Decimal
    total_liabilities: Decimal

    @property
    def net_worth(self) -> Decimal:
        return self.total_assets - self.total_liabilities


@dataclass(frozen=True)
class Match:
    id: int
    name: str


@dataclass(frozen=True)
class HintSuggestion:
    type: str
    amount: Decimal
    description: str
    transaction_date: date
    confidence: float
    category: Optional[Match] = None
    account: Optional[Match] = None
