from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

Money = Numeric(18, 2)
Rate = Numeric(20, 8)

INCOME = "income"
EXPENSE = "expense"
TRANSFER = "transfer"

ACCOUNT_TYPES = ("bank", "credit_card", "investment", "cash", "loan", "e_wallet", "other")
CREDIT_LINE_TYPES = ("credit_card", "loan")
ASSET_TYPES = ("bank", "investment", "cash", "e_wallet")

FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
PERIOD_TYPES = ("weekly", "monthly", "quarterly", "yearly", "custom")

GOAL_ACTIVE = "active"
GOAL_PAUSED = "paused"
GOAL_COMPLETED = "completed"
GOAL_CANCELLED = "cancelled"


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=True, index=True)  # null = shared system category
    parent_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    name = Column(String(120), nullable=False)
    type = Column(String(10), nullable=False, default=EXPENSE)  # income | expense | both
    is_passive = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"Category(id={self.id}, name={self.name!r}, type={self.type})"


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (Index("ix_accounts_owner_active", "owner_id", "is_active"),)

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False)
    name = Column(String(120), nullable=False)
    account_type = Column(String(20), nullable=False, default="bank")
    currency_code = Column(String(3), nullable=False)
    rate_source = Column(String(40), nullable=True)
    initial_balance = Column(Money, nullable=False, default=Decimal("0"))
    current_balance = Column(Money, nullable=False, default=Decimal("0"))
    is_active = Column(Boolean, nullable=False, default=True)
    is_default_payment = Column(Boolean, nullable=False, default=False)
    exclude_from_total = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    @property
    def has_credit_limit(self) -> bool:
        return self.account_type in CREDIT_LINE_TYPES

    @property
    def amount_owed(self) -> Decimal:
        if not self.has_credit_limit:
            return Decimal("0")
        return max(self.initial_balance - self.current_balance, Decimal("0"))

    def __repr__(self) -> str:
        return f"Account(id={self.id}, name={self.name!r}, balance={self.current_balance} {self.currency_code})"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "transaction_date"),
        Index("ix_transactions_owner_type_date", "owner_id", "transaction_type", "transaction_date"),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    transaction_type = Column(String(10), nullable=False)  # income | expense
    amount = Column(Money, nullable=False)
    currency_code = Column(String(3), nullable=False)
    description = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    transaction_date = Column(Date, nullable=False)
    reconciled_at = Column(DateTime, nullable=True)
    transfer_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    transfer_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    exchange_rate = Column(Rate, nullable=True)
    converted_amount = Column(Money, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    account = relationship("Account", foreign_keys=[account_id])
    category = relationship("Category")

    @property
    def is_transfer(self) -> bool:
        return self.transfer_transaction_id is not None

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_at is not None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.transaction_type == INCOME else -self.amount

    def __repr__(self) -> str:
        return f"Transaction(id={self.id}, {self.transaction_type} {self.amount} on {self.transaction_date})"


class RecurringTransaction(Base):
    __tablename__ = "recurring_transactions"
    __table_args__ = (Index("ix_recurring_due", "is_active", "next_run_date"),)

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    transaction_type = Column(String(10), nullable=False)
    amount = Column(Money, nullable=False)
    currency_code = Column(String(3), nullable=False)
    frequency = Column(String(10), nullable=False)
    day_of_week = Column(Integer, nullable=True)
    day_of_month = Column(Integer, nullable=True)
    month_of_year = Column(Integer, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_run_date = Column(Date, nullable=False)
    last_run_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    auto_create = Column(Boolean, nullable=False, default=True)

    account = relationship("Account")
    category = relationship("Category")

    def __repr__(self) -> str:
        return f"RecurringTransaction(id={self.id}, {self.frequency} {self.amount}, next={self.next_run_date})"


class Budget(Base):
    __tablename__ = "budgets"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)  # null = all categories
    name = Column(String(120), nullable=False)
    period_type = Column(String(10), nullable=False)
    allocated_amount = Column(Money, nullable=False)
    spent_amount = Column(Money, nullable=False, default=Decimal("0"))
    currency_code = Column(String(3), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    rollover = Column(Boolean, nullable=False, default=False)
    renewed_from_id = Column(Integer, ForeignKey("budgets.id"), nullable=True)
    refreshed_at = Column(DateTime, nullable=True)

    category = relationship("Category")

    @property
    def spent_percent(self) -> Decimal:
        if not self.allocated_amount:
            return Decimal("0")
        return self.spent_amount / self.allocated_amount * 100

    @property
    def variance(self) -> Decimal:
        return self.allocated_amount - self.spent_amount

    @property
    def is_over_budget(self) -> bool:
        return self.spent_amount > self.allocated_amount


class SavingsGoal(Base):
    __tablename__ = "savings_goals"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    target_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String(40), nullable=True)
    color = Column(String(7), nullable=True)
    target_amount = Column(Money, nullable=False)
    current_amount = Column(Money, nullable=False, default=Decimal("0"))
    currency_code = Column(String(3), nullable=False)
    target_date = Column(Date, nullable=True)
    status = Column(String(10), nullable=False, default=GOAL_ACTIVE)
    completed_at = Column(DateTime, nullable=True)

    contributions = relationship(
        "SavingsContribution", back_populates="goal", order_by="SavingsContribution.id"
    )

    @property
    def has_reached_target(self) -> bool:
        return self.current_amount >= self.target_amount

    @property
    def progress_percent(self) -> Decimal:
        if not self.target_amount:
            return Decimal("0")
        return min(self.current_amount / self.target_amount * 100, Decimal("100"))

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.target_amount - self.current_amount, Decimal("0"))

    def __repr__(self) -> str:
        return f"SavingsGoal(id={self.id}, {self.current_amount}/{self.target_amount}, {self.status})"


class SavingsContribution(Base):
    __tablename__ = "savings_contributions"

    id = Column(Integer, primary_key=True)
    savings_goal_id = Column(Integer, ForeignKey("savings_goals.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    amount = Column(Money, nullable=False)  # negative = withdrawal
    currency_code = Column(String(3), nullable=False)
    contribution_date = Column(Date, nullable=False)
    notes = Column(Text, nullable=True)
    contribution_type = Column(String(10), nullable=False, default="manual")  # manual | linked

    goal = relationship("SavingsGoal", back_populates="contributions")


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint("base_currency", "target_currency", "source", "rate_date", name="uq_rate_quote"),
        Index("ix_rates_pair_date", "base_currency", "target_currency", "rate_date"),
    )

    id = Column(Integer, primary_key=True)
    base_currency = Column(String(3), nullable=False)
    target_currency = Column(String(3), nullable=False)
    rate = Column(Rate, nullable=False)
    bid_rate = Column(Rate, nullable=True)
    ask_rate = Column(Rate, nullable=True)
    source = Column(String(40), nullable=False)
    rate_date = Column(Date, nullable=False)

    def __repr__(self) -> str:
        return f"ExchangeRate({self.base_currency}->{self.target_currency} {self.rate} [{self.source} {self.rate_date}])"
