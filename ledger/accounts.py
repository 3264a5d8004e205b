import logging
from datetime import datetime
from decimal import Decimal
from functools import reduce
from typing import Callable, Iterable, List, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from ledger.db import atomic, defer_event, get_or_404, lock
from ledger.domain import BalanceDrift, NetWorth, money
from ledger.errors import AccountInUse, ValidationError
from ledger.events import BALANCE_DRIFT, EventBus, event_bus
from ledger.models import ACCOUNT_TYPES, ASSET_TYPES, CREDIT_LINE_TYPES, Account, Transaction

logger = logging.getLogger(__name__)


def replay_balance(initial: Decimal, postings: Iterable[Transaction]) -> Decimal:
    return reduce(lambda acc, t: acc + t.signed_amount, postings, initial)


class AccountLedger:
    """Owns account balances.

    ``current_balance`` is a materialised sum: initial balance plus every signed
    posting. It is maintained incrementally through ``adjust_balance`` and can be
    rebuilt from history with ``recompute_balance``.
    """

    def __init__(self, session: Session, bus: EventBus = event_bus, now: Callable[[], datetime] = datetime.now):
        self.session = session
        self.bus = bus
        self.now = now

    def get(self, account_id: int) -> Account:
        return get_or_404(self.session, Account, account_id)

    def lock(self, account_id: int) -> Account:
        return lock(self.session, Account, account_id)

    def create_account(self, owner_id: int, name: str, currency_code: str, account_type: str = "bank",
                       initial_balance=0, rate_source: Optional[str] = None,
                       exclude_from_total: bool = False, is_default_payment: bool = False) -> Account:
        if account_type not in ACCOUNT_TYPES:
            raise ValidationError(f"Unknown account type: {account_type}", account_type=account_type)
        if not name:
            raise ValidationError("Account name is required")

        initial = money(initial_balance)
        with atomic(self.session):
            account = Account(
                owner_id=owner_id,
                name=name,
                account_type=account_type,
                currency_code=currency_code.upper(),
                rate_source=rate_source,
                initial_balance=initial,
                current_balance=initial,
                exclude_from_total=exclude_from_total,
            )
            self.session.add(account)
            self.session.flush()
            if is_default_payment:
                self._set_default(account)
        logger.info("Created account %s (%s %s)", account.id, account.account_type, account.currency_code)
        return account

    def adjust_balance(self, account: Account, delta: Decimal) -> Account:
        """Apply ``current_balance += delta`` as a single SQL increment.

        Must run inside the unit of work that writes the posting causing it.
        """
        self.session.execute(
            update(Account)
            .where(Account.id == account.id)
            .values(current_balance=Account.current_balance + delta)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(account, ["current_balance"])
        return account

    def _set_default(self, account: Account) -> None:
        self.session.execute(
            update(Account)
            .where(Account.owner_id == account.owner_id, Account.id != account.id)
            .values(is_default_payment=False)
            .execution_options(synchronize_session="fetch")
        )
        account.is_default_payment = True

    def set_as_default_payment(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self.lock(account_id)
            self._set_default(account)
        return account

    def has_postings(self, account_id: int) -> bool:
        stmt = select(exists().where(
            (Transaction.account_id == account_id) | (Transaction.transfer_account_id == account_id)
        ))
        return bool(self.session.execute(stmt).scalar())

    def delete_account(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.lock(account_id)
            if self.has_postings(account_id):
                raise AccountInUse("Cannot delete account with existing transactions", account_id=account_id)
            self.session.delete(account)
        logger.info("Deleted account %s", account_id)

    def owned_by(self, owner_id: int, active_only: bool = True) -> List[Account]:
        stmt = select(Account).where(Account.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(Account.id)).scalars())

    def net_worth(self, owner_id: int) -> NetWorth:
        accounts = self.owned_by(owner_id)
        assets = sum(
            (a.current_balance for a in accounts
             if not a.exclude_from_total and a.account_type in ASSET_TYPES and a.current_balance > 0),
            Decimal("0"),
        )
        # debt is tracked even on accounts excluded from totals
        liabilities = sum(
            (a.amount_owed for a in accounts if a.account_type in CREDIT_LINE_TYPES),
            Decimal("0"),
        )
        return NetWorth(total_assets=assets, total_liabilities=liabilities)

    def postings(self, account_id: int) -> List[Transaction]:
        stmt = select(Transaction).where(Transaction.account_id == account_id).order_by(Transaction.id)
        return list(self.session.execute(stmt).scalars())

    def recompute_balance(self, account_id: int) -> Decimal:
        account = self.get(account_id)
        return replay_balance(account.initial_balance, self.postings(account_id))

    def find_drift(self, owner_id: Optional[int] = None) -> List[BalanceDrift]:
        stmt = select(Account).order_by(Account.id).execution_options(populate_existing=True)
        if owner_id is not None:
            stmt = stmt.where(Account.owner_id == owner_id)
        drifts = []
        for account in self.session.execute(stmt).scalars():
            replayed = self.recompute_balance(account.id)
            if replayed != account.current_balance:
                drifts.append(BalanceDrift(account.id, account.current_balance, replayed))
        return drifts

    def repair_drift(self, owner_id: Optional[int] = None) -> List[BalanceDrift]:
        with atomic(self.session):
            drifts = self.find_drift(owner_id)
            for drift in drifts:
                account = self.lock(drift.account_id)
                replayed = self.recompute_balance(account.id)
                account.current_balance = replayed
                logger.warning("Repaired balance drift on account %s: %s -> %s",
                               account.id, drift.cached, replayed)
                defer_event(self.session, self.bus, BALANCE_DRIFT, {
                    "account_id": account.id,
                    "cached": str(drift.cached),
                    "replayed": str(replayed),
                })
        return drifts
