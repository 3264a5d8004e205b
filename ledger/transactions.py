import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from ledger.accounts import AccountLedger
from ledger.db import atomic, defer_event, lock
from ledger.domain import TransferPreview, TransferResult, money
from ledger.errors import (
    AccountMismatch,
    AlreadyReconciled,
    ImmutableTransfer,
    InsufficientFunds,
    ValidationError,
)
from ledger.events import TRANSACTION_CREATED, TRANSACTION_DELETED, EventBus, event_bus
from ledger.models import EXPENSE, INCOME, Account, SavingsContribution, Transaction
from ledger.rates import CurrencyResolver

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("amount", "transaction_date", "category_id", "description", "notes")


def positive_amount(amount) -> Decimal:
    if amount is None:
        raise ValidationError("Amount is required")
    value = money(amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero", amount=str(value))
    return value


def ensure_owner(owner_id: int, obj, what: str) -> None:
    if obj.owner_id != owner_id:
        raise AccountMismatch(f"{what} {obj.id} does not belong to owner {owner_id}", owner_id=owner_id, id=obj.id)


def ensure_funds(account: Account, amount: Decimal) -> None:
    # credit lines may run below zero; limits are a reporting concern
    if account.has_credit_limit:
        return
    if account.current_balance < amount:
        raise InsufficientFunds(
            f"Insufficient funds on account {account.name}",
            account_id=account.id, balance=str(account.current_balance), amount=str(amount),
        )


def _rate_suffix(rate: Optional[Decimal]) -> str:
    return f" (Rate: {rate:.4f})" if rate is not None else ""


class TransactionRecorder:
    """Records postings and keeps account balances in step with them.

    Every public operation is one unit of work: the posting row, the balance
    increment and (for transfers) the linked counter-posting commit together or
    not at all. ``TRANSACTION_CREATED`` / ``TRANSACTION_DELETED`` are published
    after commit.
    """

    def __init__(self, session: Session, ledger: AccountLedger, resolver: CurrencyResolver,
                 bus: EventBus = event_bus, now: Callable[[], datetime] = datetime.now):
        self.session = session
        self.ledger = ledger
        self.resolver = resolver
        self.bus = bus
        self.now = now

    def _create_posting(self, account: Account, transaction_type: str, amount: Decimal,
                        transaction_date: date, category_id: Optional[int] = None,
                        description: Optional[str] = None, notes: Optional[str] = None,
                        **extra) -> Transaction:
        txn = Transaction(
            owner_id=account.owner_id,
            account_id=account.id,
            category_id=category_id,
            transaction_type=transaction_type,
            amount=amount,
            currency_code=account.currency_code,
            description=description,
            notes=notes,
            transaction_date=transaction_date,
            **extra,
        )
        self.session.add(txn)
        self.session.flush()
        self.ledger.adjust_balance(account, txn.signed_amount)
        defer_event(self.session, self.bus, TRANSACTION_CREATED, {
            "transaction_id": txn.id,
            "account_id": account.id,
            "owner_id": account.owner_id,
            "type": transaction_type,
            "amount": str(amount),
            "currency": account.currency_code,
            "category_id": category_id,
            "date": transaction_date.isoformat(),
        })
        return txn

    def record_income(self, owner_id: int, account_id: int, amount, transaction_date: date,
                      category_id: Optional[int] = None, description: Optional[str] = None,
                      notes: Optional[str] = None) -> Transaction:
        amount = positive_amount(amount)
        with atomic(self.session):
            account = self.ledger.lock(account_id)
            ensure_owner(owner_id, account, "Account")
            txn = self._create_posting(account, INCOME, amount, transaction_date, category_id, description, notes)
        logger.info("Recorded income %s on account %s", amount, account_id)
        return txn

    def record_expense(self, owner_id: int, account_id: int, amount, transaction_date: date,
                       category_id: Optional[int] = None, description: Optional[str] = None,
                       notes: Optional[str] = None) -> Transaction:
        amount = positive_amount(amount)
        with atomic(self.session):
            account = self.ledger.lock(account_id)
            ensure_owner(owner_id, account, "Account")
            ensure_funds(account, amount)
            txn = self._create_posting(account, EXPENSE, amount, transaction_date, category_id, description, notes)
        logger.info("Recorded expense %s on account %s", amount, account_id)
        return txn

    def record(self, transaction_type: str, owner_id: int, account_id: int, amount, transaction_date: date,
               **fields) -> Transaction:
        recorders = {INCOME: self.record_income, EXPENSE: self.record_expense}
        if transaction_type not in recorders:
            raise ValidationError(f"Cannot record a {transaction_type} posting directly", type=transaction_type)
        return recorders[transaction_type](owner_id, account_id, amount, transaction_date, **fields)

    def _conversion(self, source: Account, destination: Account, amount: Decimal):
        if source.currency_code == destination.currency_code:
            return None, amount
        rate = self.resolver.get_rate(source.currency_code, destination.currency_code, source.rate_source)
        converted = self.resolver.convert(amount, source.currency_code, destination.currency_code,
                                          source.rate_source)
        return rate.get_or_else(None), converted

    def record_transfer(self, owner_id: int, from_account_id: int, to_account_id: int, amount,
                        transaction_date: date, description: Optional[str] = None) -> TransferResult:
        amount = positive_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account", account_id=from_account_id)

        with atomic(self.session):
            # lock in id order so concurrent opposite transfers cannot deadlock
            locked = {i: self.ledger.lock(i) for i in sorted((from_account_id, to_account_id))}
            source, destination = locked[from_account_id], locked[to_account_id]
            ensure_owner(owner_id, source, "Account")
            ensure_owner(owner_id, destination, "Account")
            ensure_funds(source, amount)

            rate, converted = self._conversion(source, destination, amount)
            audit = {"exchange_rate": rate, "converted_amount": converted} if rate is not None else {}

            debit = self._create_posting(
                source, EXPENSE, amount, transaction_date,
                description=(description or f"Transfer to {destination.name}") + _rate_suffix(rate),
                transfer_account_id=destination.id, **audit,
            )
            credit = self._create_posting(
                destination, INCOME, converted, transaction_date,
                description=(description or f"Transfer from {source.name}") + _rate_suffix(rate),
                transfer_account_id=source.id, **audit,
            )
            debit.transfer_transaction_id = credit.id
            credit.transfer_transaction_id = debit.id
            self.session.flush()

        logger.info("Transferred %s from account %s to %s (received %s)",
                    amount, from_account_id, to_account_id, converted)
        return TransferResult(debit=debit, credit=credit, exchange_rate=rate, converted_amount=converted)

    def transfer_preview(self, owner_id: int, from_account_id: int, to_account_id: int, amount) -> TransferPreview:
        amount = positive_amount(amount)
        source = self.ledger.get(from_account_id)
        destination = self.ledger.get(to_account_id)
        ensure_owner(owner_id, source, "Account")
        ensure_owner(owner_id, destination, "Account")

        if source.currency_code == destination.currency_code:
            return TransferPreview(
                same_currency=True, amount=amount, converted_amount=amount, exchange_rate=Decimal(1),
                from_currency=source.currency_code, to_currency=destination.currency_code,
            )

        rate = self.resolver.get_rate(source.currency_code, destination.currency_code, source.rate_source)
        if rate.is_none():
            return TransferPreview(
                same_currency=False, amount=amount,
                from_currency=source.currency_code, to_currency=destination.currency_code,
                error=f"Exchange rate not found for {source.currency_code} to {destination.currency_code}",
            )
        value = rate.get_or_else(None)
        return TransferPreview(
            same_currency=False, amount=amount, converted_amount=money(amount * value), exchange_rate=value,
            from_currency=source.currency_code, to_currency=destination.currency_code,
            rate_source=source.rate_source or "default",
        )

    def _lock_posting(self, owner_id: int, transaction_id: int) -> Transaction:
        txn = lock(self.session, Transaction, transaction_id)
        ensure_owner(owner_id, txn, "Transaction")
        return txn

    def reconcile(self, owner_id: int, transaction_id: int) -> Transaction:
        with atomic(self.session):
            txn = self._lock_posting(owner_id, transaction_id)
            if txn.is_reconciled:
                raise AlreadyReconciled("Transaction already reconciled", transaction_id=transaction_id)
            txn.reconciled_at = self.now()
        return txn

    def unreconcile(self, owner_id: int, transaction_id: int) -> Transaction:
        with atomic(self.session):
            txn = self._lock_posting(owner_id, transaction_id)
            txn.reconciled_at = None
        return txn

    def update_transaction(self, owner_id: int, transaction_id: int, **changes) -> Transaction:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        with atomic(self.session):
            txn = self._lock_posting(owner_id, transaction_id)
            if txn.is_transfer:
                raise ImmutableTransfer(
                    "Transfer transactions cannot be edited; delete and create a new transfer",
                    transaction_id=transaction_id,
                )
            if "amount" in changes:
                new_amount = positive_amount(changes.pop("amount"))
                difference = new_amount - txn.amount
                if difference:
                    account = self.ledger.lock(txn.account_id)
                    self.ledger.adjust_balance(account, difference if txn.transaction_type == INCOME else -difference)
                txn.amount = new_amount
            if changes.get("transaction_date", txn.transaction_date) is None:
                raise ValidationError("Transaction date is required")
            for field, value in changes.items():
                setattr(txn, field, value)
            self.session.flush()
        return txn

    def _reverse_and_delete(self, txn: Transaction) -> None:
        account = self.ledger.lock(txn.account_id)
        self.ledger.adjust_balance(account, -txn.signed_amount)
        self.session.execute(
            update(SavingsContribution)
            .where(SavingsContribution.transaction_id == txn.id)
            .values(transaction_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(txn)

    def delete_transaction(self, owner_id: int, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self._lock_posting(owner_id, transaction_id)
            doomed = [txn]
            if txn.transfer_transaction_id is not None:
                linked = self.session.get(Transaction, txn.transfer_transaction_id)
                if linked is not None:
                    doomed.append(linked)
            # break the link cycle before either row goes
            for t in doomed:
                t.transfer_transaction_id = None
            self.session.flush()
            for t in doomed:
                self._reverse_and_delete(t)
                defer_event(self.session, self.bus, TRANSACTION_DELETED, {
                    "transaction_id": t.id, "account_id": t.account_id, "owner_id": t.owner_id,
                })
        logger.info("Deleted transaction %s", transaction_id)

    def is_duplicate(self, account_id: int, transaction_date: date, amount: Decimal,
                     description: Optional[str]) -> bool:
        stmt = select(exists().where(
            Transaction.account_id == account_id,
            Transaction.transaction_date == transaction_date,
            Transaction.amount == amount,
            Transaction.description == description,
        ))
        return bool(self.session.execute(stmt).scalar())
