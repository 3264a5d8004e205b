import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import distinct, select
from sqlalchemy.orm import Session

from ledger.db import atomic
from ledger.domain import RateQuote, money
from ledger.errors import RateNotFound, UnknownProvider
from ledger.functional import Maybe, first_some
from ledger.models import Account, ExchangeRate

logger = logging.getLogger(__name__)


class RateProvider(ABC):
    """A source of exchange-rate quotes, registered under ``name``."""

    name: str

    @abstractmethod
    def fetch(self, currencies: Optional[Sequence[str]] = None) -> List[RateQuote]:
        pass


def _wanted(quote: RateQuote, currencies: Optional[Sequence[str]]) -> bool:
    if currencies is None:
        return True
    return quote.base in currencies and quote.target in currencies


class StaticRateProvider(RateProvider):
    """Quotes handed over in memory by an external adapter."""

    def __init__(self, quotes: Iterable[RateQuote] = (), name: str = "static"):
        self.name = name
        self.quotes = list(quotes)

    def fetch(self, currencies: Optional[Sequence[str]] = None) -> List[RateQuote]:
        return [q for q in self.quotes if _wanted(q, currencies)]


class FeeMarkupProvider(RateProvider):
    """Derives quotes by taking a percentage fee off the latest stored market quotes.

    Used for Payoneer, which publishes no rate feed: its rate is the market rate
    minus its conversion fee, restricted to the currencies it supports.
    """

    SUPPORTED = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CNH", "VND")

    def __init__(self, session: Session, fee_percent: Decimal, now: Callable[[], datetime] = datetime.now,
                 name: str = "payoneer"):
        self.session = session
        self.fee_percent = Decimal(str(fee_percent))
        self.now = now
        self.name = name

    def apply_fee(self, rate: Decimal) -> Decimal:
        return rate * (1 - self.fee_percent / 100)

    def fetch(self, currencies: Optional[Sequence[str]] = None) -> List[RateQuote]:
        allowed = [c for c in self.SUPPORTED if currencies is None or c in currencies]
        stmt = (
            select(ExchangeRate)
            .where(
                ExchangeRate.base_currency.in_(allowed),
                ExchangeRate.target_currency.in_(allowed),
                ExchangeRate.source != self.name,
            )
            .order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc())
        )
        seen = set()
        quotes = []
        for row in self.session.execute(stmt).scalars():
            pair = (row.base_currency, row.target_currency)
            if pair in seen:
                continue
            seen.add(pair)
            quotes.append(RateQuote(
                base=row.base_currency,
                target=row.target_currency,
                rate=self.apply_fee(row.rate),
                date=self.now().date(),
            ))
        return quotes


class ProviderRegistry:
    def __init__(self, providers: Iterable[RateProvider] = ()):
        self._providers: Dict[str, RateProvider] = {}
        for p in providers:
            self.register(p)

    def register(self, provider: RateProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> RateProvider:
        if name not in self._providers:
            raise UnknownProvider(f"Unknown provider: {name}", provider=name)
        return self._providers[name]

    def names(self) -> List[str]:
        return sorted(self._providers)


class CurrencyResolver:
    """Resolves and converts between currencies from stored directional quotes."""

    def __init__(self, session: Session, registry: Optional[ProviderRegistry] = None,
                 default_currency: str = "VND", now: Callable[[], datetime] = datetime.now):
        self.session = session
        self.registry = registry or ProviderRegistry()
        self.default_currency = default_currency
        self.now = now

    def latest_quote(self, base: str, target: str, source: Optional[str] = None) -> Maybe[ExchangeRate]:
        stmt = select(ExchangeRate).where(
            ExchangeRate.base_currency == base,
            ExchangeRate.target_currency == target,
        )
        if source is not None:
            stmt = stmt.where(ExchangeRate.source == source)
        stmt = stmt.order_by(ExchangeRate.rate_date.desc(), ExchangeRate.id.desc()).limit(1)
        return Maybe.of(self.session.execute(stmt).scalar_one_or_none())

    def _direct(self, from_currency: str, to_currency: str, source: Optional[str]) -> Maybe[Decimal]:
        return self.latest_quote(from_currency, to_currency, source).map(lambda q: q.rate)

    def _inverse(self, from_currency: str, to_currency: str, source: Optional[str]) -> Maybe[Decimal]:
        reverse = self.latest_quote(to_currency, from_currency, source)
        return reverse.bind(lambda q: Maybe.of(Decimal(1) / q.rate if q.rate > 0 else None))

    def get_rate(self, from_currency: str, to_currency: str,
                 preferred_source: Optional[str] = None) -> Maybe[Decimal]:
        if from_currency == to_currency:
            return Maybe.of(Decimal(1))

        found = first_some(
            lambda: self._direct(from_currency, to_currency, preferred_source),
            lambda: self._inverse(from_currency, to_currency, preferred_source),
        )
        if found.is_none() and preferred_source is not None:
            return self.get_rate(from_currency, to_currency, None)
        return found

    def convert(self, amount: Decimal, from_currency: str, to_currency: str,
                preferred_source: Optional[str] = None) -> Decimal:
        if from_currency == to_currency:
            return amount
        rate = self.get_rate(from_currency, to_currency, preferred_source).or_raise(
            lambda: RateNotFound(
                f"Exchange rate not found for {from_currency}/{to_currency}",
                from_currency=from_currency, to_currency=to_currency,
            )
        )
        return money(amount * rate)

    def convert_or_original(self, amount: Decimal, from_currency: str, to_currency: str,
                            preferred_source: Optional[str] = None) -> Decimal:
        """Reporting-path conversion: a missing rate leaves the amount unconverted."""
        try:
            return self.convert(amount, from_currency, to_currency, preferred_source)
        except RateNotFound:
            logger.warning("No %s/%s rate, using unconverted amount %s", from_currency, to_currency, amount)
            return amount

    def account_currencies(self, owner_id: Optional[int] = None, include_default: bool = True) -> List[str]:
        stmt = select(distinct(Account.currency_code))
        if owner_id is not None:
            stmt = stmt.where(Account.owner_id == owner_id)
        currencies = list(self.session.execute(stmt).scalars())
        if include_default and self.default_currency not in currencies:
            currencies.append(self.default_currency)
        return currencies

    def upsert_quote(self, quote: RateQuote, source: str) -> ExchangeRate:
        rate_date = quote.date or self.now().date()
        existing = self.session.execute(
            select(ExchangeRate).where(
                ExchangeRate.base_currency == quote.base,
                ExchangeRate.target_currency == quote.target,
                ExchangeRate.source == source,
                ExchangeRate.rate_date == rate_date,
            )
        ).scalar_one_or_none()
        if existing is None:
            existing = ExchangeRate(
                base_currency=quote.base, target_currency=quote.target, source=source, rate_date=rate_date,
            )
            self.session.add(existing)
        existing.rate = quote.rate
        existing.bid_rate = quote.bid
        existing.ask_rate = quote.ask
        return existing

    def update_rates(self, provider_name: str, account_only: bool = False, owner_id: Optional[int] = None) -> int:
        provider = self.registry.get(provider_name)
        currencies = None
        if account_only:
            currencies = self.account_currencies(owner_id)
            if not currencies:
                return 0

        quotes = provider.fetch(currencies)
        with atomic(self.session):
            for quote in quotes:
                self.upsert_quote(quote, provider.name)
                self.session.flush()
        logger.info("Stored %d quotes from %s", len(quotes), provider.name)
        return len(quotes)

    def ingest(self, quotes: Iterable[RateQuote], source: str) -> List[ExchangeRate]:
        with atomic(self.session):
            rows = []
            for quote in quotes:
                rows.append(self.upsert_quote(quote, source))
                self.session.flush()
        return rows
