import logging
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledger.domain import RateQuote
from ledger.errors import RateNotFound, UnknownProvider
from ledger.functional import Nothing, Some
from ledger.models import ExchangeRate
from ledger.rates import FeeMarkupProvider, ProviderRegistry, StaticRateProvider


def quote(base, target, rate, day=date(2025, 1, 9)):
    return RateQuote(base=base, target=target, rate=Decimal(rate), date=day)


def make_account(services, name, currency, balance=0):
    return services.ledger.create_account(1, name, currency, initial_balance=balance)


def rate_rows(session):
    return session.execute(select(func.count()).select_from(ExchangeRate)).scalar()


def test_same_currency_rate_is_one(services):
    assert services.resolver.get_rate("VND", "VND") == Some(Decimal("1"))


def test_direct_quote(services):
    services.resolver.ingest([quote("USD", "VND", "25000")], "static")
    assert services.resolver.get_rate("USD", "VND") == Some(Decimal("25000"))


def test_inverse_of_reverse_quote(services):
    services.resolver.ingest([quote("USD", "VND", "25000")], "static")
    assert services.resolver.get_rate("VND", "USD") == Some(Decimal("0.00004"))


def test_missing_pair(services):
    assert services.resolver.get_rate("EUR", "JPY") == Nothing()


def test_latest_quote_wins(services):
    services.resolver.ingest([
        quote("USD", "VND", "24800", date(2025, 1, 8)),
        quote("USD", "VND", "25100", date(2025, 1, 9)),
    ], "static")
    assert services.resolver.get_rate("USD", "VND") == Some(Decimal("25100"))


def test_preferred_source_and_fallback(services):
    services.resolver.ingest([quote("USD", "VND", "24000", date(2025, 1, 8))], "vietcombank")
    services.resolver.ingest([quote("USD", "VND", "25000", date(2025, 1, 9))], "exchangerate_api")

    assert services.resolver.get_rate("USD", "VND", "vietcombank") == Some(Decimal("24000"))
    # a source with no quotes falls back to the best available one
    assert services.resolver.get_rate("USD", "VND", "payoneer") == Some(Decimal("25000"))


def test_convert_quantizes_to_cents(services):
    services.resolver.ingest([quote("USD", "VND", "25000")], "static")
    assert services.resolver.convert(Decimal("10.5"), "USD", "VND") == Decimal("262500.00")
    assert services.resolver.convert(Decimal("250000"), "VND", "USD") == Decimal("10.00")


def test_convert_hard_fails_without_rate(services):
    with pytest.raises(RateNotFound) as exc:
        services.resolver.convert(Decimal("10"), "EUR", "VND")
    assert exc.value.to_dict()["error"] == "rate_not_found"


def test_convert_or_original_soft_fails(services, caplog):
    with caplog.at_level(logging.WARNING, logger="ledger.rates"):
        assert services.resolver.convert_or_original(Decimal("10"), "EUR", "VND") == Decimal("10")
    assert "EUR/VND" in caplog.text


def test_upsert_keeps_one_row_per_source_and_day(services, session):
    services.resolver.ingest([quote("USD", "VND", "25000")], "static")
    services.resolver.ingest([quote("USD", "VND", "25050")], "static")
    services.resolver.ingest([quote("USD", "VND", "24990")], "vietcombank")

    assert rate_rows(session) == 2
    assert services.resolver.get_rate("USD", "VND", "static") == Some(Decimal("25050"))


def test_update_rates_from_registered_provider(services):
    services.registry.register(StaticRateProvider([
        quote("USD", "VND", "25000"),
        quote("EUR", "VND", "27000"),
    ], name="bank-feed"))

    assert services.resolver.update_rates("bank-feed") == 2
    assert services.resolver.latest_quote("EUR", "VND", "bank-feed").map(lambda q: q.rate) == Some(Decimal("27000"))


def test_update_rates_account_only(services, session):
    make_account(services, "Wallet", "VND")
    make_account(services, "Payoneer USD", "USD")
    services.registry.register(StaticRateProvider([
        quote("USD", "VND", "25000"),
        quote("EUR", "VND", "27000"),
        quote("GBP", "USD", "1.25"),
    ], name="bank-feed"))

    assert services.resolver.update_rates("bank-feed", account_only=True) == 1
    assert services.resolver.get_rate("EUR", "VND") == Nothing()


def test_account_currencies_include_default(services):
    make_account(services, "Payoneer USD", "USD")
    assert services.resolver.account_currencies(1) == ["USD", "VND"]
    assert services.resolver.account_currencies(1, include_default=False) == ["USD"]


def test_unknown_provider(services):
    with pytest.raises(UnknownProvider):
        services.resolver.update_rates("nope")


def test_payoneer_applies_fee_to_market_quotes(services):
    services.resolver.ingest([quote("USD", "VND", "25000"), quote("USD", "THB", "34")], "vietcombank")

    assert services.resolver.update_rates("payoneer") == 1
    assert services.resolver.get_rate("USD", "VND", "payoneer") == Some(Decimal("24875"))


def test_fee_markup_provider_skips_its_own_quotes(session, clock):
    provider = FeeMarkupProvider(session, Decimal("1"), now=clock)
    assert provider.apply_fee(Decimal("100")) == Decimal("99")
    assert provider.fetch() == []


def test_registry_names():
    registry = ProviderRegistry([StaticRateProvider(name="b"), StaticRateProvider(name="a")])
    assert registry.names() == ["a", "b"]
