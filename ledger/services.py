from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ledger.accounts import AccountLedger
from ledger.budgets import BudgetTracker
from ledger.config import Settings, get_settings
from ledger.events import EventBus, event_bus
from ledger.importer import StatementImporter
from ledger.matching import HintMatcher
from ledger.rates import CurrencyResolver, FeeMarkupProvider, ProviderRegistry, StaticRateProvider
from ledger.recurring import RecurringScheduler
from ledger.savings import SavingsGoalEngine
from ledger.transactions import TransactionRecorder


@dataclass
class LedgerServices:
    """Every component wired around one session, so they share a unit of work."""

    session: Session
    bus: EventBus
    settings: Settings
    registry: ProviderRegistry
    resolver: CurrencyResolver
    ledger: AccountLedger
    recorder: TransactionRecorder
    scheduler: RecurringScheduler
    budgets: BudgetTracker
    savings: SavingsGoalEngine
    matcher: HintMatcher
    importer: StatementImporter


def default_registry(session: Session, settings: Settings, now: Callable[[], datetime]) -> ProviderRegistry:
    return ProviderRegistry([
        StaticRateProvider(),
        FeeMarkupProvider(session, settings.payoneer_fee_percent, now=now),
    ])


def build_services(session: Session, bus: Optional[EventBus] = None,
                   now: Optional[Callable[[], datetime]] = None,
                   settings: Optional[Settings] = None) -> LedgerServices:
    bus = bus or event_bus
    now = now or datetime.now
    settings = settings or get_settings()

    registry = default_registry(session, settings, now)
    resolver = CurrencyResolver(session, registry, default_currency=settings.default_currency, now=now)
    ledger = AccountLedger(session, bus=bus, now=now)
    recorder = TransactionRecorder(session, ledger, resolver, bus=bus, now=now)
    matcher = HintMatcher(session, now=now)
    return LedgerServices(
        session=session,
        bus=bus,
        settings=settings,
        registry=registry,
        resolver=resolver,
        ledger=ledger,
        recorder=recorder,
        scheduler=RecurringScheduler(
            session, recorder, resolver, bus=bus, now=now,
            reporting_currency=settings.default_currency,
            rate_source=settings.rate_source,
            preview_count=settings.preview_count,
        ),
        budgets=BudgetTracker(
            session, resolver, bus=bus, now=now,
            warning_percent=settings.budget_warning_percent,
            rate_source=settings.rate_source,
        ),
        savings=SavingsGoalEngine(session, recorder, bus=bus, now=now),
        matcher=matcher,
        importer=StatementImporter(recorder, matcher),
    )
