from datetime import date, datetime, time

import pytest

from ledger.config import Settings
from ledger.db import init_db, make_engine, make_session_factory
from ledger.events import ALL_EVENTS, EventBus
from ledger.services import build_services

TODAY = date(2025, 1, 10)


class Clock:
    """Settable stand-in for ``datetime.now``."""

    def __init__(self, day: date = TODAY):
        self.set(day)

    def __call__(self) -> datetime:
        return self.current

    def set(self, day: date) -> None:
        self.current = datetime.combine(day, time(9, 0))


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def engine(db_url):
    engine = make_engine(db_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def published(bus):
    events = []
    for name in ALL_EVENTS:
        bus.subscribe(name, lambda event, payload: events.append((event.name, payload)) or {})
    return events


@pytest.fixture
def settings(db_url):
    return Settings(database_url=db_url, default_currency="VND")


@pytest.fixture
def services(session, bus, clock, settings):
    return build_services(session, bus=bus, now=clock, settings=settings)
