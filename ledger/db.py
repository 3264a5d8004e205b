import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Type, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ledger.errors import NotFound
from ledger.events import EventBus
from ledger.models import Base

logger = logging.getLogger(__name__)

M = TypeVar("M")

_DEPTH = "ledger.atomic_depth"
_PENDING = "ledger.pending_events"


def make_engine(url: str, echo: bool = False) -> Engine:
    return create_engine(url, echo=echo, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """One unit of work: the outermost block commits or rolls back.

    Nested blocks join the enclosing unit, so a failure anywhere undoes every
    write made since the outermost block was entered. Events queued with
    ``defer_event`` are published only once the outermost commit succeeds.
    """
    depth = session.info.get(_DEPTH, 0)
    session.info[_DEPTH] = depth + 1
    try:
        if depth:
            yield session
            return
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            session.info.pop(_PENDING, None)
            raise
    finally:
        session.info[_DEPTH] = depth

    for bus, name, payload in session.info.pop(_PENDING, []):
        bus.publish(name, payload)


def defer_event(session: Session, bus: EventBus, name: str, payload: dict) -> None:
    if not session.info.get(_DEPTH):
        bus.publish(name, payload)
        return
    session.info.setdefault(_PENDING, []).append((bus, name, payload))


def get_or_404(session: Session, model: Type[M], ident: int) -> M:
    obj = session.get(model, ident)
    if obj is None:
        raise NotFound(f"{model.__name__} {ident} not found", model=model.__name__, id=ident)
    return obj


def lock(session: Session, model: Type[M], ident: int) -> M:
    """Load a row FOR UPDATE, refreshing any stale copy held by the session."""
    stmt = (
        select(model)
        .where(model.id == ident)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    obj: Optional[M] = session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFound(f"{model.__name__} {ident} not found", model=model.__name__, id=ident)
    return obj
