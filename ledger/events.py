import logging
from datetime import datetime
from typing import Callable, Dict, List, NamedTuple

__all__ = [
    'event_bus', 'Event', 'EventBus',
    'TRANSACTION_CREATED', 'TRANSACTION_DELETED', 'RECURRING_FIRED',
    'BUDGET_ALERT', 'GOAL_COMPLETED', 'BALANCE_DRIFT',
]

logger = logging.getLogger(__name__)


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict


Handler = Callable[[Event, dict], dict]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subscribers.setdefault(name, []).append(handler)

    def publish(self, name: str, payload: dict) -> List[dict]:
        if name not in self._subscribers:
            return []

        event = Event(name=name, ts=datetime.now().isoformat(), payload=payload)
        return [handler(event, payload) for handler in list(self._subscribers[name])]

    def unsubscribe(self, name: str, handler: Handler) -> None:
        if handler in self._subscribers.get(name, []):
            self._subscribers[name].remove(handler)

    def handlers(self, name: str) -> List[Handler]:
        return list(self._subscribers.get(name, []))


TRANSACTION_CREATED = "TRANSACTION_CREATED"
TRANSACTION_DELETED = "TRANSACTION_DELETED"
RECURRING_FIRED = "RECURRING_FIRED"
BUDGET_ALERT = "BUDGET_ALERT"
GOAL_COMPLETED = "GOAL_COMPLETED"
BALANCE_DRIFT = "BALANCE_DRIFT"

ALL_EVENTS = (
    TRANSACTION_CREATED, TRANSACTION_DELETED, RECURRING_FIRED,
    BUDGET_ALERT, GOAL_COMPLETED, BALANCE_DRIFT,
)

event_bus = EventBus()


def log_event_handler(event: Event, payload: dict) -> dict:
    logger.info("%s %s", event.name, payload)
    return {"logged": event.name}


def budget_alert_handler(event: Event, payload: dict) -> dict:
    status = payload.get("status")
    if status not in ("warning", "over_budget"):
        return {}

    return {
        "alert": (
            f"Budget {payload.get('name', payload.get('budget_id'))} is {status.replace('_', ' ')}: "
            f"{payload.get('spent')} / {payload.get('allocated')} {payload.get('currency', '')}".rstrip()
        ),
        "budget_id": payload.get("budget_id"),
        "status": status,
    }


def register_default_handlers(bus: EventBus = event_bus) -> EventBus:
    for name in ALL_EVENTS:
        bus.subscribe(name, log_event_handler)
    bus.subscribe(BUDGET_ALERT, budget_alert_handler)
    return bus


register_default_handlers()
