import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple

__all__ = ['RENDER', 'NOTIFY', 'BUDGETS_CHANGED', 'Event', 'EventBus']

logger = logging.getLogger(__name__)

# Renderer signals
RENDER = "RENDER"               # no payload, renderer re-reads the store
NOTIFY = "NOTIFY"               # {"message": str, "tag": str}
BUDGETS_CHANGED = "BUDGETS_CHANGED"

# Notification tags
TAG_UPDATE = "update"
TAG_ERROR = "error"
TAG_ACCESS_REMOVED = "access-removed"
TAG_BUDGET_CHANGED = "budget-changed"


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict


Handler = Callable[[Event, dict], Any]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        self._subscribers.setdefault(name, []).append(handler)
        return lambda: self.unsubscribe(name, handler)

    def publish(self, name: str, payload: dict | None = None) -> List[Any]:
        handlers = list(self._subscribers.get(name, ()))
        if not handlers:
            return []

        payload = payload if payload is not None else {}
        event = Event(name=name, ts=datetime.now().isoformat(), payload=payload)

        results = []
        for handler in handlers:
            # one broken listener must not starve the others
            try:
                results.append(handler(event, payload))
            except Exception:
                logger.exception("listener for %s failed", name)
        return results

    def unsubscribe(self, name: str, handler: Handler) -> None:
        if handler in self._subscribers.get(name, ()):
            self._subscribers[name].remove(handler)

    def render(self) -> None:
        self.publish(RENDER)

    def notify(self, message: str, tag: str = TAG_UPDATE) -> None:
        self.publish(NOTIFY, {"message": message, "tag": tag})
