import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Set

from budgetsync import config
from budgetsync.domain import Transaction
from budgetsync.events import TAG_ACCESS_REMOVED, TAG_ERROR, TAG_UPDATE, EventBus
from budgetsync.session import SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.transforms import find_other_category_id, to_local_transaction

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

_MEMBER_MESSAGES = {
    INSERT: "A new member joined this budget",
    DELETE: "A member was removed from this budget",
    UPDATE: "Budget member updated",
}

_KIND_MESSAGES = {
    "categories": "Categories updated",
    "goals": "Goals updated",
    "debts": "Debts updated",
    "recurring": "Recurring transactions updated",
    "accounts": "Accounts updated",
}


class ChangeEvent(NamedTuple):
    kind: str
    change: str
    new: Optional[dict]
    old: Optional[dict]

    @classmethod
    def from_payload(cls, kind: str, payload: dict) -> 'ChangeEvent':
        # local store: {"eventType", "new", "old"}; supabase realtime: {"data": {"type", "record", "old_record"}}
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        change = data.get("eventType") or data.get("type") or ""
        new = data.get("new") or data.get("record") or None
        old = data.get("old") or data.get("old_record") or None
        return cls(kind=kind, change=str(change).lower(), new=new, old=old)


class RealtimeRouter:
    """Applies remote change notifications to the active budget.

    Transactions are patched straight into the store; every kind then
    schedules one debounced full reload that corrects whatever the patch
    could not know (joined names, derived fields).
    """

    def __init__(
        self,
        state: ActiveDataStore,
        session: SessionState,
        reconcile: Callable[[], Awaitable[Any]],
        bus: EventBus,
        refresh_budgets: Optional[Callable[[], Awaitable[Any]]] = None,
        debounce: float = config.REFRESH_DEBOUNCE,
    ):
        self.state = state
        self.session = session
        self.bus = bus
        self.debounce = debounce
        self._reconcile = reconcile
        self._refresh_budgets = refresh_budgets
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    # -- subscription callbacks

    def callback(self, kind: str) -> Callable[[dict], None]:
        def on_change(payload: dict) -> None:
            event = ChangeEvent.from_payload(kind, payload)
            self.on_event(event.kind, event.change, event.new, event.old)
        return on_change

    def membership_callback(self) -> Callable[[dict], None]:
        def on_change(payload: dict) -> None:
            event = ChangeEvent.from_payload(config.MY_MEMBERSHIP, payload)
            self.on_membership_event(event.change, event.new, event.old)
        return on_change

    # -- per-budget events

    def on_event(self, kind: str, change: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        logger.debug("[realtime] %s %s new=%s old=%s", kind, change, new, old)
        budget_id = (new or old or {}).get("budget_id")
        if budget_id and budget_id != self.session.current_budget_id:
            logger.debug("[realtime] dropping %s event for inactive budget %s", kind, budget_id)
            return

        if kind == "transactions":
            self._apply_transaction(change, new, old)
            self._notify_transaction(change, new)
        elif kind == "members":
            self.bus.notify(_MEMBER_MESSAGES.get(change, "Budget member updated"), TAG_UPDATE)
            if self._refresh_budgets is not None:
                self._spawn(self._refresh_budgets())
        else:
            self.bus.notify(_KIND_MESSAGES.get(kind, f"{kind} updated"), TAG_UPDATE)

        self.schedule_refresh()

    def _apply_transaction(self, change: str, new: Optional[dict], old: Optional[dict]) -> None:
        try:
            if self.state.active_scope != self.session.current_budget_id:
                return
            snapshot = self.state.get()
            other_id = find_other_category_id(snapshot.categories).get_or_else(None)
            existing = list(snapshot.transactions)
            updated = _patch(existing, change, new, old, other_id)
            if updated is not None:
                self.state.set(transactions=updated)
                self.bus.render()
        except Exception:
            logger.warning("[realtime] failed to apply transaction fast-path update", exc_info=True)

    def _notify_transaction(self, change: str, new: Optional[dict]) -> None:
        if change == INSERT:
            user = (new or {}).get("user") or {}
            name = user.get("display_name") or user.get("username") or "Someone"
            self.bus.notify(f"{name} added a transaction", TAG_UPDATE)
        elif change == UPDATE:
            self.bus.notify("Transaction updated", TAG_UPDATE)
        elif change == DELETE:
            self.bus.notify("Transaction deleted", TAG_UPDATE)

    # -- membership of the signed-in user, across all budgets

    def on_membership_event(self, change: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        self._spawn(self._handle_membership(change, new, old))

    async def _handle_membership(self, change: str, new: Optional[dict], old: Optional[dict]) -> None:
        try:
            user_id = self.session.user_id
            if change == DELETE and old and old.get("user_id") == user_id:
                budget_id = old.get("budget_id")
                name = self.session.budget_name(budget_id)
                self.session.mark_removed(budget_id)
                # removal from a budget never signs the user out
                self.bus.notify(f"You were removed from {name}.", TAG_ACCESS_REMOVED)
            elif change == INSERT and new and new.get("user_id") == user_id:
                self.session.unmark_removed(new.get("budget_id"))

            if self._refresh_budgets is not None:
                await self._refresh_budgets()
            self.bus.render()
        except Exception:
            logger.warning("[realtime] my_membership handler error", exc_info=True)

    # -- debounced full reload

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule_refresh(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce, self._fire)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        self._spawn(self._refresh())

    async def _refresh(self) -> None:
        try:
            await self._reconcile()
        except Exception:
            logger.exception("[realtime] debounced reload failed")
            self.bus.notify("Could not refresh this budget. Please reload.", TAG_ERROR)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for a pending reload and any spawned handlers to finish."""
        while self._timer is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.debounce / 2 or 0.001)


def _merge(current: Transaction, fresh: Transaction) -> Transaction:
    # realtime rows carry no joins, keep what the last reload resolved
    return replace(fresh, user_name=fresh.user_name or current.user_name)


def _patch(existing: list, change: str, new: Optional[dict], old: Optional[dict], other_id: Optional[str]):
    """Return the patched transaction list, or None when nothing changed."""
    if change == INSERT and new and new.get("id"):
        tx = to_local_transaction(new, other_id)
        idx = next((i for i, t in enumerate(existing) if t.id == tx.id), -1)
        if idx >= 0:
            existing[idx] = _merge(existing[idx], tx)
        else:
            existing.insert(0, tx)
        return existing

    if change == UPDATE and new and new.get("id"):
        tx = to_local_transaction(new, other_id)
        idx = next((i for i, t in enumerate(existing) if t.id == tx.id), -1)
        if idx < 0:
            return None
        existing[idx] = _merge(existing[idx], tx)
        return existing

    if change == DELETE:
        deleted_id = (old or {}).get("id") or (new or {}).get("id")
        if not deleted_id:
            return None
        kept = [t for t in existing if t.id != deleted_id]
        return kept if len(kept) != len(existing) else None

    return None
