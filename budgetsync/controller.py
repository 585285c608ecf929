import asyncio
import logging
from typing import Iterable, List, Mapping, Optional

from budgetsync import config
from budgetsync.domain import Budget, PERSONAL
from budgetsync.events import (
    BUDGETS_CHANGED, TAG_ACCESS_REMOVED, TAG_BUDGET_CHANGED, TAG_ERROR, EventBus,
)
from budgetsync.realtime import RealtimeRouter
from budgetsync.reconcile import ReconciliationEngine
from budgetsync.session import SessionPhase, SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.stores import Store

logger = logging.getLogger(__name__)


def to_budget(row: Mapping) -> Budget:
    return Budget(id=str(row["id"]), name=str(row.get("name") or ""), type=row.get("type") or PERSONAL)


class BudgetSessionController:
    """The only writer of the current budget.

    Activating a budget reloads it, and for shared budgets keeps one
    realtime channel per entity kind open while it stays current. The
    user's own membership channel lives for the whole signed-in session.
    """

    def __init__(
        self,
        store: Store,
        state: Optional[ActiveDataStore] = None,
        session: Optional[SessionState] = None,
        bus: Optional[EventBus] = None,
        debounce: float = config.REFRESH_DEBOUNCE,
        default_categories: Iterable[Mapping] = config.DEFAULT_CATEGORIES,
    ):
        self.store = store
        self.state = state or ActiveDataStore()
        self.session = session or SessionState()
        self.bus = bus or EventBus()
        self.engine = ReconciliationEngine(store, self.state, self.session, self.bus, default_categories)
        self.router = RealtimeRouter(
            self.state, self.session, self.reload, self.bus,
            refresh_budgets=self.refresh_budgets, debounce=debounce,
        )
        self._sub_lock = asyncio.Lock()

    # -- sign in / sign out

    async def start(self, user_id: str) -> None:
        self.session.user_id = user_id
        await self._ensure_membership_channel()
        await self.refresh_budgets()

    async def stop(self) -> None:
        await self.deactivate_current_budget()
        handle = self.session.channels.pop(config.MY_MEMBERSHIP, None)
        if handle is not None:
            await self.store.unsubscribe(handle)
        self.session.user_id = None
        self.session.budgets = []

    async def _ensure_membership_channel(self) -> None:
        if not self.session.user_id or config.MY_MEMBERSHIP in self.session.channels:
            return
        handle = await self.store.subscribe_membership(self.session.user_id, self.router.membership_callback())
        self.session.channels[config.MY_MEMBERSHIP] = handle

    # -- budget selection

    async def activate_budget(self, budget_id: str, announce: bool = True) -> bool:
        budget = self.session.find_budget(budget_id)
        if budget is None or budget_id in self.session.removed_budget_ids:
            logger.warning("cannot activate budget %s: not accessible", budget_id)
            self.bus.notify("That budget is not available.", TAG_ERROR)
            return False

        previous = (self.session.current_budget, self.session.phase, self.state.active_scope)
        self.session.current_budget = budget
        self.session.phase = SessionPhase.LOADING
        self.state.switch_active_scope(budget.id)
        logger.info("activating budget %s (%s)", budget.id, budget.name)

        try:
            committed = await self.engine.reconcile(budget.id)
        except Exception:
            logger.exception("loading budget %s failed", budget.id)
            if self.session.current_budget_id == budget.id:
                self._restore(previous)
            self.bus.notify(f"Could not load {budget.name}. Please try again.", TAG_ERROR)
            raise

        if not committed or self.session.current_budget_id != budget.id:
            return False

        self.session.phase = SessionPhase.READY
        await self._sync_subscriptions()
        self.bus.render()
        if announce:
            self.bus.notify(f"Switched to {budget.name}", TAG_BUDGET_CHANGED)
        return True

    def _restore(self, previous) -> None:
        budget, phase, scope = previous
        if budget is not None and budget.id in self.session.removed_budget_ids:
            budget, phase, scope = None, SessionPhase.UNSELECTED, None
        self.session.current_budget, self.session.phase = budget, phase
        self.state.switch_active_scope(scope)

    async def reload(self) -> bool:
        """Reload the current budget.

        A pass that commits while an activation is still LOADING has
        superseded that activation's own pass, so it finishes the job.
        """
        budget = self.session.current_budget
        if budget is None:
            return False
        committed = await self.engine.reconcile(budget.id)
        if committed and self.session.current_budget_id == budget.id and self.session.phase is SessionPhase.LOADING:
            self.session.phase = SessionPhase.READY
            await self._sync_subscriptions()
        return committed

    async def deactivate_current_budget(self) -> None:
        # invalidates any reload still in flight
        self.session.next_seq()
        self.session.current_budget = None
        self.session.phase = SessionPhase.UNSELECTED
        self.router.cancel()
        self.state.switch_active_scope(None)
        await self._sync_subscriptions()
        self.bus.render()

    async def refresh_budgets(self) -> None:
        """Re-read the accessible budgets and move off the current one if it is gone."""
        if not self.session.user_id:
            return
        result = await self.store.list_budgets(self.session.user_id)
        if result.is_left():
            logger.error("error loading budgets: %s", result.get_error())
            self.bus.notify("Error loading budgets. Please refresh the page.", TAG_ERROR)
            return

        accessible: List[Budget] = [
            to_budget(row) for row in result.get_or_else([])
            if row.get("id") not in self.session.removed_budget_ids
        ]
        self.session.budgets = accessible
        self.bus.publish(BUDGETS_CHANGED, {"budgets": list(accessible)})

        current = self.session.current_budget
        if current is not None:
            still_there = self.session.find_budget(current.id)
            if still_there is not None:
                if still_there != current:
                    # e.g. a personal budget was turned into a shared one
                    self.session.current_budget = still_there
                    await self._sync_subscriptions()
                return

            if current.id not in self.session.removed_budget_ids:
                self.session.mark_removed(current.id)
                self.bus.notify(f"You were removed from {current.name}.", TAG_ACCESS_REMOVED)
            self.state.drop_scope(current.id)
            # closes its channels; a failed fallback below must not bring it back
            await self.deactivate_current_budget()

        # prefer the personal budget, then whatever is left
        fallback = next((b for b in accessible if b.type == PERSONAL), None) or (accessible[0] if accessible else None)
        if fallback is not None:
            await self.activate_budget(fallback.id, announce=current is None)

    # -- realtime channels

    async def _sync_subscriptions(self) -> None:
        async with self._sub_lock:
            budget = self.session.current_budget
            wanted = (
                budget.id
                if budget is not None and budget.is_shared and self.session.phase is SessionPhase.READY
                else None
            )
            if wanted is not None and wanted == self.session.subscribed_budget_id:
                return

            for name, handle in list(self.session.channels.items()):
                if name == config.MY_MEMBERSHIP:
                    continue
                self.session.channels.pop(name)
                await self.store.unsubscribe(handle)
            self.session.subscribed_budget_id = None

            if wanted is None:
                logger.info("[realtime] unsubscribed (not shared or no budget)")
                return

            logger.info("[realtime] subscribing for budget %s", wanted)
            for kind in config.REALTIME_KINDS:
                self.session.channels[kind] = await self.store.subscribe(kind, wanted, self.router.callback(kind))
            self.session.subscribed_budget_id = wanted
