import pytest

from budgetsync.controller import BudgetSessionController
from budgetsync.domain import Budget, Category, Transaction
from budgetsync.events import NOTIFY, EventBus
from budgetsync.realtime import ChangeEvent, RealtimeRouter
from budgetsync.session import SessionPhase, SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.stores import TRANSACTIONS, LocalStore


def make_tx(id, amount=10.0, type="expense", date="2025-09-01", **kw):
    return Transaction(id=id, date=date, description=id, amount=amount, type=type, **kw)


class Reloads:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


def make_router(debounce=0.01):
    session = SessionState(user_id="u1", current_budget=Budget(id="flat", name="Flat", type="shared"),
                           phase=SessionPhase.READY)
    state = ActiveDataStore()
    state.switch_active_scope("flat")
    state.set(
        transactions=[make_tx("t1", user_name="Sam")],
        categories=[Category(id="food", name="Food"), Category(id="oth", name="Other")],
    )
    bus = EventBus()
    notes = []
    bus.subscribe(NOTIFY, lambda e, p: notes.append(p["message"]))
    reloads = Reloads()
    router = RealtimeRouter(state, session, reloads, bus, debounce=debounce)
    return router, state, reloads, notes


def test_change_event_accepts_both_payload_shapes():
    local = ChangeEvent.from_payload("transactions", {"eventType": "INSERT", "new": {"id": "t1"}, "old": {}})
    remote = ChangeEvent.from_payload(
        "transactions", {"data": {"type": "DELETE", "record": None, "old_record": {"id": "t1"}}}
    )

    assert (local.change, local.new, local.old) == ("insert", {"id": "t1"}, None)
    assert (remote.change, remote.new, remote.old) == ("delete", None, {"id": "t1"})


@pytest.mark.asyncio
async def test_insert_is_patched_in_before_reload():
    router, state, reloads, notes = make_router()

    router.on_event("transactions", "insert", new={
        "id": "t2", "budget_id": "flat", "date": "2025-09-03", "amount": 7, "type": "expense",
        "user": {"display_name": "Alex"},
    })

    assert [t.id for t in state.get().transactions] == ["t2", "t1"]
    # no category on the realtime row: falls back to "Other"
    assert state.get().transactions[0].category_id == "oth"
    assert notes == ["Alex added a transaction"]
    assert router.pending

    await router.wait_idle()
    assert reloads.calls == 1


@pytest.mark.asyncio
async def test_update_keeps_resolved_user_name():
    router, state, _, notes = make_router()

    router.on_event("transactions", "update", new={"id": "t1", "budget_id": "flat", "amount": 12, "type": "expense"})
    await router.wait_idle()

    tx = state.get().transactions[0]
    assert tx.amount == 12.0
    assert tx.user_name == "Sam"
    assert notes == ["Transaction updated"]


@pytest.mark.asyncio
async def test_update_and_delete_of_unknown_rows_change_nothing():
    router, state, reloads, _ = make_router()
    before = state.get()

    router.on_event("transactions", "update", new={"id": "zz", "budget_id": "flat", "amount": 1})
    router.on_event("transactions", "delete", old={"id": "zz", "budget_id": "flat"})

    assert state.get() is before
    await router.wait_idle()
    assert reloads.calls == 1


@pytest.mark.asyncio
async def test_delete_removes_transaction():
    router, state, _, notes = make_router()

    router.on_event("transactions", "delete", old={"id": "t1", "budget_id": "flat"})
    await router.wait_idle()

    assert state.get().transactions == ()
    assert notes == ["Transaction deleted"]


@pytest.mark.asyncio
async def test_burst_of_events_triggers_one_reload():
    router, _, reloads, notes = make_router(debounce=0.02)

    for i in range(5):
        router.on_event("categories", "update", new={"id": f"c{i}", "budget_id": "flat"})
    await router.wait_idle()

    assert reloads.calls == 1
    assert notes == ["Categories updated"] * 5


@pytest.mark.asyncio
async def test_events_for_other_budgets_are_dropped():
    router, state, reloads, notes = make_router()
    before = state.get()

    router.on_event("transactions", "insert", new={"id": "x", "budget_id": "elsewhere", "amount": 3})

    assert state.get() is before
    assert not router.pending
    assert notes == []
    assert reloads.calls == 0


@pytest.mark.asyncio
async def test_cancel_drops_pending_reload():
    router, _, reloads, _ = make_router(debounce=0.05)

    router.on_event("debts", "insert", new={"id": "d1", "budget_id": "flat"})
    router.cancel()
    await router.wait_idle()

    assert reloads.calls == 0


@pytest.mark.asyncio
async def test_fast_patch_and_reload_agree_on_core_fields():
    store = LocalStore(seed={
        "budgets": [{"id": "flat", "name": "Flat", "type": "shared"}],
        "members": [{"id": "m1", "budget_id": "flat", "user_id": "u1"}],
        "rows": {"categories": [{"id": "oth", "budget_id": "flat", "name": "Other"}]},
    })
    controller = BudgetSessionController(store, debounce=0.01)
    await controller.start("u1")
    assert controller.session.current_budget_id == "flat"

    await store.create(TRANSACTIONS, "flat", {
        "id": "t9", "date": "2025-09-05", "description": "Pizza", "amount": 18.5, "type": "expense",
    })
    patched = controller.state.get().transactions[0]
    await controller.router.wait_idle()
    reloaded = controller.state.get().transactions[0]

    assert patched.id == reloaded.id == "t9"
    assert (patched.amount, patched.type, patched.date) == (reloaded.amount, reloaded.type, reloaded.date)
    assert reloaded.category_id == "oth"


@pytest.mark.asyncio
async def test_failed_reload_is_reported():
    router, _, _, notes = make_router()

    async def broken():
        raise OSError("offline")

    router._reconcile = broken
    router.on_event("accounts", "update", new={"id": "a1", "budget_id": "flat"})
    await router.wait_idle()

    assert notes == ["Accounts updated", "Could not refresh this budget. Please reload."]
