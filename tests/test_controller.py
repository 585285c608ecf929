import asyncio
import threading

import pytest

from budgetsync import config
from budgetsync.controller import BudgetSessionController, to_budget
from budgetsync.errors import ErrorKind, StoreError, StoreUnavailableError
from budgetsync.events import NOTIFY, TAG_ACCESS_REMOVED, TAG_BUDGET_CHANGED, TAG_ERROR
from budgetsync.functional import Left
from budgetsync.session import SessionPhase
from budgetsync.stores import TRANSACTIONS, LocalStore


def make_store(cls=LocalStore):
    return cls(seed={
        "budgets": [
            {"id": "home", "name": "Home", "type": "personal"},
            {"id": "flat", "name": "Flat", "type": "shared"},
            {"id": "trip", "name": "Trip", "type": "shared"},
        ],
        "members": [
            {"id": "m1", "budget_id": "home", "user_id": "u1"},
            {"id": "m2", "budget_id": "flat", "user_id": "u1"},
            {"id": "m3", "budget_id": "trip", "user_id": "u1"},
        ],
        "rows": {
            "categories": [
                {"id": "h-oth", "budget_id": "home", "name": "Other"},
                {"id": "f-oth", "budget_id": "flat", "name": "Other"},
                {"id": "t-oth", "budget_id": "trip", "name": "Other"},
            ],
            "transactions": [
                {"id": "h1", "budget_id": "home", "date": "2025-09-01", "amount": 5, "type": "expense"},
                {"id": "f1", "budget_id": "flat", "date": "2025-09-01", "amount": 50, "type": "expense"},
                {"id": "p1", "budget_id": "trip", "date": "2025-09-01", "amount": 500, "type": "expense"},
            ],
        },
    })


class GatedStore(LocalStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gates = {}

    async def list(self, table, budget_id):
        gate = self.gates.get(budget_id)
        if gate is not None:
            await gate.wait()
        return await super().list(table, budget_id)


class BrokenTripStore(LocalStore):
    async def list(self, table, budget_id):
        if budget_id == "trip":
            return Left(StoreError(ErrorKind.TRANSIENT, "timeout", status=504))
        return await super().list(table, budget_id)


class FlakyStore(LocalStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set()

    async def list(self, table, budget_id):
        if budget_id in self.failing:
            return Left(StoreError(ErrorKind.TRANSIENT, "unavailable", status=503))
        return await super().list(table, budget_id)


def listeners(store, channel):
    return store.bus._subscribers.get(channel, [])


async def started(store, debounce=0.01):
    controller = BudgetSessionController(store, debounce=debounce)
    notes = []
    controller.bus.subscribe(NOTIFY, lambda e, p: notes.append((p["message"], p["tag"])))
    await controller.start("u1")
    return controller, notes


def test_to_budget_defaults_type():
    budget = to_budget({"id": 3, "name": "Ours"})
    assert budget.id == "3"
    assert budget.type == "personal"
    assert not budget.is_shared


@pytest.mark.asyncio
async def test_start_prefers_personal_budget():
    controller, notes = await started(make_store())

    assert controller.session.current_budget_id == "home"
    assert controller.session.phase is SessionPhase.READY
    assert [t.id for t in controller.state.get().transactions] == ["h1"]
    assert ("Switched to Home", TAG_BUDGET_CHANGED) in notes
    # personal budgets only keep the membership channel
    assert set(controller.session.channels) == {config.MY_MEMBERSHIP}


@pytest.mark.asyncio
async def test_shared_budget_subscribes_every_kind_and_unsubscribes_on_switch():
    store = make_store()
    controller, _ = await started(store)

    assert await controller.activate_budget("flat") is True
    assert set(controller.session.channels) == {config.MY_MEMBERSHIP, *config.REALTIME_KINDS}
    assert controller.session.subscribed_budget_id == "flat"
    assert len(listeners(store, "transactions:flat")) == 1

    assert await controller.activate_budget("home") is True
    assert set(controller.session.channels) == {config.MY_MEMBERSHIP}
    assert controller.session.subscribed_budget_id is None
    assert listeners(store, "transactions:flat") == []
    assert len(listeners(store, "my_membership:u1")) == 1


@pytest.mark.asyncio
async def test_reactivating_shared_budget_does_not_duplicate_channels():
    store = make_store()
    controller, _ = await started(store)

    await controller.activate_budget("flat")
    await controller.activate_budget("flat")

    assert len(listeners(store, "transactions:flat")) == 1
    assert len(listeners(store, "savings_goals:flat")) == 1


@pytest.mark.asyncio
async def test_unknown_budget_is_refused():
    controller, notes = await started(make_store())

    assert await controller.activate_budget("nope") is False
    assert controller.session.current_budget_id == "home"
    assert notes[-1] == ("That budget is not available.", TAG_ERROR)


@pytest.mark.asyncio
async def test_rapid_switches_keep_only_the_last_budget():
    store = make_store(GatedStore)
    controller, _ = await started(store)
    store.gates["flat"] = asyncio.Event()

    first = asyncio.ensure_future(controller.activate_budget("flat"))
    await asyncio.sleep(0)
    assert await controller.activate_budget("trip") is True
    store.gates["flat"].set()

    assert await first is False
    assert controller.session.current_budget_id == "trip"
    assert controller.state.active_scope == "trip"
    assert [t.id for t in controller.state.get().transactions] == ["p1"]
    assert controller.state.get("flat").transactions == ()
    assert controller.session.subscribed_budget_id == "trip"


@pytest.mark.asyncio
async def test_failed_activation_restores_previous_budget():
    controller, notes = await started(make_store(BrokenTripStore))

    with pytest.raises(StoreUnavailableError):
        await controller.activate_budget("trip")

    assert controller.session.current_budget_id == "home"
    assert controller.session.phase is SessionPhase.READY
    assert controller.state.active_scope == "home"
    assert notes[-1] == ("Could not load Trip. Please try again.", TAG_ERROR)


@pytest.mark.asyncio
async def test_removed_from_active_shared_budget():
    store = make_store()
    controller, notes = await started(store)
    await controller.activate_budget("flat")

    store.remove_member("flat", "u1")
    await controller.router.wait_idle()

    assert ("You were removed from Flat.", TAG_ACCESS_REMOVED) in notes
    assert controller.session.user_id == "u1"
    assert controller.session.current_budget_id == "home"
    assert "flat" in controller.session.removed_budget_ids
    assert all(b.id != "flat" for b in controller.session.budgets)
    assert controller.state.get("flat").transactions == ()
    assert await controller.activate_budget("flat") is False


@pytest.mark.asyncio
async def test_removed_budget_stays_closed_when_fallback_fails():
    store = make_store(FlakyStore)
    controller, notes = await started(store)
    await controller.activate_budget("flat")
    store.failing = {"home"}

    store.remove_member("flat", "u1")
    await controller.router.wait_idle()

    assert ("Could not load Home. Please try again.", TAG_ERROR) in notes
    assert controller.session.current_budget is None
    assert controller.session.phase is SessionPhase.UNSELECTED
    assert controller.state.active_scope is None
    assert set(controller.session.channels) == {config.MY_MEMBERSHIP}
    assert listeners(store, "transactions:flat") == []
    # later events for the removed budget go nowhere
    await store.create(TRANSACTIONS, "flat", {"id": "late", "amount": 1, "type": "expense"})
    assert not controller.router.pending

    store.failing = set()
    await controller.refresh_budgets()
    assert controller.session.current_budget_id == "home"


@pytest.mark.asyncio
async def test_rejoining_a_budget_makes_it_available_again():
    store = make_store()
    controller, _ = await started(store)
    store.remove_member("trip", "u1")
    await controller.router.wait_idle()
    assert "trip" in controller.session.removed_budget_ids

    store.add_member("trip", "u1")
    await controller.router.wait_idle()

    assert "trip" not in controller.session.removed_budget_ids
    assert await controller.activate_budget("trip") is True


@pytest.mark.asyncio
async def test_budget_turned_shared_opens_channels():
    store = make_store()
    controller, _ = await started(store)
    store.budgets[0]["type"] = "shared"

    await controller.refresh_budgets()

    assert controller.session.current_budget.is_shared
    assert controller.session.subscribed_budget_id == "home"


@pytest.mark.asyncio
async def test_realtime_reload_finishes_a_superseded_activation():
    controller, _ = await started(make_store())
    controller.session.phase = SessionPhase.LOADING

    assert await controller.reload() is True
    assert controller.session.phase is SessionPhase.READY


@pytest.mark.asyncio
async def test_stop_releases_every_channel():
    store = make_store()
    controller, _ = await started(store)
    await controller.activate_budget("flat")

    await controller.stop()

    assert controller.session.channels == {}
    assert controller.session.user_id is None
    assert controller.session.current_budget is None
    assert listeners(store, "my_membership:u1") == []
    assert listeners(store, "transactions:flat") == []
    # writes after sign-out reach nobody
    before = controller.state.get("flat")
    await store.create(TRANSACTIONS, "flat", {"id": "late", "amount": 1, "type": "expense"})
    assert controller.state.get("flat") is before
    assert not controller.router.pending


def test_session_on_a_background_loop_outlives_each_call():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()

    def run(coro):
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=5)

    store = make_store()
    controller, _ = run(started(store))
    try:
        run(controller.activate_budget("flat"))
        # each call stands in for a separate script run on the same loop
        run(store.create(TRANSACTIONS, "flat", {"id": "f9", "date": "2025-09-09", "amount": 9, "type": "expense"}))
        run(controller.router.wait_idle())

        assert len(listeners(store, "transactions:flat")) == 1
        assert "f9" in {t.id for t in controller.state.get().transactions}
    finally:
        run(controller.stop())
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        loop.close()
