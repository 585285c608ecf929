import asyncio
import logging

import pytest

from budgetsync import config
from budgetsync.domain import Budget
from budgetsync.errors import ErrorKind, StoreError, StoreUnavailableError, TransformError
from budgetsync.events import RENDER, EventBus
from budgetsync.functional import Left, Right
from budgetsync.reconcile import ReconciliationEngine
from budgetsync.session import SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.stores import CATEGORIES, DEBTS, TRANSACTIONS, LocalStore


def make_store(**rows):
    return LocalStore(seed={
        "budgets": [
            {"id": "home", "name": "Home", "type": "personal"},
            {"id": "flat", "name": "Flat", "type": "shared"},
        ],
        "members": [
            {"id": "m1", "budget_id": "home", "user_id": "u1"},
            {"id": "m2", "budget_id": "flat", "user_id": "u1"},
        ],
        "rows": rows,
    })


def make_engine(store, current="home"):
    session = SessionState(user_id="u1", current_budget=Budget(id=current, name=current.title()))
    state = ActiveDataStore()
    bus = EventBus()
    return ReconciliationEngine(store, state, session, bus), session, state, bus


class GatedStore(LocalStore):
    """LocalStore whose list calls for a budget wait until its gate opens."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gates = {}

    async def list(self, table, budget_id):
        gate = self.gates.get(budget_id)
        if gate is not None:
            await gate.wait()
        return await super().list(table, budget_id)


class HiddenCategoriesStore(LocalStore):
    """Inserts collide with rows the reader is not allowed to see."""

    async def list(self, table, budget_id):
        if table == CATEGORIES:
            return Right([])
        return await super().list(table, budget_id)

    async def create(self, table, budget_id, fields):
        if table == CATEGORIES:
            return Left(StoreError(ErrorKind.CONFLICT, "duplicate key", code="23505", status=409))
        return await super().create(table, budget_id, fields)


class FlakyStore(LocalStore):
    def __init__(self, *args, failing=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set(failing)

    async def list(self, table, budget_id):
        if table in self.failing:
            raise OSError(f"{table} unreachable")
        return await super().list(table, budget_id)


class DownStore(LocalStore):
    async def list(self, table, budget_id):
        return Left(StoreError(ErrorKind.TRANSIENT, "service unavailable", status=503))


TXS = [
    {"id": "t1", "budget_id": "home", "date": "2025-09-01", "amount": 20, "type": "expense", "category_id": "food"},
    {"id": "t2", "budget_id": "flat", "date": "2025-09-02", "amount": 99, "type": "expense"},
]
CATS = [
    {"id": "food", "budget_id": "home", "name": "Food", "display_order": 0},
    {"id": "oth", "budget_id": "home", "name": "Other", "display_order": 1},
    {"id": "misc", "budget_id": "flat", "name": "Other", "display_order": 0},
]


@pytest.mark.asyncio
async def test_reconcile_commits_snapshot_and_renders():
    store = make_store(transactions=TXS, categories=CATS)
    engine, session, state, bus = make_engine(store)
    renders = []
    bus.subscribe(RENDER, lambda e, p: renders.append(e))

    committed = await engine.reconcile()

    assert committed is True
    assert state.active_scope == "home"
    snapshot = state.get()
    assert [t.id for t in snapshot.transactions] == ["t1"]
    assert [c.id for c in snapshot.categories] == ["food", "oth"]
    assert len(renders) == 1


@pytest.mark.asyncio
async def test_reconcile_without_budget_is_skipped():
    engine, session, state, _ = make_engine(make_store())
    session.current_budget = None
    assert await engine.reconcile() is False
    assert state.active_scope is None


@pytest.mark.asyncio
async def test_empty_budget_gets_default_categories_once():
    store = make_store()
    engine, _, state, _ = make_engine(store)

    await engine.reconcile()
    await engine.reconcile()

    names = sorted(c.name for c in state.get().categories)
    assert names == sorted(t["name"] for t in config.DEFAULT_CATEGORIES)
    listed = (await store.list(CATEGORIES, "home")).get_or_else([])
    assert len(listed) == len(config.DEFAULT_CATEGORIES)


@pytest.mark.asyncio
async def test_racing_seeds_leave_one_category_per_template():
    store = make_store()
    first, _, _, _ = make_engine(store)
    second, _, _, _ = make_engine(store)

    await asyncio.gather(first.seed_default_categories("home"), second.seed_default_categories("home"))
    await first.seed_default_categories("home")

    listed = (await store.list(CATEGORIES, "home")).get_or_else([])
    names = [r["name"] for r in listed]
    assert sorted(names) == sorted(t["name"] for t in config.DEFAULT_CATEGORIES)


@pytest.mark.asyncio
async def test_seed_conflicts_without_visible_rows_log_permission_warning(caplog):
    store = HiddenCategoriesStore(seed={"budgets": [{"id": "home", "name": "Home"}]})
    engine, _, state, _ = make_engine(store)

    with caplog.at_level(logging.WARNING, logger="budgetsync.reconcile"):
        committed = await engine.reconcile()

    assert committed is True
    assert "SELECT permission" in caplog.text
    # the dashboard still gets the in-memory defaults
    assert [c.id for c in state.get().categories] == [t["id"] for t in config.DEFAULT_CATEGORIES]
    assert "home" in engine.seed_attempted


@pytest.mark.asyncio
async def test_superseded_pass_never_reaches_the_store():
    store = GatedStore(seed={
        "budgets": [{"id": "home", "name": "Home"}, {"id": "flat", "name": "Flat", "type": "shared"}],
        "rows": {"transactions": TXS, "categories": CATS},
    })
    engine, session, state, _ = make_engine(store, current="home")
    store.gates["home"] = asyncio.Event()

    slow = asyncio.ensure_future(engine.reconcile("home"))
    await asyncio.sleep(0)
    session.current_budget = Budget(id="flat", name="Flat", type="shared")
    assert await engine.reconcile("flat") is True

    store.gates["home"].set()
    assert await slow is False

    assert state.active_scope == "flat"
    assert [t.id for t in state.get().transactions] == ["t2"]
    assert state.get("home").transactions == ()


@pytest.mark.asyncio
async def test_failed_collection_loads_as_empty():
    store = FlakyStore(
        seed={"budgets": [{"id": "home", "name": "Home"}], "rows": {"transactions": TXS, "categories": CATS}},
        failing={DEBTS},
    )
    engine, _, state, _ = make_engine(store)

    assert await engine.reconcile() is True

    assert state.get().debts == ()
    assert [t.id for t in state.get().transactions] == ["t1"]


@pytest.mark.asyncio
async def test_all_collections_failing_raises():
    engine, _, state, _ = make_engine(DownStore())

    with pytest.raises(StoreUnavailableError) as info:
        await engine.reconcile()

    assert info.value.budget_id == "home"
    assert state.active_scope is None


@pytest.mark.asyncio
async def test_malformed_row_keeps_previous_snapshot():
    store = make_store(transactions=TXS, categories=CATS)
    engine, _, state, _ = make_engine(store)
    await engine.reconcile()

    store.rows[TRANSACTIONS].append({"budget_id": "home", "amount": 5})
    with pytest.raises(TransformError):
        await engine.reconcile()

    assert [t.id for t in state.get().transactions] == ["t1"]


@pytest.mark.asyncio
async def test_reload_keeps_last_import_batch():
    store = make_store(transactions=TXS, categories=CATS)
    engine, _, state, _ = make_engine(store)
    await engine.reconcile()
    state.set(last_import_batch_ids=["t1"])

    await engine.reconcile()

    assert state.get().last_import_batch_ids == ("t1",)
