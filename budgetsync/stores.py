import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional
from uuid import uuid4

from budgetsync.errors import ErrorKind, StoreError
from budgetsync.events import EventBus
from budgetsync.functional import Either, Left, Right
from budgetsync.transforms import load_seed

logger = logging.getLogger(__name__)

TRANSACTIONS = "transactions"
CATEGORIES = "categories"
ACCOUNTS = "accounts"
SAVINGS_GOALS = "savings_goals"
FINANCIAL_GOALS = "financial_goals"
DEBTS = "debts"
RECURRING = "recurring_transactions"
MEMBERS = "budget_members"

TABLES = (TRANSACTIONS, CATEGORIES, ACCOUNTS, SAVINGS_GOALS, FINANCIAL_GOALS, DEBTS, RECURRING, MEMBERS)

# realtime channel kind -> tables it listens to
REALTIME_TABLES = {
    "transactions": (TRANSACTIONS,),
    "members": (MEMBERS,),
    "categories": (CATEGORIES,),
    "goals": (SAVINGS_GOALS, FINANCIAL_GOALS),
    "debts": (DEBTS,),
    "recurring": (RECURRING,),
    "accounts": (ACCOUNTS,),
}

OnChange = Callable[[dict], Any]


class Subscription(NamedTuple):
    name: str
    channels: tuple
    handle: Any


class Store(ABC):
    """CRUD + subscribe access to one backend. Errors come back as Left(StoreError)."""

    @abstractmethod
    async def list(self, table: str, budget_id: str) -> Either[StoreError, List[dict]]:
        pass

    @abstractmethod
    async def create(self, table: str, budget_id: str, fields: dict) -> Either[StoreError, dict]:
        pass

    @abstractmethod
    async def update(self, table: str, record_id: str, fields: dict) -> Either[StoreError, dict]:
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> Either[StoreError, None]:
        pass

    @abstractmethod
    async def list_budgets(self, user_id: str) -> Either[StoreError, List[dict]]:
        pass

    @abstractmethod
    async def subscribe(self, kind: str, budget_id: str, on_change: OnChange) -> Subscription:
        pass

    @abstractmethod
    async def subscribe_membership(self, user_id: str, on_change: OnChange) -> Subscription:
        pass

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        pass


def _conflict(message: str) -> StoreError:
    return StoreError(ErrorKind.CONFLICT, message, code="23505", status=409)


def _not_found(message: str) -> StoreError:
    return StoreError(ErrorKind.NOT_FOUND, message, code="PGRST116", status=404)


class LocalStore(Store):
    """Single-process store kept in memory and optionally mirrored to a JSON file.

    Changes are fanned out through an EventBus so subscribers get the same
    {"eventType", "new", "old"} payloads the remote backend sends.
    """

    def __init__(self, path: Optional[str] = None, seed: Optional[dict] = None):
        self.path = Path(path) if path else None
        self.bus = EventBus()
        self.budgets: List[dict] = []
        self.rows: Dict[str, List[dict]] = {t: [] for t in TABLES}

        if seed is None and self.path is not None and self.path.exists():
            seed = load_seed(str(self.path))
        if seed:
            self.budgets = [dict(b) for b in seed.get("budgets", [])]
            self.rows[MEMBERS] = [dict(m) for m in seed.get("members", [])]
            for table, rows in seed.get("rows", {}).items():
                self.rows.setdefault(table, []).extend(dict(r) for r in rows)

    # -- persistence

    def save(self) -> None:
        if self.path is None:
            return
        payload = {
            "budgets": self.budgets,
            "members": self.rows[MEMBERS],
            "rows": {t: rows for t, rows in self.rows.items() if t != MEMBERS},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self.path)

    def _table(self, table: str) -> List[dict]:
        if table not in self.rows:
            raise KeyError(f"unknown table {table}")
        return self.rows[table]

    def _find(self, table: str, record_id: str) -> Optional[dict]:
        return next((r for r in self._table(table) if r.get("id") == record_id), None)

    def _emit(self, table: str, event_type: str, new: Optional[dict], old: Optional[dict]) -> None:
        row = new or old or {}
        payload = {"eventType": event_type, "new": dict(new or {}), "old": dict(old or {})}
        self.bus.publish(f"{table}:{row.get('budget_id')}", payload)
        if table == MEMBERS:
            self.bus.publish(f"my_membership:{row.get('user_id')}", payload)

    # -- budgets and members

    def add_budget(self, name: str, budget_type: str = "personal", owner_id: Optional[str] = None,
                   budget_id: Optional[str] = None) -> dict:
        budget = {"id": budget_id or str(uuid4()), "name": name, "type": budget_type, "owner_id": owner_id}
        self.budgets.append(budget)
        if owner_id:
            self.rows[MEMBERS].append(
                {"id": str(uuid4()), "budget_id": budget["id"], "user_id": owner_id, "role": "owner"}
            )
        self.save()
        return budget

    def add_member(self, budget_id: str, user_id: str, role: str = "member") -> dict:
        member = {"id": str(uuid4()), "budget_id": budget_id, "user_id": user_id, "role": role}
        self.rows[MEMBERS].append(member)
        self.save()
        self._emit(MEMBERS, "INSERT", member, None)
        return member

    def remove_member(self, budget_id: str, user_id: str) -> bool:
        for member in list(self.rows[MEMBERS]):
            if member["budget_id"] == budget_id and member["user_id"] == user_id:
                self.rows[MEMBERS].remove(member)
                self.save()
                self._emit(MEMBERS, "DELETE", None, member)
                return True
        return False

    async def list_budgets(self, user_id: str) -> Either[StoreError, List[dict]]:
        await asyncio.sleep(0)
        member_of = {m["budget_id"] for m in self.rows[MEMBERS] if m.get("user_id") == user_id}
        return Right([dict(b) for b in self.budgets if b["id"] in member_of or b.get("owner_id") == user_id])

    # -- CRUD

    async def list(self, table: str, budget_id: str) -> Either[StoreError, List[dict]]:
        await asyncio.sleep(0)
        rows = [dict(r) for r in self._table(table) if r.get("budget_id") == budget_id]
        if table == CATEGORIES:
            rows.sort(key=lambda r: (r.get("display_order", 0), str(r.get("name", "")).lower()))
        elif table == TRANSACTIONS:
            rows.sort(key=lambda r: str(r.get("date", "")), reverse=True)
        return Right(rows)

    async def create(self, table: str, budget_id: str, fields: dict) -> Either[StoreError, dict]:
        await asyncio.sleep(0)
        rows = self._table(table)
        if table == CATEGORIES:
            name = str(fields.get("name", "")).lower()
            if any(r.get("budget_id") == budget_id and str(r.get("name", "")).lower() == name for r in rows):
                return Left(_conflict('duplicate key value violates unique constraint "categories_budget_id_name_key"'))

        row = {**fields, "id": fields.get("id") or str(uuid4()), "budget_id": budget_id}
        if self._find(table, row["id"]) is not None:
            return Left(_conflict(f"{table} {row['id']} already exists"))
        rows.append(row)
        self.save()
        self._emit(table, "INSERT", row, None)
        return Right(dict(row))

    async def update(self, table: str, record_id: str, fields: dict) -> Either[StoreError, dict]:
        await asyncio.sleep(0)
        row = self._find(table, record_id)
        if row is None:
            return Left(_not_found(f"{table} {record_id} not found"))
        old = dict(row)
        row.update({k: v for k, v in fields.items() if k not in ("id", "budget_id")})
        self.save()
        self._emit(table, "UPDATE", row, old)
        return Right(dict(row))

    async def delete(self, table: str, record_id: str) -> Either[StoreError, None]:
        await asyncio.sleep(0)
        row = self._find(table, record_id)
        if row is None:
            return Left(_not_found(f"{table} {record_id} not found"))
        self._table(table).remove(row)
        if table == CATEGORIES:
            # ON DELETE SET NULL
            for dependent in (TRANSACTIONS, RECURRING):
                for r in self.rows[dependent]:
                    if r.get("category_id") == record_id:
                        r["category_id"] = None
        self.save()
        self._emit(table, "DELETE", None, row)
        return Right(None)

    # -- realtime

    def _listen(self, name: str, channels: tuple, on_change: OnChange) -> Subscription:
        def handler(event, payload):
            return on_change(payload)

        for channel in channels:
            self.bus.subscribe(channel, handler)
        return Subscription(name=name, channels=channels, handle=handler)

    async def subscribe(self, kind: str, budget_id: str, on_change: OnChange) -> Subscription:
        channels = tuple(f"{table}:{budget_id}" for table in REALTIME_TABLES[kind])
        return self._listen(f"{kind}:{budget_id}", channels, on_change)

    async def subscribe_membership(self, user_id: str, on_change: OnChange) -> Subscription:
        return self._listen(f"my-membership:{user_id}", (f"my_membership:{user_id}",), on_change)

    async def unsubscribe(self, subscription: Subscription) -> None:
        for channel in subscription.channels:
            self.bus.unsubscribe(channel, subscription.handle)
