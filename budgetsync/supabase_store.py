# budgetsync/supabase_store.py
import logging
from typing import List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from budgetsync import config
from budgetsync.errors import ErrorKind, StoreError, store_error
from budgetsync.functional import Either, Left, Right
from budgetsync.stores import (
    CATEGORIES, MEMBERS, REALTIME_TABLES, TRANSACTIONS, OnChange, Store, Subscription,
)

logger = logging.getLogger(__name__)

# table -> (select clause, order column, descending)
_LIST_QUERIES = {
    TRANSACTIONS: ("*, categories(*)", "date", True),
    CATEGORIES: ("*", "name", False),
}


async def get_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> AsyncClient:
    """Returns an async Supabase client for the configured project."""
    return await acreate_client(url or config.SUPABASE_URL, key or config.SUPABASE_KEY)


def _error_from(exc: Exception) -> StoreError:
    if isinstance(exc, APIError):
        code = getattr(exc, "code", None)
        status = 409 if code == "23505" else None
        return store_error(code=code, status=status, message=getattr(exc, "message", None) or str(exc))
    if isinstance(exc, httpx.HTTPStatusError):
        return store_error(status=exc.response.status_code, message=str(exc))
    if isinstance(exc, (httpx.HTTPError, OSError)):
        return StoreError(ErrorKind.TRANSIENT, str(exc))
    return StoreError(ErrorKind.UNKNOWN, str(exc))


class SupabaseStore(Store):
    """Store backed by the hosted Postgres tables and Supabase realtime."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def _execute(self, query) -> Either[StoreError, object]:
        try:
            response = await query.execute()
        except (APIError, httpx.HTTPError, OSError) as e:
            error = _error_from(e)
            logger.debug("supabase call failed: %s", error)
            return Left(error)
        return Right(response.data)

    async def _attach_users(self, rows: List[dict]) -> None:
        user_ids = sorted({r["user_id"] for r in rows if r.get("user_id")})
        if not user_ids:
            return
        users = await self._execute(
            self.client.table("profiles").select("id, display_name, username").in_("id", user_ids)
        )
        # missing profiles only cost us the display name
        by_id = {u["id"]: u for u in users.get_or_else([]) or []}
        for row in rows:
            if row.get("user_id") in by_id:
                row["user"] = by_id[row["user_id"]]

    async def list(self, table: str, budget_id: str) -> Either[StoreError, List[dict]]:
        select, order, desc = _LIST_QUERIES.get(table, ("*", "created_at", False))
        query = self.client.table(table).select(select).eq("budget_id", budget_id).order(order, desc=desc)
        result = await self._execute(query)
        if result.is_right() and table == TRANSACTIONS:
            await self._attach_users(result.get_or_else([]))
        return result.map(lambda data: list(data or []))

    async def create(self, table: str, budget_id: str, fields: dict) -> Either[StoreError, dict]:
        query = self.client.table(table).insert({**fields, "budget_id": budget_id})
        return (await self._execute(query)).map(lambda data: data[0] if data else {})

    async def update(self, table: str, record_id: str, fields: dict) -> Either[StoreError, dict]:
        query = self.client.table(table).update(fields).eq("id", record_id)
        result = await self._execute(query)
        if result.is_right() and not result.get_or_else(None):
            return Left(store_error(code="PGRST116", message=f"{table} {record_id} not found"))
        return result.map(lambda data: data[0])

    async def delete(self, table: str, record_id: str) -> Either[StoreError, None]:
        query = self.client.table(table).delete().eq("id", record_id)
        return (await self._execute(query)).map(lambda _: None)

    async def list_budgets(self, user_id: str) -> Either[StoreError, List[dict]]:
        query = self.client.table(MEMBERS).select("role, budgets(*)").eq("user_id", user_id)
        result = await self._execute(query)
        return result.map(
            lambda data: [{**m["budgets"], "role": m.get("role")} for m in data or [] if m.get("budgets")]
        )

    async def _channel(self, name: str, tables: tuple, column: str, value: str, on_change: OnChange):
        channel = self.client.channel(name)
        for table in tables:
            channel.on_postgres_changes(
                "*", schema="public", table=table, filter=f"{column}=eq.{value}", callback=on_change
            )
        await channel.subscribe()
        return channel

    async def subscribe(self, kind: str, budget_id: str, on_change: OnChange) -> Subscription:
        tables = REALTIME_TABLES[kind]
        name = f"{kind}:{budget_id}"
        channel = await self._channel(name, tables, "budget_id", budget_id, on_change)
        return Subscription(name=name, channels=tables, handle=channel)

    async def subscribe_membership(self, user_id: str, on_change: OnChange) -> Subscription:
        name = f"my-membership:{user_id}"
        channel = await self._channel(name, (MEMBERS,), "user_id", user_id, on_change)
        return Subscription(name=name, channels=(MEMBERS,), handle=channel)

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.client.remove_channel(subscription.handle)
