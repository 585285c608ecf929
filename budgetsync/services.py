import logging
import math
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from budgetsync.domain import ACCOUNT_TYPES, CREDIT_CARD, EXPENSE, INCOME, Account, Category
from budgetsync.errors import ErrorKind, StoreError
from budgetsync.events import TAG_ERROR, TAG_UPDATE, EventBus
from budgetsync.functional import Either, Left, Right
from budgetsync.session import SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.stores import ACCOUNTS, CATEGORIES, TRANSACTIONS, Store

logger = logging.getLogger(__name__)

Reload = Callable[[], Awaitable[Any]]


def _failure(error: str, message: str, **extra) -> Left:
    return Left({"error": error, "message": message, **extra})


def _store_failure(error: StoreError) -> Left:
    return _failure(error.kind.value, error.message or error.kind.value)


def validate_account(name: str, type: str, balance: Any, credit_limit: Optional[float] = None) -> Either[dict, dict]:
    name = (name or "").strip()
    if not name:
        return _failure("name_required", "Account name is required")
    if type not in ACCOUNT_TYPES:
        return _failure("invalid_type", f"Unknown account type {type!r}", type=type)
    try:
        balance = float(balance or 0)
    except (TypeError, ValueError):
        return _failure("invalid_balance", "Balance must be a number", balance=balance)

    if type == CREDIT_CARD:
        if credit_limit is None or credit_limit <= 0:
            return _failure("credit_limit_required", "Credit limit is required for credit card accounts")
    elif credit_limit is not None:
        return _failure("credit_limit_not_allowed", "Only credit card accounts have a credit limit", type=type)

    return Right({
        "name": name,
        "type": type,
        "current_balance": balance,
        "credit_limit": credit_limit if type == CREDIT_CARD else None,
    })


def validate_category_name(name: str, categories: Iterable[Category], editing_id: Optional[str] = None) -> Either[dict, str]:
    name = (name or "").strip()
    if not name:
        return _failure("name_required", "Category name is required")
    lowered = name.lower()
    if any(c.name.lower() == lowered and c.id != editing_id for c in categories):
        return _failure("duplicate_name", f'A category named "{name}" already exists', name=name)
    return Right(name)


def _description_given(fields: dict) -> Either[dict, dict]:
    description = str(fields.get("description") or "").strip()
    if not description:
        return _failure("description_required", "Description is required")
    return Right({**fields, "description": description})


def _amount_positive(fields: dict) -> Either[dict, dict]:
    try:
        amount = float(fields.get("amount"))
    except (TypeError, ValueError):
        return _failure("invalid_amount", "Amount must be a number", amount=fields.get("amount"))
    if not math.isfinite(amount) or amount <= 0:
        return _failure("invalid_amount", "Amount must be greater than zero", amount=amount)
    return Right({**fields, "amount": amount})


def _known_type(fields: dict) -> Either[dict, dict]:
    if fields.get("type") not in (INCOME, EXPENSE):
        return _failure("invalid_type", f"Unknown transaction type {fields.get('type')!r}", type=fields.get("type"))
    return Right(fields)


def validate_transaction(fields: dict, categories: Iterable[Category],
                         accounts: Iterable[Account] = ()) -> Either[dict, dict]:
    """Check a new transaction against the active budget's categories and accounts."""
    category_ids = {c.id for c in categories}
    account_ids = {a.id for a in accounts}

    def category_exists(checked: dict) -> Either[dict, dict]:
        category_id = checked.get("category_id")
        if category_id is not None and category_id not in category_ids:
            return _failure("category_not_found", f"Category with ID {category_id} does not exist",
                            category_id=category_id)
        return Right(checked)

    def account_exists(checked: dict) -> Either[dict, dict]:
        account_id = checked.get("account_id")
        if account_id is not None and account_id not in account_ids:
            return _failure("account_not_found", f"Account with ID {account_id} does not exist",
                            account_id=account_id)
        return Right(checked)

    return (
        Right(dict(fields))
        .bind(_description_given)
        .bind(_amount_positive)
        .bind(_known_type)
        .bind(category_exists)
        .bind(account_exists)
    )


def fallback_category(categories: Iterable[Any], excluding: Optional[str] = None) -> Optional[Any]:
    """The category orphaned transactions move to: "Other" if present, else the first one left."""
    remaining = [c for c in categories if _id(c) != excluding]
    exact = next((c for c in remaining if _name(c).lower() == "other"), None)
    return exact or (remaining[0] if remaining else None)


def _id(item: Any):
    return item.get("id") if isinstance(item, dict) else item.id


def _name(item: Any) -> str:
    return str((item.get("name") if isinstance(item, dict) else item.name) or "")


class _BudgetService:
    def __init__(self, store: Store, session: SessionState, state: ActiveDataStore, reload: Reload, bus: EventBus):
        self.store = store
        self.session = session
        self.state = state
        self.reload = reload
        self.bus = bus

    def _budget_id(self) -> Either[dict, str]:
        budget_id = self.session.current_budget_id
        if budget_id is None:
            return _failure("no_budget", "No budget selected")
        return Right(budget_id)

    def _report(self, result: Either, success: str = "") -> Either:
        if result.is_left():
            self.bus.notify(f"Error: {result.get_error()['message']}", TAG_ERROR)
        else:
            self.bus.notify(success, TAG_UPDATE)
        return result

    async def _rows(self, table: str, budget_id: str) -> Either[dict, List[dict]]:
        result = await self.store.list(table, budget_id)
        return _store_failure(result.get_error()) if result.is_left() else result


class CategoryService(_BudgetService):

    async def create(self, name: str, color: str = "#94a3b8", monthly_budget: float = 0) -> Either[dict, dict]:
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        checked = validate_category_name(name, self.state.get().categories)
        if checked.is_left():
            return self._report(checked)

        order = len(self.state.get().categories)
        result = await self.store.create(CATEGORIES, budget_id.get_or_else(None), {
            "name": checked.get_or_else(name), "color": color,
            "monthly_budget": monthly_budget or 0, "display_order": order,
        })
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(result, "Category added")

    async def update(self, category_id: str, **fields) -> Either[dict, dict]:
        if "name" in fields:
            checked = validate_category_name(fields["name"], self.state.get().categories, editing_id=category_id)
            if checked.is_left():
                return self._report(checked)
            fields["name"] = checked.get_or_else(fields["name"])
        result = await self.store.update(CATEGORIES, category_id, fields)
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(result, "Category updated")

    async def delete(self, category_id: str) -> Either[dict, str]:
        """Delete a category, moving its transactions to the fallback category first."""
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        budget_id = budget_id.get_or_else(None)

        categories = await self._rows(CATEGORIES, budget_id)
        if categories.is_left():
            return self._report(categories)
        categories = categories.get_or_else([])
        if len(categories) <= 1:
            return self._report(_failure("last_category", "Cannot delete the last category"))

        fallback = fallback_category(categories, excluding=category_id)
        if fallback is None:
            return self._report(_failure("no_fallback", "Cannot delete category: no fallback category found"))

        transactions = await self._rows(TRANSACTIONS, budget_id)
        if transactions.is_left():
            return self._report(transactions)
        for tx in transactions.get_or_else([]):
            if tx.get("category_id") == category_id:
                moved = await self.store.update(TRANSACTIONS, tx["id"], {"category_id": _id(fallback)})
                if moved.is_left():
                    logger.error("could not move transaction %s: %s", tx["id"], moved.get_error())
                    return self._report(_store_failure(moved.get_error()))

        result = await self.store.delete(CATEGORIES, category_id)
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(Right(_id(fallback)), "Category deleted")


class AccountService(_BudgetService):

    async def create(self, name: str, type: str, balance: float = 0,
                     credit_limit: Optional[float] = None) -> Either[dict, dict]:
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        fields = validate_account(name, type, balance, credit_limit)
        if fields.is_left():
            return self._report(fields)
        result = await self.store.create(ACCOUNTS, budget_id.get_or_else(None), fields.get_or_else({}))
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(result, "Account added")

    async def update(self, account_id: str, name: str, type: str, balance: float = 0,
                     credit_limit: Optional[float] = None) -> Either[dict, dict]:
        fields = validate_account(name, type, balance, credit_limit)
        if fields.is_left():
            return self._report(fields)
        result = await self.store.update(ACCOUNTS, account_id, fields.get_or_else({}))
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(result, "Account updated")

    async def delete(self, account_id: str) -> Either[dict, None]:
        """Delete an account; its transactions stay, unlinked."""
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        transactions = await self._rows(TRANSACTIONS, budget_id.get_or_else(None))
        if transactions.is_left():
            return self._report(transactions)
        for tx in transactions.get_or_else([]):
            if tx.get("account_id") == account_id:
                unlinked = await self.store.update(TRANSACTIONS, tx["id"], {"account_id": None})
                if unlinked.is_left():
                    return self._report(_store_failure(unlinked.get_error()))

        result = await self.store.delete(ACCOUNTS, account_id)
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(Right(None), "Account deleted")


class TransactionService(_BudgetService):

    async def create(self, fields: dict) -> Either[dict, dict]:
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        snapshot = self.state.get()
        checked = validate_transaction(fields, snapshot.categories, snapshot.accounts)
        if checked.is_left():
            return self._report(checked)
        result = await self.store.create(TRANSACTIONS, budget_id.get_or_else(None), checked.get_or_else({}))
        if result.is_left():
            return self._report(_store_failure(result.get_error()))
        await self.reload()
        return self._report(result, "Transaction added")

    async def import_transactions(self, rows: Iterable[dict]) -> Either[dict, List[str]]:
        """Create bank-imported rows, skipping any whose plaid_id is already stored.

        The new ids are remembered so the batch can be undone.
        """
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        budget_id = budget_id.get_or_else(None)

        existing = await self._rows(TRANSACTIONS, budget_id)
        if existing.is_left():
            return self._report(existing)
        seen = {r.get("plaid_id") for r in existing.get_or_else([]) if r.get("plaid_id")}

        created: List[str] = []
        for row in rows:
            external_id = row.get("plaid_id") or row.get("external_id")
            if external_id and external_id in seen:
                continue
            fields = {k: v for k, v in row.items() if k != "external_id"}
            if external_id:
                fields["plaid_id"] = external_id
                seen.add(external_id)
            result = await self.store.create(TRANSACTIONS, budget_id, fields)
            if result.is_left():
                logger.error("import stopped after %d rows: %s", len(created), result.get_error())
                return self._report(_store_failure(result.get_error()))
            created.append(result.get_or_else({})["id"])

        if budget_id not in self.session.removed_budget_ids:
            self.state.set_scope(budget_id, last_import_batch_ids=created)
        await self.reload()
        return self._report(Right(created), f"Imported {len(created)} transactions")

    async def undo_last_import(self) -> Either[dict, int]:
        budget_id = self._budget_id()
        if budget_id.is_left():
            return self._report(budget_id)
        budget_id = budget_id.get_or_else(None)

        batch = self.state.get(budget_id).last_import_batch_ids
        if not batch:
            return self._report(_failure("nothing_to_undo", "No import to undo"))
        removed = 0
        for tx_id in batch:
            result = await self.store.delete(TRANSACTIONS, tx_id)
            if result.is_right():
                removed += 1
            elif result.get_error().kind is not ErrorKind.NOT_FOUND:
                return self._report(_store_failure(result.get_error()))
        # the user may have switched budgets while the deletes ran
        if budget_id not in self.session.removed_budget_ids and self.state.get(budget_id).last_import_batch_ids == batch:
            self.state.set_scope(budget_id, last_import_batch_ids=())
        await self.reload()
        return self._report(Right(removed), f"Removed {removed} imported transactions")
