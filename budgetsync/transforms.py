import json
import math
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Optional, Tuple

from budgetsync.domain import (
    Account, Category, CREDIT_CARD, Debt, EXPENSE, FinancialGoal, INCOME,
    RecurringTransaction, SavingsGoal, Transaction,
)
from budgetsync.errors import TransformError
from budgetsync.functional import Maybe, Nothing, maybe


def parse_amount(value: Any, default: float = 0.0) -> float:
    """Parse a numeric/decimal/text column into a float, never raising."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _require_row(kind: str, row: Any) -> Mapping:
    if not isinstance(row, Mapping):
        raise TransformError(kind, row, "row is not a mapping")
    if row.get("id") in (None, ""):
        raise TransformError(kind, row, "missing id")
    return row


def _nested_id(value: Any) -> Maybe[Any]:
    if isinstance(value, Mapping):
        return maybe(value.get("id"))
    return Nothing()


def find_other_category_id(categories: Iterable[Any]) -> Maybe[str]:
    """Id of the "Other" category: exact name first, then any name containing "other".

    Accepts both raw rows and Category records.
    """
    items = list(categories or ())

    def name_of(c):
        if isinstance(c, Mapping):
            return str(c.get("name") or "").lower()
        return str(getattr(c, "name", "") or "").lower()

    def id_of(c):
        return c.get("id") if isinstance(c, Mapping) else getattr(c, "id", None)

    for c in items:
        if name_of(c) == "other":
            return maybe(id_of(c))
    for c in items:
        if "other" in name_of(c):
            return maybe(id_of(c))
    return Nothing()


def resolve_category_id(row: Mapping, other_id: Optional[str]) -> Optional[str]:
    # explicit reference -> joined category -> cached "Other" -> None
    return (
        maybe(row.get("category_id"))
        .or_else(lambda: _nested_id(row.get("category")))
        .or_else(lambda: _nested_id(row.get("categories")))
        .or_else(lambda: maybe(other_id))
        .get_or_else(None)
    )


def _tx_type(value: Any) -> str:
    return value if value in (INCOME, EXPENSE) else EXPENSE


def _user_name(user: Any) -> Optional[str]:
    if not isinstance(user, Mapping):
        return None
    return user.get("display_name") or user.get("username") or None


def to_transaction(row: Mapping, other_id: Optional[str] = None) -> Transaction:
    row = _require_row("transaction", row)
    external_id = row.get("plaid_id") or row.get("external_id") or None
    return Transaction(
        id=str(row["id"]),
        date=str(row.get("date") or ""),
        description=str(row.get("description") or ""),
        amount=abs(parse_amount(row.get("amount"))),
        type=_tx_type(row.get("type")),
        category_id=resolve_category_id(row, other_id),
        account_id=row.get("account_id") or None,
        merchant=row.get("merchant") or None,
        note=row.get("notes") or row.get("note") or None,
        user_id=row.get("user_id") or None,
        user_name=_user_name(row.get("user")),
        origin="imported" if external_id else "manual",
        external_id=external_id,
    )


def to_local_transaction(row: Mapping, other_id: Optional[str] = None) -> Transaction:
    """Realtime payloads carry raw columns only, so joins resolve to nothing here."""
    flat = {k: v for k, v in row.items() if k not in ("category", "categories")}
    return to_transaction(flat, other_id)


def to_category(row: Mapping) -> Category:
    row = _require_row("category", row)
    return Category(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        color=row.get("color") or "#94a3b8",
        monthly_budget=parse_amount(row.get("monthly_budget")),
        order=int(parse_amount(row.get("display_order", row.get("order")))),
    )


def to_account(row: Mapping) -> Account:
    row = _require_row("account", row)
    acc_type = row.get("type") or "checking"
    credit_limit = None
    if acc_type == CREDIT_CARD:
        credit_limit = parse_amount(row.get("credit_limit"))
    return Account(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        type=acc_type,
        balance=parse_amount(row.get("current_balance", row.get("balance"))),
        credit_limit=credit_limit,
    )


def to_savings_goal(row: Mapping) -> SavingsGoal:
    row = _require_row("savings_goal", row)
    return SavingsGoal(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        target=parse_amount(row.get("target")),
        current=parse_amount(row.get("current")),
    )


def to_financial_goal(row: Mapping) -> FinancialGoal:
    row = _require_row("financial_goal", row)
    return FinancialGoal(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        type=row.get("type") or "savings",
        target=parse_amount(row.get("target")),
        current=parse_amount(row.get("current")),
        target_date=row.get("target_date") or None,
    )


def to_debt(row: Mapping) -> Debt:
    row = _require_row("debt", row)
    current = parse_amount(row.get("current_balance"))
    original = row.get("original_balance")
    return Debt(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        current_balance=current,
        original_balance=parse_amount(original, current) if original not in (None, "") else current,
        interest_rate=parse_amount(row.get("interest_rate")),
        min_payment=parse_amount(row.get("min_payment")),
        target_date=row.get("target_date") or None,
    )


def to_recurring(row: Mapping) -> RecurringTransaction:
    row = _require_row("recurring_transaction", row)
    category_id = (
        maybe(row.get("category_id"))
        .or_else(lambda: _nested_id(row.get("category")))
        .get_or_else("other")
    )
    return RecurringTransaction(
        id=str(row["id"]),
        description=str(row.get("description") or ""),
        amount=abs(parse_amount(row.get("amount"))),
        type=_tx_type(row.get("type")),
        category_id=category_id,
        frequency=row.get("frequency") or "monthly",
        next_date=row.get("next_date") or None,
    )


def default_category_records(templates: Iterable[Mapping]) -> Tuple[Category, ...]:
    """In-memory categories built straight from the default templates."""
    return tuple(
        Category(
            id=t["id"],
            name=t["name"],
            color=t.get("color", "#94a3b8"),
            monthly_budget=parse_amount(t.get("monthly_budget")),
            order=i,
        )
        for i, t in enumerate(templates)
    )


def load_seed(path: str) -> Dict[str, Any]:
    """Read a JSON seed file of raw rows: {"budgets": [...], "rows": {table: [...]}}."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {
        "budgets": list(data.get("budgets", [])),
        "members": list(data.get("members", [])),
        "rows": {table: list(rows) for table, rows in data.get("rows", {}).items()},
    }
