from collections import defaultdict
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import reduce
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from budgetsync import config
from budgetsync.domain import (
    Account, CHECKING, CREDIT_CARD, EXPENSE, INCOME, INVESTMENT, RecurringTransaction, SAVINGS, Snapshot,
)

ASSET_TYPES = (CHECKING, SAVINGS, INVESTMENT)

LOW = "low"
MEDIUM = "medium"
HIGH = "high"


def _money(value) -> Decimal:
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value or 0))


def _total(values: Iterable) -> Decimal:
    return reduce(lambda acc, v: acc + _money(v), values, Decimal("0"))


def _to_float(amount: Decimal) -> float:
    quantum = Decimal(1).scaleb(-config.CURRENCY_PLACES)
    return float(amount.quantize(quantum, rounding=ROUND_HALF_UP))


def _assets(snapshot: Snapshot) -> Decimal:
    return _total(a.balance for a in snapshot.accounts if a.type in ASSET_TYPES)


def _credit_card_debt(snapshot: Snapshot) -> Decimal:
    return _total(a.balance for a in snapshot.accounts if a.type == CREDIT_CARD)


def _total_debt(snapshot: Snapshot) -> Decimal:
    return _total(d.current_balance for d in snapshot.debts)


def assets(snapshot: Snapshot) -> float:
    """Checking + savings + investment balances."""
    return _to_float(_assets(snapshot))


def credit_card_debt(snapshot: Snapshot) -> float:
    return _to_float(_credit_card_debt(snapshot))


def total_debt(snapshot: Snapshot) -> float:
    return _to_float(_total_debt(snapshot))


def net_worth(snapshot: Snapshot) -> float:
    """Assets minus liabilities (credit card balances + debts)."""
    return _to_float(_assets(snapshot) - (_credit_card_debt(snapshot) + _total_debt(snapshot)))


def credit_utilization(account: Account) -> float:
    limit = account.credit_limit or 0
    if limit <= 0:
        return 0.0
    return account.balance * 100 / limit


def utilization_status(pct: float) -> str:
    if pct < config.UTILIZATION_LOW:
        return LOW
    if pct < config.UTILIZATION_MEDIUM:
        return MEDIUM
    return HIGH


def credit_cards(snapshot: Snapshot) -> List[Tuple[Account, float, str]]:
    rows = []
    for account in snapshot.accounts:
        if account.type == CREDIT_CARD:
            pct = credit_utilization(account)
            rows.append((account, pct, utilization_status(pct)))
    return rows


# --- KPIs


def monthly_totals(snapshot: Snapshot, month: str) -> Dict[str, float]:
    """Income, expenses and net for a YYYY-MM month."""
    in_month = [t for t in snapshot.transactions if t.date.startswith(month)]
    income = _total(t.amount for t in in_month if t.type == INCOME)
    expenses = _total(t.amount for t in in_month if t.type == EXPENSE)
    return {
        "income": _to_float(income),
        "expenses": _to_float(expenses),
        "net": _to_float(income - expenses),
    }


def category_spending(snapshot: Snapshot, month: Optional[str] = None) -> Dict[Optional[str], float]:
    totals: Dict[Optional[str], Decimal] = defaultdict(Decimal)
    for t in snapshot.transactions:
        if t.type != EXPENSE:
            continue
        if month and not t.date.startswith(month):
            continue
        totals[t.category_id] += _money(t.amount)
    return {cid: _to_float(total) for cid, total in totals.items()}


def top_categories(snapshot: Snapshot, k: int, month: Optional[str] = None) -> Iterator[Tuple[str, float]]:
    names = {c.id: c.name for c in snapshot.categories}
    ordered = sorted(
        ((names.get(cid, cid or "Uncategorized"), total) for cid, total in category_spending(snapshot, month).items()),
        key=lambda item: item[1],
        reverse=True,
    )
    for name, total in ordered[: max(0, k)]:
        yield name, total


def budget_status(spent: float, monthly_budget: float) -> str:
    if monthly_budget <= 0:
        return "unlimited"
    pct = spent * 100 / monthly_budget
    if pct >= config.BUDGET_EXCEEDED_PCT:
        return "exceeded"
    if pct >= config.BUDGET_WARNING_PCT:
        return "warning"
    return "ok"


class Bill(NamedTuple):
    recurring: RecurringTransaction
    due: date
    days_until: int
    urgent: bool


def upcoming_bills(snapshot: Snapshot, today: date, days: int = config.BILL_REMINDER_DAYS) -> List[Bill]:
    horizon = today + timedelta(days=days)
    bills = []
    for r in snapshot.recurring_transactions:
        if r.type != EXPENSE or not r.next_date:
            continue
        try:
            due = date.fromisoformat(r.next_date[:10])
        except ValueError:
            continue
        if today <= due <= horizon:
            days_until = (due - today).days
            bills.append(Bill(r, due, days_until, days_until <= config.BILL_REMINDER_URGENT_DAYS))
    return sorted(bills, key=lambda b: b.due)
