from dataclasses import dataclass, field
from typing import Optional, Tuple

INCOME = "income"
EXPENSE = "expense"

CHECKING = "checking"
SAVINGS = "savings"
CREDIT_CARD = "credit_card"
INVESTMENT = "investment"
ACCOUNT_TYPES = (CHECKING, SAVINGS, CREDIT_CARD, INVESTMENT)

PERSONAL = "personal"
SHARED = "shared"


@dataclass(frozen=True)
class Transaction:
    id: str
    date: str              # "2025-09-01"
    description: str
    amount: float          # never negative, sign lives in `type`
    type: str              # "income" | "expense"
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    merchant: Optional[str] = None
    note: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    origin: str = "manual"  # "manual" | "imported"
    external_id: Optional[str] = None

    @property
    def signed_amount(self) -> float:
        return self.amount if self.type == INCOME else -self.amount


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    color: str = "#94a3b8"
    monthly_budget: float = 0.0   # 0 means unlimited
    order: int = 0


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    type: str
    balance: float
    credit_limit: Optional[float] = None


@dataclass(frozen=True)
class SavingsGoal:
    id: str
    name: str
    target: float
    current: float = 0.0


@dataclass(frozen=True)
class FinancialGoal:
    id: str
    name: str
    type: str
    target: float
    current: float = 0.0
    target_date: Optional[str] = None


@dataclass(frozen=True)
class Debt:
    id: str
    name: str
    current_balance: float
    original_balance: float
    interest_rate: float = 0.0
    min_payment: float = 0.0
    target_date: Optional[str] = None


@dataclass(frozen=True)
class RecurringTransaction:
    id: str
    description: str
    amount: float
    type: str
    category_id: str
    frequency: str     # daily | weekly | monthly | yearly
    next_date: Optional[str] = None


@dataclass(frozen=True)
class Budget:
    id: str
    name: str
    type: str = PERSONAL

    @property
    def is_shared(self) -> bool:
        return self.type == SHARED


# Everything the dashboard shows for one budget
@dataclass(frozen=True)
class Snapshot:
    transactions: Tuple[Transaction, ...] = ()
    categories: Tuple[Category, ...] = ()
    accounts: Tuple[Account, ...] = ()
    savings_goals: Tuple[SavingsGoal, ...] = ()
    financial_goals: Tuple[FinancialGoal, ...] = ()
    debts: Tuple[Debt, ...] = ()
    recurring_transactions: Tuple[RecurringTransaction, ...] = ()
    last_import_batch_ids: Tuple[str, ...] = field(default=())
