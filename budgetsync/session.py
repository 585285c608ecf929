from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from budgetsync.domain import Budget


class SessionPhase(Enum):
    UNSELECTED = "unselected"
    LOADING = "loading"
    READY = "ready"


@dataclass
class SessionState:
    """Who is signed in and which budget is current.

    Only the BudgetSessionController writes `current_budget`; everything
    else reads this object live instead of keeping its own copy.
    """
    user_id: Optional[str] = None
    current_budget: Optional[Budget] = None
    budgets: List[Budget] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.UNSELECTED
    seq: int = 0
    channels: Dict[str, Any] = field(default_factory=dict)
    subscribed_budget_id: Optional[str] = None
    removed_budget_ids: Set[str] = field(default_factory=set)

    @property
    def current_budget_id(self) -> Optional[str]:
        return self.current_budget.id if self.current_budget else None

    def next_seq(self) -> int:
        self.seq += 1
        return self.seq

    def is_current(self, seq: int, budget_id: str) -> bool:
        return seq == self.seq and budget_id == self.current_budget_id

    def find_budget(self, budget_id: str) -> Optional[Budget]:
        return next((b for b in self.budgets if b.id == budget_id), None)

    def budget_name(self, budget_id: str, default: str = "that budget") -> str:
        budget = self.find_budget(budget_id)
        if budget is None and self.current_budget_id == budget_id:
            budget = self.current_budget
        return budget.name if budget else default

    def mark_removed(self, budget_id: str) -> None:
        self.removed_budget_ids.add(budget_id)

    def unmark_removed(self, budget_id: str) -> None:
        self.removed_budget_ids.discard(budget_id)
