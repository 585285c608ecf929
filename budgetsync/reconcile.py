import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from budgetsync import config
from budgetsync.errors import StoreError, StoreUnavailableError
from budgetsync.events import EventBus
from budgetsync.session import SessionState
from budgetsync.state import ActiveDataStore
from budgetsync.stores import (
    ACCOUNTS, CATEGORIES, DEBTS, FINANCIAL_GOALS, RECURRING, SAVINGS_GOALS, TRANSACTIONS, Store,
)
from budgetsync.transforms import (
    default_category_records, find_other_category_id, to_account, to_category, to_debt,
    to_financial_goal, to_recurring, to_savings_goal, to_transaction,
)

logger = logging.getLogger(__name__)

# snapshot field -> table
COLLECTIONS: Tuple[Tuple[str, str], ...] = (
    ("transactions", TRANSACTIONS),
    ("categories", CATEGORIES),
    ("accounts", ACCOUNTS),
    ("savings_goals", SAVINGS_GOALS),
    ("financial_goals", FINANCIAL_GOALS),
    ("debts", DEBTS),
    ("recurring_transactions", RECURRING),
)

TRANSIENT_ERRORS = (OSError, asyncio.TimeoutError)


class ReconciliationEngine:
    """Full reload of one budget from the store into the ActiveDataStore."""

    def __init__(
        self,
        store: Store,
        state: ActiveDataStore,
        session: SessionState,
        bus: EventBus,
        default_categories: Iterable[Mapping] = config.DEFAULT_CATEGORIES,
    ):
        self.store = store
        self.state = state
        self.session = session
        self.bus = bus
        self.default_categories = tuple(default_categories)
        # one seed attempt per budget for the life of the process
        self.seed_attempted: Set[str] = set()

    async def _fetch(self, table: str, budget_id: str) -> Tuple[Optional[List[dict]], Optional[object]]:
        try:
            result = await self.store.list(table, budget_id)
        except TRANSIENT_ERRORS as e:
            logger.error("error loading %s for budget %s: %s", table, budget_id, e)
            return None, e
        if result.is_left():
            logger.error("error loading %s for budget %s: %s", table, budget_id, result.get_error())
            return None, result.get_error()
        rows = result.get_or_else([]) or []
        logger.debug("loaded %d %s", len(rows), table)
        return rows, None

    async def _create_default(self, budget_id: str, order: int, template: Mapping) -> Optional[StoreError]:
        fields = {
            "name": template["name"],
            "color": template.get("color", "#94a3b8"),
            "monthly_budget": template.get("monthly_budget", 0) or 0,
            "display_order": order,
        }
        try:
            result = await self.store.create(CATEGORIES, budget_id, fields)
        except TRANSIENT_ERRORS as e:
            logger.warning("error creating default category %s: %s", template["name"], e)
            return None
        return result.get_error() if result.is_left() else None

    async def seed_default_categories(self, budget_id: str) -> List[dict]:
        """Create the default categories once, then read back what the store shows.

        Duplicate-key responses mean another client (or an earlier run) got
        there first and are not reported.
        """
        self.seed_attempted.add(budget_id)
        logger.info("no categories for budget %s, creating defaults", budget_id)

        saw_conflict = False
        for order, template in enumerate(self.default_categories):
            error = await self._create_default(budget_id, order, template)
            if error is None:
                continue
            if error.is_conflict:
                saw_conflict = True
            else:
                logger.warning("error creating category %s: %s", template["name"], error)

        reloaded, reload_error = await self._fetch(CATEGORIES, budget_id)
        if reloaded:
            logger.info("loaded %d categories after seeding budget %s", len(reloaded), budget_id)
            return reloaded

        logger.warning("failed to reload categories after seeding budget %s: %s", budget_id, reload_error)
        if saw_conflict:
            logger.warning(
                "default category seed for budget %s hit conflicts but no categories are visible; "
                "the rows likely exist but the reader lacks SELECT permission on them", budget_id,
            )
        return []

    async def reconcile(self, budget_id: Optional[str] = None) -> bool:
        """Reload `budget_id` (default: the current budget). Returns True if it committed."""
        budget_id = budget_id or self.session.current_budget_id
        if budget_id is None:
            logger.debug("skipping reload: no budget selected")
            return False

        seq = self.session.next_seq()
        logger.info("reload #%d start for budget %s", seq, budget_id)

        results = await asyncio.gather(*(self._fetch(table, budget_id) for _, table in COLLECTIONS))
        if not self.session.is_current(seq, budget_id):
            logger.debug("reload #%d for budget %s superseded", seq, budget_id)
            return False

        rows: Dict[str, List[dict]] = {}
        errors = {}
        for (name, _), (data, error) in zip(COLLECTIONS, results):
            rows[name] = data or []
            if error is not None:
                errors[name] = error

        if len(errors) == len(COLLECTIONS):
            raise StoreUnavailableError(budget_id, errors)

        categories_ok = "categories" not in errors
        if categories_ok and not rows["categories"] and budget_id not in self.seed_attempted:
            rows["categories"] = await self.seed_default_categories(budget_id)
            if not self.session.is_current(seq, budget_id):
                logger.debug("reload #%d for budget %s superseded while seeding", seq, budget_id)
                return False

        collections = self._transform(rows)

        if not self.session.is_current(seq, budget_id):
            return False
        self.state.switch_active_scope(budget_id)
        self.state.set(**collections)
        logger.info(
            "reload #%d committed for budget %s: %d transactions, %d categories",
            seq, budget_id, len(collections["transactions"]), len(collections["categories"]),
        )
        self.bus.render()
        return True

    def _transform(self, rows: Dict[str, List[dict]]) -> Dict[str, tuple]:
        categories = tuple(to_category(r) for r in rows["categories"])
        if not categories:
            # keep the dashboard usable; nothing is written back
            categories = default_category_records(self.default_categories)
        other_id = find_other_category_id(categories).get_or_else(None)

        return {
            "transactions": tuple(to_transaction(r, other_id) for r in rows["transactions"]),
            "categories": categories,
            "accounts": tuple(to_account(r) for r in rows["accounts"]),
            "savings_goals": tuple(to_savings_goal(r) for r in rows["savings_goals"]),
            "financial_goals": tuple(to_financial_goal(r) for r in rows["financial_goals"]),
            "debts": tuple(to_debt(r) for r in rows["debts"]),
            "recurring_transactions": tuple(to_recurring(r) for r in rows["recurring_transactions"]),
        }
