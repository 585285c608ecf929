# budgetsync/config.py
import logging
import os
from dotenv import load_dotenv

load_dotenv()

# Supabase settings (remote mode is on when both are set)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Local JSON store, used when Supabase is not configured
DATA_PATH = os.getenv("BUDGETSYNC_DATA_PATH", "data/budgets.json")

# Quiet period before a realtime burst triggers a full reload (seconds)
REFRESH_DEBOUNCE = float(os.getenv("BUDGETSYNC_REFRESH_DEBOUNCE", "0.25"))

LOG_LEVEL = os.getenv("BUDGETSYNC_LOG_LEVEL", "INFO")

# Credit utilization thresholds (percent)
UTILIZATION_LOW = 40.0
UTILIZATION_MEDIUM = 70.0

BUDGET_WARNING_PCT = 90.0
BUDGET_EXCEEDED_PCT = 100.0

BILL_REMINDER_DAYS = 7
BILL_REMINDER_URGENT_DAYS = 3

CURRENCY_PLACES = 2

MY_MEMBERSHIP = "my_membership"

# Per-budget realtime channels, one per entity kind
REALTIME_KINDS = (
    "transactions",
    "members",
    "categories",
    "goals",
    "debts",
    "recurring",
    "accounts",
)

DEFAULT_CATEGORIES = (
    {"id": "rent", "name": "Rent", "color": "#f87171", "monthly_budget": 1200},
    {"id": "groceries", "name": "Groceries", "color": "#4ade80", "monthly_budget": 300},
    {"id": "transport", "name": "Transport", "color": "#60a5fa", "monthly_budget": 150},
    {"id": "fun", "name": "Fun", "color": "#c084fc", "monthly_budget": 200},
    {"id": "bills", "name": "Bills", "color": "#facc15", "monthly_budget": 250},
    {"id": "other", "name": "Other", "color": "#94a3b8", "monthly_budget": 0},
)

SUPPRESSED_LOG_PATTERNS = (
    "betterstackdata.com",
    "ERR_BLOCKED_BY_ADBLOCKER",
    "sentry_version",
)


def use_remote() -> bool:
    return bool(SUPABASE_URL and SUPABASE_KEY)


class SuppressHarmlessFilter(logging.Filter):
    """Drops log records for known, harmless third-party noise."""

    def __init__(self, patterns=SUPPRESSED_LOG_PATTERNS):
        super().__init__()
        self.patterns = tuple(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(p in message for p in self.patterns)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SuppressHarmlessFilter) for f in handler.filters):
            handler.addFilter(SuppressHarmlessFilter())


async def make_store():
    """Pick the backend once, at session start."""
    if use_remote():
        from budgetsync.supabase_store import SupabaseStore, get_supabase_client
        return SupabaseStore(await get_supabase_client())

    from budgetsync.stores import LocalStore
    return LocalStore(DATA_PATH)
