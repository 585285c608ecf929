import logging
from dataclasses import fields, replace
from typing import Dict, Optional

from budgetsync.domain import Snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = frozenset(f.name for f in fields(Snapshot))


class ActiveDataStore:
    """In-memory snapshots keyed by budget id, one of which is "active".

    Snapshots are frozen and every `set` swaps in a new one, so a reader
    holding the result of `get()` never sees a half-applied update.
    """

    def __init__(self):
        self._snapshots: Dict[str, Snapshot] = {}
        self._active: Optional[str] = None

    @property
    def active_scope(self) -> Optional[str]:
        return self._active

    def switch_active_scope(self, budget_id: Optional[str]) -> None:
        if budget_id != self._active:
            logger.debug("active scope %s -> %s", self._active, budget_id)
        self._active = budget_id

    def get(self, budget_id: Optional[str] = None) -> Snapshot:
        key = self._active if budget_id is None else budget_id
        # never-written scopes read as empty
        return self._snapshots.get(key, Snapshot())

    def set(self, **partial) -> Snapshot:
        if self._active is None:
            raise RuntimeError("no active budget scope")
        return self.set_scope(self._active, **partial)

    def set_scope(self, budget_id: str, **partial) -> Snapshot:
        """Write into one budget's snapshot whether or not it is the active one."""
        unknown = set(partial) - SNAPSHOT_FIELDS
        if unknown:
            raise KeyError(f"unknown snapshot fields: {sorted(unknown)}")

        changes = {name: tuple(value) for name, value in partial.items()}
        snapshot = replace(self.get(budget_id), **changes)
        self._snapshots[budget_id] = snapshot
        return snapshot

    def drop_scope(self, budget_id: str) -> None:
        self._snapshots.pop(budget_id, None)
        if self._active == budget_id:
            self._active = None
