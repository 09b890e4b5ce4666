"""Write a fact set to SQLite in a single transaction."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Dict, Optional, Sequence

from .db import SQLiteStore
from .facts import FactSet
from .sync import (
    PLAYER_SCOPE,
    KeyedMerge,
    ScopeContext,
    ScopedReplace,
    StagedBulkReplace,
    StagedPerspectiveReplace,
    SyncStrategy,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def default_write_plan() -> Sequence[SyncStrategy]:
    """Strategies in the order they are applied.

    ``game_stats`` comes first because every other table references it.
    """

    return (
        KeyedMerge("game_stats", key=("table_id",)),
        KeyedMerge("game_player_stats", key=("table_id", "player_id")),
        ScopedReplace("starting_hand_corporations", PLAYER_SCOPE),
        ScopedReplace("starting_hand_preludes", PLAYER_SCOPE),
        ScopedReplace("starting_hand_cards", PLAYER_SCOPE),
        ScopedReplace("game_milestones"),
        ScopedReplace("game_player_awards"),
        ScopedReplace("parameter_changes"),
        StagedPerspectiveReplace("game_cards", key=("table_id", "player_id", "card")),
        StagedBulkReplace("game_city_locations"),
        StagedBulkReplace("game_greenery_locations"),
        StagedBulkReplace("game_player_tracker_changes"),
    )


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class TransactionalWriter:
    """Apply every reconciliation strategy for one game atomically."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        plan: Optional[Sequence[SyncStrategy]] = None,
        clock: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.plan = tuple(plan) if plan is not None else tuple(default_write_plan())
        self._clock = clock

    def write(self, facts: FactSet) -> Dict[str, int]:
        """Write ``facts`` and return the number of rows written per table.

        On failure the transaction is rolled back and the exception re-raised,
        leaving the stored state exactly as it was before the call.
        """

        stamp = self._clock().astimezone(dt.timezone.utc).isoformat(timespec="seconds")
        context = ScopeContext(facts.table_id, facts.perspective_id)
        summary: Dict[str, int] = {}
        try:
            with self.store.transaction() as cur:
                for strategy in self.plan:
                    rows = [
                        dict(record, updated_at=stamp)
                        for record in facts.records(strategy.table)
                    ]
                    summary[strategy.table] = strategy.apply(
                        self.store, cur, context, rows
                    )
        except Exception as exc:
            logger.error(
                "Rolled back replay %s (perspective %s): %s",
                facts.table_id,
                facts.perspective_id,
                exc,
            )
            raise
        logger.debug("Committed replay %s: %s", facts.table_id, summary)
        return summary


__all__ = ["TransactionalWriter", "default_write_plan"]
