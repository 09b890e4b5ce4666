"""Reconciliation strategies that bring one table in line with a fact set.

All strategies run on a cursor inside the caller's transaction and never
commit themselves.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pyarrow as pa

from .db import SQLiteStore, checked_identifier
from .facts import TABLE_SCHEMAS, row_columns

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

GAME_SCOPE = "game"
PLAYER_SCOPE = "player"


@dataclass(frozen=True)
class ScopeContext:
    """Identity of the document being written."""

    table_id: Optional[int]
    perspective_id: Optional[int] = None


class SyncStrategy:
    """Write one collection of rows into its table."""

    def __init__(self, table: str, *, columns: Optional[Sequence[str]] = None) -> None:
        self.table = checked_identifier(table)
        if columns is None:
            columns = row_columns(table) + ["updated_at"]
        self.columns = [checked_identifier(c) for c in columns]

    def apply(
        self,
        store: SQLiteStore,
        cur: sqlite3.Cursor,
        context: ScopeContext,
        rows: Sequence[Dict[str, Any]],
    ) -> int:
        raise NotImplementedError

    def _insert_statement(self) -> str:
        return "INSERT INTO {} ({}) VALUES ({})".format(
            self.table,
            ", ".join(self.columns),
            ", ".join(f":{c}" for c in self.columns),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.table!r})"


class KeyedMerge(SyncStrategy):
    """Upsert rows by primary key; rows absent from the input are left alone."""

    def __init__(
        self,
        table: str,
        key: Sequence[str],
        *,
        columns: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(table, columns=columns)
        self.key = [checked_identifier(k) for k in key]

    def apply(self, store, cur, context, rows):
        if not rows:
            return 0
        updates = ",\n                ".join(
            f"{c}=excluded.{c}" for c in self.columns if c not in self.key
        )
        cur.executemany(
            f"""
            {self._insert_statement()}
            ON CONFLICT({", ".join(self.key)}) DO UPDATE SET
                {updates}
            """,
            rows,
        )
        logger.debug("Merged %d rows into %s", len(rows), self.table)
        return len(rows)


class _ScopedStrategy(SyncStrategy):
    def __init__(
        self,
        table: str,
        scope: str = GAME_SCOPE,
        *,
        columns: Optional[Sequence[str]] = None,
    ) -> None:
        if scope not in (GAME_SCOPE, PLAYER_SCOPE):
            raise ValueError(f"Unknown reconciliation scope: {scope}")
        super().__init__(table, columns=columns)
        self.scope = scope

    @staticmethod
    def _table_id(
        context: ScopeContext, rows: Sequence[Dict[str, Any]]
    ) -> Optional[int]:
        if context.table_id is not None:
            return context.table_id
        if rows:
            return rows[0]["table_id"]
        return None

    def scopes(
        self, context: ScopeContext, rows: Sequence[Dict[str, Any]]
    ) -> List[Tuple[int, ...]]:
        """Resolve the scope keys whose stored rows this write replaces.

        A player scope covers every player with rows plus the perspective
        player, so an emptied collection still clears that player's rows.
        """

        table_id = self._table_id(context, rows)
        if table_id is None:
            return []
        if self.scope == GAME_SCOPE:
            return [(table_id,)]
        players = {row["player_id"] for row in rows}
        if context.perspective_id is not None:
            players.add(context.perspective_id)
        return [(table_id, player_id) for player_id in sorted(players)]

    def _delete_scopes(self, cur: sqlite3.Cursor, scopes: List[Tuple[int, ...]]) -> None:
        where = "table_id=?" if self.scope == GAME_SCOPE else "table_id=? AND player_id=?"
        cur.executemany(f"DELETE FROM {self.table} WHERE {where}", scopes)


class ScopedReplace(_ScopedStrategy):
    """Delete every row in the scope, then insert the new rows."""

    def apply(self, store, cur, context, rows):
        scopes = self.scopes(context, rows)
        if not scopes:
            return 0
        self._delete_scopes(cur, scopes)
        if rows:
            cur.executemany(self._insert_statement(), rows)
        logger.debug(
            "Replaced %s rows for %d scope(s) with %d rows",
            self.table,
            len(scopes),
            len(rows),
        )
        return len(rows)


class StagedBulkReplace(_ScopedStrategy):
    """Replace a scope through a temporary staging table.

    Rows are buffered into a pyarrow table, bulk-loaded into a temporary
    table shaped like the target, and moved across with one
    ``INSERT ... SELECT`` after the scope delete.
    """

    def __init__(
        self,
        table: str,
        scope: str = GAME_SCOPE,
        *,
        schema: Optional[pa.Schema] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(table, scope, columns=columns)
        self.schema = schema if schema is not None else TABLE_SCHEMAS[table]
        self.stage = f"stage_{self.table}"

    def buffer(self, rows: Sequence[Dict[str, Any]]) -> pa.Table:
        columns = {
            name: [row.get(name) for row in rows] for name in self.schema.names
        }
        return pa.table(columns, schema=self.schema)

    def _stage_names(self) -> List[str]:
        return [checked_identifier(n) for n in self.schema.names]

    def _load_stage(
        self, store: SQLiteStore, cur: sqlite3.Cursor, rows: Sequence[Dict[str, Any]]
    ) -> int:
        names = ", ".join(self._stage_names())
        cur.execute(f"DROP TABLE IF EXISTS temp.{self.stage}")
        cur.execute(
            f"CREATE TEMP TABLE {self.stage} AS SELECT {names} FROM main.{self.table} WHERE 0"
        )
        return store.bulk_load(cur, self.buffer(rows), f"temp.{self.stage}")

    def _drop_stage(self, cur: sqlite3.Cursor) -> None:
        cur.execute(f"DROP TABLE temp.{self.stage}")

    def apply(self, store, cur, context, rows):
        scopes = self.scopes(context, rows)
        if not scopes:
            return 0
        loaded = self._load_stage(store, cur, rows)
        names = ", ".join(self._stage_names())
        self._delete_scopes(cur, scopes)
        cur.execute(
            f"INSERT INTO main.{self.table} ({names}) SELECT {names} FROM temp.{self.stage}"
        )
        self._drop_stage(cur)
        logger.debug(
            "Staged %d rows into %s for %d scope(s)", loaded, self.table, len(scopes)
        )
        return loaded


class StagedPerspectiveReplace(StagedBulkReplace):
    """Replace the perspective player's rows and merge rows about the others.

    A log records the full history only for its own player; rows about other
    players are merged column by column and never clear a stored value.
    Without a perspective every row is merged.
    """

    def __init__(
        self,
        table: str,
        key: Sequence[str],
        *,
        schema: Optional[pa.Schema] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(table, PLAYER_SCOPE, schema=schema, columns=columns)
        self.key = [checked_identifier(k) for k in key]

    def scopes(self, context, rows):
        table_id = self._table_id(context, rows)
        if table_id is None or context.perspective_id is None:
            return []
        return [(table_id, context.perspective_id)]

    def _merge_statement(self, where: str) -> str:
        names = self._stage_names()
        updates = [
            f"{c}=COALESCE({c}, excluded.{c})"
            for c in names
            if c not in self.key and c != "updated_at"
        ]
        if "updated_at" in names:
            updates.append("updated_at=excluded.updated_at")
        return (
            f"INSERT INTO main.{self.table} ({', '.join(names)}) "
            f"SELECT {', '.join(names)} FROM temp.{self.stage} WHERE {where} "
            f"ON CONFLICT({', '.join(self.key)}) DO UPDATE SET {', '.join(updates)}"
        )

    def apply(self, store, cur, context, rows):
        table_id = self._table_id(context, rows)
        if table_id is None:
            return 0
        loaded = self._load_stage(store, cur, rows)
        perspective = context.perspective_id
        if perspective is None:
            cur.execute(self._merge_statement("1"))
        else:
            names = ", ".join(self._stage_names())
            self._delete_scopes(cur, self.scopes(context, rows))
            cur.execute(
                f"INSERT INTO main.{self.table} ({names}) "
                f"SELECT {names} FROM temp.{self.stage} WHERE player_id = ?",
                (perspective,),
            )
            cur.execute(self._merge_statement("player_id <> ?"), (perspective,))
        self._drop_stage(cur)
        logger.debug(
            "Staged %d rows into %s (perspective %s)", loaded, self.table, perspective
        )
        return loaded


__all__ = [
    "GAME_SCOPE",
    "KeyedMerge",
    "PLAYER_SCOPE",
    "ScopeContext",
    "ScopedReplace",
    "StagedBulkReplace",
    "StagedPerspectiveReplace",
    "SyncStrategy",
]
