"""Parquet mirror of the fact tables.

After a game commits, every fact table's rows for that game are written to
``<base>/<table>/table_id=<id>/part-0.parquet``. The partition is rewritten
on each ingestion, so it always matches SQLite, and engines like DuckDB can
scan the dataset with hive partitioning.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pyarrow as pa
import pyarrow.parquet as pq

from .db import SQLiteStore
from .facts import TABLE_SCHEMAS

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PART_NAME = "part-0.parquet"


def _column_values(field: pa.Field, rows: List[Dict[str, Any]]) -> List[Any]:
    values = [row.get(field.name) for row in rows]
    # SQLite hands booleans back as 0/1.
    if pa.types.is_boolean(field.type):
        return [None if v is None else bool(v) for v in values]
    return values


class FactParquetExporter:
    """Mirror committed games into hive-partitioned Parquet datasets."""

    def __init__(
        self,
        base_dir: Union[str, Path],
        *,
        compression: str = "zstd",
        tables: Optional[List[str]] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._compression = compression
        self.tables = list(tables) if tables is not None else list(TABLE_SCHEMAS)

    def partition_path(self, table: str, table_id: int) -> Path:
        return self.base_dir / table / f"table_id={int(table_id)}" / PART_NAME

    def export_game(self, store: SQLiteStore, table_id: int) -> Dict[str, int]:
        """Rewrite every table partition of one game; return rows per table."""

        written: Dict[str, int] = {}
        for table in self.tables:
            schema = TABLE_SCHEMAS[table]
            rows = store.fetch_rows(table, table_id, exclude=())
            target = self.partition_path(table, table_id)
            if not rows:
                if target.exists():
                    target.unlink()
                written[table] = 0
                continue
            columns = {field.name: _column_values(field, rows) for field in schema}
            buffer = pa.table(columns, schema=schema)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(".parquet.tmp")
            pq.write_table(buffer, tmp, compression=self._compression)
            tmp.replace(target)
            written[table] = buffer.num_rows
        logger.debug("Exported replay %s to Parquet: %s", table_id, written)
        return written


__all__ = ["FactParquetExporter", "PART_NAME"]
