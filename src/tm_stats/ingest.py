"""Ingestion entry points for replay logs.

Both the synchronous path (a document handed over directly) and the
asynchronous path (a blob-change notification) end in the same
extract-then-write pipeline.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pyarrow as pa

from .blob_store import blob_path, parse_blob_path
from .db import SQLiteStore
from .document import (
    DocumentValidationError,
    RawLogDocument,
    load_document,
    parse_document,
)
from .extract import FactExtractor
from .parquet_export import FactParquetExporter
from .writer import TransactionalWriter

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_FRESHNESS_WINDOW = dt.timedelta(minutes=10)

STATUS_INGESTED = "ingested"
STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class IngestResult:
    status: str
    table_id: Optional[int] = None
    player_perspective: Optional[int] = None
    rows: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class IngestionService:
    """Coordinate extraction and transactional writes for replay logs."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        blob_store: Any = None,
        extractor: Optional[FactExtractor] = None,
        writer: Optional[TransactionalWriter] = None,
        parquet_exporter: Optional[FactParquetExporter] = None,
        freshness_window: dt.timedelta = DEFAULT_FRESHNESS_WINDOW,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.extractor = extractor or FactExtractor()
        self.writer = writer or TransactionalWriter(store)
        self._parquet = parquet_exporter
        self.freshness_window = freshness_window
        self._progress_callback = progress_callback

    def _report(self, message: str) -> None:
        if self._progress_callback:
            self._progress_callback(message)
        else:
            logger.info(message)

    def _require_blob_store(self) -> Any:
        if self.blob_store is None:
            raise RuntimeError("No blob store configured for this ingestion service.")
        return self.blob_store

    def _mirror_to_parquet(self, table_id: int) -> None:
        # Runs after commit; the next ingestion of the game rewrites the partition.
        try:
            self._parquet.export_game(self.store, table_id)
        except (OSError, pa.ArrowException) as exc:
            logger.error("Parquet mirror failed for replay %s: %s", table_id, exc)

    # Synchronous adapter
    def ingest_document(self, document: RawLogDocument) -> IngestResult:
        """Extract and write one document.

        Extraction and write failures propagate. The Parquet mirror runs after
        the commit and only logs its own failures.
        """

        facts = self.extractor.extract(document)
        rows = self.writer.write(facts)
        if self._parquet is not None:
            self._mirror_to_parquet(document.table_id)
        self._report(
            f"Ingested replay {document.table_id} from perspective "
            f"{document.player_perspective} ({sum(rows.values())} rows)"
        )
        return IngestResult(
            status=STATUS_INGESTED,
            table_id=document.table_id,
            player_perspective=document.player_perspective,
            rows=rows,
        )

    def ingest_payload(self, payload: Mapping[str, Any]) -> IngestResult:
        return self.ingest_document(parse_document(payload))

    def ingest_bytes(self, data: Union[bytes, str]) -> IngestResult:
        return self.ingest_document(load_document(data))

    # Asynchronous adapter
    def handle_blob_event(
        self, path: str, *, now: Optional[dt.datetime] = None
    ) -> IngestResult:
        """React to a blob-change notification for ``path``.

        Non-JSON blobs and blobs last modified before the freshness cutoff
        are skipped without touching the database. Everything else is read
        and ingested; errors propagate so the trigger can be retried.
        """

        blobs = self._require_blob_store()
        if not path.lower().endswith(".json"):
            self._report(f"Skipping non-JSON blob {path}")
            return IngestResult(status=STATUS_SKIPPED, reason="not-json")

        current = _as_utc(now) if now is not None else dt.datetime.now(dt.timezone.utc)
        cutoff = current - self.freshness_window
        try:
            modified = _as_utc(blobs.last_modified(path))
        except Exception as exc:
            logger.warning(
                "Could not read metadata for blob %s, ingesting anyway: %s", path, exc
            )
        else:
            if modified < cutoff:
                self._report(
                    f"Skipping blob {path}: last modified {modified.isoformat()} "
                    f"is older than cutoff {cutoff.isoformat()}"
                )
                return IngestResult(status=STATUS_SKIPPED, reason="stale")

        data = blobs.get_path(path)
        if not data or not data.strip():
            logger.warning("Blob %s is empty; nothing to ingest", path)
            return IngestResult(status=STATUS_SKIPPED, reason="empty")
        return self.ingest_bytes(data)

    # Raw log storage
    def store_game_log(self, data: Union[bytes, str]) -> str:
        """Validate a raw log and store it under its canonical blob path."""

        blobs = self._require_blob_store()
        document = load_document(data)
        if not document.moves:
            raise DocumentValidationError(["moves must not be empty"])
        raw = data.encode("utf-8") if isinstance(data, str) else data
        path = blobs.put(document.player_perspective, document.table_id, raw)
        self._report(
            f"Stored replay {document.table_id} for perspective "
            f"{document.player_perspective} at {path}"
        )
        return path

    # Backfill
    def _worklist(
        self, items: Optional[Iterable[Tuple[int, int]]]
    ) -> List[Tuple[int, int]]:
        if items is not None:
            return [(int(table_id), int(player_id)) for table_id, player_id in items]
        worklist = []
        for path in self._require_blob_store().iter_paths():
            parsed = parse_blob_path(path)
            if parsed is None:
                logger.debug("Ignoring blob with unexpected name %s", path)
                continue
            worklist.append(parsed)
        return worklist

    def backfill(
        self,
        items: Optional[Iterable[Tuple[int, int]]] = None,
        *,
        top: Optional[int] = None,
        dry_run: bool = False,
        stop_on_error: bool = False,
    ) -> Dict[str, Any]:
        """Ingest stored logs for games that have no statistics yet.

        ``items`` is a list of ``(table_id, player_id)`` pairs; when omitted
        the blob store is listed. Returns a summary of the run.
        """

        blobs = self._require_blob_store()
        summary: Dict[str, Any] = {
            "dry_run": dry_run,
            "found": 0,
            "processed": 0,
            "ingested": 0,
            "missing_blob": 0,
            "failures": [],
        }
        for table_id, player_id in self._worklist(items):
            if self.store.has_game_stats(table_id):
                continue
            summary["found"] += 1
            if top is not None and summary["processed"] >= top:
                continue
            summary["processed"] += 1
            if not blobs.exists(player_id, table_id):
                summary["missing_blob"] += 1
                self._report(f"No stored log at {blob_path(player_id, table_id)}")
                continue
            if dry_run:
                continue
            try:
                self.ingest_bytes(blobs.get(player_id, table_id))
            except Exception as exc:
                summary["failures"].append(
                    {"table_id": table_id, "player_id": player_id, "error": str(exc)}
                )
                logger.error(
                    "Backfill failed for replay %s (perspective %s): %s",
                    table_id,
                    player_id,
                    exc,
                )
                if stop_on_error:
                    break
                continue
            summary["ingested"] += 1
        self._report(
            "Backfill finished: {found} found, {processed} processed, "
            "{ingested} ingested, {missing_blob} missing".format(**summary)
        )
        return summary


__all__ = [
    "DEFAULT_FRESHNESS_WINDOW",
    "IngestResult",
    "IngestionService",
    "STATUS_INGESTED",
    "STATUS_SKIPPED",
]
