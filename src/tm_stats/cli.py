"""Command line interface for the Terraforming Mars statistics ingester."""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .blob_store import HttpBlobStore, LocalBlobStore
from .config import ConfigError, load_ingest_config
from .db import SQLiteStore
from .ingest import DEFAULT_FRESHNESS_WINDOW, IngestionService
from .parquet_export import FactParquetExporter


LOGGER_NAME = "tm_stats"
LOG_FORMAT_DEFAULT = "%(message)s"
LOG_FORMAT_INGEST = "%(asctime)s: %(message)s"

logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(logging.INFO)
ingest_logger = logging.getLogger(f"{LOGGER_NAME}.ingest")
ingest_logger.setLevel(logging.DEBUG)

default_log_formatter = logging.Formatter(LOG_FORMAT_DEFAULT)
ingest_log_formatter = logging.Formatter(LOG_FORMAT_INGEST)

default_log_handler = logging.StreamHandler()
default_log_handler.setLevel(logging.WARNING)
ingest_log_handler = logging.StreamHandler()
ingest_log_handler.setLevel(logging.INFO)

default_log_handler.setFormatter(default_log_formatter)
ingest_log_handler.setFormatter(ingest_log_formatter)

logger.addHandler(default_log_handler)
ingest_logger.addHandler(ingest_log_handler)

BLOB_COMMANDS = ("on-blob", "store-log", "backfill")


def parse_item(value: str) -> Tuple[int, int]:
    """Parse a ``TABLE_ID:PLAYER_ID`` backfill work item."""

    table_part, sep, player_part = value.partition(":")
    try:
        if not sep:
            raise ValueError(value)
        return int(table_part), int(player_part)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid work item '{value}'. Use TABLE_ID:PLAYER_ID."
        )


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = _build_parser()
    return parser.parse_args(argv)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ingest Terraforming Mars replay logs into SQLite statistics tables.",
    )
    parser.add_argument("--db", type=Path, required=False, help="SQLite database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common_args(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--config",
            type=Path,
            help="TOML configuration file providing defaults",
        )
        subparser.add_argument(
            "--parquet-dir",
            type=Path,
            default=None,
            help="Optional directory mirroring committed games as Parquet datasets",
        )

    def add_blob_args(subparser: argparse.ArgumentParser) -> None:
        group = subparser.add_mutually_exclusive_group()
        group.add_argument(
            "--blob-root", type=Path, help="Directory holding the 'games' container"
        )
        group.add_argument("--blob-url", help="Base URL of an HTTP blob container")
        subparser.add_argument("--api-key", help="API key for the HTTP blob container")
        subparser.add_argument(
            "--min-interval",
            type=float,
            default=None,
            help="Minimum seconds between HTTP blob requests",
        )
        subparser.add_argument(
            "--max-retries",
            type=int,
            default=None,
            help="Max retries on HTTP 429/503 from the blob container",
        )

    ingest_parser = subparsers.add_parser(
        "ingest", help="Ingest replay log JSON files synchronously"
    )
    add_common_args(ingest_parser)
    ingest_parser.add_argument("files", nargs="+", type=Path, help="Replay log files")

    blob_parser = subparsers.add_parser(
        "on-blob", help="Handle blob-change notifications for stored replay logs"
    )
    add_common_args(blob_parser)
    add_blob_args(blob_parser)
    blob_parser.add_argument(
        "--freshness-minutes",
        type=float,
        default=None,
        help="Skip blobs last modified longer ago than this (default: 10)",
    )
    blob_parser.add_argument("paths", nargs="+", help="Blob paths inside the container")

    store_parser = subparsers.add_parser(
        "store-log", help="Validate replay log files and store them as blobs"
    )
    add_common_args(store_parser)
    add_blob_args(store_parser)
    store_parser.add_argument("files", nargs="+", type=Path, help="Replay log files")

    backfill_parser = subparsers.add_parser(
        "backfill", help="Ingest stored logs for games without statistics"
    )
    add_common_args(backfill_parser)
    add_blob_args(backfill_parser)
    backfill_parser.add_argument(
        "--item",
        dest="items",
        type=parse_item,
        action="append",
        default=None,
        help="Work item TABLE_ID:PLAYER_ID. Repeatable; omit to list the container.",
    )
    backfill_parser.add_argument(
        "--top", type=int, default=None, help="Process at most this many games"
    )
    backfill_parser.add_argument(
        "--dry-run", action="store_true", help="Report what would be ingested"
    )
    backfill_parser.add_argument(
        "--stop-on-error", action="store_true", help="Stop at the first failure"
    )
    return parser


def _load_ingest_config(
    args: argparse.Namespace,
) -> Tuple[Optional[dict], Optional[int]]:
    if getattr(args, "config", None) is None:
        return None, None
    try:
        ingest_config = dict(load_ingest_config(args.config))
        logger.info("Load config from '%s'", args.config)
        return ingest_config, None
    except ConfigError as exc:
        logger.error("%s", exc)
        return None, 2


def _resolve_db_path(
    args: argparse.Namespace, ingest_config: Optional[dict]
) -> Optional[Path]:
    if args.db is not None:
        return args.db
    if ingest_config is not None:
        db_value = ingest_config.get("ingest", {}).get("db_path")
        if isinstance(db_value, str):
            return Path(db_value)
    return None


def _build_blob_store(args: argparse.Namespace, ingest_config: Optional[dict]) -> Any:
    ingest_table = ingest_config.get("ingest", {}) if ingest_config is not None else {}
    auth_cfg = ingest_config.get("auth", {}) if ingest_config is not None else {}

    blob_root = getattr(args, "blob_root", None)
    blob_url = getattr(args, "blob_url", None)
    if blob_root is None and blob_url is None:
        if ingest_table.get("blob_root"):
            blob_root = Path(ingest_table["blob_root"])
        elif ingest_table.get("blob_url"):
            blob_url = ingest_table["blob_url"]
    if blob_root is not None:
        return LocalBlobStore(blob_root)
    if blob_url is None:
        return None

    api_key = getattr(args, "api_key", None)
    if api_key is None:
        api_key_env_name = auth_cfg.get("api_key_env")
        if isinstance(api_key_env_name, str) and api_key_env_name:
            api_key = os.environ.get(api_key_env_name) or None
    min_interval = args.min_interval
    if min_interval is None:
        min_interval = ingest_table.get("min_interval", 0.0)
    max_retries = args.max_retries
    if max_retries is None:
        max_retries = ingest_table.get("max_retries", 3)
    return HttpBlobStore(
        blob_url,
        api_key=api_key,
        min_interval=min_interval,
        max_retries=max_retries,
    )


def _resolve_freshness(
    args: argparse.Namespace, ingest_config: Optional[dict]
) -> dt.timedelta:
    minutes = getattr(args, "freshness_minutes", None)
    if minutes is None and ingest_config is not None:
        minutes = ingest_config.get("ingest", {}).get("freshness_minutes")
    if minutes is None:
        return DEFAULT_FRESHNESS_WINDOW
    return dt.timedelta(minutes=float(minutes))


def _build_parquet_exporter(
    args: argparse.Namespace, ingest_config: Optional[dict]
) -> Optional[FactParquetExporter]:
    parquet_dir = args.parquet_dir
    if parquet_dir is None and ingest_config is not None:
        configured = ingest_config.get("ingest", {}).get("parquet_dir")
        if isinstance(configured, str):
            parquet_dir = Path(configured)
    if parquet_dir is None:
        return None
    return FactParquetExporter(parquet_dir)


def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")


def _run_ingest(args: argparse.Namespace, service: IngestionService) -> int:
    results: List[Dict[str, Any]] = []
    failures = 0
    for path in args.files:
        try:
            result = service.ingest_bytes(path.read_bytes())
        except Exception as exc:
            failures += 1
            ingest_logger.error("Failed to ingest %s: %s", path, exc)
            results.append({"file": str(path), "status": "failed", "error": str(exc)})
            continue
        results.append({"file": str(path), **dataclasses.asdict(result)})
    _emit(results)
    return 1 if failures else 0


def _run_on_blob(args: argparse.Namespace, service: IngestionService) -> int:
    results: List[Dict[str, Any]] = []
    failures = 0
    for path in args.paths:
        try:
            result = service.handle_blob_event(path)
        except Exception as exc:
            failures += 1
            ingest_logger.error("Failed to handle blob %s: %s", path, exc)
            results.append({"path": path, "status": "failed", "error": str(exc)})
            continue
        results.append({"path": path, **dataclasses.asdict(result)})
    _emit(results)
    return 1 if failures else 0


def _run_store_log(args: argparse.Namespace, service: IngestionService) -> int:
    results: List[Dict[str, Any]] = []
    failures = 0
    for path in args.files:
        try:
            stored = service.store_game_log(path.read_bytes())
        except Exception as exc:
            failures += 1
            ingest_logger.error("Failed to store %s: %s", path, exc)
            results.append({"file": str(path), "status": "failed", "error": str(exc)})
            continue
        results.append({"file": str(path), "status": "stored", "path": stored})
    _emit(results)
    return 1 if failures else 0


def _run_backfill(args: argparse.Namespace, service: IngestionService) -> int:
    try:
        summary = service.backfill(
            args.items,
            top=args.top,
            dry_run=args.dry_run,
            stop_on_error=args.stop_on_error,
        )
    except NotImplementedError as exc:
        logger.error("%s", exc)
        return 2
    _emit(summary)
    return 1 if summary["failures"] else 0


def run(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)

    ingest_config, config_error = _load_ingest_config(args)
    if config_error is not None:
        return config_error

    db_path = _resolve_db_path(args, ingest_config)
    if db_path is None:
        logger.error(
            "Database path must be provided via --db or ingest.db_path in the config file."
        )
        return 2

    blob_store = None
    if args.command in BLOB_COMMANDS:
        blob_store = _build_blob_store(args, ingest_config)
        if blob_store is None:
            logger.error(
                "A blob store is required: pass --blob-root or --blob-url, "
                "or set ingest.blob_root / ingest.blob_url in the config file."
            )
            return 2

    def report(message: str) -> None:
        ingest_logger.info(message)

    store = SQLiteStore(str(db_path))
    try:
        store.setup_schema()
        service = IngestionService(
            store,
            blob_store=blob_store,
            parquet_exporter=_build_parquet_exporter(args, ingest_config),
            freshness_window=_resolve_freshness(args, ingest_config),
            progress_callback=report,
        )
        if args.command == "ingest":
            return _run_ingest(args, service)
        if args.command == "on-blob":
            return _run_on_blob(args, service)
        if args.command == "store-log":
            return _run_store_log(args, service)
        if args.command == "backfill":
            return _run_backfill(args, service)
        raise ValueError(f"Unsupported command: {args.command}")
    finally:
        if isinstance(blob_store, HttpBlobStore):
            blob_store.close()
        store.close()


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
