import argparse
import json
import os
import time

import pytest

from tm_stats.cli import parse_item, run
from tm_stats.db import SQLiteStore


def _write_log(tmp_path, payload, name="game.json"):
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _game_ids(db_path):
    store = SQLiteStore(str(db_path))
    try:
        with store.cursor() as cur:
            cur.execute("SELECT table_id FROM game_stats ORDER BY table_id")
            return [row["table_id"] for row in cur.fetchall()]
    finally:
        store.close()


def test_ingest_files(tmp_path, make_document, capsys):
    db_path = tmp_path / "stats.db"
    log = _write_log(tmp_path, make_document())

    code = run(["--db", str(db_path), "ingest", str(log)])

    assert code == 0
    (result,) = json.loads(capsys.readouterr().out)
    assert result["status"] == "ingested"
    assert result["rows"]["game_cards"] == 9
    assert _game_ids(db_path) == [12345]


def test_ingest_reports_failures(tmp_path, make_document, capsys):
    db_path = tmp_path / "stats.db"
    good = _write_log(tmp_path, make_document(), "good.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{broken", encoding="utf-8")

    code = run(["--db", str(db_path), "ingest", str(bad), str(good)])

    assert code == 1
    results = json.loads(capsys.readouterr().out)
    assert [r["status"] for r in results] == ["failed", "ingested"]
    assert _game_ids(db_path) == [12345]


def test_missing_database_path(tmp_path, make_document):
    log = _write_log(tmp_path, make_document())

    assert run(["ingest", str(log)]) == 2


def test_blob_commands_require_a_blob_store(tmp_path):
    assert run(["--db", str(tmp_path / "stats.db"), "on-blob", "1/game_1_1.json"]) == 2


def test_store_log_then_blob_event(tmp_path, make_document, capsys):
    db_path = tmp_path / "stats.db"
    blob_root = tmp_path / "blobs"
    log = _write_log(tmp_path, make_document())

    code = run(["--db", str(db_path), "store-log", "--blob-root", str(blob_root), str(log)])
    assert code == 0
    (stored,) = json.loads(capsys.readouterr().out)
    assert stored["path"] == "1/game_12345_1.json"
    assert (blob_root / "games" / "1" / "game_12345_1.json").is_file()

    code = run(
        ["--db", str(db_path), "on-blob", "--blob-root", str(blob_root), stored["path"]]
    )

    assert code == 0
    (result,) = json.loads(capsys.readouterr().out)
    assert result["status"] == "ingested"
    assert _game_ids(db_path) == [12345]


def test_store_log_rejects_empty_moves(tmp_path, make_document, capsys):
    payload = make_document()
    payload["moves"] = []
    log = _write_log(tmp_path, payload)

    code = run(
        [
            "--db",
            str(tmp_path / "stats.db"),
            "store-log",
            "--blob-root",
            str(tmp_path / "blobs"),
            str(log),
        ]
    )

    assert code == 1
    (result,) = json.loads(capsys.readouterr().out)
    assert "moves must not be empty" in result["error"]


def test_on_blob_skips_stale_blobs(tmp_path, make_document, capsys):
    db_path = tmp_path / "stats.db"
    blob_root = tmp_path / "blobs"
    blob = blob_root / "games" / "1" / "game_12345_1.json"
    blob.parent.mkdir(parents=True)
    blob.write_text(json.dumps(make_document()), encoding="utf-8")
    an_hour_ago = time.time() - 3600
    os.utime(blob, (an_hour_ago, an_hour_ago))

    code = run(
        ["--db", str(db_path), "on-blob", "--blob-root", str(blob_root), "1/game_12345_1.json"]
    )

    assert code == 0
    (result,) = json.loads(capsys.readouterr().out)
    assert (result["status"], result["reason"]) == ("skipped", "stale")
    assert _game_ids(db_path) == []

    code = run(
        [
            "--db",
            str(db_path),
            "on-blob",
            "--blob-root",
            str(blob_root),
            "--freshness-minutes",
            "120",
            "1/game_12345_1.json",
        ]
    )

    assert code == 0
    assert _game_ids(db_path) == [12345]


def test_backfill_lists_local_container(tmp_path, make_document, capsys):
    db_path = tmp_path / "stats.db"
    blob_root = tmp_path / "blobs"
    for replay_id in ("101", "102"):
        log = _write_log(tmp_path, make_document(replay_id=replay_id), f"{replay_id}.json")
        run(["--db", str(db_path), "store-log", "--blob-root", str(blob_root), str(log)])
    capsys.readouterr()

    code = run(["--db", str(db_path), "backfill", "--blob-root", str(blob_root), "--dry-run"])
    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert (summary["found"], summary["ingested"]) == (2, 0)

    code = run(["--db", str(db_path), "backfill", "--blob-root", str(blob_root)])
    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["ingested"] == 2
    assert _game_ids(db_path) == [101, 102]


def test_backfill_over_http_needs_items(tmp_path):
    code = run(
        [
            "--db",
            str(tmp_path / "stats.db"),
            "backfill",
            "--blob-url",
            "https://blobs.invalid/api",
        ]
    )

    assert code == 2


def test_parquet_dir_mirrors_ingested_game(tmp_path, make_document):
    db_path = tmp_path / "stats.db"
    parquet_dir = tmp_path / "parquet"
    log = _write_log(tmp_path, make_document())

    code = run(["--db", str(db_path), "ingest", "--parquet-dir", str(parquet_dir), str(log)])

    assert code == 0
    assert (parquet_dir / "game_cards" / "table_id=12345" / "part-0.parquet").is_file()


def test_parse_item():
    assert parse_item("12345:1") == (12345, 1)
    with pytest.raises(argparse.ArgumentTypeError):
        parse_item("12345")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_item("a:b")
