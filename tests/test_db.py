import sqlite3

import pyarrow as pa
import pytest


def test_setup_schema_creates_fact_tables(store, fact_tables):
    cur = store.connection.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    assert {row[0] for row in cur.fetchall()} == set(fact_tables)

    cur = store.connection.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%'"
    )
    assert {row[0] for row in cur.fetchall()} == {
        "idx_parameter_changes_generation",
        "idx_game_cards_card",
        "idx_game_player_stats_corporation",
    }

    # Running it again is harmless
    store.setup_schema()


def test_every_table_carries_updated_at(store, fact_tables):
    for table in fact_tables:
        columns = store.table_columns(table)
        assert columns[0] == "table_id"
        assert columns[-1] == "updated_at"


def test_child_rows_require_a_game(store):
    with pytest.raises(sqlite3.IntegrityError):
        store.connection.execute(
            "INSERT INTO game_milestones (table_id, milestone, claimed_by, claimed_gen, updated_at)"
            " VALUES (1, 'Mayor', 1, 3, 'now')"
        )


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as cur:
            cur.execute(
                "INSERT INTO game_stats (table_id, player_count, updated_at) VALUES (1, 2, 'now')"
            )
            raise RuntimeError("boom")

    assert not store.has_game_stats(1)
    assert not store.connection.in_transaction


def test_transaction_commits(store):
    with store.transaction() as cur:
        cur.execute(
            "INSERT INTO game_stats (table_id, player_count, updated_at) VALUES (1, 2, 'now')"
        )

    assert store.has_game_stats(1)
    assert store.count_rows("game_stats", 1) == 1


def test_bulk_load_and_fetch_rows(store):
    store.connection.execute(
        "INSERT INTO game_stats (table_id, player_count, updated_at) VALUES (7, 2, 'now')"
    )
    buffer = pa.table(
        {
            "table_id": [7, 7],
            "player_id": [2, 1],
            "greenery_location": ["Hex 1,1", "Hex 2,2"],
            "placed_gen": [3, None],
            "updated_at": ["now", "now"],
        }
    )

    with store.transaction() as cur:
        assert store.bulk_load(cur, buffer, "game_greenery_locations") == 2

    assert store.fetch_rows("game_greenery_locations", 7) == [
        {"table_id": 7, "player_id": 1, "greenery_location": "Hex 2,2", "placed_gen": None},
        {"table_id": 7, "player_id": 2, "greenery_location": "Hex 1,1", "placed_gen": 3},
    ]
    assert store.fetch_rows("game_greenery_locations", 7, exclude=())[0]["updated_at"] == "now"
