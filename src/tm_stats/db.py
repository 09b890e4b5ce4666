"""SQLite persistence layer for Terraforming Mars game statistics."""

from __future__ import annotations

import re
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Sequence

import pyarrow as pa

_IDENTIFIER = re.compile(r"^(temp\.)?[A-Za-z_][A-Za-z0-9_]*$")


def checked_identifier(name: str) -> str:
    """Return ``name`` when it is a plain (optionally temp-qualified) SQL identifier."""

    if not _IDENTIFIER.match(name):
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return name


class SQLiteStore:
    """SQLite-backed repository for ingested game facts.

    The connection runs in autocommit mode; writers group their statements
    with :meth:`transaction`.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.connection = sqlite3.connect(path, isolation_level=None)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA foreign_keys = ON")

    def close(self) -> None:
        self.connection.close()

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        cur = self.connection.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run the enclosed statements in one transaction.

        Commits when the block exits normally, rolls back and re-raises on
        any exception (including a failing COMMIT).
        """

        cur = self.connection.cursor()
        cur.execute("BEGIN")
        try:
            yield cur
            cur.execute("COMMIT")
        except BaseException:
            if self.connection.in_transaction:
                cur.execute("ROLLBACK")
            raise
        finally:
            cur.close()

    def setup_schema(self) -> None:
        with self.cursor() as cur:
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS game_stats (
                    table_id INTEGER PRIMARY KEY,
                    generations INTEGER,
                    duration_minutes INTEGER,
                    player_count INTEGER NOT NULL,
                    winner TEXT,
                    game_date TEXT,
                    map_name TEXT,
                    prelude_on INTEGER,
                    colonies_on INTEGER,
                    corporate_era_on INTEGER,
                    draft_on INTEGER,
                    beginners_corporations_on INTEGER,
                    game_speed TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS game_player_stats (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    player_name TEXT,
                    corporation TEXT,
                    final_score INTEGER,
                    final_tr INTEGER,
                    award_points INTEGER,
                    milestone_points INTEGER,
                    city_points INTEGER,
                    greenery_points INTEGER,
                    card_points INTEGER,
                    arena_points INTEGER,
                    arena_points_change INTEGER,
                    game_rank INTEGER,
                    game_rank_change INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS starting_hand_corporations (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    corporation TEXT NOT NULL,
                    kept INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, corporation),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS starting_hand_preludes (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    prelude TEXT NOT NULL,
                    kept INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, prelude),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS starting_hand_cards (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    card TEXT NOT NULL,
                    kept INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, card),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_milestones (
                    table_id INTEGER NOT NULL,
                    milestone TEXT NOT NULL,
                    claimed_by INTEGER NOT NULL,
                    claimed_gen INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, milestone),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_player_awards (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    award TEXT NOT NULL,
                    funded_by INTEGER NOT NULL,
                    funded_gen INTEGER NOT NULL,
                    player_place INTEGER,
                    player_counter INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, award),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS parameter_changes (
                    table_id INTEGER NOT NULL,
                    parameter TEXT NOT NULL,
                    generation INTEGER NOT NULL,
                    increased_to INTEGER NOT NULL,
                    increased_by INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, parameter, increased_to),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_cards (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    card TEXT NOT NULL,
                    seen_gen INTEGER,
                    drawn_gen INTEGER,
                    kept_gen INTEGER,
                    drafted_gen INTEGER,
                    bought_gen INTEGER,
                    played_gen INTEGER,
                    draw_type TEXT,
                    draw_reason TEXT,
                    vp_scored INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, card),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_city_locations (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    city_location TEXT NOT NULL,
                    points INTEGER NOT NULL,
                    placed_gen INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, city_location),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_greenery_locations (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    greenery_location TEXT NOT NULL,
                    placed_gen INTEGER,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, greenery_location),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS game_player_tracker_changes (
                    table_id INTEGER NOT NULL,
                    player_id INTEGER NOT NULL,
                    tracker TEXT NOT NULL,
                    tracker_type TEXT NOT NULL,
                    generation INTEGER NOT NULL,
                    move_number INTEGER,
                    changed_to INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_id, player_id, tracker, generation),
                    FOREIGN KEY (table_id) REFERENCES game_stats(table_id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_parameter_changes_generation
                    ON parameter_changes (table_id, parameter, generation);

                CREATE INDEX IF NOT EXISTS idx_game_cards_card
                    ON game_cards (card, played_gen);

                CREATE INDEX IF NOT EXISTS idx_game_player_stats_corporation
                    ON game_player_stats (corporation);
                """
            )

    def bulk_load(
        self, cur: sqlite3.Cursor, buffer: pa.Table, destination: str
    ) -> int:
        """Copy every row of a pyarrow buffer into ``destination``.

        Column names of the buffer must match columns of the destination.
        """

        if buffer.num_rows == 0:
            return 0
        names = [checked_identifier(name) for name in buffer.schema.names]
        statement = "INSERT INTO {} ({}) VALUES ({})".format(
            checked_identifier(destination),
            ", ".join(names),
            ", ".join("?" for _ in names),
        )
        cur.executemany(
            statement, zip(*(column.to_pylist() for column in buffer.columns))
        )
        return buffer.num_rows

    def has_game_stats(self, table_id: int) -> bool:
        with self.cursor() as cur:
            cur.execute("SELECT 1 FROM game_stats WHERE table_id=?", (int(table_id),))
            return cur.fetchone() is not None

    def table_columns(self, table: str) -> List[str]:
        with self.cursor() as cur:
            cur.execute(f"PRAGMA table_info('{checked_identifier(table)}')")
            return [row["name"] for row in cur.fetchall()]

    def fetch_rows(
        self,
        table: str,
        table_id: int,
        *,
        exclude: Sequence[str] = ("updated_at",),
    ) -> List[Dict[str, Any]]:
        """Return the stored rows of one game in a deterministic order."""

        columns = [c for c in self.table_columns(table) if c not in exclude]
        with self.cursor() as cur:
            cur.execute(
                "SELECT {cols} FROM {table} WHERE table_id=? ORDER BY {order}".format(
                    cols=", ".join(columns),
                    table=checked_identifier(table),
                    order=", ".join(str(i) for i in range(1, len(columns) + 1)),
                ),
                (int(table_id),),
            )
            return [dict(row) for row in cur.fetchall()]

    def count_rows(self, table: str, table_id: int) -> int:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT COUNT(*) AS n FROM {checked_identifier(table)} WHERE table_id=?",
                (int(table_id),),
            )
            return int(cur.fetchone()["n"])


__all__ = ["SQLiteStore", "checked_identifier"]
