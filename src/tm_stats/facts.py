"""Normalised fact rows produced from one replay log.

Each row type maps onto one SQLite table of the same name. The pyarrow
schemas fix column order and types for staging buffers and Parquet output.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional, Tuple

import pyarrow as pa


@dataclass(frozen=True)
class GameStatsRow:
    table_id: int
    generations: Optional[int]
    duration_minutes: Optional[int]
    player_count: int
    winner: Optional[str]
    game_date: Optional[str] = None
    map_name: Optional[str] = None
    prelude_on: Optional[bool] = None
    colonies_on: Optional[bool] = None
    corporate_era_on: Optional[bool] = None
    draft_on: Optional[bool] = None
    beginners_corporations_on: Optional[bool] = None
    game_speed: Optional[str] = None


@dataclass(frozen=True)
class GamePlayerStatsRow:
    table_id: int
    player_id: int
    player_name: Optional[str]
    corporation: Optional[str]
    final_score: Optional[int]
    final_tr: Optional[int]
    award_points: Optional[int]
    milestone_points: Optional[int]
    city_points: Optional[int]
    greenery_points: Optional[int]
    card_points: Optional[int]
    arena_points: Optional[int] = None
    arena_points_change: Optional[int] = None
    game_rank: Optional[int] = None
    game_rank_change: Optional[int] = None


@dataclass(frozen=True)
class StartingHandCorporationRow:
    table_id: int
    player_id: int
    corporation: str
    kept: bool


@dataclass(frozen=True)
class StartingHandPreludeRow:
    table_id: int
    player_id: int
    prelude: str
    kept: bool


@dataclass(frozen=True)
class StartingHandCardRow:
    table_id: int
    player_id: int
    card: str
    kept: bool


@dataclass(frozen=True)
class GameMilestoneRow:
    table_id: int
    milestone: str
    claimed_by: int
    claimed_gen: int


@dataclass(frozen=True)
class GamePlayerAwardRow:
    table_id: int
    player_id: int
    award: str
    funded_by: int
    funded_gen: int
    player_place: Optional[int]
    player_counter: Optional[int]


@dataclass(frozen=True)
class ParameterChangeRow:
    table_id: int
    parameter: str
    generation: int
    increased_to: int
    increased_by: Optional[int]


@dataclass(frozen=True)
class GameCardRow:
    table_id: int
    player_id: int
    card: str
    seen_gen: Optional[int] = None
    drawn_gen: Optional[int] = None
    kept_gen: Optional[int] = None
    drafted_gen: Optional[int] = None
    bought_gen: Optional[int] = None
    played_gen: Optional[int] = None
    draw_type: Optional[str] = None
    draw_reason: Optional[str] = None
    vp_scored: Optional[int] = None


@dataclass(frozen=True)
class GameCityLocationRow:
    table_id: int
    player_id: int
    city_location: str
    points: int
    placed_gen: Optional[int]


@dataclass(frozen=True)
class GameGreeneryLocationRow:
    table_id: int
    player_id: int
    greenery_location: str
    placed_gen: Optional[int]


@dataclass(frozen=True)
class GamePlayerTrackerChangeRow:
    table_id: int
    player_id: int
    tracker: str
    tracker_type: str
    generation: int
    move_number: Optional[int]
    changed_to: int


_UPDATED_AT = pa.field("updated_at", pa.string())

TABLE_SCHEMAS: Dict[str, pa.Schema] = {
    "game_stats": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("generations", pa.int32()),
            pa.field("duration_minutes", pa.int32()),
            pa.field("player_count", pa.int32()),
            pa.field("winner", pa.string()),
            pa.field("game_date", pa.string()),
            pa.field("map_name", pa.string()),
            pa.field("prelude_on", pa.bool_()),
            pa.field("colonies_on", pa.bool_()),
            pa.field("corporate_era_on", pa.bool_()),
            pa.field("draft_on", pa.bool_()),
            pa.field("beginners_corporations_on", pa.bool_()),
            pa.field("game_speed", pa.string()),
            _UPDATED_AT,
        ]
    ),
    "game_player_stats": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("player_name", pa.string()),
            pa.field("corporation", pa.string()),
            pa.field("final_score", pa.int32()),
            pa.field("final_tr", pa.int32()),
            pa.field("award_points", pa.int32()),
            pa.field("milestone_points", pa.int32()),
            pa.field("city_points", pa.int32()),
            pa.field("greenery_points", pa.int32()),
            pa.field("card_points", pa.int32()),
            pa.field("arena_points", pa.int32()),
            pa.field("arena_points_change", pa.int32()),
            pa.field("game_rank", pa.int32()),
            pa.field("game_rank_change", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "starting_hand_corporations": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("corporation", pa.string()),
            pa.field("kept", pa.bool_()),
            _UPDATED_AT,
        ]
    ),
    "starting_hand_preludes": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("prelude", pa.string()),
            pa.field("kept", pa.bool_()),
            _UPDATED_AT,
        ]
    ),
    "starting_hand_cards": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("card", pa.string()),
            pa.field("kept", pa.bool_()),
            _UPDATED_AT,
        ]
    ),
    "game_milestones": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("milestone", pa.string()),
            pa.field("claimed_by", pa.int64()),
            pa.field("claimed_gen", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "game_player_awards": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("award", pa.string()),
            pa.field("funded_by", pa.int64()),
            pa.field("funded_gen", pa.int32()),
            pa.field("player_place", pa.int32()),
            pa.field("player_counter", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "parameter_changes": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("parameter", pa.string()),
            pa.field("generation", pa.int32()),
            pa.field("increased_to", pa.int32()),
            pa.field("increased_by", pa.int64()),
            _UPDATED_AT,
        ]
    ),
    "game_cards": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("card", pa.string()),
            pa.field("seen_gen", pa.int32()),
            pa.field("drawn_gen", pa.int32()),
            pa.field("kept_gen", pa.int32()),
            pa.field("drafted_gen", pa.int32()),
            pa.field("bought_gen", pa.int32()),
            pa.field("played_gen", pa.int32()),
            pa.field("draw_type", pa.string()),
            pa.field("draw_reason", pa.string()),
            pa.field("vp_scored", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "game_city_locations": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("city_location", pa.string()),
            pa.field("points", pa.int32()),
            pa.field("placed_gen", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "game_greenery_locations": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("greenery_location", pa.string()),
            pa.field("placed_gen", pa.int32()),
            _UPDATED_AT,
        ]
    ),
    "game_player_tracker_changes": pa.schema(
        [
            pa.field("table_id", pa.int64()),
            pa.field("player_id", pa.int64()),
            pa.field("tracker", pa.string()),
            pa.field("tracker_type", pa.string()),
            pa.field("generation", pa.int32()),
            pa.field("move_number", pa.int32()),
            pa.field("changed_to", pa.int32()),
            _UPDATED_AT,
        ]
    ),
}

ROW_TYPES = {
    "game_stats": GameStatsRow,
    "game_player_stats": GamePlayerStatsRow,
    "starting_hand_corporations": StartingHandCorporationRow,
    "starting_hand_preludes": StartingHandPreludeRow,
    "starting_hand_cards": StartingHandCardRow,
    "game_milestones": GameMilestoneRow,
    "game_player_awards": GamePlayerAwardRow,
    "parameter_changes": ParameterChangeRow,
    "game_cards": GameCardRow,
    "game_city_locations": GameCityLocationRow,
    "game_greenery_locations": GameGreeneryLocationRow,
    "game_player_tracker_changes": GamePlayerTrackerChangeRow,
}


def row_columns(table: str) -> List[str]:
    """Return the fact columns of ``table`` in schema order, without ``updated_at``."""

    return [f.name for f in fields(ROW_TYPES[table])]


@dataclass(frozen=True)
class FactSet:
    """Every fact collection derived from one document."""

    table_id: int
    perspective_id: int
    game_stats: Tuple[GameStatsRow, ...] = ()
    game_player_stats: Tuple[GamePlayerStatsRow, ...] = ()
    starting_hand_corporations: Tuple[StartingHandCorporationRow, ...] = ()
    starting_hand_preludes: Tuple[StartingHandPreludeRow, ...] = ()
    starting_hand_cards: Tuple[StartingHandCardRow, ...] = ()
    game_milestones: Tuple[GameMilestoneRow, ...] = ()
    game_player_awards: Tuple[GamePlayerAwardRow, ...] = ()
    parameter_changes: Tuple[ParameterChangeRow, ...] = ()
    game_cards: Tuple[GameCardRow, ...] = ()
    game_city_locations: Tuple[GameCityLocationRow, ...] = ()
    game_greenery_locations: Tuple[GameGreeneryLocationRow, ...] = ()
    game_player_tracker_changes: Tuple[GamePlayerTrackerChangeRow, ...] = ()

    def rows(self, table: str) -> Tuple[Any, ...]:
        return getattr(self, table)

    def records(self, table: str) -> List[Dict[str, Any]]:
        return [asdict(row) for row in self.rows(table)]

    def counts(self) -> Dict[str, int]:
        return {table: len(self.rows(table)) for table in ROW_TYPES}


__all__ = [
    "FactSet",
    "GameCardRow",
    "GameCityLocationRow",
    "GameGreeneryLocationRow",
    "GameMilestoneRow",
    "GamePlayerAwardRow",
    "GamePlayerStatsRow",
    "GamePlayerTrackerChangeRow",
    "GameStatsRow",
    "ParameterChangeRow",
    "ROW_TYPES",
    "StartingHandCardRow",
    "StartingHandCorporationRow",
    "StartingHandPreludeRow",
    "TABLE_SCHEMAS",
    "row_columns",
]
