"""Typed view of an exported Terraforming Mars replay log.

The scraper writes one JSON document per game and player perspective. This
module checks that document against the ingestion contract and turns it into
frozen dataclasses so the rest of the pipeline never touches raw dictionaries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

VP_CATEGORIES = ("tr", "awards", "milestones", "cities", "greeneries", "cards")


class DocumentValidationError(ValueError):
    """Raised when a replay log does not satisfy the input contract."""

    def __init__(self, details: List[str]) -> None:
        self.details = list(details)
        super().__init__("Invalid replay log: " + "; ".join(self.details))


@dataclass(frozen=True)
class VpTotals:
    tr: Optional[int] = None
    awards: Optional[int] = None
    milestones: Optional[int] = None
    cities: Optional[int] = None
    greeneries: Optional[int] = None
    cards: Optional[int] = None


@dataclass(frozen=True)
class EloData:
    arena_points: Optional[int] = None
    arena_points_change: Optional[int] = None
    game_rank: Optional[int] = None
    game_rank_change: Optional[int] = None


@dataclass(frozen=True)
class StartingHand:
    corporations: Tuple[str, ...] = ()
    preludes: Tuple[str, ...] = ()
    project_cards: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PlayerSummary:
    player_id: int
    player_name: Optional[str] = None
    corporation: Optional[str] = None
    final_vp: Optional[int] = None
    final_tr: Optional[int] = None
    vp_breakdown: VpTotals = field(default_factory=VpTotals)
    cards_played: Tuple[str, ...] = ()
    milestones_claimed: Tuple[str, ...] = ()
    awards_funded: Tuple[str, ...] = ()
    elo_data: Optional[EloData] = None
    starting_hand: Optional[StartingHand] = None


@dataclass(frozen=True)
class AwardScore:
    vp: Optional[int] = None
    counter: Optional[int] = None
    place: Optional[int] = None


@dataclass(frozen=True)
class PlayerVictoryPoints:
    """End-of-move victory point detail for one player."""

    total: Optional[int] = None
    total_details: VpTotals = field(default_factory=VpTotals)
    awards: Dict[str, AwardScore] = field(default_factory=dict)
    milestones: Dict[str, Optional[int]] = field(default_factory=dict)
    cities: Dict[str, Optional[int]] = field(default_factory=dict)
    greeneries: Dict[str, Optional[int]] = field(default_factory=dict)
    cards: Dict[str, Optional[int]] = field(default_factory=dict)


@dataclass(frozen=True)
class MilestoneClaim:
    name: str
    claimed_by: Optional[str] = None
    player_id: Optional[int] = None
    move_number: Optional[int] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class AwardFunding:
    name: str
    funded_by: Optional[str] = None
    player_id: Optional[int] = None
    move_number: Optional[int] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class GameStateSnapshot:
    move_number: Optional[int] = None
    generation: Optional[int] = None
    temperature: Optional[int] = None
    oxygen: Optional[int] = None
    oceans: Optional[int] = None
    player_vp: Dict[int, PlayerVictoryPoints] = field(default_factory=dict)
    milestones: Dict[str, MilestoneClaim] = field(default_factory=dict)
    awards: Dict[str, AwardFunding] = field(default_factory=dict)
    player_trackers: Dict[int, Dict[str, int]] = field(default_factory=dict)


@dataclass(frozen=True)
class Move:
    move_number: Optional[int] = None
    timestamp: Optional[str] = None
    player_id: Optional[int] = None
    player_name: Optional[str] = None
    action_type: Optional[str] = None
    description: Optional[str] = None
    card_played: Optional[str] = None
    card_cost: Optional[int] = None
    tile_placed: Optional[str] = None
    tile_location: Optional[str] = None
    game_state: Optional[GameStateSnapshot] = None


@dataclass(frozen=True)
class ParameterStep:
    move_number: Optional[int] = None
    generation: Optional[int] = None
    temperature: Optional[int] = None
    oxygen: Optional[int] = None
    oceans: Optional[int] = None


@dataclass(frozen=True)
class RawLogDocument:
    """One game as seen from one player's perspective."""

    replay_id: int
    player_perspective: int
    players: Dict[int, PlayerSummary]
    moves: Tuple[Move, ...] = ()
    game_date: Optional[str] = None
    game_duration: Optional[str] = None
    winner: Optional[str] = None
    generations: Optional[int] = None
    map_name: Optional[str] = None
    prelude_on: Optional[bool] = None
    colonies_on: Optional[bool] = None
    corporate_era_on: Optional[bool] = None
    draft_on: Optional[bool] = None
    beginners_corporations_on: Optional[bool] = None
    game_speed: Optional[str] = None
    final_state: Optional[GameStateSnapshot] = None
    parameter_progression: Tuple[ParameterStep, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def table_id(self) -> int:
        return self.replay_id

    @property
    def perspective_player(self) -> PlayerSummary:
        return self.players[self.player_perspective]


class _Reader:
    """Collects every contract violation instead of stopping at the first."""

    def __init__(self) -> None:
        self.errors: List[str] = []

    def fail(self, path: str, message: str) -> None:
        self.errors.append(f"{path} {message}")

    def mapping(
        self, value: Any, path: str, *, required: bool = False
    ) -> Mapping[str, Any]:
        if value is None:
            if required:
                self.fail(path, "is required")
            return {}
        if not isinstance(value, Mapping):
            self.fail(path, "must be an object")
            return {}
        return value

    def sequence(self, value: Any, path: str, *, required: bool = False) -> List[Any]:
        if value is None:
            if required:
                self.fail(path, "is required")
            return []
        if not isinstance(value, list):
            self.fail(path, "must be a list")
            return []
        return value

    def integer(self, value: Any, path: str, *, required: bool = False) -> Optional[int]:
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                self.fail(path, "is required")
            return None
        if isinstance(value, bool):
            self.fail(path, "must be an integer")
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        self.fail(path, "must be an integer")
        return None

    def text(self, value: Any, path: str) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        self.fail(path, "must be a string")
        return None

    def flag(self, value: Any, path: str) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        self.fail(path, "must be a boolean")
        return None

    def names(self, value: Any, path: str) -> Tuple[str, ...]:
        result: List[str] = []
        for index, item in enumerate(self.sequence(value, path)):
            if isinstance(item, str):
                if item.strip():
                    result.append(item.strip())
            else:
                self.fail(f"{path}[{index}]", "must be a string")
        return tuple(result)


def _lenient_player_id(value: Any) -> Optional[int]:
    # System moves carry blank or symbolic actors.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _read_totals(reader: _Reader, value: Any, path: str) -> VpTotals:
    raw = reader.mapping(value, path)
    return VpTotals(
        **{name: reader.integer(raw.get(name), f"{path}.{name}") for name in VP_CATEGORIES}
    )


def _read_vp_map(reader: _Reader, value: Any, path: str) -> Dict[str, Optional[int]]:
    result: Dict[str, Optional[int]] = {}
    for name, entry in reader.mapping(value, path).items():
        entry_path = f"{path}.{name}"
        if isinstance(entry, Mapping):
            result[name] = reader.integer(entry.get("vp"), f"{entry_path}.vp")
        else:
            result[name] = reader.integer(entry, entry_path)
    return result


def _read_player_vp(reader: _Reader, value: Any, path: str) -> PlayerVictoryPoints:
    raw = reader.mapping(value, path)
    details = reader.mapping(raw.get("details"), f"{path}.details")
    awards: Dict[str, AwardScore] = {}
    for name, entry in reader.mapping(
        details.get("awards"), f"{path}.details.awards"
    ).items():
        entry_path = f"{path}.details.awards.{name}"
        entry = reader.mapping(entry, entry_path)
        awards[name] = AwardScore(
            vp=reader.integer(entry.get("vp"), f"{entry_path}.vp"),
            counter=reader.integer(entry.get("counter"), f"{entry_path}.counter"),
            place=reader.integer(entry.get("place"), f"{entry_path}.place"),
        )
    return PlayerVictoryPoints(
        total=reader.integer(raw.get("total"), f"{path}.total"),
        total_details=_read_totals(reader, raw.get("total_details"), f"{path}.total_details"),
        awards=awards,
        milestones=_read_vp_map(reader, details.get("milestones"), f"{path}.details.milestones"),
        cities=_read_vp_map(reader, details.get("cities"), f"{path}.details.cities"),
        greeneries=_read_vp_map(
            reader, details.get("greeneries"), f"{path}.details.greeneries"
        ),
        cards=_read_vp_map(reader, details.get("cards"), f"{path}.details.cards"),
    )


def _read_player_keyed(
    reader: _Reader, value: Any, path: str
) -> List[Tuple[int, Any]]:
    result: List[Tuple[int, Any]] = []
    for key, entry in reader.mapping(value, path).items():
        player_id = reader.integer(key, f"{path} key '{key}'")
        if player_id is not None:
            result.append((player_id, entry))
    return result


def _read_snapshot(reader: _Reader, value: Any, path: str) -> Optional[GameStateSnapshot]:
    if value is None:
        return None
    raw = reader.mapping(value, path)
    player_vp = {
        player_id: _read_player_vp(reader, entry, f"{path}.player_vp.{player_id}")
        for player_id, entry in _read_player_keyed(reader, raw.get("player_vp"), f"{path}.player_vp")
    }
    milestones: Dict[str, MilestoneClaim] = {}
    for name, entry in reader.mapping(raw.get("milestones"), f"{path}.milestones").items():
        entry_path = f"{path}.milestones.{name}"
        entry = reader.mapping(entry, entry_path)
        milestones[name] = MilestoneClaim(
            name=name,
            claimed_by=reader.text(entry.get("claimed_by"), f"{entry_path}.claimed_by"),
            player_id=_lenient_player_id(entry.get("player_id")),
            move_number=reader.integer(entry.get("move_number"), f"{entry_path}.move_number"),
            timestamp=reader.text(entry.get("timestamp"), f"{entry_path}.timestamp"),
        )
    awards: Dict[str, AwardFunding] = {}
    for name, entry in reader.mapping(raw.get("awards"), f"{path}.awards").items():
        entry_path = f"{path}.awards.{name}"
        entry = reader.mapping(entry, entry_path)
        awards[name] = AwardFunding(
            name=name,
            funded_by=reader.text(entry.get("funded_by"), f"{entry_path}.funded_by"),
            player_id=_lenient_player_id(entry.get("player_id")),
            move_number=reader.integer(entry.get("move_number"), f"{entry_path}.move_number"),
            timestamp=reader.text(entry.get("timestamp"), f"{entry_path}.timestamp"),
        )
    trackers: Dict[int, Dict[str, int]] = {}
    for player_id, entry in _read_player_keyed(
        reader, raw.get("player_trackers"), f"{path}.player_trackers"
    ):
        values: Dict[str, int] = {}
        for tracker, amount in reader.mapping(
            entry, f"{path}.player_trackers.{player_id}"
        ).items():
            parsed = reader.integer(amount, f"{path}.player_trackers.{player_id}.{tracker}")
            if parsed is not None:
                values[tracker] = parsed
        trackers[player_id] = values
    return GameStateSnapshot(
        move_number=reader.integer(raw.get("move_number"), f"{path}.move_number"),
        generation=reader.integer(raw.get("generation"), f"{path}.generation"),
        temperature=reader.integer(raw.get("temperature"), f"{path}.temperature"),
        oxygen=reader.integer(raw.get("oxygen"), f"{path}.oxygen"),
        oceans=reader.integer(raw.get("oceans"), f"{path}.oceans"),
        player_vp=player_vp,
        milestones=milestones,
        awards=awards,
        player_trackers=trackers,
    )


def _read_player(reader: _Reader, player_id: int, value: Any, path: str) -> PlayerSummary:
    raw = reader.mapping(value, path)
    elo: Optional[EloData] = None
    if raw.get("elo_data") is not None:
        elo_raw = reader.mapping(raw.get("elo_data"), f"{path}.elo_data")
        elo = EloData(
            **{
                name: reader.integer(elo_raw.get(name), f"{path}.elo_data.{name}")
                for name in (
                    "arena_points",
                    "arena_points_change",
                    "game_rank",
                    "game_rank_change",
                )
            }
        )
    hand: Optional[StartingHand] = None
    if raw.get("starting_hand") is not None:
        hand_raw = reader.mapping(raw.get("starting_hand"), f"{path}.starting_hand")
        hand = StartingHand(
            corporations=reader.names(hand_raw.get("corporations"), f"{path}.starting_hand.corporations"),
            preludes=reader.names(hand_raw.get("preludes"), f"{path}.starting_hand.preludes"),
            project_cards=reader.names(
                hand_raw.get("project_cards"), f"{path}.starting_hand.project_cards"
            ),
        )
    return PlayerSummary(
        player_id=player_id,
        player_name=reader.text(raw.get("player_name"), f"{path}.player_name"),
        corporation=reader.text(raw.get("corporation"), f"{path}.corporation"),
        final_vp=reader.integer(raw.get("final_vp"), f"{path}.final_vp"),
        final_tr=reader.integer(raw.get("final_tr"), f"{path}.final_tr"),
        vp_breakdown=_read_totals(reader, raw.get("vp_breakdown"), f"{path}.vp_breakdown"),
        cards_played=reader.names(raw.get("cards_played"), f"{path}.cards_played"),
        milestones_claimed=reader.names(raw.get("milestones_claimed"), f"{path}.milestones_claimed"),
        awards_funded=reader.names(raw.get("awards_funded"), f"{path}.awards_funded"),
        elo_data=elo,
        starting_hand=hand,
    )


def _read_move(reader: _Reader, value: Any, path: str) -> Move:
    raw = reader.mapping(value, path)
    return Move(
        move_number=reader.integer(raw.get("move_number"), f"{path}.move_number"),
        timestamp=reader.text(raw.get("timestamp"), f"{path}.timestamp"),
        player_id=_lenient_player_id(raw.get("player_id")),
        player_name=reader.text(raw.get("player_name"), f"{path}.player_name"),
        action_type=reader.text(raw.get("action_type"), f"{path}.action_type"),
        description=reader.text(raw.get("description"), f"{path}.description"),
        card_played=reader.text(raw.get("card_played"), f"{path}.card_played"),
        card_cost=reader.integer(raw.get("card_cost"), f"{path}.card_cost"),
        tile_placed=reader.text(raw.get("tile_placed"), f"{path}.tile_placed"),
        tile_location=reader.text(raw.get("tile_location"), f"{path}.tile_location"),
        game_state=_read_snapshot(reader, raw.get("game_state"), f"{path}.game_state"),
    )


def parse_document(payload: Any) -> RawLogDocument:
    """Validate a decoded JSON payload and build a :class:`RawLogDocument`.

    Every violation found is reported at once through
    :class:`DocumentValidationError`.
    """

    reader = _Reader()
    if not isinstance(payload, Mapping):
        raise DocumentValidationError(["document must be a JSON object"])

    replay_id = reader.integer(payload.get("replay_id"), "replay_id", required=True)
    if replay_id is not None and replay_id <= 0:
        reader.fail("replay_id", "must be a positive integer")
    perspective = reader.integer(
        payload.get("player_perspective"), "player_perspective", required=True
    )

    players: Dict[int, PlayerSummary] = {}
    raw_players = reader.mapping(payload.get("players"), "players", required=True)
    if isinstance(payload.get("players"), Mapping) and not raw_players:
        reader.fail("players", "must not be empty")
    for player_id, entry in _read_player_keyed(reader, raw_players, "players"):
        players[player_id] = _read_player(reader, player_id, entry, f"players.{player_id}")
    if perspective is not None and players and perspective not in players:
        reader.fail("player_perspective", f"{perspective} is not a key of players")

    moves = tuple(
        _read_move(reader, entry, f"moves[{index}]")
        for index, entry in enumerate(
            reader.sequence(payload.get("moves"), "moves", required=True)
        )
    )
    progression = []
    for index, entry in enumerate(
        reader.sequence(payload.get("parameter_progression"), "parameter_progression")
    ):
        path = f"parameter_progression[{index}]"
        raw = reader.mapping(entry, path)
        progression.append(
            ParameterStep(
                **{
                    name: reader.integer(raw.get(name), f"{path}.{name}")
                    for name in ("move_number", "generation", "temperature", "oxygen", "oceans")
                }
            )
        )

    document_kwargs = dict(
        game_date=reader.text(payload.get("game_date"), "game_date"),
        game_duration=reader.text(payload.get("game_duration"), "game_duration"),
        winner=reader.text(payload.get("winner"), "winner"),
        generations=reader.integer(payload.get("generations"), "generations"),
        map_name=reader.text(payload.get("map"), "map"),
        prelude_on=reader.flag(payload.get("prelude_on"), "prelude_on"),
        colonies_on=reader.flag(payload.get("colonies_on"), "colonies_on"),
        corporate_era_on=reader.flag(payload.get("corporate_era_on"), "corporate_era_on"),
        draft_on=reader.flag(payload.get("draft_on"), "draft_on"),
        beginners_corporations_on=reader.flag(
            payload.get("beginners_corporations_on"), "beginners_corporations_on"
        ),
        game_speed=reader.text(payload.get("game_speed"), "game_speed"),
        final_state=_read_snapshot(reader, payload.get("final_state"), "final_state"),
        metadata=dict(reader.mapping(payload.get("metadata"), "metadata")),
    )

    # Missing identifiers are already recorded as errors by the reader.
    if reader.errors or replay_id is None or perspective is None:
        raise DocumentValidationError(reader.errors)
    return RawLogDocument(
        replay_id=replay_id,
        player_perspective=perspective,
        players=players,
        moves=moves,
        parameter_progression=tuple(progression),
        **document_kwargs,
    )


def load_document(data: Union[bytes, str]) -> RawLogDocument:
    """Decode JSON text and validate it as a replay log."""

    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise DocumentValidationError([f"document is not UTF-8: {exc}"]) from exc
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise DocumentValidationError([f"document is not valid JSON: {exc}"]) from exc
    return parse_document(payload)


__all__ = [
    "AwardFunding",
    "AwardScore",
    "DocumentValidationError",
    "EloData",
    "GameStateSnapshot",
    "MilestoneClaim",
    "Move",
    "ParameterStep",
    "PlayerSummary",
    "PlayerVictoryPoints",
    "RawLogDocument",
    "StartingHand",
    "VpTotals",
    "load_document",
    "parse_document",
]
