"""Turn a validated replay log into normalised fact rows.

Extraction is a pure projection: no I/O, no clock. The same document always
yields the same :class:`~tm_stats.facts.FactSet`.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .document import (
    GameStateSnapshot,
    Move,
    PlayerSummary,
    RawLogDocument,
    VP_CATEGORIES,
    VpTotals,
)
from .facts import (
    FactSet,
    GameCardRow,
    GameCityLocationRow,
    GameGreeneryLocationRow,
    GameMilestoneRow,
    GamePlayerAwardRow,
    GamePlayerStatsRow,
    GamePlayerTrackerChangeRow,
    GameStatsRow,
    ParameterChangeRow,
    StartingHandCardRow,
    StartingHandCorporationRow,
    StartingHandPreludeRow,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PARAMETERS = ("temperature", "oxygen", "oceans")
STARTING_PARAMETERS = {"temperature": -30, "oxygen": 0, "oceans": 0}
PARAMETER_STEPS = {"temperature": 2, "oxygen": 1, "oceans": 1}

CITY_TILES = frozenset({"city"})
GREENERY_TILES = frozenset({"forest", "greenery"})

DRAW_TYPE_STARTING_HAND = "StartingHand"
DRAW_TYPE_DRAFT = "Draft"
DRAW_TYPE_DRAW = "Draw"

_CARD_COUNT = re.compile(r"^\d+\s+cards?$", re.IGNORECASE)


class ExtractionError(ValueError):
    """Raised when a document is internally inconsistent."""


def parse_duration_minutes(value: Optional[str]) -> Optional[int]:
    """Convert an ``HH:MM`` duration to minutes; None when unparseable."""

    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if hours < 0 or not 0 <= minutes < 60:
        return None
    return hours * 60 + minutes


def classify_tracker(name: str) -> str:
    if name.startswith("Count of"):
        return "Tag"
    if "Production" in name:
        return "Production"
    return "Resource"


def split_phrases(description: Optional[str]) -> List[str]:
    if not description:
        return []
    return [part.strip() for part in description.split("|") if part.strip()]


def phrase_cards(description: Optional[str], *verbs: str) -> List[str]:
    """Return card names from ``You <verb> <card>`` phrases of a move description."""

    prefixes = tuple(f"you {verb} " for verb in verbs)
    names: List[str] = []
    for phrase in split_phrases(description):
        lowered = phrase.lower()
        for prefix in prefixes:
            if lowered.startswith(prefix):
                name = phrase[len(prefix) :].strip().rstrip(".").strip()
                if name and not _CARD_COUNT.match(name):
                    names.append(name)
                break
    return names


def _unique(names: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


class StartingHandRules:
    """Decide which offered starting options a player kept.

    Subclass and pass to :class:`FactExtractor` to change the rules.
    """

    def corporation_kept(self, player: PlayerSummary, corporation: str) -> bool:
        if not player.corporation:
            return False
        return corporation.casefold() == player.corporation.casefold()

    def prelude_kept(self, player: PlayerSummary, prelude: str) -> bool:
        played = {card.casefold() for card in player.cards_played}
        return prelude.casefold() in played

    def bought_cards(self, document: RawLogDocument, player: PlayerSummary) -> Set[str]:
        """Cards bought in the player's first buying move, casefolded."""

        for move in document.moves:
            if move.player_id != player.player_id:
                continue
            if not move.description or "you buy" not in move.description.lower():
                continue
            return {name.casefold() for name in phrase_cards(move.description, "buy")}
        return set()

    def project_card_kept(self, bought: Set[str], card: str) -> bool:
        return card.casefold() in bought


class _GameContext:
    """Lookups shared by the individual projections."""

    def __init__(self, document: RawLogDocument) -> None:
        self.document = document
        self.table_id = document.table_id
        self.final_state = self._resolve_final_state(document)
        self.move_generations: List[int] = []
        self.generation_by_move: Dict[int, int] = {}
        current = 1
        for move in document.moves:
            state = move.game_state
            if state is not None and state.generation is not None:
                current = state.generation
            self.move_generations.append(current)
            if move.move_number is not None:
                self.generation_by_move.setdefault(move.move_number, current)
        self._check_references()

    @staticmethod
    def _resolve_final_state(document: RawLogDocument) -> Optional[GameStateSnapshot]:
        if document.final_state is not None:
            return document.final_state
        for move in reversed(document.moves):
            if move.game_state is not None:
                return move.game_state
        return None

    def _require_player(self, player_id: int, what: str) -> None:
        if player_id not in self.document.players:
            raise ExtractionError(
                f"Replay {self.table_id}: {what} references unknown player {player_id}"
            )

    def _snapshots(self) -> Iterator[GameStateSnapshot]:
        for move in self.document.moves:
            if move.game_state is not None:
                yield move.game_state
        if self.document.final_state is not None:
            yield self.document.final_state

    def _check_references(self) -> None:
        for state in self._snapshots():
            for player_id in state.player_vp:
                self._require_player(player_id, "victory point detail")
            for player_id in state.player_trackers:
                self._require_player(player_id, "tracker snapshot")
            for claim in state.milestones.values():
                if claim.player_id is not None:
                    self._require_player(claim.player_id, f"milestone {claim.name}")
            for funding in state.awards.values():
                if funding.player_id is not None:
                    self._require_player(funding.player_id, f"award {funding.name}")
        for move in self.document.moves:
            if move.tile_placed and move.player_id is not None:
                self._require_player(
                    move.player_id, f"tile placement in move {move.move_number}"
                )

    def moves_with_generation(self) -> Iterator[Tuple[Move, int]]:
        return zip(self.document.moves, self.move_generations)

    def generation_of_move(self, move_number: Optional[int]) -> Optional[int]:
        if move_number is None:
            return None
        return self.generation_by_move.get(move_number)

    def actor(self, move: Move) -> Optional[int]:
        if move.player_id is not None and move.player_id in self.document.players:
            return move.player_id
        return None

    def final_score(self, player: PlayerSummary) -> Optional[int]:
        if player.final_vp is not None:
            return player.final_vp
        vp = self.final_vp(player.player_id)
        return vp.total if vp is not None else None

    def final_vp(self, player_id: int):
        if self.final_state is None:
            return None
        return self.final_state.player_vp.get(player_id)

    def last_generation(self) -> Optional[int]:
        generations = [
            state.generation for state in self._snapshots() if state.generation is not None
        ]
        return max(generations) if generations else None


class FactExtractor:
    """Project a :class:`RawLogDocument` onto the twelve fact collections."""

    def __init__(self, *, starting_hand_rules: Optional[StartingHandRules] = None) -> None:
        self.starting_hand_rules = starting_hand_rules or StartingHandRules()

    def extract(self, document: RawLogDocument) -> FactSet:
        ctx = _GameContext(document)
        corporations, preludes, cards = self._starting_hands(ctx)
        facts = FactSet(
            table_id=document.table_id,
            perspective_id=document.player_perspective,
            game_stats=(self._game_stats(ctx),),
            game_player_stats=tuple(self._player_stats(ctx)),
            starting_hand_corporations=tuple(corporations),
            starting_hand_preludes=tuple(preludes),
            starting_hand_cards=tuple(cards),
            game_milestones=tuple(self._milestones(ctx)),
            game_player_awards=tuple(self._awards(ctx)),
            parameter_changes=tuple(self._parameter_changes(ctx)),
            game_cards=tuple(self._game_cards(ctx)),
            game_city_locations=tuple(self._city_locations(ctx)),
            game_greenery_locations=tuple(self._greenery_locations(ctx)),
            game_player_tracker_changes=tuple(self._tracker_changes(ctx)),
        )
        logger.debug("Extracted facts for replay %s: %s", document.table_id, facts.counts())
        return facts

    # Game level
    def _winner(self, ctx: _GameContext) -> Optional[str]:
        document = ctx.document
        if document.winner and document.winner.strip():
            return document.winner.strip()
        best: Optional[PlayerSummary] = None
        best_score: Optional[int] = None
        # Ties go to the lowest player id.
        for player_id in sorted(document.players):
            player = document.players[player_id]
            score = ctx.final_score(player)
            if score is not None and (best_score is None or score > best_score):
                best, best_score = player, score
        if best is None:
            return None
        return best.player_name or str(best.player_id)

    def _game_stats(self, ctx: _GameContext) -> GameStatsRow:
        document = ctx.document
        generations = document.generations
        if generations is None:
            generations = ctx.last_generation()
        return GameStatsRow(
            table_id=ctx.table_id,
            generations=generations,
            duration_minutes=parse_duration_minutes(document.game_duration),
            player_count=len(document.players),
            winner=self._winner(ctx),
            game_date=document.game_date,
            map_name=document.map_name,
            prelude_on=document.prelude_on,
            colonies_on=document.colonies_on,
            corporate_era_on=document.corporate_era_on,
            draft_on=document.draft_on,
            beginners_corporations_on=document.beginners_corporations_on,
            game_speed=document.game_speed,
        )

    def _player_stats(self, ctx: _GameContext) -> List[GamePlayerStatsRow]:
        rows = []
        for player_id in sorted(ctx.document.players):
            player = ctx.document.players[player_id]
            vp = ctx.final_vp(player_id)
            fallback = vp.total_details if vp is not None else VpTotals()
            totals = {
                name: getattr(player.vp_breakdown, name)
                if getattr(player.vp_breakdown, name) is not None
                else getattr(fallback, name)
                for name in VP_CATEGORIES
            }
            elo = player.elo_data
            rows.append(
                GamePlayerStatsRow(
                    table_id=ctx.table_id,
                    player_id=player_id,
                    player_name=player.player_name,
                    corporation=player.corporation,
                    final_score=ctx.final_score(player),
                    final_tr=player.final_tr if player.final_tr is not None else totals["tr"],
                    award_points=totals["awards"],
                    milestone_points=totals["milestones"],
                    city_points=totals["cities"],
                    greenery_points=totals["greeneries"],
                    card_points=totals["cards"],
                    arena_points=elo.arena_points if elo else None,
                    arena_points_change=elo.arena_points_change if elo else None,
                    game_rank=elo.game_rank if elo else None,
                    game_rank_change=elo.game_rank_change if elo else None,
                )
            )
        return rows

    # Starting hands
    def _starting_hands(
        self, ctx: _GameContext
    ) -> Tuple[
        List[StartingHandCorporationRow],
        List[StartingHandPreludeRow],
        List[StartingHandCardRow],
    ]:
        player = ctx.document.perspective_player
        hand = player.starting_hand
        if hand is None:
            return [], [], []
        rules = self.starting_hand_rules
        bought = rules.bought_cards(ctx.document, player)
        corporations = [
            StartingHandCorporationRow(
                ctx.table_id, player.player_id, name, rules.corporation_kept(player, name)
            )
            for name in _unique(hand.corporations)
        ]
        preludes = [
            StartingHandPreludeRow(
                ctx.table_id, player.player_id, name, rules.prelude_kept(player, name)
            )
            for name in _unique(hand.preludes)
        ]
        cards = [
            StartingHandCardRow(
                ctx.table_id, player.player_id, name, rules.project_card_kept(bought, name)
            )
            for name in _unique(hand.project_cards)
        ]
        return corporations, preludes, cards

    # Milestones and awards
    def _claim_move(
        self, ctx: _GameContext, player_id: int, action_type: str, name: str
    ) -> Optional[int]:
        needle = name.casefold()
        for move, generation in ctx.moves_with_generation():
            if move.player_id != player_id or move.action_type != action_type:
                continue
            if needle in (move.description or "").casefold():
                return generation
        return None

    def _milestones(self, ctx: _GameContext) -> List[GameMilestoneRow]:
        rows: Dict[str, GameMilestoneRow] = {}
        final = ctx.final_state
        if final is not None and final.milestones:
            for name, claim in final.milestones.items():
                if claim.player_id is None:
                    logger.debug(
                        "Replay %s: milestone %s has no claimant id; skipped",
                        ctx.table_id,
                        name,
                    )
                    continue
                rows[name] = GameMilestoneRow(
                    table_id=ctx.table_id,
                    milestone=name,
                    claimed_by=claim.player_id,
                    claimed_gen=ctx.generation_of_move(claim.move_number) or 0,
                )
            return list(rows.values())
        for player_id in sorted(ctx.document.players):
            player = ctx.document.players[player_id]
            for name in player.milestones_claimed:
                if name in rows:
                    continue
                generation = self._claim_move(ctx, player_id, "claim_milestone", name)
                rows[name] = GameMilestoneRow(ctx.table_id, name, player_id, generation or 0)
        return list(rows.values())

    def _awards(self, ctx: _GameContext) -> List[GamePlayerAwardRow]:
        rows: List[GamePlayerAwardRow] = []
        final = ctx.final_state
        if final is not None and final.awards:
            for name, funding in final.awards.items():
                if funding.player_id is None:
                    logger.debug(
                        "Replay %s: award %s has no funder id; skipped", ctx.table_id, name
                    )
                    continue
                funded_gen = ctx.generation_of_move(funding.move_number) or 0
                scored = False
                for player_id in sorted(final.player_vp):
                    score = final.player_vp[player_id].awards.get(name)
                    if score is None:
                        continue
                    scored = True
                    rows.append(
                        GamePlayerAwardRow(
                            table_id=ctx.table_id,
                            player_id=player_id,
                            award=name,
                            funded_by=funding.player_id,
                            funded_gen=funded_gen,
                            player_place=score.place,
                            player_counter=score.counter,
                        )
                    )
                if not scored:
                    rows.append(
                        GamePlayerAwardRow(
                            ctx.table_id, funding.player_id, name, funding.player_id,
                            funded_gen, None, None,
                        )
                    )
            return rows
        funded: Set[str] = set()
        for player_id in sorted(ctx.document.players):
            for name in ctx.document.players[player_id].awards_funded:
                if name in funded:
                    continue
                funded.add(name)
                generation = self._claim_move(ctx, player_id, "fund_award", name)
                rows.append(
                    GamePlayerAwardRow(
                        ctx.table_id, player_id, name, player_id, generation or 0, None, None
                    )
                )
        return rows

    # Global parameters
    def _parameter_observations(
        self, ctx: _GameContext
    ) -> List[Tuple[Optional[int], Optional[int], Dict[str, int]]]:
        observations = []
        for move, generation in ctx.moves_with_generation():
            state = move.game_state
            if state is None:
                continue
            values = {
                name: getattr(state, name)
                for name in PARAMETERS
                if getattr(state, name) is not None
            }
            if values:
                observations.append((generation, ctx.actor(move), values))
        if observations:
            return observations
        actors = {
            move.move_number: ctx.actor(move)
            for move in ctx.document.moves
            if move.move_number is not None
        }
        for step in ctx.document.parameter_progression:
            values = {
                name: getattr(step, name)
                for name in PARAMETERS
                if getattr(step, name) is not None
            }
            generation = step.generation
            if generation is None:
                generation = ctx.generation_of_move(step.move_number)
            observations.append((generation, actors.get(step.move_number), values))
        return observations

    def _parameter_changes(self, ctx: _GameContext) -> List[ParameterChangeRow]:
        current = dict(STARTING_PARAMETERS)
        rows: List[ParameterChangeRow] = []
        for generation, actor, values in self._parameter_observations(ctx):
            if generation is None:
                continue
            for name, value in values.items():
                step = PARAMETER_STEPS[name]
                while current[name] + step <= value:
                    current[name] += step
                    rows.append(
                        ParameterChangeRow(
                            table_id=ctx.table_id,
                            parameter=name,
                            generation=generation,
                            increased_to=current[name],
                            increased_by=actor,
                        )
                    )
        return rows

    # Cards
    def _game_cards(self, ctx: _GameContext) -> List[GameCardRow]:
        document = ctx.document
        perspective = document.player_perspective
        ledger: Dict[Tuple[int, str], Dict[str, object]] = {}

        def entry(player_id: int, card: str) -> Dict[str, object]:
            key = (player_id, card)
            if key not in ledger:
                ledger[key] = {}
            return ledger[key]

        def mark(values: Dict[str, object], column: str, value: object) -> None:
            if values.get(column) is None:
                values[column] = value

        hand = document.perspective_player.starting_hand
        if hand is not None:
            bought = self.starting_hand_rules.bought_cards(
                document, document.perspective_player
            )
            for card in _unique(hand.project_cards):
                values = entry(perspective, card)
                mark(values, "seen_gen", 1)
                mark(values, "drawn_gen", 1)
                mark(values, "draw_type", DRAW_TYPE_STARTING_HAND)
                if self.starting_hand_rules.project_card_kept(bought, card):
                    mark(values, "bought_gen", 1)
                    mark(values, "kept_gen", 1)

        for move, generation in ctx.moves_with_generation():
            reason = move.card_played or move.action_type
            for card in phrase_cards(move.description, "draw"):
                values = entry(perspective, card)
                mark(values, "seen_gen", generation)
                mark(values, "drawn_gen", generation)
                mark(values, "draw_type", DRAW_TYPE_DRAW)
                mark(values, "draw_reason", reason)
            for card in phrase_cards(move.description, "draft"):
                values = entry(perspective, card)
                mark(values, "seen_gen", generation)
                mark(values, "drafted_gen", generation)
                mark(values, "draw_type", DRAW_TYPE_DRAFT)
                mark(values, "draw_reason", reason)
            for card in phrase_cards(move.description, "buy"):
                values = entry(perspective, card)
                mark(values, "seen_gen", generation)
                mark(values, "bought_gen", generation)
                mark(values, "kept_gen", generation)
            for card in phrase_cards(move.description, "keep"):
                values = entry(perspective, card)
                mark(values, "seen_gen", generation)
                mark(values, "kept_gen", generation)
            for card in phrase_cards(move.description, "see", "reveal"):
                mark(entry(perspective, card), "seen_gen", generation)
            actor = ctx.actor(move)
            if move.card_played and actor is not None:
                mark(entry(actor, move.card_played), "played_gen", generation)

        played: Set[Tuple[int, str]] = set()
        for player_id in sorted(document.players):
            for card in document.players[player_id].cards_played:
                entry(player_id, card)
                played.add((player_id, card))

        rows = []
        for (player_id, card), values in ledger.items():
            vp_scored = None
            if values.get("played_gen") is not None or (player_id, card) in played:
                vp = ctx.final_vp(player_id)
                if vp is not None:
                    vp_scored = vp.cards.get(card)
            rows.append(
                GameCardRow(
                    table_id=ctx.table_id,
                    player_id=player_id,
                    card=card,
                    vp_scored=vp_scored,
                    **values,
                )
            )
        return rows

    # Tiles
    def _placements(
        self, ctx: _GameContext, kinds: frozenset
    ) -> Iterator[Tuple[int, str, int]]:
        for move, generation in ctx.moves_with_generation():
            kind = (move.tile_placed or "").strip().lower()
            if kind not in kinds or not move.tile_location:
                continue
            if move.player_id is None:
                logger.debug(
                    "Replay %s: %s placement in move %s has no actor; skipped",
                    ctx.table_id,
                    kind,
                    move.move_number,
                )
                continue
            yield move.player_id, move.tile_location, generation

    def _city_locations(self, ctx: _GameContext) -> List[GameCityLocationRow]:
        rows: Dict[Tuple[int, str], GameCityLocationRow] = {}

        def points(player_id: int, location: str) -> int:
            vp = ctx.final_vp(player_id)
            if vp is None:
                return 0
            return vp.cities.get(location) or 0

        for player_id, location, generation in self._placements(ctx, CITY_TILES):
            if (player_id, location) not in rows:
                rows[(player_id, location)] = GameCityLocationRow(
                    ctx.table_id, player_id, location, points(player_id, location), generation
                )
        if ctx.final_state is not None:
            for player_id in sorted(ctx.final_state.player_vp):
                for location in ctx.final_state.player_vp[player_id].cities:
                    if (player_id, location) not in rows:
                        rows[(player_id, location)] = GameCityLocationRow(
                            ctx.table_id, player_id, location, points(player_id, location), None
                        )
        return list(rows.values())

    def _greenery_locations(self, ctx: _GameContext) -> List[GameGreeneryLocationRow]:
        rows: Dict[Tuple[int, str], GameGreeneryLocationRow] = {}
        for player_id, location, generation in self._placements(ctx, GREENERY_TILES):
            if (player_id, location) not in rows:
                rows[(player_id, location)] = GameGreeneryLocationRow(
                    ctx.table_id, player_id, location, generation
                )
        if ctx.final_state is not None:
            for player_id in sorted(ctx.final_state.player_vp):
                for location in ctx.final_state.player_vp[player_id].greeneries:
                    if (player_id, location) not in rows:
                        rows[(player_id, location)] = GameGreeneryLocationRow(
                            ctx.table_id, player_id, location, None
                        )
        return list(rows.values())

    # Trackers
    def _tracker_changes(self, ctx: _GameContext) -> List[GamePlayerTrackerChangeRow]:
        snapshots: List[Tuple[GameStateSnapshot, int, Optional[int]]] = [
            (move.game_state, generation, move.move_number)
            for move, generation in ctx.moves_with_generation()
            if move.game_state is not None
        ]
        final = ctx.document.final_state
        if final is not None:
            last_generation = ctx.move_generations[-1] if ctx.move_generations else 1
            snapshots.append(
                (final, final.generation or last_generation, final.move_number)
            )

        previous: Dict[Tuple[int, str], int] = {}
        changes: Dict[Tuple[int, str, int], Tuple[int, Optional[int]]] = {}
        for state, generation, move_number in snapshots:
            move_number = state.move_number if state.move_number is not None else move_number
            for player_id in sorted(state.player_trackers):
                for tracker, value in state.player_trackers[player_id].items():
                    key = (player_id, tracker)
                    if value != previous.get(key, 0):
                        changes[(player_id, tracker, generation)] = (value, move_number)
                    previous[key] = value

        return [
            GamePlayerTrackerChangeRow(
                table_id=ctx.table_id,
                player_id=player_id,
                tracker=tracker,
                tracker_type=classify_tracker(tracker),
                generation=generation,
                move_number=move_number,
                changed_to=value,
            )
            for (player_id, tracker, generation), (value, move_number) in changes.items()
        ]


__all__ = [
    "ExtractionError",
    "FactExtractor",
    "StartingHandRules",
    "classify_tracker",
    "parse_duration_minutes",
    "phrase_cards",
]
