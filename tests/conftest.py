import copy
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

# Make tests robust to both installed and src/ layouts
_HERE = Path(__file__).resolve()
_ROOT = _HERE.parents[1]
_SRC = _ROOT / "src"
if _SRC.exists() and str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

from tm_stats import SQLiteStore  # noqa: E402


FACT_TABLES = (
    "game_stats",
    "game_player_stats",
    "starting_hand_corporations",
    "starting_hand_preludes",
    "starting_hand_cards",
    "game_milestones",
    "game_player_awards",
    "parameter_changes",
    "game_cards",
    "game_city_locations",
    "game_greenery_locations",
    "game_player_tracker_changes",
)


@pytest.fixture
def store(tmp_path):
    db_path = tmp_path / "tm_stats.sqlite"
    s = SQLiteStore(str(db_path))
    s.setup_schema()
    try:
        yield s
    finally:
        s.close()


def _state(
    move_number: int,
    generation: int,
    temperature: int = -30,
    oxygen: int = 0,
    oceans: int = 0,
    trackers: Optional[Dict[str, Dict[str, int]]] = None,
) -> Dict[str, Any]:
    return {
        "move_number": move_number,
        "generation": generation,
        "temperature": temperature,
        "oxygen": oxygen,
        "oceans": oceans,
        "player_vp": {},
        "milestones": {},
        "awards": {},
        "player_trackers": trackers or {},
    }


def _move(
    move_number: int,
    player_id: str,
    action_type: str,
    description: str,
    state: Optional[Dict[str, Any]],
    **extra: Any,
) -> Dict[str, Any]:
    names = {"1": "Alice", "2": "Bob"}
    move = {
        "move_number": move_number,
        "timestamp": f"00:{move_number:02d}:00",
        "player_id": player_id,
        "player_name": names.get(player_id, "System"),
        "action_type": action_type,
        "description": description,
        "card_played": None,
        "card_cost": None,
        "tile_placed": None,
        "tile_location": None,
        "game_state": state,
    }
    move.update(extra)
    return move


def _make_document(
    *,
    replay_id: str = "12345",
    player_perspective: str = "1",
) -> Dict[str, Any]:
    """Two-player game over seven generations seen from Alice's side.

    Alice claims Terraformer in generation 4, Bob funds Landlord in
    generation 6 and finishes first in it.
    """

    final_trackers = {
        "1": {"M€ Production": 3, "Count of Space tags": 1, "Count of Building tags": 0},
        "2": {"M€ Production": 0},
    }
    moves = [
        _move(
            1,
            "1",
            "other",
            "Alice chooses Ecoline | You buy Power Plant | You buy Comet",
            _state(
                1,
                1,
                trackers={
                    "1": {"M€ Production": 1, "Count of Building tags": 0},
                    "2": {"M€ Production": 0},
                },
            ),
        ),
        _move(
            2,
            "2",
            "place_tile",
            "Bob places City",
            _state(2, 1),
            tile_placed="City",
            tile_location="Hex 4,5",
        ),
        _move(
            10,
            "1",
            "play_card",
            "Alice plays card Comet",
            _state(
                10,
                2,
                temperature=-28,
                oceans=1,
                trackers={"1": {"M€ Production": 1, "Count of Space tags": 1}},
            ),
            card_played="Comet",
            card_cost=21,
        ),
        _move(
            20,
            "1",
            "claim_milestone",
            "Alice claims milestone Terraformer",
            _state(20, 4, temperature=-28, oceans=1),
        ),
        _move(
            25,
            "2",
            "place_tile",
            "Bob places Forest",
            _state(25, 5, temperature=-28, oxygen=1, oceans=1),
            tile_placed="Forest",
            tile_location="Hex 5,5",
        ),
        _move(
            30,
            "2",
            "fund_award",
            "Bob funds Landlord",
            _state(30, 6, temperature=-28, oxygen=1, oceans=1),
        ),
        _move(
            35,
            "1",
            "new_generation",
            "New generation 7 | You draw Birds | You draw Fish",
            _state(35, 7, temperature=-28, oxygen=1, oceans=1, trackers=final_trackers),
        ),
        _move(
            36,
            "2",
            "standard_project",
            "Bob uses standard project Asteroid",
            _state(36, 7, temperature=-26, oxygen=1, oceans=1),
        ),
    ]
    final_state = _state(
        36, 7, temperature=-26, oxygen=1, oceans=1, trackers=final_trackers
    )
    final_state["player_vp"] = {
        "1": {
            "total": 45,
            "total_details": {
                "tr": 30,
                "awards": 2,
                "milestones": 5,
                "cities": 0,
                "greeneries": 0,
                "cards": 8,
            },
            "details": {
                "awards": {"Landlord": {"vp": 2, "counter": 1, "place": 2}},
                "milestones": {"Terraformer": {"vp": 5}},
                "cities": {},
                "greeneries": {},
                "cards": {"Comet": {"vp": 0}, "Ecology Experts": {"vp": 1}},
            },
        },
        "2": {
            "total": 38,
            "total_details": {
                "tr": 28,
                "awards": 5,
                "milestones": 0,
                "cities": 1,
                "greeneries": 1,
                "cards": 3,
            },
            "details": {
                "awards": {"Landlord": {"vp": 5, "counter": 2, "place": 1}},
                "milestones": {},
                "cities": {"Hex 4,5": {"vp": 1}},
                "greeneries": {"Hex 5,5": {"vp": 1}},
                "cards": {"Mining Rights": {"vp": 0}},
            },
        },
    }
    final_state["milestones"] = {
        "Terraformer": {
            "claimed_by": "Alice",
            "player_id": "1",
            "move_number": 20,
            "timestamp": "00:20:00",
        }
    }
    final_state["awards"] = {
        "Landlord": {
            "funded_by": "Bob",
            "player_id": "2",
            "move_number": 30,
            "timestamp": "00:30:00",
        }
    }
    players = {
        "1": {
            "player_id": "1",
            "player_name": "Alice",
            "corporation": "Ecoline",
            "final_vp": 45,
            "final_tr": 30,
            "vp_breakdown": {
                "tr": 30,
                "awards": 2,
                "milestones": 5,
                "cities": 0,
                "greeneries": 0,
                "cards": 8,
            },
            "cards_played": ["Donation", "Comet", "Ecology Experts"],
            "milestones_claimed": ["Terraformer"],
            "awards_funded": [],
            "elo_data": {
                "arena_points": 1520,
                "arena_points_change": 12,
                "game_rank": 310,
                "game_rank_change": 4,
            },
            "starting_hand": {
                "corporations": ["Ecoline", "Helion"],
                "preludes": ["Donation", "Supply Drop"],
                "project_cards": ["Power Plant", "Comet", "Asteroid", "Search For Life"],
            },
        },
        "2": {
            "player_id": "2",
            "player_name": "Bob",
            "corporation": "Tharsis Republic",
            "final_vp": 38,
            "final_tr": 28,
            "vp_breakdown": {
                "tr": 28,
                "awards": 5,
                "milestones": 0,
                "cities": 1,
                "greeneries": 1,
                "cards": 3,
            },
            "cards_played": ["Mining Rights"],
            "milestones_claimed": [],
            "awards_funded": ["Landlord"],
        },
    }
    document = {
        "replay_id": replay_id,
        "player_perspective": player_perspective,
        "game_date": "2025-03-14",
        "game_duration": "01:25",
        "winner": "Alice",
        "generations": 7,
        "map": "Tharsis",
        "prelude_on": True,
        "colonies_on": False,
        "corporate_era_on": True,
        "draft_on": False,
        "beginners_corporations_on": False,
        "game_speed": "Real-time",
        "players": players,
        "moves": moves,
        "final_state": final_state,
        "parameter_progression": [],
        "metadata": {"total_moves": len(moves)},
    }
    return copy.deepcopy(document)


@pytest.fixture(name="make_document")
def make_document_fixture():
    return _make_document


@pytest.fixture(name="fact_tables")
def fact_tables_fixture():
    return FACT_TABLES
