import json

import pytest

from tm_stats.document import DocumentValidationError, load_document, parse_document


def test_parse_document_builds_typed_view(make_document):
    document = parse_document(make_document())

    assert document.replay_id == 12345
    assert document.table_id == 12345
    assert document.player_perspective == 1
    assert set(document.players) == {1, 2}
    assert document.perspective_player.player_name == "Alice"
    assert document.players[1].elo_data.arena_points == 1520
    assert document.players[2].elo_data is None
    assert document.players[1].starting_hand.preludes == ("Donation", "Supply Drop")
    assert document.moves[2].card_played == "Comet"
    assert document.moves[2].game_state.generation == 2
    assert document.final_state.player_vp[2].awards["Landlord"].place == 1
    assert document.final_state.milestones["Terraformer"].player_id == 1
    assert document.map_name == "Tharsis"
    assert document.prelude_on is True


def test_integer_fields_accept_numbers_and_numeric_strings(make_document):
    payload = make_document()
    payload["replay_id"] = 12345
    payload["player_perspective"] = 1
    payload["players"]["1"]["final_vp"] = "45"

    document = parse_document(payload)

    assert document.replay_id == 12345
    assert document.players[1].final_vp == 45


@pytest.mark.parametrize(
    "mutate, expected",
    [
        (lambda d: d.pop("replay_id"), "replay_id is required"),
        (lambda d: d.update(replay_id="abc"), "replay_id must be an integer"),
        (lambda d: d.update(replay_id="-4"), "replay_id must be a positive integer"),
        (lambda d: d.pop("player_perspective"), "player_perspective is required"),
        (lambda d: d.update(player_perspective="3"), "3 is not a key of players"),
        (lambda d: d.update(players={}), "players must not be empty"),
        (lambda d: d.pop("players"), "players is required"),
        (lambda d: d.pop("moves"), "moves is required"),
        (lambda d: d.update(moves={}), "moves must be a list"),
        (lambda d: d["players"].update(x={}), "players key 'x' must be an integer"),
    ],
)
def test_contract_violations_are_rejected(make_document, mutate, expected):
    payload = make_document()
    mutate(payload)

    with pytest.raises(DocumentValidationError) as excinfo:
        parse_document(payload)

    assert any(expected in detail for detail in excinfo.value.details)


def test_booleans_are_not_integers(make_document):
    payload = make_document()
    payload["players"]["1"]["final_vp"] = True

    with pytest.raises(DocumentValidationError) as excinfo:
        parse_document(payload)

    assert excinfo.value.details == ["players.1.final_vp must be an integer"]


def test_every_violation_is_reported(make_document):
    payload = make_document()
    payload["replay_id"] = "nope"
    payload["generations"] = "seven"
    payload["prelude_on"] = "yes"

    with pytest.raises(DocumentValidationError) as excinfo:
        parse_document(payload)

    assert len(excinfo.value.details) == 3


def test_system_moves_without_numeric_actor_are_kept(make_document):
    payload = make_document()
    payload["moves"][0]["player_id"] = "system"

    document = parse_document(payload)

    assert document.moves[0].player_id is None


def test_load_document_decodes_json(make_document):
    raw = json.dumps(make_document()).encode("utf-8")

    assert load_document(raw).replay_id == 12345


def test_load_document_rejects_malformed_json():
    with pytest.raises(DocumentValidationError) as excinfo:
        load_document(b"{not json")

    assert "not valid JSON" in str(excinfo.value)


def test_non_object_document_is_rejected():
    with pytest.raises(DocumentValidationError):
        parse_document(["replay_id", "12345"])
