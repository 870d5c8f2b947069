import pytest

from bracket_engine.teams import (
    Playoff,
    Team,
    coerce_team_id,
    parse_playoff_selection,
    substitute_playoff_winners,
)


def make_playoff():
    return Playoff(
        playoff_id="P1",
        name="Path 1",
        destination_group="A",
        placeholder_team_id=4,
        candidates=(
            Team(team_id=201, name="North", code="NOR", flag_url="north.png"),
            Team(team_id=202, name="South", code="SOU", flag_url="south.png"),
        ),
    )


ROSTER = [
    Team(team_id=1, name="One", group="A"),
    Team(team_id=4, name="Play-off P1", group="A", is_playoff=True),
]


@pytest.mark.parametrize(
    "selection, expected",
    [
        (202, 202),
        ("202", 202),
        (" 202 ", 202),
        ({"semi1": 201, "semi2": 202, "final": 201}, 201),
        ({"semi1": 201}, None),
        ("", None),
        (None, None),
        ("abc", None),
        (2.5, None),
    ],
)
def test_parse_playoff_selection(selection, expected):
    assert parse_playoff_selection(selection) == expected


def test_coerce_rejects_bools_and_infinity():
    assert coerce_team_id(True) is None
    assert coerce_team_id(float("inf")) is None


class TestSubstitutePlayoffWinners:
    def test_winner_takes_placeholder_slot(self):
        teams = substitute_playoff_winners(ROSTER, {"P1": make_playoff()}, {"P1": "202"})
        assert teams[0] is ROSTER[0]
        winner = teams[1]
        assert (winner.team_id, winner.name, winner.code) == (4, "South", "SOU")
        assert winner.playoff_winner_id == 202
        assert winner.group == "A"
        assert not winner.is_undecided_placeholder

    def test_no_selection_keeps_placeholder(self):
        teams = substitute_playoff_winners(ROSTER, {"P1": make_playoff()}, {})
        assert teams[1].name == "Play-off P1"
        assert teams[1].is_undecided_placeholder

    def test_unknown_candidate_is_ignored(self):
        teams = substitute_playoff_winners(ROSTER, {"P1": make_playoff()}, {"P1": 999})
        assert teams[1].is_undecided_placeholder
