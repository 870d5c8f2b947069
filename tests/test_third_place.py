"""
Tests for ranking third-placed teams and matching them to a round-of-32 combination.
"""

import pytest

from bracket_engine.standings import GroupStandings, TeamStats, UnresolvableTie
from bracket_engine.third_place import (
    GROUP_LETTERS,
    ThirdPlaceCombination,
    ThirdPlaceEntry,
    ThirdPlaceTable,
    normalize_letters,
    rank_third_places,
    select_best_third,
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

ABCDEFGI = {
    "1A": "C",
    "1B": "G",
    "1D": "B",
    "1E": "D",
    "1G": "A",
    "1I": "F",
    "1K": "E",
    "1L": "I",
}
ABCDEFGH = {
    "1A": "H",
    "1B": "G",
    "1D": "B",
    "1E": "C",
    "1G": "A",
    "1I": "F",
    "1K": "D",
    "1L": "E",
}


def make_stats(team_id, points=0, goal_difference=0, goals_for=0, position=None):
    return TeamStats(
        team_id=team_id,
        team_name=f"Team {team_id}",
        points=points,
        goal_difference=goal_difference,
        goals_for=goals_for,
        position=position,
    )


def make_group(group, third_points=3, third_gd=0, third_gf=1, complete=True, tie=False):
    base = (GROUP_LETTERS.index(group) + 1) * 10
    standings = [
        make_stats(base + 1, 9, 5, 6, 1),
        make_stats(base + 2, 6, 2, 4, 2),
        make_stats(base + 3, third_points, third_gd, third_gf, 3),
        make_stats(base + 4, 0, -7, 1, 4),
    ]
    unresolvable = None
    if tie:
        unresolvable = UnresolvableTie(teams=standings[1:3], reason="tied")
    return GroupStandings(standings=standings, unresolvable_tie=unresolvable, is_complete=complete)


def all_groups(**overrides):
    return {g: overrides.get(g) or make_group(g) for g in GROUP_LETTERS}


# -----------------------------------------------------------------------------
# Letters and table
# -----------------------------------------------------------------------------

class TestNormalizeLetters:
    def test_sorts(self):
        assert normalize_letters("HGFEDCBA") == "ABCDEFGH"

    def test_separators_and_lists(self):
        assert normalize_letters("a/b/c/d/e/f/g/h") == "ABCDEFGH"
        assert normalize_letters(list("LKJIHGFE")) == "EFGHIJKL"

    @pytest.mark.parametrize("letters", ["ABCDEFG", "ABCDEFGA", "ABCDEFGM", "ABCDEFGHI", None])
    def test_rejects_malformed(self, letters):
        with pytest.raises(ValueError):
            normalize_letters(letters)


class TestThirdPlaceTable:
    def test_lookup_is_order_independent(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGH": ABCDEFGH})
        combo = table.lookup("HGFEDCBA")
        assert combo is not None
        assert combo.group_for("1E") == "C"
        assert "ABCDEFGH" in table
        assert "ABCDEFGI" not in table
        assert "nonsense" not in table

    def test_assignments_must_match_letters(self):
        bad = dict(ABCDEFGH, **{"1L": "I"})
        with pytest.raises(ValueError):
            ThirdPlaceTable.from_mapping({"ABCDEFGH": bad})

    def test_missing_slot(self):
        bad = {k: v for k, v in ABCDEFGH.items() if k != "1A"}
        with pytest.raises(ValueError):
            ThirdPlaceTable.from_mapping({"ABCDEFGH": bad})

    def test_duplicate_rows(self):
        combo = ThirdPlaceCombination(letters="ABCDEFGH", assignments=ABCDEFGH)
        with pytest.raises(ValueError):
            ThirdPlaceTable([combo, combo])


# -----------------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------------

def test_rank_by_points_goal_difference_goals():
    entries = [
        ThirdPlaceEntry("A", make_stats(1, 3, 0, 2)),
        ThirdPlaceEntry("B", make_stats(2, 4, -1, 1)),
        ThirdPlaceEntry("C", make_stats(3, 3, 1, 1)),
        ThirdPlaceEntry("D", make_stats(4, 3, 0, 3)),
    ]
    assert [e.group for e in rank_third_places(entries)] == ["B", "C", "D", "A"]


def test_level_entries_fall_back_to_group_letter():
    entries = [ThirdPlaceEntry(g, make_stats(i, 3, 0, 1)) for i, g in enumerate("LDAB")]
    assert [e.group for e in rank_third_places(entries)] == ["A", "B", "D", "L"]


# -----------------------------------------------------------------------------
# Selection
# -----------------------------------------------------------------------------

class TestSelectBestThird:
    def test_valid_combination(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGH": ABCDEFGH})
        result = select_best_third(all_groups(), table)
        assert result.ready and result.valid
        assert result.qualifying_groups == "ABCDEFGH"
        assert result.combination.letters == "ABCDEFGH"
        assert len(result.ranking) == 12
        assert result.qualifying_team_ids == [13, 23, 33, 43, 53, 63, 73, 83]

    def test_better_third_places_qualify(self):
        table = ThirdPlaceTable.from_mapping(
            {"ABCDEFGH": ABCDEFGH, "ABCDEFGI": ABCDEFGI}
        )
        result = select_best_third(all_groups(I=make_group("I", third_points=4)), table)
        assert result.valid
        assert result.qualifying_groups == "ABCDEFGI"
        assert result.best8[0].group == "I"

    def test_missing_combination_is_invalid_not_substituted(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGI": ABCDEFGI})
        result = select_best_third(all_groups(), table)
        assert result.ready
        assert not result.valid
        assert result.combination is None
        assert result.qualifying_groups == "ABCDEFGH"
        assert "ABCDEFGH" in result.reason

    def test_incomplete_group_is_not_ready(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGH": ABCDEFGH})
        result = select_best_third(all_groups(E=make_group("E", complete=False)), table)
        assert not result.ready
        assert not result.valid
        assert "Group E" in result.reason

    def test_tied_third_place_is_not_ready(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGH": ABCDEFGH})
        result = select_best_third(all_groups(K=make_group("K", tie=True)), table)
        assert not result.ready

    def test_missing_group_is_not_ready(self):
        table = ThirdPlaceTable.from_mapping({"ABCDEFGH": ABCDEFGH})
        groups = all_groups()
        del groups["L"]
        assert not select_best_third(groups, table).ready
