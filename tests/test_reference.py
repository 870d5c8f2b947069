"""
Tests for loading the World Cup 2026 reference tables.
"""

from itertools import combinations

import pytest

from bracket_engine.bracket import FromGroup, FromMatch, FromThirdPlace, LOSER
from bracket_engine.reference import (
    TournamentConfig,
    load_default_config,
    load_knockout_matches,
    load_playoffs,
    load_round_of_32_combinations,
)
from bracket_engine.third_place import GROUP_LETTERS


class TestDefaultConfig:
    def test_sizes(self, config):
        assert len(config.teams) == 48
        assert len(config.playoffs) == 6
        assert len(config.combinations) == 495
        assert len(config.topology) == 32
        assert len(config.schedule) == 6

    def test_cached(self):
        assert load_default_config() is load_default_config()

    def test_every_third_place_set_has_a_combination(self, config):
        for letters in combinations(GROUP_LETTERS, 8):
            assert "".join(letters) in config.combinations

    def test_assigned_groups_are_in_slot_pools(self, config):
        pools = {}
        for match in config.topology:
            for source in match.sources:
                if isinstance(source, FromThirdPlace):
                    pools[source.slot_key] = source.pool
        assert len(pools) == 8
        for combo in config.combinations:
            for slot_key, pool in pools.items():
                assert combo.group_for(slot_key) in pool

    def test_rosters(self, config):
        group_a = config.group_roster("A")
        assert [t.name for t in group_a[:3]] == ["Mexico", "South Africa", "Korea Republic"]
        assert group_a[3].is_playoff
        assert config.team_by_id(9).name == "Brazil"
        with pytest.raises(ValueError):
            config.group_roster("M")

    def test_playoffs_feed_placeholders(self, config):
        playoff = config.playoff("UEFA_A")
        assert playoff.destination_group == "B"
        assert playoff.placeholder_team_id == 6
        assert [t.name for t in playoff.candidates][:2] == ["Italy", "Wales"]
        assert len(config.playoff("FIFA_1").candidates) == 3

    def test_bracket_sources(self, config):
        topology = config.topology
        assert topology.match("M74").home == FromGroup("E", 1)
        assert topology.match("M74").away == FromThirdPlace(("A", "B", "C", "D", "F"), "1E")
        assert topology.match("M103").home == FromMatch("M101", LOSER)
        assert topology.dependents["M101"] == ["M103", "M104"]
        assert topology.dependents["M74"] == ["M89"]
        assert [len(topology.by_stage(s)) for s in topology.stages] == [16, 8, 4, 2, 1, 1]


class TestLoaders:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_knockout_matches(tmp_path / "missing.csv")

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "knockout.csv"
        path.write_text("match_id,stage,home\n73,Round of 32,Winner Group A\n")
        with pytest.raises(ValueError):
            load_knockout_matches(path)

    def test_duplicate_match_ids(self, tmp_path):
        path = tmp_path / "knockout.csv"
        path.write_text(
            "match_id,stage,home,away\n"
            "1,Semifinal,Winner Group A,Runner-up Group B\n"
            "1,Semifinal,Winner Group B,Runner-up Group A\n"
        )
        with pytest.raises(ValueError):
            load_knockout_matches(path)

    def test_small_bracket_from_csv(self, tmp_path):
        path = tmp_path / "knockout.csv"
        path.write_text(
            "match_id,stage,home,away,label\n"
            "2,Semifinal,Winner Group B,Runner-up Group A,\n"
            "1,Semifinal,Winner Group A,Runner-up Group B,SF1\n"
            "3,Final,Winner Match 1,Winner Match 2,Final\n"
        )
        topology = load_knockout_matches(path)
        assert [m.match_id for m in topology] == ["M1", "M2", "M3"]
        assert topology.match("M1").label == "SF1"
        assert topology.match("M2").label == ""

    def test_inconsistent_combination(self, tmp_path):
        path = tmp_path / "combos.csv"
        path.write_text(
            "option,combo,1A,1B,1D,1E,1G,1I,1K,1L\n"
            "1,ABCDEFGH,H,G,B,C,A,F,D,D\n"
        )
        with pytest.raises(ValueError):
            load_round_of_32_combinations(path)

    def test_playoffs_from_csv(self, tmp_path):
        path = tmp_path / "playoffs.csv"
        path.write_text(
            "playoff_id,playoff_name,destination_group,placeholder_team_id,team_id,name\n"
            "P1,Path 1,A,4,201,North\n"
            "P1,Path 1,A,4,202,South\n"
        )
        playoffs = load_playoffs(path)
        assert list(playoffs) == ["P1"]
        assert playoffs["P1"].candidate(202).name == "South"
        assert playoffs["P1"].candidate(203) is None


class TestConfigValidation:
    def test_short_group_rejected(self, config):
        with pytest.raises(ValueError):
            TournamentConfig(
                teams=config.teams[:-1],
                playoffs=config.playoffs,
                combinations=config.combinations,
                topology=config.topology,
            )

    def test_placeholder_must_exist(self, config):
        teams = [t for t in config.teams if t.team_id != 4]
        with pytest.raises(ValueError):
            TournamentConfig(
                teams=teams,
                playoffs=config.playoffs,
                combinations=config.combinations,
                topology=config.topology,
            )

    def test_schedule_must_cover_every_pair(self, config):
        with pytest.raises(ValueError):
            TournamentConfig(
                teams=config.teams,
                playoffs=config.playoffs,
                combinations=config.combinations,
                topology=config.topology,
                schedule=config.schedule[:5],
            )
