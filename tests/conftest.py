import pytest

from bracket_engine.reference import load_default_config
from bracket_engine.resolution import PredictionState, TournamentResolver
from bracket_engine.standings import GROUP_SCHEDULE, normalize_scores

# Every fixture won 1-0 by the first-listed team: positions finish in roster order
# with 9/6/3/0 points, and every third-placed team ends on 3 points, -1, 1 goal.
ROSTER_ORDER_SCORES = {f.match_number: (1, 0) for f in GROUP_SCHEDULE}


@pytest.fixture(name="config", scope="session")
def config_fixture():
    return load_default_config()


@pytest.fixture(name="completed_state")
def completed_state_fixture(config):
    """All groups played in roster order and every playoff won by its first candidate."""
    return PredictionState(
        group_scores={g: normalize_scores(ROSTER_ORDER_SCORES) for g in config.groups},
        playoff_winners={
            playoff_id: playoff.candidates[0].team_id
            for playoff_id, playoff in config.playoffs.items()
        },
    )


@pytest.fixture(name="resolver")
def resolver_fixture(config, completed_state):
    return TournamentResolver(config, completed_state)


@pytest.fixture(name="decided")
def decided_fixture(resolver):
    """The completed tournament with the home team picked to win every knockout match."""
    for match in resolver.config.topology:
        home, _ = resolver.bracket().teams(match.match_id)
        resolver = resolver.with_state(resolver.select_winner(match.match_id, home).state)
    return resolver
