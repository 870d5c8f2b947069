"""
Whole-tournament resolution over one prediction snapshot.

TournamentResolver answers "which team is at slot S" for group positions and
bracket slots, and reports how far a prediction has progressed. Operations that
change the prediction never mutate the snapshot they were called on; they
return a StateUpdate carrying the new state and whatever had to be discarded
to keep it consistent.
"""
from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from bracket_engine.bracket import (
    AWAY,
    HOME,
    LOSER,
    BracketGraph,
    FromMatch,
    SelectionError,
    match_key,
    parse_slot_label,
)
from bracket_engine.reference import TournamentConfig
from bracket_engine.standings import (
    GroupStandings,
    MatchScore,
    TiebreakerDecision,
    compute_standings,
    decision_is_stale,
    normalize_scores,
    parse_score,
    standings_frame,
)
from bracket_engine.teams import (
    Team,
    coerce_team_id,
    parse_playoff_selection,
    substitute_playoff_winners,
)
from bracket_engine.third_place import (
    ThirdPlaceCombination,
    ThirdPlaceSelection,
    normalize_letters,
    select_best_third,
)

logger = logging.getLogger(__name__)

SCORES_MODE = "scores"
POSITIONS_MODE = "positions"
MODES = (SCORES_MODE, POSITIONS_MODE)

PLAYOFFS = "playoffs"
GROUPS = "groups"
THIRDS = "thirds"
KNOCKOUT = "knockout"
PHASES = (PLAYOFFS, GROUPS, THIRDS, KNOCKOUT)

MAX_RANDOM_GOALS = 3

_GROUP_POSITION_RE = re.compile(r"^([1-4])([A-L])$", re.IGNORECASE)
_MATCH_RESULT_RE = re.compile(r"^([WL])(\d+)$", re.IGNORECASE)
_MATCH_SLOT_RE = re.compile(r"^(M?\d+)\s*:\s*(home|away)$", re.IGNORECASE)


@dataclass
class PredictionState:
    mode: str = SCORES_MODE
    group_scores: Dict[str, Dict[int, MatchScore]] = field(default_factory=dict)
    group_orders: Dict[str, List[int]] = field(default_factory=dict)
    tiebreakers: Dict[str, TiebreakerDecision] = field(default_factory=dict)
    playoff_winners: Dict[str, int] = field(default_factory=dict)
    third_place_letters: Optional[str] = None
    knockout_winners: Dict[str, int] = field(default_factory=dict)
    knockout_scores: Dict[str, MatchScore] = field(default_factory=dict)

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"Unknown prediction mode {self.mode!r}; expected one of {MODES}")

    def copy(self) -> "PredictionState":
        return deepcopy(self)

    @classmethod
    def from_record(cls, record: Optional[Mapping]) -> "PredictionState":
        """Build a state from persisted values, accepting camelCase or snake_case keys."""
        record = record or {}

        def get(camel: str, snake: str, default=None):
            value = record.get(camel, record.get(snake))
            return default if value is None else value

        letters = get("thirdPlaceLetters", "third_place_letters")
        knockout_winners = {}
        for mid, team_id in get("knockoutWinners", "knockout_winners", {}).items():
            team_id = coerce_team_id(team_id)
            if team_id is not None:
                knockout_winners[match_key(mid)] = team_id
        knockout_scores = {}
        for mid, raw in get("knockoutScores", "knockout_scores", {}).items():
            score = parse_score(raw)
            if score is not None:
                knockout_scores[match_key(mid)] = score
        playoff_winners = {}
        for playoff_id, selection in get("playoffWinners", "playoff_winners", {}).items():
            winner = parse_playoff_selection(selection)
            if winner is not None:
                playoff_winners[str(playoff_id)] = winner
        return cls(
            mode=get("mode", "mode", SCORES_MODE),
            group_scores={
                str(group): normalize_scores(scores)
                for group, scores in get("groupScores", "group_scores", {}).items()
            },
            group_orders={
                str(group): [int(t) for t in order]
                for group, order in get("groupOrders", "group_orders", {}).items()
                if order
            },
            tiebreakers={
                str(group): TiebreakerDecision.from_record(decision)
                for group, decision in get("tiebreakers", "tiebreakers", {}).items()
                if decision
            },
            playoff_winners=playoff_winners,
            third_place_letters=normalize_letters(letters) if letters else None,
            knockout_winners=knockout_winners,
            knockout_scores=knockout_scores,
        )

    def to_record(self) -> dict:
        return {
            "mode": self.mode,
            "groupScores": {
                group: [
                    {"matchNumber": number, "goalsA": s.goals_a, "goalsB": s.goals_b}
                    for number, s in sorted(scores.items())
                ]
                for group, scores in self.group_scores.items()
            },
            "groupOrders": {group: list(order) for group, order in self.group_orders.items()},
            "tiebreakers": {
                group: {
                    "resolvedOrder": list(d.resolved_order),
                    "tiedTeamIds": list(d.tied_team_ids),
                }
                for group, d in self.tiebreakers.items()
            },
            "playoffWinners": dict(self.playoff_winners),
            "thirdPlaceLetters": self.third_place_letters,
            "knockoutWinners": dict(self.knockout_winners),
            "knockoutScores": {
                mid: {"a": s.goals_a, "b": s.goals_b}
                for mid, s in self.knockout_scores.items()
            },
        }


@dataclass
class StateUpdate:
    """
    Result of a change. Callers persist state, which already excludes the
    knockout predictions and tiebreaker decisions listed as removed.
    """

    state: PredictionState
    cleared_matches: List[str] = field(default_factory=list)
    discarded_tiebreakers: List[str] = field(default_factory=list)


@dataclass
class TournamentProgress:
    groups_complete: int
    groups_total: int
    unresolved_ties: List[str]
    playoffs_selected: int
    playoffs_total: int
    third_place_ready: bool
    third_place_valid: bool
    knockout_decided: int
    knockout_total: int
    knockout_by_stage: Dict[str, Tuple[int, int]]

    @property
    def groups_done(self) -> bool:
        return self.groups_complete == self.groups_total

    @property
    def knockout_done(self) -> bool:
        return self.knockout_decided == self.knockout_total

    @property
    def is_complete(self) -> bool:
        return (
            self.groups_done
            and self.playoffs_selected == self.playoffs_total
            and self.third_place_valid
            and self.knockout_done
        )


class TournamentResolver:
    def __init__(self, config: TournamentConfig, state: Optional[PredictionState] = None):
        self.config = config
        self.state = state if state is not None else PredictionState()
        self._standings: Dict[str, GroupStandings] = {}
        self._group_teams: Dict[str, List[Team]] = {}
        self._teams: Optional[Dict[int, Team]] = None
        self._selection: Optional[ThirdPlaceSelection] = None
        self._graph: Optional[BracketGraph] = None

    def with_state(self, state: PredictionState) -> "TournamentResolver":
        return TournamentResolver(self.config, state)

    # Groups

    def group_teams(self, group: str) -> List[Team]:
        if group not in self._group_teams:
            self._group_teams[group] = substitute_playoff_winners(
                self.config.group_roster(group),
                self.config.playoffs,
                self.state.playoff_winners,
            )
        return self._group_teams[group]

    def team(self, team_id) -> Optional[Team]:
        if self._teams is None:
            self._teams = {
                team.team_id: team
                for group in self.config.groups
                for team in self.group_teams(group)
            }
        team_id = coerce_team_id(team_id)
        return self._teams.get(team_id) if team_id is not None else None

    def standings(self, group: str) -> GroupStandings:
        if group not in self._standings:
            self._standings[group] = compute_standings(
                self.group_teams(group),
                self.state.group_scores.get(group, {}),
                self.state.tiebreakers.get(group),
                self.config.schedule,
            )
        return self._standings[group]

    def all_standings(self) -> Dict[str, GroupStandings]:
        return {group: self.standings(group) for group in self.config.groups}

    def group_order(self, group: str) -> Optional[List[int]]:
        """Final team ids of a group in position order, or None while undecided."""
        if self.state.mode == POSITIONS_MODE:
            order = self.state.group_orders.get(group)
            roster = {t.team_id for t in self.config.group_roster(group)}
            if not order or len(order) != len(roster) or set(order) != roster:
                return None
            return list(order)
        result = self.standings(group)
        return result.team_ids if result.is_final else None

    def group_position(self, group: str, rank: int) -> Optional[int]:
        order = self.group_order(group)
        if order is None or not 1 <= rank <= len(order):
            return None
        team_id = order[rank - 1]
        team = self.team(team_id)
        # An unplayed playoff path leaves no real team to advance.
        if team is None or team.is_undecided_placeholder:
            return None
        return team_id

    # Third place

    def third_place_selection(self) -> ThirdPlaceSelection:
        if self._selection is None:
            if self.state.mode == SCORES_MODE:
                self._selection = select_best_third(
                    self.all_standings(), self.config.combinations, self.config.groups
                )
            else:
                self._selection = self._chosen_third_places()
        return self._selection

    def _chosen_third_places(self) -> ThirdPlaceSelection:
        letters = self.state.third_place_letters
        if not letters:
            return ThirdPlaceSelection(
                ready=False, valid=False, reason="Third-placed groups not selected"
            )
        combination = self.config.combinations.lookup(letters)
        if combination is None:
            return ThirdPlaceSelection(
                ready=True,
                valid=False,
                reason=f"Third-placed groups {letters} are not a valid combination",
                qualifying_groups=letters,
            )
        return ThirdPlaceSelection(
            ready=True, valid=True, qualifying_groups=letters, combination=combination
        )

    def combination(self) -> Optional[ThirdPlaceCombination]:
        selection = self.third_place_selection()
        return selection.combination if selection.valid else None

    # Bracket

    def bracket(self) -> BracketGraph:
        if self._graph is None:
            self._graph = BracketGraph(
                self.config.topology,
                self.group_position,
                combination=self.combination(),
                predictions=self.state.knockout_winners,
                scores=self.state.knockout_scores,
            )
        return self._graph

    def resolve_slot(self, match_id, slot: str) -> Optional[Team]:
        return self.team(self.bracket().resolve_slot(match_id, slot))

    def match_teams(self, match_id) -> Tuple[Optional[Team], Optional[Team]]:
        home, away = self.bracket().teams(match_id)
        return self.team(home), self.team(away)

    def winner(self, match_id) -> Optional[Team]:
        graph = self.bracket()
        home, away = graph.teams(match_id)
        winner = graph.winner(match_id)
        return self.team(winner) if winner in (home, away) and winner is not None else None

    def team_at(self, slot: str) -> Optional[Team]:
        """
        Team currently at a slot anywhere in the tournament.

        Slots are group positions ("1A" to "4L"), match results ("W74", "L101"),
        bracket slots ("M74:home") or bracket labels ("Winner Group E",
        "Loser Match 101"). Undecided slots give None.
        """
        text = str(slot).strip()
        found = _GROUP_POSITION_RE.match(text)
        if found:
            return self.team(self.group_position(found.group(2).upper(), int(found.group(1))))
        found = _MATCH_RESULT_RE.match(text)
        if found:
            mid = match_key(found.group(2))
            if found.group(1).upper() == "L":
                return self.team(self.bracket().loser(mid))
            return self.winner(mid)
        found = _MATCH_SLOT_RE.match(text)
        if found:
            return self.resolve_slot(found.group(1), found.group(2).lower())
        source = parse_slot_label(text)
        if isinstance(source, FromMatch) and source.side != LOSER:
            return self.winner(source.match_id)
        return self.team(self.bracket().resolve_source(source))

    # Changes

    def _settle(self, state: PredictionState, cleared: Optional[List[str]] = None) -> StateUpdate:
        """Bring derived parts of a changed state back in line with its inputs."""
        discarded = []
        before = self.bracket().matchups()
        resolver = self.with_state(state)
        for group, decision in list(state.tiebreakers.items()):
            if decision_is_stale(decision, resolver.standings(group)):
                del state.tiebreakers[group]
                discarded.append(group)
                logger.debug("Discarded stale tiebreaker decision for group %s", group)
        if discarded:
            resolver = self.with_state(state)
        if state.mode == SCORES_MODE:
            selection = resolver.third_place_selection()
            state.third_place_letters = selection.qualifying_groups if selection.valid else None
        graph = resolver.bracket()
        pruned = graph.prune(before)
        state.knockout_winners = dict(graph.predictions)
        state.knockout_scores = dict(graph.scores)
        return StateUpdate(
            state=state,
            cleared_matches=list(cleared or []) + pruned,
            discarded_tiebreakers=discarded,
        )

    def _bracket_change(self, change) -> StateUpdate:
        state = self.state.copy()
        graph = self.with_state(state).bracket()
        cleared = change(graph)
        state.knockout_winners = dict(graph.predictions)
        state.knockout_scores = dict(graph.scores)
        return StateUpdate(state=state, cleared_matches=cleared)

    def select_winner(self, match_id, team_id) -> StateUpdate:
        return self._bracket_change(lambda graph: graph.select_winner(match_id, team_id))

    def clear_winner(self, match_id) -> StateUpdate:
        return self._bracket_change(lambda graph: graph.clear_winner(match_id))

    def enter_knockout_score(self, match_id, goals_home, goals_away) -> StateUpdate:
        return self._bracket_change(
            lambda graph: graph.enter_score(match_id, goals_home, goals_away)
        )

    def _check_fixture(self, match_number) -> int:
        numbers = {f.match_number for f in self.config.schedule}
        try:
            number = int(match_number)
        except (TypeError, ValueError):
            raise SelectionError(f"Invalid group match number: {match_number!r}")
        if number not in numbers:
            raise SelectionError(f"Unknown group match number: {match_number}")
        return number

    def set_group_score(self, group: str, match_number, goals_a, goals_b) -> StateUpdate:
        self.config.group_roster(group)
        number = self._check_fixture(match_number)
        state = self.state.copy()
        scores = dict(state.group_scores.get(group, {}))
        score = parse_score((goals_a, goals_b))
        if score is None:
            scores.pop(number, None)
        else:
            scores[number] = score
        state.group_scores[group] = scores
        return self._settle(state)

    def set_group_scores(self, group: str, scores) -> StateUpdate:
        self.config.group_roster(group)
        normalized = normalize_scores(scores)
        for number in normalized:
            self._check_fixture(number)
        state = self.state.copy()
        state.group_scores[group] = normalized
        return self._settle(state)

    def set_group_order(self, group: str, order: Sequence) -> StateUpdate:
        roster = {t.team_id for t in self.config.group_roster(group)}
        team_ids = [coerce_team_id(t) for t in order]
        if len(team_ids) != len(roster) or set(team_ids) != roster:
            raise SelectionError(
                f"Order for group {group} must list each of {sorted(roster)} once, "
                f"got {list(order)}"
            )
        state = self.state.copy()
        state.group_orders[group] = team_ids
        return self._settle(state)

    def set_playoff_winner(self, playoff_id: str, selection) -> StateUpdate:
        playoff = self.config.playoff(playoff_id)
        if playoff is None:
            raise SelectionError(f"Unknown playoff: {playoff_id}")
        winner_id = parse_playoff_selection(selection)
        state = self.state.copy()
        if winner_id is None:
            state.playoff_winners.pop(playoff_id, None)
        elif playoff.candidate(winner_id) is None:
            raise SelectionError(f"Team {winner_id} is not in playoff {playoff_id}")
        else:
            state.playoff_winners[playoff_id] = winner_id
        return self._settle(state)

    def set_third_place_letters(self, letters) -> StateUpdate:
        if self.state.mode == SCORES_MODE:
            raise SelectionError("Third-placed groups follow from the scores in scores mode")
        state = self.state.copy()
        state.third_place_letters = normalize_letters(letters) if letters else None
        return self._settle(state)

    def set_mode(self, mode: str) -> StateUpdate:
        if mode not in MODES:
            raise ValueError(f"Unknown prediction mode {mode!r}; expected one of {MODES}")
        state = self.state.copy()
        state.mode = mode
        return self._settle(state)

    def resolve_tie(self, group: str, resolved_order: Sequence) -> StateUpdate:
        """Store the user's order for the group's tie that the criteria cannot break."""
        undecided = compute_standings(
            self.group_teams(group),
            self.state.group_scores.get(group, {}),
            None,
            self.config.schedule,
        )
        tie = undecided.unresolvable_tie
        if tie is None:
            raise SelectionError(f"Group {group} has no unresolved tie")
        order = [coerce_team_id(t) for t in resolved_order]
        if len(order) != len(tie.team_ids) or set(order) != set(tie.team_ids):
            raise SelectionError(
                f"Tiebreak order for group {group} must list each of {tie.team_ids} once"
            )
        state = self.state.copy()
        state.tiebreakers[group] = TiebreakerDecision(
            resolved_order=tuple(order), tied_team_ids=tuple(tie.team_ids)
        )
        return self._settle(state)

    def fill_random_scores(
        self,
        random_state: Optional[int] = None,
        groups: Optional[Iterable[str]] = None,
    ) -> StateUpdate:
        rng = np.random.default_rng(random_state)
        state = self.state.copy()
        for group in groups or self.config.groups:
            self.config.group_roster(group)
            scores = {}
            for fixture in self.config.schedule:
                goals_a, goals_b = rng.integers(0, MAX_RANDOM_GOALS + 1, size=2)
                scores[fixture.match_number] = MatchScore(int(goals_a), int(goals_b))
            state.group_scores[group] = scores
            state.tiebreakers.pop(group, None)
        return self._settle(state)

    def has_subsequent_data(self, phase: str) -> bool:
        """Whether any phase after the given one holds data a change would discard."""
        later = self._later_phases(phase)
        state = self.state
        held = {
            GROUPS: any(state.group_scores.values())
            or bool(state.group_orders)
            or bool(state.tiebreakers),
            THIRDS: state.third_place_letters is not None,
            KNOCKOUT: bool(state.knockout_winners) or bool(state.knockout_scores),
        }
        return any(held[p] for p in later)

    def reset_from(self, phase: str) -> StateUpdate:
        later = self._later_phases(phase)
        state = self.state.copy()
        cleared: List[str] = []
        if GROUPS in later:
            state.group_scores = {}
            state.group_orders = {}
            state.tiebreakers = {}
        if THIRDS in later:
            state.third_place_letters = None
        if KNOCKOUT in later:
            cleared = sorted(state.knockout_winners, key=lambda mid: int(mid[1:]))
            state.knockout_winners = {}
            state.knockout_scores = {}
        logger.debug("Reset phases after %s: %s", phase, later)
        return self._settle(state, cleared)

    @staticmethod
    def _later_phases(phase: str) -> Tuple[str, ...]:
        if phase not in PHASES[:-1]:
            raise ValueError(f"Unknown phase {phase!r}; expected one of {PHASES[:-1]}")
        return PHASES[PHASES.index(phase) + 1 :]

    # Reporting

    def progress(self) -> TournamentProgress:
        graph = self.bracket()
        selection = self.third_place_selection()
        by_stage = {
            stage: (graph.decided_count(stage), len(self.config.topology.by_stage(stage)))
            for stage in self.config.topology.stages
        }
        unresolved = []
        if self.state.mode == SCORES_MODE:
            unresolved = [
                group
                for group in self.config.groups
                if self.standings(group).unresolvable_tie is not None
            ]
        return TournamentProgress(
            groups_complete=sum(
                1 for group in self.config.groups if self.group_order(group) is not None
            ),
            groups_total=len(self.config.groups),
            unresolved_ties=unresolved,
            playoffs_selected=sum(
                1 for playoff_id in self.config.playoffs if playoff_id in self.state.playoff_winners
            ),
            playoffs_total=len(self.config.playoffs),
            third_place_ready=selection.ready,
            third_place_valid=selection.valid,
            knockout_decided=graph.decided_count(),
            knockout_total=len(self.config.topology),
            knockout_by_stage=by_stage,
        )

    def standings_frame(self) -> pd.DataFrame:
        return standings_frame(self.all_standings())

    def bracket_frame(self) -> pd.DataFrame:
        df = self.bracket().to_frame()

        def name(team_id) -> str:
            team = self.team(team_id) if pd.notna(team_id) else None
            return team.name if team is not None else ""

        for col in (HOME, AWAY, "winner"):
            df[f"{col}_team"] = df[col].apply(name)
        return df
