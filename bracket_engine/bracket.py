"""
Knockout bracket as a DAG of slot sources.

Every team slot of a knockout match names where its team comes from: a group
position, a third-placed group picked through the combination table, or the
winner or loser of an earlier match. Predictions are only ever stored as
match id -> winning team id; everything else is resolved on demand.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
import logging
import re
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import pandas as pd

from bracket_engine.standings import MatchScore, parse_score
from bracket_engine.teams import coerce_team_id
from bracket_engine.third_place import ThirdPlaceCombination

logger = logging.getLogger(__name__)

ROUND_OF_32 = "Round of 32"
ROUND_OF_16 = "Round of 16"
QUARTERFINAL = "Quarterfinal"
SEMIFINAL = "Semifinal"
THIRD_PLACE = "Third place"
FINAL = "Final"
STAGES = (ROUND_OF_32, ROUND_OF_16, QUARTERFINAL, SEMIFINAL, THIRD_PLACE, FINAL)

WINNER = "winner"
LOSER = "loser"
HOME = "home"
AWAY = "away"

_MATCH_ID_RE = re.compile(r"^\s*(?:M(?:atch)?\s*)?(\d+)\s*$", re.IGNORECASE)
_GROUP_POSITION_RE = re.compile(r"^\s*([12])\s*([A-L])\s*$", re.IGNORECASE)


class SelectionError(ValueError):
    """A selection the bracket cannot record in its current state."""


@dataclass(frozen=True)
class FromGroup:
    group: str
    rank: int


@dataclass(frozen=True)
class FromThirdPlace:
    pool: Tuple[str, ...]
    slot_key: str


@dataclass(frozen=True)
class FromMatch:
    match_id: str
    side: str = WINNER


SlotSource = Union[FromGroup, FromThirdPlace, FromMatch]


def match_key(match_id) -> str:
    """Canonical "M<number>" id for 73, "73", "M73" or "Match 73"."""
    found = _MATCH_ID_RE.match(str(match_id))
    if not found:
        raise SelectionError(f"Invalid match id: {match_id!r}")
    return f"M{int(found.group(1))}"


def parse_slot_label(label: str, opponent_label: str = "") -> SlotSource:
    label = str(label).strip()
    if label.startswith("Winner Group "):
        return FromGroup(group=label.replace("Winner Group ", "").strip(), rank=1)
    if label.startswith("Runner-up Group "):
        return FromGroup(group=label.replace("Runner-up Group ", "").strip(), rank=2)
    if label.startswith("Winner Match "):
        return FromMatch(match_key(label.replace("Winner Match ", "")), WINNER)
    if label.startswith("Loser Match "):
        return FromMatch(match_key(label.replace("Loser Match ", "")), LOSER)
    if label.startswith("3rd Group "):
        pool = tuple(
            g.strip() for g in label.replace("3rd Group ", "").split("/") if g.strip()
        )
        opponent = parse_slot_label(opponent_label) if opponent_label else None
        if not isinstance(opponent, FromGroup) or opponent.rank != 1:
            raise ValueError(
                f"Third-place slot {label!r} must face a group winner, got {opponent_label!r}"
            )
        return FromThirdPlace(pool=pool, slot_key=f"1{opponent.group}")
    found = _GROUP_POSITION_RE.match(label)
    if found:
        return FromGroup(group=found.group(2).upper(), rank=int(found.group(1)))
    raise ValueError(f"Unrecognized slot label: {label}")


@dataclass(frozen=True)
class KnockoutMatch:
    match_id: str
    stage: str
    home: SlotSource
    away: SlotSource
    label: str = ""

    @property
    def sources(self) -> Tuple[SlotSource, SlotSource]:
        return (self.home, self.away)


class BracketTopology:
    """
    Immutable match list plus the precomputed dependents of every match.

    Matches must be given in topological order: a match may only take teams from
    matches listed before it.
    """

    def __init__(self, matches: Iterable[KnockoutMatch]):
        self.matches: Dict[str, KnockoutMatch] = {}
        for match in matches:
            if match.match_id in self.matches:
                raise ValueError(f"Duplicate knockout match id: {match.match_id}")
            for source in match.sources:
                if isinstance(source, FromMatch) and source.match_id not in self.matches:
                    raise ValueError(
                        f"Match {match.match_id} takes a team from {source.match_id}, "
                        "which is not an earlier match"
                    )
            self.matches[match.match_id] = match

        self.dependents: Dict[str, List[str]] = {mid: [] for mid in self.matches}
        for match in self.matches.values():
            for source in match.sources:
                if isinstance(source, FromMatch):
                    deps = self.dependents[source.match_id]
                    if match.match_id not in deps:
                        deps.append(match.match_id)

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "BracketTopology":
        matches = []
        for row in df.itertuples(index=False):
            home_label = str(row.home).strip()
            away_label = str(row.away).strip()
            matches.append(
                KnockoutMatch(
                    match_id=match_key(row.match_id),
                    stage=str(row.stage).strip(),
                    home=parse_slot_label(home_label, away_label),
                    away=parse_slot_label(away_label, home_label),
                    label=str(getattr(row, "label", "") or "").strip(),
                )
            )
        return cls(matches)

    def match(self, match_id) -> KnockoutMatch:
        key = match_key(match_id)
        if key not in self.matches:
            raise SelectionError(f"Unknown knockout match: {match_id}")
        return self.matches[key]

    def descendants(self, match_id) -> List[str]:
        """Every match fed directly or transitively by match_id, breadth first."""
        start = match_key(match_id)
        seen = {start}
        order: List[str] = []
        queue = deque(self.dependents.get(start, []))
        while queue:
            mid = queue.popleft()
            if mid in seen:
                continue
            seen.add(mid)
            order.append(mid)
            queue.extend(self.dependents[mid])
        return order

    def by_stage(self, stage: str) -> List[KnockoutMatch]:
        return [m for m in self.matches.values() if m.stage == stage]

    @property
    def stages(self) -> List[str]:
        seen: List[str] = []
        for match in self.matches.values():
            if match.stage not in seen:
                seen.append(match.stage)
        return seen

    def __contains__(self, match_id) -> bool:
        try:
            return match_key(match_id) in self.matches
        except SelectionError:
            return False

    def __iter__(self) -> Iterator[KnockoutMatch]:
        return iter(self.matches.values())

    def __len__(self) -> int:
        return len(self.matches)


class MatchState(str, Enum):
    UNAVAILABLE = "unavailable"
    READY = "ready"
    DECIDED = "decided"


GroupPositionLookup = Callable[[str, int], Optional[int]]


class BracketGraph:
    """
    Resolves bracket slots against one prediction snapshot and records selections.

    group_position(group, rank) returns the team id at that final group position,
    or None while the group is undecided; rank 3 is used for third-placed teams.
    The graph works on its own copy of the predictions.
    """

    def __init__(
        self,
        topology: BracketTopology,
        group_position: GroupPositionLookup,
        combination: Optional[ThirdPlaceCombination] = None,
        predictions: Optional[Mapping] = None,
        scores: Optional[Mapping] = None,
    ):
        self.topology = topology
        self.group_position = group_position
        self.combination = combination
        self.predictions: Dict[str, int] = {}
        for mid, team_id in (predictions or {}).items():
            team_id = coerce_team_id(team_id)
            if team_id is not None:
                self.predictions[match_key(mid)] = team_id
        self.scores: Dict[str, MatchScore] = {}
        for mid, raw in (scores or {}).items():
            score = parse_score(raw)
            if score is not None:
                self.scores[match_key(mid)] = score

    def resolve_source(self, source: SlotSource) -> Optional[int]:
        if isinstance(source, FromGroup):
            return self.group_position(source.group, source.rank)
        if isinstance(source, FromThirdPlace):
            if self.combination is None:
                return None
            group = self.combination.group_for(source.slot_key)
            if group is None or group not in source.pool:
                return None
            return self.group_position(group, 3)
        if source.side == LOSER:
            return self.loser(source.match_id)
        return self.predictions.get(source.match_id)

    def resolve_slot(self, match_id, slot: str) -> Optional[int]:
        match = self.topology.match(match_id)
        if slot == HOME:
            return self.resolve_source(match.home)
        if slot == AWAY:
            return self.resolve_source(match.away)
        raise SelectionError(f"Unknown slot {slot!r}; expected 'home' or 'away'")

    def teams(self, match_id) -> Tuple[Optional[int], Optional[int]]:
        match = self.topology.match(match_id)
        return self.resolve_source(match.home), self.resolve_source(match.away)

    def winner(self, match_id) -> Optional[int]:
        return self.predictions.get(self.topology.match(match_id).match_id)

    def loser(self, match_id) -> Optional[int]:
        home, away = self.teams(match_id)
        winner = self.winner(match_id)
        if home is None or away is None or winner is None:
            return None
        if winner == home:
            return away
        if winner == away:
            return home
        return None

    def match_state(self, match_id) -> MatchState:
        home, away = self.teams(match_id)
        if home is None or away is None:
            return MatchState.UNAVAILABLE
        if self.winner(match_id) in (home, away):
            return MatchState.DECIDED
        return MatchState.READY

    def select_winner(self, match_id, team_id) -> List[str]:
        """
        Record a winner and clear every prediction downstream of a changed one.

        Returns the ids of the matches whose predictions were removed.
        """
        mid = self.topology.match(match_id).match_id
        home, away = self.teams(mid)
        if home is None or away is None:
            raise SelectionError(f"Cannot pick a winner for {mid}: matchup is not decided yet")
        winner = coerce_team_id(team_id)
        if winner not in (home, away):
            raise SelectionError(f"Team {team_id} does not play in {mid}")
        score = self.scores.get(mid)
        if score is not None and score.goals_a != score.goals_b:
            expected = home if score.goals_a > score.goals_b else away
            if winner != expected:
                raise SelectionError(
                    f"Team {winner} cannot win {mid}: score is "
                    f"{score.goals_a}-{score.goals_b}"
                )
        previous = self.predictions.get(mid)
        self.predictions[mid] = winner
        if previous is None or previous == winner:
            return []
        return self.clear_dependents(mid)

    def clear_winner(self, match_id) -> List[str]:
        mid = self.topology.match(match_id).match_id
        if self.predictions.pop(mid, None) is None:
            return []
        return [mid] + self.clear_dependents(mid)

    def clear_dependents(self, match_id) -> List[str]:
        cleared = []
        for mid in self.topology.descendants(match_id):
            if self.predictions.pop(mid, None) is not None:
                cleared.append(mid)
            self.scores.pop(mid, None)
        if cleared:
            logger.debug("Cleared predictions downstream of %s: %s", match_id, cleared)
        return cleared

    def enter_score(self, match_id, goals_home, goals_away) -> List[str]:
        """
        Record a knockout score.

        A decisive score selects its winner. A draw removes any recorded winner and
        leaves the penalties pick to select_winner. An empty score just clears the
        stored score.
        """
        mid = self.topology.match(match_id).match_id
        score = parse_score((goals_home, goals_away))
        if score is None:
            self.scores.pop(mid, None)
            return []
        home, away = self.teams(mid)
        if home is None or away is None:
            raise SelectionError(f"Cannot score {mid}: matchup is not decided yet")
        self.scores[mid] = score
        if score.goals_a > score.goals_b:
            return self.select_winner(mid, home)
        if score.goals_a < score.goals_b:
            return self.select_winner(mid, away)
        return self.clear_winner(mid)

    def matchups(self) -> Dict[str, Tuple[Optional[int], Optional[int]]]:
        return {match.match_id: self.teams(match.match_id) for match in self.topology}

    def prune(self, previous: Optional[Mapping[str, Tuple]] = None) -> List[str]:
        """
        Drop predictions and scores that no longer fit their matchup.

        previous holds the (home, away) pairs the predictions were made for, as
        returned by matchups() before a change. A match whose pair differs from it
        loses its winner and score even if the old winner still plays.

        One pass in topological order is enough: removing a winner makes every slot
        fed by it unresolved before its dependents are visited.
        """
        pruned = []
        for match in self.topology:
            mid = match.match_id
            home, away = self.teams(mid)
            made_for = previous.get(mid, (home, away)) if previous else (home, away)
            changed = tuple(made_for) != (home, away)
            if home is None or away is None or changed:
                self.scores.pop(mid, None)
            winner = self.predictions.get(mid)
            if winner is None:
                continue
            if home is None or away is None or changed or winner not in (home, away):
                del self.predictions[mid]
                pruned.append(mid)
        if pruned:
            logger.debug("Pruned stale knockout predictions: %s", pruned)
        return pruned

    def decided_count(self, stage: Optional[str] = None) -> int:
        matches = self.topology.by_stage(stage) if stage else list(self.topology)
        return sum(
            1 for m in matches if self.match_state(m.match_id) is MatchState.DECIDED
        )

    @property
    def is_complete(self) -> bool:
        return self.decided_count() == len(self.topology)

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for match in self.topology:
            home, away = self.teams(match.match_id)
            rows.append(
                {
                    "match_id": match.match_id,
                    "stage": match.stage,
                    "home": home,
                    "away": away,
                    "winner": self.winner(match.match_id),
                    "state": self.match_state(match.match_id).value,
                }
            )
        return pd.DataFrame(rows)
