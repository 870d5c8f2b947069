"""
Group standings with the FIFA tiebreaker cascade.

Teams level on points are separated, in order, by:
  a) points in matches between the tied teams
  b) goal difference in those matches
  c) goals scored in those matches
  d) a-c reapplied to any strictly smaller subset still tied
  e) goal difference in all group matches
  f) goals scored in all group matches
  g) drawing of lots, which here is a manual decision supplied by the user

Without a decision, teams still level after f) are reported as an
UnresolvableTie instead of being ordered arbitrarily.

A team split off by a later criterion keeps its place inside its run; it is not
appended after the teams an earlier criterion already separated.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from bracket_engine.teams import Team

logger = logging.getLogger(__name__)

POINTS_FOR_WIN = 3
POINTS_FOR_DRAW = 1
MAX_TIEBREAK_DEPTH = 3

H2H_CRITERIA = ("h2h_points", "h2h_goal_diff", "h2h_goals_for")
OVERALL_CRITERIA = ("goal_difference", "goals_for")


@dataclass(frozen=True)
class GroupFixture:
    match_number: int
    team_a_position: int
    team_b_position: int
    matchday: int = 0


# Positions are 1-4 in roster order, not team ids.
GROUP_SCHEDULE: Tuple[GroupFixture, ...] = (
    GroupFixture(1, 1, 2, 1),
    GroupFixture(2, 3, 4, 1),
    GroupFixture(3, 1, 3, 2),
    GroupFixture(4, 2, 4, 2),
    GroupFixture(5, 1, 4, 3),
    GroupFixture(6, 2, 3, 3),
)


@dataclass(frozen=True)
class MatchScore:
    goals_a: int
    goals_b: int


@dataclass
class TeamStats:
    team_id: int
    team_name: str
    team_code: str = ""
    flag_url: str = ""
    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    goals_for: int = 0
    goals_against: int = 0
    goal_difference: int = 0
    points: int = 0
    position: Optional[int] = None
    h2h_points: Optional[int] = None
    h2h_goals_for: Optional[int] = None
    h2h_goals_against: Optional[int] = None
    h2h_goal_diff: Optional[int] = None


@dataclass
class UnresolvableTie:
    teams: List[TeamStats]
    reason: str

    @property
    def team_ids(self) -> List[int]:
        return [t.team_id for t in self.teams]


@dataclass(frozen=True)
class TiebreakerDecision:
    """
    User-chosen order for teams the automatic criteria cannot separate.

    tied_team_ids is the membership of the tie the decision was made for. When it is
    given, the decision only applies while the computed tie has exactly those teams.
    """

    resolved_order: Tuple[int, ...]
    tied_team_ids: Tuple[int, ...] = ()

    @classmethod
    def from_record(cls, record) -> Optional["TiebreakerDecision"]:
        if record is None or isinstance(record, TiebreakerDecision):
            return record
        if isinstance(record, Mapping):
            order = record.get("resolvedOrder", record.get("resolved_order")) or []
            tied = record.get("tiedTeamIds", record.get("tied_team_ids")) or []
        else:
            order, tied = record, []
        return cls(
            resolved_order=tuple(int(t) for t in order),
            tied_team_ids=tuple(int(t) for t in tied),
        )

    def applies_to(self, tie: UnresolvableTie) -> bool:
        ids = set(tie.team_ids)
        if self.tied_team_ids:
            return set(self.tied_team_ids) == ids
        return ids.issubset(self.resolved_order)


@dataclass
class TieResolution:
    resolved: List[TeamStats]
    unresolvable_tie: Optional[UnresolvableTie]


@dataclass
class GroupStandings:
    standings: List[TeamStats]
    unresolvable_tie: Optional[UnresolvableTie]
    is_complete: bool
    decision_applied: bool = False

    @property
    def team_ids(self) -> List[int]:
        return [s.team_id for s in self.standings]

    @property
    def is_final(self) -> bool:
        return self.is_complete and self.unresolvable_tie is None

    def team_at(self, position: int) -> Optional[TeamStats]:
        if 1 <= position <= len(self.standings):
            return self.standings[position - 1]
        return None


def coerce_goals(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    num = pd.to_numeric(value, errors="coerce")
    if pd.isna(num):
        logger.warning("Ignoring non-numeric goal value %r", value)
        return None
    num = float(num)
    if not math.isfinite(num) or num < 0 or num != int(num):
        logger.warning("Ignoring invalid goal value %r", value)
        return None
    return int(num)


def parse_score(raw) -> Optional[MatchScore]:
    if raw is None:
        return None
    if isinstance(raw, MatchScore):
        return raw
    if isinstance(raw, Mapping):
        a = raw.get("a", raw.get("goalsA", raw.get("goals_a")))
        b = raw.get("b", raw.get("goalsB", raw.get("goals_b")))
    elif isinstance(raw, (tuple, list)) and len(raw) == 2:
        a, b = raw
    else:
        return None
    goals_a = coerce_goals(a)
    goals_b = coerce_goals(b)
    if goals_a is None or goals_b is None:
        return None
    return MatchScore(goals_a, goals_b)


def normalize_scores(raw) -> Dict[int, MatchScore]:
    """
    Present scores keyed by match number.

    Accepts a mapping of match number to score, or the API's list of
    {matchNumber, goalsA, goalsB} records. Unset or malformed scores are dropped.
    """
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        items = raw.items()
    else:
        items = []
        for record in raw:
            number = record.get("matchNumber", record.get("match_number"))
            items.append((number, record))
    scores: Dict[int, MatchScore] = {}
    for number, value in items:
        try:
            match_number = int(number)
        except (TypeError, ValueError):
            logger.warning("Ignoring score with invalid match number %r", number)
            continue
        score = parse_score(value)
        if score is not None:
            scores[match_number] = score
    return scores


def _check_schedule(teams: Sequence[Team], schedule: Sequence[GroupFixture]) -> None:
    for fixture in schedule:
        for pos in (fixture.team_a_position, fixture.team_b_position):
            if not 1 <= pos <= len(teams):
                raise ValueError(
                    f"Fixture {fixture.match_number} refers to position {pos} "
                    f"but the group has {len(teams)} teams"
                )


def compute_team_stats(
    teams: Sequence[Team],
    scores,
    schedule: Sequence[GroupFixture] = GROUP_SCHEDULE,
) -> List[TeamStats]:
    scores = normalize_scores(scores)
    positions = list(range(1, len(teams) + 1))
    table = pd.DataFrame(
        index=positions,
        columns=["played", "won", "drawn", "lost", "gf", "ga", "points"],
        data=0,
    )
    for fixture in schedule:
        score = scores.get(fixture.match_number)
        if score is None:
            continue
        home = fixture.team_a_position
        away = fixture.team_b_position
        hs = score.goals_a
        as_ = score.goals_b
        table.loc[home, "gf"] += hs
        table.loc[home, "ga"] += as_
        table.loc[away, "gf"] += as_
        table.loc[away, "ga"] += hs
        table.loc[home, "played"] += 1
        table.loc[away, "played"] += 1
        if hs > as_:
            table.loc[home, "points"] += POINTS_FOR_WIN
            table.loc[home, "won"] += 1
            table.loc[away, "lost"] += 1
        elif hs < as_:
            table.loc[away, "points"] += POINTS_FOR_WIN
            table.loc[away, "won"] += 1
            table.loc[home, "lost"] += 1
        else:
            table.loc[home, "points"] += POINTS_FOR_DRAW
            table.loc[away, "points"] += POINTS_FOR_DRAW
            table.loc[home, "drawn"] += 1
            table.loc[away, "drawn"] += 1
    table["gd"] = table["gf"] - table["ga"]

    stats: List[TeamStats] = []
    for pos, team in zip(positions, teams):
        row = table.loc[pos]
        stats.append(
            TeamStats(
                team_id=team.team_id,
                team_name=team.name,
                team_code=team.code,
                flag_url=team.flag_url,
                played=int(row["played"]),
                won=int(row["won"]),
                drawn=int(row["drawn"]),
                lost=int(row["lost"]),
                goals_for=int(row["gf"]),
                goals_against=int(row["ga"]),
                goal_difference=int(row["gd"]),
                points=int(row["points"]),
            )
        )
    return stats


def head_to_head(
    tied_team_ids: Sequence[int],
    teams: Sequence[Team],
    scores,
    schedule: Sequence[GroupFixture] = GROUP_SCHEDULE,
) -> Dict[int, Dict[str, int]]:
    """Mini-table over the matches played between the given teams only."""
    scores = normalize_scores(scores)
    tied = set(tied_team_ids)
    by_position = {pos: team.team_id for pos, team in enumerate(teams, start=1)}
    h2h_table = pd.DataFrame(
        index=list(tied_team_ids), columns=["points", "gf", "ga"], data=0
    )
    for fixture in schedule:
        score = scores.get(fixture.match_number)
        if score is None:
            continue
        home = by_position.get(fixture.team_a_position)
        away = by_position.get(fixture.team_b_position)
        if home not in tied or away not in tied:
            continue
        hs = score.goals_a
        as_ = score.goals_b
        h2h_table.loc[home, "gf"] += hs
        h2h_table.loc[home, "ga"] += as_
        h2h_table.loc[away, "gf"] += as_
        h2h_table.loc[away, "ga"] += hs
        if hs > as_:
            h2h_table.loc[home, "points"] += POINTS_FOR_WIN
        elif hs < as_:
            h2h_table.loc[away, "points"] += POINTS_FOR_WIN
        else:
            h2h_table.loc[home, "points"] += POINTS_FOR_DRAW
            h2h_table.loc[away, "points"] += POINTS_FOR_DRAW
    h2h_table["gd"] = h2h_table["gf"] - h2h_table["ga"]
    return {
        team_id: {
            "h2h_points": int(h2h_table.loc[team_id, "points"]),
            "h2h_goals_for": int(h2h_table.loc[team_id, "gf"]),
            "h2h_goals_against": int(h2h_table.loc[team_id, "ga"]),
            "h2h_goal_diff": int(h2h_table.loc[team_id, "gd"]),
        }
        for team_id in tied_team_ids
    }


def _differentiate(block: Sequence[TeamStats], key: str) -> List[List[TeamStats]]:
    # sorted() is stable, so equal values keep their incoming order
    ordered = sorted(block, key=lambda s: getattr(s, key) or 0, reverse=True)
    runs: List[List[TeamStats]] = []
    for stats in ordered:
        if runs and (getattr(runs[-1][0], key) or 0) == (getattr(stats, key) or 0):
            runs[-1].append(stats)
        else:
            runs.append([stats])
    return runs


def _split_by_criteria(
    block: Sequence[TeamStats], criteria: Iterable[str]
) -> List[List[TeamStats]]:
    runs = [list(block)]
    for key in criteria:
        next_runs: List[List[TeamStats]] = []
        for run in runs:
            if len(run) == 1:
                next_runs.append(run)
            else:
                next_runs.extend(_differentiate(run, key))
        runs = next_runs
    return runs


def _order_by_decision(
    run: Sequence[TeamStats], decision: TiebreakerDecision
) -> List[TeamStats]:
    order = {team_id: idx for idx, team_id in enumerate(decision.resolved_order)}
    return sorted(run, key=lambda s: order.get(s.team_id, len(order)))


def _tie_reason(teams: Sequence[TeamStats]) -> str:
    return "Unresolvable tie between: " + ", ".join(t.team_name for t in teams)


def _merge_ties(ties: List[UnresolvableTie]) -> Optional[UnresolvableTie]:
    if not ties:
        return None
    if len(ties) == 1:
        return ties[0]
    teams = [t for tie in ties for t in tie.teams]
    return UnresolvableTie(teams=teams, reason=_tie_reason(teams))


def resolve_tie(
    tied: Sequence[TeamStats],
    teams: Sequence[Team],
    scores,
    decision: Optional[TiebreakerDecision] = None,
    depth: int = 0,
    schedule: Sequence[GroupFixture] = GROUP_SCHEDULE,
) -> TieResolution:
    """
    Order teams level on points.

    Each criterion only splits the runs still level after the previous one, so a
    team separated early keeps its place relative to the rest of its run. Any
    strictly smaller run left level by the head-to-head criteria is resolved again
    from criterion a) among its own members.
    """
    tied = list(tied)
    if len(tied) <= 1:
        return TieResolution(resolved=tied, unresolvable_tie=None)
    if depth > MAX_TIEBREAK_DEPTH:
        return TieResolution(
            resolved=tied,
            unresolvable_tie=UnresolvableTie(
                teams=tied,
                reason="Maximum tiebreak depth reached for: "
                + ", ".join(t.team_name for t in tied),
            ),
        )

    scores = normalize_scores(scores)
    h2h = head_to_head([s.team_id for s in tied], teams, scores, schedule)
    with_h2h = [replace(s, **h2h[s.team_id]) for s in tied]

    resolved: List[TeamStats] = []
    ties: List[UnresolvableTie] = []
    for run in _split_by_criteria(with_h2h, H2H_CRITERIA):
        if len(run) == 1:
            resolved.extend(run)
            continue
        if len(run) < len(tied):
            sub = resolve_tie(run, teams, scores, decision, depth + 1, schedule)
            resolved.extend(sub.resolved)
            if sub.unresolvable_tie is not None:
                ties.append(sub.unresolvable_tie)
            continue
        for overall_run in _split_by_criteria(run, OVERALL_CRITERIA):
            if len(overall_run) == 1:
                resolved.extend(overall_run)
            elif decision is not None:
                resolved.extend(_order_by_decision(overall_run, decision))
            else:
                resolved.extend(overall_run)
                ties.append(
                    UnresolvableTie(teams=overall_run, reason=_tie_reason(overall_run))
                )
    return TieResolution(resolved=resolved, unresolvable_tie=_merge_ties(ties))


def compute_standings(
    teams: Sequence[Team],
    scores,
    decision: Optional[TiebreakerDecision] = None,
    schedule: Sequence[GroupFixture] = GROUP_SCHEDULE,
) -> GroupStandings:
    teams = list(teams)
    _check_schedule(teams, schedule)
    scores = normalize_scores(scores)
    played = sum(1 for f in schedule if f.match_number in scores)
    is_complete = played == len(schedule)

    stats = compute_team_stats(teams, scores, schedule)
    standings: List[TeamStats] = []
    first_tie: Optional[UnresolvableTie] = None
    decision_applied = False
    for cluster in _differentiate(stats, "points"):
        if len(cluster) == 1:
            standings.extend(cluster)
            continue
        result = resolve_tie(cluster, teams, scores, None, 0, schedule)
        if (
            result.unresolvable_tie is not None
            and decision is not None
            and decision.applies_to(result.unresolvable_tie)
        ):
            result = resolve_tie(cluster, teams, scores, decision, 0, schedule)
            decision_applied = True
        standings.extend(result.resolved)
        if result.unresolvable_tie is not None and first_tie is None:
            first_tie = result.unresolvable_tie

    for position, team_stats in enumerate(standings, start=1):
        team_stats.position = position
    return GroupStandings(
        standings=standings,
        unresolvable_tie=first_tie,
        is_complete=is_complete,
        decision_applied=decision_applied,
    )


def decision_is_stale(
    decision: Optional[TiebreakerDecision], standings: GroupStandings
) -> bool:
    """True when a stored decision no longer matches any tie in the group."""
    return decision is not None and not standings.decision_applied


def standings_frame(group_standings: Mapping[str, GroupStandings]) -> pd.DataFrame:
    rows = []
    for group, result in group_standings.items():
        for s in result.standings:
            rows.append(
                {
                    "group": group,
                    "position": s.position,
                    "team_id": s.team_id,
                    "team": s.team_name,
                    "code": s.team_code,
                    "played": s.played,
                    "won": s.won,
                    "drawn": s.drawn,
                    "lost": s.lost,
                    "gf": s.goals_for,
                    "ga": s.goals_against,
                    "gd": s.goal_difference,
                    "points": s.points,
                    "complete": result.is_complete,
                }
            )
    return pd.DataFrame(rows)
