from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Team:
    team_id: int
    name: str
    code: str = ""
    group: str = ""
    flag_url: str = ""
    is_playoff: bool = False
    playoff_winner_id: Optional[int] = None

    @property
    def is_undecided_placeholder(self) -> bool:
        return self.is_playoff and self.playoff_winner_id is None


@dataclass(frozen=True)
class Playoff:
    """
    A playoff path feeding one roster slot of a group.

    placeholder_team_id is the roster team standing in for the path winner; the
    candidates are the teams that can win the path.
    """

    playoff_id: str
    name: str
    destination_group: str
    placeholder_team_id: int
    candidates: tuple
    confederation: str = ""

    def candidate(self, team_id: int) -> Optional[Team]:
        for team in self.candidates:
            if team.team_id == team_id:
                return team
        return None


def coerce_team_id(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    num = pd.to_numeric(value, errors="coerce")
    if pd.isna(num) or not math.isfinite(float(num)) or float(num) != int(num):
        return None
    return int(num)


def parse_playoff_selection(selection) -> Optional[int]:
    """
    Winner id of a stored playoff selection.

    Accepts a team id, a numeric string or a {semi1, semi2, final} record where the
    final pick is the path winner. Anything else means no winner chosen yet.
    """
    if isinstance(selection, Mapping):
        return coerce_team_id(selection.get("final"))
    return coerce_team_id(selection)


def substitute_playoff_winners(
    teams: Iterable[Team],
    playoffs: Mapping[str, Playoff],
    playoff_winners: Mapping[str, object],
) -> List[Team]:
    by_placeholder: Dict[int, Playoff] = {
        p.placeholder_team_id: p for p in playoffs.values()
    }
    resolved: List[Team] = []
    for team in teams:
        playoff = by_placeholder.get(team.team_id) if team.is_playoff else None
        if playoff is None:
            resolved.append(team)
            continue
        winner_id = parse_playoff_selection(playoff_winners.get(playoff.playoff_id))
        winner = playoff.candidate(winner_id) if winner_id is not None else None
        if winner_id is not None and winner is None:
            logger.warning(
                "Ignoring playoff winner %s: not a candidate of %s",
                winner_id,
                playoff.playoff_id,
            )
        if winner is None:
            resolved.append(team)
            continue
        # The roster id is kept so predictions stay keyed to the group slot.
        resolved.append(
            replace(
                team,
                name=winner.name,
                code=winner.code,
                flag_url=winner.flag_url,
                playoff_winner_id=winner.team_id,
            )
        )
    return resolved
