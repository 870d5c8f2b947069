from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from itertools import combinations
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from bracket_engine.bracket import BracketTopology
from bracket_engine.standings import GROUP_SCHEDULE, GroupFixture
from bracket_engine.teams import Playoff, Team
from bracket_engine.third_place import (
    GROUP_LETTERS,
    THIRD_PLACE_SLOT_KEYS,
    ThirdPlaceCombination,
    ThirdPlaceTable,
)

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[1]
REFERENCE_DATA_DIR = ROOT_DIR / "reference_data"
TEAMS_PATH = REFERENCE_DATA_DIR / "world_cup_2026_teams.csv"
PLAYOFFS_PATH = REFERENCE_DATA_DIR / "world_cup_2026_playoffs.csv"
GROUP_SCHEDULE_PATH = REFERENCE_DATA_DIR / "world_cup_2026_group_schedule.csv"
ROUND_OF_32_COMBINATIONS_PATH = (
    REFERENCE_DATA_DIR / "world_cup_2026_round_of_32_combinations.csv"
)
KNOCKOUT_MATCHES_PATH = REFERENCE_DATA_DIR / "world_cup_2026_knockout_matches.csv"

TEAMS_PER_GROUP = 4


def parse_bool(val) -> bool:
    if isinstance(val, bool):
        return val
    text = str(val).strip().lower()
    return text in {"1", "true", "yes", "y"}


def _read_table(path: Path, required: set, what: str) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Missing {what} file: {path}")
    df = pd.read_csv(path)
    missing = required.difference(df.columns)
    if missing:
        raise ValueError(f"{what.capitalize()} file missing columns: {sorted(missing)}")
    return df


def load_teams(path: Optional[Path] = None) -> List[Team]:
    path = path or TEAMS_PATH
    df = _read_table(path, {"team_id", "name", "group"}, "teams")
    df["team_id"] = pd.to_numeric(df["team_id"], errors="raise").astype(int)
    df["name"] = df["name"].astype(str).str.strip()
    df["group"] = df["group"].astype(str).str.strip().str.upper()
    for col in ("code", "flag_url"):
        df[col] = df[col].fillna("").astype(str).str.strip() if col in df.columns else ""
    df["is_playoff"] = (
        df["is_playoff"].apply(parse_bool) if "is_playoff" in df.columns else False
    )
    if df["team_id"].duplicated().any():
        dupes = df.loc[df["team_id"].duplicated(), "team_id"].unique().tolist()
        raise ValueError(f"Teams file contains duplicate team_id values: {sorted(dupes)}")
    return [
        Team(
            team_id=int(row.team_id),
            name=row.name,
            code=row.code,
            group=row.group,
            flag_url=row.flag_url,
            is_playoff=bool(row.is_playoff),
        )
        for row in df.itertuples(index=False)
    ]


def load_playoffs(path: Optional[Path] = None) -> Dict[str, Playoff]:
    path = path or PLAYOFFS_PATH
    required = {
        "playoff_id",
        "playoff_name",
        "destination_group",
        "placeholder_team_id",
        "team_id",
        "name",
    }
    df = _read_table(path, required, "playoffs")
    for col in ("team_id", "placeholder_team_id"):
        df[col] = pd.to_numeric(df[col], errors="raise").astype(int)
    for col in ("playoff_id", "playoff_name", "destination_group", "name"):
        df[col] = df[col].astype(str).str.strip()
    for col in ("confederation", "code", "flag_url"):
        df[col] = df[col].fillna("").astype(str).str.strip() if col in df.columns else ""

    playoffs: Dict[str, Playoff] = {}
    for playoff_id, rows in df.groupby("playoff_id", sort=False):
        first = rows.iloc[0]
        if rows["placeholder_team_id"].nunique() != 1:
            raise ValueError(f"Playoff {playoff_id} has more than one placeholder team")
        candidates = tuple(
            Team(
                team_id=int(row.team_id),
                name=row.name,
                code=row.code,
                group=first["destination_group"],
                flag_url=row.flag_url,
            )
            for row in rows.itertuples(index=False)
        )
        playoffs[playoff_id] = Playoff(
            playoff_id=playoff_id,
            name=first["playoff_name"],
            destination_group=first["destination_group"],
            placeholder_team_id=int(first["placeholder_team_id"]),
            candidates=candidates,
            confederation=first["confederation"],
        )
    return playoffs


def load_group_schedule(path: Optional[Path] = None) -> Tuple[GroupFixture, ...]:
    path = path or GROUP_SCHEDULE_PATH
    df = _read_table(
        path, {"match_number", "team_a_position", "team_b_position"}, "group schedule"
    )
    if "matchday" not in df.columns:
        df["matchday"] = 0
    for col in ("match_number", "team_a_position", "team_b_position", "matchday"):
        df[col] = pd.to_numeric(df[col], errors="raise").astype(int)
    return tuple(
        GroupFixture(
            match_number=int(row.match_number),
            team_a_position=int(row.team_a_position),
            team_b_position=int(row.team_b_position),
            matchday=int(row.matchday),
        )
        for row in df.sort_values("match_number").itertuples(index=False)
    )


def load_round_of_32_combinations(path: Optional[Path] = None) -> ThirdPlaceTable:
    path = path or ROUND_OF_32_COMBINATIONS_PATH
    df = _read_table(
        path, {"combo", *THIRD_PLACE_SLOT_KEYS}, "round-of-32 combinations"
    )
    combos = []
    for row in df.to_dict(orient="records"):
        option = row.get("option")
        combos.append(
            ThirdPlaceCombination(
                letters=str(row.get("combo", "")).strip(),
                assignments={
                    key: str(row.get(key, "")).strip() for key in THIRD_PLACE_SLOT_KEYS
                },
                option=None if option is None or pd.isna(option) else int(option),
            )
        )
    return ThirdPlaceTable(combos)


def load_knockout_matches(path: Optional[Path] = None) -> BracketTopology:
    path = path or KNOCKOUT_MATCHES_PATH
    df = _read_table(path, {"match_id", "stage", "home", "away"}, "knockout matches")
    df["match_id"] = pd.to_numeric(df["match_id"], errors="raise").astype(int)
    df["stage"] = df["stage"].astype(str).str.strip()
    df["home"] = df["home"].astype(str).str.strip()
    df["away"] = df["away"].astype(str).str.strip()
    df["label"] = df["label"].fillna("").astype(str).str.strip() if "label" in df.columns else ""
    if df["match_id"].duplicated().any():
        dupes = df.loc[df["match_id"].duplicated(), "match_id"].unique().tolist()
        raise ValueError(
            "Knockout matches file contains duplicate match_id values: "
            f"{sorted(dupes)}"
        )
    return BracketTopology.from_frame(df.sort_values("match_id"))


@dataclass
class TournamentConfig:
    """
    Read-only reference tables shared by every resolution call.

    Build it with load() for the World Cup 2026 tables, or directly from objects
    for smaller fixtures.
    """

    teams: List[Team]
    playoffs: Dict[str, Playoff]
    combinations: ThirdPlaceTable
    topology: BracketTopology
    schedule: Tuple[GroupFixture, ...] = GROUP_SCHEDULE
    groups: Sequence[str] = GROUP_LETTERS
    _by_id: Dict[int, Team] = field(init=False, repr=False)
    _by_group: Dict[str, List[Team]] = field(init=False, repr=False)

    def __post_init__(self):
        self._by_id = {}
        self._by_group = {group: [] for group in self.groups}
        for team in self.teams:
            if team.team_id in self._by_id:
                raise ValueError(f"Duplicate team id: {team.team_id}")
            if team.group not in self._by_group:
                raise ValueError(f"Team {team.name} is in unknown group {team.group!r}")
            self._by_id[team.team_id] = team
            self._by_group[team.group].append(team)
        for group, roster in self._by_group.items():
            if len(roster) != TEAMS_PER_GROUP:
                raise ValueError(
                    f"Group {group} has {len(roster)} teams, expected {TEAMS_PER_GROUP}"
                )
        for playoff in self.playoffs.values():
            placeholder = self._by_id.get(playoff.placeholder_team_id)
            if placeholder is None or not placeholder.is_playoff:
                raise ValueError(
                    f"Playoff {playoff.playoff_id} placeholder "
                    f"{playoff.placeholder_team_id} is not a playoff team in the roster"
                )
            if placeholder.group != playoff.destination_group:
                raise ValueError(
                    f"Playoff {playoff.playoff_id} feeds group {playoff.destination_group} "
                    f"but its placeholder is in group {placeholder.group}"
                )
        self._check_schedule()

    def _check_schedule(self) -> None:
        pairs = [
            tuple(sorted((f.team_a_position, f.team_b_position))) for f in self.schedule
        ]
        expected = list(combinations(range(1, TEAMS_PER_GROUP + 1), 2))
        if sorted(pairs) != expected:
            raise ValueError(
                f"Group schedule must pair every two positions once, got {pairs}"
            )
        numbers = [f.match_number for f in self.schedule]
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Group schedule has duplicate match numbers: {numbers}")

    @classmethod
    def load(cls, reference_dir: Optional[Path] = None) -> "TournamentConfig":
        base = Path(reference_dir) if reference_dir else REFERENCE_DATA_DIR
        config = cls(
            teams=load_teams(base / TEAMS_PATH.name),
            playoffs=load_playoffs(base / PLAYOFFS_PATH.name),
            combinations=load_round_of_32_combinations(
                base / ROUND_OF_32_COMBINATIONS_PATH.name
            ),
            topology=load_knockout_matches(base / KNOCKOUT_MATCHES_PATH.name),
            schedule=load_group_schedule(base / GROUP_SCHEDULE_PATH.name),
        )
        logger.info(
            "Loaded reference data from %s: %d teams, %d playoffs, %d combinations, "
            "%d knockout matches",
            base,
            len(config.teams),
            len(config.playoffs),
            len(config.combinations),
            len(config.topology),
        )
        return config

    def group_roster(self, group: str) -> List[Team]:
        if group not in self._by_group:
            raise ValueError(f"Unknown group: {group!r}")
        return list(self._by_group[group])

    def team_by_id(self, team_id: int) -> Optional[Team]:
        return self._by_id.get(team_id)

    def playoff(self, playoff_id: str) -> Optional[Playoff]:
        return self.playoffs.get(playoff_id)


@lru_cache(maxsize=1)
def load_default_config() -> TournamentConfig:
    return TournamentConfig.load()
