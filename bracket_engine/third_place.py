from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from bracket_engine.standings import GroupStandings, TeamStats

logger = logging.getLogger(__name__)

GROUP_LETTERS = "ABCDEFGHIJKL"
QUALIFYING_THIRD_PLACES = 8
# Group winners that meet a third-placed team in the round of 32.
THIRD_PLACE_SLOT_KEYS = ("1A", "1B", "1D", "1E", "1G", "1I", "1K", "1L")


@dataclass(frozen=True)
class ThirdPlaceCombination:
    """One legal assignment of eight third-placed groups to round-of-32 slots."""

    letters: str
    assignments: Mapping[str, str] = field(hash=False)
    option: Optional[int] = None

    def group_for(self, slot_key: str) -> Optional[str]:
        return self.assignments.get(slot_key)


def normalize_letters(value) -> str:
    """
    Sorted letter set of a stored third-place selection.

    The input may be a string such as "EFGHIJKL" or "A/B/C..." or any iterable of
    letters. Anything other than 8 unique group letters raises ValueError.
    """
    if value is None:
        raise ValueError("Third-place letters are missing")
    if isinstance(value, str):
        raw = [c for c in value.upper() if c.isalpha()]
    else:
        raw = [str(c).strip().upper() for c in value]
    letters = sorted(set(raw))
    if len(raw) != QUALIFYING_THIRD_PLACES or len(letters) != QUALIFYING_THIRD_PLACES:
        raise ValueError(
            f"Third-place selection must have {QUALIFYING_THIRD_PLACES} unique "
            f"group letters, got {value!r}"
        )
    unknown = [c for c in letters if c not in GROUP_LETTERS]
    if unknown:
        raise ValueError(f"Unknown group letters in third-place selection: {unknown}")
    return "".join(letters)


class ThirdPlaceTable:
    """Closed table of legal third-place combinations keyed by sorted letters."""

    def __init__(self, combinations: Iterable[ThirdPlaceCombination]):
        self._by_letters: Dict[str, ThirdPlaceCombination] = {}
        for combo in combinations:
            self._validate(combo)
            if combo.letters in self._by_letters:
                raise ValueError(
                    f"Duplicate third-place combination for groups: {combo.letters}"
                )
            self._by_letters[combo.letters] = combo

    @classmethod
    def from_mapping(cls, combos: Mapping[str, Mapping[str, str]]) -> "ThirdPlaceTable":
        return cls(
            ThirdPlaceCombination(letters=letters, assignments=dict(assignments))
            for letters, assignments in combos.items()
        )

    @staticmethod
    def _validate(combo: ThirdPlaceCombination) -> None:
        letters = normalize_letters(combo.letters)
        if letters != combo.letters:
            raise ValueError(f"Combination letters must be sorted: {combo.letters}")
        missing = set(THIRD_PLACE_SLOT_KEYS).difference(combo.assignments)
        if missing:
            raise ValueError(
                f"Combination {combo.letters} missing slots: {sorted(missing)}"
            )
        assigned = sorted(combo.assignments[key] for key in THIRD_PLACE_SLOT_KEYS)
        if "".join(assigned) != combo.letters:
            raise ValueError(
                f"Combination {combo.letters} assigns groups {''.join(assigned)}"
            )

    def lookup(self, letters) -> Optional[ThirdPlaceCombination]:
        return self._by_letters.get(normalize_letters(letters))

    def __contains__(self, letters) -> bool:
        try:
            return self.lookup(letters) is not None
        except ValueError:
            return False

    def __iter__(self) -> Iterator[ThirdPlaceCombination]:
        return iter(self._by_letters.values())

    def __len__(self) -> int:
        return len(self._by_letters)


@dataclass
class ThirdPlaceEntry:
    group: str
    stats: TeamStats


@dataclass
class ThirdPlaceSelection:
    ready: bool
    valid: bool
    reason: str = ""
    ranking: List[ThirdPlaceEntry] = field(default_factory=list)
    best8: List[ThirdPlaceEntry] = field(default_factory=list)
    qualifying_groups: str = ""
    combination: Optional[ThirdPlaceCombination] = None

    @property
    def qualifying_team_ids(self) -> List[int]:
        return [entry.stats.team_id for entry in self.best8]


def rank_third_places(entries: Iterable[ThirdPlaceEntry]) -> List[ThirdPlaceEntry]:
    # The final group-letter key is a stable convention, not a FIFA criterion.
    return sorted(
        entries,
        key=lambda e: (
            -e.stats.points,
            -e.stats.goal_difference,
            -e.stats.goals_for,
            e.group,
        ),
    )


def third_place_entries(
    group_standings: Mapping[str, GroupStandings],
    groups: Sequence[str] = GROUP_LETTERS,
) -> List[ThirdPlaceEntry]:
    entries: List[ThirdPlaceEntry] = []
    for group in groups:
        result = group_standings.get(group)
        third = result.team_at(3) if result is not None else None
        if third is not None:
            entries.append(ThirdPlaceEntry(group=group, stats=third))
    return entries


def _not_ready_reason(
    group_standings: Mapping[str, GroupStandings], groups: Sequence[str]
) -> Optional[str]:
    for group in groups:
        result = group_standings.get(group)
        if result is None or not result.is_complete:
            return f"Group {group} is not complete"
        third = result.team_at(3)
        if third is None:
            return f"Group {group} has no third-placed team"
        tie = result.unresolvable_tie
        if tie is not None and third.team_id in tie.team_ids:
            return f"Third place in group {group} is tied: {tie.reason}"
    return None


def select_best_third(
    group_standings: Mapping[str, GroupStandings],
    table: ThirdPlaceTable,
    groups: Sequence[str] = GROUP_LETTERS,
) -> ThirdPlaceSelection:
    """
    Rank the third-placed teams across groups and match the best eight to a combination.

    Returns a selection that is not ready while any group is incomplete or has its
    third place tied. A ready selection whose letters are not in the table is
    invalid; it still carries the computed letters so callers can show them.
    """
    reason = _not_ready_reason(group_standings, groups)
    if reason is not None:
        return ThirdPlaceSelection(ready=False, valid=False, reason=reason)

    ranking = rank_third_places(third_place_entries(group_standings, groups))
    best8 = ranking[:QUALIFYING_THIRD_PLACES]
    letters = "".join(sorted(entry.group for entry in best8))
    combination = table.lookup(letters)
    if combination is None:
        logger.warning("No round-of-32 combination for third-placed groups %s", letters)
        return ThirdPlaceSelection(
            ready=True,
            valid=False,
            reason=(
                f"Third-placed groups {letters} do not match any valid round-of-32 "
                "combination; adjust some scores"
            ),
            ranking=ranking,
            best8=best8,
            qualifying_groups=letters,
        )
    return ThirdPlaceSelection(
        ready=True,
        valid=True,
        ranking=ranking,
        best8=best8,
        qualifying_groups=letters,
        combination=combination,
    )
