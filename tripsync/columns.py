"""Column role resolution for the Locations worksheet.

Users rename, reorder and add columns freely, so the sync never assumes a
physical layout.  :func:`resolve_columns` reads the header row and returns a
:class:`ColumnMap` telling the rest of the pipeline which column holds which
:class:`ColumnRole`.  Resolution is pure: when the sheet lacks the coordinate
or photo columns, :func:`plan_header_repair` describes the header row that
should be written back, and the caller persists it before addressing any
cells.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

UNRESOLVED = -1


class ColumnRole(str, Enum):
    NAME = "name"
    CITY = "city"
    TYPE = "type"
    PRICE = "price"
    DESCRIPTION = "description"
    URL = "url"
    LAT = "lat"
    LNG = "lng"
    PHOTO_REF = "photoRef"


# First alias found in the header wins.
ROLE_ALIASES: Mapping[ColumnRole, Tuple[str, ...]] = {
    ColumnRole.NAME: ("restaurant name", "name", "place name", "place"),
    ColumnRole.CITY: ("city",),
    ColumnRole.TYPE: ("cuisine type", "type", "category"),
    ColumnRole.PRICE: ("price (jpy)", "price"),
    ColumnRole.DESCRIPTION: ("best for", "description", "notes"),
    ColumnRole.URL: ("google maps", "url", "maps url", "link"),
    ColumnRole.LAT: ("latitude", "lat"),
    ColumnRole.LNG: ("longitude", "lng", "lon"),
    ColumnRole.PHOTO_REF: ("photo reference", "photo ref", "photo"),
}

LEGACY_POSITIONS: Mapping[ColumnRole, int] = {
    ColumnRole.NAME: 0,
    ColumnRole.CITY: 1,
    ColumnRole.TYPE: 2,
    ColumnRole.PRICE: 3,
    ColumnRole.DESCRIPTION: 4,
    ColumnRole.URL: 5,
    ColumnRole.LAT: 6,
    ColumnRole.LNG: 7,
    ColumnRole.PHOTO_REF: 8,
}

REPAIRABLE_HEADERS: Mapping[ColumnRole, str] = {
    ColumnRole.LAT: "Latitude",
    ColumnRole.LNG: "Longitude",
    ColumnRole.PHOTO_REF: "Photo Reference",
}


@dataclass(frozen=True)
class ColumnMap:
    """Zero-based column index per role; ``UNRESOLVED`` when absent."""

    indices: Tuple[Tuple[ColumnRole, int], ...]

    @classmethod
    def from_mapping(cls, mapping: Mapping[ColumnRole, int]) -> "ColumnMap":
        return cls(tuple((role, int(mapping.get(role, UNRESOLVED))) for role in ColumnRole))

    @classmethod
    def legacy(cls) -> "ColumnMap":
        return cls.from_mapping(LEGACY_POSITIONS)

    def index(self, role: ColumnRole) -> int:
        for candidate, index in self.indices:
            if candidate is role:
                return index
        return UNRESOLVED

    def is_resolved(self, role: ColumnRole) -> bool:
        return self.index(role) >= 0

    def unresolved(self) -> List[ColumnRole]:
        return [role for role, index in self.indices if index < 0]

    def with_index(self, role: ColumnRole, index: int) -> "ColumnMap":
        mapping = self.as_dict()
        mapping[role] = index
        return ColumnMap.from_mapping(mapping)

    def as_dict(self) -> Dict[ColumnRole, int]:
        return dict(self.indices)

    @property
    def width(self) -> int:
        """Number of columns needed to cover every resolved role."""

        return max((index + 1 for _, index in self.indices if index >= 0), default=0)


@dataclass(frozen=True)
class HeaderRepair:
    header: List[str]
    column_map: ColumnMap
    appended: Tuple[ColumnRole, ...] = ()

    @property
    def needed(self) -> bool:
        return bool(self.appended)


def normalise_header(cell: object) -> str:
    return ("" if cell is None else str(cell)).strip().lower()


def match_roles(header: Sequence[object]) -> Dict[ColumnRole, int]:
    """Return the roles whose aliases appear in ``header``."""

    normalised = [normalise_header(cell) for cell in header]
    matched: Dict[ColumnRole, int] = {}
    claimed = set()
    for role in ColumnRole:
        for alias in ROLE_ALIASES[role]:
            index = _first_unclaimed(normalised, alias, claimed)
            if index is not None:
                matched[role] = index
                claimed.add(index)
                break
    return matched


def _first_unclaimed(cells: Sequence[str], alias: str, claimed: set) -> Optional[int]:
    for index, cell in enumerate(cells):
        if cell == alias and index not in claimed:
            return index
    return None


def resolve_columns(header: Sequence[object], *, legacy_fallback: bool = True) -> ColumnMap:
    """Map ``header`` cells onto column roles.

    Roles not named in the header fall back to their legacy position, but only
    when that column exists in the header row and no other role claimed it.
    Anything else stays ``UNRESOLVED``.
    """

    matched = match_roles(header)
    if legacy_fallback:
        width = len(header)
        claimed = set(matched.values())
        for role in ColumnRole:
            if role in matched:
                continue
            position = LEGACY_POSITIONS[role]
            if position < width and position not in claimed:
                matched[role] = position
                claimed.add(position)
    return ColumnMap.from_mapping(matched)


def plan_header_repair(header: Sequence[object], column_map: ColumnMap) -> HeaderRepair:
    """Describe the header cells to append for unresolved coordinate/photo roles."""

    new_header = ["" if cell is None else str(cell) for cell in header]
    updated = column_map
    appended: List[ColumnRole] = []
    for role, label in REPAIRABLE_HEADERS.items():
        if updated.is_resolved(role):
            continue
        new_header.append(label)
        updated = updated.with_index(role, len(new_header) - 1)
        appended.append(role)
    return HeaderRepair(header=new_header, column_map=updated, appended=tuple(appended))


__all__ = [
    "ColumnMap",
    "ColumnRole",
    "HeaderRepair",
    "LEGACY_POSITIONS",
    "REPAIRABLE_HEADERS",
    "ROLE_ALIASES",
    "UNRESOLVED",
    "match_roles",
    "normalise_header",
    "plan_header_repair",
    "resolve_columns",
]
