"""Canonical records built from raw worksheet rows."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from tripsync.columns import ColumnMap, ColumnRole

DEFAULT_NAME = "Unknown"
DEFAULT_CITY = "Japan"
DEFAULT_TYPE = "Spot"
DEFAULT_PRICE = "-"
DEFAULT_URL = "#"
DEFAULT_DAY = "Unscheduled"

LOCATION_ID_PREFIX = "loc-"

# Cached JSON key for each sheet-backed role.
ROLE_FIELDS: Mapping[ColumnRole, str] = {
    ColumnRole.NAME: "name",
    ColumnRole.CITY: "city",
    ColumnRole.TYPE: "type",
    ColumnRole.PRICE: "priceLocal",
    ColumnRole.DESCRIPTION: "description",
    ColumnRole.URL: "mapsUrl",
}

PhotoUrlRule = Callable[[str], str]


def cell_text(row: Sequence[Any], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    value = row[index]
    return "" if value is None else str(value).strip()


def parse_coordinate(text: str) -> float:
    try:
        value = float(text)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def is_absolute_url(text: str) -> bool:
    return text.lower().startswith(("http://", "https://"))


def location_id(index: int) -> str:
    return f"{LOCATION_ID_PREFIX}{index}"


def row_index_from_id(value: str) -> Optional[int]:
    """Return the zero-based data-row index encoded in a ``loc-N`` id."""

    if not value or not value.startswith(LOCATION_ID_PREFIX):
        return None
    suffix = value[len(LOCATION_ID_PREFIX):]
    if not suffix.isdigit():
        return None
    return int(suffix)


@dataclass
class CanonicalRecord:
    """Normalised view of one Locations row.

    ``photo_ref`` keeps the raw reference the photo URL was derived from; it
    is empty when the row holds no reference or a user-pasted URL.
    """

    id: str
    name: str = DEFAULT_NAME
    city: str = DEFAULT_CITY
    type: str = DEFAULT_TYPE
    price_local: str = DEFAULT_PRICE
    price_converted: str = DEFAULT_PRICE
    description: str = ""
    maps_url: str = DEFAULT_URL
    lat: float = 0.0
    lng: float = 0.0
    photo_url: Optional[str] = None
    opening_hours: Optional[Dict[str, Any]] = None
    business_status: Optional[str] = None
    utc_offset_minutes: Optional[int] = None
    photo_ref: str = field(default="", repr=False)

    @property
    def has_resolved_name(self) -> bool:
        return self.name != DEFAULT_NAME

    @property
    def photo_is_user_supplied(self) -> bool:
        return bool(self.photo_url) and not self.photo_ref

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "city": self.city,
            "type": self.type,
            "priceLocal": self.price_local,
            "priceConverted": self.price_converted,
            "description": self.description,
            "mapsUrl": self.maps_url,
            "lat": self.lat,
            "lng": self.lng,
        }
        if self.photo_url:
            payload["photoUrl"] = self.photo_url
        if self.opening_hours is not None:
            payload["openingHours"] = self.opening_hours
        if self.business_status is not None:
            payload["businessStatus"] = self.business_status
        if self.utc_offset_minutes is not None:
            payload["utcOffsetMinutes"] = self.utc_offset_minutes
        return payload


def transform_row(
    row: Sequence[Any],
    index: int,
    column_map: ColumnMap,
    photo_url_for: PhotoUrlRule,
) -> CanonicalRecord:
    def _value(role: ColumnRole) -> str:
        return cell_text(row, column_map.index(role))

    photo_cell = _value(ColumnRole.PHOTO_REF)
    photo_ref = ""
    photo_url: Optional[str] = None
    if photo_cell and is_absolute_url(photo_cell):
        photo_url = photo_cell
    elif photo_cell:
        photo_ref = photo_cell
        photo_url = photo_url_for(photo_cell) or None

    return CanonicalRecord(
        id=location_id(index),
        name=_value(ColumnRole.NAME) or DEFAULT_NAME,
        city=_value(ColumnRole.CITY) or DEFAULT_CITY,
        type=_value(ColumnRole.TYPE) or DEFAULT_TYPE,
        price_local=_value(ColumnRole.PRICE) or DEFAULT_PRICE,
        price_converted=DEFAULT_PRICE,
        description=_value(ColumnRole.DESCRIPTION),
        maps_url=_value(ColumnRole.URL) or DEFAULT_URL,
        lat=parse_coordinate(_value(ColumnRole.LAT)),
        lng=parse_coordinate(_value(ColumnRole.LNG)),
        photo_url=photo_url,
        photo_ref=photo_ref,
    )


def transform_rows(
    rows: Sequence[Sequence[Any]],
    column_map: ColumnMap,
    photo_url_for: PhotoUrlRule,
) -> List[CanonicalRecord]:
    """Convert data rows (header excluded) into canonical records.

    The id of each record is its zero-based position among the data rows.
    """

    return [transform_row(row, index, column_map, photo_url_for) for index, row in enumerate(rows)]


def build_location_row(values: Mapping[ColumnRole, Any], column_map: ColumnMap) -> List[Any]:
    """Lay ``values`` out as a sheet row following ``column_map``."""

    row: List[Any] = [""] * column_map.width
    for role, value in values.items():
        index = column_map.index(role)
        if index < 0 or value in (None, ""):
            continue
        row[index] = value
    return row


# ---------------------------------------------------------------------------
# Itinerary
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ItineraryItem:
    day: str
    location_id: str
    order: int
    note: str = ""

    @property
    def sort_key(self):
        return (self.day, self.order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "locationId": self.location_id,
            "order": self.order,
            "note": self.note,
        }

    def to_row(self) -> List[Any]:
        return [self.day, self.location_id, self.order, self.note]

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], position: int = 0) -> "ItineraryItem":
        location = payload.get("locationId", payload.get("location_id"))
        return cls(
            day=str(payload.get("day") or DEFAULT_DAY),
            location_id="" if location is None else str(location).strip(),
            order=_parse_order(payload.get("order"), position),
            note=str(payload.get("note") or ""),
        )


def _parse_order(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    text = str(value).strip()
    if not text:
        return fallback
    try:
        return int(float(text))
    except ValueError:
        return fallback


def transform_itinerary_rows(rows: Sequence[Sequence[Any]]) -> List[ItineraryItem]:
    """Convert itinerary data rows, dropping rows without a location id."""

    items: List[ItineraryItem] = []
    for position, row in enumerate(rows):
        location = cell_text(row, 1)
        if not location:
            continue
        items.append(
            ItineraryItem(
                day=cell_text(row, 0) or DEFAULT_DAY,
                location_id=location,
                order=_parse_order(cell_text(row, 2), position),
                note=cell_text(row, 3),
            )
        )
    return items


def sort_itinerary(items: Iterable[ItineraryItem]) -> List[ItineraryItem]:
    return sorted(items, key=lambda item: item.sort_key)


__all__ = [
    "CanonicalRecord",
    "DEFAULT_CITY",
    "DEFAULT_DAY",
    "DEFAULT_NAME",
    "DEFAULT_PRICE",
    "DEFAULT_TYPE",
    "DEFAULT_URL",
    "ItineraryItem",
    "ROLE_FIELDS",
    "build_location_row",
    "cell_text",
    "is_absolute_url",
    "location_id",
    "parse_coordinate",
    "row_index_from_id",
    "sort_itinerary",
    "transform_itinerary_rows",
    "transform_rows",
]
