"""Selection and time-budgeted execution of place lookups.

Enrichment fills gaps, it never refreshes: a row is looked up only when it is
missing coordinates, a photo reference, a type, a price, a description or a
maps link, and a lookup result only lands in fields that still hold their
placeholder.

:class:`EnrichmentExecutor` runs the lookups one at a time.  Serverless hosts
kill a request after a fixed ceiling, so the executor stops starting new
lookups once a soft wall-clock budget or an item cap is reached and reports
how many selected rows are left.  The caller re-runs the sync to continue.

Rows that can only be partly filled stay selected on every sync, so the
caller orders candidates with :func:`order_candidates` using the attempt
sequence of each row: rows never tried go first, then the ones tried longest
ago.  Every selected row is therefore looked up within a few syncs.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from tripsync.columns import ColumnMap, ColumnRole
from tripsync.places import PlaceResult
from tripsync.records import (
    DEFAULT_PRICE,
    DEFAULT_TYPE,
    DEFAULT_URL,
    CanonicalRecord,
    cell_text,
)

logger = logging.getLogger(__name__)

DEFAULT_ITEM_CAP = 3
DEFAULT_BUDGET_SECONDS = 6.5


class PlaceLookup(Protocol):
    def lookup(self, query: str) -> Optional[PlaceResult]:
        ...

    def photo_url_for(self, photo_ref: str) -> str:
        ...


class ExecutorState(Enum):
    RUNNING = "running"
    HALTED = "halted"


class HaltReason(Enum):
    COMPLETED = "completed"
    ITEM_CAP = "item_cap"
    TIME_BUDGET = "time_budget"


@dataclass(frozen=True)
class PendingWrite:
    """One cell the sheet must receive: ``field`` of data row ``row_index``."""

    row_index: int
    field: ColumnRole
    value: Any


@dataclass(frozen=True)
class EnrichmentCandidate:
    record: CanonicalRecord
    row_index: int
    raw_row: Tuple[Any, ...]


@dataclass(frozen=True)
class EnrichmentResult:
    records: List[CanonicalRecord]
    pending_writes: Tuple[PendingWrite, ...]
    processed_count: int
    remaining_count: int
    halt_reason: HaltReason = HaltReason.COMPLETED
    attempted: Tuple[str, ...] = ()

    @property
    def total_selected(self) -> int:
        return self.processed_count + self.remaining_count


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------
def missing_fields(record: CanonicalRecord, raw_row: Sequence[Any], column_map: ColumnMap) -> List[str]:
    """Return the names of the gaps a lookup could fill for ``record``."""

    gaps: List[str] = []
    if not record.lat or not record.lng:
        gaps.append("coordinates")
    if not cell_text(raw_row, column_map.index(ColumnRole.PHOTO_REF)):
        gaps.append("photo")
    if record.type == DEFAULT_TYPE:
        gaps.append("type")
    if record.price_local == DEFAULT_PRICE:
        gaps.append("price")
    if not record.description:
        gaps.append("description")
    if record.maps_url == DEFAULT_URL:
        gaps.append("url")
    return gaps


def needs_enrichment(record: CanonicalRecord, raw_row: Sequence[Any], column_map: ColumnMap) -> bool:
    return record.has_resolved_name and bool(missing_fields(record, raw_row, column_map))


def select_for_enrichment(
    records: Sequence[CanonicalRecord],
    rows: Sequence[Sequence[Any]],
    column_map: ColumnMap,
) -> List[EnrichmentCandidate]:
    """Pair each record needing a lookup with its data-row index."""

    selected: List[EnrichmentCandidate] = []
    for index, record in enumerate(records):
        raw_row = tuple(rows[index]) if index < len(rows) else ()
        if needs_enrichment(record, raw_row, column_map):
            selected.append(EnrichmentCandidate(record=record, row_index=index, raw_row=raw_row))
    return selected


def candidate_key(record: CanonicalRecord) -> str:
    """Identify a row for the attempt ledger.

    The key survives enrichment (which never touches name or city) and
    changes when the user retypes the row, which makes it eligible again.
    """

    return f"{record.id}|{record.name}|{record.city}"


def order_candidates(
    candidates: Sequence[EnrichmentCandidate],
    attempts: Mapping[str, int],
) -> List[EnrichmentCandidate]:
    """Least recently attempted first; rows without coordinates lead a tie."""

    def _sort_key(candidate: EnrichmentCandidate) -> Tuple[int, int, int]:
        record = candidate.record
        last_attempt = attempts.get(candidate_key(record), -1)
        has_coordinates = 1 if record.lat and record.lng else 0
        return last_attempt, has_coordinates, candidate.row_index

    return sorted(candidates, key=_sort_key)


def record_attempts(
    attempts: Mapping[str, int],
    attempted: Sequence[str],
    candidates: Sequence[EnrichmentCandidate],
) -> Dict[str, int]:
    """Stamp each key in ``attempted`` with the next sequence numbers, in order.

    Keys of rows that are no longer selected are dropped.
    """

    live = {candidate_key(candidate.record) for candidate in candidates}
    ledger = {key: seq for key, seq in attempts.items() if key in live}
    next_seq = max(attempts.values(), default=0) + 1
    for offset, key in enumerate(attempted):
        ledger[key] = next_seq + offset
    return ledger


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------
def merge_place(
    candidate: EnrichmentCandidate,
    place: PlaceResult,
    column_map: ColumnMap,
    photo_url_for: Callable[[str], str],
) -> List[PendingWrite]:
    """Fill the record's placeholder fields from ``place``.

    The record is updated in place; a write intent is returned for every
    sheet-backed field that changed.
    """

    record = candidate.record
    row = candidate.row_index
    writes: List[PendingWrite] = []

    if not record.lat and place.lat:
        record.lat = float(place.lat)
        writes.append(PendingWrite(row, ColumnRole.LAT, record.lat))
    if not record.lng and place.lng:
        record.lng = float(place.lng)
        writes.append(PendingWrite(row, ColumnRole.LNG, record.lng))

    photo_cell = cell_text(candidate.raw_row, column_map.index(ColumnRole.PHOTO_REF))
    photo_replaceable = not record.photo_url or not record.photo_is_user_supplied
    if place.photo_ref and not photo_cell and photo_replaceable:
        record.photo_ref = place.photo_ref
        record.photo_url = photo_url_for(place.photo_ref) or None
        writes.append(PendingWrite(row, ColumnRole.PHOTO_REF, place.photo_ref))

    if record.type == DEFAULT_TYPE and place.type:
        record.type = place.type
        writes.append(PendingWrite(row, ColumnRole.TYPE, place.type))
    if record.price_local == DEFAULT_PRICE and place.price_level:
        record.price_local = place.price_level
        writes.append(PendingWrite(row, ColumnRole.PRICE, place.price_level))
    if not record.description and place.summary:
        record.description = place.summary
        writes.append(PendingWrite(row, ColumnRole.DESCRIPTION, place.summary))
    if record.maps_url == DEFAULT_URL and place.maps_url:
        record.maps_url = place.maps_url
        writes.append(PendingWrite(row, ColumnRole.URL, place.maps_url))

    # Not stored in the sheet; only the cached snapshot carries these.
    if record.opening_hours is None and place.opening_hours:
        record.opening_hours = dict(place.opening_hours)
    if record.business_status is None and place.business_status:
        record.business_status = place.business_status
    if record.utc_offset_minutes is None and place.utc_offset_minutes is not None:
        record.utc_offset_minutes = place.utc_offset_minutes

    return writes


def build_query(record: CanonicalRecord, country: str = "") -> str:
    parts = [record.name]
    if record.city and record.city not in parts:
        parts.append(record.city)
    if country and country not in parts:
        parts.append(country)
    return ", ".join(parts)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
class EnrichmentExecutor:
    """Run lookups sequentially until done, capped, or out of time."""

    def __init__(
        self,
        places: PlaceLookup,
        column_map: ColumnMap,
        *,
        item_cap: int = DEFAULT_ITEM_CAP,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        country: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if item_cap < 1:
            raise ValueError("item_cap must be positive")
        self._places = places
        self._column_map = column_map
        self._item_cap = item_cap
        self._budget_seconds = budget_seconds
        self._country = country
        self._clock = clock
        self._state = ExecutorState.RUNNING
        self._started_at: Optional[float] = None

    @property
    def state(self) -> ExecutorState:
        return self._state

    def _halt_reason(self, processed: int) -> Optional[HaltReason]:
        if processed >= self._item_cap:
            return HaltReason.ITEM_CAP
        if self._started_at is not None and self._clock() - self._started_at > self._budget_seconds:
            return HaltReason.TIME_BUDGET
        return None

    def run(
        self,
        records: List[CanonicalRecord],
        candidates: Sequence[EnrichmentCandidate],
    ) -> EnrichmentResult:
        self._state = ExecutorState.RUNNING
        self._started_at = self._clock()
        writes: List[PendingWrite] = []
        attempted: List[str] = []
        processed = 0
        reason = HaltReason.COMPLETED

        for candidate in candidates:
            halt = self._halt_reason(processed)
            if halt is not None:
                reason = halt
                break
            processed += 1
            attempted.append(candidate_key(candidate.record))
            writes.extend(self._enrich(candidate))

        self._state = ExecutorState.HALTED
        remaining = len(candidates) - processed
        if remaining:
            logger.info(
                "Enrichment halted (%s) after %d of %d rows; %d left for the next sync",
                reason.value,
                processed,
                len(candidates),
                remaining,
            )
        return EnrichmentResult(
            records=records,
            pending_writes=tuple(writes),
            processed_count=processed,
            remaining_count=remaining,
            halt_reason=reason,
            attempted=tuple(attempted),
        )

    def _enrich(self, candidate: EnrichmentCandidate) -> List[PendingWrite]:
        query = build_query(candidate.record, self._country)
        try:
            place = self._places.lookup(query)
        except Exception as exc:  # one bad row must not abort the batch
            logger.warning("Place lookup failed for %s (%r): %s", candidate.record.id, query, exc)
            return []
        if place is None:
            logger.info("No place found for %s (%r)", candidate.record.id, query)
            return []
        return merge_place(candidate, place, self._column_map, self._places.photo_url_for)


__all__ = [
    "DEFAULT_BUDGET_SECONDS",
    "DEFAULT_ITEM_CAP",
    "EnrichmentCandidate",
    "EnrichmentExecutor",
    "EnrichmentResult",
    "ExecutorState",
    "HaltReason",
    "PendingWrite",
    "PlaceLookup",
    "build_query",
    "candidate_key",
    "merge_place",
    "missing_fields",
    "needs_enrichment",
    "order_candidates",
    "record_attempts",
    "select_for_enrichment",
]
