"""Publish location and itinerary snapshots to the cache store.

Readers only ever see the cached snapshot, never the spreadsheet, so every
sync ends with a full replace of the owner's row.  Single-record edits merge
into the existing snapshot instead of rebuilding it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import db
from tripsync.records import CanonicalRecord, ItineraryItem

logger = logging.getLogger(__name__)

# Fields a lookup contributes that the sheet cannot hold.
CACHE_ONLY_FIELDS = ("openingHours", "businessStatus", "utcOffsetMinutes")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _carry_forward(records: List[Dict[str, Any]], previous: Any) -> List[Dict[str, Any]]:
    """Copy cache-only fields from ``previous`` onto records that lack them.

    A record keeps its earlier extras only while its id and name are
    unchanged, so a row moved to another position does not inherit them.
    """

    if not isinstance(previous, list):
        return records
    earlier = {
        entry.get("id"): entry
        for entry in previous
        if isinstance(entry, Mapping) and entry.get("id")
    }
    for record in records:
        old = earlier.get(record.get("id"))
        if old is None or old.get("name") != record.get("name"):
            continue
        for key in CACHE_ONLY_FIELDS:
            if key not in record and key in old:
                record[key] = old[key]
    return records


class CachePublisher:
    """Write snapshots through ``store`` (the :mod:`db` module by default)."""

    def __init__(self, store=db, *, now: Optional[Callable[[], str]] = None) -> None:
        self._store = store
        self._now = now or _utc_now_iso

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------
    def publish_locations(
        self,
        owner_id: str,
        source_id: str,
        records: Sequence[CanonicalRecord],
    ) -> List[Dict[str, Any]]:
        """Replace the owner's locations snapshot with ``records``."""

        payload = [record.to_dict() for record in records]
        previous = self._store.get_snapshot(db.LOCATIONS_BUCKET, owner_id)
        if previous is not None:
            payload = _carry_forward(payload, previous.data)
        self._store.upsert_snapshot(db.LOCATIONS_BUCKET, owner_id, source_id, payload, self._now())
        logger.info("Published %d locations for %s", len(payload), owner_id)
        return payload

    def merge_location(
        self,
        owner_id: str,
        location_id: str,
        updates: Mapping[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Shallow-merge ``updates`` into one cached record.

        Returns the merged record, or ``None`` when there is no snapshot or
        no record with ``location_id``.  An ``id`` in ``updates`` is ignored;
        ids are positional and only a sync may change them.
        """

        updates = {key: value for key, value in updates.items() if key != "id"}

        snapshot = self._store.get_snapshot(db.LOCATIONS_BUCKET, owner_id)
        if snapshot is None or not isinstance(snapshot.data, list):
            logger.info("No cached locations for %s; nothing to merge", owner_id)
            return None

        data = [dict(entry) for entry in snapshot.data if isinstance(entry, Mapping)]
        merged: Optional[Dict[str, Any]] = None
        for entry in data:
            if entry.get("id") == location_id:
                entry.update(updates)
                merged = entry
                break
        if merged is None:
            logger.info("Location %s not in cache for %s; nothing to merge", location_id, owner_id)
            return None

        self._store.upsert_snapshot(db.LOCATIONS_BUCKET, owner_id, snapshot.source_id, data, self._now())
        return merged

    def read_locations(self, owner_id: str) -> List[Dict[str, Any]]:
        snapshot = self._store.get_snapshot(db.LOCATIONS_BUCKET, owner_id)
        if snapshot is None or not isinstance(snapshot.data, list):
            return []
        return list(snapshot.data)

    # ------------------------------------------------------------------
    # Itinerary
    # ------------------------------------------------------------------
    def publish_itinerary(
        self,
        owner_id: str,
        source_id: str,
        items: Sequence[ItineraryItem],
    ) -> List[Dict[str, Any]]:
        payload = [item.to_dict() for item in items]
        self._store.upsert_snapshot(db.ITINERARY_BUCKET, owner_id, source_id, payload, self._now())
        logger.info("Published %d itinerary items for %s", len(payload), owner_id)
        return payload

    def read_itinerary(self, owner_id: str) -> List[Dict[str, Any]]:
        snapshot = self._store.get_snapshot(db.ITINERARY_BUCKET, owner_id)
        if snapshot is None or not isinstance(snapshot.data, list):
            return []
        return list(snapshot.data)


__all__ = ["CACHE_ONLY_FIELDS", "CachePublisher"]
