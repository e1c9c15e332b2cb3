"""Orchestrate spreadsheet reads, place enrichment and cache publishing."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import db
from settings import SyncSettings, load_sync_settings
from tripsync.columns import ColumnMap, ColumnRole, plan_header_repair, resolve_columns
from tripsync.enrichment import (
    EnrichmentExecutor,
    PendingWrite,
    order_candidates,
    record_attempts,
    select_for_enrichment,
)
from tripsync.errors import (
    ConfigurationError,
    InvalidEmailError,
    InvalidLocationIdError,
    PlaceNotFoundError,
    SharedTripNotFoundError,
)
from tripsync.google_credentials import CredentialsMissingError, build_user_credentials
from tripsync.itinerary import ItinerarySync
from tripsync.places import GooglePlacesClient
from tripsync.publisher import CachePublisher
from tripsync.records import (
    ROLE_FIELDS,
    CanonicalRecord,
    ItineraryItem,
    build_location_row,
    row_index_from_id,
    sort_itinerary,
    transform_rows,
)
from tripsync.sheets_client import (
    a1_full_column_range,
    a1_headers_range,
    build_client,
    parse_spreadsheet_id,
)
from tripsync.writeback import write_back

logger = logging.getLogger(__name__)

# Columns read from the Locations tab (A..AZ).
LOCATION_READ_COLUMNS = 52

EDITABLE_FIELDS: Dict[str, ColumnRole] = {field: role for role, field in ROLE_FIELDS.items()}

ClientFactory = Callable[[str, Any], Any]
ItineraryInput = Union[ItineraryItem, Mapping[str, Any]]

SHARE_SLUG_LENGTH = 10
_SLUG_ATTEMPTS = 5


def _new_share_slug() -> str:
    return uuid.uuid4().hex[:SHARE_SLUG_LENGTH]


def _normalise_email(email: str) -> str:
    cleaned = (email or "").strip().lower()
    local, sep, domain = cleaned.partition("@")
    if not sep or not local or "." not in domain or " " in cleaned:
        raise InvalidEmailError(email)
    return cleaned


@dataclass
class SyncResult:
    records: List[CanonicalRecord]
    processed_count: int = 0
    remaining_count: int = 0
    writes_issued: int = 0
    header_repaired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locations": [record.to_dict() for record in self.records],
            "processedCount": self.processed_count,
            "remainingCount": self.remaining_count,
            "writesIssued": self.writes_issued,
            "headerRepaired": self.header_repaired,
        }


class SyncService:
    """Public operations of the sync engine, one owner at a time."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        store=db,
        client_factory: Optional[ClientFactory] = None,
        places=None,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[Callable[[], str]] = None,
        slug_factory: Callable[[], str] = _new_share_slug,
    ) -> None:
        self.settings = settings or load_sync_settings()
        self._store = store
        self._client_factory = client_factory or build_client
        self._places = places or GooglePlacesClient(
            self.settings.maps_api_key,
            default_country=self.settings.default_country,
        )
        self._clock = clock
        self._publisher = CachePublisher(store, now=now)
        self._slug_factory = slug_factory
        # owner id -> [lock, holders]; an entry lives only while someone holds or waits on it.
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _owner_lock(self, owner_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(owner_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[owner_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[owner_id]

    def _load_attempts(self, owner_id: str) -> Dict[str, int]:
        snapshot = self._store.get_snapshot(db.ENRICHMENT_BUCKET, owner_id)
        if snapshot is None or not isinstance(snapshot.data, dict):
            return {}
        return {key: value for key, value in snapshot.data.items() if isinstance(value, int)}

    def _client_for(self, owner_id: str) -> Tuple[Any, str]:
        profile = self._store.get_profile(owner_id)
        if profile is None or not profile.spreadsheet_id:
            raise ConfigurationError(f"No spreadsheet connected for {owner_id}")
        if not profile.refresh_token:
            raise ConfigurationError(f"No Google refresh token stored for {owner_id}")
        try:
            credentials = build_user_credentials(
                profile.refresh_token,
                self.settings.google_client_id,
                self.settings.google_client_secret,
            )
        except CredentialsMissingError as exc:
            raise ConfigurationError(str(exc)) from exc
        return self._client_factory(profile.spreadsheet_id, credentials), profile.spreadsheet_id

    def _read_header(self, client) -> List[str]:
        rows = client.read_range(a1_headers_range(self.settings.locations_tab, columns=LOCATION_READ_COLUMNS))
        return list(rows[0]) if rows else []

    def _repair_header(self, client, header: List[str], column_map: ColumnMap) -> Tuple[ColumnMap, bool]:
        repair = plan_header_repair(header, column_map)
        if not repair.needed:
            return column_map, False
        tab = self.settings.locations_tab
        logger.info(
            "Appending missing headers to %r: %s",
            tab,
            ", ".join(role.value for role in repair.appended),
        )
        client.write_range(a1_headers_range(tab, columns=len(repair.header)), [repair.header])
        return repair.column_map, True

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------
    def sync_locations(self, owner_id: str) -> SyncResult:
        """Read the Locations tab, enrich what is missing and publish the cache."""

        with self._owner_lock(owner_id):
            return self._sync_locations(owner_id)

    def _sync_locations(self, owner_id: str) -> SyncResult:
        client, spreadsheet_id = self._client_for(owner_id)
        tab = self.settings.locations_tab
        rows = client.read_range(a1_full_column_range(tab, columns=LOCATION_READ_COLUMNS))
        if not rows:
            logger.info("Worksheet %r is empty for %s", tab, owner_id)
            self._publisher.publish_locations(owner_id, spreadsheet_id, [])
            return SyncResult(records=[])

        header, data = list(rows[0]), rows[1:]
        column_map, repaired = self._repair_header(client, header, resolve_columns(header))

        records = transform_rows(data, column_map, self._places.photo_url_for)
        candidates = select_for_enrichment(records, data, column_map)
        executor = EnrichmentExecutor(
            self._places,
            column_map,
            item_cap=self.settings.enrichment_item_cap,
            budget_seconds=self.settings.enrichment_budget_seconds,
            clock=self._clock,
        )
        attempts = self._load_attempts(owner_id)
        outcome = executor.run(records, order_candidates(candidates, attempts))
        writes = write_back(client, outcome.pending_writes, column_map, tab)
        self._publisher.publish_locations(owner_id, spreadsheet_id, outcome.records)
        ledger = record_attempts(attempts, outcome.attempted, candidates)
        if ledger != attempts:
            self._store.upsert_snapshot(db.ENRICHMENT_BUCKET, owner_id, spreadsheet_id, ledger)

        logger.info(
            "Synced %d locations for %s (%d enriched, %d pending, %d cells written)",
            len(records),
            owner_id,
            outcome.processed_count,
            outcome.remaining_count,
            writes,
        )
        return SyncResult(
            records=outcome.records,
            processed_count=outcome.processed_count,
            remaining_count=outcome.remaining_count,
            writes_issued=writes,
            header_repaired=repaired,
        )

    def get_locations(self, owner_id: str) -> List[Dict[str, Any]]:
        return self._publisher.read_locations(owner_id)

    def update_location(self, owner_id: str, location_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Patch the cells of one location and merge ``updates`` into the cache.

        Only the editable fields are written to the sheet; every other
        supplied key except ``id`` is merged into the cached record.
        """

        row_index = row_index_from_id(location_id)
        if row_index is None:
            raise InvalidLocationIdError(location_id)

        with self._owner_lock(owner_id):
            client, _ = self._client_for(owner_id)
            column_map = resolve_columns(self._read_header(client))
            writes = [
                PendingWrite(row_index, EDITABLE_FIELDS[field], value)
                for field, value in updates.items()
                if field in EDITABLE_FIELDS
            ]
            written = write_back(client, writes, column_map, self.settings.locations_tab)
            logger.info("Updated %d cells of %s for %s", written, location_id, owner_id)
            cache_updates = {field: value for field, value in updates.items() if field != "id"}
            return self._publisher.merge_location(owner_id, location_id, cache_updates)

    def add_location_from_url(self, owner_id: str, url: str) -> Dict[str, Any]:
        """Append the place behind a Google Maps link and re-sync."""

        with self._owner_lock(owner_id):
            client, _ = self._client_for(owner_id)
            place = self._places.lookup_url(url)
            if place is None:
                raise PlaceNotFoundError(url)

            tab = self.settings.locations_tab
            header = self._read_header(client)
            column_map, _ = self._repair_header(client, header, resolve_columns(header))
            values = {
                ColumnRole.NAME: place.name,
                ColumnRole.CITY: place.city or self.settings.default_country,
                ColumnRole.TYPE: place.type,
                ColumnRole.PRICE: place.price_level,
                ColumnRole.DESCRIPTION: place.summary,
                ColumnRole.URL: place.maps_url or url.strip(),
                ColumnRole.LAT: place.lat,
                ColumnRole.LNG: place.lng,
                ColumnRole.PHOTO_REF: place.photo_ref,
            }
            row = build_location_row(values, column_map)
            client.append_rows(a1_full_column_range(tab, columns=max(1, column_map.width)), [row])
            logger.info("Added %r to %r for %s", place.name, tab, owner_id)

            result = self._sync_locations(owner_id)
        return result.records[-1].to_dict()

    # ------------------------------------------------------------------
    # Itinerary
    # ------------------------------------------------------------------
    def _itinerary_for(self, owner_id: str) -> Tuple[ItinerarySync, str]:
        client, spreadsheet_id = self._client_for(owner_id)
        return ItinerarySync(client, self.settings.itinerary_tab), spreadsheet_id

    def sync_itinerary(self, owner_id: str) -> List[Dict[str, Any]]:
        """Read the Itinerary tab into the cache, creating the tab when missing."""

        with self._owner_lock(owner_id):
            itinerary, spreadsheet_id = self._itinerary_for(owner_id)
            items = sort_itinerary(itinerary.read())
            return self._publisher.publish_itinerary(owner_id, spreadsheet_id, items)

    def get_itinerary(self, owner_id: str) -> List[Dict[str, Any]]:
        return self._publisher.read_itinerary(owner_id)

    def update_itinerary(self, owner_id: str, items: Iterable[ItineraryInput]) -> List[Dict[str, Any]]:
        """Replace the whole itinerary with ``items``."""

        parsed = [
            item if isinstance(item, ItineraryItem) else ItineraryItem.from_dict(item, position)
            for position, item in enumerate(items)
        ]
        with self._owner_lock(owner_id):
            itinerary, spreadsheet_id = self._itinerary_for(owner_id)
            ordered = itinerary.rewrite(parsed)
            return self._publisher.publish_itinerary(owner_id, spreadsheet_id, ordered)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------
    def connect(self, owner_id: str, spreadsheet: str, refresh_token: Optional[str] = None):
        spreadsheet_id = parse_spreadsheet_id(spreadsheet)
        if not spreadsheet_id:
            raise ConfigurationError("A spreadsheet id or URL is required")
        if refresh_token is None:
            existing = self._store.get_profile(owner_id)
            refresh_token = existing.refresh_token if existing else None
        profile = self._store.save_profile(owner_id, spreadsheet_id=spreadsheet_id, refresh_token=refresh_token)
        logger.info("Connected %s to spreadsheet %s", owner_id, spreadsheet_id)
        return profile

    def disconnect(self, owner_id: str) -> None:
        with self._owner_lock(owner_id):
            self._store.clear_profile_sheet(owner_id)
            self._store.delete_snapshots(owner_id)
        logger.info("Disconnected %s and dropped cached data", owner_id)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------
    def _require_profile(self, owner_id: str):
        profile = self._store.get_profile(owner_id)
        if profile is None:
            raise ConfigurationError(f"No profile stored for {owner_id}")
        return profile

    def enable_sharing(self, owner_id: str) -> str:
        """Publish the owner's cached trip under a read-only slug.

        An owner who already shares keeps the slug handed out before.
        """

        profile = self._require_profile(owner_id)
        if profile.is_public and profile.public_slug:
            return profile.public_slug
        for _ in range(_SLUG_ATTEMPTS):
            slug = self._slug_factory()
            if self._store.set_public_slug(owner_id, slug):
                logger.info("Sharing enabled for %s", owner_id)
                return slug
            logger.debug("Share slug %s already taken; drawing another", slug)
        raise ConfigurationError(f"Could not allocate a share link for {owner_id}")

    def disable_sharing(self, owner_id: str) -> None:
        self._require_profile(owner_id)
        self._store.set_public_slug(owner_id, None)
        logger.info("Sharing disabled for %s", owner_id)

    def get_shared_trip(self, slug: str) -> Dict[str, Any]:
        """Return the cached locations and itinerary behind a share slug."""

        profile = self._store.get_profile_by_slug(slug)
        if profile is None:
            raise SharedTripNotFoundError(slug)
        if not profile.is_public:
            raise SharedTripNotFoundError(slug, "This trip is not public")
        return {
            "locations": self._publisher.read_locations(profile.owner_id),
            "itinerary": self._publisher.read_itinerary(profile.owner_id),
        }

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    def invite_collaborator(self, owner_id: str, email: str) -> bool:
        """Grant ``email`` access to the owner's trip; ``False`` if already invited."""

        address = _normalise_email(email)
        self._require_profile(owner_id)
        added = self._store.add_collaborator(owner_id, address)
        if added:
            logger.info("Invited %s to the trip of %s", address, owner_id)
        return added

    def list_collaborators(self, owner_id: str) -> List[Dict[str, str]]:
        return [
            {"email": collaborator.email, "createdAt": collaborator.created_at}
            for collaborator in self._store.list_collaborators(owner_id)
        ]

    def remove_collaborator(self, owner_id: str, email: str) -> bool:
        removed = self._store.remove_collaborator(owner_id, (email or "").strip())
        if removed:
            logger.info("Removed %s from the trip of %s", email.strip(), owner_id)
        return removed

    def shared_trips_for(self, email: str) -> List[str]:
        """Owner ids whose trips ``email`` has been invited to."""

        return self._store.owners_shared_with(_normalise_email(email))

    def has_access(self, owner_id: str, *, user_id: Optional[str] = None, email: Optional[str] = None) -> bool:
        if user_id and user_id == owner_id:
            return True
        if not email:
            return False
        try:
            address = _normalise_email(email)
        except InvalidEmailError:
            return False
        return owner_id in self._store.owners_shared_with(address)


__all__ = ["EDITABLE_FIELDS", "LOCATION_READ_COLUMNS", "SHARE_SLUG_LENGTH", "SyncResult", "SyncService"]
