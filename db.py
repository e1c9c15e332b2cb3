"""SQLite-backed cache and profile store for TripSheet.

Three snapshot buckets are kept per owner: ``locations``, ``itinerary`` and
``enrichment`` (the lookup-attempt ledger). Each bucket holds exactly one row
per owner (``owner_id`` is the primary key) and every write replaces that row
inside a transaction, so a failed write leaves the previous snapshot
untouched. Profiles also carry the public share slug, and collaborators are
kept in their own table.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional

from tripsync import app_paths

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("TRIPSYNC_DB_PATH", str(app_paths.APP_DIR / "tripsync.db"))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

LOCATIONS_BUCKET = "locations"
ITINERARY_BUCKET = "itinerary"
ENRICHMENT_BUCKET = "enrichment"

_BUCKET_TABLES = {
    LOCATIONS_BUCKET: "cached_locations",
    ITINERARY_BUCKET: "cached_itineraries",
    ENRICHMENT_BUCKET: "enrichment_attempts",
}

SNAPSHOT_COLUMN_DEFINITIONS = {
    "owner_id": "TEXT PRIMARY KEY",
    "sheet_id": "TEXT NOT NULL",
    "data": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

PROFILE_COLUMN_DEFINITIONS = {
    "owner_id": "TEXT PRIMARY KEY",
    "spreadsheet_id": "TEXT",
    "refresh_token": "TEXT",
    "updated_at": "TEXT NOT NULL",
    "public_slug": "TEXT",
    "is_public": "INTEGER NOT NULL DEFAULT 0",
}

COLLABORATOR_COLUMN_DEFINITIONS = {
    "owner_id": "TEXT NOT NULL",
    "email": "TEXT NOT NULL",
    "created_at": "TEXT NOT NULL",
}

_PROFILE_FIELDS = "owner_id, spreadsheet_id, refresh_token, public_slug, is_public"


class CacheStoreError(Exception):
    """Raised when a snapshot cannot be read or written."""


@dataclass(frozen=True)
class CachedSnapshot:
    owner_id: str
    source_id: str
    data: Any
    updated_at: str


@dataclass(frozen=True)
class OwnerProfile:
    owner_id: str
    spreadsheet_id: Optional[str]
    refresh_token: Optional[str]
    public_slug: Optional[str] = None
    is_public: bool = False


@dataclass(frozen=True)
class Collaborator:
    email: str
    created_at: str


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    snapshot_columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in SNAPSHOT_COLUMN_DEFINITIONS.items()
    )
    for table in _BUCKET_TABLES.values():
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n        {snapshot_columns}\n    )")

    profile_columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in PROFILE_COLUMN_DEFINITIONS.items()
    )
    conn.execute(f"CREATE TABLE IF NOT EXISTS profiles (\n        {profile_columns}\n    )")

    # Profiles created before sharing existed lack the slug columns.
    existing = {row[1] for row in conn.execute("PRAGMA table_info(profiles)")}
    for column, definition in PROFILE_COLUMN_DEFINITIONS.items():
        if column not in existing:
            conn.execute(f"ALTER TABLE profiles ADD COLUMN {column} {definition}")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_profiles_public_slug ON profiles(public_slug)"
    )

    collaborator_columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in COLLABORATOR_COLUMN_DEFINITIONS.items()
    )
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS collaborators (\n        {collaborator_columns},\n"
        "        PRIMARY KEY (owner_id, email)\n    )"
    )


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        if _DB_PATH.parent:
            _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(_DB_PATH)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True


def initialize_database() -> Path:
    _ensure_database()
    return _DB_PATH


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(_DB_PATH, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _table_for(bucket: str) -> str:
    try:
        return _BUCKET_TABLES[bucket]
    except KeyError:
        raise CacheStoreError(f"Unknown cache bucket: {bucket}") from None


def serialise_data(data: Any) -> str:
    """Return the canonical JSON text stored for a snapshot payload."""

    return json.dumps(data, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def upsert_snapshot(
    bucket: str,
    owner_id: str,
    source_id: str,
    data: Any,
    updated_at: Optional[str] = None,
) -> CachedSnapshot:
    """Replace the ``bucket`` snapshot for ``owner_id``."""

    if not owner_id:
        raise CacheStoreError("owner_id is required")
    table = _table_for(bucket)
    stamp = updated_at or _utc_now_iso()
    payload = serialise_data(data)
    with transaction() as conn:
        conn.execute(
            f"INSERT INTO {table}(owner_id, sheet_id, data, updated_at) VALUES(?, ?, ?, ?) "
            "ON CONFLICT(owner_id) DO UPDATE SET sheet_id=excluded.sheet_id, "
            "data=excluded.data, updated_at=excluded.updated_at",
            (owner_id, source_id or "", payload, stamp),
        )
    logger.debug("Cached %s snapshot for %s (%d bytes)", bucket, owner_id, len(payload))
    return CachedSnapshot(owner_id=owner_id, source_id=source_id or "", data=json.loads(payload), updated_at=stamp)


def get_snapshot(bucket: str, owner_id: str) -> Optional[CachedSnapshot]:
    table = _table_for(bucket)
    conn = get_connection()
    try:
        row = conn.execute(
            f"SELECT owner_id, sheet_id, data, updated_at FROM {table} WHERE owner_id = ?",
            (owner_id,),
        ).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    try:
        data = json.loads(row["data"])
    except json.JSONDecodeError as exc:
        raise CacheStoreError(f"Cached {bucket} snapshot for {owner_id} is corrupt") from exc
    return CachedSnapshot(
        owner_id=row["owner_id"],
        source_id=row["sheet_id"],
        data=data,
        updated_at=row["updated_at"],
    )


def get_snapshot_text(bucket: str, owner_id: str) -> Optional[str]:
    """Return the stored JSON text of a snapshot, exactly as persisted."""

    table = _table_for(bucket)
    conn = get_connection()
    try:
        row = conn.execute(f"SELECT data FROM {table} WHERE owner_id = ?", (owner_id,)).fetchone()
    finally:
        conn.close()
    return None if row is None else row["data"]


def delete_snapshots(owner_id: str) -> None:
    with transaction() as conn:
        for table in _BUCKET_TABLES.values():
            conn.execute(f"DELETE FROM {table} WHERE owner_id = ?", (owner_id,))


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

def _profile_from_row(row: sqlite3.Row) -> OwnerProfile:
    return OwnerProfile(
        owner_id=row["owner_id"],
        spreadsheet_id=row["spreadsheet_id"],
        refresh_token=row["refresh_token"],
        public_slug=row["public_slug"],
        is_public=bool(row["is_public"]),
    )


def save_profile(owner_id: str, *, spreadsheet_id: Optional[str], refresh_token: Optional[str]) -> OwnerProfile:
    if not owner_id:
        raise CacheStoreError("owner_id is required")
    with transaction() as conn:
        conn.execute(
            "INSERT INTO profiles(owner_id, spreadsheet_id, refresh_token, updated_at) VALUES(?, ?, ?, ?) "
            "ON CONFLICT(owner_id) DO UPDATE SET spreadsheet_id=excluded.spreadsheet_id, "
            "refresh_token=excluded.refresh_token, updated_at=excluded.updated_at",
            (owner_id, spreadsheet_id, refresh_token, _utc_now_iso()),
        )
    profile = get_profile(owner_id)
    assert profile is not None
    return profile


def get_profile(owner_id: str) -> Optional[OwnerProfile]:
    conn = get_connection()
    try:
        row = conn.execute(f"SELECT {_PROFILE_FIELDS} FROM profiles WHERE owner_id = ?", (owner_id,)).fetchone()
    finally:
        conn.close()
    return None if row is None else _profile_from_row(row)


def get_profile_by_slug(slug: str) -> Optional[OwnerProfile]:
    if not slug:
        return None
    conn = get_connection()
    try:
        row = conn.execute(f"SELECT {_PROFILE_FIELDS} FROM profiles WHERE public_slug = ?", (slug,)).fetchone()
    finally:
        conn.close()
    return None if row is None else _profile_from_row(row)


def clear_profile_sheet(owner_id: str) -> None:
    with transaction() as conn:
        conn.execute(
            "UPDATE profiles SET spreadsheet_id = NULL, updated_at = ? WHERE owner_id = ?",
            (_utc_now_iso(), owner_id),
        )


def set_public_slug(owner_id: str, slug: Optional[str]) -> bool:
    """Publish the owner's trip under ``slug``; ``None`` withdraws it.

    Returns ``False`` when another owner already holds ``slug``.
    """

    try:
        with transaction() as conn:
            conn.execute(
                "UPDATE profiles SET public_slug = ?, is_public = ?, updated_at = ? WHERE owner_id = ?",
                (slug, 1 if slug else 0, _utc_now_iso(), owner_id),
            )
    except sqlite3.IntegrityError:
        return False
    return True


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

def add_collaborator(owner_id: str, email: str) -> bool:
    """Record ``email`` as a collaborator; ``False`` when already present."""

    with transaction() as conn:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO collaborators(owner_id, email, created_at) VALUES(?, ?, ?)",
            (owner_id, email, _utc_now_iso()),
        )
        return cursor.rowcount > 0


def remove_collaborator(owner_id: str, email: str) -> bool:
    with transaction() as conn:
        cursor = conn.execute(
            "DELETE FROM collaborators WHERE owner_id = ? AND lower(email) = lower(?)",
            (owner_id, email),
        )
        return cursor.rowcount > 0


def list_collaborators(owner_id: str) -> List[Collaborator]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT email, created_at FROM collaborators WHERE owner_id = ? ORDER BY created_at, email",
            (owner_id,),
        ).fetchall()
    finally:
        conn.close()
    return [Collaborator(email=row["email"], created_at=row["created_at"]) for row in rows]


def owners_shared_with(email: str) -> List[str]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT owner_id FROM collaborators WHERE email = ? ORDER BY owner_id",
            (email,),
        ).fetchall()
    finally:
        conn.close()
    return [row["owner_id"] for row in rows]


__all__ = [
    "CacheStoreError",
    "CachedSnapshot",
    "Collaborator",
    "DB_PATH",
    "ENRICHMENT_BUCKET",
    "ITINERARY_BUCKET",
    "LOCATIONS_BUCKET",
    "OwnerProfile",
    "add_collaborator",
    "clear_profile_sheet",
    "delete_snapshots",
    "get_connection",
    "get_profile",
    "get_profile_by_slug",
    "get_snapshot",
    "get_snapshot_text",
    "initialize_database",
    "list_collaborators",
    "owners_shared_with",
    "remove_collaborator",
    "save_profile",
    "serialise_data",
    "set_database_path",
    "set_public_slug",
    "transaction",
    "upsert_snapshot",
]
