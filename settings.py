"""Application configuration helpers for TripSheet."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping

from tripsync import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.APP_DIR / "sync_settings.json")
DEFAULT_DB_PATH = os.getenv("TRIPSYNC_DB_PATH", str(app_paths.APP_DIR / "tripsync.db"))

DEFAULT_GOOGLE_CLIENT_ID = os.getenv("TRIPSYNC_GOOGLE_CLIENT_ID", "")
DEFAULT_GOOGLE_CLIENT_SECRET = os.getenv("TRIPSYNC_GOOGLE_CLIENT_SECRET", "")
DEFAULT_MAPS_API_KEY = os.getenv("TRIPSYNC_MAPS_API_KEY", "")

DEFAULT_LOCATIONS_TAB = "Locations"
DEFAULT_ITINERARY_TAB = "Itinerary"
DEFAULT_COUNTRY = "Japan"

# A serverless request is cut off at ten seconds; stop starting lookups after
# roughly two thirds of that.
DEFAULT_ENRICHMENT_ITEM_CAP = 3
DEFAULT_ENRICHMENT_BUDGET_SECONDS = 6.5

ENV_OVERRIDES: Mapping[str, str] = {
    "google_client_id": "TRIPSYNC_GOOGLE_CLIENT_ID",
    "google_client_secret": "TRIPSYNC_GOOGLE_CLIENT_SECRET",
    "maps_api_key": "TRIPSYNC_MAPS_API_KEY",
    "db_path": "TRIPSYNC_DB_PATH",
}


@dataclass
class SyncSettings:
    google_client_id: str = DEFAULT_GOOGLE_CLIENT_ID
    google_client_secret: str = DEFAULT_GOOGLE_CLIENT_SECRET
    maps_api_key: str = DEFAULT_MAPS_API_KEY
    locations_tab: str = DEFAULT_LOCATIONS_TAB
    itinerary_tab: str = DEFAULT_ITINERARY_TAB
    enrichment_item_cap: int = DEFAULT_ENRICHMENT_ITEM_CAP
    enrichment_budget_seconds: float = DEFAULT_ENRICHMENT_BUDGET_SECONDS
    default_country: str = DEFAULT_COUNTRY
    db_path: str = DEFAULT_DB_PATH

    def to_json(self) -> Dict[str, object]:
        return {
            "google_client_id": self.google_client_id,
            "google_client_secret": self.google_client_secret,
            "maps_api_key": self.maps_api_key,
            "locations_tab": self.locations_tab,
            "itinerary_tab": self.itinerary_tab,
            "enrichment_item_cap": self.enrichment_item_cap,
            "enrichment_budget_seconds": self.enrichment_budget_seconds,
            "default_country": self.default_country,
            "db_path": self.db_path,
        }


def _default_sync_settings() -> Dict[str, object]:
    return SyncSettings().to_json()


def _clamp_int(value: object, default: int, lower: int, upper: int) -> int:
    try:
        return max(lower, min(upper, int(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _clamp_float(value: object, default: float, lower: float, upper: float) -> float:
    try:
        return max(lower, min(upper, float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _ensure_sync_settings(path: str = SYNC_SETTINGS_PATH) -> Dict[str, object]:
    default_settings = _default_sync_settings()
    if not os.path.exists(path):
        return default_settings

    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        logger.warning("Ignoring malformed sync settings file %s", path)
        return default_settings

    merged: Dict[str, object] = dict(default_settings)
    for key, value in data.items():
        if key not in default_settings:
            continue
        if key == "enrichment_item_cap":
            merged[key] = _clamp_int(value, DEFAULT_ENRICHMENT_ITEM_CAP, 1, 10)
        elif key == "enrichment_budget_seconds":
            merged[key] = _clamp_float(value, DEFAULT_ENRICHMENT_BUDGET_SECONDS, 1.0, 60.0)
        elif isinstance(value, str):
            merged[key] = value.strip()

    for key, env_var in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            merged[key] = value
    return merged


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    data = _ensure_sync_settings(path)
    return SyncSettings(
        google_client_id=str(data["google_client_id"]),
        google_client_secret=str(data["google_client_secret"]),
        maps_api_key=str(data["maps_api_key"]),
        locations_tab=str(data["locations_tab"]) or DEFAULT_LOCATIONS_TAB,
        itinerary_tab=str(data["itinerary_tab"]) or DEFAULT_ITINERARY_TAB,
        enrichment_item_cap=int(data["enrichment_item_cap"]),  # type: ignore[arg-type]
        enrichment_budget_seconds=float(data["enrichment_budget_seconds"]),  # type: ignore[arg-type]
        default_country=str(data["default_country"]) or DEFAULT_COUNTRY,
        db_path=str(data["db_path"]) or DEFAULT_DB_PATH,
    )


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "DEFAULT_COUNTRY",
    "DEFAULT_ITINERARY_TAB",
    "DEFAULT_LOCATIONS_TAB",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
