"""Google Places lookups used to enrich spreadsheet rows.

:class:`GooglePlacesClient` resolves a free-text query (``"Ichiran, Fukuoka,
Japan"``) into a :class:`PlaceResult` with coordinates, a photo reference and
the descriptive fields the Locations tab keeps.  It calls the Places *Text
Search* endpoint to find a place id and then *Place Details* for the rich
fields, falling back to the search hit when the details call fails.

``lookup`` returns ``None`` when nothing matches or when no API key is
configured; transport failures raise :class:`PlacesError`.  Callers that
process several rows treat both outcomes as "skip this row".
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
PHOTO_URL = "https://maps.googleapis.com/maps/api/place/photo"
PHOTO_MAX_WIDTH = 800
REQUEST_TIMEOUT = 10

DETAIL_FIELDS: Sequence[str] = (
    "name",
    "geometry",
    "photos",
    "url",
    "website",
    "price_level",
    "types",
    "editorial_summary",
    "address_components",
    "opening_hours",
    "business_status",
    "utc_offset",
)

PRICE_LEVEL_LABELS: Mapping[int, str] = {
    0: "Free",
    1: "¥",
    2: "¥¥",
    3: "¥¥¥",
    4: "¥¥¥¥",
}

PREFERRED_TYPES: Sequence[str] = (
    "restaurant",
    "cafe",
    "bar",
    "bakery",
    "museum",
    "park",
    "shrine",
    "temple",
    "hotel",
    "lodging",
    "store",
    "shopping_mall",
    "tourist_attraction",
    "night_club",
)

_SHORT_LINK_HOSTS = ("goo.gl", "maps.app.goo.gl", "share.google")
_COORDINATE_NAME_RE = re.compile(r"^-?\d+\.\d+,-?\d+\.\d+$")
_PLACE_PATH_RE = re.compile(r"/maps/place/([^/]+)/")
_URL_RE = re.compile(r"https?://[^\s\"]+")

JsonFetcher = Callable[[str], Mapping[str, Any]]


class PlacesError(RuntimeError):
    """Raised when the Places API cannot be reached or returns garbage."""


@dataclass
class PlaceResult:
    """Fields a place lookup can contribute to a location row."""

    name: str
    lat: float
    lng: float
    city: str = ""
    photo_ref: Optional[str] = None
    maps_url: Optional[str] = None
    website: Optional[str] = None
    price_level: Optional[str] = None
    type: Optional[str] = None
    summary: Optional[str] = None
    opening_hours: Optional[Dict[str, Any]] = None
    business_status: Optional[str] = None
    utc_offset_minutes: Optional[int] = None
    types: List[str] = field(default_factory=list)


def _http_get_json(url: str) -> Mapping[str, Any]:
    request = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT) as response:  # nosec: B310 - fixed Google host
            payload = response.read()
    except (urllib.error.URLError, TimeoutError) as exc:
        raise PlacesError(f"Unable to contact the Places API: {exc}") from exc
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PlacesError("Places API returned an unreadable response") from exc
    if not isinstance(data, Mapping):
        raise PlacesError("Places API returned an unexpected payload")
    return data


def _resolve_redirects(url: str) -> str:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT) as response:  # nosec: B310 - user supplied maps link
            return response.geturl() or url
    except urllib.error.HTTPError:
        pass
    except urllib.error.URLError as exc:
        raise PlacesError(f"Unable to expand link {url}: {exc}") from exc
    try:
        with urllib.request.urlopen(url, timeout=REQUEST_TIMEOUT) as response:  # nosec: B310 - user supplied maps link
            return response.geturl() or url
    except urllib.error.URLError as exc:
        raise PlacesError(f"Unable to expand link {url}: {exc}") from exc


def extract_city(components: Optional[Sequence[Mapping[str, Any]]], default: str = "Japan") -> str:
    """Return the locality of a place, else its first-level administrative area."""

    if not components:
        return default
    for component in components:
        if "locality" in (component.get("types") or []):
            return str(component.get("long_name") or default)
    for component in components:
        if "administrative_area_level_1" in (component.get("types") or []):
            return str(component.get("long_name") or default)
    return default


def map_price_level(level: Any) -> str:
    if level is None or isinstance(level, bool):
        return ""
    try:
        return PRICE_LEVEL_LABELS.get(int(level), "")
    except (TypeError, ValueError):
        return ""


def map_type(types: Optional[Sequence[str]]) -> str:
    """Pick a human label from the Places ``types`` list."""

    if not types:
        return ""
    for candidate in PREFERRED_TYPES:
        if candidate in types:
            return candidate.replace("_", " ").capitalize()
    return types[0].replace("_", " ").capitalize()


def _opening_hours(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, Mapping):
        return None
    hours: Dict[str, Any] = {}
    weekday_text = payload.get("weekday_text")
    if isinstance(weekday_text, list):
        hours["weekdayText"] = [str(line) for line in weekday_text]
    if isinstance(payload.get("open_now"), bool):
        hours["openNow"] = payload["open_now"]
    return hours or None


def _first_photo_ref(payload: Mapping[str, Any]) -> Optional[str]:
    photos = payload.get("photos") or []
    if photos and isinstance(photos[0], Mapping):
        reference = photos[0].get("photo_reference")
        return str(reference) if reference else None
    return None


def _location(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    geometry = payload.get("geometry") or {}
    location = geometry.get("location") if isinstance(geometry, Mapping) else None
    if isinstance(location, Mapping) and "lat" in location and "lng" in location:
        return location
    return None


class GooglePlacesClient:
    """Place-lookup collaborator backed by the Places web service."""

    def __init__(
        self,
        api_key: str,
        *,
        default_country: str = "Japan",
        fetch_json: Optional[JsonFetcher] = None,
        resolve_url: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.default_country = default_country
        self._fetch_json = fetch_json or _http_get_json
        self._resolve_url = resolve_url or _resolve_redirects

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def lookup(self, query: str) -> Optional[PlaceResult]:
        """Return the best match for ``query`` or ``None``."""

        if not self.api_key or not (query or "").strip():
            return None

        search = self._fetch_json(self._url(TEXT_SEARCH_URL, {"query": query}))
        status = search.get("status")
        results = search.get("results") or []
        if status != "OK" or not results:
            logger.warning("Place search failed for %r: %s", query, status)
            return None

        hit = results[0]
        place_id = hit.get("place_id")
        details: Mapping[str, Any] = {}
        if place_id:
            payload = self._fetch_json(
                self._url(DETAILS_URL, {"place_id": place_id, "fields": ",".join(DETAIL_FIELDS)})
            )
            if payload.get("status") == "OK" and isinstance(payload.get("result"), Mapping):
                details = payload["result"]
            else:
                logger.warning("Place details failed for %s: %s", place_id, payload.get("status"))

        if not details:
            return self._from_search_hit(hit)
        return self._from_details(details, hit)

    def lookup_url(self, url: str) -> Optional[PlaceResult]:
        """Resolve a pasted Google Maps link to a place."""

        match = _URL_RE.search(url or "")
        final_url = match.group(0) if match else (url or "").strip()
        if not final_url:
            return None

        if self._is_short_link(final_url):
            final_url = self._resolve_url(final_url)
            logger.debug("Expanded maps link to %s", final_url)

        place_match = _PLACE_PATH_RE.search(final_url)
        if place_match:
            name = urllib.parse.unquote_plus(place_match.group(1))
            if not _COORDINATE_NAME_RE.match(name):
                return self.lookup(name)

        parsed = urllib.parse.urlparse(final_url)
        query = urllib.parse.parse_qs(parsed.query).get("q")
        if query and query[0].strip():
            return self.lookup(query[0])

        logger.info("No place name found in maps link %s", final_url)
        return None

    def photo_url_for(self, photo_ref: str) -> str:
        """Return the absolute photo URL for a Places photo reference."""

        if not photo_ref or not self.api_key:
            return ""
        return self._url(PHOTO_URL, {"maxwidth": PHOTO_MAX_WIDTH, "photo_reference": photo_ref})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _url(self, base: str, params: Mapping[str, Any]) -> str:
        query = dict(params)
        query["key"] = self.api_key
        return f"{base}?{urllib.parse.urlencode(query)}"

    @staticmethod
    def _is_short_link(url: str) -> bool:
        if any(host in url for host in _SHORT_LINK_HOSTS):
            return True
        return "maps.google" not in url and "google.com/maps" not in url

    def _from_search_hit(self, hit: Mapping[str, Any]) -> Optional[PlaceResult]:
        location = _location(hit)
        if location is None:
            return None
        return PlaceResult(
            name=str(hit.get("name") or ""),
            lat=float(location["lat"]),
            lng=float(location["lng"]),
            city=self.default_country,
            photo_ref=_first_photo_ref(hit),
        )

    def _from_details(self, details: Mapping[str, Any], hit: Mapping[str, Any]) -> Optional[PlaceResult]:
        location = _location(details) or _location(hit)
        if location is None:
            return None
        summary = details.get("editorial_summary") or {}
        utc_offset = details.get("utc_offset")
        types = [str(entry) for entry in details.get("types") or []]
        return PlaceResult(
            name=str(details.get("name") or hit.get("name") or ""),
            lat=float(location["lat"]),
            lng=float(location["lng"]),
            city=extract_city(details.get("address_components"), self.default_country),
            photo_ref=_first_photo_ref(details) or _first_photo_ref(hit),
            maps_url=details.get("url") or None,
            website=details.get("website") or None,
            price_level=map_price_level(details.get("price_level")) or None,
            type=map_type(types) or None,
            summary=(summary.get("overview") if isinstance(summary, Mapping) else None) or None,
            opening_hours=_opening_hours(details.get("opening_hours")),
            business_status=details.get("business_status") or None,
            utc_offset_minutes=int(utc_offset) if isinstance(utc_offset, (int, float)) else None,
            types=types,
        )


__all__ = [
    "GooglePlacesClient",
    "PlaceResult",
    "PlacesError",
    "extract_city",
    "map_price_level",
    "map_type",
]
