import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

import db
from conftest import FakeClock, FakePlaces, FakeSheetsClient
from settings import SyncSettings
from tripsync.errors import ConfigurationError, InvalidLocationIdError, PlaceNotFoundError
from tripsync.itinerary import ITINERARY_HEADERS
from tripsync.places import PlaceResult
from tripsync.records import ItineraryItem
from tripsync.sheets_client import SheetsApiResponseError, TabNotFoundError
from tripsync.sync_service import SyncService

HEADER = [
    "Restaurant Name",
    "City",
    "Cuisine Type",
    "Price (JPY)",
    "Best For",
    "Google Maps",
    "Latitude",
    "Longitude",
    "Photo Reference",
]

OWNER = "owner-1"


def _now():
    return "2026-01-01T00:00:00Z"


def _service(client, places, settings, clock=None):
    factory_calls = []

    def _factory(spreadsheet_id, credentials):
        factory_calls.append((spreadsheet_id, credentials))
        return client

    service = SyncService(
        settings,
        client_factory=_factory,
        places=places,
        clock=clock or FakeClock(),
        now=_now,
    )
    service.factory_calls = factory_calls
    return service


@pytest.fixture
def connected(cache_db):
    db.save_profile(OWNER, spreadsheet_id="sheet-1", refresh_token="refresh-token")


def _coordinates_only(lat, lng):
    return PlaceResult(name="x", lat=lat, lng=lng)


def test_scenario_a_two_rows_enriched_in_one_batch(connected, sync_settings):
    client = FakeSheetsClient(
        {
            "Locations": [
                HEADER,
                ["Ichiran", "Fukuoka", "Ramen", "¥", "Late night", "https://maps/1", "", "", "ref-1"],
                ["Afuri", "Tokyo", "Ramen", "¥¥", "Yuzu", "https://maps/2", "", "", "ref-2"],
            ]
        }
    )
    places = FakePlaces(
        {
            "Ichiran, Fukuoka": _coordinates_only(33.59, 130.40),
            "Afuri, Tokyo": _coordinates_only(35.64, 139.71),
        }
    )
    service = _service(client, places, sync_settings)

    result = service.sync_locations(OWNER)

    assert result.processed_count == 2
    assert result.remaining_count == 0
    assert result.writes_issued == 4
    assert client.call_names().count("batch_write") == 1
    assert sorted(range_spec for range_spec, _ in client.batch_requests[0]) == [
        "'Locations'!G2",
        "'Locations'!G3",
        "'Locations'!H2",
        "'Locations'!H3",
    ]
    cached = service.get_locations(OWNER)
    assert [(entry["lat"], entry["lng"]) for entry in cached] == [(33.59, 130.40), (35.64, 139.71)]
    assert cached[0]["photoUrl"] == "https://photos.example/ref-1"
    assert cached[1]["type"] == "Ramen"


def test_scenario_b_missing_headers_are_appended(connected, sync_settings):
    client = FakeSheetsClient(
        {
            "Locations": [
                ["Name", "City", "Type", "Price", "Description", "URL"],
                ["Ichiran", "Fukuoka", "Ramen", "¥", "Late night", "https://maps/1"],
            ]
        }
    )
    places = FakePlaces({"Ichiran, Fukuoka": PlaceResult(name="Ichiran", lat=33.59, lng=130.40, photo_ref="p-1")})
    service = _service(client, places, sync_settings)

    result = service.sync_locations(OWNER)

    assert result.header_repaired
    assert client.tabs["Locations"][0] == [
        "Name", "City", "Type", "Price", "Description", "URL", "Latitude", "Longitude", "Photo Reference"
    ]
    assert client.calls.index(("write_range", "'Locations'!A1:I1")) < client.call_names().index("batch_write")
    assert client.tabs["Locations"][1] == [
        "Ichiran", "Fukuoka", "Ramen", "¥", "Late night", "https://maps/1", 33.59, 130.40, "p-1"
    ]


def test_scenario_c_item_cap_leaves_remaining_rows(connected, sync_settings):
    rows = [HEADER] + [[f"Place {index}", "Tokyo"] for index in range(5)]
    client = FakeSheetsClient({"Locations": rows})
    places = FakePlaces({f"Place {index}, Tokyo": _coordinates_only(35.0 + index, 139.0) for index in range(5)})
    service = _service(client, places, sync_settings)

    result = service.sync_locations(OWNER)

    assert result.processed_count == 3
    assert result.remaining_count == 2
    cached = service.get_locations(OWNER)
    assert len(cached) == 5
    assert [entry["lat"] for entry in cached] == [35.0, 36.0, 37.0, 0.0, 0.0]

    follow_up = service.sync_locations(OWNER)

    # Rows never looked up go ahead of rows already tried.
    assert follow_up.processed_count == 3
    assert follow_up.remaining_count == 2
    assert places.queries[3:5] == ["Place 3, Tokyo", "Place 4, Tokyo"]
    assert [entry["lat"] for entry in service.get_locations(OWNER)] == [35.0, 36.0, 37.0, 38.0, 39.0]


def test_partly_filled_rows_rotate_instead_of_starving_later_rows(connected, sync_settings):
    rows = [HEADER] + [[f"Place {index}", "Tokyo"] for index in range(5)]
    client = FakeSheetsClient({"Locations": rows})
    places = FakePlaces({f"Place {index}, Tokyo": _coordinates_only(35.0 + index, 139.0) for index in range(5)})
    service = _service(client, places, sync_settings)

    for _ in range(4):
        service.sync_locations(OWNER)

    assert len(places.queries) == 12
    assert {query: places.queries.count(query) for query in set(places.queries)} == {
        f"Place {index}, Tokyo": count for index, count in enumerate([3, 3, 2, 2, 2])
    }
    assert places.queries[6:9] == ["Place 1, Tokyo", "Place 2, Tokyo", "Place 3, Tokyo"]


def test_edited_row_is_looked_up_before_rows_already_tried(connected, sync_settings):
    rows = [HEADER] + [[f"Place {index}", "Tokyo"] for index in range(5)]
    client = FakeSheetsClient({"Locations": rows})
    results = {f"Place {index}, Tokyo": _coordinates_only(35.0 + index, 139.0) for index in range(5)}
    results["Place X, Tokyo"] = _coordinates_only(40.0, 139.0)
    places = FakePlaces(results)
    service = _service(client, places, sync_settings)
    service.sync_locations(OWNER)
    service.sync_locations(OWNER)

    client.tabs["Locations"][2][0] = "Place X"
    service.sync_locations(OWNER)

    assert places.queries[-3:] == ["Place X, Tokyo", "Place 2, Tokyo", "Place 3, Tokyo"]


def test_failed_write_back_is_fatal_and_leaves_cache_unpublished(connected, sync_settings):
    class _RejectingClient(FakeSheetsClient):
        def batch_write(self, updates):
            raise SheetsApiResponseError("quota exceeded", status=429)

    client = _RejectingClient({"Locations": [HEADER, ["Ichiran", "Fukuoka"]]})
    places = FakePlaces({"Ichiran, Fukuoka": _coordinates_only(33.59, 130.40)})
    service = _service(client, places, sync_settings)

    with pytest.raises(SheetsApiResponseError):
        service.sync_locations(OWNER)

    assert places.queries == ["Ichiran, Fukuoka"]
    assert db.get_snapshot(db.LOCATIONS_BUCKET, OWNER) is None
    assert db.get_snapshot(db.ENRICHMENT_BUCKET, OWNER) is None
    assert service._locks == {}


def test_budget_conservation_with_slow_lookups(connected, sync_settings):
    clock = FakeClock()
    rows = [HEADER] + [[f"Place {index}", "Tokyo"] for index in range(3)]
    client = FakeSheetsClient({"Locations": rows})

    class _SlowPlaces(FakePlaces):
        def lookup(self, query):
            clock.advance(7.0)
            return super().lookup(query)

    service = _service(client, _SlowPlaces(), sync_settings, clock=clock)

    result = service.sync_locations(OWNER)

    assert result.processed_count == 1
    assert result.processed_count + result.remaining_count == 3


def test_sync_is_idempotent_without_sheet_changes(connected, sync_settings):
    client = FakeSheetsClient(
        {
            "Locations": [
                HEADER,
                ["Ichiran", "Fukuoka", "Ramen", "¥", "Late night", "https://maps/1", "33.59", "130.4", "ref-1"],
                ["Afuri", "Tokyo", "", "", "", "", "", "", ""],
            ]
        }
    )
    service = _service(client, FakePlaces(), sync_settings)

    service.sync_locations(OWNER)
    first = db.get_snapshot_text(db.LOCATIONS_BUCKET, OWNER)
    service.sync_locations(OWNER)
    second = db.get_snapshot_text(db.LOCATIONS_BUCKET, OWNER)

    assert first == second
    assert "batch_write" not in client.call_names()


def test_fill_only_never_overwrites_existing_cells(connected, sync_settings):
    row = ["Ichiran", "Fukuoka", "Ramen", "¥", "", "https://maps/1", "33.59", "130.4", "ref-1"]
    client = FakeSheetsClient({"Locations": [HEADER, list(row)]})
    places = FakePlaces(
        {
            "Ichiran, Fukuoka": PlaceResult(
                name="Other", lat=1.0, lng=2.0, photo_ref="other", type="Cafe",
                price_level="¥¥¥", summary="Filled", maps_url="https://other",
            )
        }
    )
    service = _service(client, places, sync_settings)

    service.sync_locations(OWNER)

    expected = list(row)
    expected[4] = "Filled"
    assert client.tabs["Locations"][1] == expected


def test_empty_sheet_publishes_empty_snapshot(connected, sync_settings):
    service = _service(FakeSheetsClient({"Locations": []}), FakePlaces(), sync_settings)

    result = service.sync_locations(OWNER)

    assert result.records == []
    assert service.get_locations(OWNER) == []


def test_scenario_e_single_field_update_patches_one_cell(connected, sync_settings):
    client = FakeSheetsClient(
        {
            "Locations": [
                HEADER,
                ["Ichiran", "Fukuoka", "Ramen", "¥", "Late night", "https://maps/1", "33.59", "130.4", "ref-1"],
                ["Afuri", "Tokyo", "Ramen", "¥¥", "Yuzu", "https://maps/2", "35.64", "139.71", "ref-2"],
            ]
        }
    )
    service = _service(client, FakePlaces(), sync_settings)
    service.sync_locations(OWNER)
    before = service.get_locations(OWNER)
    client.calls.clear()

    merged = service.update_location(OWNER, "loc-1", {"city": "Yokohama"})

    assert client.batch_requests[-1] == [("'Locations'!B3", [["Yokohama"]])]
    assert client.call_names() == ["read_range", "batch_write"]
    after = service.get_locations(OWNER)
    assert merged["city"] == "Yokohama"
    assert after[0] == before[0]
    expected = dict(before[1])
    expected["city"] = "Yokohama"
    assert after[1] == expected


def test_update_location_rejects_malformed_ids(connected, sync_settings):
    service = _service(FakeSheetsClient({"Locations": [HEADER]}), FakePlaces(), sync_settings)

    with pytest.raises(InvalidLocationIdError):
        service.update_location(OWNER, "place-1", {"city": "Kyoto"})


def test_update_location_only_writes_editable_fields(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER, ["Ichiran"]]})
    service = _service(client, FakePlaces(), sync_settings)
    service.sync_locations(OWNER)

    merged = service.update_location(OWNER, "loc-0", {"name": "Ichiran Tenjin", "note": "cash only"})

    assert client.batch_requests[-1] == [("'Locations'!A2", [["Ichiran Tenjin"]])]
    assert merged["note"] == "cash only"


def test_add_location_from_url_appends_row_and_syncs(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER, ["Ichiran", "Fukuoka", "Ramen", "¥", "x", "https://maps/1", "1", "2", "r"]]})
    place = PlaceResult(
        name="Afuri Ebisu", lat=35.64, lng=139.71, city="Tokyo", photo_ref="p-9",
        maps_url="https://maps/afuri", price_level="¥¥", type="Restaurant", summary="Yuzu ramen",
    )
    places = FakePlaces(urls={"https://maps.app.goo.gl/x": place})
    service = _service(client, places, sync_settings)

    added = service.add_location_from_url(OWNER, "https://maps.app.goo.gl/x")

    assert added["id"] == "loc-1"
    assert added["name"] == "Afuri Ebisu"
    assert added["photoUrl"] == "https://photos.example/p-9"
    assert client.tabs["Locations"][2] == [
        "Afuri Ebisu", "Tokyo", "Restaurant", "¥¥", "Yuzu ramen", "https://maps/afuri", 35.64, 139.71, "p-9"
    ]
    assert len(service.get_locations(OWNER)) == 2


def test_add_location_from_unknown_url_raises(connected, sync_settings):
    service = _service(FakeSheetsClient({"Locations": [HEADER]}), FakePlaces(), sync_settings)

    with pytest.raises(PlaceNotFoundError):
        service.add_location_from_url(OWNER, "https://maps.app.goo.gl/nothing")


def test_add_location_without_profile_fails_before_any_lookup(cache_db, sync_settings):
    place = PlaceResult(name="Afuri Ebisu", lat=35.64, lng=139.71)
    places = FakePlaces(urls={"https://maps.app.goo.gl/x": place})
    service = _service(FakeSheetsClient({"Locations": [HEADER]}), places, sync_settings)

    with pytest.raises(ConfigurationError):
        service.add_location_from_url(OWNER, "https://maps.app.goo.gl/x")
    assert places.url_queries == []
    assert service.factory_calls == []


def test_update_location_cannot_rename_the_record_id(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER, ["Ichiran"], ["Afuri"]]})
    service = _service(client, FakePlaces(), sync_settings)
    service.sync_locations(OWNER)

    merged = service.update_location(OWNER, "loc-0", {"id": "loc-1", "city": "Fukuoka"})

    assert merged["id"] == "loc-0"
    assert merged["city"] == "Fukuoka"
    assert [entry["id"] for entry in service.get_locations(OWNER)] == ["loc-0", "loc-1"]
    assert client.batch_requests[-1] == [("'Locations'!B2", [["Fukuoka"]])]


def test_owner_locks_are_released_after_each_call(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER, ["Ichiran"]]})
    service = _service(client, FakePlaces(), sync_settings)

    service.sync_locations(OWNER)
    service.sync_itinerary(OWNER)
    with pytest.raises(ConfigurationError):
        service.sync_locations("owner-without-profile")

    assert service._locks == {}


def test_itinerary_sync_creates_missing_tab(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER]})
    service = _service(client, FakePlaces(), sync_settings)

    items = service.sync_itinerary(OWNER)

    assert items == []
    assert client.tabs["Itinerary"] == [ITINERARY_HEADERS]
    assert service.get_itinerary(OWNER) == []
    assert db.get_snapshot(db.ITINERARY_BUCKET, OWNER) is not None


def test_itinerary_sync_reads_sorted_items(connected, sync_settings):
    client = FakeSheetsClient(
        {
            "Itinerary": [
                ITINERARY_HEADERS,
                ["Day 2", "loc-1", "1", ""],
                ["Day 1", "loc-3", "2", "Dinner"],
                ["Day 1", "", "1", "orphan"],
                ["Day 1", "loc-0", "1", "Lunch"],
            ]
        }
    )
    service = _service(client, FakePlaces(), sync_settings)

    items = service.sync_itinerary(OWNER)

    assert [(item["day"], item["locationId"]) for item in items] == [
        ("Day 1", "loc-0"),
        ("Day 1", "loc-3"),
        ("Day 2", "loc-1"),
    ]


def test_itinerary_rewrite_is_a_full_replace(connected, sync_settings):
    client = FakeSheetsClient(
        {"Itinerary": [ITINERARY_HEADERS, ["Day 1", "loc-0", "1", ""], ["Day 1", "loc-1", "2", ""], ["Day 2", "loc-2", "1", ""]]}
    )
    service = _service(client, FakePlaces(), sync_settings)
    service.sync_itinerary(OWNER)

    result = service.update_itinerary(
        OWNER,
        [
            {"day": "Day 2", "locationId": "loc-5", "order": 1},
            ItineraryItem("Day 1", "loc-4", 3, "Museum"),
            {"day": "Day 1", "locationId": "", "order": 1},
        ],
    )

    assert result == [
        {"day": "Day 1", "locationId": "loc-4", "order": 3, "note": "Museum"},
        {"day": "Day 2", "locationId": "loc-5", "order": 1, "note": ""},
    ]
    assert service.get_itinerary(OWNER) == result
    assert client.tabs["Itinerary"] == [
        ITINERARY_HEADERS,
        ["Day 1", "loc-4", 3, "Museum"],
        ["Day 2", "loc-5", 1, ""],
    ]
    assert ("write_range", "'Itinerary'!A2:D3") in client.calls


def test_scenario_d_empty_itinerary_clears_data_region(connected, sync_settings):
    client = FakeSheetsClient({"Itinerary": [ITINERARY_HEADERS, ["Day 1", "loc-0", "1", ""]]})
    service = _service(client, FakePlaces(), sync_settings)

    result = service.update_itinerary(OWNER, [])

    assert result == []
    assert client.tabs["Itinerary"] == [ITINERARY_HEADERS]
    assert ("clear_range", "'Itinerary'!A2:D") in client.calls
    assert "write_range" not in client.call_names()
    assert service.get_itinerary(OWNER) == []
    assert db.get_snapshot_text(db.ITINERARY_BUCKET, OWNER) == "[]"


def test_itinerary_rewrite_creates_missing_tab(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER]})
    service = _service(client, FakePlaces(), sync_settings)

    service.update_itinerary(OWNER, [ItineraryItem("Day 1", "loc-0", 1)])

    assert client.tabs["Itinerary"] == [ITINERARY_HEADERS, ["Day 1", "loc-0", 1, ""]]
    assert client.call_names().count("create_tab") == 1


def test_itinerary_tab_created_concurrently_is_tolerated(connected, sync_settings):
    class _RacingClient(FakeSheetsClient):
        def read_range(self, range_spec):
            # Another request creates the tab between our read and our create.
            self.tabs["Itinerary"] = []
            raise TabNotFoundError("Unable to parse range: Itinerary", status=400)

    client = _RacingClient({"Locations": [HEADER]})
    service = _service(client, FakePlaces(), sync_settings)

    assert service.sync_itinerary(OWNER) == []
    assert client.tabs["Itinerary"] == [ITINERARY_HEADERS]
    assert service.get_itinerary(OWNER) == []


def test_itinerary_create_failure_other_than_race_is_fatal(connected, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER]})
    client.fail_create_with = SheetsApiResponseError("permission denied", status=403)
    service = _service(client, FakePlaces(), sync_settings)

    with pytest.raises(SheetsApiResponseError):
        service.sync_itinerary(OWNER)
    assert db.get_snapshot(db.ITINERARY_BUCKET, OWNER) is None


def test_missing_profile_is_a_configuration_error(cache_db, sync_settings):
    service = _service(FakeSheetsClient(), FakePlaces(), sync_settings)

    with pytest.raises(ConfigurationError):
        service.sync_locations(OWNER)


def test_missing_oauth_client_is_a_configuration_error(connected):
    service = _service(FakeSheetsClient(), FakePlaces(), SyncSettings(google_client_id="", google_client_secret=""))

    with pytest.raises(ConfigurationError):
        service.sync_locations(OWNER)
    assert service.factory_calls == []


def test_connect_and_disconnect(cache_db, sync_settings):
    client = FakeSheetsClient({"Locations": [HEADER, ["Ichiran"]]})
    service = _service(client, FakePlaces(), sync_settings)

    profile = service.connect(OWNER, "https://docs.google.com/spreadsheets/d/sheet-9/edit", "token-1")
    service.sync_locations(OWNER)
    assert profile.spreadsheet_id == "sheet-9"
    assert service.factory_calls[0][0] == "sheet-9"

    service.disconnect(OWNER)

    assert service.get_locations(OWNER) == []
    assert db.get_profile(OWNER).spreadsheet_id is None
    with pytest.raises(ConfigurationError):
        service.sync_locations(OWNER)


def test_connect_keeps_existing_refresh_token(connected, sync_settings):
    service = _service(FakeSheetsClient(), FakePlaces(), sync_settings)

    profile = service.connect(OWNER, "sheet-2")

    assert profile.refresh_token == "refresh-token"
    assert profile.spreadsheet_id == "sheet-2"
