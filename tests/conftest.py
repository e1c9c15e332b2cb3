from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

import db
from settings import SyncSettings
from tripsync.places import PlaceResult
from tripsync.sheets_client import TabAlreadyExistsError, TabInfo, TabNotFoundError

_RANGE_RE = re.compile(r"^'((?:[^']|'')*)'!([A-Z]+)(\d+)(?::([A-Z]+)(\d+)?)?$")


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - 64)
    return index - 1


class FakeSheetsClient:
    """In-memory spreadsheet speaking the client's range API."""

    def __init__(self, tabs: Optional[Dict[str, Sequence[Sequence[Any]]]] = None) -> None:
        self.tabs: Dict[str, List[List[Any]]] = {
            title: [list(row) for row in rows] for title, rows in (tabs or {}).items()
        }
        self.calls: List[tuple] = []
        self.batch_requests: List[List[tuple]] = []
        self.fail_create_with: Optional[Exception] = None

    # Helpers ---------------------------------------------------------
    def _parse(self, range_spec: str):
        match = _RANGE_RE.match(range_spec)
        if not match:
            raise AssertionError(f"Unexpected range {range_spec!r}")
        title = match.group(1).replace("''", "'")
        start_col = _column_index(match.group(2))
        start_row = int(match.group(3)) - 1
        if match.group(4) is None:
            end_col, end_row = start_col, start_row
        else:
            end_col = _column_index(match.group(4))
            end_row = int(match.group(5)) - 1 if match.group(5) else None
        return title, start_row, start_col, end_row, end_col

    def _tab(self, title: str) -> List[List[Any]]:
        if title not in self.tabs:
            raise TabNotFoundError(f"Unable to parse range: {title}", status=400)
        return self.tabs[title]

    def _set_cell(self, rows: List[List[Any]], row: int, col: int, value: Any) -> None:
        while len(rows) <= row:
            rows.append([])
        target = rows[row]
        while len(target) <= col:
            target.append("")
        target[col] = value

    def _trim(self, rows: List[List[Any]]) -> None:
        for row in rows:
            while row and row[-1] in ("", None):
                row.pop()
        while rows and not rows[-1]:
            rows.pop()

    def cell(self, title: str, row_number: int, column_letter: str) -> Any:
        rows = self.tabs[title]
        row, col = row_number - 1, _column_index(column_letter)
        if row >= len(rows) or col >= len(rows[row]):
            return ""
        return rows[row][col]

    # Client API ------------------------------------------------------
    def read_range(self, range_spec: str) -> List[List[str]]:
        self.calls.append(("read_range", range_spec))
        title, start_row, start_col, end_row, end_col = self._parse(range_spec)
        rows = self._tab(title)
        last = len(rows) if end_row is None else min(len(rows), end_row + 1)
        result = []
        for row in rows[start_row:last]:
            values = ["" if cell is None else str(cell) for cell in row[start_col:end_col + 1]]
            while values and values[-1] == "":
                values.pop()
            result.append(values)
        while result and not result[-1]:
            result.pop()
        return result

    def write_range(self, range_spec: str, values: Sequence[Sequence[Any]]) -> None:
        self.calls.append(("write_range", range_spec))
        title, start_row, start_col, _, _ = self._parse(range_spec)
        rows = self._tab(title)
        for offset, row_values in enumerate(values):
            for col_offset, value in enumerate(row_values):
                self._set_cell(rows, start_row + offset, start_col + col_offset, value)

    def batch_write(self, updates) -> None:
        self.calls.append(("batch_write", len(updates)))
        self.batch_requests.append(list(updates))
        for range_spec, values in updates:
            title, start_row, start_col, _, _ = self._parse(range_spec)
            rows = self._tab(title)
            for offset, row_values in enumerate(values):
                for col_offset, value in enumerate(row_values):
                    self._set_cell(rows, start_row + offset, start_col + col_offset, value)

    def append_rows(self, range_spec: str, values: Sequence[Sequence[Any]]) -> None:
        self.calls.append(("append_rows", range_spec))
        title, _, _, _, _ = self._parse(range_spec)
        rows = self._tab(title)
        self._trim(rows)
        rows.extend(list(row) for row in values)

    def clear_range(self, range_spec: str) -> None:
        self.calls.append(("clear_range", range_spec))
        title, start_row, start_col, end_row, end_col = self._parse(range_spec)
        rows = self._tab(title)
        last = len(rows) if end_row is None else min(len(rows), end_row + 1)
        for row in rows[start_row:last]:
            for col in range(start_col, min(end_col + 1, len(row))):
                row[col] = ""
        self._trim(rows)

    def create_tab(self, title: str) -> None:
        self.calls.append(("create_tab", title))
        if self.fail_create_with is not None:
            raise self.fail_create_with
        if title in self.tabs:
            raise TabAlreadyExistsError(f"A sheet with the name {title} already exists", status=400)
        self.tabs[title] = []

    def get_tab_metadata(self) -> List[TabInfo]:
        self.calls.append(("get_tab_metadata",))
        return [TabInfo(title=title, sheet_id=index) for index, title in enumerate(self.tabs)]

    def tab_exists(self, title: str) -> bool:
        return any(tab.title == title for tab in self.get_tab_metadata())

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakePlaces:
    """Place lookups answered from a dict keyed by query."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, *, urls: Optional[Dict[str, Any]] = None) -> None:
        self.results = dict(results or {})
        self.urls = dict(urls or {})
        self.queries: List[str] = []
        self.url_queries: List[str] = []

    def lookup(self, query: str) -> Optional[PlaceResult]:
        self.queries.append(query)
        outcome = self.results.get(query)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def lookup_url(self, url: str) -> Optional[PlaceResult]:
        self.url_queries.append(url)
        return self.urls.get(url)

    def photo_url_for(self, photo_ref: str) -> str:
        return f"https://photos.example/{photo_ref}" if photo_ref else ""


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def cache_db(tmp_path):
    db_path = tmp_path / "cache.db"
    db.set_database_path(db_path)
    db.initialize_database()
    return db_path


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(
        google_client_id="client-id",
        google_client_secret="client-secret",
        maps_api_key="maps-key",
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
