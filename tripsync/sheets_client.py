"""Google Sheets client helpers with robust A1 range handling.

This module centralises every direct interaction with the Google Sheets API
used by TripSheet.  The sync engine only talks to :class:`GoogleSheetsClient`
through a handful of range operations (``read_range``, ``write_range``,
``batch_write``, ``clear_range``, ``append_rows``, ``create_tab`` and
``get_tab_metadata``), so it never needs to know about googleapiclient
resources or HTTP status codes.

Two concerns are handled here rather than in the engine:

* Worksheet titles are always quoted according to A1 notation and column
  references are calculated with :func:`column_letter`, so ranges built for
  tabs such as ``Bob's Trip`` parse correctly.
* API failures are classified once.  A read against a tab that does not exist
  raises :class:`TabNotFoundError`, adding a tab that already exists raises
  :class:`TabAlreadyExistsError`, anything else raises
  :class:`SheetsApiResponseError`.  Rate limiting and transient 5xx responses
  are retried a bounded number of times before they surface.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, MutableSequence, Optional, Sequence, Tuple

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = {429, 500, 502, 503, 504}
MAX_RETRY_ATTEMPTS = 3
# Kept short: a sync request has a few seconds of budget in total.
BACKOFF_SCHEDULE = (0.5, 1.0)

VALUE_INPUT_OPTION = "USER_ENTERED"

RangeUpdate = Tuple[str, Sequence[Sequence[Any]]]


@dataclass(frozen=True)
class TabInfo:
    """Title and grid properties of a worksheet tab."""

    title: str
    sheet_id: Optional[int] = None
    row_count: Optional[int] = None
    column_count: Optional[int] = None


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""

    def __init__(self, message: str, *, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


class TabNotFoundError(SheetsApiResponseError):
    """Raised when a range refers to a worksheet that does not exist."""


class TabAlreadyExistsError(SheetsApiResponseError):
    """Raised when adding a worksheet whose title is already taken."""


# ---------------------------------------------------------------------------
# A1 helpers
# ---------------------------------------------------------------------------
def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if len(safe) >= 2 and safe[0] == safe[-1] and safe[0] in {"'", '"'}:
        safe = safe[1:-1].replace("''", "'").strip()
    if not safe:
        raise SheetsClientError("Worksheet title must not be empty.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def a1_range(title: str, range_spec: str) -> str:
    return f"{quote_title(title)}!{range_spec}"


def a1_cell(title: str, column_index: int, row_number: int) -> str:
    """Return the A1 address of one cell; ``column_index`` is zero-based."""

    if row_number < 1:
        raise ValueError("Row number must be >= 1")
    return a1_range(title, f"{column_letter(column_index + 1)}{row_number}")


def a1_headers_range(title: str, *, columns: int) -> str:
    """Return an A1 range covering the header row for ``title``."""

    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A1:{last_column}1")


def a1_full_column_range(title: str, *, columns: int = 26, start_row: int = 1) -> str:
    """Return an A1 range spanning all rows from ``start_row`` for ``columns`` columns."""

    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A{start_row}:{last_column}")


def a1_block_range(title: str, *, start_row: int, rows: int, columns: int) -> str:
    """Return a closed A1 range of ``rows`` x ``columns`` cells starting at column A."""

    if rows < 1:
        raise ValueError("Row count must be >= 1")
    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A{start_row}:{last_column}{start_row + rows - 1}")


def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    if "?" in value:
        value = value.split("?", 1)[0]
    if "#" in value:
        value = value.split("#", 1)[0]
    return value


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------
def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    if resp is not None:
        try:
            return int(getattr(resp, "status", 0))
        except (TypeError, ValueError):
            return 0
    return 0


def _http_message(exc: HttpError) -> str:
    reason = getattr(exc, "reason", None)
    if reason:
        return str(reason)
    return str(exc)


def classify_http_error(exc: HttpError, description: str) -> SheetsApiResponseError:
    """Map a googleapiclient error onto the client's error hierarchy."""

    status = _http_status(exc)
    message = _http_message(exc)
    lowered = message.lower()
    text = f"Sheets API {description} failed ({status}): {message}"
    if status == 400 and "already exists" in lowered:
        return TabAlreadyExistsError(text, status=status)
    if status == 400 and "unable to parse range" in lowered:
        return TabNotFoundError(text, status=status)
    if status == 404:
        return TabNotFoundError(text, status=status)
    return SheetsApiResponseError(text, status=status)


def _call_with_retry(func: Callable[[], Any], description: str) -> Any:
    """Execute ``func`` retrying rate-limit and transient server errors."""

    attempt = 0
    while True:
        try:
            return func()
        except HttpError as exc:
            status = _http_status(exc)
            if status not in RETRIABLE_STATUSES or attempt >= MAX_RETRY_ATTEMPTS - 1:
                raise classify_http_error(exc, description) from exc
            delay = BACKOFF_SCHEDULE[min(attempt, len(BACKOFF_SCHEDULE) - 1)]
            attempt += 1
            logger.warning(
                "Sheets API %s error (%s). Retrying in %ss (%d/%d)",
                description,
                status,
                delay,
                attempt,
                MAX_RETRY_ATTEMPTS,
            )
            time.sleep(delay)


def build_service(credentials):
    """Construct a Sheets v4 service for ``credentials``."""

    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class GoogleSheetsClient:
    """Range-level access to one spreadsheet through the Sheets REST API."""

    def __init__(self, spreadsheet_id: str, credentials=None, *, service=None) -> None:
        self._spreadsheet_id = parse_spreadsheet_id(spreadsheet_id)
        if not self._spreadsheet_id:
            raise SheetsClientError("Spreadsheet id must not be empty.")
        if service is None:
            if credentials is None:
                raise SheetsClientError("Either credentials or a service must be supplied.")
            service = build_service(credentials)
        self._service = service

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_range(self, range_spec: str) -> List[List[str]]:
        """Return the values of ``range_spec`` as rows of strings.

        Trailing empty cells and rows are omitted by the API, so rows may be
        ragged.  An empty range returns an empty list.
        """

        request = (
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=range_spec, majorDimension="ROWS")
        )
        result = _call_with_retry(request.execute, "values.get")
        values = result.get("values", []) if isinstance(result, Mapping) else []
        return [["" if cell is None else str(cell) for cell in row] for row in values]

    def get_tab_metadata(self) -> List[TabInfo]:
        request = self._service.spreadsheets().get(
            spreadsheetId=self._spreadsheet_id,
            includeGridData=False,
        )
        metadata = _call_with_retry(request.execute, "spreadsheets.get")
        sheets = metadata.get("sheets", []) if isinstance(metadata, Mapping) else []
        tabs: List[TabInfo] = []
        for sheet in sheets:
            properties = sheet.get("properties", {}) if isinstance(sheet, Mapping) else {}
            title = properties.get("title")
            if not isinstance(title, str):
                continue
            grid = properties.get("gridProperties", {}) or {}
            tabs.append(
                TabInfo(
                    title=title,
                    sheet_id=properties.get("sheetId"),
                    row_count=grid.get("rowCount"),
                    column_count=grid.get("columnCount"),
                )
            )
        return tabs

    def tab_exists(self, title: str) -> bool:
        return any(tab.title == title for tab in self.get_tab_metadata())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def write_range(self, range_spec: str, values: Sequence[Sequence[Any]]) -> None:
        request = (
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption=VALUE_INPUT_OPTION,
                body={"values": [list(row) for row in values]},
            )
        )
        _call_with_retry(request.execute, "values.update")

    def batch_write(self, updates: Sequence[RangeUpdate]) -> None:
        """Write several ranges in one ``values.batchUpdate`` request."""

        if not updates:
            return
        data: List[Dict[str, Any]] = [
            {"range": range_spec, "values": [list(row) for row in values], "majorDimension": "ROWS"}
            for range_spec, values in updates
        ]
        request = (
            self._service.spreadsheets()
            .values()
            .batchUpdate(
                spreadsheetId=self._spreadsheet_id,
                body={"valueInputOption": VALUE_INPUT_OPTION, "data": data},
            )
        )
        _call_with_retry(request.execute, "values.batchUpdate")

    def append_rows(self, range_spec: str, values: Sequence[Sequence[Any]]) -> None:
        request = (
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption=VALUE_INPUT_OPTION,
                insertDataOption="INSERT_ROWS",
                body={"values": [list(row) for row in values]},
            )
        )
        _call_with_retry(request.execute, "values.append")

    def clear_range(self, range_spec: str) -> None:
        request = (
            self._service.spreadsheets()
            .values()
            .clear(spreadsheetId=self._spreadsheet_id, range=range_spec, body={})
        )
        _call_with_retry(request.execute, "values.clear")

    def create_tab(self, title: str) -> None:
        """Add a worksheet named ``title``.

        Raises :class:`TabAlreadyExistsError` when the title is taken.
        """

        request = self._service.spreadsheets().batchUpdate(
            spreadsheetId=self._spreadsheet_id,
            body={"requests": [{"addSheet": {"properties": {"title": title}}}]},
        )
        _call_with_retry(request.execute, "spreadsheets.batchUpdate")
        logger.info("Created worksheet %r in %s", title, self._spreadsheet_id)


def build_client(spreadsheet_id: str, credentials) -> GoogleSheetsClient:
    """Factory helper used by higher level modules to construct a client."""

    return GoogleSheetsClient(spreadsheet_id=spreadsheet_id, credentials=credentials)


__all__ = [
    "GoogleSheetsClient",
    "RangeUpdate",
    "SheetsApiResponseError",
    "SheetsClientError",
    "TabAlreadyExistsError",
    "TabInfo",
    "TabNotFoundError",
    "a1_block_range",
    "a1_cell",
    "a1_full_column_range",
    "a1_headers_range",
    "a1_range",
    "build_client",
    "classify_http_error",
    "column_letter",
    "parse_spreadsheet_id",
    "quote_title",
]
