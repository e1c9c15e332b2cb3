"""Full-rewrite synchronisation of the Itinerary worksheet.

The itinerary is small and edited as a whole, so writes never diff: the
incoming list is sorted by ``(day, order)``, the data region below the header
is cleared and the sorted rows are written back in one range update.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from tripsync.records import ItineraryItem, sort_itinerary, transform_itinerary_rows
from tripsync.sheets_client import (
    TabAlreadyExistsError,
    TabNotFoundError,
    a1_block_range,
    a1_full_column_range,
    a1_headers_range,
)

logger = logging.getLogger(__name__)

ITINERARY_HEADERS = ["Day", "Location ID", "Order", "Notes"]
ITINERARY_COLUMNS = len(ITINERARY_HEADERS)


class ItinerarySync:
    def __init__(self, client, tab_title: str = "Itinerary") -> None:
        self._client = client
        self._tab_title = tab_title

    @property
    def tab_title(self) -> str:
        return self._tab_title

    def _create_tab(self) -> None:
        try:
            self._client.create_tab(self._tab_title)
        except TabAlreadyExistsError:
            logger.info("Worksheet %r was created concurrently", self._tab_title)
        self._write_header()

    def _write_header(self) -> None:
        self._client.write_range(
            a1_headers_range(self._tab_title, columns=ITINERARY_COLUMNS),
            [ITINERARY_HEADERS],
        )

    def ensure_tab(self) -> None:
        """Create the worksheet with its header when the tab metadata lacks it."""

        if self._client.tab_exists(self._tab_title):
            return
        logger.info("Creating missing worksheet %r", self._tab_title)
        self._create_tab()

    def read(self) -> List[ItineraryItem]:
        """Return the items on the sheet, creating the tab when it is missing."""

        range_spec = a1_full_column_range(self._tab_title, columns=ITINERARY_COLUMNS)
        try:
            rows = self._client.read_range(range_spec)
        except TabNotFoundError:
            logger.info("Worksheet %r not found; creating it", self._tab_title)
            self._create_tab()
            return []
        if not rows:
            self._write_header()
            return []
        return transform_itinerary_rows(rows[1:])

    def rewrite(self, items: Sequence[ItineraryItem]) -> List[ItineraryItem]:
        """Replace the data region with ``items`` sorted; return the sorted list."""

        ordered = sort_itinerary(item for item in items if item.location_id)
        self.ensure_tab()
        self._client.clear_range(a1_full_column_range(self._tab_title, columns=ITINERARY_COLUMNS, start_row=2))
        if ordered:
            self._client.write_range(
                a1_block_range(self._tab_title, start_row=2, rows=len(ordered), columns=ITINERARY_COLUMNS),
                [item.to_row() for item in ordered],
            )
        logger.info("Rewrote %d itinerary rows in %r", len(ordered), self._tab_title)
        return ordered


__all__ = ["ITINERARY_COLUMNS", "ITINERARY_HEADERS", "ItinerarySync"]
