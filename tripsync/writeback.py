"""Write changed cells back to the Locations worksheet in one request."""
from __future__ import annotations

import logging
from typing import Iterable, List, Protocol, Sequence

from tripsync.columns import ColumnMap
from tripsync.enrichment import PendingWrite
from tripsync.sheets_client import RangeUpdate, a1_cell

logger = logging.getLogger(__name__)

# Data row 0 sits on sheet row 2: rows are 1-based and row 1 is the header.
HEADER_ROW_OFFSET = 2


class BatchWriter(Protocol):
    def batch_write(self, updates: Sequence[RangeUpdate]) -> None:
        ...


def sheet_row_number(row_index: int) -> int:
    return row_index + HEADER_ROW_OFFSET


def build_cell_updates(
    pending_writes: Iterable[PendingWrite],
    column_map: ColumnMap,
    tab_title: str,
) -> List[RangeUpdate]:
    """Turn write intents into single-cell ranges.

    Intents for roles without a column are dropped.  The result is ordered by
    row, then column, and a later intent for the same cell replaces an
    earlier one.
    """

    cells = {}
    for write in pending_writes:
        column = column_map.index(write.field)
        if column < 0:
            logger.debug("Skipping write for unresolved column %s", write.field.value)
            continue
        cells[(write.row_index, column)] = write.value
    return [
        (a1_cell(tab_title, column, sheet_row_number(row)), [[value]])
        for (row, column), value in sorted(cells.items())
    ]


def write_back(
    client: BatchWriter,
    pending_writes: Sequence[PendingWrite],
    column_map: ColumnMap,
    tab_title: str,
) -> int:
    """Send ``pending_writes`` as one batched update; return the cell count."""

    updates = build_cell_updates(pending_writes, column_map, tab_title)
    if not updates:
        return 0
    logger.info("Writing %d enriched cells to %r", len(updates), tab_title)
    client.batch_write(updates)
    return len(updates)


__all__ = ["HEADER_ROW_OFFSET", "build_cell_updates", "sheet_row_number", "write_back"]
