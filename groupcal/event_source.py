from __future__ import annotations

import csv
import logging
import os
from pathlib import Path
from typing import Iterable

from groupcal.errors import EventSourceError
from groupcal.models import EventDescriptor, parse_local_datetime

logger = logging.getLogger(__name__)

COLUMN_START = "StartDate"
COLUMN_END = "EndDate"
COLUMN_SUBJECT = "Subject"
COLUMN_PROBE_START = "StartDateMinusOne"
COLUMN_PROBE_END = "EndDatePlusOne"


def _cell(row: dict[str, str | None], column: str) -> str:
    return str(row.get(column) or "").strip()


def _row_is_blank(row: dict[str, str | None]) -> bool:
    return not any(str(value or "").strip() for value in row.values())


def parse_rows(rows: Iterable[dict[str, str | None]]) -> list[EventDescriptor]:
    events: list[EventDescriptor] = []
    # Row 1 is the header.
    for line_no, row in enumerate(rows, start=2):
        if _row_is_blank(row):
            continue
        try:
            start = parse_local_datetime(_cell(row, COLUMN_START))
            end = parse_local_datetime(_cell(row, COLUMN_END))
            probe_start = parse_local_datetime(_cell(row, COLUMN_PROBE_START))
            probe_end = parse_local_datetime(_cell(row, COLUMN_PROBE_END))
        except ValueError as exc:
            raise EventSourceError(f"Row {line_no}: {exc}") from exc
        if start is None or end is None:
            raise EventSourceError(f"Row {line_no}: {COLUMN_START} and {COLUMN_END} are required.")
        events.append(
            EventDescriptor.build(
                subject=_cell(row, COLUMN_SUBJECT),
                start=start,
                end=end,
                probe_start=probe_start,
                probe_end=probe_end,
            )
        )
    return events


def load_events(path: str | os.PathLike[str]) -> list[EventDescriptor]:
    csv_path = Path(path)
    try:
        with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
            events = parse_rows(csv.DictReader(handle))
    except OSError as exc:
        raise EventSourceError(f"Cannot read events from {csv_path}: {exc}") from exc
    logger.info("Loaded %d events from %s", len(events), csv_path)
    return events
