"""
Deduplication against the spreadsheet, and reconciliation of the persisted
"last processed" marker with the sheet's last row.

Sheet rows are lists of cell values with the header as row 0. Scans are
linear; one tab for one listener stays small enough for that.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from .config import COL_TIMESTAMP, COL_TRACK_ID, COL_TRACK_NAME, DUPLICATE_WINDOW_MS
from .error_handling import get_logger
from .models import LastProcessed, PersistedState, PlayEvent, parse_timestamp, to_ms

logger = get_logger()


def _cell(row: Sequence, index: int) -> str:
    if index < len(row) and row[index] is not None:
        return str(row[index])
    return ""


def find_last_processed_in_sheet(sheet_rows: Optional[List[list]]) -> Optional[LastProcessed]:
    """Marker derived from the final data row, or None for an empty sheet."""
    if not sheet_rows or len(sheet_rows) <= 1:
        return None

    last_row = sheet_rows[-1]
    track_id = _cell(last_row, COL_TRACK_ID)
    played_at = parse_timestamp(_cell(last_row, COL_TIMESTAMP))
    if not track_id or played_at is None:
        logger.warning("[Deduplication] Last row in sheet is missing track ID or timestamp")
        return None

    return LastProcessed(
        track_id=track_id,
        played_at=played_at,
        recorded_at=played_at,
        track_name=_cell(last_row, COL_TRACK_NAME),
    )


def reconcile_state(sheet_rows: Optional[List[list]], local_state: Optional[PersistedState]) -> PersistedState:
    """
    Return the state to use for this run.

    Whichever marker is newer wins. A local marker newer than the sheet is
    kept but logged, since it should not happen.
    """
    local_state = local_state if local_state is not None else PersistedState.default()
    sheet_marker = find_last_processed_in_sheet(sheet_rows)

    if sheet_marker is None:
        logger.info("[Deduplication] Sheet is empty, using local state")
        return local_state

    if local_state.last_processed is None:
        logger.info("[Deduplication] No local state, using sheet data as source of truth")
        reconciled = local_state.copy()
        reconciled.last_processed = sheet_marker
        return reconciled

    sheet_time = to_ms(sheet_marker.played_at)
    local_time = to_ms(local_state.last_processed.played_at)

    if sheet_time > local_time:
        logger.warning(
            "[Deduplication] Sheet has newer data than local state. Using sheet data. "
            f"Sheet last: {sheet_marker.track_name} at {sheet_marker.played_at.isoformat()}; "
            f"local last: {local_state.last_processed.track_id} at "
            f"{local_state.last_processed.played_at.isoformat()}"
        )
        reconciled = local_state.copy()
        reconciled.last_processed = sheet_marker
        return reconciled

    if local_time > sheet_time:
        logger.warning(
            "[Deduplication] Local state has newer data than sheet. This may indicate a sync issue. "
            f"Local last: {local_state.last_processed.track_id} at "
            f"{local_state.last_processed.played_at.isoformat()}; "
            f"sheet last: {sheet_marker.track_name} at {sheet_marker.played_at.isoformat()}"
        )

    return local_state


def is_track_in_sheet(
    event: PlayEvent,
    sheet_rows: Optional[List[list]],
    window_ms: int = DUPLICATE_WINDOW_MS,
) -> bool:
    """Same track ID logged within window_ms of this play."""
    if not sheet_rows or len(sheet_rows) <= 1:
        return False

    played_at = event.played_at_ms
    for row in sheet_rows[1:]:
        row_track_id = _cell(row, COL_TRACK_ID)
        if not row_track_id or row_track_id != event.track_id:
            continue
        row_time = parse_timestamp(_cell(row, COL_TIMESTAMP))
        if row_time is None:
            continue
        if abs(played_at - to_ms(row_time)) < window_ms:
            logger.debug(f"[Deduplication] Track already in sheet: {event.track_name}")
            return True

    return False


def filter_duplicates_against_sheet(
    events: Optional[List[PlayEvent]],
    sheet_rows: Optional[List[list]],
    window_ms: int = DUPLICATE_WINDOW_MS,
) -> List[PlayEvent]:
    if not events:
        return []

    filtered = [e for e in events if not is_track_in_sheet(e, sheet_rows, window_ms)]
    duplicate_count = len(events) - len(filtered)
    if duplicate_count > 0:
        logger.info(f"[Deduplication] Filtered out {duplicate_count} duplicate(s) found in sheet")
    return filtered


def validate_state(state: Optional[PersistedState]) -> bool:
    """Structural sanity check on a loaded state document."""
    if state is None:
        return False
    if state.last_processed is not None and not state.last_processed.track_id:
        return False
    if state.stats.success_total < 0 or state.stats.failure_total < 0:
        return False
    return all(item.attempt_count >= 1 for item in state.failed_queue)
