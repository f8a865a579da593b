"""
Retry queue processor.

Per queued item:
- attempt count at the maximum: evicted without another try (data loss)
- backoff not yet elapsed: skipped this pass
- retry succeeds: the ERROR row is updated in place and the item removed
- retry fails: attempt count goes up by one

Backoff is a fixed lookup by attempt count (1 hour after the first failure,
24 hours after the second). A pass handles at most batch_size items and
stops once its wall-clock budget is spent.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import (
    COL_STATUS,
    COL_TIMESTAMP,
    COL_TRACK_ID,
    ERROR_ROW_MATCH_WINDOW_MS,
    LISTENING_LOG_SHEET,
    Settings,
)
from .error_handling import PlaylogError, get_logger
from .formatter import format_as_sheet_row, format_play
from .models import FailedItem, PersistedState, PlayEvent, PlayStatus, parse_timestamp, to_ms, utcnow

logger = get_logger()


@dataclass
class RetryOutcome:
    track_id: str
    track_name: str
    success: bool
    attempt_count: int
    error: str = ""
    row_number: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "trackId": self.track_id,
            "trackName": self.track_name,
            "success": self.success,
            "attemptCount": self.attempt_count,
            "error": self.error,
            "row": self.row_number,
        }


@dataclass
class RetryPassResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    evicted: List[FailedItem] = field(default_factory=list)
    details: List[RetryOutcome] = field(default_factory=list)
    stopped_early: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "maxedOut": len(self.evicted),
            "stoppedEarly": self.stopped_early,
            "details": [d.to_dict() for d in self.details],
        }


def backoff_for(attempt_count: int, backoff_hours) -> timedelta:
    """Wait required after the given number of failed attempts."""
    hours = list(backoff_hours) or [1]
    index = min(max(attempt_count, 1), len(hours)) - 1
    return timedelta(hours=hours[index])


def is_ready_for_retry(item: FailedItem, now: datetime, backoff_hours=(1, 24)) -> bool:
    if item.last_attempt_at is None:
        return True
    return now - item.last_attempt_at >= backoff_for(item.attempt_count, backoff_hours)


def find_error_row_index(
    sheet_rows: List[list],
    track_id: str,
    played_at: datetime,
    window_ms: int = ERROR_ROW_MATCH_WINDOW_MS,
) -> Optional[int]:
    """1-indexed sheet row of the ERROR placeholder for this play, or None."""
    target = to_ms(played_at)
    for i, row in enumerate(sheet_rows[1:], start=2):
        if len(row) <= COL_STATUS:
            continue
        if row[COL_TRACK_ID] != track_id or row[COL_STATUS] != PlayStatus.ERROR.value:
            continue
        row_time = parse_timestamp(row[COL_TIMESTAMP])
        if row_time is not None and abs(to_ms(row_time) - target) < window_ms:
            return i
    return None


def add_to_failed_queue(
    state: PersistedState,
    event: PlayEvent,
    error: str,
    now: Optional[datetime] = None,
) -> FailedItem:
    """Queue a play whose enrichment failed; an existing entry for the same play is bumped."""
    now = now or utcnow()
    key = (event.track_id, event.played_at_ms)
    for item in state.failed_queue:
        if item.key() == key:
            item.attempt_count += 1
            item.last_attempt_at = now
            item.last_error = error
            logger.info(f"[Retry Queue] Updated entry (attempt {item.attempt_count}): {event.track_name}")
            return item

    item = FailedItem(
        track_id=event.track_id,
        played_at=event.played_at,
        attempt_count=1,
        last_attempt_at=now,
        last_error=error,
        track_name=event.track_name,
        original_payload=event.payload,
    )
    state.failed_queue.append(item)
    logger.info(f"[Retry Queue] Added: {event.track_name}")
    return item


def remove_from_failed_queue(state: PersistedState, item: FailedItem) -> None:
    key = item.key()
    state.failed_queue = [i for i in state.failed_queue if i.key() != key]


def _retry_item(item: FailedItem, spotify, sheets, sheet_rows: List[list], window_ms: int) -> RetryOutcome:
    logger.info(f"[Retry Queue] Processing: {item.track_name or item.track_id} (attempt {item.attempt_count + 1})")
    try:
        event = spotify.rebuild_event(item.track_id, item.played_at, item.original_payload)
        features, artist = spotify.enrich(event)
        record = format_play(event, features, artist)

        row_number = find_error_row_index(sheet_rows, item.track_id, item.played_at, window_ms)
        if row_number:
            sheets.update_row(LISTENING_LOG_SHEET, row_number, format_as_sheet_row(record))
            logger.info(f"[Retry Queue] Updated row {row_number} for: {event.track_name}")
        else:
            logger.warning(f"[Retry Queue] Could not find ERROR row for: {event.track_name}")
        return RetryOutcome(item.track_id, item.track_name, True, item.attempt_count, row_number=row_number)
    except (PlaylogError, ValueError) as e:
        logger.error(f"[Retry Queue] Error retrying {item.track_name}: {e}")
        return RetryOutcome(item.track_id, item.track_name, False, item.attempt_count + 1, error=str(e))


def process_retry_queue(
    state: PersistedState,
    spotify,
    sheets,
    settings: Settings,
    now: Optional[datetime] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RetryPassResult:
    """
    Run one pass over the queue, mutating state.failed_queue.

    The Listening Log is read at most once, and only when an item is
    actually due for a retry.
    """
    now = now or utcnow()
    started = clock()
    result = RetryPassResult()
    sheet_rows: Optional[List[list]] = None

    for item in list(state.failed_queue[: settings.retry_batch_size]):
        if clock() - started > settings.retry_budget_seconds:
            logger.info("[Retry Queue] Time budget spent, stopping processing")
            result.stopped_early = True
            break

        if item.attempt_count >= settings.retry_max_attempts:
            logger.warning(f"[Retry Queue] Max attempts reached, dropping: {item.track_name or item.track_id}")
            remove_from_failed_queue(state, item)
            result.evicted.append(item)
            continue

        if not is_ready_for_retry(item, now, settings.retry_backoff_hours):
            logger.debug(f"[Retry Queue] Not ready for retry: {item.track_name}")
            result.skipped += 1
            continue

        if sheet_rows is None:
            sheet_rows = sheets.get_all_rows(LISTENING_LOG_SHEET)

        outcome = _retry_item(item, spotify, sheets, sheet_rows, settings.error_row_window_ms)
        result.processed += 1
        result.details.append(outcome)

        if outcome.success:
            result.succeeded += 1
            remove_from_failed_queue(state, item)
        else:
            result.failed += 1
            item.attempt_count = outcome.attempt_count
            item.last_attempt_at = now
            item.last_error = outcome.error

    logger.info(
        f"[Retry Queue] Pass complete: {result.succeeded} succeeded, {result.failed} failed, "
        f"{result.skipped} not due, {len(result.evicted)} dropped"
    )
    return result
