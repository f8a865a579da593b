"""
Play filter: decide which recently-played events still need logging.

Rules, applied per event:
- the estimated play duration must be positive
- same track as the last processed play within the duplicate window is the
  same play session seen twice (skip); further apart it is a repeat play
- anything at or before the last processed timestamp is already logged

The recently-played endpoint does not report how long a track was actually
listened to, so the duration check uses the catalog duration unless a
progress value is present.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from .config import DUPLICATE_WINDOW_MS
from .error_handling import get_logger
from .models import LastProcessed, PersistedState, PlayEvent, to_ms, utcnow

logger = get_logger()


def is_valid_play(event: PlayEvent) -> bool:
    """A play qualifies when its estimated duration is positive."""
    return event.estimated_duration_ms > 0


def is_duplicate(
    event: PlayEvent,
    last_processed: Optional[LastProcessed],
    window_ms: int = DUPLICATE_WINDOW_MS,
) -> bool:
    """Same track as the last processed play and less than window_ms apart."""
    if last_processed is None or not last_processed.track_id:
        return False
    if event.track_id != last_processed.track_id:
        return False

    time_diff = abs(event.played_at_ms - to_ms(last_processed.played_at))
    if time_diff < window_ms:
        logger.debug(f"[Play Filter] Duplicate detected: {event.track_name} (time diff: {time_diff}ms)")
        return True

    logger.debug(f"[Play Filter] Repeat play detected: {event.track_name} (time diff: {time_diff}ms)")
    return False


def filter_new_plays(
    events: Optional[Iterable[PlayEvent]],
    state: Optional[PersistedState],
    window_ms: int = DUPLICATE_WINDOW_MS,
) -> List[PlayEvent]:
    """
    Return the events that are valid, not duplicates, and newer than the
    last processed marker. Order is not guaranteed; use sort_by_played_at.
    """
    events = list(events or [])
    if not events:
        return []

    last_processed = state.last_processed if state is not None else None
    last_time = to_ms(last_processed.played_at) if last_processed else 0

    kept = []
    for event in events:
        if not is_valid_play(event):
            logger.debug(f"[Play Filter] Skipping (too short): {event.track_name}")
            continue
        if is_duplicate(event, last_processed, window_ms):
            continue
        if event.played_at_ms <= last_time:
            logger.debug(f"[Play Filter] Skipping (already processed): {event.track_name}")
            continue
        kept.append(event)

    logger.info(f"[Play Filter] Filtered {len(events)} recent tracks to {len(kept)} new plays")
    return kept


def sort_by_played_at(events: Iterable[PlayEvent]) -> List[PlayEvent]:
    """Oldest first."""
    return sorted(events, key=lambda e: e.played_at)


def get_most_recent(events: Iterable[PlayEvent]) -> Optional[PlayEvent]:
    events = list(events)
    if not events:
        return None
    return max(events, key=lambda e: e.played_at)


def create_last_processed(event: PlayEvent) -> LastProcessed:
    return LastProcessed(
        track_id=event.track_id,
        played_at=event.played_at,
        recorded_at=utcnow(),
        track_name=event.track_name,
    )


def analyze_repeat_behavior(events: List[PlayEvent]) -> dict:
    """How many times the first track repeats back-to-back at the head of the list."""
    if len(events) < 2:
        return {"is_repeating": False, "repeat_count": 0}

    first_id = events[0].track_id
    repeat_count = 1
    for event in events[1:]:
        if event.track_id != first_id:
            break
        repeat_count += 1

    return {
        "is_repeating": repeat_count > 1,
        "repeat_count": repeat_count,
        "track_name": events[0].track_name,
    }
