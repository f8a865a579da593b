"""
One-shot import of recent plays into the "Historical Data" tab.

Runs once; afterwards it is a no-op unless forced. Plays already present in
the tab (same track within 5 minutes) are skipped.
"""

import time
from typing import Callable, List, Optional

from tqdm import tqdm

from .config import (
    COL_TIMESTAMP,
    COL_TRACK_ID,
    ERROR_ROW_MATCH_WINDOW_MS,
    HISTORICAL_SHEET,
    SPOTIFY_RECENTLY_PLAYED_MAX,
)
from .error_handling import PlaylogError, get_logger
from .formatter import HISTORICAL_HEADERS, format_as_sheet_row, format_play
from .logger import get_verbose, log
from .models import AudioFeatures, PersistedState, PlayEvent, format_iso, parse_timestamp, to_ms, utcnow

logger = get_logger()

REQUEST_DELAY_SECONDS = 0.5


def get_import_state(state: PersistedState) -> dict:
    section = state.sections.get("historicalImport")
    if not isinstance(section, dict):
        section = {"completed": False, "lastImportDate": None, "importedTrackIds": [], "totalImported": 0}
        state.sections["historicalImport"] = section
    return section


def is_already_imported(event: PlayEvent, existing_rows: List[list],
                        window_ms: int = ERROR_ROW_MATCH_WINDOW_MS) -> bool:
    target = event.played_at_ms
    for row in existing_rows[1:]:
        if len(row) <= COL_TRACK_ID or row[COL_TRACK_ID] != event.track_id:
            continue
        row_time = parse_timestamp(row[COL_TIMESTAMP])
        if row_time is not None and abs(to_ms(row_time) - target) < window_ms:
            return True
    return False


def import_history(
    state: PersistedState,
    spotify,
    sheets,
    limit: int = SPOTIFY_RECENTLY_PLAYED_MAX,
    force: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    started: Optional[float] = None,
) -> dict:
    """
    Import up to `limit` recent plays. Mutates the historicalImport section
    of `state`; the caller persists it.

    Returns the JSON summary for the trigger.
    """
    started = started if started is not None else time.monotonic()
    limit = max(1, min(limit, SPOTIFY_RECENTLY_PLAYED_MAX))
    results = {"fetched": 0, "imported": 0, "skipped": 0, "failed": 0, "tracks": []}

    import_state = get_import_state(state)
    if import_state.get("completed") and not force:
        log("[Import History] Already completed. Use --force to re-import.")
        return {
            "success": True,
            "message": "Historical import already completed",
            "lastImportDate": import_state.get("lastImportDate"),
            "totalImported": import_state.get("totalImported", 0),
            "hint": "Use force=true to re-import",
        }

    log(f"[Import History] Starting historical import (force: {force}, limit: {limit})")
    sheets.create_sheet_if_not_exists(HISTORICAL_SHEET, HISTORICAL_HEADERS)
    existing_rows = sheets.get_all_rows(HISTORICAL_SHEET)
    log(f"[Import History] Found {max(0, len(existing_rows) - 1)} existing entries")

    events = spotify.fetch_recently_played(limit).events
    results["fetched"] = len(events)

    def elapsed_ms():
        return int((time.monotonic() - started) * 1000)

    if not events:
        return {
            "success": True,
            "message": "No tracks found to import",
            "stats": results,
            "executionTimeMs": elapsed_ms(),
        }

    try:
        features_by_id = spotify.get_audio_features([e.track_id for e in events])
    except PlaylogError as e:
        logger.warning(f"[Import History] Batch audio features failed: {e}")
        features_by_id = {}

    rows = []
    import_timestamp = format_iso(utcnow())
    for event in tqdm(events, desc="Importing", unit="track", disable=not get_verbose()):
        if is_already_imported(event, existing_rows):
            logger.debug(f"[Import History] Skipping (duplicate): {event.track_name}")
            results["skipped"] += 1
            continue

        features = features_by_id.get(event.track_id)
        if features is None:
            sleep(REQUEST_DELAY_SECONDS)
            try:
                features = spotify.get_audio_features([event.track_id]).get(event.track_id)
            except PlaylogError:
                logger.warning(f"[Import History] Could not get audio features for: {event.track_name}")
        artist = None
        if event.artist_ids:
            sleep(REQUEST_DELAY_SECONDS)
            try:
                artist = spotify.get_artists([event.artist_ids[0]]).get(event.artist_ids[0])
            except PlaylogError:
                logger.warning(f"[Import History] Could not get artist details for: {event.track_name}")

        try:
            row = format_as_sheet_row(format_play(event, features or AudioFeatures(), artist))
        except (TypeError, ValueError) as e:
            logger.error(f"[Import History] Error processing {event.track_name}: {e}")
            results["failed"] += 1
            continue
        row.append(import_timestamp)
        rows.append(row)
        results["imported"] += 1
        results["tracks"].append({
            "name": event.track_name,
            "artist": event.primary_artist or "Unknown",
            "playedAt": format_iso(event.played_at),
        })

    if rows:
        log(f"[Import History] Appending {len(rows)} rows to sheet...")
        sheets.append_rows(HISTORICAL_SHEET, rows)

    state.sections["historicalImport"] = {
        "completed": True,
        "lastImportDate": import_timestamp,
        "importedTrackIds": [e.track_id for e in events],
        "totalImported": int(import_state.get("totalImported") or 0) + results["imported"],
    }

    log(f"[Import History] Completed: {results['imported']} imported, {results['skipped']} skipped")
    return {
        "success": True,
        "message": "Historical import completed",
        "stats": results,
        "recentTracks": results["tracks"][:5],
        "executionTimeMs": elapsed_ms(),
    }
