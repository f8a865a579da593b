"""
Run orchestration for the three scheduled jobs:

- run_logger: fetch recent plays, filter, dedupe, enrich, append, persist
- run_retry: one pass over the retry queue
- run_history_import: one-shot import into the Historical Data tab

Each returns the JSON summary the triggers hand back. Failures end up in the
summary with success=False; the HTTP trigger maps that to a 500 and the CLI
to exit code 1.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional

from .alerting import AlertManager
from .config import LISTENING_LOG_SHEET, Settings
from .deduplication import (
    filter_duplicates_against_sheet,
    find_last_processed_in_sheet,
    reconcile_state,
    validate_state,
)
from .error_handling import (
    PlaylogError,
    RunInProgressError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsWriteError,
    SpotifyAuthError,
    StateSaveError,
    get_logger,
    handle_errors,
)
from .formatter import create_error_placeholder, format_play, format_rows
from .history_import import import_history
from .logger import get_log_buffer, log, reset_log_buffer, timed_step, verbose_log
from .metrics import (
    MetricsRecorder,
    check_health,
    cleanup_old_metrics,
    get_metrics_summary,
    get_weekly_metrics,
    reset_daily_metrics,
)
from .models import PersistedState, PlayEvent, PlayRecord, format_iso, parse_timestamp, to_ms, utcnow
from .play_filter import (
    analyze_repeat_behavior,
    create_last_processed,
    filter_new_plays,
    get_most_recent,
    sort_by_played_at,
)
from .retry_queue import add_to_failed_queue, process_retry_queue
from .sheets_api import SheetsClient
from .spotify_api import SpotifyClient
from .state_store import LoadOutcome, StateStore
from .system_logger import SystemLogger
from .validator import quality_report, sanitize_record, validate_record

logger = get_logger()

RUN_LOCK_SECTION = "runLock"
_SHEETS_ERRORS = (SheetsWriteError, SheetsPermissionError, SheetsNotFoundError)
STUCK_QUEUE_HOURS = 24


@dataclass
class RunContext:
    """Everything one invocation needs, built once by the trigger."""

    settings: Settings
    store: StateStore
    spotify: object = None
    sheets: object = None
    clock: Callable[[], float] = time.monotonic
    owner: str = "playlog"
    system_logger: Optional[SystemLogger] = None
    _started: float = field(default=0.0, repr=False)

    def __post_init__(self):
        if self.system_logger is None:
            self.system_logger = SystemLogger(self.sheets, enabled=self.settings.system_log_enabled)

    def elapsed_ms(self) -> int:
        return int((self.clock() - self._started) * 1000)


# ============================================================================
# RUN LOCK
# ============================================================================

def acquire_run_lock(state: PersistedState, settings: Settings, owner: str) -> bool:
    """
    Mark the state as held by this invocation.

    Returns False when the lock feature is disabled. A lock older than
    run_lock_stale_minutes is taken over.

    Raises:
        RunInProgressError: another invocation holds a fresh lock
    """
    if not settings.run_lock_enabled:
        return False
    now = utcnow()
    lock = state.sections.get(RUN_LOCK_SECTION)
    if isinstance(lock, dict) and lock.get("startedAt"):
        started_at = parse_timestamp(lock["startedAt"])
        if started_at is not None and now - started_at < timedelta(minutes=settings.run_lock_stale_minutes):
            raise RunInProgressError(
                f"Run already in progress ({lock.get('owner', 'unknown')} since {lock['startedAt']})"
            )
        logger.warning(f"[Run Lock] Taking over stale lock from {lock.get('owner', 'unknown')}")
    state.sections[RUN_LOCK_SECTION] = {"startedAt": format_iso(now), "owner": owner}
    return True


def release_run_lock(state: PersistedState) -> None:
    state.sections.pop(RUN_LOCK_SECTION, None)


def _load_state(ctx: RunContext) -> PersistedState:
    state = ctx.store.load()
    if ctx.store.last_outcome is LoadOutcome.UNREADABLE:
        log("⚠️  State could not be read; continuing from an empty state (the sheet is the source of truth)")
    elif ctx.store.last_outcome is LoadOutcome.FROM_BACKUP:
        log("⚠️  State restored from backup copy")
    if not validate_state(state):
        log("⚠️  State failed sanity checks; continuing from an empty state")
        state = PersistedState.default()
    return state


def _backend_info(ctx: RunContext) -> dict:
    info = ctx.store.describe()
    info["stateLoad"] = ctx.store.last_outcome.value if ctx.store.last_outcome else None
    return info


def _record_failure(ctx: RunContext, function_name: str, error: Exception, metrics: MetricsRecorder) -> None:
    """
    Failure bookkeeping on a freshly loaded state, so nothing the failed run
    produced is persisted: only the alert counter, metrics and lock release.
    """
    metrics.track_error("sheets" if isinstance(error, _SHEETS_ERRORS) else "other", error)
    if isinstance(error, _SHEETS_ERRORS):
        ctx.system_logger.log_sheets_error("run", error)
    else:
        ctx.system_logger.log_spotify_error("fatal", error)
    try:
        fresh = ctx.store.load()
        alerts = AlertManager(ctx.settings, fresh, system_logger=ctx.system_logger)
        if isinstance(error, SpotifyAuthError):
            alerts.alert_auth_failure("Spotify", str(error))
        alerts.track_failed_run()
        metrics.finish(fresh)
        release_run_lock(fresh)
        ctx.store.save(fresh)
    except StateSaveError as e:
        logger.error(f"[{function_name}] Could not record failure in state: {e}")
    ctx.system_logger.flush()


# ============================================================================
# LOGGER RUN
# ============================================================================

def _enrich(ctx: RunContext, events: List[PlayEvent], metrics: MetricsRecorder):
    """
    Enrich sequentially. Any failure for one play, including a 401/403 from
    the audio-features endpoint, becomes an ERROR placeholder and a
    retry-queue candidate.
    """
    records: List[PlayRecord] = []
    failed = []
    for event in events:
        try:
            features, artist = ctx.spotify.enrich(event)
            record = format_play(event, features, artist)
            validation = validate_record(record, min_play_ms=ctx.settings.min_play_ms)
            if not validation.valid:
                logger.warning(f"[Log Spotify] Validation errors for {event.track_name}: {validation.errors}")
            for warning in validation.warnings:
                verbose_log(f"{event.track_name}: {warning}")
            records.append(sanitize_record(record))
        except (PlaylogError, ValueError, KeyError) as e:
            logger.warning(f"[Log Spotify] Error enriching {event.track_name}: {e}")
            metrics.track_error("spotify", e)
            ctx.system_logger.log_spotify_error("audio-features", e, affected_tracks=[event.track_id])
            records.append(sanitize_record(create_error_placeholder(event, str(e))))
            failed.append((event, str(e)))
    return records, failed


def _stuck_items(state: PersistedState):
    cutoff = utcnow() - timedelta(hours=STUCK_QUEUE_HOURS)
    return [item for item in state.failed_queue if item.played_at < cutoff]


def run_logger(ctx: RunContext, dry_run: bool = False, limit: Optional[int] = None) -> dict:
    """
    One logging run. See the module docstring for the sequence.

    A failed batch write ends the run with nothing persisted: the marker
    does not move, so the next run fetches the same plays again.
    """
    ctx._started = ctx.clock()
    reset_log_buffer()
    metrics = MetricsRecorder("log-spotify", clock=ctx.clock).start()
    if dry_run:
        ctx.system_logger.enabled = False
    ctx.system_logger.log_run_start("log-spotify")

    stats = {"fetched": 0, "filtered": 0, "unique": 0, "logged": 0, "failed": 0}

    def summary(message: str, success: bool = True, **extra) -> dict:
        result = {
            "success": success,
            "message": message,
            "stats": dict(stats, executionTimeMs=ctx.elapsed_ms()),
            "backend": _backend_info(ctx),
            "dryRun": dry_run,
            "log": list(get_log_buffer()),
        }
        result.update(extra)
        return result

    holds_lock = False
    try:
        with timed_step("Load state"):
            state = _load_state(ctx)
            log(f"Using storage backend: {ctx.store.describe()['backend']}")
            log(f"State loaded ({len(state.failed_queue)} items in failed queue)")
            if state.stats.last_run_at:
                log(f"Last run: {format_iso(state.stats.last_run_at)}")
            if not dry_run:
                holds_lock = acquire_run_lock(state, ctx.settings, ctx.owner)
                if holds_lock:
                    ctx.store.save(state)

        alerts = AlertManager(ctx.settings, state, system_logger=ctx.system_logger)

        with timed_step("Fetch recently played"):
            page = ctx.spotify.fetch_recently_played(limit or ctx.settings.fetch_limit)
            events = page.events
            stats["fetched"] = len(events)
            log(f"Fetched {len(events)} tracks from Spotify")
            if page.skipped:
                log(f"Skipped {page.skipped} malformed item(s)")
            repeats = analyze_repeat_behavior(events)
            if repeats["is_repeating"]:
                verbose_log(f"{repeats['track_name']} is on repeat ({repeats['repeat_count']} plays in a row)")

        if not events:
            log("No recent tracks found")
            return _finish(ctx, state, metrics, alerts, holds_lock, dry_run, summary("No recent tracks to process"))

        with timed_step("Filter new plays"):
            filtered = sort_by_played_at(filter_new_plays(events, state, ctx.settings.duplicate_window_ms))
            stats["filtered"] = len(filtered)
            log(f"Filtered to {len(filtered)} new plays")

        if not filtered:
            log("No new plays to log. Everything is up to date!")
            return _finish(ctx, state, metrics, alerts, holds_lock, dry_run, summary("No new plays to log"))

        with timed_step("Reconcile with sheet"):
            sheet_rows = ctx.sheets.get_all_rows(LISTENING_LOG_SHEET)
            log(f"Loaded {len(sheet_rows)} rows from sheet")
            sheet_marker = find_last_processed_in_sheet(sheet_rows)
            if (
                sheet_marker is not None
                and state.last_processed is not None
                and to_ms(state.last_processed.played_at) > to_ms(sheet_marker.played_at)
            ):
                alerts.alert_sync_issue(
                    f"Saved state ({state.last_processed.track_id} at {format_iso(state.last_processed.played_at)}) "
                    f"is newer than the sheet's last row ({format_iso(sheet_marker.played_at)})"
                )
            state = reconcile_state(sheet_rows, state)
            alerts.state = state
            log("State reconciled with sheet data")

            unique = filter_duplicates_against_sheet(filtered, sheet_rows, ctx.settings.duplicate_window_ms)
            stats["unique"] = len(unique)
            log(f"{len(unique)} unique tracks to log ({len(filtered) - len(unique)} duplicates filtered)")
            for event in filtered:
                if event not in unique:
                    ctx.system_logger.log_deduplication_skip(event.track_id, event.track_name, "already in sheet")

        if not unique:
            log("All tracks already logged. Nothing new to add!")
            return _finish(ctx, state, metrics, alerts, holds_lock, dry_run, summary("All tracks already logged"))

        with timed_step("Enrich"):
            records, failed = _enrich(ctx, unique, metrics)
            stats["failed"] = len(failed)
            stats["logged"] = len(records) - len(failed)
            log(f"Enriched {len(records)} tracks ({stats['logged']} success, {len(failed)} failures)")

        recent_tracks = [
            {"name": r.track_name, "artist": r.artists, "timestamp": r.timestamp} for r in records[:5]
        ]
        rows = format_rows(records)

        if dry_run:
            log(f"DRY RUN: would append {len(rows)} row(s) to '{LISTENING_LOG_SHEET}'")
            for record in records:
                verbose_log(f"{record.timestamp}  {record.track_name} - {record.artists} [{record.status.value}]")
            return summary("Dry run complete", recentTracks=recent_tracks, quality=quality_report(records))

        with timed_step("Write to sheet"):
            ctx.sheets.append_rows(LISTENING_LOG_SHEET, rows)
            log(f"Successfully wrote {len(rows)} row(s) to sheet")

        with timed_step("Update state"):
            most_recent = get_most_recent(unique)
            if most_recent is not None and (
                state.last_processed is None or most_recent.played_at > state.last_processed.played_at
            ):
                state.last_processed = create_last_processed(most_recent)
                log(f"Updated last processed: {most_recent.track_name}")
            for event, error in failed:
                add_to_failed_queue(state, event, error)
            if failed:
                log(f"Added {len(failed)} track(s) to failed queue")
            state.stats.success_total += stats["logged"]
            state.stats.failure_total += len(failed)
            state.stats.last_run_at = utcnow()

        metrics.track_tracks(len(unique), stats["logged"])
        alerts.check_thresholds(ctx.elapsed_ms(), len(unique), len(failed))
        alerts.alert_stuck_tracks(_stuck_items(state))
        return _finish(ctx, state, metrics, alerts, holds_lock, dry_run,
                       summary("Logging complete", recentTracks=recent_tracks))

    except RunInProgressError as e:
        log(f"Skipping: {e}")
        return summary("Another run is in progress", skipped=True)
    except Exception as e:
        logger.error(f"[Log Spotify] Fatal error: {e}", exc_info=not isinstance(e, PlaylogError))
        if isinstance(e, SheetsWriteError):
            log("Write to sheet failed; nothing was persisted and the plays will be fetched again next run")
        if not dry_run:
            _record_failure(ctx, "Log Spotify", e, metrics)
        return summary(str(e), success=False, error=str(e), errorType=type(e).__name__)


def _finish(ctx: RunContext, state: PersistedState, metrics: MetricsRecorder, alerts: AlertManager,
            holds_lock: bool, dry_run: bool, result: dict) -> dict:
    """Success bookkeeping shared by every non-error exit of a run."""
    if dry_run:
        return result
    metrics.track_client("spotify", ctx.spotify)
    metrics.track_client("sheets", ctx.sheets)
    cache = getattr(ctx.spotify, "cache", None)
    if cache is not None:
        stats = cache.stats()
        verbose_log(f"Metadata cache: {stats.hits} hits, {stats.misses} misses, {stats.size} entries")
    alerts.track_successful_run()
    run_summary = metrics.finish(state)
    if holds_lock:
        release_run_lock(state)
    ctx.store.save(state)
    ctx.system_logger.log_run_end(
        run_summary["functionName"], run_summary["tracksLogged"], run_summary["errors"], run_summary["duration"]
    )
    ctx.system_logger.flush()
    result["stats"]["executionTimeMs"] = ctx.elapsed_ms()
    result["log"] = list(get_log_buffer())
    return result


# ============================================================================
# RETRY RUN
# ============================================================================

def run_retry(ctx: RunContext) -> dict:
    """One pass over the retry queue; summary mirrors RetryPassResult."""
    ctx._started = ctx.clock()
    reset_log_buffer()
    metrics = MetricsRecorder("retry-failed", clock=ctx.clock).start()
    ctx.system_logger.log_run_start("retry-failed")

    holds_lock = False
    try:
        state = _load_state(ctx)
        if not state.failed_queue:
            log("No failed entries to process")
            return {
                "success": True,
                "message": "No failed entries to process",
                "stats": {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0, "maxedOut": 0},
                "executionTimeMs": ctx.elapsed_ms(),
                "log": list(get_log_buffer()),
            }

        holds_lock = acquire_run_lock(state, ctx.settings, ctx.owner)
        if holds_lock:
            ctx.store.save(state)

        log(f"Found {len(state.failed_queue)} failed entries")
        alerts = AlertManager(ctx.settings, state, system_logger=ctx.system_logger)
        result = process_retry_queue(state, ctx.spotify, ctx.sheets, ctx.settings, clock=ctx.clock)

        for outcome in result.details:
            if outcome.success:
                ctx.system_logger.log_resolution(outcome.track_id, outcome.track_name)
            else:
                ctx.system_logger.log_retry(
                    outcome.track_id, outcome.track_name, outcome.attempt_count,
                    ctx.settings.retry_max_attempts, outcome.error,
                )
                metrics.track_error("spotify", outcome.error)
        if result.evicted:
            alerts.alert_data_loss([item.track_id for item in result.evicted])
            for item in result.evicted:
                ctx.system_logger.log_retry(
                    item.track_id, item.track_name, item.attempt_count,
                    ctx.settings.retry_max_attempts, item.last_error,
                )

        state.stats.success_total += result.succeeded
        state.stats.failure_total += result.failed
        metrics.track_tracks(result.processed, result.succeeded)
        metrics.track_client("spotify", ctx.spotify)
        metrics.track_client("sheets", ctx.sheets)
        run_summary = metrics.finish(state)
        if holds_lock:
            release_run_lock(state)
        ctx.store.save(state)
        ctx.system_logger.log_execution_summary("retry-failed", {
            "succeeded": result.succeeded,
            "failed": result.failed,
            "skipped": result.skipped,
            "maxedOut": len(result.evicted),
            "duration": f"{run_summary['duration']}ms",
        })

        return {
            "success": True,
            "message": "Retry processing complete",
            "stats": result.to_dict(),
            "maxedOutTracks": [
                {"trackId": i.track_id, "trackName": i.track_name, "lastError": i.last_error}
                for i in result.evicted
            ],
            "executionTimeMs": ctx.elapsed_ms(),
            "log": list(get_log_buffer()),
        }
    except RunInProgressError as e:
        log(f"Skipping: {e}")
        return {"success": True, "message": "Another run is in progress", "skipped": True,
                "log": list(get_log_buffer())}
    except Exception as e:
        logger.error(f"[Retry Failed] Fatal error: {e}", exc_info=not isinstance(e, PlaylogError))
        _record_failure(ctx, "Retry Failed", e, metrics)
        return {"success": False, "error": str(e), "errorType": type(e).__name__,
                "executionTimeMs": ctx.elapsed_ms(), "log": list(get_log_buffer())}


# ============================================================================
# HISTORY IMPORT
# ============================================================================

def run_history_import(ctx: RunContext, limit: int = 50, force: bool = False) -> dict:
    ctx._started = ctx.clock()
    reset_log_buffer()
    try:
        state = _load_state(ctx)
        result = import_history(state, ctx.spotify, ctx.sheets, limit=limit, force=force)
        if result.get("stats") is not None:
            ctx.store.save(state)
        result["log"] = list(get_log_buffer())
        return result
    except Exception as e:
        logger.error(f"[Import History] Fatal error: {e}", exc_info=not isinstance(e, PlaylogError))
        return {"success": False, "error": str(e), "errorType": type(e).__name__,
                "executionTimeMs": ctx.elapsed_ms(), "log": list(get_log_buffer())}


# ============================================================================
# METRICS REPORT
# ============================================================================

def metrics_report(ctx: RunContext, view: str = "summary", cleanup: bool = False, reset: bool = False) -> dict:
    """Read-only view of health, metrics and queue state (persists only on cleanup or reset)."""
    state = ctx.store.load()
    changed = False
    if cleanup:
        changed = cleanup_old_metrics(state) > 0
    if reset:
        reset_daily_metrics(state)
        changed = True
    if changed:
        ctx.store.save(state)

    health = check_health(state)
    data = get_weekly_metrics(state) if view == "weekly" else get_metrics_summary(state)
    alerts = AlertManager(ctx.settings, state)

    return {
        "success": True,
        "timestamp": format_iso(utcnow()),
        "health": health,
        "metrics": data,
        "state": {
            "lastRun": format_iso(state.stats.last_run_at),
            "totalSuccesses": state.stats.success_total,
            "totalFailures": state.stats.failure_total,
            "failedQueueSize": len(state.failed_queue),
            "failedTracks": [
                {"trackName": i.track_name, "attempts": i.attempt_count, "lastError": i.last_error}
                for i in state.failed_queue
            ],
        },
        "alerts": alerts.status(),
        "system": _backend_info(ctx),
        "cleanedUp": cleanup,
        "reset": reset,
    }


@handle_errors(reraise=True)
def build_context(settings: Settings, spotify: bool = True, sheets: bool = True) -> RunContext:
    """Build clients and the state store from settings."""
    return RunContext(
        settings=settings,
        store=StateStore.from_settings(settings),
        spotify=SpotifyClient.from_settings(settings) if spotify else None,
        sheets=SheetsClient.from_settings(settings) if sheets else None,
    )
