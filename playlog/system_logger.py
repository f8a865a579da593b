"""
Operational log rows for the "System Logs" tab.

Entries are buffered and appended in batches of 10, and once more at the
end of a run. A failed flush keeps the buffer and never fails the run.
"""

from typing import Callable, Iterable, List, Optional

from .config import SYSTEM_LOGS_SHEET
from .error_handling import PlaylogError, get_logger
from .models import format_iso, utcnow

logger = get_logger()

SYSTEM_LOG_HEADERS = [
    "Timestamp",
    "Log Level",
    "Event Type",
    "Details",
    "Retry Count",
    "Resolution Time",
    "Affected Tracks",
]
MAX_LOG_BATCH_SIZE = 10


class SystemLogger:
    def __init__(self, sheets=None, enabled: bool = True, clock: Callable = utcnow):
        self.sheets = sheets
        self.enabled = enabled and sheets is not None
        self.clock = clock
        self.buffer: List[list] = []
        self._sheet_ready = False

    def _ensure_sheet(self) -> None:
        if self._sheet_ready:
            return
        self.sheets.create_sheet_if_not_exists(SYSTEM_LOGS_SHEET, SYSTEM_LOG_HEADERS)
        self._sheet_ready = True

    def flush(self) -> int:
        """Append buffered rows. Returns how many were written (0 on failure)."""
        if not self.enabled or not self.buffer:
            return 0
        try:
            self._ensure_sheet()
            self.sheets.append_rows(SYSTEM_LOGS_SHEET, self.buffer)
        except PlaylogError as e:
            logger.error(f"[System Logger] Failed to flush logs: {e}")
            return 0
        written = len(self.buffer)
        logger.debug(f"[System Logger] Flushed {written} log entries to sheet")
        self.buffer = []
        return written

    def _add(
        self,
        level: str,
        event_type: str,
        details: str,
        retry_count: Optional[int] = None,
        resolution_time: str = "",
        affected_tracks: Iterable[str] = (),
    ) -> None:
        log_fn = logger.error if level == "ERROR" else logger.warning if level == "WARNING" else logger.info
        log_fn(f"[{event_type}] {details}")
        if not self.enabled:
            return
        self.buffer.append([
            format_iso(self.clock()),
            level,
            event_type,
            details,
            retry_count if retry_count is not None else "",
            resolution_time,
            ", ".join(affected_tracks),
        ])
        if len(self.buffer) >= MAX_LOG_BATCH_SIZE:
            self.flush()

    def info(self, event_type: str, details: str, affected_tracks: Iterable[str] = ()) -> None:
        self._add("INFO", event_type, details, affected_tracks=affected_tracks)

    def warning(self, event_type: str, details: str, retry_count: Optional[int] = None,
                affected_tracks: Iterable[str] = ()) -> None:
        self._add("WARNING", event_type, details, retry_count=retry_count, affected_tracks=affected_tracks)

    def error(self, event_type: str, details: str, error, retry_count: Optional[int] = None,
              affected_tracks: Iterable[str] = ()) -> None:
        self._add("ERROR", event_type, f"{details}: {error}", retry_count=retry_count, affected_tracks=affected_tracks)

    def log_run_start(self, function_name: str) -> None:
        self.info("CRON_EXECUTION_START", f"Starting {function_name} execution")

    def log_run_end(self, function_name: str, logged: int, errors: int, duration_ms: int) -> None:
        self.info(
            "CRON_EXECUTION_END",
            f"Completed {function_name}: {logged} tracks logged, {errors} errors, {duration_ms}ms",
        )

    def log_spotify_error(self, endpoint: str, error, affected_tracks: Iterable[str] = ()) -> None:
        self.error("SPOTIFY_API_ERROR", f"Spotify API error on {endpoint}", error, affected_tracks=affected_tracks)

    def log_sheets_error(self, operation: str, error) -> None:
        self.error("SHEETS_API_ERROR", f"Sheets API error during {operation}", error)

    def log_retry(self, track_id: str, track_name: str, attempt_count: int, max_attempts: int, error) -> None:
        event = "RETRY_MAX_ATTEMPTS" if attempt_count >= max_attempts else "RETRY_FAILURE"
        level = "ERROR" if attempt_count >= max_attempts else "WARNING"
        self._add(
            level,
            event,
            f'Retry {attempt_count}/{max_attempts} for "{track_name}": {error}',
            retry_count=attempt_count,
            affected_tracks=[track_id],
        )

    def log_resolution(self, track_id: str, track_name: str) -> None:
        self._add(
            "INFO",
            "RETRY_SUCCESS",
            f'Successfully resolved issue for "{track_name}"',
            resolution_time=format_iso(self.clock()),
            affected_tracks=[track_id],
        )

    def log_deduplication_skip(self, track_id: str, track_name: str, reason: str) -> None:
        self.info("DEDUPLICATION_SKIP", f'Skipped "{track_name}": {reason}', affected_tracks=[track_id])

    def log_alert_sent(self, title: str, channels: str, message: str) -> None:
        self.info("ALERT_SENT", f"Alert sent via {channels}: {title} - {message}")

    def log_execution_summary(self, function_name: str, summary: dict) -> None:
        details = ", ".join(f"{k}: {v}" for k, v in summary.items())
        self.info("EXECUTION_SUMMARY", f"{function_name} - {details}")
        self.flush()
