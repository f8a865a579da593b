"""
Playlog - log Spotify listening history to Google Sheets.

Polls the recently-played endpoint on a schedule, filters and enriches new
plays, appends them to a spreadsheet, and retries failed enrichments later.

Usage:
    from playlog import load_settings, build_context, run_logger

    ctx = build_context(load_settings())
    summary = run_logger(ctx, dry_run=True)
"""

from .config import Settings, load_settings
from .error_handling import (
    ConfigurationError,
    PlaylogError,
    RetryableError,
    RunInProgressError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsWriteError,
    SpotifyAuthError,
    SpotifyNotFoundError,
    StateSaveError,
)
from .models import FailedItem, LastProcessed, PersistedState, PlayEvent, PlayRecord, PlayStatus
from .pipeline import RunContext, build_context, run_history_import, run_logger, run_retry
from .state_store import LoadOutcome, StateStore

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "Settings",
    "load_settings",
    # Runs
    "RunContext",
    "build_context",
    "run_logger",
    "run_retry",
    "run_history_import",
    # State
    "StateStore",
    "LoadOutcome",
    "PersistedState",
    "LastProcessed",
    "FailedItem",
    # Data
    "PlayEvent",
    "PlayRecord",
    "PlayStatus",
    # Errors
    "PlaylogError",
    "ConfigurationError",
    "RetryableError",
    "RunInProgressError",
    "SpotifyAuthError",
    "SpotifyNotFoundError",
    "SheetsPermissionError",
    "SheetsNotFoundError",
    "SheetsWriteError",
    "StateSaveError",
]
