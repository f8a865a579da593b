"""
Playlog CLI - run the logger and its maintenance jobs locally.

Usage:
    playlog run [--dry-run] [--verbose] [--limit N]
    playlog retry
    playlog import-history [--force] [--limit N]
    playlog metrics [--view summary|weekly] [--cleanup] [--reset]
    playlog init-sheets
    playlog state show|reset
    playlog auth

Exit code 0 when the job completes (even with per-track failures), 1 when
it fails.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Callable, List, Optional

from spotipy.oauth2 import SpotifyOAuth

from .config import HISTORICAL_SHEET, LISTENING_LOG_SHEET, SPOTIFY_SCOPES, SYSTEM_LOGS_SHEET, load_settings
from .error_handling import PlaylogError, get_logger, setup_logging
from .formatter import HISTORICAL_HEADERS, SHEET_HEADERS
from .logger import format_duration, log, log_step_banner, set_verbose
from .pipeline import RunContext, build_context, metrics_report, run_history_import, run_logger, run_retry
from .sheets_api import SheetsClient
from .state_store import StateStore
from .system_logger import SYSTEM_LOG_HEADERS

logger = get_logger()

DEFAULT_LOCAL_LIMIT = 20


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_run_summary(result: dict) -> None:
    stats = result.get("stats") or {}
    log_step_banner("SUMMARY")
    for key in ("fetched", "filtered", "unique", "logged", "failed"):
        if key in stats:
            print(f"  {key.capitalize():<10} {stats[key]}")
    if "executionTimeMs" in stats:
        print(f"  {'Time':<10} {format_duration(stats['executionTimeMs'])}")
    for track in result.get("recentTracks") or []:
        print(f"  • {track['name']} - {track['artist']} ({track['timestamp']})")
    if not result.get("success"):
        print(f"\n❌ {result.get('error') or result.get('message')}")


def cmd_run(args, context_factory) -> int:
    log_step_banner("PLAYLOG - LOG RECENT PLAYS" + (" (DRY RUN)" if args.dry_run else ""))
    ctx = context_factory()
    result = run_logger(ctx, dry_run=args.dry_run, limit=args.limit)
    _print_run_summary(result)
    return 0 if result.get("success") else 1


def cmd_retry(args, context_factory) -> int:
    log_step_banner("PLAYLOG - RETRY FAILED")
    result = run_retry(context_factory())
    _print_json({k: v for k, v in result.items() if k != "log"})
    return 0 if result.get("success") else 1


def cmd_import_history(args, context_factory) -> int:
    log_step_banner("PLAYLOG - IMPORT HISTORY")
    result = run_history_import(context_factory(), limit=args.limit, force=args.force)
    _print_json({k: v for k, v in result.items() if k != "log"})
    return 0 if result.get("success") else 1


def cmd_metrics(args, context_factory) -> int:
    ctx = context_factory(spotify=False, sheets=False)
    result = metrics_report(ctx, view=args.view, cleanup=args.cleanup, reset=args.reset)
    _print_json(result)
    return 0


def cmd_init_sheets(args, context_factory) -> int:
    ctx = context_factory(spotify=False)
    sheets: SheetsClient = ctx.sheets
    for name, headers in (
        (LISTENING_LOG_SHEET, SHEET_HEADERS),
        (HISTORICAL_SHEET, HISTORICAL_HEADERS),
        (SYSTEM_LOGS_SHEET, SYSTEM_LOG_HEADERS),
    ):
        created = sheets.create_sheet_if_not_exists(name, headers)
        log(f"{'✅ Created' if created else '✓ Exists '} {name}")
    return 0


def cmd_state(args, context_factory) -> int:
    ctx = context_factory(spotify=False, sheets=False)
    store: StateStore = ctx.store
    if args.action == "reset":
        store.clear()
        log(f"State reset ({store.describe()['location']})")
        return 0
    state = store.load()
    _print_json({"backend": store.describe(), "outcome": store.last_outcome.value, "state": state.to_dict()})
    return 0


def cmd_auth(args, context_factory) -> int:
    """Interactive authorization that prints a refresh token for .env."""
    settings = load_settings()
    settings.require_spotify()
    auth = SpotifyOAuth(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        scope=SPOTIFY_SCOPES,
        open_browser=False,
    )
    print("Open this URL, approve access, then paste the URL you were redirected to:\n")
    print(f"  {auth.get_authorize_url()}\n")
    redirected = input("Redirected URL: ").strip()
    code = auth.parse_response_code(redirected)
    token_info = auth.get_access_token(code, as_dict=True, check_cache=False)
    print("\nAdd this to your .env:\n")
    print(f"SPOTIFY_REFRESH_TOKEN={token_info['refresh_token']}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "retry": cmd_retry,
    "import-history": cmd_import_history,
    "metrics": cmd_metrics,
    "init-sheets": cmd_init_sheets,
    "state": cmd_state,
    "auth": cmd_auth,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="playlog",
        description="Log Spotify listening history to Google Sheets.",
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Verbose output with step timings")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_run = sub.add_parser("run", help="Fetch recent plays and append new ones to the sheet.")
    ap_run.add_argument("--dry-run", action="store_true", help="Do everything except write and persist.")
    ap_run.add_argument("--limit", type=int, default=DEFAULT_LOCAL_LIMIT,
                        help=f"Recent plays to fetch (max 50, default: {DEFAULT_LOCAL_LIMIT})")
    ap_run.add_argument("--verbose", "-v", action="store_true", dest="run_verbose", help=argparse.SUPPRESS)

    sub.add_parser("retry", help="Process the retry queue once.")

    ap_import = sub.add_parser("import-history", help="One-shot import into the Historical Data tab.")
    ap_import.add_argument("--force", action="store_true", help="Re-import even if already done.")
    ap_import.add_argument("--limit", type=int, default=50, help="Plays to import (max 50)")

    ap_metrics = sub.add_parser("metrics", help="Show execution metrics and health.")
    ap_metrics.add_argument("--view", choices=["summary", "weekly"], default="summary")
    ap_metrics.add_argument("--cleanup", action="store_true", help="Drop daily metrics older than 30 days.")
    ap_metrics.add_argument("--reset", action="store_true", help="Clear daily metrics (totals are kept).")

    sub.add_parser("init-sheets", help="Create the three tabs with header rows.")

    ap_state = sub.add_parser("state", help="Inspect or reset the persisted state.")
    ap_state.add_argument("action", choices=["show", "reset"])

    sub.add_parser("auth", help="Authorize interactively and print a refresh token.")
    return ap


def main(argv: Optional[List[str]] = None, context_factory: Optional[Callable[..., RunContext]] = None) -> int:
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose or getattr(args, "run_verbose", False))

    try:
        settings = load_settings()
        setup_logging(settings.log_dir, "DEBUG" if args.verbose else settings.log_level)

        def factory(**kwargs):
            if context_factory is not None:
                return context_factory(settings, **kwargs)
            return build_context(settings, **kwargs)

        started = datetime.now()
        code = COMMANDS[args.cmd](args, factory)
        logger.debug(f"{args.cmd} finished in {(datetime.now() - started).total_seconds():.2f}s")
        return code
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted")
        return 130
    except PlaylogError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"\n❌ {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
