"""
HTTP trigger for hosted deployments.

Endpoints (GET or POST):
    /api/log-spotify      ?dry_run=true&limit=N
    /api/retry-failed
    /api/import-history   ?force=true&limit=N
    /api/metrics          ?view=summary|weekly&cleanup=true&reset=true
    /api/auth-spotify     ?refresh=true

Responses are the JSON run summaries; 200 on success, 500 otherwise.

Usage:
    flask --app playlog.server run
"""

from typing import Callable, Optional

from flask import Flask, jsonify, request

from .config import SPOTIFY_RECENTLY_PLAYED_MAX, Settings, load_settings
from .error_handling import PlaylogError, get_logger, setup_logging
from .models import format_iso, utcnow
from .pipeline import RunContext, build_context, metrics_report, run_history_import, run_logger, run_retry
from .spotify_api import check_spotify_auth, classify_auth_error, credential_status

logger = get_logger()


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def _limit(default: int) -> int:
    try:
        value = int(request.args.get("limit", default))
    except ValueError:
        value = default
    return max(1, min(value, SPOTIFY_RECENTLY_PLAYED_MAX))


def _respond(result: dict):
    return jsonify(result), 200 if result.get("success") else 500


def create_app(
    settings: Optional[Settings] = None,
    context_factory: Optional[Callable[..., RunContext]] = None,
) -> Flask:
    """
    Build the Flask app.

    context_factory(settings, spotify=..., sheets=...) builds a fresh
    RunContext per request; it defaults to build_context.
    """
    settings = settings or load_settings()
    setup_logging(settings.log_dir, settings.log_level)
    factory = context_factory or build_context

    app = Flask(__name__)

    def _context(**kwargs):
        try:
            return factory(settings, **kwargs), None
        except Exception as e:
            logger.error(f"[Server] Could not initialise clients: {e}", exc_info=not isinstance(e, PlaylogError))
            body = {"success": False, "error": str(e), "errorType": type(e).__name__,
                    "timestamp": format_iso(utcnow())}
            return None, (jsonify(body), 500)

    @app.route("/api/log-spotify", methods=["GET", "POST"])
    def log_spotify():
        ctx, error = _context()
        if error:
            return error
        return _respond(run_logger(ctx, dry_run=_flag("dry_run"), limit=_limit(settings.fetch_limit)))

    @app.route("/api/retry-failed", methods=["GET", "POST"])
    def retry_failed():
        ctx, error = _context()
        if error:
            return error
        return _respond(run_retry(ctx))

    @app.route("/api/import-history", methods=["GET", "POST"])
    def import_history():
        ctx, error = _context()
        if error:
            return error
        return _respond(run_history_import(ctx, limit=_limit(SPOTIFY_RECENTLY_PLAYED_MAX), force=_flag("force")))

    @app.route("/api/metrics", methods=["GET"])
    def metrics():
        ctx, error = _context(spotify=False, sheets=False)
        if error:
            return error
        view = request.args.get("view", "summary")
        try:
            return _respond(metrics_report(ctx, view=view, cleanup=_flag("cleanup"), reset=_flag("reset")))
        except PlaylogError as e:
            logger.error(f"[Metrics API] Error: {e}")
            return jsonify({"success": False, "error": str(e), "timestamp": format_iso(utcnow())}), 500

    @app.route("/api/auth-spotify", methods=["GET"])
    def auth_spotify():
        """Token status for debugging production auth; ?refresh=true forces a refresh."""
        force_refresh = _flag("refresh")
        logger.info(f"[Auth Spotify] Testing Spotify authentication (force refresh: {force_refresh})")
        credentials = credential_status(settings)
        try:
            status = check_spotify_auth(settings, force_refresh=force_refresh)
        except PlaylogError as e:
            logger.error(f"[Auth Spotify] Authentication failed: {e}")
            error_type, help_message = classify_auth_error(e)
            return jsonify({
                "success": False,
                "error": str(e),
                "errorType": error_type,
                "help": help_message,
                "credentials": credentials,
                "timestamp": format_iso(utcnow()),
            }), 500
        return jsonify({
            "success": True,
            "message": "Spotify authentication successful",
            "credentials": credentials,
            "refreshed": status["refreshed"],
            "token": status["token"],
            "timestamp": format_iso(utcnow()),
            "environment": {"hosted": settings.hosted, "stateBackend": settings.state_backend or "auto"},
        }), 200

    return app
