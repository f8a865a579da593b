"""
Configuration for the play logger.

All environment variables and configuration constants are defined here.
Settings are resolved once per process by load_settings() and passed down
explicitly; nothing below reads the environment after that.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .error_handling import ConfigurationError

_ROOT_MARKERS = ("pyproject.toml", ".git")


def _find_project_root() -> Path:
    """Nearest ancestor of this package holding pyproject.toml or .git, else cwd."""
    for path in Path(__file__).resolve().parents:
        if any((path / marker).exists() for marker in _ROOT_MARKERS):
            return path
    return Path.cwd().resolve()


PROJECT_ROOT = _find_project_root()


def default_data_dir() -> Path:
    """PLAYLOG_DATA_DIR or DATA_DIR when set, otherwise <project root>/data."""
    env_path = os.environ.get("PLAYLOG_DATA_DIR") or os.environ.get("DATA_DIR")
    return Path(env_path).resolve() if env_path else PROJECT_ROOT / "data"


# ============================================================================
# SHEET LAYOUT
# ============================================================================

LISTENING_LOG_SHEET = "Listening Log"
HISTORICAL_SHEET = "Historical Data"
SYSTEM_LOGS_SHEET = "System Logs"

# 0-based column indices in the Listening Log
COL_TIMESTAMP = 0
COL_TRACK_NAME = 1
COL_TRACK_ID = 7
COL_STATUS = 26

# ============================================================================
# API AND RATE LIMITING CONSTANTS
# ============================================================================

SPOTIFY_RECENTLY_PLAYED_MAX = 50
SPOTIFY_MAX_ARTISTS_PER_REQUEST = 50
SPOTIFY_MAX_AUDIO_FEATURES_PER_REQUEST = 100

API_MAX_RETRIES = 3
API_INITIAL_RETRY_DELAY = 1.0  # seconds, doubled on each retry
API_MAX_WAIT = 60.0

# ============================================================================
# FILTER / RETRY CONSTANTS
# ============================================================================

MIN_PLAY_DURATION_MS = 30_000
DUPLICATE_WINDOW_MS = 30_000
ERROR_ROW_MATCH_WINDOW_MS = 5 * 60 * 1000

SPOTIFY_SCOPES = "user-read-recently-played user-read-playback-state"


def parse_bool_env(name: str, default: bool = False) -> bool:
    """Parse a boolean environment variable ("true", "1", "yes", "on")."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def parse_int_env(name: str, default: int) -> int:
    """Parse an integer environment variable, falling back to default on junk."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_str_env(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    return value if value not in (None, "") else default


def parse_list_env(name: str, default: Optional[list] = None, sep: str = ",") -> list:
    """Parse a separated list, e.g. RETRY_BACKOFF_HOURS=1,24."""
    value = os.environ.get(name)
    if not value:
        return list(default or [])
    return [part.strip() for part in value.split(sep) if part.strip()]


def get_env_or_none(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value if value else None


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, resolved once at start-up."""

    # Spotify
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_refresh_token: Optional[str] = None
    spotify_redirect_uri: str = "http://127.0.0.1:8888/callback"
    fetch_limit: int = SPOTIFY_RECENTLY_PLAYED_MAX

    # Google Sheets
    sheets_id: Optional[str] = None
    service_account_email: Optional[str] = None
    private_key: Optional[str] = None

    # Persistence
    state_backend: Optional[str] = None  # "file", "kv" or None for auto
    hosted: bool = False
    kv_url: Optional[str] = None
    data_dir: Path = field(default_factory=default_data_dir)

    # Filtering
    min_play_ms: int = MIN_PLAY_DURATION_MS
    duplicate_window_ms: int = DUPLICATE_WINDOW_MS
    error_row_window_ms: int = ERROR_ROW_MATCH_WINDOW_MS

    # Retry queue
    retry_max_attempts: int = 3
    retry_batch_size: int = 50
    retry_budget_seconds: float = 45.0
    retry_backoff_hours: tuple = (1, 24)

    # Caching
    cache_ttl_seconds: int = 24 * 60 * 60

    # Alerting
    alerts_enabled: bool = True
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None

    # Overlap guard
    run_lock_enabled: bool = True
    run_lock_stale_minutes: int = 10

    # Logging
    log_level: str = "INFO"
    system_log_enabled: bool = True

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) / ".state"

    @property
    def log_dir(self) -> Path:
        return PROJECT_ROOT / "logs"

    def require_spotify(self) -> None:
        if not self.spotify_client_id or not self.spotify_client_secret:
            raise ConfigurationError(
                "Missing SPOTIFY_CLIENT_ID or SPOTIFY_CLIENT_SECRET. "
                "Set them in environment variables or .env file."
            )

    def require_sheets(self) -> None:
        if not (self.sheets_id and self.service_account_email and self.private_key):
            raise ConfigurationError(
                "Missing Google Sheets credentials "
                "(GOOGLE_SHEETS_ID, GOOGLE_SERVICE_ACCOUNT_EMAIL, GOOGLE_PRIVATE_KEY)"
            )


def _parse_backoff_hours() -> tuple:
    hours = []
    for part in parse_list_env("RETRY_BACKOFF_HOURS", ["1", "24"]):
        try:
            hours.append(float(part))
        except ValueError:
            continue
    return tuple(hours) or (1, 24)


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load .env (if present) and build Settings from the environment.

    Both SPOTIFY_* and spotipy's SPOTIPY_* variable names are accepted.
    """
    env_path = env_file or PROJECT_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    private_key = get_env_or_none("GOOGLE_PRIVATE_KEY")
    if private_key:
        private_key = private_key.replace("\\n", "\n")

    fetch_limit = parse_int_env("SPOTIFY_FETCH_LIMIT", SPOTIFY_RECENTLY_PLAYED_MAX)

    return Settings(
        spotify_client_id=get_env_or_none("SPOTIFY_CLIENT_ID") or get_env_or_none("SPOTIPY_CLIENT_ID"),
        spotify_client_secret=(
            get_env_or_none("SPOTIFY_CLIENT_SECRET") or get_env_or_none("SPOTIPY_CLIENT_SECRET")
        ),
        spotify_refresh_token=(
            get_env_or_none("SPOTIFY_REFRESH_TOKEN") or get_env_or_none("SPOTIPY_REFRESH_TOKEN")
        ),
        spotify_redirect_uri=parse_str_env("SPOTIPY_REDIRECT_URI", "http://127.0.0.1:8888/callback"),
        fetch_limit=max(1, min(fetch_limit, SPOTIFY_RECENTLY_PLAYED_MAX)),
        sheets_id=get_env_or_none("GOOGLE_SHEETS_ID"),
        service_account_email=get_env_or_none("GOOGLE_SERVICE_ACCOUNT_EMAIL"),
        private_key=private_key,
        state_backend=(get_env_or_none("STATE_BACKEND") or "").lower() or None,
        hosted=parse_bool_env("VERCEL") or parse_bool_env("PLAYLOG_HOSTED"),
        kv_url=get_env_or_none("KV_URL") or get_env_or_none("REDIS_URL"),
        data_dir=default_data_dir(),
        min_play_ms=parse_int_env("MIN_PLAY_MS", MIN_PLAY_DURATION_MS),
        retry_max_attempts=parse_int_env("RETRY_MAX_ATTEMPTS", 3),
        retry_batch_size=parse_int_env("RETRY_BATCH_SIZE", 50),
        retry_budget_seconds=float(parse_int_env("RETRY_BUDGET_SECONDS", 45)),
        retry_backoff_hours=_parse_backoff_hours(),
        cache_ttl_seconds=parse_int_env("CACHE_TTL_SECONDS", 24 * 60 * 60),
        alerts_enabled=parse_bool_env("ENABLE_ALERTS", True),
        slack_webhook_url=get_env_or_none("SLACK_WEBHOOK_URL"),
        discord_webhook_url=get_env_or_none("DISCORD_WEBHOOK_URL"),
        run_lock_enabled=parse_bool_env("RUN_LOCK_ENABLED", True),
        run_lock_stale_minutes=parse_int_env("RUN_LOCK_STALE_MINUTES", 10),
        log_level=parse_str_env("LOG_LEVEL", "INFO").upper(),
        system_log_enabled=parse_bool_env("SYSTEM_LOG_ENABLED", True),
    )
