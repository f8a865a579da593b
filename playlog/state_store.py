"""
State persistence: one JSON document, whole-document replace.

Two interchangeable backends:
- FileBackend: <data dir>/.state/logger-state.json (+ .backup.json)
- KeyValueBackend: a Redis key (+ backup key), for hosted deployments
  where the filesystem is not durable

Writes are best effort and non-atomic. Anything lost to a crash mid-write is
re-derived on the next run by reconciling against the spreadsheet.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Optional

import redis

from .config import Settings
from .error_handling import ConfigurationError, StateSaveError, get_logger, retry_on_error
from .models import PersistedState

logger = get_logger()

STATE_FILENAME = "logger-state.json"
BACKUP_FILENAME = "logger-state.backup.json"
KV_STATE_KEY = "playlog:state"
KV_BACKUP_KEY = "playlog:state:backup"

_kv_retry = retry_on_error(max_retries=3, delay=0.2, exceptions=(redis.ConnectionError, redis.TimeoutError))


class LoadOutcome(str, Enum):
    LOADED = "loaded"
    MISSING = "missing"
    FROM_BACKUP = "from_backup"
    UNREADABLE = "unreadable"


class FileBackend:
    name = "file"

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILENAME
        self.backup_path = self.state_dir / BACKUP_FILENAME

    def describe(self) -> dict:
        return {"backend": self.name, "location": str(self.state_path)}

    def read(self) -> Optional[str]:
        if not self.state_path.exists():
            return None
        return self.state_path.read_text(encoding="utf-8")

    def read_backup(self) -> Optional[str]:
        if not self.backup_path.exists():
            return None
        return self.backup_path.read_text(encoding="utf-8")

    def write(self, text: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(text, encoding="utf-8")

    def write_backup(self, text: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.backup_path.write_text(text, encoding="utf-8")


class KeyValueBackend:
    name = "kv"

    def __init__(self, client, key: str = KV_STATE_KEY, backup_key: str = KV_BACKUP_KEY):
        self.client = client
        self.key = key
        self.backup_key = backup_key

    @classmethod
    def from_url(cls, url: str) -> "KeyValueBackend":
        return cls(redis.from_url(url, decode_responses=True))

    def describe(self) -> dict:
        return {"backend": self.name, "location": self.key}

    @_kv_retry
    def _get(self, key: str) -> Optional[str]:
        value = self.client.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def read(self) -> Optional[str]:
        return self._get(self.key)

    def read_backup(self) -> Optional[str]:
        return self._get(self.backup_key)

    @_kv_retry
    def write(self, text: str) -> None:
        self.client.set(self.key, text)

    def write_backup(self, text: str) -> None:
        self.client.set(self.backup_key, text)


def select_backend_name(settings: Settings) -> str:
    """
    Decide which backend to use.

    Explicit STATE_BACKEND wins; otherwise a hosted platform with remote
    credentials uses the key/value store, and anything else uses the file.
    """
    if settings.state_backend in ("file", "kv"):
        return settings.state_backend
    if settings.state_backend:
        raise ConfigurationError(f"Unknown STATE_BACKEND: {settings.state_backend!r} (use 'file' or 'kv')")
    if settings.kv_url and settings.hosted:
        return "kv"
    return "file"


def create_backend(settings: Settings):
    name = select_backend_name(settings)
    if name == "kv":
        if not settings.kv_url:
            raise ConfigurationError("STATE_BACKEND=kv requires KV_URL or REDIS_URL")
        return KeyValueBackend.from_url(settings.kv_url)
    return FileBackend(settings.state_dir)


class StateStore:
    """load()/save() over a backend, with a backup copy of the previous document."""

    def __init__(self, backend):
        self.backend = backend
        self.last_outcome: Optional[LoadOutcome] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "StateStore":
        return cls(create_backend(settings))

    def describe(self) -> dict:
        return self.backend.describe()

    def load(self) -> PersistedState:
        """
        Load the state document.

        Falls back to the backup copy when the primary cannot be parsed, and
        to an empty default when neither is usable. last_outcome records
        which of those happened.
        """
        try:
            text = self.backend.read()
        except (OSError, redis.RedisError) as e:
            logger.warning(f"[State] Could not read state ({e}), trying backup")
            text = ""

        if text is None:
            logger.info("[State] No existing state, using default state")
            self.last_outcome = LoadOutcome.MISSING
            return PersistedState.default()

        try:
            state = PersistedState.from_dict(json.loads(text))
            self.last_outcome = LoadOutcome.LOADED
            return state
        except (ValueError, TypeError) as e:
            logger.warning(f"[State] Error loading state, trying backup: {e}")

        try:
            backup = self.backend.read_backup()
            if backup:
                state = PersistedState.from_dict(json.loads(backup))
                logger.info("[State] Loaded state from backup")
                self.last_outcome = LoadOutcome.FROM_BACKUP
                return state
        except (OSError, redis.RedisError, ValueError, TypeError) as e:
            logger.warning(f"[State] Could not load backup: {e}")

        logger.warning("[State] State unreadable, using default state")
        self.last_outcome = LoadOutcome.UNREADABLE
        return PersistedState.default()

    def save(self, state: PersistedState) -> None:
        """Back up the current document, then overwrite it."""
        try:
            current = self.backend.read()
            if current:
                self.backend.write_backup(current)
        except (OSError, redis.RedisError) as e:
            logger.warning(f"[State] Could not write backup copy: {e}")

        try:
            self.backend.write(json.dumps(state.to_dict(), indent=2, ensure_ascii=False))
        except (OSError, redis.RedisError, TypeError) as e:
            raise StateSaveError(f"Failed to save state: {e}") from e
        logger.debug("[State] State saved")

    def clear(self) -> None:
        self.save(PersistedState.default())
