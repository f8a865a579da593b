"""
Data model: play events from Spotify, formatted log records, and the
persisted state document.

Upstream payloads are validated into these types at the API boundary so the
rest of the pipeline never touches raw response dicts.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

AUDIO_FEATURE_FIELDS = (
    "tempo",
    "energy",
    "danceability",
    "valence",
    "acousticness",
    "instrumentalness",
    "speechiness",
    "loudness",
)


class PlayStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    ERROR = "ERROR"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO string, epoch milliseconds or datetime into an aware UTC datetime.

    Returns None for empty or unparseable values. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        try:
            dt = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_ms(dt: Optional[datetime]) -> int:
    """Epoch milliseconds for a datetime (0 for None)."""
    if dt is None:
        return 0
    return int(dt.timestamp() * 1000)


def format_iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    if dt is None:
        return None
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


# ============================================================================
# UPSTREAM RESULT TYPES
# ============================================================================

@dataclass(frozen=True)
class PlayEvent:
    """One item from the recently-played endpoint."""

    track_id: str
    track_name: str
    played_at: datetime
    duration_ms: int = 0
    artist_names: Tuple[str, ...] = ()
    artist_ids: Tuple[str, ...] = ()
    album_name: str = ""
    album_id: str = ""
    popularity: int = 0
    explicit: bool = False
    release_date: str = ""
    progress_ms: Optional[int] = None
    device_name: str = ""
    device_type: str = ""
    context_type: str = ""
    context_uri: str = ""
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def estimated_duration_ms(self) -> int:
        """
        Listening duration proxy: progress when the payload carries it,
        otherwise the catalog duration of the track.
        """
        if self.progress_ms is not None:
            return self.progress_ms
        return self.duration_ms

    @property
    def played_at_ms(self) -> int:
        return to_ms(self.played_at)

    @property
    def primary_artist(self) -> str:
        return self.artist_names[0] if self.artist_names else ""

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "PlayEvent":
        """
        Build from a recently-played item ({"track": {...}, "played_at": ..., "context": ...}).

        Raises:
            ValueError: if the item has no usable played_at timestamp
        """
        if not isinstance(item, dict):
            raise ValueError(f"Expected a dict, got {type(item).__name__}")
        played_at = parse_timestamp(item.get("played_at") or item.get("timestamp"))
        if played_at is None:
            raise ValueError("Play event is missing played_at")

        track = item.get("track") or {}
        artists = [a for a in (track.get("artists") or []) if isinstance(a, dict)]
        album = track.get("album") or {}
        context = item.get("context") or {}
        device = item.get("device") or {}
        progress = item.get("progress_ms")

        return cls(
            track_id=track.get("id") or "",
            track_name=track.get("name") or "",
            played_at=played_at,
            duration_ms=int(track.get("duration_ms") or 0),
            artist_names=tuple(a.get("name") or "" for a in artists),
            artist_ids=tuple(a.get("id") or "" for a in artists),
            album_name=album.get("name") or "",
            album_id=album.get("id") or "",
            popularity=int(track.get("popularity") or 0),
            explicit=bool(track.get("explicit", False)),
            release_date=album.get("release_date") or "",
            progress_ms=int(progress) if progress is not None else None,
            device_name=device.get("name") or "",
            device_type=device.get("type") or "",
            context_type=context.get("type") or "",
            context_uri=context.get("uri") or "",
            payload=item,
        )


@dataclass(frozen=True)
class AudioFeatures:
    tempo: Optional[float] = None
    energy: Optional[float] = None
    danceability: Optional[float] = None
    valence: Optional[float] = None
    acousticness: Optional[float] = None
    instrumentalness: Optional[float] = None
    speechiness: Optional[float] = None
    loudness: Optional[float] = None

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "AudioFeatures":
        if not data:
            return cls()
        values = {}
        for name in AUDIO_FEATURE_FIELDS:
            raw = data.get(name)
            values[name] = float(raw) if isinstance(raw, (int, float)) and not isinstance(raw, bool) else None
        return cls(**values)


@dataclass(frozen=True)
class ArtistDetails:
    artist_id: str
    name: str = ""
    genres: Tuple[str, ...] = ()
    popularity: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ArtistDetails":
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("Artist payload is missing id")
        return cls(
            artist_id=data["id"],
            name=data.get("name") or "",
            genres=tuple(data.get("genres") or ()),
            popularity=int(data.get("popularity") or 0),
        )


@dataclass(frozen=True)
class RecentlyPlayedPage:
    events: List[PlayEvent]
    skipped: int = 0
    cursor_after: Optional[str] = None


# ============================================================================
# FORMATTED RECORD
# ============================================================================

@dataclass(frozen=True)
class PlayRecord:
    """A play event formatted for the Listening Log (one sheet row)."""

    timestamp: str
    track_name: str
    artists: str
    album: str
    duration: int
    play_duration: int
    completion: float
    track_id: str
    album_id: str
    artist_ids: str
    genres: str
    tempo: Optional[float]
    energy: Optional[float]
    danceability: Optional[float]
    valence: Optional[float]
    acousticness: Optional[float]
    instrumentalness: Optional[float]
    speechiness: Optional[float]
    loudness: Optional[float]
    popularity: Optional[int]
    device: str
    device_type: str
    context: str
    context_uri: str
    explicit: bool
    release_date: str
    status: PlayStatus = PlayStatus.COMPLETED
    error_detail: str = ""

    def with_changes(self, **changes) -> "PlayRecord":
        return replace(self, **changes)


# ============================================================================
# PERSISTED STATE
# ============================================================================

@dataclass
class LastProcessed:
    track_id: str
    played_at: datetime
    recorded_at: Optional[datetime] = None
    track_name: str = ""

    def to_dict(self) -> dict:
        return {
            "trackId": self.track_id,
            "trackName": self.track_name,
            "playedAt": format_iso(self.played_at),
            "recordedAt": format_iso(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["LastProcessed"]:
        if not data or not data.get("trackId"):
            return None
        played_at = parse_timestamp(data.get("playedAt"))
        if played_at is None:
            return None
        return cls(
            track_id=data["trackId"],
            played_at=played_at,
            recorded_at=parse_timestamp(data.get("recordedAt") or data.get("timestamp")),
            track_name=data.get("trackName") or "",
        )


@dataclass
class FailedItem:
    track_id: str
    played_at: datetime
    attempt_count: int = 1
    last_attempt_at: Optional[datetime] = None
    last_error: str = ""
    track_name: str = ""
    original_payload: Dict[str, Any] = field(default_factory=dict)

    def key(self) -> Tuple[str, int]:
        return self.track_id, to_ms(self.played_at)

    def to_dict(self) -> dict:
        return {
            "trackId": self.track_id,
            "trackName": self.track_name,
            "playedAt": format_iso(self.played_at),
            "attemptCount": self.attempt_count,
            "lastAttemptAt": format_iso(self.last_attempt_at),
            "lastError": self.last_error,
            "originalPayload": self.original_payload,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Optional["FailedItem"]:
        played_at = parse_timestamp(data.get("playedAt"))
        if played_at is None:
            return None
        return cls(
            track_id=data.get("trackId") or "",
            played_at=played_at,
            attempt_count=int(data.get("attemptCount") or 1),
            last_attempt_at=parse_timestamp(data.get("lastAttemptAt") or data.get("lastAttempt")),
            last_error=data.get("lastError") or data.get("error") or "",
            track_name=data.get("trackName") or "",
            original_payload=data.get("originalPayload") or data.get("partialData") or {},
        )


@dataclass
class RunStats:
    last_run_at: Optional[datetime] = None
    success_total: int = 0
    failure_total: int = 0

    def to_dict(self) -> dict:
        return {
            "lastRunAt": format_iso(self.last_run_at),
            "successTotal": self.success_total,
            "failureTotal": self.failure_total,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RunStats":
        data = data or {}
        return cls(
            last_run_at=parse_timestamp(data.get("lastRunAt") or data.get("lastRun")),
            success_total=int(data.get("successTotal", data.get("successCount", 0)) or 0),
            failure_total=int(data.get("failureTotal", data.get("failureCount", 0)) or 0),
        )


_CORE_KEYS = ("lastProcessed", "failedQueue", "stats")


@dataclass
class PersistedState:
    """
    The whole persisted document.

    `sections` carries the optional documents owned by alerting, metrics,
    history import and the run lock, keyed by their camelCase names.
    """

    last_processed: Optional[LastProcessed] = None
    failed_queue: List[FailedItem] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)
    sections: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "PersistedState":
        return cls()

    def to_dict(self) -> dict:
        doc = dict(self.sections)
        doc["lastProcessed"] = self.last_processed.to_dict() if self.last_processed else None
        doc["failedQueue"] = [item.to_dict() for item in self.failed_queue]
        doc["stats"] = self.stats.to_dict()
        return doc

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedState":
        if not isinstance(data, dict):
            raise ValueError("State document must be a JSON object")
        queue = []
        for raw in data.get("failedQueue") or []:
            if isinstance(raw, dict):
                item = FailedItem.from_dict(raw)
                if item is not None:
                    queue.append(item)
        return cls(
            last_processed=LastProcessed.from_dict(data.get("lastProcessed")),
            failed_queue=queue,
            stats=RunStats.from_dict(data.get("stats")),
            sections={k: v for k, v in data.items() if k not in _CORE_KEYS},
        )

    def copy(self) -> "PersistedState":
        return copy.deepcopy(self)
