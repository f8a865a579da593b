"""
Validation and sanitisation of formatted records before they are written.

Validation problems are reported, not raised: the pipeline logs them and
writes the sanitised record anyway.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from .config import MIN_PLAY_DURATION_MS
from .models import PlayRecord, PlayStatus, parse_timestamp, utcnow

MAX_DURATION_MS = 60 * 60 * 1000
MAX_TIMESTAMP_DRIFT_MS = 24 * 60 * 60 * 1000
MAX_STRING_LENGTH = 500

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_UNIT_FIELDS = ("energy", "danceability", "valence", "acousticness", "instrumentalness", "speechiness")


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _check_range(value, name: str, low: float, high: float) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value != value:
        return f"{name} must be a number"
    if value < low or value > high:
        return f"{name} must be between {low} and {high}, got {value}"
    return None


def _check_string(value: str, name: str) -> Optional[str]:
    if not value:
        return None
    if len(value) > MAX_STRING_LENGTH:
        return f"{name} exceeds maximum length of {MAX_STRING_LENGTH} characters"
    if _CONTROL_CHARS.search(value):
        return f"{name} contains invalid control characters"
    return None


def validate_record(
    record: PlayRecord, check_drift: bool = True, min_play_ms: int = MIN_PLAY_DURATION_MS
) -> ValidationResult:
    result = ValidationResult()

    for value, name in ((record.track_name, "Track Name"), (record.artists, "Artist(s)"), (record.track_id, "Track ID")):
        if not value:
            result.errors.append(f"{name} is required but missing")

    played_at = parse_timestamp(record.timestamp)
    if played_at is None:
        result.errors.append("Timestamp is not a valid date")
    elif check_drift:
        drift = abs((utcnow() - played_at).total_seconds() * 1000)
        if drift > MAX_TIMESTAMP_DRIFT_MS:
            result.warnings.append("Timestamp is more than 24 hours from current time")

    if record.duration is not None:
        if record.duration <= 0:
            result.errors.append("Duration must be greater than 0")
        elif record.duration > MAX_DURATION_MS:
            result.warnings.append(
                f"Duration {record.duration}ms exceeds 1 hour - may be a podcast or audiobook"
            )

    if record.status is PlayStatus.COMPLETED and record.play_duration < min_play_ms:
        result.warnings.append(
            f"Play duration {record.play_duration}ms is less than {min_play_ms // 1000} seconds"
        )

    for value, name in ((record.track_name, "Track Name"), (record.artists, "Artist(s)"), (record.album, "Album")):
        error = _check_string(value, name)
        if error:
            result.errors.append(error)

    for name in _UNIT_FIELDS:
        error = _check_range(getattr(record, name), name, 0, 1)
        if error:
            result.errors.append(error)
    for error in (
        _check_range(record.tempo, "Tempo", 0, 300),
        _check_range(record.loudness, "Loudness", -60, 5),
        _check_range(record.completion, "Completion %", 0, 100),
        _check_range(record.popularity, "Popularity", 0, 100),
    ):
        if error:
            result.errors.append(error)

    return result


def sanitize_string(value: str) -> str:
    if not value:
        return value
    cleaned = _CONTROL_CHARS.sub("", value)
    if len(cleaned) > MAX_STRING_LENGTH:
        cleaned = cleaned[: MAX_STRING_LENGTH - 3] + "..."
    return cleaned


def sanitize_record(record: PlayRecord) -> PlayRecord:
    return record.with_changes(
        track_name=sanitize_string(record.track_name),
        artists=sanitize_string(record.artists),
        album=sanitize_string(record.album),
        genres=sanitize_string(record.genres),
        device=sanitize_string(record.device),
        error_detail=sanitize_string(record.error_detail),
    )


def quality_report(records: List[PlayRecord]) -> dict:
    """Aggregate validation results over a batch of records."""
    report = {"total": len(records), "valid": 0, "invalid": 0, "errors": 0, "warnings": 0, "samples": []}
    for record in records:
        result = validate_record(record, check_drift=False)
        report["warnings"] += len(result.warnings)
        if result.valid:
            report["valid"] += 1
            continue
        report["invalid"] += 1
        report["errors"] += len(result.errors)
        if len(report["samples"]) < 5:
            report["samples"].append({"track_name": record.track_name, "errors": result.errors})
    return report
