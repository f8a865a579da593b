"""
Formatting of play events into Listening Log rows (28 columns).
"""

from __future__ import annotations

from typing import List, Optional

from .models import (
    ArtistDetails,
    AudioFeatures,
    PlayEvent,
    PlayRecord,
    PlayStatus,
    format_iso,
    utcnow,
)

SHEET_HEADERS = [
    "Timestamp",
    "Track Name",
    "Artist(s)",
    "Album",
    "Duration (ms)",
    "Play Duration (ms)",
    "Completion %",
    "Track ID",
    "Album ID",
    "Artist ID(s)",
    "Genres",
    "Tempo",
    "Energy",
    "Danceability",
    "Valence",
    "Acousticness",
    "Instrumentalness",
    "Speechiness",
    "Loudness",
    "Popularity",
    "Device",
    "Device Type",
    "Context",
    "Context URI",
    "Explicit",
    "Release Date",
    "Status",
    "Error Details",
]

HISTORICAL_HEADERS = SHEET_HEADERS + ["Import Timestamp"]


def calculate_completion(play_duration: int, track_duration: int) -> float:
    """Percentage of the track played, capped at 100 and rounded to 2 places."""
    if not track_duration:
        return 0.0
    return min(100.0, round(play_duration / track_duration * 100, 2))


def format_play(
    event: PlayEvent,
    features: Optional[AudioFeatures] = None,
    artist: Optional[ArtistDetails] = None,
    status: PlayStatus = PlayStatus.COMPLETED,
    error_detail: str = "",
) -> PlayRecord:
    """Build the full record for an enriched play."""
    features = features or AudioFeatures()
    play_duration = event.estimated_duration_ms

    return PlayRecord(
        timestamp=format_iso(event.played_at),
        track_name=event.track_name or "Unknown Track",
        artists=", ".join(event.artist_names) or "Unknown Artist",
        album=event.album_name or "Unknown Album",
        duration=event.duration_ms,
        play_duration=play_duration,
        completion=calculate_completion(play_duration, event.duration_ms),
        track_id=event.track_id,
        album_id=event.album_id,
        artist_ids=", ".join(event.artist_ids),
        genres=", ".join(artist.genres) if artist else "",
        tempo=features.tempo,
        energy=features.energy,
        danceability=features.danceability,
        valence=features.valence,
        acousticness=features.acousticness,
        instrumentalness=features.instrumentalness,
        speechiness=features.speechiness,
        loudness=features.loudness,
        popularity=event.popularity,
        device=event.device_name or "Unknown Device",
        device_type=event.device_type or "Unknown",
        context=event.context_type or "None",
        context_uri=event.context_uri,
        explicit=event.explicit,
        release_date=event.release_date,
        status=status,
        error_detail=error_detail,
    )


def create_error_placeholder(event: PlayEvent, error: str) -> PlayRecord:
    """
    Record for a play whose enrichment failed: identity fields only,
    ERROR status, no features. Updated in place after a successful retry.
    """
    return PlayRecord(
        timestamp=format_iso(event.played_at or utcnow()),
        track_name=event.track_name or "ERROR: Unable to fetch",
        artists=event.primary_artist or "Unknown",
        album=event.album_name or "Unknown",
        duration=event.duration_ms,
        play_duration=0,
        completion=0.0,
        track_id=event.track_id,
        album_id=event.album_id,
        artist_ids=event.artist_ids[0] if event.artist_ids else "",
        genres="",
        tempo=None,
        energy=None,
        danceability=None,
        valence=None,
        acousticness=None,
        instrumentalness=None,
        speechiness=None,
        loudness=None,
        popularity=None,
        device="Unknown",
        device_type="Unknown",
        context="None",
        context_uri="",
        explicit=False,
        release_date="",
        status=PlayStatus.ERROR,
        error_detail=error,
    )


def _cell(value):
    # Sheets renders None as an empty cell
    return "" if value is None else value


def format_as_sheet_row(record: PlayRecord) -> list:
    return [
        record.timestamp,
        record.track_name,
        record.artists,
        record.album,
        record.duration,
        record.play_duration,
        record.completion,
        record.track_id,
        record.album_id,
        record.artist_ids,
        record.genres,
        _cell(record.tempo),
        _cell(record.energy),
        _cell(record.danceability),
        _cell(record.valence),
        _cell(record.acousticness),
        _cell(record.instrumentalness),
        _cell(record.speechiness),
        _cell(record.loudness),
        _cell(record.popularity),
        record.device,
        record.device_type,
        record.context,
        record.context_uri,
        record.explicit,
        record.release_date,
        record.status.value,
        record.error_detail,
    ]


def format_rows(records: List[PlayRecord]) -> List[list]:
    return [format_as_sheet_row(r) for r in records]
