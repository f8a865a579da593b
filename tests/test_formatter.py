from dataclasses import replace

from conftest import make_event, minutes_ago

from playlog.formatter import (
    HISTORICAL_HEADERS,
    SHEET_HEADERS,
    calculate_completion,
    create_error_placeholder,
    format_as_sheet_row,
    format_play,
)
from playlog.models import ArtistDetails, AudioFeatures, PlayEvent, PlayStatus, format_iso


def test_headers_layout():
    assert len(SHEET_HEADERS) == 28
    assert SHEET_HEADERS[0] == "Timestamp"
    assert SHEET_HEADERS[7] == "Track ID"
    assert SHEET_HEADERS[26] == "Status"
    assert HISTORICAL_HEADERS[-1] == "Import Timestamp"


def test_completion():
    assert calculate_completion(100_000, 200_000) == 50.0
    assert calculate_completion(300_000, 200_000) == 100.0
    assert calculate_completion(1, 3) == 33.33
    assert calculate_completion(100, 0) == 0.0


def test_format_play_fills_every_column(now):
    event = make_event("t1", minutes_ago(now, 5))
    features = AudioFeatures(tempo=120.5, energy=0.8, loudness=-5.0)
    artist = ArtistDetails("ar1", "Artist ar1", genres=("indie", "rock"))

    record = format_play(event, features, artist)
    row = format_as_sheet_row(record)

    assert len(row) == len(SHEET_HEADERS)
    assert row[0] == format_iso(event.played_at)
    assert row[1] == "Track t1"
    assert row[2] == "Artist ar1"
    assert row[5] == 200_000
    assert row[6] == 100.0
    assert row[10] == "indie, rock"
    assert row[11] == 120.5
    assert row[13] == ""
    assert row[20] == "Unknown Device"
    assert row[22] == "playlist"
    assert row[26] == "COMPLETED"
    assert row[27] == ""


def test_format_play_defaults_for_sparse_event(now):
    event = PlayEvent(track_id="t1", track_name="", played_at=now)
    record = format_play(event)
    assert record.track_name == "Unknown Track"
    assert record.artists == "Unknown Artist"
    assert record.album == "Unknown Album"
    assert record.context == "None"
    assert record.genres == ""


def test_progress_overrides_catalog_duration(now):
    item_event = make_event("t1", minutes_ago(now, 5))
    event = replace(item_event, progress_ms=50_000)
    record = format_play(event)
    assert record.play_duration == 50_000
    assert record.completion == 25.0


def test_error_placeholder(now):
    event = make_event("t1", minutes_ago(now, 5))
    record = create_error_placeholder(event, "rate limited")
    row = format_as_sheet_row(record)

    assert record.status is PlayStatus.ERROR
    assert record.device == "Unknown"
    assert record.context == "None"
    assert record.play_duration == 0
    assert row[11:19] == [""] * 8
    assert row[19] == ""
    assert row[26] == "ERROR"
    assert row[27] == "rate limited"
