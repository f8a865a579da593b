"""End-to-end runs of the logger and retry jobs against in-memory fakes."""

from datetime import timedelta
from unittest.mock import MagicMock

import spotipy

from conftest import FakeSheets, FakeSpotify, make_context, make_event, make_item, minutes_ago

from playlog.config import COL_STATUS, COL_TRACK_ID, LISTENING_LOG_SHEET
from playlog.formatter import SHEET_HEADERS, create_error_placeholder, format_as_sheet_row
from playlog.models import FailedItem, LastProcessed, PersistedState, format_iso
from playlog.pipeline import acquire_run_lock, run_logger, run_retry
from playlog.spotify_api import SpotifyClient
from playlog.state_store import LoadOutcome


def _sheet(*rows):
    return {LISTENING_LOG_SHEET: [list(SHEET_HEADERS)] + [list(r) for r in rows]}


def test_fresh_state_logs_every_new_play(settings, store, now):
    events = [make_event(f"t{i}", minutes_ago(now, 30 - i * 10)) for i in range(3)]
    spotify = FakeSpotify(events)
    sheets = FakeSheets(_sheet())

    result = run_logger(make_context(settings, store, spotify, sheets))

    assert result["success"] is True
    assert result["stats"]["logged"] == 3
    assert len(sheets.appended) == 1
    _, rows = sheets.appended[0]
    assert [r[COL_TRACK_ID] for r in rows] == ["t0", "t1", "t2"]

    state = store.load()
    assert state.last_processed.track_id == "t2"
    assert state.last_processed.played_at == events[2].played_at
    assert state.stats.success_total == 3
    assert "runLock" not in state.sections


def test_up_to_date_state_writes_nothing(settings, store, now):
    events = [make_event(f"t{i}", minutes_ago(now, 50 - i * 10)) for i in range(5)]
    newest = events[-1]
    store.save(PersistedState(last_processed=LastProcessed("t4", newest.played_at)))
    spotify = FakeSpotify(events)
    sheets = FakeSheets(_sheet())

    result = run_logger(make_context(settings, store, spotify, sheets))

    assert result["success"] is True
    assert result["message"] == "No new plays to log"
    assert result["stats"]["filtered"] == 0
    assert sheets.appended == []
    assert sheets.reads == []
    assert spotify.enrich_calls == []


def test_one_enrichment_failure_becomes_placeholder_and_queue_entry(settings, store, now):
    events = [make_event(f"t{i}", minutes_ago(now, 40 - i * 10)) for i in range(4)]
    spotify = FakeSpotify(events, fail_ids={"t2"})
    sheets = FakeSheets(_sheet())

    result = run_logger(make_context(settings, store, spotify, sheets))

    assert result["success"] is True
    _, rows = sheets.appended[0]
    assert len(rows) == 4
    statuses = [r[COL_STATUS] for r in rows]
    assert statuses.count("COMPLETED") == 3
    assert statuses.count("ERROR") == 1
    assert rows[2][COL_TRACK_ID] == "t2"

    state = store.load()
    assert len(state.failed_queue) == 1
    assert state.failed_queue[0].track_id == "t2"
    assert state.failed_queue[0].attempt_count == 1
    assert result["stats"]["logged"] == 3
    assert result["stats"]["failed"] == 1


def test_forbidden_audio_features_for_one_track_is_not_fatal(settings, store, now):
    items = [make_item(f"t{i}", minutes_ago(now, 40 - i * 10)) for i in range(4)]

    def audio_features(track_ids):
        if "t2" in track_ids:
            raise spotipy.SpotifyException(403, -1, "http status 403")
        return [{"tempo": 120.0, "energy": 0.5} for _ in track_ids]

    sp = MagicMock()
    sp.current_user_recently_played.return_value = {"items": list(reversed(items))}
    sp.audio_features.side_effect = audio_features
    sp.artists.return_value = {"artists": [{"id": "ar1", "name": "Artist ar1", "genres": ["indie"]}]}
    spotify = SpotifyClient(sp, sleep=lambda _: None)
    sheets = FakeSheets(_sheet())

    result = run_logger(make_context(settings, store, spotify, sheets))

    assert result["success"] is True
    _, rows = sheets.appended[0]
    assert len(rows) == 4
    assert [r[COL_STATUS] for r in rows].count("ERROR") == 1
    assert rows[2][COL_TRACK_ID] == "t2"
    assert rows[2][COL_STATUS] == "ERROR"

    state = store.load()
    assert [i.track_id for i in state.failed_queue] == ["t2"]
    assert state.last_processed.track_id == "t3"
    assert result["stats"]["logged"] == 3


def test_retry_evicts_item_at_max_attempts_without_retrying(settings, store, now):
    played_at = minutes_ago(now, 60 * 48)
    item = FailedItem("t9", played_at, attempt_count=3, last_attempt_at=now - timedelta(days=3),
                      last_error="boom", track_name="Lost")
    store.save(PersistedState(failed_queue=[item]))
    spotify = FakeSpotify()
    sheets = FakeSheets(_sheet())

    result = run_retry(make_context(settings, store, spotify, sheets))

    assert result["success"] is True
    assert spotify.enrich_calls == []
    assert result["stats"]["maxedOut"] == 1
    assert result["maxedOutTracks"][0]["trackId"] == "t9"
    assert store.load().failed_queue == []


def test_retry_updates_error_row_in_place(settings, store, now):
    played_at = minutes_ago(now, 180)
    event = make_event("t5", played_at)
    placeholder = format_as_sheet_row(create_error_placeholder(event, "timeout"))
    item = FailedItem("t5", played_at, attempt_count=1, last_attempt_at=now - timedelta(hours=2),
                      last_error="timeout", track_name=event.track_name, original_payload=event.payload)
    store.save(PersistedState(failed_queue=[item]))
    spotify = FakeSpotify()
    sheets = FakeSheets(_sheet(placeholder))

    result = run_retry(make_context(settings, store, spotify, sheets))

    assert result["stats"]["succeeded"] == 1
    assert sheets.updated[0][1] == 2
    assert sheets.tabs[LISTENING_LOG_SHEET][1][COL_STATUS] == "COMPLETED"
    assert store.load().failed_queue == []


def test_batch_write_failure_persists_no_progress(settings, store, now):
    events = [make_event(f"t{i}", minutes_ago(now, 30 - i * 10)) for i in range(3)]
    spotify = FakeSpotify(events, fail_ids={"t1"})
    sheets = FakeSheets(_sheet(), fail_append=True)

    result = run_logger(make_context(settings, store, spotify, sheets))

    assert result["success"] is False
    assert result["errorType"] == "SheetsWriteError"
    state = store.load()
    assert state.last_processed is None
    assert state.failed_queue == []
    assert state.sections["alerts"]["consecutiveFailures"] == 1
    assert "runLock" not in state.sections


def test_dry_run_neither_writes_nor_persists(settings, store, backend, now):
    events = [make_event("t1", minutes_ago(now, 5))]
    sheets = FakeSheets(_sheet())

    result = run_logger(make_context(settings, store, FakeSpotify(events), sheets), dry_run=True)

    assert result["success"] is True
    assert result["dryRun"] is True
    assert sheets.appended == []
    assert backend.writes == 0


def test_plays_already_in_sheet_are_not_logged_again(settings, store, now):
    played_at = minutes_ago(now, 10)
    existing = format_as_sheet_row(create_error_placeholder(make_event("t1", played_at), "x"))
    events = [make_event("t1", played_at), make_event("t2", minutes_ago(now, 5))]
    sheets = FakeSheets(_sheet(existing))

    result = run_logger(make_context(settings, store, FakeSpotify(events), sheets))

    assert result["stats"]["unique"] == 1
    _, rows = sheets.appended[0]
    assert [r[COL_TRACK_ID] for r in rows] == ["t2"]


def test_sheet_marker_newer_than_state_wins(settings, store, now):
    old = minutes_ago(now, 120)
    sheet_time = minutes_ago(now, 30)
    store.save(PersistedState(last_processed=LastProcessed("t0", old)))
    sheet_row = format_as_sheet_row(create_error_placeholder(make_event("t8", sheet_time), "x"))
    events = [make_event("t7", minutes_ago(now, 60)), make_event("t9", minutes_ago(now, 5))]
    sheets = FakeSheets(_sheet(sheet_row))

    run_logger(make_context(settings, store, FakeSpotify(events), sheets))

    assert store.load().last_processed.track_id == "t9"


def test_concurrent_run_is_skipped(settings, store, now):
    state = PersistedState()
    acquire_run_lock(state, settings, "other-run")
    store.save(state)
    spotify = FakeSpotify([make_event("t1", minutes_ago(now, 5))])

    result = run_logger(make_context(settings, store, spotify, FakeSheets(_sheet())))

    assert result["skipped"] is True
    assert spotify.fetch_calls == 0


def test_stale_lock_is_taken_over(settings, store, now):
    store.save(PersistedState(sections={"runLock": {"startedAt": format_iso(now - timedelta(hours=1)),
                                                    "owner": "crashed"}}))
    spotify = FakeSpotify([make_event("t1", minutes_ago(now, 5))])

    result = run_logger(make_context(settings, store, spotify, FakeSheets(_sheet())))

    assert result["success"] is True
    assert result["stats"]["logged"] == 1


def test_unreadable_state_is_reported(settings, store, backend, now):
    backend.text = "{not json"

    result = run_logger(make_context(settings, store, FakeSpotify([]), FakeSheets(_sheet())))

    assert result["success"] is True
    assert result["backend"]["stateLoad"] == LoadOutcome.UNREADABLE.value
