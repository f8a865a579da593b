from datetime import timedelta

from conftest import FakeSheets, FakeSpotify, make_event, minutes_ago

from playlog.config import LISTENING_LOG_SHEET, Settings
from playlog.formatter import SHEET_HEADERS, create_error_placeholder, format_as_sheet_row
from playlog.models import FailedItem, PersistedState
from playlog.retry_queue import (
    add_to_failed_queue,
    backoff_for,
    find_error_row_index,
    is_ready_for_retry,
    process_retry_queue,
)


def _item(now, track_id="t1", attempts=1, hours_since_attempt=2, played_minutes_ago=180):
    return FailedItem(
        track_id,
        minutes_ago(now, played_minutes_ago),
        attempt_count=attempts,
        last_attempt_at=now - timedelta(hours=hours_since_attempt),
        last_error="boom",
        track_name=f"Track {track_id}",
    )


def _sheet_with_placeholder(event):
    return {LISTENING_LOG_SHEET: [list(SHEET_HEADERS), format_as_sheet_row(create_error_placeholder(event, "x"))]}


def test_backoff_schedule():
    assert backoff_for(1, (1, 24)) == timedelta(hours=1)
    assert backoff_for(2, (1, 24)) == timedelta(hours=24)
    assert backoff_for(7, (1, 24)) == timedelta(hours=24)


def test_ready_for_retry(now):
    assert is_ready_for_retry(_item(now, hours_since_attempt=2), now)
    assert not is_ready_for_retry(_item(now, hours_since_attempt=0.5), now)
    assert not is_ready_for_retry(_item(now, attempts=2, hours_since_attempt=2), now)
    assert is_ready_for_retry(FailedItem("t", now), now)


def test_add_to_failed_queue_upserts(now):
    state = PersistedState()
    event = make_event("t1", minutes_ago(now, 5))
    add_to_failed_queue(state, event, "first", now)
    add_to_failed_queue(state, event, "second", now)
    assert len(state.failed_queue) == 1
    assert state.failed_queue[0].attempt_count == 2
    assert state.failed_queue[0].last_error == "second"


def test_find_error_row_index(now):
    event = make_event("t1", minutes_ago(now, 30))
    rows = _sheet_with_placeholder(event)[LISTENING_LOG_SHEET]
    assert find_error_row_index(rows, "t1", event.played_at) == 2
    assert find_error_row_index(rows, "t1", event.played_at + timedelta(minutes=10)) is None
    assert find_error_row_index(rows, "other", event.played_at) is None


def test_item_at_max_attempts_is_evicted(now):
    state = PersistedState(failed_queue=[_item(now, attempts=3, hours_since_attempt=72)])
    spotify = FakeSpotify()
    sheets = FakeSheets()

    result = process_retry_queue(state, spotify, sheets, Settings(), now=now)

    assert [i.track_id for i in result.evicted] == ["t1"]
    assert state.failed_queue == []
    assert spotify.enrich_calls == []
    assert sheets.reads == []


def test_item_not_due_is_skipped_and_sheet_not_read(now):
    state = PersistedState(failed_queue=[_item(now, hours_since_attempt=0.1)])
    sheets = FakeSheets()

    result = process_retry_queue(state, FakeSpotify(), sheets, Settings(), now=now)

    assert result.skipped == 1
    assert len(state.failed_queue) == 1
    assert sheets.reads == []


def test_successful_retry_updates_row_and_dequeues(now):
    item = _item(now)
    event = make_event("t1", item.played_at)
    state = PersistedState(failed_queue=[item])
    sheets = FakeSheets(_sheet_with_placeholder(event))

    result = process_retry_queue(state, FakeSpotify(), sheets, Settings(), now=now)

    assert result.succeeded == 1
    assert result.details[0].row_number == 2
    assert sheets.updated[0][1] == 2
    assert state.failed_queue == []


def test_failed_retry_bumps_attempt_count(now):
    item = _item(now)
    state = PersistedState(failed_queue=[item])

    result = process_retry_queue(state, FakeSpotify(fail_ids={"t1"}), FakeSheets(), Settings(), now=now)

    assert result.failed == 1
    assert state.failed_queue[0].attempt_count == 2
    assert state.failed_queue[0].last_attempt_at == now


def test_budget_exhaustion_stops_pass(now):
    state = PersistedState(failed_queue=[_item(now, "a"), _item(now, "b")])
    ticks = iter([0.0, 0.0, 100.0])

    result = process_retry_queue(state, FakeSpotify(), FakeSheets(), Settings(), now=now,
                                 clock=lambda: next(ticks))

    assert result.stopped_early is True
    assert result.processed == 1


def test_batch_size_limits_pass(now):
    state = PersistedState(failed_queue=[_item(now, f"t{i}") for i in range(5)])

    result = process_retry_queue(state, FakeSpotify(), FakeSheets(), Settings(retry_batch_size=2), now=now)

    assert result.processed == 2
    assert len(state.failed_queue) == 3
