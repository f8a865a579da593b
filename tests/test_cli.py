import json

import pytest

from conftest import FakeSheets, FakeSpotify, make_context, make_event, minutes_ago

from playlog.cli import main
from playlog.config import LISTENING_LOG_SHEET
from playlog.error_handling import ConfigurationError
from playlog.formatter import SHEET_HEADERS


def _json_out(capsys):
    # log handlers may share stdout; the JSON document is the last thing printed
    out = capsys.readouterr().out
    return json.loads(out[out.index("{\n"):])


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PLAYLOG_DATA_DIR", str(tmp_path))


@pytest.fixture
def factory(settings, store, now):
    sheets = FakeSheets({LISTENING_LOG_SHEET: [list(SHEET_HEADERS)]})
    spotify = FakeSpotify([make_event("t1", minutes_ago(now, 5)), make_event("t2", minutes_ago(now, 2))])

    def build(_settings, **kwargs):
        return make_context(settings, store, spotify, sheets)

    build.sheets = sheets
    build.store = store
    return build


def test_run_exits_zero_and_writes(factory):
    assert main(["run"], context_factory=factory) == 0
    assert len(factory.sheets.appended) == 1
    assert factory.store.load().last_processed.track_id == "t2"


def test_dry_run_writes_nothing(factory):
    assert main(["run", "--dry-run", "--limit", "1"], context_factory=factory) == 0
    assert factory.sheets.appended == []
    assert factory.store.load().last_processed is None


def test_failed_run_exits_one(factory):
    factory.sheets.fail_append = True
    assert main(["run"], context_factory=factory) == 1


def test_configuration_error_exits_one():
    def broken(_settings, **kwargs):
        raise ConfigurationError("Missing SPOTIFY_CLIENT_ID")

    assert main(["run"], context_factory=broken) == 1


def test_interrupt_exits_130():
    def interrupted(_settings, **kwargs):
        raise KeyboardInterrupt

    assert main(["retry"], context_factory=interrupted) == 130


def test_init_sheets_creates_missing_tabs(factory):
    assert main(["init-sheets"], context_factory=factory) == 0
    assert set(factory.sheets.tabs) == {LISTENING_LOG_SHEET, "Historical Data", "System Logs"}


def test_state_show_and_reset(factory, capsys):
    main(["run"], context_factory=factory)
    capsys.readouterr()

    assert main(["state", "show"], context_factory=factory) == 0
    shown = _json_out(capsys)
    assert shown["state"]["lastProcessed"]["trackId"] == "t2"

    assert main(["state", "reset"], context_factory=factory) == 0
    assert factory.store.load().last_processed is None


def test_metrics_command(factory, capsys):
    assert main(["metrics", "--view", "weekly"], context_factory=factory) == 0
    assert "dates" in _json_out(capsys)["metrics"]


def test_unknown_command_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        main(["nope"])
    assert exc.value.code == 2
