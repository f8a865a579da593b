from dataclasses import replace
from unittest.mock import patch

import pytest
from spotipy.oauth2 import SpotifyOauthError

from conftest import FakeSheets, FakeSpotify, make_context, make_event, minutes_ago

from playlog.config import LISTENING_LOG_SHEET
from playlog.error_handling import ConfigurationError
from playlog.formatter import SHEET_HEADERS
from playlog.server import create_app


@pytest.fixture
def sheets():
    return FakeSheets({LISTENING_LOG_SHEET: [list(SHEET_HEADERS)]})


@pytest.fixture
def client_for(settings, store, sheets, now):
    def build(events=None, fail_append=False):
        sheets.fail_append = fail_append
        spotify = FakeSpotify(events if events is not None else [make_event("t1", minutes_ago(now, 5))])

        app = create_app(settings, context_factory=lambda _s, **kw: make_context(settings, store, spotify, sheets))
        app.testing = True
        return app.test_client()

    return build


def test_log_spotify_success(client_for, sheets):
    response = client_for().get("/api/log-spotify")
    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["stats"]["logged"] == 1
    assert len(sheets.appended) == 1


def test_log_spotify_dry_run_and_limit(client_for, sheets, now):
    events = [make_event(f"t{i}", minutes_ago(now, 10 - i)) for i in range(5)]
    response = client_for(events).post("/api/log-spotify?dry_run=true&limit=2")
    body = response.get_json()
    assert response.status_code == 200
    assert body["dryRun"] is True
    assert body["stats"]["fetched"] == 2
    assert sheets.appended == []


def test_write_failure_is_500(client_for):
    response = client_for(fail_append=True).get("/api/log-spotify")
    assert response.status_code == 500
    assert response.get_json()["errorType"] == "SheetsWriteError"


def test_retry_failed_with_empty_queue(client_for):
    response = client_for().get("/api/retry-failed")
    assert response.status_code == 200
    assert response.get_json()["message"] == "No failed entries to process"


def test_import_history(client_for):
    response = client_for().get("/api/import-history?force=true")
    assert response.status_code == 200
    assert response.get_json()["stats"]["imported"] == 1


def test_metrics_views(client_for):
    client = client_for()
    client.get("/api/log-spotify")

    summary = client.get("/api/metrics").get_json()
    assert summary["health"]["status"] in ("healthy", "warning", "critical")
    assert summary["metrics"]["today"]["executions"] == 1

    weekly = client.get("/api/metrics?view=weekly").get_json()
    assert len(weekly["metrics"]["dates"]) == 7


def test_client_initialisation_failure_is_500(settings):
    def factory(_settings, **kwargs):
        raise ConfigurationError("Missing SPOTIFY_CLIENT_ID")

    app = create_app(settings, context_factory=factory)
    response = app.test_client().get("/api/log-spotify")
    assert response.status_code == 500
    assert response.get_json()["errorType"] == "ConfigurationError"


def test_unexpected_initialisation_error_is_json_500(settings):
    def factory(_settings, **kwargs):
        raise ValueError("Could not deserialize key data")

    app = create_app(settings, context_factory=factory)
    response = app.test_client().get("/api/retry-failed")
    assert response.status_code == 500
    body = response.get_json()
    assert body["success"] is False
    assert body["errorType"] == "ValueError"


@pytest.fixture
def auth_client(settings):
    configured = replace(settings, spotify_client_id="id", spotify_client_secret="secret",
                         spotify_refresh_token="refresh-token")
    app = create_app(configured, context_factory=lambda _s, **kw: None)
    return app.test_client()


@patch("playlog.spotify_api.SpotifyOAuth")
def test_auth_spotify_reports_cached_token(mock_oauth, auth_client):
    mock_oauth.return_value.cache_handler.get_cached_token.return_value = {
        "access_token": "abcd123456wxyz", "expires_in": 3600, "scope": "user-read-recently-played",
    }
    mock_oauth.return_value.is_token_expired.return_value = False

    body = auth_client.get("/api/auth-spotify").get_json()

    assert body["success"] is True
    assert body["refreshed"] is False
    assert body["credentials"]["allPresent"] is True
    assert body["token"]["masked"] == "abcd...wxyz"
    assert body["token"]["length"] == 14
    mock_oauth.return_value.refresh_access_token.assert_not_called()


@patch("playlog.spotify_api.SpotifyOAuth")
def test_auth_spotify_forced_refresh(mock_oauth, auth_client):
    mock_oauth.return_value.refresh_access_token.return_value = {
        "access_token": "fresh-access-token", "expires_in": 3600, "token_type": "Bearer",
    }

    response = auth_client.get("/api/auth-spotify?refresh=true")

    assert response.status_code == 200
    body = response.get_json()
    assert body["refreshed"] is True
    assert body["token"]["expiresIn"] == 3600
    mock_oauth.return_value.refresh_access_token.assert_called_once_with("refresh-token")
    mock_oauth.return_value.cache_handler.get_cached_token.assert_not_called()


@patch("playlog.spotify_api.SpotifyOAuth")
def test_auth_spotify_rejected_refresh_token(mock_oauth, auth_client):
    mock_oauth.return_value.refresh_access_token.side_effect = SpotifyOauthError("error: invalid_grant")

    response = auth_client.get("/api/auth-spotify?refresh=true")

    assert response.status_code == 500
    body = response.get_json()
    assert body["errorType"] == "invalid_refresh_token"
    assert body["help"]
    assert body["credentials"]["hasRefreshToken"] is True


def test_auth_spotify_without_credentials(settings):
    app = create_app(settings, context_factory=lambda _s, **kw: None)
    response = app.test_client().get("/api/auth-spotify")
    assert response.status_code == 500
    body = response.get_json()
    assert body["errorType"] == "missing_credentials"
    assert body["credentials"]["allPresent"] is False
