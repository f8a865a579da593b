"""Shared fakes for the Spotify client, the Sheets client and the state backend."""

from datetime import timedelta
from typing import Dict, List

import pytest

from playlog.config import Settings
from playlog.error_handling import PlaylogError, SheetsWriteError
from playlog.models import ArtistDetails, AudioFeatures, PlayEvent, RecentlyPlayedPage, utcnow
from playlog.pipeline import RunContext
from playlog.state_store import StateStore
from playlog.system_logger import SystemLogger


def make_item(track_id: str, played_at, duration_ms: int = 200_000, name: str = None, artist_id: str = "ar1"):
    """A recently-played item shaped like the Spotify API response."""
    return {
        "played_at": played_at.isoformat().replace("+00:00", "Z"),
        "track": {
            "id": track_id,
            "name": name or f"Track {track_id}",
            "duration_ms": duration_ms,
            "popularity": 50,
            "explicit": False,
            "artists": [{"id": artist_id, "name": f"Artist {artist_id}"}],
            "album": {"id": f"al-{track_id}", "name": f"Album {track_id}", "release_date": "2020-01-01"},
        },
        "context": {"type": "playlist", "uri": "spotify:playlist:abc"},
    }


def make_event(track_id: str, played_at, duration_ms: int = 200_000, **kwargs) -> PlayEvent:
    return PlayEvent.from_api(make_item(track_id, played_at, duration_ms, **kwargs))


class FakeSpotify:
    def __init__(self, events: List[PlayEvent] = None, fail_ids=()):
        self.events = list(events or [])
        self.fail_ids = set(fail_ids)
        self.enrich_calls: List[str] = []
        self.fetch_calls = 0
        self.call_count = 0
        self.error_count = 0

    def fetch_recently_played(self, limit=50, after=None):
        self.fetch_calls += 1
        self.call_count += 1
        newest_first = sorted(self.events, key=lambda e: e.played_at, reverse=True)
        return RecentlyPlayedPage(events=newest_first[:limit])

    def get_audio_features(self, track_ids):
        return {t: AudioFeatures(tempo=120.0, energy=0.5, danceability=0.6, valence=0.4,
                                 acousticness=0.1, instrumentalness=0.0, speechiness=0.05, loudness=-6.0)
                for t in track_ids}

    def get_artists(self, artist_ids):
        return {a: ArtistDetails(artist_id=a, name=f"Artist {a}", genres=("indie", "rock")) for a in artist_ids}

    def enrich(self, event):
        self.enrich_calls.append(event.track_id)
        self.call_count += 1
        if event.track_id in self.fail_ids:
            self.error_count += 1
            raise PlaylogError(f"audio features unavailable for {event.track_id}")
        features = self.get_audio_features([event.track_id])[event.track_id]
        return features, self.get_artists(list(event.artist_ids)).get(event.artist_ids[0])

    def rebuild_event(self, track_id, played_at, payload=None):
        item = dict(payload) if payload else make_item(track_id, played_at)
        item["played_at"] = played_at
        return PlayEvent.from_api(item)


class FakeSheets:
    def __init__(self, tabs: Dict[str, List[list]] = None, fail_append: bool = False):
        self.tabs = {name: [list(r) for r in rows] for name, rows in (tabs or {}).items()}
        self.fail_append = fail_append
        self.appended: List[tuple] = []
        self.updated: List[tuple] = []
        self.reads: List[str] = []
        self.call_count = 0
        self.error_count = 0

    def get_all_rows(self, sheet_name):
        self.call_count += 1
        self.reads.append(sheet_name)
        return [list(r) for r in self.tabs.get(sheet_name, [])]

    def append_rows(self, sheet_name, rows):
        self.call_count += 1
        if self.fail_append:
            self.error_count += 1
            raise SheetsWriteError(f"Failed to append rows to {sheet_name}: 500")
        self.appended.append((sheet_name, rows))
        self.tabs.setdefault(sheet_name, []).extend(rows)
        return {"updates": {"updatedRows": len(rows)}}

    def update_row(self, sheet_name, row_number, row):
        self.call_count += 1
        self.updated.append((sheet_name, row_number, row))
        self.tabs[sheet_name][row_number - 1] = row
        return {}

    def create_sheet_if_not_exists(self, sheet_name, headers=None):
        self.call_count += 1
        if sheet_name in self.tabs:
            return False
        self.tabs[sheet_name] = [list(headers)] if headers else []
        return True


class MemoryBackend:
    name = "memory"

    def __init__(self, text=None, backup=None):
        self.text = text
        self.backup = backup
        self.writes = 0

    def describe(self):
        return {"backend": self.name, "location": "memory"}

    def read(self):
        return self.text

    def read_backup(self):
        return self.backup

    def write(self, text):
        self.writes += 1
        self.text = text

    def write_backup(self, text):
        self.backup = text


@pytest.fixture
def now():
    # state timestamps are stored at millisecond precision
    return utcnow().replace(microsecond=0)


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path, alerts_enabled=False, system_log_enabled=False)


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    return StateStore(backend)


def make_context(settings, store, spotify=None, sheets=None) -> RunContext:
    return RunContext(
        settings=settings,
        store=store,
        spotify=spotify or FakeSpotify(),
        sheets=sheets or FakeSheets(),
        system_logger=SystemLogger(None, enabled=False),
    )


def minutes_ago(now, minutes):
    return now - timedelta(minutes=minutes)
