"""
Spotify Web API client.

Wraps spotipy with:
- refresh-token authentication
- retry on 429 (honouring Retry-After), 5xx and connection errors
- a per-invocation TTL cache for track, audio-feature and artist lookups
- conversion of responses into the dataclasses in playlog.models
"""

import random
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
import spotipy
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

from .cache import TTLCache
from .config import (
    API_INITIAL_RETRY_DELAY,
    API_MAX_RETRIES,
    API_MAX_WAIT,
    SPOTIFY_MAX_ARTISTS_PER_REQUEST,
    SPOTIFY_MAX_AUDIO_FEATURES_PER_REQUEST,
    SPOTIFY_RECENTLY_PLAYED_MAX,
    SPOTIFY_SCOPES,
    Settings,
)
from .error_handling import (
    ConfigurationError,
    PlaylogError,
    RetryableError,
    SpotifyAuthError,
    SpotifyNotFoundError,
    get_logger,
)
from .models import ArtistDetails, AudioFeatures, PlayEvent, RecentlyPlayedPage

logger = get_logger()

_TRANSIENT_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def get_spotify_client(settings: Settings) -> spotipy.Spotify:
    """
    Get authenticated Spotify client.
    Uses the refresh token if available (hosted / scheduled runs), otherwise
    interactive auth with a token cache in the data directory.
    """
    settings.require_spotify()

    if settings.spotify_refresh_token:
        auth = SpotifyOAuth(
            client_id=settings.spotify_client_id,
            client_secret=settings.spotify_client_secret,
            redirect_uri=settings.spotify_redirect_uri,
            scope=SPOTIFY_SCOPES,
            open_browser=False,
        )
        try:
            token_info = auth.refresh_access_token(settings.spotify_refresh_token)
        except (SpotifyOauthError, requests.RequestException) as e:
            raise SpotifyAuthError(f"Spotify token refresh failed: {e}") from e
        return spotipy.Spotify(auth=token_info["access_token"], requests_timeout=15)

    if settings.hosted:
        raise ConfigurationError("SPOTIFY_REFRESH_TOKEN is required for hosted runs")

    auth = SpotifyOAuth(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        scope=SPOTIFY_SCOPES,
        cache_path=str(settings.data_dir / ".cache"),
    )
    return spotipy.Spotify(auth_manager=auth, requests_timeout=15)


def credential_status(settings: Settings) -> Dict[str, bool]:
    """Which Spotify credentials are configured, without exposing them."""
    present = {
        "hasClientId": bool(settings.spotify_client_id),
        "hasClientSecret": bool(settings.spotify_client_secret),
        "hasRefreshToken": bool(settings.spotify_refresh_token),
    }
    present["allPresent"] = all(present.values())
    return present


def mask_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return f"{token[:4]}...{token[-4:]}"


def check_spotify_auth(settings: Settings, force_refresh: bool = False) -> dict:
    """
    Obtain an access token the way a scheduled run would and describe it.

    An unexpired token from the data-dir token cache is reported as is
    unless force_refresh is set; otherwise the refresh token is exchanged
    (which also refreshes the cache).

    Raises:
        ConfigurationError: credentials or refresh token missing
        SpotifyAuthError: the refresh was rejected or could not be made
    """
    settings.require_spotify()
    if not settings.spotify_refresh_token:
        raise ConfigurationError("Missing Spotify credentials: SPOTIFY_REFRESH_TOKEN is not set")

    auth = SpotifyOAuth(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        scope=SPOTIFY_SCOPES,
        cache_path=str(settings.data_dir / ".cache"),
        open_browser=False,
    )
    token_info = None if force_refresh else auth.cache_handler.get_cached_token()
    refreshed = not token_info or auth.is_token_expired(token_info)
    if refreshed:
        logger.info("[Auth Spotify] Refreshing access token")
        try:
            token_info = auth.refresh_access_token(settings.spotify_refresh_token)
        except (SpotifyOauthError, requests.RequestException) as e:
            raise SpotifyAuthError(f"Spotify token refresh failed: {e}") from e

    access_token = token_info.get("access_token") or ""
    return {
        "refreshed": refreshed,
        "token": {
            "present": bool(access_token),
            "masked": mask_token(access_token),
            "length": len(access_token),
            "expiresIn": token_info.get("expires_in"),
            "tokenType": token_info.get("token_type") or "Bearer",
            "scope": token_info.get("scope"),
        },
    }


def classify_auth_error(e: Exception) -> tuple:
    """(errorType, help) for an auth check failure."""
    text = str(e)
    if isinstance(e, ConfigurationError):
        return "missing_credentials", (
            "Check that SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET and SPOTIFY_REFRESH_TOKEN are set"
        )
    if "invalid_grant" in text:
        return "invalid_refresh_token", "The refresh token may be expired or revoked. Run `playlog auth` for a new one."
    if "invalid_client" in text:
        return "invalid_client_credentials", "SPOTIFY_CLIENT_ID or SPOTIFY_CLIENT_SECRET may be incorrect"
    return "unknown", None


def _extract_retry_after(e: Exception) -> Optional[float]:
    """Extract Retry-After header from a spotipy exception."""
    headers = getattr(e, "headers", None)
    if headers:
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except (ValueError, TypeError):
                pass
    return None


def _calculate_backoff(attempt: int, retry_after: Optional[float]) -> float:
    """Exponential backoff with jitter; Retry-After wins when it is longer."""
    wait = API_INITIAL_RETRY_DELAY * (2 ** attempt) + random.uniform(0, 0.5)
    if retry_after:
        wait = max(wait, retry_after)
    return min(wait, API_MAX_WAIT)


def api_call(
    fn: Callable,
    *args,
    max_retries: int = API_MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs
) -> Any:
    """
    Call a spotipy method with retry and error translation.

    Raises:
        SpotifyAuthError: 401/403 from the API
        SpotifyNotFoundError: 404 from the API
        RetryableError: transient failures persisted through every attempt
        PlaylogError: any other API error
    """
    fn_name = getattr(fn, "__name__", str(fn))

    for attempt in range(max_retries + 1):
        try:
            return fn(*args, **kwargs)
        except spotipy.SpotifyException as e:
            status = e.http_status
            if status == 401 or status == 403:
                raise SpotifyAuthError(f"Spotify rejected {fn_name}() ({status}): {e.msg}") from e
            if status == 404:
                raise SpotifyNotFoundError(f"Spotify {fn_name}(): not found") from e
            if status != 429 and not (status and 500 <= status < 600):
                raise PlaylogError(f"Spotify {fn_name}() failed ({status}): {e.msg}") from e
            error = e
            retry_after = _extract_retry_after(e) if status == 429 else None
        except _TRANSIENT_ERRORS as e:
            error = e
            retry_after = None

        if attempt >= max_retries:
            break
        wait = _calculate_backoff(attempt, retry_after)
        logger.warning(
            f"[Spotify API] Transient/rate error in {fn_name}(): {error} - retrying in {wait:.1f}s "
            f"(attempt {attempt + 1}/{max_retries})"
        )
        sleep(wait)

    raise RetryableError(f"Spotify {fn_name}() failed after {max_retries} retries: {error}")


def _chunked(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SpotifyClient:
    """
    The calls the logger makes, over a spotipy.Spotify instance.

    The cache belongs to the client and lives as long as one invocation.
    """

    def __init__(self, sp: spotipy.Spotify, cache: Optional[TTLCache] = None, sleep=time.sleep):
        self.sp = sp
        self.cache = cache if cache is not None else TTLCache()
        self.sleep = sleep
        self.call_count = 0
        self.error_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpotifyClient":
        return cls(get_spotify_client(settings), TTLCache(ttl=settings.cache_ttl_seconds))

    def _call(self, fn: Callable, *args, **kwargs) -> Any:
        self.call_count += 1
        try:
            return api_call(fn, *args, sleep=self.sleep, **kwargs)
        except PlaylogError:
            self.error_count += 1
            raise

    def fetch_recently_played(self, limit: int = SPOTIFY_RECENTLY_PLAYED_MAX, after: Optional[int] = None) -> RecentlyPlayedPage:
        """
        Most recent plays, newest first, as returned by the API.

        Items that cannot be parsed are skipped and counted.
        """
        limit = max(1, min(limit, SPOTIFY_RECENTLY_PLAYED_MAX))
        logger.info(f"[Spotify API] Fetching recently played tracks (limit: {limit})")
        response = self._call(self.sp.current_user_recently_played, limit=limit, after=after) or {}

        events = []
        skipped = 0
        for item in response.get("items") or []:
            try:
                event = PlayEvent.from_api(item)
            except ValueError as e:
                logger.warning(f"[Spotify API] Skipping malformed play item: {e}")
                skipped += 1
                continue
            if not event.track_id:
                skipped += 1
                continue
            events.append(event)

        cursors = response.get("cursors") or {}
        return RecentlyPlayedPage(events=events, skipped=skipped, cursor_after=cursors.get("after"))

    def get_track(self, track_id: str) -> Dict[str, Any]:
        return self.cache.get_or_load(f"track:{track_id}", lambda: self._call(self.sp.track, track_id))

    def get_audio_features(self, track_ids: List[str]) -> Dict[str, AudioFeatures]:
        """Audio features by track ID; tracks without features map to empty AudioFeatures."""
        result = {}
        missing = []
        for track_id in dict.fromkeys(track_ids):
            cached = self.cache.get(f"audio-features:{track_id}")
            if cached is not None:
                result[track_id] = cached
            else:
                missing.append(track_id)

        for batch in _chunked(missing, SPOTIFY_MAX_AUDIO_FEATURES_PER_REQUEST):
            logger.debug(f"[Spotify API] Fetching audio features for {len(batch)} tracks")
            payload = self._call(self.sp.audio_features, batch) or []
            for track_id, data in zip(batch, payload):
                features = AudioFeatures.from_api(data)
                result[track_id] = features
                if data:
                    self.cache.set(f"audio-features:{track_id}", features)

        return result

    def get_artists(self, artist_ids: List[str]) -> Dict[str, ArtistDetails]:
        result = {}
        missing = []
        for artist_id in dict.fromkeys(a for a in artist_ids if a):
            cached = self.cache.get(f"artist:{artist_id}")
            if cached is not None:
                result[artist_id] = cached
            else:
                missing.append(artist_id)

        for batch in _chunked(missing, SPOTIFY_MAX_ARTISTS_PER_REQUEST):
            logger.debug(f"[Spotify API] Fetching {len(batch)} artists")
            payload = self._call(self.sp.artists, batch) or {}
            for data in payload.get("artists") or []:
                if not data:
                    continue
                artist = ArtistDetails.from_api(data)
                result[artist.artist_id] = artist
                self.cache.set(f"artist:{artist.artist_id}", artist)

        return result

    def enrich(self, event: PlayEvent):
        """
        Audio features and primary-artist details for one play.

        Raises whatever the underlying calls raise; the caller turns that
        into a placeholder record.
        """
        features = self.get_audio_features([event.track_id]).get(event.track_id, AudioFeatures())
        artists = self.get_artists(list(event.artist_ids))
        primary = artists.get(event.artist_ids[0]) if event.artist_ids else None
        return features, primary

    def rebuild_event(self, track_id: str, played_at, payload: Optional[dict] = None) -> PlayEvent:
        """PlayEvent for a queued item, from its stored payload or a fresh track lookup."""
        if payload and payload.get("track"):
            item = dict(payload)
        else:
            item = {"track": self.get_track(track_id)}
        item["played_at"] = played_at
        return PlayEvent.from_api(item)
