import pytest

from playlog.cache import TTLCache
from playlog.error_handling import RetryableError, handle_errors, retry_on_error
from playlog.logger import format_duration, get_log_buffer, log, reset_log_buffer, set_verbose, timed_step


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_cache_expires_entries():
    clock = _Clock()
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("a", 1)
    assert cache.get("a") == 1
    clock.now = 10
    assert cache.get("a") is None
    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.size) == (1, 1, 0)


def test_cache_get_or_load_only_loads_once():
    cache = TTLCache()
    calls = []
    loader = lambda: calls.append(1) or "value"
    assert cache.get_or_load("k", loader) == "value"
    assert cache.get_or_load("k", loader) == "value"
    assert len(calls) == 1
    assert "k" in cache


def test_retry_on_error_retries_then_raises():
    sleeps = []
    attempts = []

    @retry_on_error(max_retries=3, delay=1.0, sleep=sleeps.append)
    def flaky():
        attempts.append(1)
        raise RetryableError("again")

    with pytest.raises(RetryableError):
        flaky()
    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]


def test_handle_errors_default_and_reraise():
    @handle_errors(default_return="fallback", log_error=False)
    def quiet():
        raise ValueError("x")

    @handle_errors(reraise=True)
    def loud():
        raise ValueError("y")

    assert quiet() == "fallback"
    with pytest.raises(ValueError):
        loud()


def test_log_trail_and_timed_step():
    reset_log_buffer()
    set_verbose(True)
    try:
        with timed_step("Step"):
            log("inside")
    finally:
        set_verbose(False)
    trail = get_log_buffer()
    assert "inside" in trail
    assert any("[END] Step" in line for line in trail)


def test_format_duration():
    assert format_duration(0) == "0:00"
    assert format_duration(61_500) == "1:01"
