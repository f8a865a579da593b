"""
Run logging: timestamped log, verbose log, step banners, timed steps.

Every line is also kept in an in-memory trail that the triggers return in the
JSON run summary.
"""

import time
from contextlib import contextmanager
from datetime import datetime

from tqdm import tqdm

# Log trail for the current invocation
_log_buffer = []
# Global verbose flag (set by CLI)
_verbose = False


def set_verbose(value: bool) -> None:
    """Enable or disable verbose logging."""
    global _verbose
    _verbose = value


def get_verbose() -> bool:
    """Return current verbose flag."""
    return _verbose


def get_log_buffer() -> list:
    """Return the in-memory log trail."""
    return _log_buffer


def reset_log_buffer() -> None:
    _log_buffer.clear()


def log(msg: str) -> None:
    """Print message with timestamp and add it to the log trail."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    log_line = f"[{timestamp}] {msg}"
    tqdm.write(log_line)
    _log_buffer.append(msg)


def verbose_log(msg: str) -> None:
    """Print verbose message only if verbose mode is enabled."""
    if _verbose:
        log(f"🔍 [VERBOSE] {msg}")


def log_step_banner(step_name: str, width: int = 60) -> None:
    """Log a clear demarcation banner for a pipeline step."""
    sep = "=" * width
    tqdm.write("")
    tqdm.write(sep)
    tqdm.write(f"  {step_name}")
    tqdm.write(sep)


@contextmanager
def timed_step(step_name: str):
    """Context manager to time and log execution of a step."""
    if _verbose:
        log_step_banner(step_name)
    start_time = time.time()
    verbose_log(f"⏱️  [START] {step_name}")
    try:
        yield
    finally:
        elapsed = time.time() - start_time
        verbose_log(f"⏱️  [END] {step_name} (took {elapsed:.2f}s)")


def format_duration(ms: int) -> str:
    """Format milliseconds as m:ss."""
    total_seconds = int(ms // 1000)
    return f"{total_seconds // 60}:{total_seconds % 60:02d}"
