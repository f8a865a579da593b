"""
Execution metrics.

One MetricsRecorder per invocation collects timings, API call counts,
errors and track counts; finish() folds them into the daily aggregates kept
in the "metrics" section of the persisted state. Daily aggregates older
than 30 days are dropped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

import pandas as pd

from .error_handling import get_logger
from .models import PersistedState, format_iso, utcnow

logger = get_logger()

RETENTION_DAYS = 30
ERROR_TYPES = ("spotify", "sheets", "validation", "other")
API_SERVICES = ("spotify", "sheets")

HEALTH_MAX_AVG_EXECUTION_MS = 50_000
HEALTH_MIN_SUCCESS_RATE = 90
HEALTH_MAX_DAILY_ERRORS = 10
HEALTH_MAX_SPOTIFY_FAILURE_RATE = 5.0


def _day_key(d) -> str:
    if isinstance(d, datetime):
        d = d.date()
    return d.isoformat()


def init_daily_metrics() -> dict:
    return {
        "executions": 0,
        "totalExecutionTime": 0,
        "avgExecutionTime": 0,
        "maxExecutionTime": 0,
        "minExecutionTime": None,
        "tracksLogged": 0,
        "tracksProcessed": 0,
        "apiCalls": {s: {"total": 0, "success": 0, "failed": 0} for s in API_SERVICES},
        "errors": {t: 0 for t in ERROR_TYPES},
        "successRate": 100,
        "hourlyExecutions": {},
    }


def get_metrics_state(state: PersistedState) -> dict:
    section = state.sections.get("metrics")
    if not isinstance(section, dict):
        section = {}
        state.sections["metrics"] = section
    section.setdefault("daily", {})
    section.setdefault("lastReset", None)
    section.setdefault(
        "totals", {"totalExecutions": 0, "totalTracksLogged": 0, "totalErrors": 0, "totalApiCalls": 0}
    )
    return section


@dataclass
class MetricsRecorder:
    """Metrics for the current invocation."""

    function_name: str
    clock: Callable[[], float] = time.monotonic
    now: Callable[[], datetime] = utcnow
    api_calls: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: List[dict] = field(default_factory=list)
    tracks_processed: int = 0
    tracks_logged: int = 0
    started: Optional[float] = None

    def start(self) -> "MetricsRecorder":
        self.started = self.clock()
        logger.debug(f"[Metrics] Started tracking: {self.function_name}")
        return self

    def elapsed_ms(self) -> int:
        if self.started is None:
            return 0
        return int((self.clock() - self.started) * 1000)

    def track_api_calls(self, service: str, total: int, failed: int = 0) -> None:
        counts = self.api_calls.setdefault(service, {"total": 0, "failed": 0})
        counts["total"] += total
        counts["failed"] += failed

    def track_client(self, service: str, client) -> None:
        """Take call/error counters from an API client."""
        if client is not None:
            self.track_api_calls(service, getattr(client, "call_count", 0), getattr(client, "error_count", 0))

    def track_error(self, error_type: str, error) -> None:
        self.errors.append({"type": error_type, "message": str(error), "timestamp": format_iso(self.now())})
        logger.debug(f"[Metrics] Error tracked: {error_type} - {error}")

    def track_tracks(self, processed: int, logged: int) -> None:
        self.tracks_processed += processed
        self.tracks_logged += logged

    def finish(self, state: PersistedState) -> dict:
        """Fold this invocation into the daily aggregates. Returns the run summary."""
        duration = self.elapsed_ms()
        now = self.now()
        metrics_state = get_metrics_state(state)
        daily = metrics_state["daily"].setdefault(_day_key(now), init_daily_metrics())

        daily["executions"] += 1
        daily["totalExecutionTime"] += duration
        daily["avgExecutionTime"] = round(daily["totalExecutionTime"] / daily["executions"])
        daily["maxExecutionTime"] = max(daily["maxExecutionTime"], duration)
        daily["minExecutionTime"] = (
            duration if daily["minExecutionTime"] is None else min(daily["minExecutionTime"], duration)
        )
        hour = str(now.hour)
        daily["hourlyExecutions"][hour] = daily["hourlyExecutions"].get(hour, 0) + 1

        daily["tracksProcessed"] += self.tracks_processed
        daily["tracksLogged"] += self.tracks_logged

        api_total = 0
        for service, counts in self.api_calls.items():
            api_total += counts["total"]
            service_metrics = daily["apiCalls"].setdefault(service, {"total": 0, "success": 0, "failed": 0})
            service_metrics["total"] += counts["total"]
            service_metrics["failed"] += counts["failed"]
            service_metrics["success"] += counts["total"] - counts["failed"]

        for error in self.errors:
            key = error["type"] if error["type"] in daily["errors"] else "other"
            daily["errors"][key] += 1

        processed = daily["tracksProcessed"]
        failed = sum(daily["errors"].values())
        daily["successRate"] = round((processed - failed) / processed * 100) if processed > 0 else 100

        totals = metrics_state["totals"]
        totals["totalExecutions"] += 1
        totals["totalTracksLogged"] += self.tracks_logged
        totals["totalErrors"] += len(self.errors)
        totals["totalApiCalls"] += api_total

        cleanup_old_metrics(state, now.date())

        summary = {
            "functionName": self.function_name,
            "duration": duration,
            "tracksProcessed": self.tracks_processed,
            "tracksLogged": self.tracks_logged,
            "apiCalls": api_total,
            "errors": len(self.errors),
        }
        logger.info(
            f"[Metrics] Execution complete: {duration}ms, {self.tracks_logged} tracks, {len(self.errors)} errors"
        )
        return summary


def get_daily_metrics(state: PersistedState, day: Optional[date] = None) -> dict:
    day = day or utcnow().date()
    return get_metrics_state(state)["daily"].get(_day_key(day)) or init_daily_metrics()


def get_metrics_summary(state: PersistedState, day: Optional[date] = None) -> dict:
    metrics_state = get_metrics_state(state)
    return {
        "today": get_daily_metrics(state, day),
        "totals": metrics_state["totals"],
        "lastReset": metrics_state["lastReset"],
    }


def daily_frame(state: PersistedState) -> pd.DataFrame:
    """Daily aggregates as a DataFrame indexed by date string."""
    rows = []
    for day, daily in get_metrics_state(state)["daily"].items():
        rows.append({
            "date": day,
            "executions": daily.get("executions", 0),
            "tracksLogged": daily.get("tracksLogged", 0),
            "totalExecutionTime": daily.get("totalExecutionTime", 0),
            "avgExecutionTime": daily.get("avgExecutionTime", 0),
            "successRate": daily.get("successRate", 100),
            "errors": sum((daily.get("errors") or {}).values()),
        })
    columns = ["date", "executions", "tracksLogged", "totalExecutionTime", "avgExecutionTime", "successRate", "errors"]
    return pd.DataFrame(rows, columns=columns).set_index("date").sort_index()


def get_weekly_metrics(state: PersistedState, today: Optional[date] = None) -> dict:
    today = today or utcnow().date()
    dates = [_day_key(today - timedelta(days=i)) for i in range(7)]
    df = daily_frame(state)
    week = df[df.index.isin(dates)]

    total_executions = int(week["executions"].sum())
    total_logged = int(week["tracksLogged"].sum())
    total_errors = int(week["errors"].sum())

    avg_execution = round(week["totalExecutionTime"].sum() / total_executions) if total_executions else 0
    if total_logged > 0:
        success_rate = round((total_logged - total_errors) / total_logged * 100)
    else:
        success_rate = 100

    breakdown = {
        day: {
            "executions": int(row["executions"]),
            "tracksLogged": int(row["tracksLogged"]),
            "avgExecutionTime": int(row["avgExecutionTime"]),
            "successRate": int(row["successRate"]),
        }
        for day, row in week.iterrows()
    }

    return {
        "dates": dates,
        "totalExecutions": total_executions,
        "totalTracksLogged": total_logged,
        "totalErrors": total_errors,
        "avgExecutionTime": int(avg_execution),
        "successRate": int(success_rate),
        "dailyBreakdown": breakdown,
    }


def reset_daily_metrics(state: PersistedState) -> None:
    metrics_state = get_metrics_state(state)
    metrics_state["daily"] = {}
    metrics_state["lastReset"] = format_iso(utcnow())
    logger.info("[Metrics] Daily metrics reset")


def cleanup_old_metrics(state: PersistedState, today: Optional[date] = None, days: int = RETENTION_DAYS) -> int:
    today = today or utcnow().date()
    cutoff = _day_key(today - timedelta(days=days))
    daily = get_metrics_state(state)["daily"]
    old = [key for key in daily if key < cutoff]
    for key in old:
        del daily[key]
    if old:
        logger.info(f"[Metrics] Cleaned up {len(old)} old days of metrics")
    return len(old)


def check_health(state: PersistedState, day: Optional[date] = None) -> dict:
    """Health verdict for one day: healthy, warning or critical, with the issues found."""
    today = get_daily_metrics(state, day)
    issues = []

    if today["avgExecutionTime"] > HEALTH_MAX_AVG_EXECUTION_MS:
        issues.append({
            "type": "slow_execution",
            "severity": "warning",
            "message": f"Average execution time is {today['avgExecutionTime'] / 1000:.1f}s",
        })

    if today["successRate"] < HEALTH_MIN_SUCCESS_RATE:
        issues.append({
            "type": "low_success_rate",
            "severity": "critical" if today["successRate"] < 75 else "warning",
            "message": f"Success rate is {today['successRate']}%",
        })

    total_errors = sum(today["errors"].values())
    if total_errors > HEALTH_MAX_DAILY_ERRORS:
        issues.append({"type": "high_errors", "severity": "warning", "message": f"{total_errors} errors today"})

    spotify = today["apiCalls"].get("spotify") or {}
    if spotify.get("total"):
        failure_rate = spotify["failed"] / spotify["total"] * 100
        if failure_rate > HEALTH_MAX_SPOTIFY_FAILURE_RATE:
            issues.append({
                "type": "spotify_api_failures",
                "severity": "warning",
                "message": f"Spotify API failure rate is {failure_rate:.1f}%",
            })

    if any(i["severity"] == "critical" for i in issues):
        status = "critical"
    elif issues:
        status = "warning"
    else:
        status = "healthy"

    return {"status": status, "issues": issues, "metrics": today}
