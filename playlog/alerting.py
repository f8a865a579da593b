"""
Alerting: Slack and Discord webhooks, plus the log.

Alert bookkeeping (what was sent when, consecutive run failures) lives in
the "alerts" section of the persisted state; the caller saves the state.

Levels: INFO, WARNING, CRITICAL. The same level+title is sent at most once
per 24 hours.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import requests

from .config import Settings
from .error_handling import get_logger
from .models import PersistedState, format_iso, parse_timestamp, utcnow

logger = get_logger()

INFO = "INFO"
WARNING = "WARNING"
CRITICAL = "CRITICAL"

ALERT_DEDUP_HOURS = 24
SENT_ALERT_RETENTION_DAYS = 7
WEBHOOK_TIMEOUT = 10
FOOTER = "Playlog"

CONSECUTIVE_FAILURE_WARNING = 3
CONSECUTIVE_FAILURE_CRITICAL = 5
SLOW_EXECUTION_WARNING_MS = 50_000
SLOW_EXECUTION_CRITICAL_MS = 55_000
ERROR_RATE_WARNING = 10.0
ERROR_RATE_CRITICAL = 25.0
ERROR_RATE_MIN_TRACKS = 10
STUCK_TRACKS_THRESHOLD = 5

_SLACK_COLORS = {CRITICAL: "#FF0000", WARNING: "#FFA500", INFO: "#36A64F"}
_DISCORD_COLORS = {CRITICAL: 0xFF0000, WARNING: 0xFFA500, INFO: 0x36A64F}


def default_alert_state() -> dict:
    return {"sentAlerts": {}, "consecutiveFailures": 0, "lastSuccessfulRun": None}


def slack_payload(level: str, title: str, message: str, metadata: Dict, now: datetime) -> dict:
    return {
        "attachments": [{
            "color": _SLACK_COLORS.get(level, _SLACK_COLORS[INFO]),
            "title": f"{level}: {title}",
            "text": message,
            "fields": [{"title": k, "value": str(v), "short": True} for k, v in metadata.items()],
            "footer": FOOTER,
            "ts": int(now.timestamp()),
        }]
    }


def discord_payload(level: str, title: str, message: str, metadata: Dict, now: datetime) -> dict:
    return {
        "embeds": [{
            "title": f"{level}: {title}",
            "description": message,
            "color": _DISCORD_COLORS.get(level, _DISCORD_COLORS[INFO]),
            "fields": [{"name": k, "value": str(v), "inline": True} for k, v in metadata.items()],
            "footer": {"text": FOOTER},
            "timestamp": format_iso(now),
        }]
    }


class AlertManager:
    """Sends alerts and keeps the alert section of one state document current."""

    def __init__(
        self,
        settings: Settings,
        state: PersistedState,
        session: Optional[requests.Session] = None,
        system_logger=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.state = state
        self.session = session or requests.Session()
        self.system_logger = system_logger
        self.clock = clock

    @property
    def alert_state(self) -> dict:
        section = self.state.sections.get("alerts")
        if not isinstance(section, dict):
            section = default_alert_state()
            self.state.sections["alerts"] = section
        section.setdefault("sentAlerts", {})
        section.setdefault("consecutiveFailures", 0)
        section.setdefault("lastSuccessfulRun", None)
        return section

    def is_duplicate(self, key: str) -> bool:
        last_sent = parse_timestamp(self.alert_state["sentAlerts"].get(key))
        if last_sent is None:
            return False
        return self.clock() - last_sent < timedelta(hours=ALERT_DEDUP_HOURS)

    def _mark_sent(self, key: str) -> None:
        now = self.clock()
        sent = self.alert_state["sentAlerts"]
        sent[key] = format_iso(now)
        cutoff = now - timedelta(days=SENT_ALERT_RETENTION_DAYS)
        for old_key in [k for k, v in sent.items() if (parse_timestamp(v) or now) < cutoff]:
            del sent[old_key]

    def _post(self, url: str, payload: dict, channel: str) -> bool:
        try:
            response = self.session.post(url, json=payload, timeout=WEBHOOK_TIMEOUT)
            return response.ok
        except requests.RequestException as e:
            logger.error(f"[Alerting] Failed to send {channel} alert: {e}")
            return False

    def send_alert(self, level: str, title: str, message: str, metadata: Optional[Dict] = None) -> dict:
        """
        Deliver to every configured channel.

        Returns {"sent": False, "reason": ...} when disabled or de-duplicated,
        otherwise {"sent": True, "channels": {...}}.
        """
        metadata = metadata or {}
        if not self.settings.alerts_enabled:
            logger.info("[Alerting] Alerts disabled, skipping")
            return {"sent": False, "reason": "alerts_disabled"}

        key = f"{level}:{title}"
        if self.is_duplicate(key):
            logger.info(f"[Alerting] Alert deduplicated: {title}")
            return {"sent": False, "reason": "deduplicated"}

        now = self.clock()
        log_fn = logger.critical if level == CRITICAL else logger.warning if level == WARNING else logger.info
        log_fn(f"[ALERT - {level}] {title}: {message}")

        channels = {"log": True, "slack": False, "discord": False}
        if self.settings.slack_webhook_url:
            channels["slack"] = self._post(
                self.settings.slack_webhook_url, slack_payload(level, title, message, metadata, now), "Slack"
            )
        if self.settings.discord_webhook_url:
            channels["discord"] = self._post(
                self.settings.discord_webhook_url, discord_payload(level, title, message, metadata, now), "Discord"
            )

        self._mark_sent(key)
        if self.system_logger is not None:
            delivered = ", ".join(c for c, ok in channels.items() if ok)
            self.system_logger.log_alert_sent(title, delivered, message)

        return {"sent": True, "channels": channels}

    def alert_consecutive_failures(self, failure_count: int) -> dict:
        if failure_count < CONSECUTIVE_FAILURE_WARNING:
            return {"sent": False, "reason": "below_threshold"}
        level = CRITICAL if failure_count >= CONSECUTIVE_FAILURE_CRITICAL else WARNING
        return self.send_alert(
            level,
            "Consecutive Run Failures",
            f"The play logger has failed {failure_count} times in a row. Manual intervention may be required.",
            {"Failure Count": failure_count},
        )

    def alert_stuck_tracks(self, stuck: List) -> dict:
        if len(stuck) < STUCK_TRACKS_THRESHOLD:
            return {"sent": False, "reason": "below_threshold"}
        return self.send_alert(
            WARNING,
            "Tracks Stuck in Failed Queue",
            f"{len(stuck)} tracks have been in the failed queue for over 24 hours and may require manual review.",
            {"Stuck Tracks": len(stuck), "Sample": ", ".join(i.track_name or i.track_id for i in stuck[:3])},
        )

    def alert_slow_execution(self, execution_time_ms: int) -> dict:
        if execution_time_ms < SLOW_EXECUTION_WARNING_MS:
            return {"sent": False, "reason": "below_threshold"}
        level = CRITICAL if execution_time_ms >= SLOW_EXECUTION_CRITICAL_MS else WARNING
        seconds = f"{execution_time_ms / 1000:.1f}s"
        return self.send_alert(
            level,
            "Slow Execution Time",
            f"Run took {seconds}, approaching the 60-second platform limit.",
            {"Execution Time": seconds},
        )

    def alert_high_error_rate(self, error_rate: float, total_tracks: int) -> dict:
        if error_rate < ERROR_RATE_WARNING or total_tracks < ERROR_RATE_MIN_TRACKS:
            return {"sent": False, "reason": "below_threshold"}
        level = CRITICAL if error_rate >= ERROR_RATE_CRITICAL else WARNING
        failed = round(total_tracks * error_rate / 100)
        return self.send_alert(
            level,
            "High Error Rate",
            f"Error rate is {error_rate:.1f}% ({failed} out of {total_tracks} tracks).",
            {"Error Rate": f"{error_rate:.1f}%", "Total Tracks": total_tracks},
        )

    def alert_auth_failure(self, service: str, error: str) -> dict:
        return self.send_alert(
            CRITICAL,
            "Authentication Failure",
            f"Failed to authenticate with {service}. Manual token refresh may be required.",
            {"Service": service, "Error": error},
        )

    def alert_data_loss(self, track_ids: List[str]) -> dict:
        return self.send_alert(
            CRITICAL,
            "Potential Data Loss",
            f"{len(track_ids)} track(s) could not be recovered after maximum retry attempts "
            "and may be permanently lost.",
            {"Lost Tracks": len(track_ids), "Track IDs": ", ".join(track_ids[:5])},
        )

    def alert_sync_issue(self, detail: str) -> dict:
        return self.send_alert(WARNING, "State Ahead of Sheet", detail)

    def check_thresholds(self, execution_time_ms: int, total_tracks: int, error_count: int) -> List[str]:
        """Run the per-invocation threshold checks. Returns the names of alerts sent."""
        sent = []
        if execution_time_ms and self.alert_slow_execution(execution_time_ms).get("sent"):
            sent.append("slow_execution")
        if total_tracks and error_count:
            rate = error_count / total_tracks * 100
            if self.alert_high_error_rate(rate, total_tracks).get("sent"):
                sent.append("high_error_rate")
        return sent

    def status(self) -> dict:
        section = self.alert_state
        return {
            "enabled": self.settings.alerts_enabled,
            "channels": {
                "slack": bool(self.settings.slack_webhook_url),
                "discord": bool(self.settings.discord_webhook_url),
            },
            "consecutiveFailures": section["consecutiveFailures"],
            "lastSuccessfulRun": section["lastSuccessfulRun"],
            "recentAlerts": len(section["sentAlerts"]),
        }

    def track_successful_run(self) -> None:
        section = self.alert_state
        section["consecutiveFailures"] = 0
        section["lastSuccessfulRun"] = format_iso(self.clock())

    def track_failed_run(self) -> int:
        """Bump the failure counter and alert past the threshold. Returns the new count."""
        section = self.alert_state
        section["consecutiveFailures"] = int(section.get("consecutiveFailures") or 0) + 1
        self.alert_consecutive_failures(section["consecutiveFailures"])
        return section["consecutiveFailures"]
