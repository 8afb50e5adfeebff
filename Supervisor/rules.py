"""Pure decision rules for the Supervisor.

Nothing in this module touches the filesystem or keeps state. Every
time-dependent rule takes ``now`` explicitly so scans are reproducible.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from Supervisor.schema_validator import (  # noqa: F401
    REQUIRED_EVENT_FIELDS,
    EventValidation,
    validate_event_schema,
)

DEFAULT_TIMEZONE = "Asia/Tokyo"
SEVERITIES: tuple[str, ...] = ("P1", "P2", "P3")

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")
_WS = re.compile(r"\s+")


class AlertableIssue(Protocol):
    severity: str
    consecutive_failures: int
    last_alert_ts: str | None


@dataclass(frozen=True)
class AlertPolicy:
    """Inputs to the alert decision state machine."""

    timezone: str = DEFAULT_TIMEZONE
    quiet_start: str = "23:00"
    quiet_end: str = "07:00"
    cooldown_hours: float = 2.0
    p2_threshold: int = 3


@dataclass(frozen=True)
class AlertDecision:
    """Outcome of :func:`should_alert_now`."""

    send: bool
    reason: str
    decision_rule: str


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def parse_ts(raw: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp. Naive values are taken as UTC."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def iso(dt: datetime) -> str:
    """Render *dt* as a UTC ISO 8601 string."""
    return dt.astimezone(timezone.utc).isoformat()


def age_minutes(raw_ts: Any, now: datetime) -> float | None:
    """Minutes elapsed between *raw_ts* and *now*, or None if unparseable."""
    at = parse_ts(raw_ts)
    if at is None:
        return None
    return (now - at).total_seconds() / 60.0


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_time(now: datetime, tz_name: str) -> datetime:
    """Wall-clock time of *now* in the IANA zone *tz_name*."""
    return now.astimezone(_zone(tz_name))


def date_key(now: datetime, tz_name: str) -> str:
    """Local calendar date (YYYY-MM-DD) of *now* in *tz_name*."""
    return local_time(now, tz_name).strftime("%Y-%m-%d")


def parse_hour_minute(
    value: Any, fallback_hour: int, fallback_minute: int = 0
) -> tuple[int, int]:
    """Parse ``HH:MM``; malformed values yield the fallback."""
    m = _HHMM.match(str(value or "").strip())
    if not m:
        return fallback_hour, fallback_minute
    return int(m.group(1)), int(m.group(2))


def is_quiet_hours(
    now: datetime,
    tz_name: str = DEFAULT_TIMEZONE,
    window: tuple[str, str] = ("23:00", "07:00"),
) -> bool:
    """Test whether local *now* falls inside the ``[start, end)`` window.

    The window may wrap midnight. A zero-width window is never quiet.
    """
    start_h, start_m = parse_hour_minute(window[0], 23)
    end_h, end_m = parse_hour_minute(window[1], 7)
    local = local_time(now, tz_name)
    now_min = local.hour * 60 + local.minute
    start_min = start_h * 60 + start_m
    end_min = end_h * 60 + end_m

    if start_min == end_min:
        return False
    if start_min < end_min:
        return start_min <= now_min < end_min
    return now_min >= start_min or now_min < end_min


def is_cooldown_active(
    last_alert_ts: Any, cooldown_hours: float, now: datetime
) -> bool:
    """True iff the last alert is younger than the cooldown duration."""
    last = parse_ts(last_alert_ts)
    if last is None:
        return False
    return (now - last) < timedelta(hours=float(cooldown_hours))


def is_scheduled_time(
    now: datetime,
    tz_name: str,
    hhmm: Any,
    fallback_hour: int,
    fallback_minute: int = 30,
) -> bool:
    """True when local *now* is exactly at the scheduled minute."""
    hour, minute = parse_hour_minute(hhmm, fallback_hour, fallback_minute)
    local = local_time(now, tz_name)
    return local.hour == hour and local.minute == minute


# ---------------------------------------------------------------------------
# Fingerprinting & severity
# ---------------------------------------------------------------------------


def _error_block(event: Mapping[str, Any]) -> Mapping[str, Any]:
    err = event.get("error") if isinstance(event, Mapping) else None
    return err if isinstance(err, Mapping) else {}


def build_fingerprint(event: Mapping[str, Any]) -> str:
    """Stable fingerprint for a failure event.

    An explicit ``error.fingerprint`` wins. Otherwise hash the bot id,
    component, error type/code and message after case and whitespace
    normalisation.
    """
    err = _error_block(event)
    if err.get("fingerprint"):
        return str(err["fingerprint"])
    bits = [
        str(event.get("bot_id") or ""),
        str(event.get("component") or ""),
        str(err.get("type") or ""),
        str(err.get("code") or ""),
        str(err.get("message") or event.get("message") or ""),
    ]
    raw = _WS.sub(" ", "|".join(bits).lower()).strip()
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
    return f"fp_{digest}"


def compute_issue_id(bot_id: str, event: Mapping[str, Any]) -> str:
    return f"{bot_id}:{build_fingerprint(event)}"


def classify_severity(event: Mapping[str, Any]) -> str:
    """Explicit severity if valid, else inferred from code/message/status."""
    raw = str(event.get("severity") or "").upper()
    if raw in SEVERITIES:
        return raw
    status = str(event.get("status") or "").lower()
    code = str(_error_block(event).get("code") or "").upper()
    msg = str(event.get("message") or "").lower()

    if "EACCES" in code or "permission denied" in msg:
        return "P1"
    if "secret" in msg or "token leakage" in msg:
        return "P1"
    if status == "error":
        return "P2"
    return "P3"


def severity_rank(severity: str | None) -> int:
    value = str(severity or "").upper()
    if value == "P1":
        return 3
    if value == "P2":
        return 2
    return 1


def higher_severity(a: str, b: str) -> str:
    return a if severity_rank(a) >= severity_rank(b) else b


# ---------------------------------------------------------------------------
# Alert decision
# ---------------------------------------------------------------------------


def should_alert_now(
    issue: AlertableIssue, policy: AlertPolicy, now: datetime
) -> AlertDecision:
    """Decide whether an open issue pages now.

    Order: P3 never pages; P2 below threshold waits; non-P1 in quiet
    hours is suppressed; an active cooldown holds; otherwise send.
    """
    severity = str(issue.severity or "P3").upper()
    consecutive = int(issue.consecutive_failures or 0)

    if severity == "P3":
        return AlertDecision(False, "briefing_only", "P3 briefing only")
    if severity == "P2" and consecutive < policy.p2_threshold:
        return AlertDecision(
            False,
            "threshold_not_reached",
            f"P2 threshold {policy.p2_threshold} not reached",
        )
    if severity != "P1" and is_quiet_hours(
        now, policy.timezone, (policy.quiet_start, policy.quiet_end)
    ):
        return AlertDecision(
            False, "quiet_hours", "quiet hours suppression for non-P1"
        )
    if is_cooldown_active(issue.last_alert_ts, policy.cooldown_hours, now):
        return AlertDecision(
            False, "cooldown", f"cooldown {policy.cooldown_hours:g}h active"
        )
    if severity == "P1":
        rule = "P1 immediate alert"
    else:
        rule = f"P2 consecutive failures >= {policy.p2_threshold}"
    return AlertDecision(True, "send_now", rule)
