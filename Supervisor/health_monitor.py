"""Composite health classification for worker bots.

For one worker per call, reads the telemetry files under ``logs/<bot>/``,
asks the container runtime for its state and recent channel logs, drains
unseen event lines past the scan cursor, and fuses everything into a
``BotHealth`` snapshot while opening or resolving issues in the registry.
"""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from infra.container_runtime import ContainerRuntime, ContainerState
from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import IssueRegistry
from Supervisor.logger import get_logger
from Supervisor.models import HealthPolicy, WorkerSpec
from Supervisor.rules import (
    age_minutes,
    build_fingerprint,
    classify_severity,
    compute_issue_id,
    higher_severity,
    iso,
    parse_ts,
    validate_event_schema,
)
from Supervisor.state_store import load_json

BOT_STATUSES = ("OK", "WARN", "ERROR", "DOWN", "UNKNOWN")
SCHEMA_VIOLATION_P2_COUNT = 5

_START_MARKER = re.compile(r"\[telegram\].*\[default\]\s+starting provider", re.IGNORECASE)
_CHANNEL_EXIT = re.compile(r"\[telegram\].*\[default\]\s+channel exited:", re.IGNORECASE)
_AUTH_INVALID = (
    re.compile(r"channel exited: .*getMe.*404: Not Found", re.IGNORECASE),
    re.compile(r"getMe'\s+failed!\s+\(404:\s*Not Found\)", re.IGNORECASE),
    re.compile(r"deleteMyCommands failed: .*404:\s*Not Found", re.IGNORECASE),
    re.compile(r"setMyCommands failed: .*404:\s*Not Found", re.IGNORECASE),
)


# ---------------------------------------------------------------------------
# Snapshot types
# ---------------------------------------------------------------------------


@dataclass
class BotHealth:
    """Rolling per-bot snapshot, overwritten every scan."""

    bot_id: str
    status: str = "UNKNOWN"
    last_seen_ts: str | None = None
    last_success_ts: str | None = None
    last_run_id: str | None = None
    last_run_ts: str | None = None
    staleness_minutes: float | None = None
    signal_source: str = "none"
    container_state: dict[str, Any] = field(default_factory=lambda: {
        "supported": False,
        "container": None,
        "running": None,
        "state": None,
        "reason": "unknown",
    })
    telegram_channel: dict[str, Any] = field(default_factory=lambda: {
        "healthy": None,
        "container": None,
        "reason": "unknown",
        "error": None,
    })
    runs_observed: int = 0
    retries_recovered: int = 0

    @classmethod
    def from_dict(cls, bot_id: str, raw: dict[str, Any] | None) -> BotHealth:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in (raw or {}).items() if k in known}
        data["bot_id"] = bot_id
        health = cls(**data)
        health.runs_observed = int(health.runs_observed or 0)
        health.retries_recovered = int(health.retries_recovered or 0)
        return health

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChannelLogSummary:
    """Channel failures counted after the most recent provider start."""

    provider_starts: int = 0
    channel_exits: int = 0
    auth_invalids: int = 0
    error_lines: tuple[str, ...] = ()

    @property
    def has_failure(self) -> bool:
        return self.channel_exits > 0 or self.auth_invalids > 0

    @property
    def has_auth_invalid(self) -> bool:
        return self.auth_invalids > 0


@dataclass
class EventBatch:
    """Unseen event lines drained from ``logs/<bot>/events/*.jsonl``."""

    events: list[dict[str, Any]] = field(default_factory=list)
    violations: list[dict[str, Any]] = field(default_factory=list)
    max_ts: str | None = None


@dataclass
class WorkerScan:
    """Outcome of scanning one worker."""

    health: BotHealth
    findings: list[dict[str, Any]]
    cursor_ts: str | None


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_channel_log(text: str, error_line_limit: int = 5) -> ChannelLogSummary:
    """Classify channel failures in a log tail.

    Only failures after the last ``starting provider`` marker count, so a
    failure that a restart already cleared does not trigger again.
    """
    lines = [ln.strip() for ln in str(text or "").splitlines() if ln.strip()]
    starts = 0
    last_start = -1
    exits: list[tuple[int, str]] = []
    auths: list[tuple[int, str]] = []

    for idx, line in enumerate(lines):
        if _START_MARKER.search(line):
            starts += 1
            last_start = idx
        if _CHANNEL_EXIT.search(line):
            exits.append((idx, line))
        if any(p.search(line) for p in _AUTH_INVALID):
            auths.append((idx, line))

    active_exits = [ln for idx, ln in exits if idx > last_start]
    active_auths = [ln for idx, ln in auths if idx > last_start]
    error_lines: list[str] = []
    for line in active_auths + active_exits:
        if len(error_lines) >= error_line_limit:
            break
        if line not in error_lines:
            error_lines.append(line)

    return ChannelLogSummary(
        provider_starts=starts,
        channel_exits=len(active_exits),
        auth_invalids=len(active_auths),
        error_lines=tuple(error_lines),
    )


def collect_events_since(events_dir: Path, since_ts: str | None) -> EventBatch:
    """Read event lines newer than the *since_ts* cursor.

    Every line carrying a timestamp advances the cursor, valid or not, so
    each line is considered once. Lines that are not JSON, or miss required
    fields, are reported as violations. A line without a usable ``ts``
    cannot be placed against the cursor; it is reported only on the first
    scan of a worker. Only schema-valid events are returned, oldest first.
    """
    batch = EventBatch(max_ts=since_ts)
    if not events_dir.is_dir():
        return batch

    since = parse_ts(since_ts)
    max_at = since
    for path in sorted(events_dir.glob("*.jsonl")):
        for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = raw.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                batch.violations.append({"file_path": str(path), "error": "invalid_json_line"})
                continue
            if not isinstance(event, dict):
                batch.violations.append({"file_path": str(path), "error": "invalid_json_line"})
                continue

            at = parse_ts(event.get("ts"))
            if at is None:
                if since is None:
                    missing = validate_event_schema(event).missing
                    batch.violations.append(
                        _violation(path, event, missing if "ts" in missing else ["ts", *missing])
                    )
                continue
            if since is not None and at <= since:
                continue
            if max_at is None or at > max_at:
                max_at = at
                batch.max_ts = str(event["ts"])

            check = validate_event_schema(event)
            if not check.valid:
                batch.violations.append(_violation(path, event, check.missing))
                continue

            event["__file_path"] = str(path)
            batch.events.append(event)

    batch.events.sort(key=_event_order)
    return batch


def _violation(path: Path, event: dict[str, Any], missing: list[str]) -> dict[str, Any]:
    return {
        "file_path": str(path),
        "run_id": str(event["run_id"]) if event.get("run_id") else None,
        "missing": missing,
    }


def _event_order(event: dict[str, Any]) -> float:
    at = parse_ts(event.get("ts"))
    return at.timestamp() if at is not None else 0.0


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class HealthMonitor:
    """Scan one worker at a time and classify its composite health."""

    def __init__(
        self,
        config: SupervisorConfig,
        runtime: ContainerRuntime,
        policy: HealthPolicy,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.policy = policy
        self.log = get_logger(f"{config.supervisor_id}.health")

    def scan_worker(
        self,
        bot_id: str,
        worker: WorkerSpec,
        registry: IssueRegistry,
        *,
        now: datetime,
        cursor_ts: str | None = None,
        previous: dict[str, Any] | None = None,
    ) -> WorkerScan:
        self.log = get_logger(f"{self.config.supervisor_id}.health", bot_id)
        now_iso = iso(now)
        policy = self.policy
        health = BotHealth.from_dict(bot_id, previous)
        findings: list[dict[str, Any]] = []

        def found(kind: str, issue_id: str) -> None:
            findings.append({"bot_id": bot_id, "type": kind, "issue_id": issue_id})
            self.log.info("Finding %s for %s (%s)", kind, bot_id, issue_id)

        bot_dir = self.config.bot_logs_dir(bot_id)
        latest_path = bot_dir / "latest.json"
        heartbeat_path = bot_dir / "heartbeat.json"
        latest = _read_telemetry(latest_path)
        heartbeat = _read_telemetry(heartbeat_path)

        container = self.runtime.inspect(worker.container)
        health.container_state = asdict(container)
        if not container.supported:
            self.log.warning(
                "Container introspection unsupported for %s: %s", bot_id, container.reason
            )

        latest_age = age_minutes(latest.get("last_event_ts"), now) if latest else None
        heartbeat_age = age_minutes(heartbeat.get("ts"), now) if heartbeat else None
        has_latest = latest_age is not None
        has_heartbeat = heartbeat_age is not None
        no_signal = not (has_latest or has_heartbeat)

        # Seed from latest.json; events below may refine it.
        if latest is not None:
            health.last_run_id = latest.get("run_id") or health.last_run_id
            health.last_run_ts = latest.get("last_event_ts") or health.last_run_ts
            health.last_success_ts = latest.get("last_success_ts") or health.last_success_ts
            status = str(latest.get("status") or health.status or "UNKNOWN").upper()
            health.status = status if status in BOT_STATUSES else "UNKNOWN"

        batch = collect_events_since(bot_dir / "events", cursor_ts)
        self._apply_events(bot_id, batch, health, registry, now_iso, found)

        if latest is None:
            issue = registry.touch_open(
                f"{bot_id}:missing_latest_json", bot_id,
                ts=now_iso, severity="P2", fingerprint="missing_latest_json",
                summary="latest.json is missing at scan time.",
                log_path=str(latest_path),
            )
            found("missing_latest", issue.issue_id)
        else:
            registry.resolve(f"{bot_id}:missing_latest_json", now_iso, "latest.json present again.")

        stall_id = f"{bot_id}:heartbeat_stall"
        if has_heartbeat:
            health.last_seen_ts = heartbeat.get("ts")
            health.staleness_minutes = heartbeat_age
        running = str((heartbeat or {}).get("state") or "").lower() == "running"
        if has_heartbeat and running and heartbeat_age > policy.heartbeat_stall_minutes:
            issue = registry.touch_open(
                stall_id, bot_id,
                ts=now_iso, severity="P2", fingerprint="heartbeat_stall",
                summary=(
                    "Heartbeat stalled while run is marked in progress "
                    f"(>{policy.heartbeat_stall_minutes:g}m)."
                ),
                log_path=str(heartbeat_path),
            )
            found("heartbeat_stall", issue.issue_id)
        else:
            registry.resolve(stall_id, now_iso, "Heartbeat staleness recovered.")

        channel = self._check_channel(bot_id, worker, health, registry, now, found)
        channel_failed = channel.has_failure if channel is not None else None

        fallback = (
            worker.allow_telegram_signal_fallback
            and no_signal
            and channel is not None
            and not channel.has_failure
        )
        effective_no_signal = no_signal and not fallback
        no_signal_id = f"{bot_id}:no_signal"
        if effective_no_signal:
            issue = registry.touch_open(
                no_signal_id, bot_id,
                ts=now_iso, severity="P3", fingerprint="no_signal",
                summary="No telemetry signal (latest.last_event_ts and heartbeat.ts are empty).",
                log_path=str(bot_dir),
            )
            found("no_signal", issue.issue_id)
        else:
            registry.resolve(
                no_signal_id,
                now_iso,
                "Telemetry signal is empty, but Telegram channel is healthy."
                if fallback else "Telemetry signal restored.",
            )

        if batch.violations:
            count = len(batch.violations)
            self.log.warning("%d schema violation(s) in events of %s", count, bot_id)
            issue = registry.touch_open(
                f"{bot_id}:schema_violation", bot_id,
                ts=now_iso,
                severity="P2" if count >= SCHEMA_VIOLATION_P2_COUNT else "P3",
                fingerprint="schema_violation",
                summary=f"Schema validation failed for {count} log line(s).",
                log_path=batch.violations[0]["file_path"],
            )
            found("schema_violation", issue.issue_id)

        if has_latest:
            health.staleness_minutes = latest_age
            health.last_seen_ts = latest.get("last_event_ts")

        down_limit = policy.down_heartbeat_minutes
        stale_hb_down = has_heartbeat and heartbeat_age > down_limit
        stale_latest_down = has_latest and latest_age > down_limit
        telemetry_down = effective_no_signal or stale_hb_down or stale_latest_down
        is_down = telemetry_down and self._corroborated(container, channel_failed)

        down_id = f"{bot_id}:bot_down"
        if is_down:
            reasons: list[str] = []
            if container.running is False:
                reasons.append(f"container={container.state or 'stopped'}")
            if stale_hb_down:
                reasons.append(f"heartbeat_stale>{down_limit:g}m")
            if stale_latest_down:
                reasons.append(f"latest_stale>{down_limit:g}m")
            if effective_no_signal:
                reasons.append("telemetry=no_signal")
            if channel_failed is True:
                reasons.append("telegram=unhealthy")
            issue = registry.touch_open(
                down_id, bot_id,
                ts=now_iso, severity="P1", fingerprint="bot_down",
                summary=f"Bot down confirmed ({', '.join(reasons)}).",
                log_path=(
                    f"docker:{container.container}" if container.container else str(heartbeat_path)
                ),
            )
            found("bot_down", issue.issue_id)
        else:
            registry.resolve(down_id, now_iso, "Composite bot_down condition cleared.")

        if fallback:
            health.signal_source = "telegram_fallback"
        elif has_latest and has_heartbeat:
            health.signal_source = "latest+heartbeat"
        elif has_latest:
            health.signal_source = "latest"
        elif has_heartbeat:
            health.signal_source = "heartbeat"
        else:
            health.signal_source = "none"

        stale = (
            (has_heartbeat and heartbeat_age > policy.stale_warn_minutes)
            or (has_latest and latest_age > policy.stale_warn_minutes)
        )
        if is_down:
            health.status = "DOWN"
        elif effective_no_signal:
            health.status = policy.no_signal_status
        elif stale and health.status in ("OK", "UNKNOWN"):
            health.status = policy.idle_stale_status

        return WorkerScan(health=health, findings=findings, cursor_ts=batch.max_ts or cursor_ts)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _corroborated(self, container: ContainerState, channel_failed: bool | None) -> bool:
        """Whether runtime/channel evidence backs a telemetry DOWN signal."""
        if container.running is False:
            return True
        if container.running is True:
            return (
                self.policy.down_requires_telegram_failure_when_container_running
                and channel_failed is True
            )
        return channel_failed is True

    def _apply_events(
        self,
        bot_id: str,
        batch: EventBatch,
        health: BotHealth,
        registry: IssueRegistry,
        now_iso: str,
        found: Any,
    ) -> None:
        for event in batch.events:
            event_type = str(event.get("event_type") or "").lower()
            status = str(event.get("status") or "").lower()
            if event_type == "retry":
                health.retries_recovered += 1
            if event_type != "end":
                continue

            health.runs_observed += 1
            health.last_run_id = event.get("run_id") or health.last_run_id
            health.last_run_ts = event.get("ts") or health.last_run_ts

            if status == "error":
                issue = registry.touch_open(
                    compute_issue_id(bot_id, event), bot_id,
                    ts=event.get("ts") or now_iso,
                    severity=higher_severity(classify_severity(event), "P2"),
                    fingerprint=build_fingerprint(event),
                    summary=str(event.get("message") or "Run failed with error status."),
                    run_id=event.get("run_id"),
                    log_path=event.get("__file_path"),
                )
                found("run_error", issue.issue_id)
                health.status = "ERROR"
            elif status in ("ok", "warn"):
                ts = event.get("ts") or now_iso
                health.last_success_ts = ts
                health.status = "WARN" if status == "warn" else "OK"
                closed = registry.resolve_for_bot(bot_id, ts, f"Recovered with status={status}.")
                if closed:
                    self.log.info("%s recovered; resolved %d issue(s)", bot_id, len(closed))

    def _check_channel(
        self,
        bot_id: str,
        worker: WorkerSpec,
        health: BotHealth,
        registry: IssueRegistry,
        now: datetime,
        found: Any,
    ) -> ChannelLogSummary | None:
        """Tail the container log and open/resolve channel issues.

        Returns None when the log could not be read.
        """
        since = iso(now - timedelta(minutes=self.config.channel_log_scan_window_minutes))
        logs = self.runtime.tail_logs(
            worker.container, since, self.config.channel_log_scan_tail_lines
        )
        if not logs.supported:
            health.telegram_channel = {
                "healthy": None,
                "container": worker.container or None,
                "reason": logs.reason or "unsupported",
                "error": logs.error,
            }
            return None

        now_iso = iso(now)
        summary = parse_channel_log(logs.text, self.config.channel_log_error_line_limit)
        detail = " | ".join(summary.error_lines[:2])
        health.telegram_channel = {
            "healthy": not summary.has_failure,
            "container": logs.container,
            "since": logs.since,
            "provider_starts": summary.provider_starts,
            "channel_exits": summary.channel_exits,
            "auth_invalids": summary.auth_invalids,
            "last_error": detail or None,
        }

        exited_id = f"{bot_id}:telegram_channel_exited"
        auth_id = f"{bot_id}:telegram_auth_invalid"
        if not summary.has_failure:
            registry.resolve(exited_id, now_iso, "Telegram channel healthy in recent logs.")
            registry.resolve(auth_id, now_iso, "Telegram auth healthy in recent logs.")
            return summary

        if summary.has_auth_invalid:
            issue = registry.touch_open(
                auth_id, bot_id,
                ts=now_iso, severity="P1", fingerprint="telegram_auth_invalid",
                summary=f"Telegram auth invalid detected in {logs.container}. {detail}".strip(),
                log_path=f"docker:{logs.container}",
            )
            found("telegram_auth_invalid", issue.issue_id)
            registry.resolve(
                exited_id, now_iso,
                "Telegram auth failure took precedence; channel-exited issue folded.",
            )
        else:
            issue = registry.touch_open(
                exited_id, bot_id,
                ts=now_iso, severity="P2", fingerprint="telegram_channel_exited",
                summary=f"Telegram channel exited in {logs.container}. {detail}".strip(),
                log_path=f"docker:{logs.container}",
            )
            found("telegram_channel_exited", issue.issue_id)
        health.status = "ERROR"
        return summary


def _read_telemetry(path: Path) -> dict[str, Any] | None:
    data = load_json(path, default=None)
    return data if isinstance(data, dict) else None
