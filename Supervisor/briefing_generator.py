"""Morning and evening briefings.

Briefings are rendered from the persisted state and issue registry, written
to ``ops/reports/<type>_<YYYY-MM-DD>.md`` and optionally handed to the
notifier. A scheduled briefing runs only at its configured minute and at
most once per local calendar day; a forced one ignores both gates.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import Issue, IssueRegistry
from Supervisor.logger import get_logger
from Supervisor.models import OpsConfig
from Supervisor.notifier import Notifier
from Supervisor.rules import date_key, iso, is_scheduled_time, parse_ts
from Supervisor.state_store import StateStore

BRIEFING_TYPES = ("morning", "evening")
MISSED_SCHEDULE_MINUTES = 90

_SCHEDULE_FALLBACK_HOUR = {"morning": 8, "evening": 18}


@dataclass
class BriefingResult:
    type: str
    report_path: str
    delivered: bool

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "report_path": self.report_path, "delivered": self.delivered}


def _status(health: dict[str, Any] | None) -> str:
    return str((health or {}).get("status") or "UNKNOWN").upper()


def _resolved_since(registry: IssueRegistry, marker: dict[str, Any] | None) -> list[Issue]:
    since = parse_ts((marker or {}).get("ts"))
    out = []
    for issue in registry:
        if issue.status != "resolved" or not issue.resolved_at:
            continue
        resolved = parse_ts(issue.resolved_at)
        if since is None or (resolved is not None and resolved > since):
            out.append(issue)
    return out


def render_briefing(
    briefing_type: str,
    now: datetime,
    ops: OpsConfig,
    state: dict[str, Any],
    registry: IssueRegistry,
) -> str:
    """Render a briefing as plain markdown text."""
    tz_name = ops.timezone
    day = date_key(now, tz_name)
    bot_health: dict[str, Any] = state.get("bot_health") or {}
    open_issues = registry.open_issues()
    title = "Morning Briefing" if briefing_type == "morning" else "Evening Briefing"
    lines = [f"{title}: {day} ({tz_name})", ""]

    if briefing_type == "morning":
        marker = (state.get("last_briefing_sent") or {}).get(briefing_type)
        resolved = _resolved_since(registry, marker)

        lines.append("Overall Status:")
        for bot_id, health in bot_health.items():
            lines.append(
                f"- {bot_id}: {_status(health)} (last success {health.get('last_success_ts') or '-'}, "
                f"last run {health.get('last_run_ts') or '-'})"
            )
        lines += ["", "Open Issues:"]
        if not open_issues:
            lines.append("- none")
        for idx, issue in enumerate(open_issues, start=1):
            lines += [
                f"{idx}) [{issue.severity}] {issue.bot_id}: {issue.issue_id}",
                f"   - First seen: {issue.first_seen_ts or '-'}",
                f"   - Last seen: {issue.last_seen_ts or '-'}",
                f"   - Summary: {issue.summary or '-'}",
                f"   - Evidence: runs {', '.join(issue.evidence.run_ids[-3:]) or '-'}; "
                f"logs {', '.join(issue.evidence.log_paths[-2:]) or '-'}",
                "   - Next action: Review runbook and verify dependency health.",
            ]
        lines += ["", "Resolved Since Last Briefing:"]
        if not resolved:
            lines.append("- none")
        for issue in resolved:
            lines.append(f"- {issue.bot_id}: {issue.issue_id} resolved at {issue.resolved_at or '-'}")

        stale = [
            f"{bot_id} stale {round(float(h.get('staleness_minutes') or 0))}m"
            for bot_id, h in bot_health.items()
            if float((h or {}).get("staleness_minutes") or 0) > MISSED_SCHEDULE_MINUTES
        ]
        schema = [i for i in open_issues if "schema_violation" in (i.fingerprint or "")]
        lines += [
            "",
            "Operational Notes:",
            f"- Missed schedules: {', '.join(stale) if stale else 'none'}",
            f"- Schema violations: {len(schema) if schema else 'none'}",
            "",
            "Today's Focus:",
            "- Eliminate recurring fingerprints with highest failure streak.",
            "- Confirm worker heartbeats remain within expected cadence.",
            "- Keep alert noise low by enforcing dedupe and thresholds.",
        ]
        return "\n".join(lines)

    counts = {"P1": 0, "P2": 0, "P3": 0}
    for issue in registry:
        counts[issue.severity] = counts.get(issue.severity, 0) + 1
    runs = sum(int((h or {}).get("runs_observed") or 0) for h in bot_health.values())
    retries = sum(int((h or {}).get("retries_recovered") or 0) for h in bot_health.values())

    lines += [
        "Day Summary:",
        f"- Total runs observed: {runs}",
        f"- Errors: {sum(counts.values())} (P1: {counts['P1']}, P2: {counts['P2']}, P3: {counts['P3']})",
        f"- Retries recovered: {retries}",
        "",
        "Current Health:",
    ]
    for bot_id, health in bot_health.items():
        lines.append(f"- {bot_id}: {_status(health)}")
    lines += ["", "Open Issues Carrying Over:"]
    if not open_issues:
        lines.append("- none")
    for idx, issue in enumerate(open_issues, start=1):
        lines.append(
            f"{idx}) [{issue.severity}] {issue.bot_id}: {issue.issue_id} "
            f"(last update {issue.last_seen_ts or '-'})"
        )
    lines += [
        "",
        "Planned Next Checks:",
        f"- Next automated scan: +{ops.scan_interval_minutes} minutes ({tz_name})",
        f"- Next morning briefing: {ops.briefings.morning_time}",
        "",
        "Quick Check-in:",
        "- Monitoring stayed stable; enable alerting once dry-run output looks right?",
    ]
    return "\n".join(lines)


class BriefingGenerator:
    """Render, persist and optionally deliver briefings."""

    def __init__(
        self,
        config: SupervisorConfig,
        ops: OpsConfig,
        store: StateStore,
        notifier: Notifier,
    ) -> None:
        self.config = config
        self.ops = ops
        self.store = store
        self.notifier = notifier
        self.log = get_logger(f"{config.supervisor_id}.briefing")

    def is_due(self, briefing_type: str, now: datetime, state: dict[str, Any]) -> bool:
        """At the scheduled minute, and not yet generated today."""
        hhmm = (
            self.ops.briefings.morning_time
            if briefing_type == "morning"
            else self.ops.briefings.evening_time
        )
        if not is_scheduled_time(now, self.ops.timezone, hhmm, _SCHEDULE_FALLBACK_HOUR[briefing_type]):
            return False
        marker = (state.get("last_briefing_sent") or {}).get(briefing_type) or {}
        return marker.get("date") != date_key(now, self.ops.timezone)

    def generate(
        self,
        briefing_type: str,
        now: datetime,
        state: dict[str, Any],
        registry: IssueRegistry,
        *,
        send: bool,
        force: bool = False,
    ) -> BriefingResult | None:
        """Generate *briefing_type* if due (or forced); updates the day marker in *state*."""
        if briefing_type not in BRIEFING_TYPES:
            raise ValueError(f"Unknown briefing type: {briefing_type}")
        if not force and not self.is_due(briefing_type, now, state):
            return None

        day = date_key(now, self.ops.timezone)
        content = render_briefing(briefing_type, now, self.ops, state, registry)
        report_path = self.config.reports_dir / f"{briefing_type}_{day}.md"
        self.store.write_report(report_path, content + "\n")

        delivered = False
        if send:
            self.notifier.notify(content, f"ops-briefing-{briefing_type}", now)
            delivered = True

        markers = state.setdefault("last_briefing_sent", {})
        markers[briefing_type] = {
            "date": day,
            "ts": iso(now),
            "report_path": str(report_path),
            "delivered": delivered,
        }
        self.log.info("%s briefing written to %s (delivered=%s)", briefing_type, report_path, delivered)
        return BriefingResult(briefing_type, str(report_path), delivered)
