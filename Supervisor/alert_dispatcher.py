"""Alert decisions and alert records for open issues.

Every open issue goes through :func:`Supervisor.rules.should_alert_now`.
A send decision always produces an alert record in the outbox; when sending
is enabled the message is handed to the notifier and the record moves to
``sent/``, otherwise it stays in the outbox marked ``send_disabled``.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import Issue, IssueRegistry
from Supervisor.logger import get_logger
from Supervisor.notifier import Notifier
from Supervisor.rules import AlertDecision, AlertPolicy, iso, should_alert_now
from Supervisor.schema_validator import validate_alert_record
from Supervisor.state_store import StateStore


@dataclass
class AlertDelivery:
    record: dict[str, Any]
    outbox_path: Path
    sent_path: Path | None = None
    delivered: bool = False


def build_alert_message(issue: Issue, now_iso: str, tz_name: str) -> str:
    """Markdown incident message for *issue*."""
    evidence = issue.evidence
    log_lines = "\n".join(f"  - {p}" for p in evidence.log_paths[-2:])
    run_id = evidence.run_ids[-1] if evidence.run_ids else "-"
    return "\n".join([
        f"[{issue.severity}] Incident: {issue.bot_id} / {issue.issue_id}",
        "",
        "Impact:",
        f"- {issue.summary or 'Operational degradation detected.'}",
        "",
        "Evidence:",
        f"- First seen: {issue.first_seen_ts or '-'}",
        f"- Last seen: {issue.last_seen_ts or '-'}",
        f"- Run ID: {run_id}",
        f"- Error fingerprint: {issue.fingerprint or '-'}",
        "- Log paths:",
        log_lines or "  - (none)",
        "",
        "Likely cause (log-based):",
        f"- {issue.summary or 'Investigating based on recent error fingerprint and component.'}",
        "",
        "Immediate mitigation checklist:",
        "1) Verify upstream/service dependency health and recent config changes.",
        "2) Trigger one controlled rerun and compare run_id/evidence delta.",
        "3) If failure repeats, escalate with runbook and keep issue open.",
        "",
        "Next update:",
        f"- Re-check at the next scheduled scan. ({tz_name}, generated {now_iso})",
    ])


class AlertDispatcher:
    """Apply the alert policy to every open issue."""

    def __init__(
        self,
        config: SupervisorConfig,
        store: StateStore,
        notifier: Notifier,
        policy: AlertPolicy,
    ) -> None:
        self.config = config
        self.store = store
        self.notifier = notifier
        self.policy = policy
        self.log = get_logger(f"{config.supervisor_id}.alerts")

    def dispatch(
        self, registry: IssueRegistry, now: datetime, send_enabled: bool
    ) -> list[dict[str, Any]]:
        """Decide, record and (optionally) send alerts; returns decisions."""
        now_iso = iso(now)
        decisions: list[dict[str, Any]] = []
        for issue in registry.open_issues():
            decision = should_alert_now(issue, self.policy, now)
            if decision.send:
                delivery = self.write_alert(issue, decision, now, send_enabled)
                issue.last_alert_ts = now_iso
                decisions.append({
                    "issue_id": issue.issue_id,
                    "sent": delivery.delivered,
                    "outbox": str(delivery.outbox_path),
                    "sent_path": str(delivery.sent_path) if delivery.sent_path else None,
                    "decision_rule": decision.decision_rule,
                })
                continue
            if decision.reason == "quiet_hours":
                issue.quiet_hours_suppressed_count += 1
            decisions.append({
                "issue_id": issue.issue_id,
                "sent": False,
                "reason": decision.reason,
                "decision_rule": decision.decision_rule,
            })
        return decisions

    def write_alert(
        self,
        issue: Issue,
        decision: AlertDecision,
        now: datetime,
        send_enabled: bool,
    ) -> AlertDelivery:
        now_iso = iso(now)
        message = build_alert_message(issue, now_iso, self.policy.timezone)
        record: dict[str, Any] = {
            "alert_id": f"alert_{uuid.uuid4()}",
            "issue_id": issue.issue_id,
            "severity": issue.severity,
            "created_at": now_iso,
            "suppressed": not send_enabled,
            "suppression_reason": None if send_enabled else "send_disabled",
            "message_markdown": message,
            "evidence": {
                "run_ids": list(issue.evidence.run_ids),
                "log_paths": list(issue.evidence.log_paths),
            },
            "decision_rule": decision.decision_rule,
        }
        validate_alert_record(record)
        outbox_path = self.store.write_alert_outbox(record)
        delivery = AlertDelivery(record=record, outbox_path=outbox_path)
        if not send_enabled:
            self.log.info("Alert for %s recorded (send disabled)", issue.issue_id)
            return delivery

        self.notifier.notify(message, "ops-alert", now)
        delivery.sent_path = self.store.mark_alert_sent(outbox_path)
        delivery.delivered = True
        self.log.info("Alert for %s sent (%s)", issue.issue_id, decision.decision_rule)
        return delivery
