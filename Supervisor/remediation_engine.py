"""Rate-limited auto-remediation for open issues.

Each open issue is matched against the remediation policy rules in order.
A match enqueues one capability request per configured auto-action onto
the command queue, subject to a per-issue cooldown and attempt cap kept
in ``state.remediation_history``. The engine only requests actions; the
command queue consumer executes them.
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any

from infra import QueueAdapter
from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import Issue, IssueRegistry
from Supervisor.logger import get_logger
from Supervisor.models import WORKER_CONTAINER_TARGET, AutoAction, RemediationPolicy, RemediationRule
from Supervisor.rules import iso, parse_ts
from Supervisor.schema_validator import validate_remediation_request

COMMAND_QUEUE = "outbox"
REQUESTED_BY = "ops-daily-supervisor"
_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class RemediationHistoryEntry:
    """Per-issue rate-limit ledger."""

    attempts: int = 0
    last_attempt_ts: str | None = None
    last_request_ids: list[str] = field(default_factory=list)
    last_status: str = "none"  # queued | cooldown | max_attempts_reached | rearmed_after_recovery | noop
    rearmed_at: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> RemediationHistoryEntry:
        if not isinstance(raw, dict):
            return cls()
        known = {f.name for f in fields(cls)}
        entry = cls(**{k: v for k, v in raw.items() if k in known})
        entry.attempts = int(entry.attempts or 0)
        entry.last_request_ids = list(entry.last_request_ids or [])
        return entry

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def make_request_id(prefix: str = "opsc") -> str:
    """``<prefix>-<epoch ms>-<6 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def build_request(
    action: AutoAction,
    *,
    target: str,
    issue: Issue,
    rule: RemediationRule,
    now: datetime,
) -> dict[str, Any]:
    """Normalised capability request for one auto-action."""
    return {
        "schema_version": "1.0",
        "request_id": make_request_id(),
        "command_kind": "capability",
        "phase": "plan",
        "capability": action.capability,
        "action": action.action,
        "intent_action": f"capability:{action.capability}:{action.action}",
        "risk_tier": action.risk_tier,
        "requires_approval": action.requires_approval,
        "required_flags": list(action.required_flags),
        "requested_by": REQUESTED_BY,
        "telegram_context": None,
        "reason": f"issue={issue.issue_id}; rule={rule.issue_pattern}",
        "payload": {
            "target": target,
            "issue_id": issue.issue_id,
            "bot_id": issue.bot_id,
            "escalation_rule": (rule.escalation_rule or "").strip() or None,
            "reason": f"auto-remediation:{issue.issue_id}",
        },
        "created_at": iso(now),
    }


class RemediationEngine:
    """Evaluate the remediation policy against the issue registry."""

    def __init__(
        self,
        config: SupervisorConfig,
        policy: RemediationPolicy,
        queue: QueueAdapter,
        container_map: dict[str, str] | None = None,
    ) -> None:
        self.config = config
        self.policy = policy
        self.queue = queue
        self.container_map = container_map or {}
        self.log = get_logger(f"{config.supervisor_id}.remediation")

    # ------------------------------------------------------------------
    # Re-arm
    # ------------------------------------------------------------------

    def rearm(
        self,
        history: dict[str, Any],
        registry: IssueRegistry,
        now: datetime,
    ) -> int:
        """Reset ledgers of issues that are no longer open.

        Mutates *history* in place and returns the number of entries reset.
        """
        if not self.policy.defaults.rearm_on_recovery:
            return 0
        changed = 0
        for issue_id, raw in list(history.items()):
            if not isinstance(raw, dict) or registry.is_open(issue_id):
                continue
            entry = RemediationHistoryEntry.from_dict(raw)
            if entry.attempts <= 0 and entry.last_status != "max_attempts_reached":
                continue
            entry.attempts = 0
            entry.last_attempt_ts = None
            entry.last_request_ids = []
            entry.last_status = "rearmed_after_recovery"
            entry.rearmed_at = iso(now)
            history[issue_id] = {**raw, **entry.to_dict()}
            changed += 1
        if changed:
            self.log.info("Re-armed %d remediation ledger(s)", changed)
        return changed

    # ------------------------------------------------------------------
    # Evaluate
    # ------------------------------------------------------------------

    def evaluate(
        self,
        registry: IssueRegistry,
        history: dict[str, Any],
        now: datetime,
    ) -> list[dict[str, Any]]:
        """Enqueue remediation for eligible open issues.

        Mutates *history* in place and returns one outcome per issue that
        matched a rule with actions.
        """
        outcomes: list[dict[str, Any]] = []
        if self.policy.mode == "shadow":
            return outcomes

        for issue in registry.open_issues():
            rule = self.policy.resolve_rule(issue.issue_id)
            if rule is None or not rule.auto_actions:
                continue
            entry = RemediationHistoryEntry.from_dict(history.get(issue.issue_id))
            outcomes.append(self._evaluate_issue(issue, rule, entry, now))
            history[issue.issue_id] = entry.to_dict()
        return outcomes

    def _evaluate_issue(
        self,
        issue: Issue,
        rule: RemediationRule,
        entry: RemediationHistoryEntry,
        now: datetime,
    ) -> dict[str, Any]:
        cooldown = self.policy.cooldown_for(rule)
        max_attempts = self.policy.max_attempts_for(rule)

        last = parse_ts(entry.last_attempt_ts)
        if last is not None and now - last < timedelta(minutes=cooldown):
            entry.last_status = "cooldown"
            return {
                "issue_id": issue.issue_id,
                "status": "skipped",
                "reason": "cooldown",
                "cooldown_minutes": cooldown,
            }
        if max_attempts >= 0 and entry.attempts >= max_attempts:
            entry.last_status = "max_attempts_reached"
            return {
                "issue_id": issue.issue_id,
                "status": "skipped",
                "reason": "max_attempts_reached",
                "attempts": entry.attempts,
                "max_attempts": max_attempts,
            }

        request_ids: list[str] = []
        for action in rule.auto_actions:
            if not action.capability or not action.action:
                continue
            target = action.target.strip()
            if target == WORKER_CONTAINER_TARGET:
                target = self.container_map.get(issue.bot_id, "")
            request = build_request(action, target=target, issue=issue, rule=rule, now=now)
            validate_remediation_request(request)
            self.queue.enqueue(COMMAND_QUEUE, request, item_id=request["request_id"])
            request_ids.append(request["request_id"])
            self.log.info(
                "Queued %s %s for %s (target=%s)",
                action.capability, action.action, issue.issue_id, target or "-",
            )

        status = "queued" if request_ids else "noop"
        entry.attempts += 1
        entry.last_attempt_ts = iso(now)
        entry.last_request_ids = request_ids
        entry.last_status = status
        return {
            "issue_id": issue.issue_id,
            "status": status,
            "request_ids": request_ids,
            "attempts": entry.attempts,
            "cooldown_minutes": cooldown,
            "max_attempts": max_attempts,
        }
