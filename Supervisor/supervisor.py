"""Supervisor: one full scan, briefing or health report per invocation.

A scan walks every active worker, classifies its composite health and
updates the issue registry, then re-arms and evaluates remediation,
applies the alert policy, renders any briefing that is due, persists the
state tree and mirrors a snapshot into the sandboxes.

Usage:
    python -m Supervisor scan
    python -m Supervisor briefing evening --send
    python -m Supervisor health
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from infra import QueueAdapter
from infra.adapter_factory import get_queue_adapter
from infra.container_runtime import ContainerRuntime, DockerCliRuntime
from Supervisor.alert_dispatcher import AlertDispatcher
from Supervisor.briefing_generator import BRIEFING_TYPES, BriefingGenerator
from Supervisor.config import SupervisorConfig, send_enabled_from_env
from Supervisor.exceptions import StateStoreError
from Supervisor.health_monitor import HealthMonitor
from Supervisor.issue_registry import IssueRegistry
from Supervisor.lock_manager import ScanLock
from Supervisor.logger import get_logger
from Supervisor.models import OpsConfig, RemediationPolicy, load_ops_config, load_remediation_policy
from Supervisor.notifier import Notifier
from Supervisor.remediation_engine import RemediationEngine
from Supervisor.rules import iso
from Supervisor.sandbox_exporter import SandboxExporter, build_leader_snapshot
from Supervisor.state_store import StateStore


def resolve_send(flag: bool | None, config_default: bool) -> bool:
    """CLI flag wins, then ``OPS_DAILY_SEND``, then the config document."""
    if flag is not None:
        return flag
    env = send_enabled_from_env()
    if env is not None:
        return env
    return bool(config_default)


class Supervisor:
    """Compose health monitor, issue registry, remediation, alerts and briefings."""

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        *,
        runtime: ContainerRuntime | None = None,
        command_queue: QueueAdapter | None = None,
        bridge_queue: QueueAdapter | None = None,
        ops_config_path: Path | None = None,
        remediation_config_path: Path | None = None,
    ) -> None:
        self.config = config or SupervisorConfig.from_env()
        self.log = get_logger(self.config.supervisor_id)
        self.store = StateStore(self.config)
        self.runtime = runtime or DockerCliRuntime(
            timeout=self.config.introspection_timeout_seconds
        )
        self.ops_config_path = ops_config_path or self.config.ops_config_file
        self.remediation_config_path = (
            remediation_config_path or self.config.remediation_policy_file
        )
        self._command_queue = command_queue
        self._bridge_queue = bridge_queue

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def command_queue(self) -> QueueAdapter:
        if self._command_queue is None:
            self._command_queue = get_queue_adapter(
                base_dir=self.config.commands_dir, queue_prefix="ops:commands"
            )
        return self._command_queue

    @property
    def bridge_queue(self) -> QueueAdapter:
        if self._bridge_queue is None:
            self._bridge_queue = get_queue_adapter(
                base_dir=self.config.bridge_dir, queue_prefix="ops:bridge"
            )
        return self._bridge_queue

    def load_ops(self) -> OpsConfig:
        return load_ops_config(self.ops_config_path)

    def load_policy(self) -> RemediationPolicy:
        return load_remediation_policy(self.remediation_config_path)

    def _lock(self) -> ScanLock:
        return ScanLock(
            self.config.lock_file,
            timeout=self.config.scan_lock_timeout_seconds,
            owner=self.config.supervisor_id,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run_scan(self, now: datetime | None = None, send: bool | None = None) -> dict[str, Any]:
        """Run one full scan under the single-flight lock."""
        now = now or datetime.now(timezone.utc)
        with self._lock():
            try:
                return self._scan(now, send)
            except StateStoreError as exc:
                self.log.error("Scan aborted, state not persisted: %s", exc)
                raise

    def run_briefing(
        self, briefing_type: str, now: datetime | None = None, send: bool | None = None
    ) -> dict[str, Any]:
        """Generate *briefing_type* now, ignoring schedule and day marker."""
        if briefing_type not in BRIEFING_TYPES:
            raise ValueError(f"Unknown briefing type: {briefing_type}")
        now = now or datetime.now(timezone.utc)
        with self._lock():
            ops = self.load_ops()
            state = self.store.read_state()
            registry = IssueRegistry.from_document(
                self.store.read_issues(), self.config.evidence_limit
            )
            generator = BriefingGenerator(
                self.config, ops, self.store, Notifier(self.bridge_queue)
            )
            result = generator.generate(
                briefing_type,
                now,
                state,
                registry,
                send=resolve_send(send, ops.briefings.send),
                force=True,
            )
            state["updated_at"] = iso(now)
            self.store.write_state(state)
        return {
            "ok": True,
            "type": briefing_type,
            "result": result.to_dict() if result else None,
        }

    def run_health(self) -> dict[str, Any]:
        """Read-only summary of the persisted state. Takes no lock."""
        ops = self.load_ops()
        policy = self.load_policy()
        state = self.store.read_state()
        registry = IssueRegistry.from_document(self.store.read_issues())
        open_issues = registry.open_issues()
        return {
            "ok": True,
            "timezone": ops.timezone,
            "updated_at": state.get("updated_at"),
            "active_bots": ops.active_bot_ids(),
            "open_issue_count": len(open_issues),
            "open_issues": [
                {
                    "issue_id": i.issue_id,
                    "bot_id": i.bot_id,
                    "severity": i.severity,
                    "consecutive_failures": i.consecutive_failures,
                    "last_seen_ts": i.last_seen_ts,
                }
                for i in open_issues
            ],
            "remediation_mode": policy.mode,
            "remediation_history_count": len(state.get("remediation_history") or {}),
            "state_path": str(self.config.state_file),
            "issues_path": str(self.config.issues_file),
        }

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def _scan(self, now: datetime, send: bool | None) -> dict[str, Any]:
        now_iso = iso(now)
        ops = self.load_ops()
        policy = self.load_policy()
        state = self.store.read_state()
        registry = IssueRegistry.from_document(
            self.store.read_issues(), self.config.evidence_limit
        )
        send_enabled = resolve_send(send, ops.alerting.enabled)
        self.log.info(
            "Scan started at %s (send=%s, mode=%s)", now_iso, send_enabled, policy.mode
        )

        cursors: dict[str, Any] = state.setdefault("scan_cursor_ts_by_bot", {})
        bot_health: dict[str, Any] = state.setdefault("bot_health", {})
        monitor = HealthMonitor(self.config, self.runtime, ops.health_policy)
        findings: list[dict[str, Any]] = []
        for bot_id, worker in ops.active_workers():
            result = monitor.scan_worker(
                bot_id,
                worker,
                registry,
                now=now,
                cursor_ts=cursors.get(bot_id),
                previous=bot_health.get(bot_id),
            )
            if result.cursor_ts:
                cursors[bot_id] = result.cursor_ts
            bot_health[bot_id] = result.health.to_dict()
            findings.extend(result.findings)

        history = state.get("remediation_history")
        if not isinstance(history, dict):
            history = state["remediation_history"] = {}
        engine = RemediationEngine(
            self.config, policy, self.command_queue, ops.container_map()
        )
        rearmed = engine.rearm(history, registry, now)
        remediations = engine.evaluate(registry, history, now)

        notifier = Notifier(self.bridge_queue)
        dispatcher = AlertDispatcher(self.config, self.store, notifier, ops.alert_policy())
        alert_decisions = dispatcher.dispatch(registry, now, send_enabled)

        generator = BriefingGenerator(self.config, ops, self.store, notifier)
        briefings = []
        for briefing_type in BRIEFING_TYPES:
            result = generator.generate(
                briefing_type,
                now,
                state,
                registry,
                send=send_enabled and ops.briefings.send,
            )
            if result is not None:
                briefings.append(result.to_dict())

        state["updated_at"] = now_iso
        state["timezone"] = ops.timezone
        issues_doc = registry.to_document()
        issues_doc["updated_at"] = now_iso
        self.store.write_state(state)
        self.store.write_issues(issues_doc)

        snapshot = build_leader_snapshot(
            now_iso=now_iso,
            ops=ops,
            state=state,
            registry=registry,
            findings=findings,
            remediations=remediations,
            rearmed_count=rearmed,
        )
        sandbox_export = SandboxExporter(self.config, self.store).export(ops, snapshot)

        self.log.info(
            "Scan finished: %d finding(s), %d remediation outcome(s), %d open issue(s)",
            len(findings),
            len(remediations),
            len(registry.open_issues()),
        )
        return {
            "ok": True,
            "now": now_iso,
            "send_enabled": send_enabled,
            "scanned_bots": ops.active_bot_ids(),
            "findings": findings,
            "remediations": remediations,
            "rearmed_remediation_count": rearmed,
            "remediation_mode": policy.mode,
            "alert_decisions": alert_decisions,
            "briefings": briefings,
            "sandbox_export": sandbox_export,
            "state_path": str(self.config.state_file),
            "issues_path": str(self.config.issues_file),
        }
