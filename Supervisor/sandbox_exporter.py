"""Read-only visibility export into sandbox workspace copies.

After a scan, each sandbox directory receives copies of the supervisor
state documents and each active bot's telemetry, plus a compact
``leader_snapshot_latest.json``. Sources are only read; the live logs tree
is never written.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from Supervisor.config import SupervisorConfig
from Supervisor.health_monitor import BotHealth
from Supervisor.issue_registry import IssueRegistry
from Supervisor.logger import get_logger
from Supervisor.models import OpsConfig
from Supervisor.rules import parse_ts
from Supervisor.state_store import StateStore, load_json

SNAPSHOT_OPEN_ISSUE_LIMIT = 50
SNAPSHOT_TAIL = 100
_SANDBOX_NAME = re.compile(r"^agent-main(?:-|$)")


def build_leader_snapshot(
    *,
    now_iso: str,
    ops: OpsConfig,
    state: dict[str, Any],
    registry: IssueRegistry,
    findings: list[dict[str, Any]],
    remediations: list[dict[str, Any]],
    rearmed_count: int = 0,
) -> dict[str, Any]:
    active = ops.active_bot_ids()
    stored = state.get("bot_health") or {}
    bot_health = {b: BotHealth.from_dict(b, stored.get(b)).to_dict() for b in active}

    def seen(item: dict[str, Any]) -> float:
        at = parse_ts(item["last_seen_ts"])
        return at.timestamp() if at else 0.0

    all_open = registry.open_issues()
    open_issues = sorted(
        (
            {
                "issue_id": i.issue_id,
                "bot_id": i.bot_id,
                "severity": i.severity,
                "summary": i.summary or "",
                "consecutive_failures": i.consecutive_failures,
                "last_seen_ts": i.last_seen_ts,
                "first_seen_ts": i.first_seen_ts,
            }
            for i in all_open
        ),
        key=seen,
        reverse=True,
    )[:SNAPSHOT_OPEN_ISSUE_LIMIT]

    return {
        "schema_version": "1.0",
        "generated_at": now_iso,
        "timezone": ops.timezone,
        "active_bots": active,
        "bot_health": bot_health,
        "open_issue_count": len(all_open),
        "open_issues": open_issues,
        "latest_findings": findings[-SNAPSHOT_TAIL:],
        "latest_remediations": remediations[-SNAPSHOT_TAIL:],
        "rearmed_remediation_count": rearmed_count,
    }


class SandboxExporter:
    """Mirror a read-only snapshot into every sandbox directory."""

    def __init__(self, config: SupervisorConfig, store: StateStore) -> None:
        self.config = config
        self.store = store
        self.log = get_logger(f"{config.supervisor_id}.sandbox")

    def sandbox_dirs(self) -> list[Path]:
        """Explicit export dirs when configured, else ``.openclaw-sandboxes/agent-main*``."""
        if self.config.sandbox_export_dirs:
            dirs = []
            for item in self.config.sandbox_export_dirs:
                p = Path(item)
                p = p if p.is_absolute() else self.config.workspace_root / p
                if p.is_dir():
                    dirs.append(p)
            return dirs
        root = self.config.sandboxes_dir
        if not root.is_dir():
            return []
        return sorted(
            p for p in root.iterdir() if p.is_dir() and _SANDBOX_NAME.match(p.name)
        )

    def export(self, ops: OpsConfig, snapshot: dict[str, Any]) -> dict[str, Any]:
        sandboxes = self.sandbox_dirs()
        if not sandboxes:
            return {
                "exported": False,
                "reason": "no_sandbox_dirs",
                "sandbox_count": 0,
                "copied_files": 0,
            }

        root = self.config.workspace_root
        rel_paths = [
            self.config.state_file.relative_to(root),
            self.config.issues_file.relative_to(root),
        ]
        for bot_id in ops.active_bot_ids():
            bot_dir = self.config.bot_logs_dir(bot_id).relative_to(root)
            rel_paths += [bot_dir / "latest.json", bot_dir / "heartbeat.json"]

        per_sandbox = []
        total = 0
        for sandbox in sandboxes:
            detail: dict[str, Any] = {
                "sandbox_dir": str(sandbox),
                "copied": 0,
                "missing_sources": [],
                "invalid_sources": [],
            }
            for rel in rel_paths:
                source = root / rel
                if not source.exists():
                    detail["missing_sources"].append(str(rel))
                    continue
                data = load_json(source, default=None)
                if not isinstance(data, dict):
                    detail["invalid_sources"].append(str(rel))
                    continue
                self.store.write_json(sandbox / rel, data)
                detail["copied"] += 1

            snapshot_path = sandbox / "ops" / "state" / "leader_snapshot_latest.json"
            self.store.write_json(snapshot_path, snapshot)
            detail["copied"] += 1
            total += detail["copied"]
            per_sandbox.append(detail)

        self.log.info("Exported snapshot to %d sandbox dir(s)", len(sandboxes))
        return {
            "exported": True,
            "sandbox_count": len(sandboxes),
            "copied_files": total,
            "per_sandbox": per_sandbox,
        }
