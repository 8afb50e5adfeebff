"""Runtime configuration for the Supervisor.

All paths are relative to the workspace root. Override via environment variables:
    OPS_SUPERVISOR_ID                         : supervisor identifier (default: ops-supervisor)
    OPS_WORKSPACE_ROOT                        : absolute path to the workspace root
    OPS_DAILY_CHANNEL_LOG_SCAN_WINDOW_MINUTES : channel log look-back (default: 20, min 5)
    OPS_DAILY_CHANNEL_LOG_SCAN_TAIL_LINES     : channel log tail size (default: 300, min 50)
    OPS_DAILY_CHANNEL_LOG_ERROR_LINE_LIMIT    : error lines kept per scan (default: 5, min 1)
    OPS_INTROSPECTION_TIMEOUT                 : container CLI timeout in seconds (default: 20)
    OPS_SCAN_LOCK_TIMEOUT                     : scan lock wait in seconds (default: 0)
    OPS_DAILY_SANDBOX_EXPORT_DIRS             : comma-separated sandbox dirs to mirror into
    OPS_DAILY_SEND                            : "1" sends alerts/briefings, anything else does not
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _workspace_root() -> Path:
    """Derive workspace root: 2 levels up from Supervisor/config.py."""
    return Path(__file__).resolve().parent.parent


def _parse_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class SupervisorConfig:
    """Immutable runtime configuration for the supervisor."""

    # Identity
    supervisor_id: str = "ops-supervisor"

    # Workspace root
    workspace_root: Path = field(default_factory=_workspace_root)

    # Channel log scanning
    channel_log_scan_window_minutes: int = 20
    channel_log_scan_tail_lines: int = 300
    channel_log_error_line_limit: int = 5

    # Container introspection
    introspection_timeout_seconds: float = 20.0

    # Single-flight scan lock
    scan_lock_timeout_seconds: float = 0.0

    # Issue evidence (most recent N kept)
    evidence_limit: int = 20

    # Sandbox export override (absolute or workspace-relative)
    sandbox_export_dirs: tuple[str, ...] = ()

    # --- Derived paths (properties) ---

    @property
    def ops_dir(self) -> Path:
        """ops/: everything the supervisor owns."""
        return self.workspace_root / "ops"

    @property
    def logs_dir(self) -> Path:
        """logs/: worker-owned telemetry tree (read-only here)."""
        return self.workspace_root / "logs"

    @property
    def state_dir(self) -> Path:
        """ops/state/"""
        return self.ops_dir / "state"

    @property
    def state_file(self) -> Path:
        """ops/state/state.json: rolling health, cursors, briefing markers."""
        return self.state_dir / "state.json"

    @property
    def issues_file(self) -> Path:
        """ops/state/issues.json: issue registry."""
        return self.state_dir / "issues.json"

    @property
    def lock_file(self) -> Path:
        """ops/state/supervisor.lock"""
        return self.state_dir / "supervisor.lock"

    @property
    def alerts_dir(self) -> Path:
        return self.ops_dir / "alerts"

    @property
    def alert_outbox_dir(self) -> Path:
        """ops/alerts/outbox/: alert records awaiting handoff."""
        return self.alerts_dir / "outbox"

    @property
    def alert_sent_dir(self) -> Path:
        """ops/alerts/sent/: alert records handed to the transport."""
        return self.alerts_dir / "sent"

    @property
    def reports_dir(self) -> Path:
        """ops/reports/: rendered briefings."""
        return self.ops_dir / "reports"

    @property
    def policy_dir(self) -> Path:
        """ops/config/"""
        return self.ops_dir / "config"

    @property
    def ops_config_file(self) -> Path:
        """ops/config/daily_ops.json"""
        return self.policy_dir / "daily_ops.json"

    @property
    def remediation_policy_file(self) -> Path:
        """ops/config/remediation_policy.json"""
        return self.policy_dir / "remediation_policy.json"

    @property
    def commands_dir(self) -> Path:
        """ops/commands/: remediation command queue root."""
        return self.ops_dir / "commands"

    @property
    def bridge_dir(self) -> Path:
        """data/bridge/: notification transport queue root."""
        return self.workspace_root / "data" / "bridge"

    @property
    def sandboxes_dir(self) -> Path:
        """.openclaw-sandboxes/: sandbox copies receiving the snapshot."""
        return self.workspace_root / ".openclaw-sandboxes"

    def bot_logs_dir(self, bot_id: str) -> Path:
        return self.logs_dir / bot_id

    @classmethod
    def from_env(cls) -> SupervisorConfig:
        """Build config from environment variables with sensible defaults."""
        kwargs: dict[str, Any] = {}
        if v := os.environ.get("OPS_SUPERVISOR_ID"):
            kwargs["supervisor_id"] = v
        if v := os.environ.get("OPS_WORKSPACE_ROOT"):
            kwargs["workspace_root"] = Path(v).resolve()
        if v := os.environ.get("OPS_DAILY_CHANNEL_LOG_SCAN_WINDOW_MINUTES"):
            kwargs["channel_log_scan_window_minutes"] = max(5, int(v))
        if v := os.environ.get("OPS_DAILY_CHANNEL_LOG_SCAN_TAIL_LINES"):
            kwargs["channel_log_scan_tail_lines"] = max(50, int(v))
        if v := os.environ.get("OPS_DAILY_CHANNEL_LOG_ERROR_LINE_LIMIT"):
            kwargs["channel_log_error_line_limit"] = max(1, int(v))
        if v := os.environ.get("OPS_INTROSPECTION_TIMEOUT"):
            kwargs["introspection_timeout_seconds"] = float(v)
        if v := os.environ.get("OPS_SCAN_LOCK_TIMEOUT"):
            kwargs["scan_lock_timeout_seconds"] = float(v)
        if v := os.environ.get("OPS_DAILY_SANDBOX_EXPORT_DIRS"):
            kwargs["sandbox_export_dirs"] = _parse_csv(v)
        return cls(**kwargs)


def send_enabled_from_env() -> bool | None:
    """Return the OPS_DAILY_SEND override, or None when unset."""
    raw = os.environ.get("OPS_DAILY_SEND", "").strip()
    if not raw:
        return None
    return raw == "1"
