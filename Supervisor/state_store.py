"""Persistent state for the Supervisor.

Provides safe JSON read/write with atomic operations to prevent file
corruption on crashes. Owns four artefact families under ``ops/``:

- ``state/state.json``   rolling bot health, scan cursors, briefing markers
- ``state/issues.json``  the issue registry
- ``alerts/outbox|sent`` alert records before and after transport handoff
- ``reports/``           rendered briefings

All write operations use a write-to-temp + atomic-replace pattern and pass
through a guard that refuses any target inside the worker-owned logs tree.
"""
from __future__ import annotations

import copy
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from Supervisor.config import SupervisorConfig
from Supervisor.exceptions import LogsWriteBlockedError, StateStoreError
from Supervisor.logger import get_logger

SCHEMA_VERSION = "1.0"

DEFAULT_STATE: dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,
    "updated_at": None,
    "timezone": "Asia/Tokyo",
    "scan_cursor_ts_by_bot": {},
    "bot_health": {},
    "remediation_history": {},
    "last_briefing_sent": {
        "morning": None,
        "evening": None,
    },
}

DEFAULT_ISSUES: dict[str, Any] = {
    "schema_version": SCHEMA_VERSION,
    "updated_at": None,
    "issues": {},
}

_log = get_logger("state_store")


def merge_over_defaults(defaults: Any, loaded: Any) -> Any:
    """Deep-merge *loaded* over a copy of *defaults*.

    Nested mappings merge key by key; any other value in *loaded* replaces
    the default. Neither argument is mutated.
    """
    out = copy.deepcopy(defaults)
    if not isinstance(loaded, dict) or not isinstance(out, dict):
        return out
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = merge_over_defaults(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_json(path: Path, default: Any = None) -> Any:
    """Read and parse a JSON file.

    Returns *default* if the file does not exist or cannot be parsed.
    """
    if not path.exists():
        return default

    try:
        raw = path.read_text(encoding="utf-8")
        return json.loads(raw)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        _log.warning("Failed to load %s: %s; returning default", path, exc)
        return default


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* atomically using a temp-file + replace pattern.

    The temp file is created next to the target, flushed and fsynced, then
    renamed over it, so *path* always holds either the old or the new
    content.

    Raises StateStoreError on failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = -1
    tmp_path = ""
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.stem}_",
            suffix=".tmp",
        )
        os.write(fd, content.encode("utf-8"))
        os.fsync(fd)
        os.close(fd)
        fd = -1

        Path(tmp_path).replace(path)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if tmp_path and Path(tmp_path).exists():
            Path(tmp_path).unlink(missing_ok=True)
        raise StateStoreError(f"Atomic write to {path} failed: {exc}") from exc


def atomic_write(path: Path, data: Any) -> None:
    """Serialise *data* as indented JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def _sanitize_token(value: Any) -> str:
    token = re.sub(r"[^a-zA-Z0-9._-]+", "_", str(value or ""))
    return token.strip("_") or "unknown"


def alert_file_name(alert: dict[str, Any]) -> str:
    """``<created_at>_<issue_id>.json`` with filesystem-safe tokens."""
    ts = _sanitize_token(str(alert.get("created_at") or "").replace(":", "-"))
    issue = _sanitize_token(alert.get("issue_id") or "issue")
    return f"{ts}_{issue}.json"


class StateStore:
    """Durable supervisor state rooted at ``config.ops_dir``."""

    def __init__(self, config: SupervisorConfig) -> None:
        self.config = config
        self.log = get_logger(f"{config.supervisor_id}.state_store")

    # ------------------------------------------------------------------
    # Write boundary
    # ------------------------------------------------------------------

    def assert_not_logs_write(self, path: Path) -> Path:
        """Refuse any write whose resolved path is inside the logs tree."""
        target = Path(path).resolve()
        logs_root = self.config.logs_dir.resolve()
        if target == logs_root or logs_root in target.parents:
            raise LogsWriteBlockedError(str(target))
        return target

    def write_json(self, path: Path, data: Any) -> None:
        self.assert_not_logs_write(path)
        atomic_write(path, data)

    def write_text(self, path: Path, content: str) -> None:
        self.assert_not_logs_write(path)
        atomic_write_text(path, content)

    def ensure_layout(self) -> None:
        """Create the ops tree and seed default documents."""
        for d in (
            self.config.state_dir,
            self.config.alert_outbox_dir,
            self.config.alert_sent_dir,
            self.config.reports_dir,
            self.config.policy_dir,
        ):
            self.assert_not_logs_write(d)
            d.mkdir(parents=True, exist_ok=True)
        if not self.config.state_file.exists():
            self.write_json(self.config.state_file, copy.deepcopy(DEFAULT_STATE))
        if not self.config.issues_file.exists():
            self.write_json(self.config.issues_file, copy.deepcopy(DEFAULT_ISSUES))

    # ------------------------------------------------------------------
    # State & issues
    # ------------------------------------------------------------------

    def read_state(self) -> dict[str, Any]:
        self.ensure_layout()
        loaded = load_json(self.config.state_file, default={})
        return merge_over_defaults(DEFAULT_STATE, loaded)

    def write_state(self, state: dict[str, Any]) -> dict[str, Any]:
        self.ensure_layout()
        payload = merge_over_defaults(DEFAULT_STATE, state)
        self.write_json(self.config.state_file, payload)
        return payload

    def read_issues(self) -> dict[str, Any]:
        self.ensure_layout()
        loaded = load_json(self.config.issues_file, default={})
        return merge_over_defaults(DEFAULT_ISSUES, loaded)

    def write_issues(self, issues_doc: dict[str, Any]) -> dict[str, Any]:
        self.ensure_layout()
        payload = merge_over_defaults(DEFAULT_ISSUES, issues_doc)
        self.write_json(self.config.issues_file, payload)
        return payload

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def write_alert_outbox(self, alert: dict[str, Any]) -> Path:
        """Persist an alert record into the outbox and return its path."""
        self.ensure_layout()
        path = self.config.alert_outbox_dir / alert_file_name(alert)
        self.write_json(path, alert)
        return path

    def mark_alert_sent(self, outbox_path: Path) -> Path:
        """Move an outbox record into ``sent/`` once handed to the transport."""
        self.ensure_layout()
        source = Path(outbox_path).resolve()
        destination = self.config.alert_sent_dir / source.name
        self.assert_not_logs_write(destination)
        try:
            source.replace(destination)
        except OSError as exc:
            raise StateStoreError(
                f"Cannot move alert {source} to {destination}: {exc}"
            ) from exc
        return destination

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def write_report(self, report_path: Path, content: str) -> Path:
        self.ensure_layout()
        self.write_text(report_path, content)
        self.log.info("Report written to %s", report_path)
        return report_path
