"""Pydantic models for the Supervisor policy documents.

Two documents drive a scan: the ops config (timezone, alerting, briefings,
health policy, workers) and the remediation policy (mode, defaults, rules).
Both are read as JSON, merged over the hard-coded defaults below, then
validated here so partial overrides are always safe.
"""

from __future__ import annotations

import copy
import math
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from Supervisor.exceptions import ConfigError
from Supervisor.rules import AlertPolicy
from Supervisor.state_store import load_json, merge_over_defaults

REMEDIATION_MODES: tuple[str, ...] = ("shadow", "low_risk_auto", "full_guardrailed")
WORKER_CONTAINER_TARGET = "worker_container"

DEFAULT_OPS_CONFIG: dict[str, Any] = {
    "schema_version": "1.0",
    "timezone": "Asia/Tokyo",
    "scan_interval_minutes": 30,
    "alerting": {
        "enabled": False,
        "transport": "bridge_queue",
        "p2_consecutive_failures_threshold": 3,
        "cooldown_hours": 2,
        "quiet_hours": {"start": "23:00", "end": "07:00"},
    },
    "briefings": {
        "morning_time": "08:30",
        "evening_time": "18:30",
        "send": False,
    },
    "health_policy": {
        "heartbeat_stall_minutes": 15,
        "stale_warn_minutes": 45,
        "down_heartbeat_minutes": 360,
        "down_requires_telegram_failure_when_container_running": True,
        "no_signal_status": "UNKNOWN",
        "idle_stale_status": "WARN",
    },
    "workers": {
        "bot-dev": {"active": True, "logical_bot_id": "bot-a", "profile": "dev", "container": "moltbot-dev"},
        "bot-anki": {"active": True, "logical_bot_id": "bot-b", "profile": "anki", "container": "moltbot-anki"},
        "bot-research": {"active": True, "logical_bot_id": "bot-c", "profile": "research", "container": "moltbot-research"},
        "bot-d": {"active": False, "logical_bot_id": "bot-d", "profile": "reserved", "container": ""},
    },
}

_RESTART_WORKER = {"capability": "bot", "action": "restart", "target": WORKER_CONTAINER_TARGET}

DEFAULT_REMEDIATION_POLICY: dict[str, Any] = {
    "schema_version": "1.0",
    "mode": "low_risk_auto",
    "defaults": {
        "cooldown_minutes": 30,
        "max_attempts": 1,
        "rearm_on_recovery": True,
    },
    "rules": [
        {
            "issue_pattern": ":heartbeat_stall$",
            "enabled": True,
            "auto_actions": [_RESTART_WORKER],
            "cooldown_minutes": 30,
            "max_attempts": 1,
            "escalation_rule": "alert_if_repeated",
        },
        {
            "issue_pattern": ":bot_down$",
            "enabled": True,
            "auto_actions": [_RESTART_WORKER],
            "cooldown_minutes": 15,
            "max_attempts": 2,
            "escalation_rule": "immediate_alert",
        },
        {
            "issue_pattern": ":telegram_auth_invalid$",
            "enabled": True,
            "auto_actions": [
                _RESTART_WORKER,
                {"capability": "bot", "action": "status", "target": WORKER_CONTAINER_TARGET},
            ],
            "cooldown_minutes": 15,
            "max_attempts": 2,
            "escalation_rule": "immediate_alert",
        },
        {
            "issue_pattern": ":telegram_channel_exited$",
            "enabled": True,
            "auto_actions": [_RESTART_WORKER],
            "cooldown_minutes": 20,
            "max_attempts": 2,
            "escalation_rule": "alert_if_repeated",
        },
        {
            "issue_pattern": ":schema_violation$",
            "enabled": True,
            "auto_actions": [],
            "cooldown_minutes": 60,
            "max_attempts": 0,
            "escalation_rule": "alert_only",
        },
    ],
}


def _finite_or(value: Any, fallback: float) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    return n if math.isfinite(n) else fallback


# ---------------------------------------------------------------------------
# Ops config
# ---------------------------------------------------------------------------


class QuietHours(BaseModel):
    """Local ``[start, end)`` window; may wrap midnight."""

    start: str = "23:00"
    end: str = "07:00"


class AlertingSettings(BaseModel):
    enabled: bool = False
    transport: str = "bridge_queue"
    p2_consecutive_failures_threshold: int = 3
    cooldown_hours: float = 2.0
    quiet_hours: QuietHours = Field(default_factory=QuietHours)


class BriefingSettings(BaseModel):
    morning_time: str = "08:30"
    evening_time: str = "18:30"
    send: bool = False


_HEALTH_FLOORS: dict[str, float] = {
    "heartbeat_stall_minutes": 5,
    "stale_warn_minutes": 15,
    "down_heartbeat_minutes": 60,
}


class HealthPolicy(BaseModel):
    """Thresholds for composite health classification."""

    heartbeat_stall_minutes: float = 15
    stale_warn_minutes: float = 45
    down_heartbeat_minutes: float = 360
    down_requires_telegram_failure_when_container_running: bool = True
    no_signal_status: str = "UNKNOWN"
    idle_stale_status: str = "WARN"

    @field_validator(*_HEALTH_FLOORS, mode="before")
    @classmethod
    def _clamp_minutes(cls, value: Any, info: Any) -> float:
        default = float(cls.model_fields[info.field_name].default)
        return max(_HEALTH_FLOORS[info.field_name], _finite_or(value, default))

    @field_validator("down_requires_telegram_failure_when_container_running", mode="before")
    @classmethod
    def _default_when_null(cls, value: Any) -> bool:
        return True if value is None else bool(value)

    @field_validator("no_signal_status", mode="before")
    @classmethod
    def _no_signal_enum(cls, value: Any) -> str:
        key = str(value or "").strip().upper()
        return key if key in ("UNKNOWN", "WARN", "ERROR") else "UNKNOWN"

    @field_validator("idle_stale_status", mode="before")
    @classmethod
    def _idle_stale_enum(cls, value: Any) -> str:
        key = str(value or "").strip().upper()
        return key if key in ("UNKNOWN", "WARN") else "WARN"


class WorkerSpec(BaseModel):
    """Per-bot activation and container metadata."""

    model_config = ConfigDict(extra="allow")

    active: bool = False
    container: str = ""
    logical_bot_id: str | None = None
    profile: str | None = None
    allow_telegram_signal_fallback: bool = False

    @field_validator("container", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()


class OpsConfig(BaseModel):
    """Main ops config document."""

    model_config = ConfigDict(extra="allow")

    schema_version: str = "1.0"
    timezone: str = "Asia/Tokyo"
    scan_interval_minutes: int = 30
    alerting: AlertingSettings = Field(default_factory=AlertingSettings)
    briefings: BriefingSettings = Field(default_factory=BriefingSettings)
    health_policy: HealthPolicy = Field(default_factory=HealthPolicy)
    workers: dict[str, WorkerSpec] = Field(default_factory=dict)

    def active_workers(self) -> list[tuple[str, WorkerSpec]]:
        return [(bot_id, w) for bot_id, w in self.workers.items() if w.active]

    def active_bot_ids(self) -> list[str]:
        return [bot_id for bot_id, _ in self.active_workers()]

    def container_map(self) -> dict[str, str]:
        """Active bot id -> container name, for bots that have one."""
        return {bot_id: w.container for bot_id, w in self.active_workers() if w.container}

    def alert_policy(self) -> AlertPolicy:
        a = self.alerting
        return AlertPolicy(
            timezone=self.timezone,
            quiet_start=a.quiet_hours.start,
            quiet_end=a.quiet_hours.end,
            cooldown_hours=a.cooldown_hours,
            p2_threshold=a.p2_consecutive_failures_threshold,
        )


# ---------------------------------------------------------------------------
# Remediation policy
# ---------------------------------------------------------------------------


class AutoAction(BaseModel):
    """One capability/action/target triple to request."""

    capability: str = ""
    action: str = ""
    target: str = ""
    risk_tier: str = "MEDIUM"
    requires_approval: bool = False
    required_flags: list[str] = Field(default_factory=list)

    @field_validator("capability", "action", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("risk_tier", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> str:
        return str(value or "MEDIUM").strip().upper() or "MEDIUM"


class RemediationRule(BaseModel):
    """Declarative rule matched against issue ids in list order."""

    issue_pattern: str = ""
    enabled: bool = True
    auto_actions: list[AutoAction] = Field(default_factory=list)
    cooldown_minutes: float | None = None
    max_attempts: int | None = None
    escalation_rule: str | None = None

    def compiled(self) -> re.Pattern[str] | None:
        raw = self.issue_pattern.strip()
        if not raw:
            return None
        try:
            return re.compile(raw)
        except re.error:
            return re.compile(re.escape(raw))

    def matches(self, issue_id: str) -> bool:
        pattern = self.compiled()
        return bool(pattern and pattern.search(issue_id))


class RemediationDefaults(BaseModel):
    cooldown_minutes: float = 30
    max_attempts: int = 1
    rearm_on_recovery: bool = True


class RemediationPolicy(BaseModel):
    """Remediation policy document."""

    model_config = ConfigDict(extra="allow")

    schema_version: str = "1.0"
    mode: str = "low_risk_auto"
    defaults: RemediationDefaults = Field(default_factory=RemediationDefaults)
    rules: list[RemediationRule] = Field(default_factory=list)

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str:
        key = str(value or "").strip().lower()
        return key if key in REMEDIATION_MODES else "low_risk_auto"

    def resolve_rule(self, issue_id: str) -> RemediationRule | None:
        """First enabled rule whose pattern matches *issue_id*."""
        for rule in self.rules:
            if rule.enabled and rule.matches(issue_id):
                return rule
        return None

    def cooldown_for(self, rule: RemediationRule) -> float:
        if rule.cooldown_minutes is not None:
            return rule.cooldown_minutes
        return self.defaults.cooldown_minutes

    def max_attempts_for(self, rule: RemediationRule) -> int:
        if rule.max_attempts is not None:
            return rule.max_attempts
        return self.defaults.max_attempts


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _load_document(path: Path | None, defaults: dict[str, Any], replace_keys: tuple[str, ...]) -> dict[str, Any]:
    loaded = load_json(path, default=None) if path is not None else None
    if loaded is not None and not isinstance(loaded, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    merged = merge_over_defaults(defaults, loaded or {})
    for key in replace_keys:
        if loaded and key in loaded:
            merged[key] = copy.deepcopy(loaded[key])
    return merged


def load_ops_config(path: Path | None = None, overrides: dict[str, Any] | None = None) -> OpsConfig:
    """Load the ops config, merging it over :data:`DEFAULT_OPS_CONFIG`.

    A ``workers`` map in the document replaces the default roster.
    """
    data = _load_document(path, DEFAULT_OPS_CONFIG, ("workers",))
    if overrides:
        data = merge_over_defaults(data, overrides)
        if "workers" in overrides:
            data["workers"] = copy.deepcopy(overrides["workers"])
    try:
        return OpsConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid ops config {path}: {exc}") from exc


def load_remediation_policy(path: Path | None = None, overrides: dict[str, Any] | None = None) -> RemediationPolicy:
    """Load the remediation policy, merging it over the defaults.

    A ``rules`` list in the document replaces the default rules.
    """
    data = _load_document(path, DEFAULT_REMEDIATION_POLICY, ("rules",))
    if overrides:
        data = merge_over_defaults(data, overrides)
        if "rules" in overrides:
            data["rules"] = copy.deepcopy(overrides["rules"])
    try:
        return RemediationPolicy.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid remediation policy {path}: {exc}") from exc
