"""Shared fixtures for Supervisor tests."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from infra.container_runtime import ContainerLogs, ContainerState, check_container_name
from infra.fs_adapter import FSAdapter
from Supervisor.config import SupervisorConfig
from Supervisor.models import OpsConfig, load_ops_config
from Supervisor.state_store import StateStore

# 2025-06-10 12:00 in Asia/Tokyo: outside quiet hours, not a briefing minute.
NOW = datetime(2025, 6, 10, 3, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeContainerRuntime:
    """In-memory ContainerRuntime: per-container state and log text."""

    def __init__(self) -> None:
        self.states: dict[str, ContainerState] = {}
        self.logs: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []

    def set_running(self, name: str, running: bool | None, state: str | None = None) -> None:
        self.states[name] = ContainerState(
            supported=True,
            container=name,
            running=running,
            state=state or ("running" if running else "exited"),
        )

    def set_unsupported(self, name: str, reason: str = "docker_inspect_failed") -> None:
        self.states[name] = ContainerState(supported=False, container=name, reason=reason)

    def inspect(self, name: str) -> ContainerState:
        self.calls.append(("inspect", name))
        container, reason = check_container_name(name)
        if reason:
            return ContainerState(supported=False, container=container, reason=reason)
        return self.states.get(
            container, ContainerState(supported=False, container=container, reason="docker_inspect_failed")
        )

    def tail_logs(self, name: str, since: str, tail: int) -> ContainerLogs:
        self.calls.append(("logs", name))
        container, reason = check_container_name(name)
        if reason:
            return ContainerLogs(supported=False, container=container, reason=reason)
        if container not in self.logs:
            return ContainerLogs(
                supported=False, container=container, since=since, reason="docker_logs_failed"
            )
        return ContainerLogs(supported=True, container=container, since=since, text=self.logs[container])


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _event(**overrides: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "schema_version": "1.0",
        "ts": "2025-06-10T02:50:00+00:00",
        "bot_id": "bot-a",
        "run_id": "run-001",
        "event_type": "end",
        "status": "ok",
        "severity": "P3",
        "message": "run finished",
        "component": "runner",
    }
    event.update(overrides)
    return event


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPS_DAILY_SEND", "REDIS_ENABLED", "OPS_WORKSPACE_ROOT", "OPS_SUPERVISOR_ID"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Factory for schema-valid worker events."""
    return _event


@pytest.fixture
def config(tmp_path: Path) -> SupervisorConfig:
    """Config rooted at an empty tmp workspace with a logs/ tree."""
    (tmp_path / "logs").mkdir()
    return SupervisorConfig(supervisor_id="test-supervisor", workspace_root=tmp_path)


@pytest.fixture
def store(config: SupervisorConfig) -> StateStore:
    return StateStore(config)


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def ops_config() -> OpsConfig:
    """One active worker ``bot-a`` in container ``moltbot-a``."""
    return load_ops_config(
        None,
        overrides={
            "workers": {
                "bot-a": {"active": True, "container": "moltbot-a"},
                "bot-z": {"active": False, "container": "moltbot-z"},
            },
        },
    )


@pytest.fixture
def command_queue(config: SupervisorConfig) -> FSAdapter:
    return FSAdapter(base_dir=config.commands_dir)


@pytest.fixture
def bridge_queue(config: SupervisorConfig) -> FSAdapter:
    return FSAdapter(base_dir=config.bridge_dir)


@pytest.fixture
def write_telemetry(config: SupervisorConfig) -> Callable[..., None]:
    """Write ``latest.json`` / ``heartbeat.json`` for a bot (None skips a file)."""

    def _write(
        bot_id: str = "bot-a",
        latest: dict[str, Any] | None = None,
        heartbeat: dict[str, Any] | None = None,
    ) -> None:
        bot_dir = config.bot_logs_dir(bot_id)
        bot_dir.mkdir(parents=True, exist_ok=True)
        if latest is not None:
            (bot_dir / "latest.json").write_text(json.dumps(latest), encoding="utf-8")
        if heartbeat is not None:
            (bot_dir / "heartbeat.json").write_text(json.dumps(heartbeat), encoding="utf-8")

    return _write


@pytest.fixture
def write_events(config: SupervisorConfig) -> Callable[..., Path]:
    """Append event lines (dicts or raw strings) to ``events/<name>.jsonl``."""

    def _write(
        events: list[dict[str, Any] | str],
        bot_id: str = "bot-a",
        name: str = "2025-06-10",
    ) -> Path:
        events_dir = config.bot_logs_dir(bot_id) / "events"
        events_dir.mkdir(parents=True, exist_ok=True)
        path = events_dir / f"{name}.jsonl"
        with path.open("a", encoding="utf-8") as fh:
            for item in events:
                fh.write((item if isinstance(item, str) else json.dumps(item)) + "\n")
        return path

    return _write


@pytest.fixture
def healthy_bot(
    write_telemetry: Callable[..., None], runtime: FakeContainerRuntime
) -> None:
    """bot-a with fresh telemetry, running container and a clean channel log."""
    write_telemetry(
        latest={
            "run_id": "run-001",
            "last_event_ts": "2025-06-10T02:55:00Z",
            "status": "ok",
            "last_success_ts": "2025-06-10T02:55:00Z",
        },
        heartbeat={"run_id": "run-001", "ts": "2025-06-10T02:58:00Z", "state": "idle"},
    )
    runtime.set_running("moltbot-a", True)
    runtime.logs["moltbot-a"] = "[telegram] [default] starting provider\n"
