"""Tests for Supervisor.state_store."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from Supervisor.config import SupervisorConfig
from Supervisor.exceptions import LogsWriteBlockedError, StateStoreError
from Supervisor.state_store import (
    DEFAULT_STATE,
    StateStore,
    alert_file_name,
    atomic_write,
    load_json,
    merge_over_defaults,
)


class TestHelpers:
    def test_merge_nested(self) -> None:
        defaults = {"a": 1, "nested": {"x": 1, "y": 2}, "list": [1]}
        merged = merge_over_defaults(defaults, {"nested": {"y": 3}, "list": [9, 9]})
        assert merged == {"a": 1, "nested": {"x": 1, "y": 3}, "list": [9, 9]}
        assert defaults["nested"] == {"x": 1, "y": 2}

    def test_merge_non_mapping_yields_defaults(self) -> None:
        assert merge_over_defaults({"a": 1}, ["junk"]) == {"a": 1}

    def test_load_corrupt_returns_default(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_json(path, default={"ok": False}) == {"ok": False}

    def test_atomic_write_leaves_no_temp(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "x.json"
        atomic_write(path, {"v": 1})
        assert json.loads(path.read_text(encoding="utf-8")) == {"v": 1}
        assert list(path.parent.glob("*.tmp")) == []

    def test_atomic_write_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises((StateStoreError, OSError)):
            atomic_write(blocker / "child.json", {})

    def test_alert_file_name_is_safe(self) -> None:
        name = alert_file_name(
            {"created_at": "2025-06-10T03:00:00+00:00", "issue_id": "bot-a:bot down"}
        )
        assert name == "2025-06-10T03-00-00_00-00_bot-a_bot_down.json"


class TestStateStore:
    def test_read_state_seeds_defaults(self, store: StateStore, config: SupervisorConfig) -> None:
        state = store.read_state()
        assert state == DEFAULT_STATE
        assert config.state_file.exists()
        assert config.issues_file.exists()
        assert config.alert_outbox_dir.is_dir()
        assert config.reports_dir.is_dir()

    def test_partial_state_merged(self, store: StateStore, config: SupervisorConfig) -> None:
        config.state_dir.mkdir(parents=True)
        config.state_file.write_text(
            json.dumps({"bot_health": {"bot-a": {"status": "OK"}}}), encoding="utf-8"
        )
        state = store.read_state()
        assert state["bot_health"] == {"bot-a": {"status": "OK"}}
        assert state["last_briefing_sent"] == {"morning": None, "evening": None}

    def test_corrupt_issues_fall_back(self, store: StateStore, config: SupervisorConfig) -> None:
        config.state_dir.mkdir(parents=True)
        config.issues_file.write_text("garbage", encoding="utf-8")
        assert store.read_issues()["issues"] == {}

    def test_write_state_round_trip(self, store: StateStore) -> None:
        store.write_state({"updated_at": "2025-06-10T03:00:00+00:00"})
        assert store.read_state()["updated_at"] == "2025-06-10T03:00:00+00:00"

    def test_logs_write_blocked(self, store: StateStore, config: SupervisorConfig) -> None:
        target = config.logs_dir / "bot-a" / "latest.json"
        with pytest.raises(LogsWriteBlockedError) as exc_info:
            store.write_json(target, {"x": 1})
        assert "logs" in exc_info.value.path
        assert not target.exists()

    def test_logs_write_blocked_through_dotdot(
        self, store: StateStore, config: SupervisorConfig
    ) -> None:
        sneaky = config.ops_dir / ".." / "logs" / "x.json"
        with pytest.raises(LogsWriteBlockedError):
            store.write_text(sneaky, "nope")

    def test_logs_root_itself_blocked(self, store: StateStore, config: SupervisorConfig) -> None:
        with pytest.raises(LogsWriteBlockedError):
            store.assert_not_logs_write(config.logs_dir)

    def test_alert_outbox_then_sent(self, store: StateStore, config: SupervisorConfig) -> None:
        alert = {"created_at": "2025-06-10T03:00:00+00:00", "issue_id": "bot-a:bot_down"}
        outbox = store.write_alert_outbox(alert)
        assert outbox.parent == config.alert_outbox_dir
        sent = store.mark_alert_sent(outbox)
        assert not outbox.exists()
        assert sent.parent == config.alert_sent_dir
        assert json.loads(sent.read_text(encoding="utf-8")) == alert

    def test_mark_missing_alert_sent(self, store: StateStore, config: SupervisorConfig) -> None:
        with pytest.raises(StateStoreError):
            store.mark_alert_sent(config.alert_outbox_dir / "missing.json")

    def test_write_report(self, store: StateStore, config: SupervisorConfig) -> None:
        path = store.write_report(config.reports_dir / "morning_2025-06-10.md", "hello\n")
        assert path.read_text(encoding="utf-8") == "hello\n"
