"""Tests for Supervisor.briefing_generator."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from infra.fs_adapter import FSAdapter
from Supervisor.briefing_generator import BriefingGenerator, render_briefing
from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import IssueRegistry
from Supervisor.models import OpsConfig
from Supervisor.notifier import BRIDGE_QUEUE, Notifier
from Supervisor.state_store import StateStore

MORNING = datetime(2025, 6, 9, 23, 30, tzinfo=timezone.utc)  # 08:30 Tokyo, 2025-06-10
EVENING = datetime(2025, 6, 10, 9, 30, tzinfo=timezone.utc)  # 18:30 Tokyo


@pytest.fixture
def generator(
    config: SupervisorConfig, ops_config: OpsConfig, store: StateStore, bridge_queue: FSAdapter
) -> BriefingGenerator:
    return BriefingGenerator(config, ops_config, store, Notifier(bridge_queue))


@pytest.fixture
def state(store: StateStore) -> dict[str, Any]:
    state = store.read_state()
    state["bot_health"] = {
        "bot-a": {
            "status": "ERROR",
            "last_success_ts": "2025-06-09T20:00:00+00:00",
            "last_run_ts": "2025-06-09T22:00:00+00:00",
            "staleness_minutes": 120,
            "runs_observed": 7,
            "retries_recovered": 2,
        },
    }
    return state


@pytest.fixture
def registry() -> IssueRegistry:
    reg = IssueRegistry()
    reg.touch_open(
        "bot-a:fp_1", "bot-a", ts="2025-06-09T22:00:00+00:00", severity="P2",
        summary="upstream 500", run_id="run-009", log_path="/logs/bot-a/events/x.jsonl",
    )
    reg.touch_open("bot-a:schema_violation", "bot-a", ts="2025-06-09T22:00:00+00:00",
                   severity="P3", fingerprint="schema_violation")
    reg.touch_open("bot-a:old", "bot-a", ts="2025-06-08T00:00:00+00:00", severity="P1")
    reg.resolve("bot-a:old", "2025-06-09T12:00:00+00:00")
    return reg


class TestSchedule:
    def test_due_at_scheduled_minute(
        self, generator: BriefingGenerator, state: dict[str, Any]
    ) -> None:
        assert generator.is_due("morning", MORNING, state)
        assert not generator.is_due("morning", MORNING + timedelta(minutes=1), state)
        assert not generator.is_due("evening", MORNING, state)
        assert generator.is_due("evening", EVENING, state)

    def test_once_per_local_day(
        self, generator: BriefingGenerator, state: dict[str, Any]
    ) -> None:
        state["last_briefing_sent"]["morning"] = {"date": "2025-06-10"}
        assert not generator.is_due("morning", MORNING, state)
        assert generator.is_due("morning", MORNING + timedelta(days=1), state)


class TestGenerate:
    def test_not_due_returns_none(
        self,
        generator: BriefingGenerator,
        state: dict[str, Any],
        registry: IssueRegistry,
        config: SupervisorConfig,
        now: datetime,
    ) -> None:
        assert generator.generate("morning", now, state, registry, send=True) is None
        assert list(config.reports_dir.glob("*.md")) == []

    def test_writes_report_and_marker(
        self,
        generator: BriefingGenerator,
        state: dict[str, Any],
        registry: IssueRegistry,
        config: SupervisorConfig,
        bridge_queue: FSAdapter,
    ) -> None:
        result = generator.generate("morning", MORNING, state, registry, send=False)

        assert result is not None
        assert result.delivered is False
        path = config.reports_dir / "morning_2025-06-10.md"
        assert result.report_path == str(path)
        assert path.read_text(encoding="utf-8").startswith(
            "Morning Briefing: 2025-06-10 (Asia/Tokyo)"
        )
        marker = state["last_briefing_sent"]["morning"]
        assert marker == {
            "date": "2025-06-10",
            "ts": "2025-06-09T23:30:00+00:00",
            "report_path": str(path),
            "delivered": False,
        }
        assert bridge_queue.pending(BRIDGE_QUEUE) == []
        assert generator.generate("morning", MORNING, state, registry, send=False) is None

    def test_send_hands_to_notifier(
        self,
        generator: BriefingGenerator,
        state: dict[str, Any],
        registry: IssueRegistry,
        bridge_queue: FSAdapter,
    ) -> None:
        result = generator.generate("evening", EVENING, state, registry, send=True)
        assert result is not None and result.delivered
        pending = bridge_queue.pending(BRIDGE_QUEUE)
        assert len(pending) == 1
        assert "ops-briefing-evening" in pending[0]

    def test_force_ignores_schedule_and_marker(
        self,
        generator: BriefingGenerator,
        state: dict[str, Any],
        registry: IssueRegistry,
        now: datetime,
    ) -> None:
        state["last_briefing_sent"]["evening"] = {"date": "2025-06-10"}
        result = generator.generate("evening", now, state, registry, send=False, force=True)
        assert result is not None
        assert result.to_dict()["type"] == "evening"

    def test_unknown_type(
        self, generator: BriefingGenerator, state: dict[str, Any], registry: IssueRegistry, now: datetime
    ) -> None:
        with pytest.raises(ValueError):
            generator.generate("midnight", now, state, registry, send=False, force=True)


class TestRender:
    def test_morning(
        self, ops_config: OpsConfig, state: dict[str, Any], registry: IssueRegistry
    ) -> None:
        state["last_briefing_sent"]["morning"] = {"ts": "2025-06-09T00:00:00+00:00"}
        text = render_briefing("morning", MORNING, ops_config, state, registry)

        assert "- bot-a: ERROR (last success 2025-06-09T20:00:00+00:00" in text
        assert "1) [P2] bot-a: bot-a:fp_1" in text
        assert "   - Summary: upstream 500" in text
        assert "runs run-009" in text
        assert "- bot-a: bot-a:old resolved at 2025-06-09T12:00:00+00:00" in text
        assert "- Missed schedules: bot-a stale 120m" in text
        assert "- Schema violations: 1" in text

    def test_morning_resolved_filtered_by_marker(
        self, ops_config: OpsConfig, state: dict[str, Any], registry: IssueRegistry
    ) -> None:
        state["last_briefing_sent"]["morning"] = {"ts": "2025-06-09T18:00:00+00:00"}
        text = render_briefing("morning", MORNING, ops_config, state, registry)
        assert "bot-a:old resolved" not in text
        assert "Resolved Since Last Briefing:\n- none" in text

    def test_evening(
        self, ops_config: OpsConfig, state: dict[str, Any], registry: IssueRegistry
    ) -> None:
        text = render_briefing("evening", EVENING, ops_config, state, registry)

        assert text.startswith("Evening Briefing: 2025-06-10 (Asia/Tokyo)")
        assert "- Total runs observed: 7" in text
        assert "- Errors: 3 (P1: 1, P2: 1, P3: 1)" in text
        assert "- Retries recovered: 2" in text
        assert "- Next automated scan: +30 minutes (Asia/Tokyo)" in text
        assert "- Next morning briefing: 08:30" in text

    def test_empty_registry(self, ops_config: OpsConfig, store: StateStore) -> None:
        text = render_briefing("evening", EVENING, ops_config, store.read_state(), IssueRegistry())
        assert "Open Issues Carrying Over:\n- none" in text
