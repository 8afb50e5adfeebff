"""Tests for Supervisor.alert_dispatcher and Supervisor.notifier."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from infra.fs_adapter import FSAdapter
from Supervisor.alert_dispatcher import AlertDispatcher, build_alert_message
from Supervisor.config import SupervisorConfig
from Supervisor.issue_registry import IssueRegistry
from Supervisor.models import OpsConfig
from Supervisor.notifier import BRIDGE_QUEUE, Notifier, build_envelope
from Supervisor.state_store import StateStore

MIDNIGHT_TOKYO = datetime(2025, 6, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def dispatcher(
    config: SupervisorConfig, store: StateStore, bridge_queue: FSAdapter, ops_config: OpsConfig
) -> AlertDispatcher:
    return AlertDispatcher(config, store, Notifier(bridge_queue), ops_config.alert_policy())


@pytest.fixture
def registry() -> IssueRegistry:
    reg = IssueRegistry()
    reg.touch_open(
        "bot-a:bot_down", "bot-a",
        ts="2025-06-10T02:30:00+00:00", severity="P1", fingerprint="bot_down",
        summary="Bot down confirmed (container=exited).",
        run_id="run-001", log_path="docker:moltbot-a",
    )
    return reg


def _bridge_items(queue: FSAdapter) -> list[dict]:
    return [
        json.loads(queue.item_path(BRIDGE_QUEUE, i).read_text(encoding="utf-8"))
        for i in queue.pending(BRIDGE_QUEUE)
    ]


class TestEnvelope:
    def test_shape(self, now: datetime) -> None:
        env = build_envelope("hello", "ops-alert", now)
        assert env["taskId"].startswith("ops-alert-")
        assert env["command"] == "[NOTIFY] hello"
        assert env["timestamp"] == "2025-06-10T03:00:00+00:00"
        assert (env["status"], env["route"], env["source"]) == (
            "pending", "report", "ops-daily-supervisor",
        )

    def test_notifier_enqueues(self, bridge_queue: FSAdapter, now: datetime) -> None:
        item_id = Notifier(bridge_queue).notify("hi", "ops-briefing-morning", now)
        assert bridge_queue.pending(BRIDGE_QUEUE) == [item_id]


class TestAlertMessage:
    def test_contents(self, registry: IssueRegistry) -> None:
        issue = registry.get("bot-a:bot_down")
        text = build_alert_message(issue, "2025-06-10T03:00:00+00:00", "Asia/Tokyo")
        assert text.startswith("[P1] Incident: bot-a / bot-a:bot_down")
        assert "- Run ID: run-001" in text
        assert "  - docker:moltbot-a" in text
        assert "- Error fingerprint: bot_down" in text
        assert "(Asia/Tokyo, generated 2025-06-10T03:00:00+00:00)" in text

    def test_without_evidence(self) -> None:
        reg = IssueRegistry()
        issue = reg.touch_open("bot-a:x", "bot-a", ts="2025-06-10T02:00:00+00:00", severity="P2")
        text = build_alert_message(issue, "now", "UTC")
        assert "- Run ID: -" in text
        assert "  - (none)" in text


class TestDispatch:
    def test_p1_sent(
        self,
        dispatcher: AlertDispatcher,
        registry: IssueRegistry,
        config: SupervisorConfig,
        bridge_queue: FSAdapter,
        now: datetime,
    ) -> None:
        decisions = dispatcher.dispatch(registry, now, send_enabled=True)

        assert len(decisions) == 1
        assert decisions[0]["sent"] is True
        assert decisions[0]["decision_rule"] == "P1 immediate alert"
        assert list(config.alert_outbox_dir.glob("*.json")) == []
        sent = list(config.alert_sent_dir.glob("*.json"))
        assert len(sent) == 1
        record = json.loads(sent[0].read_text(encoding="utf-8"))
        assert record["suppressed"] is False
        assert record["suppression_reason"] is None
        assert record["alert_id"].startswith("alert_")
        assert record["evidence"]["run_ids"] == ["run-001"]

        items = _bridge_items(bridge_queue)
        assert len(items) == 1
        assert items[0]["command"].startswith("[NOTIFY] [P1] Incident: bot-a")
        assert items[0]["taskId"].startswith("ops-alert-")
        assert registry.get("bot-a:bot_down").last_alert_ts == "2025-06-10T03:00:00+00:00"

    def test_send_disabled_records_only(
        self,
        dispatcher: AlertDispatcher,
        registry: IssueRegistry,
        config: SupervisorConfig,
        bridge_queue: FSAdapter,
        now: datetime,
    ) -> None:
        decisions = dispatcher.dispatch(registry, now, send_enabled=False)

        assert decisions[0]["sent"] is False
        assert decisions[0]["sent_path"] is None
        outbox = list(config.alert_outbox_dir.glob("*.json"))
        assert len(outbox) == 1
        record = json.loads(outbox[0].read_text(encoding="utf-8"))
        assert record["suppressed"] is True
        assert record["suppression_reason"] == "send_disabled"
        assert _bridge_items(bridge_queue) == []
        assert registry.get("bot-a:bot_down").last_alert_ts is not None

    def test_cooldown_after_alert(
        self,
        dispatcher: AlertDispatcher,
        registry: IssueRegistry,
        config: SupervisorConfig,
        now: datetime,
    ) -> None:
        dispatcher.dispatch(registry, now, send_enabled=True)
        decisions = dispatcher.dispatch(registry, now + timedelta(minutes=30), send_enabled=True)
        assert decisions[0]["reason"] == "cooldown"
        assert len(list(config.alert_sent_dir.glob("*.json"))) == 1

    def test_quiet_hours_counted(
        self, dispatcher: AlertDispatcher, config: SupervisorConfig
    ) -> None:
        reg = IssueRegistry()
        for _ in range(3):
            issue = reg.touch_open("bot-a:x", "bot-a", ts="2025-06-10T14:00:00+00:00", severity="P2")
        decisions = dispatcher.dispatch(reg, MIDNIGHT_TOKYO, send_enabled=True)
        assert decisions[0]["reason"] == "quiet_hours"
        assert issue.quiet_hours_suppressed_count == 1
        assert issue.last_alert_ts is None
        assert list(config.alert_outbox_dir.glob("*.json")) == []

    def test_p3_and_below_threshold(
        self, dispatcher: AlertDispatcher, now: datetime
    ) -> None:
        reg = IssueRegistry()
        reg.touch_open("bot-a:no_signal", "bot-a", ts="2025-06-10T02:00:00+00:00", severity="P3")
        reg.touch_open("bot-a:y", "bot-a", ts="2025-06-10T02:00:00+00:00", severity="P2")
        reasons = {d["issue_id"]: d["reason"] for d in dispatcher.dispatch(reg, now, True)}
        assert reasons == {
            "bot-a:no_signal": "briefing_only",
            "bot-a:y": "threshold_not_reached",
        }

    def test_resolved_issues_ignored(
        self, dispatcher: AlertDispatcher, registry: IssueRegistry, now: datetime
    ) -> None:
        registry.resolve("bot-a:bot_down", "2025-06-10T02:59:00+00:00")
        assert dispatcher.dispatch(registry, now, True) == []
