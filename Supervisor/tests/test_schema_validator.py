"""Tests for Supervisor.schema_validator."""
from __future__ import annotations

from typing import Any

import pytest

from Supervisor.exceptions import SchemaValidationError
from Supervisor.schema_validator import validate_alert_record, validate_remediation_request


@pytest.fixture
def alert_record() -> dict[str, Any]:
    return {
        "alert_id": "alert_1",
        "issue_id": "bot-a:bot_down",
        "severity": "P1",
        "created_at": "2025-06-10T03:00:00+00:00",
        "suppressed": False,
        "suppression_reason": None,
        "message_markdown": "[P1] Incident",
        "evidence": {"run_ids": ["run-001"], "log_paths": ["docker:moltbot-a"]},
        "decision_rule": "P1 immediate alert",
    }


@pytest.fixture
def remediation_request() -> dict[str, Any]:
    return {
        "request_id": "opsc-1-abcdef",
        "command_kind": "capability",
        "capability": "bot",
        "action": "restart",
        "risk_tier": "MEDIUM",
        "requires_approval": False,
        "required_flags": [],
        "payload": {"target": "moltbot-a"},
        "requested_by": "ops-daily-supervisor",
        "reason": "issue=bot-a:bot_down",
        "created_at": "2025-06-10T03:00:00+00:00",
    }


class TestAlertRecord:
    def test_valid(self, alert_record: dict[str, Any]) -> None:
        validate_alert_record(alert_record)

    def test_bad_severity(self, alert_record: dict[str, Any]) -> None:
        alert_record["severity"] = "P9"
        with pytest.raises(SchemaValidationError, match="severity"):
            validate_alert_record(alert_record)

    def test_collects_all_errors(self, alert_record: dict[str, Any]) -> None:
        del alert_record["alert_id"]
        alert_record["suppressed"] = "no"
        alert_record["evidence"] = {"run_ids": [1]}
        with pytest.raises(SchemaValidationError) as exc_info:
            validate_alert_record(alert_record)
        assert len(exc_info.value.errors) >= 3


class TestRemediationRequest:
    def test_valid(self, remediation_request: dict[str, Any]) -> None:
        validate_remediation_request(remediation_request)

    def test_command_kind_is_fixed(self, remediation_request: dict[str, Any]) -> None:
        remediation_request["command_kind"] = "shell"
        with pytest.raises(SchemaValidationError, match="command_kind"):
            validate_remediation_request(remediation_request)

    def test_empty_action(self, remediation_request: dict[str, Any]) -> None:
        remediation_request["action"] = ""
        with pytest.raises(SchemaValidationError, match="action"):
            validate_remediation_request(remediation_request)
