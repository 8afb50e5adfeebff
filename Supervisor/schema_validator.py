"""JSON Schema validation for Supervisor data structures.

Defines schemas for:
- Worker events read from ``logs/<bot>/events/*.jsonl`` (reported, never fatal)
- Alert records written to the alert outbox
- Remediation requests enqueued to the command queue

Uses jsonschema Draft 7. Outbound records raise SchemaValidationError when
they do not conform; inbound events only report their missing fields.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft7Validator, ValidationError

from Supervisor.exceptions import SchemaValidationError

# ---------------------------------------------------------------------------
# Worker event schema
# ---------------------------------------------------------------------------

REQUIRED_EVENT_FIELDS: tuple[str, ...] = (
    "schema_version",
    "ts",
    "bot_id",
    "run_id",
    "event_type",
    "status",
    "severity",
    "message",
    "component",
)

_PRESENT: dict[str, Any] = {"not": {"enum": [None, ""]}}

EVENT_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "WorkerEvent",
    "type": "object",
    "required": list(REQUIRED_EVENT_FIELDS),
    "properties": {name: _PRESENT for name in REQUIRED_EVENT_FIELDS},
}

# ---------------------------------------------------------------------------
# Alert record schema
# ---------------------------------------------------------------------------

ALERT_RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "AlertRecord",
    "type": "object",
    "required": [
        "alert_id",
        "issue_id",
        "severity",
        "created_at",
        "suppressed",
        "suppression_reason",
        "message_markdown",
        "evidence",
        "decision_rule",
    ],
    "properties": {
        "alert_id": {"type": "string", "minLength": 1},
        "issue_id": {"type": "string", "minLength": 1},
        "severity": {"type": "string", "enum": ["P1", "P2", "P3"]},
        "created_at": {"type": "string", "minLength": 1},
        "suppressed": {"type": "boolean"},
        "suppression_reason": {"type": ["string", "null"]},
        "message_markdown": {"type": "string", "minLength": 1},
        "evidence": {
            "type": "object",
            "required": ["run_ids", "log_paths"],
            "properties": {
                "run_ids": {"type": "array", "items": {"type": "string"}},
                "log_paths": {"type": "array", "items": {"type": "string"}},
            },
        },
        "decision_rule": {"type": "string"},
    },
}

# ---------------------------------------------------------------------------
# Remediation request schema
# ---------------------------------------------------------------------------

REMEDIATION_REQUEST_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "RemediationRequest",
    "type": "object",
    "required": [
        "request_id",
        "command_kind",
        "capability",
        "action",
        "risk_tier",
        "requires_approval",
        "payload",
        "requested_by",
        "reason",
        "created_at",
    ],
    "properties": {
        "request_id": {"type": "string", "minLength": 1},
        "command_kind": {"const": "capability"},
        "capability": {"type": "string", "minLength": 1},
        "action": {"type": "string", "minLength": 1},
        "risk_tier": {"type": "string", "minLength": 1},
        "requires_approval": {"type": "boolean"},
        "required_flags": {"type": "array", "items": {"type": "string"}},
        "payload": {"type": "object"},
        "requested_by": {"type": "string", "minLength": 1},
        "reason": {"type": "string"},
        "created_at": {"type": "string", "minLength": 1},
    },
}

# Pre-compiled validators
_event_validator = Draft7Validator(EVENT_SCHEMA)
_alert_validator = Draft7Validator(ALERT_RECORD_SCHEMA)
_request_validator = Draft7Validator(REMEDIATION_REQUEST_SCHEMA)


@dataclass(frozen=True)
class EventValidation:
    """Result of checking one event line."""

    valid: bool
    missing: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_event_schema(event: Any) -> EventValidation:
    """Report which required event fields are absent, null or empty.

    Never raises: a violation is data, not an error.
    """
    payload = event if isinstance(event, dict) else {}
    missing: set[str] = set()
    err: ValidationError
    for err in _event_validator.iter_errors(payload):
        if err.validator == "required":
            missing.update(f for f in REQUIRED_EVENT_FIELDS if f not in payload)
        elif err.absolute_path:
            missing.add(str(err.absolute_path[0]))
    ordered = [f for f in REQUIRED_EVENT_FIELDS if f in missing]
    return EventValidation(valid=not ordered, missing=ordered)


def validate_alert_record(data: dict[str, Any]) -> None:
    """Validate an alert record.

    Raises SchemaValidationError if the record is invalid.
    """
    _validate(data, _alert_validator)


def validate_remediation_request(data: dict[str, Any]) -> None:
    """Validate a remediation request.

    Raises SchemaValidationError if the request is invalid.
    """
    _validate(data, _request_validator)


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


def _validate(data: dict[str, Any], validator: Draft7Validator) -> None:
    """Run validation and collect all errors."""
    errors: list[str] = []
    err: ValidationError
    for err in sorted(validator.iter_errors(data), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in err.absolute_path) or "(root)"
        errors.append(f"{path}: {err.message}")
    if errors:
        raise SchemaValidationError(errors)
