"""Custom exceptions for the Supervisor package."""
from __future__ import annotations


class SupervisorError(Exception):
    """Base exception for all Supervisor errors."""


class ConfigError(SupervisorError):
    """Raised when a policy document fails validation after merging."""


class StateStoreError(SupervisorError):
    """Raised when a state store operation fails."""


class LogsWriteBlockedError(StateStoreError):
    """Raised when a write targets the worker-owned logs tree."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Supervisor write blocked for logs path: {path}")


class SchemaValidationError(SupervisorError):
    """Raised when an outbound record fails schema validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")


class ScanLockError(SupervisorError):
    """Raised when another invocation already holds the scan lock."""
