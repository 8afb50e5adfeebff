"""Infrastructure adapters: outbound queues and container runtime introspection."""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class QueueAdapter(Protocol):
    """Common interface for outbound queue backends (Redis / filesystem)."""

    def enqueue(
        self, queue_name: str, obj: dict[str, Any], item_id: str | None = None
    ) -> str:
        """Enqueue *obj* as JSON into *queue_name* and return its item id."""
        ...

    def mark_delivered(self, queue_name: str, item_id: str) -> None:
        """Record that the consumer has taken delivery of *item_id*."""
        ...
