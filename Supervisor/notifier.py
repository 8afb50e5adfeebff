"""Hand-off of human-readable notifications to the bridge transport."""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from infra import QueueAdapter
from Supervisor.rules import iso

BRIDGE_QUEUE = "inbox"
NOTIFY_SOURCE = "ops-daily-supervisor"


def build_envelope(message: str, task_prefix: str, now: datetime) -> dict[str, Any]:
    """Transport envelope understood by the bridge consumer."""
    return {
        "taskId": f"{task_prefix}-{int(time.time() * 1000)}",
        "command": f"[NOTIFY] {message}",
        "timestamp": iso(now),
        "status": "pending",
        "route": "report",
        "source": NOTIFY_SOURCE,
    }


class Notifier:
    """Enqueue notification envelopes; delivery is the transport's job."""

    def __init__(self, queue: QueueAdapter) -> None:
        self.queue = queue

    def notify(self, message: str, task_prefix: str, now: datetime) -> str:
        envelope = build_envelope(message, task_prefix, now)
        return self.queue.enqueue(BRIDGE_QUEUE, envelope, item_id=envelope["taskId"])
