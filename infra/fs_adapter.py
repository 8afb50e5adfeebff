"""Filesystem-backed outbound queue (default backend)."""
from __future__ import annotations

import itertools
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DELIVERED_DIRNAME = "delivered"
_counter = itertools.count()  # monotonic tie-breaker for same-µs enqueues


class FSAdapter:
    """File-based FIFO queue: one directory per queue, one JSON file per item.

    Item ids are the file stems, which sort in enqueue order. Delivered
    items move into a ``delivered/`` subdirectory of their queue.

    Parameters
    ----------
    base_dir:
        Root directory under which per-queue subdirectories are created.
        Defaults to ``<cwd>/queues``.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or (Path.cwd() / "queues")

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    # -- QueueAdapter interface -----------------------------------------------

    def enqueue(
        self, queue_name: str, obj: dict[str, Any], item_id: str | None = None
    ) -> str:
        """Write *obj* as a timestamped JSON file in the queue directory."""
        queue_dir = self.queue_dir(queue_name)
        queue_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        seq = next(_counter)
        stem = f"{ts}-{seq:06d}"
        if item_id:
            stem = f"{stem}_{_safe(item_id)}"
        path = queue_dir / f"{stem}.json"
        tmp = path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps(obj, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp.replace(path)
        return stem

    def mark_delivered(self, queue_name: str, item_id: str) -> None:
        """Move the item file into ``delivered/``.

        Raises FileNotFoundError when *item_id* is not pending.
        """
        queue_dir = self.queue_dir(queue_name)
        source = queue_dir / f"{item_id}.json"
        target_dir = queue_dir / DELIVERED_DIRNAME
        target_dir.mkdir(parents=True, exist_ok=True)
        source.replace(target_dir / source.name)

    # -- Helpers --------------------------------------------------------------

    def queue_dir(self, queue_name: str) -> Path:
        safe = queue_name.replace(":", "_").replace("/", "_")
        return self._base_dir / safe

    def item_path(self, queue_name: str, item_id: str) -> Path:
        return self.queue_dir(queue_name) / f"{item_id}.json"

    def pending(self, queue_name: str) -> list[str]:
        """Pending item ids, oldest first."""
        queue_dir = self.queue_dir(queue_name)
        if not queue_dir.exists():
            return []
        return sorted(f.stem for f in queue_dir.iterdir() if f.suffix == ".json")


def _safe(value: str) -> str:
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in value)
