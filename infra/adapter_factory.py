"""Factory that selects the outbound queue backend from the environment.

Decision logic:
  REDIS_ENABLED=true       -> RedisQueue at REDIS_URL
  REDIS_ENABLED unset/else -> FSAdapter rooted at *base_dir*
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

from infra.fs_adapter import FSAdapter
from infra.redis_adapter import DEFAULT_REDIS_URL, RedisQueue

logger = logging.getLogger(__name__)


def redis_enabled() -> bool:
    return os.environ.get("REDIS_ENABLED", "").lower() == "true"


def get_queue_adapter(
    base_dir: Path | None = None, queue_prefix: str = "ops"
) -> RedisQueue | FSAdapter:
    """Return the :class:`QueueAdapter` implementation for this process."""
    if not redis_enabled():
        return FSAdapter(base_dir=base_dir)

    redis_url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
    logger.info("Using Redis queue adapter at %s (prefix %s)", redis_url, queue_prefix)
    return RedisQueue(redis_url=redis_url, queue_prefix=queue_prefix)
