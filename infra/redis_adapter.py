"""Redis-backed outbound queue with reconnect and exponential backoff."""
from __future__ import annotations

import itertools
import json
import logging
import time
from typing import Any, Callable

import redis as redis_lib

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
_MAX_RECONNECT = 5
_BASE_DELAY = 1.0
_MAX_DELAY = 30.0
_counter = itertools.count()


class RedisQueue:
    """RPUSH queue over Redis, with automatic reconnect.

    Each item is wrapped as ``{"id": ..., "payload": ...}`` so consumers can
    acknowledge it; acknowledged ids are kept in the ``<key>:delivered`` set.

    Parameters
    ----------
    redis_url:
        Redis connection URL.
    queue_prefix:
        Namespace prefix for all queue keys (e.g. ``ops:commands:outbox``).
    """

    def __init__(
        self,
        redis_url: str = DEFAULT_REDIS_URL,
        queue_prefix: str = "ops",
    ) -> None:
        self._url = redis_url
        self._prefix = queue_prefix
        self._client: Any = self._connect()

    # -- QueueAdapter interface -----------------------------------------------

    def enqueue(
        self, queue_name: str, obj: dict[str, Any], item_id: str | None = None
    ) -> str:
        """RPUSH *obj* serialised as JSON; returns the item id."""
        item_id = item_id or f"{int(time.time() * 1000)}-{next(_counter):06d}"
        payload = json.dumps({"id": item_id, "payload": obj}, ensure_ascii=False)
        self._retry(
            lambda: self._client.rpush(self._key(queue_name), payload)
        )
        return item_id

    def mark_delivered(self, queue_name: str, item_id: str) -> None:
        self._retry(
            lambda: self._client.sadd(f"{self._key(queue_name)}:delivered", item_id)
        )

    # -- Internals ------------------------------------------------------------

    def _key(self, queue_name: str) -> str:
        return f"{self._prefix}:{queue_name}"

    def _connect(self) -> Any:
        """Create a new Redis client."""
        client: Any = redis_lib.Redis.from_url(
            self._url, decode_responses=True
        )
        return client

    def _retry(self, fn: Callable[[], Any]) -> Any:
        """Execute *fn* with up to ``_MAX_RECONNECT`` retries on failure."""
        last_exc: Exception | None = None
        for attempt in range(_MAX_RECONNECT):
            try:
                return fn()
            except (redis_lib.RedisError, ConnectionError, TimeoutError) as exc:
                last_exc = exc
                if attempt == _MAX_RECONNECT - 1:
                    break
                delay = min(_BASE_DELAY * (2 ** attempt), _MAX_DELAY)
                logger.warning(
                    "Redis error (attempt %d/%d), retry in %.1fs: %s",
                    attempt + 1,
                    _MAX_RECONNECT,
                    delay,
                    exc,
                )
                time.sleep(delay)
                try:
                    self._client = self._connect()
                except redis_lib.RedisError as reconnect_exc:
                    logger.warning("Redis reconnect failed: %s", reconnect_exc)
        assert last_exc is not None
        logger.error(
            "Redis unavailable after %d attempts: %s",
            _MAX_RECONNECT,
            last_exc,
        )
        raise last_exc
