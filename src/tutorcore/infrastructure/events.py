from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore


logger = logging.getLogger(__name__)


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        if redis is None:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.debug("event_publisher_unavailable", extra={"err": str(exc)})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload))
        except Exception as exc:
            logger.debug("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Fan a lifecycle event (``chat.completed``, ``curriculum.created``...) out to subscribers."""
    publisher = _get_publisher()
    if not publisher:
        return
    channel = f"tutor.events.{event_type}"
    publisher.publish(channel, payload)
