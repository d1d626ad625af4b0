"""
Status Sink — live status push for file and job transitions.

The Scheduler publishes every state change as (topic, event, payload):

    topic   "job-<job_id>"                 one room per job
    event   "file-status-update" | "job-status-update"
    payload FileStatusEvent / JobStatusEvent dict

Delivery is fire-and-forget. The concrete transport (Redis pub/sub here,
fanned out to websockets by the API service) is swappable; the Scheduler
only sees the StatusSink interface and never lets a delivery failure
affect the pipeline (see Scheduler._publish).
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from redis.asyncio import Redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class StatusSink(ABC):

    @abstractmethod
    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        """Deliver one status event. May raise; callers treat errors as non-fatal."""


class RedisStatusSink(StatusSink):
    """
    Publishes JSON envelopes on channel "<prefix>:<topic>".

        {"event": "file-status-update", "payload": {...}}
    """

    def __init__(self, client: Redis, channel_prefix: str | None = None) -> None:
        self._redis  = client
        self._prefix = channel_prefix or settings.status_channel_prefix

    def channel(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        receivers = await self._redis.publish(self.channel(topic), message)
        logger.debug("Status published | topic=%s event=%s receivers=%s", topic, event, receivers)


class LoggingStatusSink(StatusSink):
    """For local runs without a websocket fan-out: status goes to the log."""

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        logger.info("Status | topic=%s event=%s payload=%s", topic, event, payload)
