"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import ExecutionEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport using lists as queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: ExecutionEvent) -> None:
        """Push event onto the Redis list backing ``topic``."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(f"adxflow:{topic}", event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, ExecutionEvent]]:
        """Subscribe to events from the Redis list backing ``topic``."""
        if not self._redis:
            await self.connect()

        queue_name = f"adxflow:{topic}"
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    event = ExecutionEvent.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Failed to parse execution event: {e}")
                    continue
                yield message_json, event

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
