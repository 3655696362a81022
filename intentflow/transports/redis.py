"""Redis list transport for handing runs to workers in other processes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import ProcessRunRequest
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """LPUSH to publish, BRPOP to consume. Lists are named ``<prefix>:<topic>``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "intentflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

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

    async def publish(self, topic: str, message: ProcessRunRequest) -> None:
        """LPUSH the serialized request onto the topic list."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, ProcessRunRequest]]:
        """Pop requests from the topic list, blocking at most a second per poll."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            wait = 1.0 if deadline is None else min(1.0, max(deadline - loop.time(), 0.01))
            result = await self._redis.brpop(queue_name, timeout=wait)
            if not result:
                continue

            _, message_json = result
            try:
                message = ProcessRunRequest.from_json(message_json)
            except ValidationError as e:
                logger.warning(f"Dropping malformed request on {queue_name}: {e}")
                continue
            yield (topic, message_json), message

    async def ack(self, raw_message: RawMessage) -> None:
        """BRPOP already removed the message, nothing to confirm."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        """Push the message back onto the consuming end of the queue."""
        if requeue:
            if not self._redis:
                await self.connect()
            topic, message_json = raw_message
            await self._redis.rpush(self._queue_name(topic), message_json)
