"""Process-local transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, Optional, Tuple

from ..contracts import ProcessRunRequest
from .base import BaseTransport

RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """One ``asyncio.Queue`` per topic.

    Raw messages are ``(topic, json)`` pairs so a requeued nack goes back
    onto the topic it came from.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue] = {}

    def _queue(self, topic: str) -> asyncio.Queue:
        if topic not in self._queues:
            self._queues[topic] = asyncio.Queue()
        return self._queues[topic]

    async def publish(self, topic: str, message: ProcessRunRequest) -> None:
        self._queue(topic).put_nowait((topic, message.to_json()))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, ProcessRunRequest]]:
        queue = self._queue(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while True:
            if deadline is None:
                raw_message = await queue.get()
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    raw_message = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError:
                    break
            yield raw_message, ProcessRunRequest.from_json(raw_message[1])

    async def ack(self, raw_message: RawMessage) -> None:
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            self._queue(raw_message[0]).put_nowait(raw_message)

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return self._queue(topic).qsize()
