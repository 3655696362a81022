"""Broker interface used to hand runs from triggers to workers."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import PROCESS_RUN_TOPIC
from ..contracts import ProcessRunRequest

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries ``ProcessRunRequest`` envelopes between processes.

    ``RawMessageT`` is whatever the broker needs back to ack or nack a
    delivery. Transports can be used as async context managers.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: ProcessRunRequest) -> None:
        """Enqueue ``message`` on ``topic``."""
        raise NotImplementedError

    async def request_run(self, run_id: str, reason: str = "triggered") -> ProcessRunRequest:
        """Publish a request asking a worker to process ``run_id``."""
        request = ProcessRunRequest(run_id=run_id, reason=reason)
        await self.publish(PROCESS_RUN_TOPIC, request)
        return request

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ProcessRunRequest]]:
        """Yield ``(raw_message, request)`` pairs from ``topic``.

        With ``lifespan`` set, stop after that many seconds; otherwise
        listen until the consumer stops iterating.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery. Brokers without redelivery just ack it."""
        await self.ack(raw_message)
