"""Transports carrying process-run requests to workers."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import IntentflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(config: IntentflowConfig) -> BaseTransport:
    from .redis import RedisTransport

    conf = config.transport.redis
    return RedisTransport(host=conf.host, port=conf.port, db=conf.db, password=conf.password)


_BACKENDS: Dict[str, Callable[[IntentflowConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[IntentflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``INTENTFLOW_TRANSPORT`` or config."""
    config = config or load_config()
    name = (backend or os.getenv("INTENTFLOW_TRANSPORT") or config.transport.backend).lower()
    try:
        factory = _BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    return factory(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
