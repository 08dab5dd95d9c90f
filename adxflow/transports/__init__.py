"""Event transports and the factory that picks one from configuration."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import AdxflowConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(transport_config: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    redis_conf = transport_config.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
    )


_BACKENDS = {
    "inmemory": lambda transport_config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[AdxflowConfig] = None
) -> BaseTransport:
    """Build the transport execution events are published on.

    ``backend`` overrides ``ADXFLOW_TRANSPORT``, which overrides the
    configured backend.
    """
    config = config or load_config()
    name = (backend or os.getenv("ADXFLOW_TRANSPORT") or config.transport.backend).lower()
    try:
        build = _BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    logger.debug(f"Using {name} transport for execution events")
    return build(config.transport)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
