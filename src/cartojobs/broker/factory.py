"""Broker construction from settings."""

from __future__ import annotations

import logging

from cartojobs.broker.base import Broker
from cartojobs.broker.memory import InMemoryBroker
from cartojobs.broker.redis import RedisBroker
from cartojobs.config import Settings

logger = logging.getLogger(__name__)


def create_broker(settings: Settings) -> Broker:
    """Create the process-wide broker for the configured backend.

    The caller owns the returned broker and must close it on shutdown.
    """
    backend = settings.broker_backend.lower()
    if backend == "memory":
        logger.info("Using in-memory broker")
        return InMemoryBroker()
    if backend == "redis":
        return RedisBroker.from_url(settings.redis_url, prefix=settings.key_prefix)
    raise ValueError(f"Unknown broker backend: {settings.broker_backend}")
