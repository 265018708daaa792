"""Durable storage behind the job queues.

- RedisBroker: shared Redis connection for multi-process deployments
- InMemoryBroker: single-process broker with identical semantics
"""

from cartojobs.broker.base import Broker, Bucket
from cartojobs.broker.factory import create_broker
from cartojobs.broker.memory import InMemoryBroker
from cartojobs.broker.redis import RedisBroker

__all__ = [
    "Broker",
    "Bucket",
    "InMemoryBroker",
    "RedisBroker",
    "create_broker",
]
