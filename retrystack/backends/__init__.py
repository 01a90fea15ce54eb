"""Broker implementations.

The Azure Service Bus broker lives in ``retrystack.backends.servicebus`` and
is imported explicitly, since it needs the ``servicebus`` extra.
"""

from retrystack.backends.base import AdminClient, Broker, ReceivedMessage
from retrystack.backends.inmemory import InMemoryBroker
from retrystack.backends.redis_backend import RedisBroker

__all__ = ["AdminClient", "Broker", "ReceivedMessage", "InMemoryBroker", "RedisBroker"]
