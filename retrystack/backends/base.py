"""Broker protocols for topology administration and message delivery.

ALL broker logic lives in backends. The provisioner only talks to an
``AdminClient`` and the consumer only talks to a ``Broker``; neither keeps
any topology or message state of its own.
"""

import time
from collections.abc import Callable
from typing import Protocol

from retrystack.core.errors import MessageAlreadySettledError
from retrystack.core.message import Message
from retrystack.core.topology import ChannelProperties, FilterRule, SubscriptionProperties


class AdminClient(Protocol):
    """Administrative API over channels, subscriptions and filter rules.

    Implementations signal outcomes with exceptions from
    ``retrystack.core.errors``:

    - ``ResourceNotFoundError`` from get/update when the resource is absent
    - ``ResourceExistsError`` from create when the resource already exists
    - ``ResourceConflictError`` from update on concurrent modification
    - ``AdministrativeError`` for auth/permission/connectivity failures

    None of these calls is atomic with any other; check-then-act races
    between replicas are expected.
    """

    async def get_channel(self, name: str) -> ChannelProperties: ...

    async def create_channel(self, properties: ChannelProperties) -> ChannelProperties: ...

    async def update_channel(self, properties: ChannelProperties) -> ChannelProperties: ...

    async def get_subscription(self, channel: str, name: str) -> SubscriptionProperties: ...

    async def create_subscription(
        self, channel: str, name: str, rule: FilterRule | None = None
    ) -> SubscriptionProperties: ...

    async def get_rule(self, channel: str, subscription: str, name: str) -> FilterRule: ...

    async def create_rule(self, channel: str, subscription: str, rule: FilterRule) -> FilterRule: ...


class Settler(Protocol):
    """Broker-side settlement of one delivery."""

    async def complete(self, delivery: "ReceivedMessage") -> None: ...

    async def abandon(self, delivery: "ReceivedMessage") -> None: ...

    async def reject(self, delivery: "ReceivedMessage") -> None: ...


class ReceivedMessage:
    """A message delivered under a lease, awaiting manual settlement.

    Exactly one of ``ack()``, ``nack()`` or ``reject()`` may be called.

    Attributes:
        message: The delivered Message.
        channel: Channel the message was received from.
        subscription: Subscription the message was received from.
        delivery_count: Broker-maintained count, 1 on first delivery.
        locked_until: Lease deadline on the ``clock`` timeline (``time.monotonic``
            by default), or None if the broker does not expose one.
        token: Backend-specific handle (stream entry id, lock token, ...).
    """

    def __init__(
        self,
        message: Message,
        channel: str,
        subscription: str,
        delivery_count: int,
        settler: Settler,
        locked_until: float | None = None,
        token: object = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.message = message
        self.channel = channel
        self.subscription = subscription
        self.delivery_count = delivery_count
        self.locked_until = locked_until
        self.token = token
        self._settler = settler
        self._clock = clock
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def lock_remaining(self) -> float | None:
        """Seconds until the lease expires, or None if unknown."""
        if self.locked_until is None:
            return None
        return self.locked_until - self._clock()

    def _begin_settle(self) -> None:
        if self._settled:
            raise MessageAlreadySettledError(self.message.id)
        self._settled = True

    async def ack(self) -> None:
        """Complete the message; the broker removes it permanently."""
        self._begin_settle()
        await self._settler.complete(self)

    async def nack(self) -> None:
        """Release the lease; the broker redelivers or dead-letters."""
        self._begin_settle()
        await self._settler.abandon(self)

    async def reject(self) -> None:
        """Remove the message without requeue."""
        self._begin_settle()
        await self._settler.reject(self)

    def __repr__(self) -> str:
        return (
            f"ReceivedMessage(id={self.message.id!r}, channel={self.channel!r}, "
            f"subscription={self.subscription!r}, delivery_count={self.delivery_count})"
        )


class Broker(Protocol):
    """Data-plane API: publish and receive with manual settlement."""

    async def publish(self, channel: str, message: Message) -> None:
        """Publish to every subscription of ``channel`` whose filter matches."""
        ...

    async def receive(
        self, channel: str, subscription: str, timeout: float = 1.0
    ) -> ReceivedMessage | None:
        """Receive the next message under a lease.

        Returns:
            The delivery, or None if ``timeout`` expires with nothing available.
        """
        ...

    async def close(self) -> None: ...
