"""In-memory broker with topic/subscription semantics.

Suitable for development and testing. Nothing is durable: all channels,
subscriptions and messages are lost when the process terminates.

Implemented broker behavior:

- publish fans out to every subscription whose filter rules match the label
- peek-lock receive with a lease of ``lock_duration`` seconds
- delivery counts; abandoning (or losing the lease on) a message whose count
  reached the channel's ``max_delivery_count`` dead-letters it
- per-channel ``message_ttl``; expired messages are dead-lettered
- dead letters are forwarded to the channel named by
  ``forward_dead_letters_to`` (bypassing that channel's filters), or kept in
  the subscription's dead-letter sub-queue when no forward is configured

Every administrative call yields to the event loop before it inspects state,
so concurrent provisioners interleave between their check and act steps
exactly as independent replicas do against a real broker.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from itertools import count

from retrystack.backends.base import ReceivedMessage
from retrystack.core.errors import (
    MessageLockLostError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from retrystack.core.message import MAX_DELIVERY_EXCEEDED, TTL_EXPIRED, Message
from retrystack.core.topology import (
    ChannelProperties,
    FilterRule,
    SubscriptionProperties,
    rules_match,
)

logger = logging.getLogger("retrystack.inmemory")

# How often a blocked receive re-checks leases and expiry
_POLL_INTERVAL = 0.05


@dataclass
class _Entry:
    message: Message
    delivery_count: int = 0
    expires_at: float | None = None
    locked_until: float | None = None
    token: int | None = None


@dataclass
class _Subscription:
    properties: SubscriptionProperties
    rules: dict[str, FilterRule] = field(default_factory=dict)
    backlog: deque[_Entry] = field(default_factory=deque)
    leased: dict[int, _Entry] = field(default_factory=dict)
    dead_letters: list[_Entry] = field(default_factory=list)
    rejected: list[_Entry] = field(default_factory=list)
    available: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryBroker:
    """AdminClient and Broker backed by process memory.

    Args:
        lock_duration: Lease length in seconds for received messages.
        validate_forward_targets: If True, create/update of a channel whose
            ``forward_dead_letters_to`` names a missing channel raises
            ResourceNotFoundError (and is counted in ``invalid_forward_attempts``).
        clock: Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        lock_duration: float = 30.0,
        validate_forward_targets: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lock_duration = lock_duration
        self.validate_forward_targets = validate_forward_targets
        self._clock = clock
        self._channels: dict[str, ChannelProperties] = {}
        self._subscriptions: dict[tuple[str, str], _Subscription] = {}
        self._tokens = count(1)
        self._failures: dict[str, deque[Exception]] = {}
        self.admin_calls: list[tuple[str, str]] = []
        self.invalid_forward_attempts = 0

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        queue = self._failures.setdefault(operation, deque())
        queue.extend([error] * times)

    async def _admin_call(self, operation: str, name: str) -> None:
        self.admin_calls.append((operation, name))
        # Yield between the caller's check and act steps
        await asyncio.sleep(0)
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    def calls(self, operation: str) -> list[str]:
        return [name for op, name in self.admin_calls if op == operation]

    # ------------------------------------------------------------------
    # AdminClient
    # ------------------------------------------------------------------

    async def get_channel(self, name: str) -> ChannelProperties:
        await self._admin_call("get_channel", name)
        try:
            return self._channels[name]
        except KeyError:
            raise ResourceNotFoundError("channel", name) from None

    async def create_channel(self, properties: ChannelProperties) -> ChannelProperties:
        await self._admin_call("create_channel", properties.name)
        if properties.name in self._channels:
            raise ResourceExistsError("channel", properties.name)
        self._check_forward_target(properties)
        self._channels[properties.name] = properties
        logger.debug(f"Created channel '{properties.name}'")
        return properties

    async def update_channel(self, properties: ChannelProperties) -> ChannelProperties:
        await self._admin_call("update_channel", properties.name)
        if properties.name not in self._channels:
            raise ResourceNotFoundError("channel", properties.name)
        self._check_forward_target(properties)
        self._channels[properties.name] = properties
        return properties

    def _check_forward_target(self, properties: ChannelProperties) -> None:
        target = properties.forward_dead_letters_to
        if self.validate_forward_targets and target and target not in self._channels:
            self.invalid_forward_attempts += 1
            raise ResourceNotFoundError("channel", target, f"forward target {target!r} not found")

    async def get_subscription(self, channel: str, name: str) -> SubscriptionProperties:
        await self._admin_call("get_subscription", f"{channel}/{name}")
        return self._subscription(channel, name).properties

    async def create_subscription(
        self, channel: str, name: str, rule: FilterRule | None = None
    ) -> SubscriptionProperties:
        await self._admin_call("create_subscription", f"{channel}/{name}")
        if channel not in self._channels:
            raise ResourceNotFoundError("channel", channel)
        if (channel, name) in self._subscriptions:
            raise ResourceExistsError("subscription", f"{channel}/{name}")
        state = _Subscription(properties=SubscriptionProperties(channel=channel, name=name))
        if rule is not None:
            state.rules[rule.name] = rule
        self._subscriptions[(channel, name)] = state
        return state.properties

    async def get_rule(self, channel: str, subscription: str, name: str) -> FilterRule:
        await self._admin_call("get_rule", f"{channel}/{subscription}/{name}")
        state = self._subscription(channel, subscription)
        try:
            return state.rules[name]
        except KeyError:
            raise ResourceNotFoundError("rule", f"{channel}/{subscription}/{name}") from None

    async def create_rule(self, channel: str, subscription: str, rule: FilterRule) -> FilterRule:
        await self._admin_call("create_rule", f"{channel}/{subscription}/{rule.name}")
        state = self._subscription(channel, subscription)
        if rule.name in state.rules:
            raise ResourceExistsError("rule", f"{channel}/{subscription}/{rule.name}")
        state.rules[rule.name] = rule
        return rule

    def _subscription(self, channel: str, name: str) -> _Subscription:
        try:
            return self._subscriptions[(channel, name)]
        except KeyError:
            raise ResourceNotFoundError("subscription", f"{channel}/{name}") from None

    def _channel_subscriptions(self, channel: str) -> list[_Subscription]:
        return [s for (c, _), s in self._subscriptions.items() if c == channel]

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------

    async def publish(self, channel: str, message: Message) -> None:
        if channel not in self._channels:
            raise ResourceNotFoundError("channel", channel)
        self._sweep()
        delivered = 0
        for state in self._channel_subscriptions(channel):
            if rules_match(list(state.rules.values()), message.label):
                self._append(channel, state, message)
                delivered += 1
        logger.debug(f"Published {message.id} to '{channel}' ({delivered} subscriptions)")

    def _append(self, channel: str, state: _Subscription, message: Message) -> None:
        ttl = self._channels[channel].message_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        state.backlog.append(_Entry(message=message, expires_at=expires_at))
        state.available.set()

    async def receive(
        self, channel: str, subscription: str, timeout: float = 1.0
    ) -> ReceivedMessage | None:
        state = self._subscription(channel, subscription)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            self._sweep()
            if state.backlog:
                return self._lease(state, state.backlog.popleft())

            state.available.clear()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(
                    state.available.wait(), timeout=min(remaining, _POLL_INTERVAL)
                )
            except TimeoutError:
                pass

    def _lease(self, state: _Subscription, entry: _Entry) -> ReceivedMessage:
        entry.delivery_count += 1
        entry.token = next(self._tokens)
        entry.locked_until = self._clock() + self.lock_duration
        state.leased[entry.token] = entry
        return ReceivedMessage(
            message=entry.message,
            channel=state.properties.channel,
            subscription=state.properties.name,
            delivery_count=entry.delivery_count,
            settler=self,
            locked_until=entry.locked_until,
            token=entry.token,
            clock=self._clock,
        )

    def _take_lease(self, delivery: ReceivedMessage) -> tuple[_Subscription, _Entry]:
        state = self._subscription(delivery.channel, delivery.subscription)
        entry = state.leased.get(delivery.token)  # type: ignore[arg-type]
        if entry is None or (entry.locked_until is not None and self._clock() > entry.locked_until):
            raise MessageLockLostError(delivery.message.id)
        del state.leased[entry.token]  # type: ignore[arg-type]
        entry.locked_until = None
        entry.token = None
        return state, entry

    async def complete(self, delivery: ReceivedMessage) -> None:
        self._take_lease(delivery)

    async def abandon(self, delivery: ReceivedMessage) -> None:
        state, entry = self._take_lease(delivery)
        self._release(state, entry)

    async def reject(self, delivery: ReceivedMessage) -> None:
        state, entry = self._take_lease(delivery)
        state.rejected.append(entry)

    def _release(self, state: _Subscription, entry: _Entry) -> None:
        max_count = self._channels[state.properties.channel].max_delivery_count
        if entry.delivery_count >= max_count:
            self._dead_letter(state, entry, MAX_DELIVERY_EXCEEDED)
        else:
            state.backlog.appendleft(entry)
            state.available.set()

    def _dead_letter(self, state: _Subscription, entry: _Entry, reason: str) -> None:
        source = state.properties.channel
        target = self._channels[source].forward_dead_letters_to
        message = entry.message.dead_lettered(reason, state.properties.path)
        if target and target in self._channels:
            for target_state in self._channel_subscriptions(target):
                self._append(target, target_state, message)
            logger.info(
                f"Forwarded dead letter {message.id} from '{source}' to '{target}' ({reason})"
            )
        else:
            state.dead_letters.append(_Entry(message=message, delivery_count=entry.delivery_count))
            logger.info(f"Dead-lettered {message.id} on '{state.properties.path}' ({reason})")

    def _sweep(self) -> None:
        """Reclaim expired leases and dead-letter expired messages."""
        now = self._clock()
        for state in list(self._subscriptions.values()):
            for token, entry in list(state.leased.items()):
                if entry.locked_until is not None and now > entry.locked_until:
                    del state.leased[token]
                    entry.locked_until = None
                    entry.token = None
                    self._release(state, entry)

            if any(e.expires_at is not None and now >= e.expires_at for e in state.backlog):
                keep: deque[_Entry] = deque()
                expired: list[_Entry] = []
                for entry in state.backlog:
                    if entry.expires_at is not None and now >= entry.expires_at:
                        expired.append(entry)
                    else:
                        keep.append(entry)
                state.backlog = keep
                for entry in expired:
                    self._dead_letter(state, entry, TTL_EXPIRED)

    def sweep(self) -> None:
        """Run lease and expiry processing now (normally done on publish/receive)."""
        self._sweep()

    async def close(self) -> None:
        for state in self._subscriptions.values():
            state.backlog.clear()
            state.leased.clear()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def channel(self, name: str) -> ChannelProperties | None:
        return self._channels.get(name)

    def channel_names(self) -> list[str]:
        return list(self._channels)

    def rules(self, channel: str, subscription: str) -> list[FilterRule]:
        return list(self._subscription(channel, subscription).rules.values())

    def peek(self, channel: str, subscription: str) -> list[Message]:
        """Messages waiting on a subscription, without sweeping."""
        return [e.message for e in self._subscription(channel, subscription).backlog]

    def dead_letters(self, channel: str, subscription: str) -> list[Message]:
        return [e.message for e in self._subscription(channel, subscription).dead_letters]

    def rejected(self, channel: str, subscription: str) -> list[Message]:
        return [e.message for e in self._subscription(channel, subscription).rejected]

    def in_flight(self, channel: str, subscription: str) -> int:
        return len(self._subscription(channel, subscription).leased)
