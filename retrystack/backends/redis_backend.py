"""Redis broker: topology metadata in keys, one stream per subscription.

Features:
- Channel/subscription/rule metadata with SET NX / HSETNX as the
  already-exists signal and WATCH/MULTI for conflicting updates
- Topic fan-out with correlation filter rules evaluated at publish time
- Consumer groups with XREADGROUP/XACK, one stream per subscription
- Lease recovery of stalled deliveries (XPENDING/XCLAIM)
- Delivery counts, max-delivery dead-lettering and message TTL expiry
- Dead-letter forwarding to another channel, or a per-subscription DLQ stream
- Connection pooling with reconnection

Key layout (``ns`` defaults to ``retrystack``)::

    {ns}:channel:{channel}                 JSON ChannelProperties
    {ns}:channel:{channel}:subscriptions   SET of subscription names
    {ns}:subscription:{channel}:{sub}      JSON SubscriptionProperties
    {ns}:rules:{channel}:{sub}             HASH rule name -> JSON FilterRule
    {ns}:stream:{channel}:{sub}            STREAM of deliveries
    {ns}:stream:{channel}:{sub}:dlq        STREAM of parked dead letters
    {ns}:expiring                          SET of JSON [channel, sub] with a TTL
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import wraps
from typing import Any, TypeVar
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import (
    AuthenticationError,
    ConnectionError as RedisConnectionError,
    NoPermissionError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from retrystack.backends.base import ReceivedMessage
from retrystack.core.errors import (
    AdministrativeError,
    MessageLockLostError,
    ResourceConflictError,
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

logger = logging.getLogger("retrystack.redis")

T = TypeVar("T")

_FATAL_REDIS_ERRORS = (AuthenticationError, NoPermissionError, RedisConnectionError, RedisTimeoutError)


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _admin_call(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate transport/auth failures into AdministrativeError."""

    @wraps(func)
    async def wrapper(self: "RedisBroker", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except _FATAL_REDIS_ERRORS as e:
            raise AdministrativeError("broker", self._url_safe, f"Redis unavailable: {e}") from e

    return wrapper


@dataclass
class RedisMetrics:
    """Redis broker metrics."""

    messages_published: int = 0
    messages_received: int = 0
    messages_completed: int = 0
    messages_abandoned: int = 0
    messages_rejected: int = 0
    dead_lettered: int = 0
    reconnections: int = 0
    leases_recovered: int = 0


class RedisBroker:
    """AdminClient and Broker over Redis Streams with consumer groups."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        namespace: str = "retrystack",
        consumer_group: str = "retrystack",
        consumer_name: str | None = None,
        pool_size: int = 10,
        lock_duration: float = 30.0,
        sweep_batch: int = 100,
    ) -> None:
        """Initialize Redis broker.

        Args:
            redis_url: Redis connection URL.
            namespace: Key prefix for all topology keys.
            consumer_group: Consumer group created on every subscription stream.
            consumer_name: Unique consumer name (auto-generated if None).
            pool_size: Connection pool size.
            lock_duration: Seconds a delivery stays leased before it may be
                reclaimed by another consumer.
            sweep_batch: Max entries inspected per subscription per TTL sweep.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.namespace = namespace
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self._pool_size = pool_size
        self.lock_duration = lock_duration
        self._sweep_batch = sweep_batch

        self._redis: redis.Redis | None = None
        self._connected = False
        self._groups_created: set[str] = set()
        self._metrics = RedisMetrics()
        self._conn_lock = asyncio.Lock()

    @property
    def redis_url(self) -> str:
        return self._url

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _channel_key(self, channel: str) -> str:
        return f"{self.namespace}:channel:{channel}"

    def _channel_subs_key(self, channel: str) -> str:
        return f"{self.namespace}:channel:{channel}:subscriptions"

    def _subscription_key(self, channel: str, name: str) -> str:
        return f"{self.namespace}:subscription:{channel}:{name}"

    def _rules_key(self, channel: str, name: str) -> str:
        return f"{self.namespace}:rules:{channel}:{name}"

    def stream_key(self, channel: str, name: str) -> str:
        return f"{self.namespace}:stream:{channel}:{name}"

    def dlq_key(self, channel: str, name: str) -> str:
        return f"{self.stream_key(channel, name)}:dlq"

    @property
    def _expiring_key(self) -> str:
        return f"{self.namespace}:expiring"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _get_client(self) -> redis.Redis:
        """Get Redis client with connection pooling, reconnecting if needed."""
        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except _FATAL_REDIS_ERRORS as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except _FATAL_REDIS_ERRORS:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected

            pool = redis.ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            new_redis = redis.Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except Exception:
                await new_redis.aclose()
                raise

            self._redis = new_redis
            self._connected = True
            if is_reconnection:
                self._metrics.reconnections += 1
                self._groups_created.clear()
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")

            return self._redis

    async def _ensure_consumer_group(self, stream: str) -> None:
        """Create the consumer group on a subscription stream if missing."""
        if stream in self._groups_created:
            return

        client = await self._get_client()
        try:
            await client.xgroup_create(stream, self.consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{self.consumer_group}' on '{stream}'")
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.debug(f"Consumer group '{self.consumer_group}' already exists")
            else:
                raise
        self._groups_created.add(stream)

    # ------------------------------------------------------------------
    # AdminClient
    # ------------------------------------------------------------------

    async def _load_channel(self, channel: str) -> ChannelProperties:
        client = await self._get_client()
        raw = await client.get(self._channel_key(channel))
        if raw is None:
            raise ResourceNotFoundError("channel", channel)
        return ChannelProperties.model_validate_json(raw)

    @_admin_call
    async def get_channel(self, name: str) -> ChannelProperties:
        return await self._load_channel(name)

    @_admin_call
    async def create_channel(self, properties: ChannelProperties) -> ChannelProperties:
        client = await self._get_client()
        created = await client.set(
            self._channel_key(properties.name), properties.model_dump_json(), nx=True
        )
        if not created:
            raise ResourceExistsError("channel", properties.name)
        logger.info(f"Created channel '{properties.name}'")
        return properties

    @_admin_call
    async def update_channel(self, properties: ChannelProperties) -> ChannelProperties:
        client = await self._get_client()
        key = self._channel_key(properties.name)
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    raise ResourceNotFoundError("channel", properties.name)
                pipe.multi()
                pipe.set(key, properties.model_dump_json())
                await pipe.execute()
        except WatchError as e:
            raise ResourceConflictError("channel", properties.name) from e
        return properties

    @_admin_call
    async def get_subscription(self, channel: str, name: str) -> SubscriptionProperties:
        client = await self._get_client()
        raw = await client.get(self._subscription_key(channel, name))
        if raw is None:
            raise ResourceNotFoundError("subscription", f"{channel}/{name}")
        return SubscriptionProperties.model_validate_json(raw)

    @_admin_call
    async def create_subscription(
        self, channel: str, name: str, rule: FilterRule | None = None
    ) -> SubscriptionProperties:
        properties = SubscriptionProperties(channel=channel, name=name)
        channel_props = await self._load_channel(channel)
        client = await self._get_client()

        created = await client.set(
            self._subscription_key(channel, name), properties.model_dump_json(), nx=True
        )
        if not created:
            raise ResourceExistsError("subscription", properties.path)

        if rule is not None:
            await client.hsetnx(self._rules_key(channel, name), rule.name, rule.model_dump_json())
        await self._ensure_consumer_group(self.stream_key(channel, name))
        if channel_props.message_ttl is not None:
            await client.sadd(self._expiring_key, json.dumps([channel, name]))
        await client.sadd(self._channel_subs_key(channel), name)

        logger.info(f"Created subscription '{properties.path}'")
        return properties

    @_admin_call
    async def get_rule(self, channel: str, subscription: str, name: str) -> FilterRule:
        await self.get_subscription(channel, subscription)
        client = await self._get_client()
        raw = await client.hget(self._rules_key(channel, subscription), name)
        if raw is None:
            raise ResourceNotFoundError("rule", f"{channel}/{subscription}/{name}")
        return FilterRule.model_validate_json(raw)

    @_admin_call
    async def create_rule(self, channel: str, subscription: str, rule: FilterRule) -> FilterRule:
        await self.get_subscription(channel, subscription)
        client = await self._get_client()
        created = await client.hsetnx(
            self._rules_key(channel, subscription), rule.name, rule.model_dump_json()
        )
        if not created:
            raise ResourceExistsError("rule", f"{channel}/{subscription}/{rule.name}")
        return rule

    async def _rules(self, channel: str, subscription: str) -> list[FilterRule]:
        client = await self._get_client()
        raw_rules = await client.hvals(self._rules_key(channel, subscription))
        return [FilterRule.model_validate_json(raw) for raw in raw_rules]

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------

    async def _append(
        self,
        channel: ChannelProperties,
        subscription: str,
        message: Message,
        delivery_count: int = 0,
    ) -> None:
        client = await self._get_client()
        fields = {"message": message.to_json(), "delivery_count": str(delivery_count)}
        if channel.message_ttl is not None:
            fields["expires_at"] = str(time.time() + channel.message_ttl)
        await client.xadd(self.stream_key(channel.name, subscription), fields)

    async def publish(self, channel: str, message: Message) -> None:
        """Fan out to every subscription of ``channel`` whose rules match."""
        channel_props = await self._load_channel(channel)
        client = await self._get_client()

        delivered = 0
        for subscription in await client.smembers(self._channel_subs_key(channel)):
            if rules_match(await self._rules(channel, subscription), message.label):
                await self._append(channel_props, subscription, message)
                delivered += 1

        self._metrics.messages_published += 1
        logger.debug(f"Published {message.id} to '{channel}' ({delivered} subscriptions)")

    async def _dead_letter(
        self, channel: str, subscription: str, entry_id: str, message: Message, reason: str
    ) -> None:
        """Forward a dead letter, or park it on the subscription's DLQ stream."""
        client = await self._get_client()
        stamped = message.dead_lettered(reason, f"{channel}/{subscription}")

        channel_props = await self._load_channel(channel)
        target_name = channel_props.forward_dead_letters_to
        target: ChannelProperties | None = None
        if target_name:
            try:
                target = await self._load_channel(target_name)
            except ResourceNotFoundError:
                logger.warning(f"Forward target '{target_name}' of '{channel}' does not exist")

        if target is not None:
            for target_sub in await client.smembers(self._channel_subs_key(target.name)):
                await self._append(target, target_sub, stamped)
            logger.info(f"Forwarded dead letter {message.id} from '{channel}' to '{target.name}' ({reason})")
        else:
            await client.xadd(
                self.dlq_key(channel, subscription),
                {
                    "original_id": entry_id,
                    "message": stamped.to_json(),
                    "reason": reason,
                    "failed_at": datetime.now(UTC).isoformat(),
                },
            )
            logger.warning(f"Moved {message.id} to DLQ of '{channel}/{subscription}': {reason}")

        await self._remove(channel, subscription, entry_id)
        self._metrics.dead_lettered += 1

    async def _remove(self, channel: str, subscription: str, entry_id: str) -> None:
        client = await self._get_client()
        stream = self.stream_key(channel, subscription)
        async with client.pipeline(transaction=True) as pipe:
            pipe.xack(stream, self.consumer_group, entry_id)
            pipe.xdel(stream, entry_id)
            await pipe.execute()

    async def _decode(
        self, channel: str, subscription: str, entry_id: str, data: dict[str, str]
    ) -> Message | None:
        """Parse a stream entry. Undecodable entries are parked on the DLQ."""
        try:
            return Message.from_json(data["message"])
        except (KeyError, ValidationError) as e:
            logger.error(f"Failed to deserialize {entry_id} on '{channel}/{subscription}': {e}")
            client = await self._get_client()
            await client.xadd(
                self.dlq_key(channel, subscription),
                {
                    "original_id": entry_id,
                    "message": data.get("message", ""),
                    "reason": f"undeserializable: {e}",
                    "failed_at": datetime.now(UTC).isoformat(),
                },
            )
            await self._remove(channel, subscription, entry_id)
            return None

    async def sweep_expired(self) -> int:
        """Dead-letter entries past their TTL on every subscription with one.

        Returns:
            Number of expired entries dead-lettered.
        """
        client = await self._get_client()
        now = time.time()
        expired = 0
        for raw in await client.smembers(self._expiring_key):
            channel, subscription = json.loads(raw)
            stream = self.stream_key(channel, subscription)
            for entry_id, data in await client.xrange(stream, count=self._sweep_batch):
                expires_at = data.get("expires_at")
                if expires_at is None or float(expires_at) > now:
                    continue
                message = await self._decode(channel, subscription, entry_id, data)
                if message is not None:
                    await self._dead_letter(channel, subscription, entry_id, message, TTL_EXPIRED)
                    expired += 1
        return expired

    def _delivery(
        self,
        channel: str,
        subscription: str,
        entry_id: str,
        message: Message,
        delivery_count: int,
    ) -> ReceivedMessage:
        self._metrics.messages_received += 1
        return ReceivedMessage(
            message=message,
            channel=channel,
            subscription=subscription,
            delivery_count=delivery_count,
            settler=self,
            locked_until=time.monotonic() + self.lock_duration,
            token=entry_id,
        )

    async def _recover_leases(self, channel: str, subscription: str) -> ReceivedMessage | None:
        """Claim a delivery whose lease expired on another (or a crashed) consumer."""
        client = await self._get_client()
        stream = self.stream_key(channel, subscription)
        min_idle_ms = int(self.lock_duration * 1000)

        pending = await client.xpending_range(stream, self.consumer_group, min="-", max="+", count=10)
        for entry in pending:
            if entry["time_since_delivered"] < min_idle_ms:
                continue
            msg_id = entry["message_id"]
            try:
                claimed = await client.xclaim(
                    stream,
                    self.consumer_group,
                    self.consumer_name,
                    min_idle_time=min_idle_ms,
                    message_ids=[msg_id],
                )
            except ResponseError as e:
                logger.warning(f"Failed to claim {msg_id}: {e}")
                continue
            if not claimed:
                continue

            entry_id, data = claimed[0]
            message = await self._decode(channel, subscription, entry_id, data)
            if message is None:
                continue

            # The expired lease counted as a delivery
            previous = int(data.get("delivery_count", "0")) + int(entry["times_delivered"])
            channel_props = await self._load_channel(channel)
            if previous >= channel_props.max_delivery_count:
                await self._dead_letter(channel, subscription, entry_id, message, MAX_DELIVERY_EXCEEDED)
                continue

            self._metrics.leases_recovered += 1
            return self._delivery(channel, subscription, entry_id, message, previous + 1)

        return None

    async def receive(
        self, channel: str, subscription: str, timeout: float = 1.0
    ) -> ReceivedMessage | None:
        """Read the next delivery using XREADGROUP."""
        stream = self.stream_key(channel, subscription)
        await self._ensure_consumer_group(stream)
        await self.sweep_expired()

        recovered = await self._recover_leases(channel, subscription)
        if recovered is not None:
            return recovered

        client = await self._get_client()
        response = await client.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={stream: ">"},
            count=1,
            block=max(1, int(timeout * 1000)),
        )
        if not response:
            return None

        _, entries = response[0]
        if not entries:
            return None

        entry_id, data = entries[0]
        message = await self._decode(channel, subscription, entry_id, data)
        if message is None:
            return None
        return self._delivery(
            channel, subscription, entry_id, message, int(data.get("delivery_count", "0")) + 1
        )

    async def _check_lease(self, delivery: ReceivedMessage) -> None:
        """Raise MessageLockLostError unless this consumer still owns the entry."""
        client = await self._get_client()
        stream = self.stream_key(delivery.channel, delivery.subscription)
        entry_id = str(delivery.token)
        pending = await client.xpending_range(
            stream, self.consumer_group, min=entry_id, max=entry_id, count=1
        )
        if not pending or pending[0]["consumer"] != self.consumer_name:
            raise MessageLockLostError(delivery.message.id)

    async def complete(self, delivery: ReceivedMessage) -> None:
        await self._check_lease(delivery)
        await self._remove(delivery.channel, delivery.subscription, str(delivery.token))
        self._metrics.messages_completed += 1
        logger.debug(f"Completed {delivery.message.id}")

    async def abandon(self, delivery: ReceivedMessage) -> None:
        await self._check_lease(delivery)
        channel_props = await self._load_channel(delivery.channel)
        entry_id = str(delivery.token)

        if delivery.delivery_count >= channel_props.max_delivery_count:
            await self._dead_letter(
                delivery.channel, delivery.subscription, entry_id, delivery.message, MAX_DELIVERY_EXCEEDED
            )
        else:
            # Requeue a fresh entry carrying the count; streams have no in-place release
            await self._append(channel_props, delivery.subscription, delivery.message, delivery.delivery_count)
            await self._remove(delivery.channel, delivery.subscription, entry_id)
        self._metrics.messages_abandoned += 1

    async def reject(self, delivery: ReceivedMessage) -> None:
        await self._check_lease(delivery)
        client = await self._get_client()
        entry_id = str(delivery.token)
        await client.xadd(
            self.dlq_key(delivery.channel, delivery.subscription),
            {
                "original_id": entry_id,
                "message": delivery.message.to_json(),
                "reason": "rejected",
                "failed_at": datetime.now(UTC).isoformat(),
            },
        )
        await self._remove(delivery.channel, delivery.subscription, entry_id)
        self._metrics.messages_rejected += 1

    async def dead_letters(self, channel: str, subscription: str) -> list[Message]:
        """Messages parked on a subscription's DLQ stream."""
        client = await self._get_client()
        entries = await client.xrange(self.dlq_key(channel, subscription))
        return [Message.from_json(data["message"]) for _, data in entries if data.get("message")]

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def delete_namespace(self) -> None:
        """Delete every key under the namespace (for testing)."""
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{self.namespace}:*")]
        if keys:
            await client.delete(*keys)
        self._groups_created.clear()
