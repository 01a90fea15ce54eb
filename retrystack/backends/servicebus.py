"""Azure Service Bus broker.

Channels map to topics and subscriptions to topic subscriptions. Service
Bus keeps delivery policy (max delivery count, TTL, dead-letter forwarding)
on subscriptions, not topics, so channel options are stored as JSON in the
topic's ``user_metadata`` and applied to every subscription of the topic,
both when a subscription is created and whenever the channel is updated.

Authentication uses a connection string when given, otherwise the namespace
with ``DefaultAzureCredential``.

Settlement:
    ack    -> complete_message
    nack   -> abandon_message, except on the last allowed delivery of a channel
              that forwards dead letters: the message is stamped with
              ``dead_lettered()`` and published to the forward target, then the
              original is completed. Natively auto-forwarded dead letters (lock
              expiry, TTL) carry no stamp.
    reject -> complete_message; the caller records the rejection. Dead-lettering
              would forward the message into the retry channel.

A subscription filtered by ``create_rule`` also gets a SQL rule accepting any
message that carries dead-letter properties, ours or the native
``DeadLetterReason``.

Bodies that fail to deserialize are handed to the consumer as
``Message.unreadable`` placeholders, which it rejects and records.
"""

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError as AzureResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError as AzureResourceNotFoundError,
    ServiceRequestError,
)
from azure.identity.aio import DefaultAzureCredential
from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode, ServiceBusReceivedMessage
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver, ServiceBusSender
from azure.servicebus.aio.management import ServiceBusAdministrationClient
from azure.servicebus.exceptions import MessageLockLostError as AzureMessageLockLostError
from azure.servicebus.management import CorrelationRuleFilter, SqlRuleFilter
from pydantic import ValidationError

from retrystack.backends.base import ReceivedMessage
from retrystack.core.errors import (
    AdministrativeError,
    MessageLockLostError,
    ResourceConflictError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from retrystack.core.message import DEAD_LETTER_SOURCE, MAX_DELIVERY_EXCEEDED, Message
from retrystack.core.topology import ChannelProperties, FilterRule, SubscriptionProperties

logger = logging.getLogger("retrystack.servicebus")

DEFAULT_RULE_NAME = "$Default"
DEAD_LETTER_RULE_NAME = "DeadLetterForward"
DEAD_LETTER_FILTER = f"{DEAD_LETTER_SOURCE} IS NOT NULL OR DeadLetterReason IS NOT NULL"
_FATAL_STATUS_CODES = {401, 403}


class _translate:
    """Async context manager mapping azure-core errors onto retrystack errors."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            return False
        if isinstance(exc, AzureResourceNotFoundError):
            raise ResourceNotFoundError(self.kind, self.name) from exc
        if isinstance(exc, AzureResourceExistsError):
            raise ResourceExistsError(self.kind, self.name) from exc
        if isinstance(exc, ResourceModifiedError):
            raise ResourceConflictError(self.kind, self.name) from exc
        if isinstance(exc, (ClientAuthenticationError, ServiceRequestError)):
            raise AdministrativeError(self.kind, self.name, str(exc)) from exc
        if isinstance(exc, HttpResponseError):
            if exc.status_code == 409:
                raise ResourceConflictError(self.kind, self.name, str(exc)) from exc
            if exc.status_code in _FATAL_STATUS_CODES:
                raise AdministrativeError(self.kind, self.name, str(exc)) from exc
        return False


def _encode_options(properties: ChannelProperties) -> str:
    return properties.model_dump_json(exclude={"name"})


def _decode_options(name: str, user_metadata: str | None) -> ChannelProperties:
    if user_metadata:
        try:
            return ChannelProperties.model_validate({**json.loads(user_metadata), "name": name})
        except (ValueError, ValidationError):
            logger.warning(f"Topic '{name}' has foreign user_metadata, using defaults")
    return ChannelProperties(name=name)


class ServiceBusBroker:
    """AdminClient and Broker over an Azure Service Bus namespace.

    Args:
        connection_string: Full connection string (local development).
        fully_qualified_namespace: e.g. ``mynamespace.servicebus.windows.net``;
            used with DefaultAzureCredential when no connection string is given.
    """

    def __init__(
        self,
        connection_string: str | None = None,
        fully_qualified_namespace: str | None = None,
    ) -> None:
        if connection_string:
            logger.info("Using connection string authentication")
            self._credential = None
            self.admin = ServiceBusAdministrationClient.from_connection_string(connection_string)
            self.client = ServiceBusClient.from_connection_string(connection_string)
        elif fully_qualified_namespace:
            logger.info(f"Using DefaultAzureCredential for namespace {fully_qualified_namespace}")
            self._credential = DefaultAzureCredential()
            self.admin = ServiceBusAdministrationClient(fully_qualified_namespace, self._credential)
            self.client = ServiceBusClient(fully_qualified_namespace, self._credential)
        else:
            raise ValueError("Either connection_string or fully_qualified_namespace is required")

        self._senders: dict[str, ServiceBusSender] = {}
        self._receivers: dict[tuple[str, str], ServiceBusReceiver] = {}
        self._channels: dict[str, ChannelProperties] = {}

    # ------------------------------------------------------------------
    # AdminClient
    # ------------------------------------------------------------------

    async def get_channel(self, name: str) -> ChannelProperties:
        async with _translate("channel", name):
            topic = await self.admin.get_topic(name)
        self._channels[name] = _decode_options(name, topic.user_metadata)
        return self._channels[name]

    async def create_channel(self, properties: ChannelProperties) -> ChannelProperties:
        async with _translate("channel", properties.name):
            await self.admin.create_topic(properties.name, user_metadata=_encode_options(properties))
        self._channels[properties.name] = properties
        logger.info(f"Created topic '{properties.name}'")
        return properties

    async def update_channel(self, properties: ChannelProperties) -> ChannelProperties:
        async with _translate("channel", properties.name):
            topic = await self.admin.get_topic(properties.name)
            topic.user_metadata = _encode_options(properties)
            await self.admin.update_topic(topic)
            async for subscription in self.admin.list_subscriptions(properties.name):
                self._apply_options(subscription, properties)
                await self.admin.update_subscription(properties.name, subscription)
        self._channels[properties.name] = properties
        return properties

    @staticmethod
    def _subscription_options(properties: ChannelProperties) -> dict[str, Any]:
        options: dict[str, Any] = {
            "max_delivery_count": properties.max_delivery_count,
            "forward_dead_lettered_messages_to": properties.forward_dead_letters_to,
        }
        if properties.message_ttl is not None:
            options["default_message_time_to_live"] = timedelta(seconds=properties.message_ttl)
            options["dead_lettering_on_message_expiration"] = True
        return options

    def _apply_options(self, subscription: Any, properties: ChannelProperties) -> None:
        for key, value in self._subscription_options(properties).items():
            setattr(subscription, key, value)

    async def get_subscription(self, channel: str, name: str) -> SubscriptionProperties:
        async with _translate("subscription", f"{channel}/{name}"):
            await self.admin.get_subscription(channel, name)
        return SubscriptionProperties(channel=channel, name=name)

    async def create_subscription(
        self, channel: str, name: str, rule: FilterRule | None = None
    ) -> SubscriptionProperties:
        options = self._subscription_options(await self.get_channel(channel))
        async with _translate("subscription", f"{channel}/{name}"):
            await self.admin.create_subscription(channel, name, **options)
        logger.info(f"Created subscription '{channel}/{name}'")
        if rule is not None:
            await self.create_rule(channel, name, rule)
        return SubscriptionProperties(channel=channel, name=name)

    async def get_rule(self, channel: str, subscription: str, name: str) -> FilterRule:
        async with _translate("rule", f"{channel}/{subscription}/{name}"):
            rule = await self.admin.get_rule(channel, subscription, name)
        label = getattr(rule.filter, "label", None) or ""
        return FilterRule(name=name, label=label)

    async def create_rule(self, channel: str, subscription: str, rule: FilterRule) -> FilterRule:
        # Created first so a subscription holding ``rule`` always holds it too
        try:
            async with _translate("rule", f"{channel}/{subscription}/{DEAD_LETTER_RULE_NAME}"):
                await self.admin.create_rule(
                    channel,
                    subscription,
                    DEAD_LETTER_RULE_NAME,
                    filter=SqlRuleFilter(DEAD_LETTER_FILTER),
                )
        except ResourceExistsError:
            pass
        async with _translate("rule", f"{channel}/{subscription}/{rule.name}"):
            await self.admin.create_rule(
                channel, subscription, rule.name, filter=CorrelationRuleFilter(label=rule.label)
            )
        # The default TrueFilter would let every message through alongside the new rules
        try:
            async with _translate("rule", f"{channel}/{subscription}/{DEFAULT_RULE_NAME}"):
                await self.admin.delete_rule(channel, subscription, DEFAULT_RULE_NAME)
        except ResourceNotFoundError:
            pass
        return rule

    # ------------------------------------------------------------------
    # Broker
    # ------------------------------------------------------------------

    def _get_sender(self, channel: str) -> ServiceBusSender:
        if channel not in self._senders:
            self._senders[channel] = self.client.get_topic_sender(channel)
        return self._senders[channel]

    def _get_receiver(self, channel: str, subscription: str) -> ServiceBusReceiver:
        key = (channel, subscription)
        if key not in self._receivers:
            self._receivers[key] = self.client.get_subscription_receiver(
                channel, subscription, receive_mode=ServiceBusReceiveMode.PEEK_LOCK
            )
        return self._receivers[key]

    async def publish(self, channel: str, message: Message) -> None:
        sb_message = ServiceBusMessage(
            body=message.to_json(),
            content_type="application/json",
            message_id=message.id,
            subject=message.label or None,
            application_properties=dict(message.properties),
        )
        async with _translate("channel", channel):
            await self._get_sender(channel).send_messages(sb_message)
        logger.debug(f"Published {message.id} to '{channel}'")

    async def receive(
        self, channel: str, subscription: str, timeout: float = 1.0
    ) -> ReceivedMessage | None:
        receiver = self._get_receiver(channel, subscription)
        async with _translate("subscription", f"{channel}/{subscription}"):
            batch = await receiver.receive_messages(max_message_count=1, max_wait_time=timeout)
        if not batch:
            return None

        sb_message = batch[0]
        raw = b"".join(sb_message.body)
        try:
            message = Message.from_json(raw)
        except ValidationError as e:
            logger.error(
                f"Failed to deserialize {sb_message.message_id} on '{channel}/{subscription}': {e}"
            )
            message = Message.unreadable(raw, e, sb_message.message_id)

        return ReceivedMessage(
            message=message,
            channel=channel,
            subscription=subscription,
            delivery_count=sb_message.delivery_count or 1,
            settler=self,
            locked_until=self._lock_deadline(sb_message),
            token=sb_message,
        )

    @staticmethod
    def _lock_deadline(sb_message: ServiceBusReceivedMessage) -> float | None:
        locked_until = sb_message.locked_until_utc
        if locked_until is None:
            return None
        if locked_until.tzinfo is None:
            locked_until = locked_until.replace(tzinfo=UTC)
        return time.monotonic() + (locked_until - datetime.now(UTC)).total_seconds()

    async def complete(self, delivery: ReceivedMessage) -> None:
        receiver = self._get_receiver(delivery.channel, delivery.subscription)
        try:
            await receiver.complete_message(delivery.token)
        except AzureMessageLockLostError as e:
            raise MessageLockLostError(delivery.message.id) from e

    async def _channel_options(self, channel: str) -> ChannelProperties:
        if channel not in self._channels:
            await self.get_channel(channel)
        return self._channels[channel]

    async def abandon(self, delivery: ReceivedMessage) -> None:
        options = await self._channel_options(delivery.channel)
        forward_to = options.forward_dead_letters_to
        if forward_to and delivery.delivery_count >= options.max_delivery_count:
            await self._forward_dead_letter(delivery, forward_to)
            return

        receiver = self._get_receiver(delivery.channel, delivery.subscription)
        try:
            await receiver.abandon_message(delivery.token)
        except AzureMessageLockLostError as e:
            raise MessageLockLostError(delivery.message.id) from e

    async def _forward_dead_letter(self, delivery: ReceivedMessage, forward_to: str) -> None:
        source = f"{delivery.channel}/{delivery.subscription}"
        stamped = delivery.message.dead_lettered(MAX_DELIVERY_EXCEEDED, source)
        # Publish, then complete: a crash in between leaves a duplicate, never a gap
        await self.publish(forward_to, stamped)
        await self.complete(delivery)
        logger.warning(
            f"Dead-lettered {delivery.message.id} from '{source}' to '{forward_to}' "
            f"after {delivery.delivery_count} deliveries"
        )

    async def reject(self, delivery: ReceivedMessage) -> None:
        logger.warning(f"Rejecting {delivery.message.id} without requeue")
        await self.complete(delivery)

    async def close(self) -> None:
        for sender in self._senders.values():
            await sender.close()
        for receiver in self._receivers.values():
            await receiver.close()
        self._senders.clear()
        self._receivers.clear()
        await self.client.close()
        await self.admin.close()
        if self._credential is not None:
            await self._credential.close()
