"""Publisher that stamps messages with labels from the shared topology config."""

import logging
from typing import TYPE_CHECKING, Any

from retrystack.core.config import TopologyConfig
from retrystack.core.message import Message

if TYPE_CHECKING:
    from retrystack.backends.base import Broker

logger = logging.getLogger("retrystack.publisher")


class Publisher:
    """Publishes to the primary channel, or to the retry channel with the retry label.

    The retry label comes from the same ``TopologyConfig`` the provisioner
    used to install the retry filter rule.
    """

    def __init__(self, broker: "Broker", config: TopologyConfig | None = None) -> None:
        self.broker = broker
        self.config = config or TopologyConfig()

    async def publish(
        self,
        payload: dict[str, Any],
        label: str = "",
        properties: dict[str, str] | None = None,
    ) -> Message:
        """Publish a new message to the primary channel."""
        message = Message(label=label, payload=payload, properties=properties or {})
        await self.broker.publish(self.config.primary_channel, message)
        logger.debug(
            f"Published {message.id} to '{self.config.primary_channel}'",
            extra={"channel": self.config.primary_channel, "message_id": message.id},
        )
        return message

    async def publish_for_retry(
        self,
        payload: dict[str, Any],
        properties: dict[str, str] | None = None,
    ) -> Message:
        """Publish to the retry channel, labelled so the retry rule routes it."""
        message = Message(
            label=self.config.retry_label,
            payload=payload,
            properties=properties or {},
        )
        await self.broker.publish(self.config.retry_channel, message)
        logger.info(
            f"Published {message.id} for retry via '{self.config.retry_channel}'",
            extra={
                "channel": self.config.retry_channel,
                "message_id": message.id,
                "label": message.label,
            },
        )
        return message
