"""Topology configuration shared by the provisioner and the publisher.

Both sides read channel names and the retry label from one ``TopologyConfig``
so the names used to create the topology and the label stamped on retried
messages cannot drift apart.

Environment variables (all optional, read by ``TopologyConfig.from_env``):

    RETRYSTACK_PRIMARY_CHANNEL
    RETRYSTACK_PRIMARY_SUBSCRIPTION
    RETRYSTACK_RETRY_CHANNEL
    RETRYSTACK_RETRY_SUBSCRIPTION
    RETRYSTACK_RETRY_LABEL
    RETRYSTACK_RETRY_RULE_NAME
    RETRYSTACK_MAX_DELIVERY_COUNT
    RETRYSTACK_RETRY_DELAY
    RETRYSTACK_MAX_RETRY_CYCLES
    RETRYSTACK_DURABLE
    RETRYSTACK_ADMIN_ATTEMPTS
    RETRYSTACK_ADMIN_BASE_DELAY
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "RETRYSTACK_"

PRIMARY_CHANNEL = "image-processing"
PRIMARY_SUBSCRIPTION = "image-processing"
RETRY_CHANNEL = "image-processing-retry"
RETRY_SUBSCRIPTION = "image-processing-retry"
RETRY_LABEL = "retry"
RETRY_RULE_NAME = "RouteKey"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class TopologyConfig(BaseModel):
    """Names and policies for the primary/retry topology."""

    primary_channel: str = PRIMARY_CHANNEL
    primary_subscription: str = PRIMARY_SUBSCRIPTION
    retry_channel: str = RETRY_CHANNEL
    retry_subscription: str = RETRY_SUBSCRIPTION
    retry_label: str = RETRY_LABEL
    retry_rule_name: str = RETRY_RULE_NAME

    max_delivery_count: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=30.0, gt=0)
    max_retry_cycles: int = Field(default=3, ge=0)
    durable: bool = True

    admin_attempts: int = Field(default=3, ge=1)
    admin_base_delay: float = Field(default=0.1, ge=0)

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _distinct_channels(self) -> "TopologyConfig":
        if self.primary_channel == self.retry_channel:
            raise ValueError("primary_channel and retry_channel must differ")
        if not self.retry_label.strip():
            raise ValueError("retry_label must not be empty")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TopologyConfig":
        """Build a config from ``RETRYSTACK_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        for field_name, field_info in cls.model_fields.items():
            raw = env.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is None:
                continue
            if field_info.annotation is bool:
                values[field_name] = raw.strip().lower() in _TRUE_VALUES
            else:
                values[field_name] = raw

        return cls.model_validate(values)
