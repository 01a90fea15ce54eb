"""Core components for retrystack.

Types:
    Message: Immutable, validated message envelope with label and payload.
    ChannelProperties / SubscriptionProperties / FilterRule: topology resources.
    TopologyConfig: Channel names, retry label and policies shared by the
        provisioner and the publisher.

Provisioning:
    TopologyProvisioner: Ensures channels, subscriptions, dead-letter wiring
        and the retry filter rule; safe to run from many replicas at once.
    compare_and_create: Bounded get-or-create primitive tolerant of races.
    ProvisioningReport: Outcome of ``provision()``, including degraded wiring.

Consumption:
    Consumer: Manual-ack consumer with worker pool and handler deadlines.
    Handler: Abstract base class for message handlers.
    MessageState: RECEIVED, PROCESSING, COMPLETED, FAILED_RETRY, FAILED_FATAL.
    Publisher: Publishes to the primary channel or, labelled, to the retry channel.

Errors:
    ProvisioningError: Topology could not be established (fatal at startup).
    RecoverableError / FatalError: Raised by handlers to pick a disposition.
    BrokerUnavailableError: Receive failed beyond threshold.

Constants:
    MAX_PAYLOAD_SIZE: Maximum payload size in bytes (1MB).
"""

from retrystack.core.config import TopologyConfig
from retrystack.core.consumer import (
    Consumer,
    ConsumerStats,
    Handler,
    InMemoryRejectedMessageStore,
    MessageState,
    RejectedMessage,
    RejectedMessageStore,
)
from retrystack.core.errors import (
    AdministrativeError,
    BrokerUnavailableError,
    FatalError,
    MessageAlreadySettledError,
    MessageLockLostError,
    ProvisioningError,
    RecoverableError,
    ResourceConflictError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from retrystack.core.message import MAX_PAYLOAD_SIZE, Message
from retrystack.core.provisioner import ProvisioningReport, TopologyProvisioner, compare_and_create
from retrystack.core.publisher import Publisher
from retrystack.core.topology import ChannelProperties, FilterRule, SubscriptionProperties

__all__ = [
    "Message",
    "MAX_PAYLOAD_SIZE",
    "ChannelProperties",
    "SubscriptionProperties",
    "FilterRule",
    "TopologyConfig",
    "TopologyProvisioner",
    "ProvisioningReport",
    "compare_and_create",
    "Consumer",
    "ConsumerStats",
    "Handler",
    "MessageState",
    "RejectedMessage",
    "RejectedMessageStore",
    "InMemoryRejectedMessageStore",
    "Publisher",
    "AdministrativeError",
    "BrokerUnavailableError",
    "FatalError",
    "MessageAlreadySettledError",
    "MessageLockLostError",
    "ProvisioningError",
    "RecoverableError",
    "ResourceConflictError",
    "ResourceExistsError",
    "ResourceNotFoundError",
]
