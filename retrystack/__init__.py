"""retrystack - Idempotent primary/retry topology provisioning and manual-ack consumption."""

from retrystack.backends import AdminClient, Broker, InMemoryBroker, ReceivedMessage, RedisBroker
from retrystack.core import (
    AdministrativeError,
    BrokerUnavailableError,
    ChannelProperties,
    Consumer,
    ConsumerStats,
    FatalError,
    FilterRule,
    Handler,
    InMemoryRejectedMessageStore,
    Message,
    MessageState,
    ProvisioningError,
    ProvisioningReport,
    Publisher,
    RecoverableError,
    RejectedMessage,
    RejectedMessageStore,
    SubscriptionProperties,
    TopologyConfig,
    TopologyProvisioner,
    compare_and_create,
)

__version__ = "0.1.0"

__all__ = [
    # Topology
    "ChannelProperties",
    "SubscriptionProperties",
    "FilterRule",
    "TopologyConfig",
    "TopologyProvisioner",
    "ProvisioningReport",
    "compare_and_create",
    # Messaging
    "Message",
    "Publisher",
    "Consumer",
    "ConsumerStats",
    "Handler",
    "MessageState",
    "RejectedMessage",
    "RejectedMessageStore",
    "InMemoryRejectedMessageStore",
    # Errors
    "AdministrativeError",
    "BrokerUnavailableError",
    "FatalError",
    "ProvisioningError",
    "RecoverableError",
    # Backends
    "AdminClient",
    "Broker",
    "ReceivedMessage",
    "InMemoryBroker",
    "RedisBroker",
    # Meta
    "__version__",
]
