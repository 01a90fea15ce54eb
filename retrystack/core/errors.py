"""Exception types shared by the provisioner, consumer and backends.

Administrative errors raised by an ``AdminClient``:

    ResourceNotFoundError: get/update target does not exist (yet).
    ResourceExistsError: create lost a race, or the resource was already there.
    ResourceConflictError: update collided with a concurrent modification.
    AdministrativeError: auth, permission or connectivity failure. Never retried.

Provisioning:

    ProvisioningError: topology could not be established. Fatal at startup.

Processing (raised by handlers):

    RecoverableError: the message should be retried (nack).
    FatalError: the message can never be processed (reject, no requeue).
"""


class AdminError(Exception):
    """Base class for errors raised by the administrative API.

    Attributes:
        kind: Resource kind ("channel", "subscription", "rule").
        name: Resource name.
    """

    def __init__(self, kind: str, name: str, message: str | None = None):
        self.kind = kind
        self.name = name
        super().__init__(message or f"{kind} {name!r}")


class ResourceNotFoundError(AdminError):
    def __init__(self, kind: str, name: str, message: str | None = None):
        super().__init__(kind, name, message or f"{kind} {name!r} not found")


class ResourceExistsError(AdminError):
    def __init__(self, kind: str, name: str, message: str | None = None):
        super().__init__(kind, name, message or f"{kind} {name!r} already exists")


class ResourceConflictError(AdminError):
    def __init__(self, kind: str, name: str, message: str | None = None):
        super().__init__(kind, name, message or f"{kind} {name!r} was modified concurrently")


class AdministrativeError(AdminError):
    """Authentication, authorization or connectivity failure."""


class ProvisioningError(Exception):
    """Raised when the topology cannot be trusted and the worker must not start.

    Attributes:
        resource: Description of the resource being provisioned.
        attempts: Number of compare-and-create attempts made.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        attempts: int = 0,
        cause: Exception | None = None,
    ):
        self.resource = resource
        self.attempts = attempts
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base} (cause: {self.cause})"
        return base


class ProcessingError(Exception):
    """Base class for handler-signalled processing failures."""


class RecoverableError(ProcessingError):
    """Transient failure; the message is nacked and redelivered."""


class FatalError(ProcessingError):
    """Permanent failure; the message is rejected without requeue."""


class MessageLockLostError(Exception):
    """Raised when settling a message whose lease has already expired."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"lock lost for message {message_id}")


class MessageAlreadySettledError(Exception):
    """Raised when ack/nack/reject is called twice on one delivery."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"message {message_id} already settled")


class BrokerUnavailableError(Exception):
    """Raised when receive fails consecutively beyond threshold.

    Attributes:
        failure_count: Number of consecutive failures that triggered this error.
        last_error: The last exception message from the broker.
    """

    def __init__(self, message: str, failure_count: int = 0, last_error: str | None = None):
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base
