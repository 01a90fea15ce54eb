"""Topology provisioner for the primary/retry channel pair.

Any number of replicas may run ``TopologyProvisioner.provision()`` at the
same time against the same broker. There is no lock service: the broker's
administrative API is the only synchronization point, and an
"already exists" answer from a create call is the signal that a peer won.

Order of operations:

1. ensure primary channel + subscription
2. ensure retry channel + subscription (created with the retry filter rule)
3. wire retry dead letters -> primary (best effort)
4. wire primary dead letters -> retry (best effort)
5. ensure the retry filter rule (covers subscriptions created without it)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from retrystack.core.config import TopologyConfig
from retrystack.core.errors import (
    AdministrativeError,
    ProvisioningError,
    ResourceConflictError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from retrystack.core.logging import configure_provisioner_logger
from retrystack.core.topology import ChannelProperties, FilterRule, SubscriptionProperties

if TYPE_CHECKING:
    from retrystack.backends.base import AdminClient

T = TypeVar("T")

DEFAULT_ADMIN_ATTEMPTS = 3
DEFAULT_ADMIN_BASE_DELAY = 0.1
WIRE_ATTEMPTS = 2


async def _get_or_create_once(
    get: Callable[[], Awaitable[T]],
    create: Callable[[], Awaitable[T]],
    resource: str,
    log: logging.Logger,
) -> T:
    try:
        return await get()
    except ResourceNotFoundError:
        pass

    try:
        created = await create()
    except ResourceExistsError:
        log.debug(
            f"{resource} was created concurrently, re-fetching",
            extra={"resource": resource},
        )
        # A peer may still be mid-creation; NotFound here is retried by the caller
        return await get()

    log.info(f"Created {resource}", extra={"resource": resource})
    return created


async def compare_and_create(
    get: Callable[[], Awaitable[T]],
    create: Callable[[], Awaitable[T]],
    *,
    resource: str,
    attempts: int = DEFAULT_ADMIN_ATTEMPTS,
    base_delay: float = DEFAULT_ADMIN_BASE_DELAY,
    log: logging.Logger | None = None,
) -> T:
    """Idempotent get-or-create that tolerates duplicate-create races.

    Each attempt fetches the resource, creates it if absent, and re-fetches
    it if the create reports that it already exists. Attempts that still end
    in not-found (a peer is mid-creation) back off exponentially and retry.

    Args:
        get: Coroutine factory fetching the resource.
        create: Coroutine factory creating the resource.
        resource: Human-readable description for logs and errors.
        attempts: Maximum number of get/create rounds.
        base_delay: Backoff base in seconds (``base_delay * 2**n``).
        log: Logger to use; defaults to the provisioner logger.

    Returns:
        The existing or newly created resource.

    Raises:
        ProvisioningError: On administrative failure (not retried) or when
            all attempts are exhausted.
    """
    log = log or logging.getLogger("retrystack.provisioner")
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await _get_or_create_once(get, create, resource, log)
        except (ResourceNotFoundError, ResourceExistsError) as e:
            last_error = e
            if attempt < attempts:
                delay = base_delay * (2 ** (attempt - 1))
                log.debug(
                    f"{resource} not settled yet, retrying in {delay}s ({attempt}/{attempts})",
                    extra={"resource": resource, "attempt": attempt, "error": str(e)},
                )
                await asyncio.sleep(delay)
        except AdministrativeError as e:
            log.error(
                f"Administrative failure provisioning {resource}: {e}",
                extra={"resource": resource, "error": str(e)},
            )
            raise ProvisioningError(
                f"Administrative failure provisioning {resource}",
                resource=resource,
                attempts=attempt,
                cause=e,
            ) from e
        except Exception as e:
            log.error(
                f"Unexpected failure provisioning {resource}: {e}",
                extra={"resource": resource, "error": str(e)},
            )
            raise ProvisioningError(
                f"Unexpected failure provisioning {resource}",
                resource=resource,
                attempts=attempt,
                cause=e,
            ) from e

    log.error(
        f"Gave up provisioning {resource} after {attempts} attempts: {last_error}",
        extra={"resource": resource, "attempts": attempts},
    )
    raise ProvisioningError(
        f"Could not provision {resource} after {attempts} attempts",
        resource=resource,
        attempts=attempts,
        cause=last_error,
    )


@dataclass
class ProvisioningReport:
    """Outcome of a full ``provision()`` run."""

    primary: ChannelProperties
    retry: ChannelProperties
    primary_subscription: SubscriptionProperties
    retry_subscription: SubscriptionProperties
    retry_rule: FilterRule
    wiring: dict[str, bool] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """True if any dead-letter forward could not be wired."""
        return not all(self.wiring.values())


class TopologyProvisioner:
    """Ensures the primary/retry topology exists on an AdminClient."""

    def __init__(
        self,
        admin: "AdminClient",
        config: TopologyConfig | None = None,
    ) -> None:
        self.admin = admin
        self.config = config or TopologyConfig()
        self._log = configure_provisioner_logger()
        self._ensured_channels: set[str] = set()

    async def _compare_and_create(
        self,
        get: Callable[[], Awaitable[T]],
        create: Callable[[], Awaitable[T]],
        resource: str,
    ) -> T:
        return await compare_and_create(
            get,
            create,
            resource=resource,
            attempts=self.config.admin_attempts,
            base_delay=self.config.admin_base_delay,
            log=self._log,
        )

    async def ensure_channel(
        self,
        name: str,
        durable: bool = True,
        max_delivery_count: int | None = None,
        message_ttl: float | None = None,
    ) -> ChannelProperties:
        """Fetch or create a channel. Options apply only when it is created."""
        properties = ChannelProperties(
            name=name,
            durable=durable,
            max_delivery_count=max_delivery_count or self.config.max_delivery_count,
            message_ttl=message_ttl,
        )
        channel = await self._compare_and_create(
            lambda: self.admin.get_channel(name),
            lambda: self.admin.create_channel(properties),
            f"channel '{name}'",
        )
        self._ensured_channels.add(channel.name)
        return channel

    async def ensure_subscription(
        self, channel: str, name: str, rule: FilterRule | None = None
    ) -> SubscriptionProperties:
        """Fetch or create a subscription, creating ``rule`` along with it."""
        return await self._compare_and_create(
            lambda: self.admin.get_subscription(channel, name),
            lambda: self.admin.create_subscription(channel, name, rule),
            f"subscription '{channel}/{name}'",
        )

    async def _target_exists(self, name: str) -> bool:
        if name in self._ensured_channels:
            return True
        try:
            await self.admin.get_channel(name)
        except ResourceNotFoundError:
            return False
        self._ensured_channels.add(name)
        return True

    async def wire_dead_letter_forward(
        self, from_channel: ChannelProperties | str, to_channel_name: str
    ) -> bool:
        """Point ``from_channel``'s dead-letter forward at ``to_channel_name``.

        Best effort: failures are logged as warnings and reported by the
        return value, never raised. Message delivery on the primary path does
        not depend on this wire, only the retry-recovery path does.

        Returns:
            True if the forward is in place afterwards.
        """
        from_name = from_channel if isinstance(from_channel, str) else from_channel.name
        extra = {"channel": from_name, "forward_to": to_channel_name}

        for attempt in range(1, WIRE_ATTEMPTS + 1):
            try:
                if not await self._target_exists(to_channel_name):
                    self._log.warning(
                        f"Not wiring '{from_name}' -> '{to_channel_name}': target does not exist",
                        extra=extra,
                    )
                    return False

                current = await self.admin.get_channel(from_name)
                if current.forward_dead_letters_to == to_channel_name:
                    self._log.debug(
                        f"Dead-letter forward '{from_name}' -> '{to_channel_name}' already set",
                        extra=extra,
                    )
                    return True

                await self.admin.update_channel(
                    current.model_copy(update={"forward_dead_letters_to": to_channel_name})
                )
            except ResourceConflictError as e:
                if attempt < WIRE_ATTEMPTS:
                    # A peer changed the channel between our read and write; re-read it
                    self._log.debug(f"Conflict wiring '{from_name}', re-reading: {e}", extra=extra)
                    continue
                self._log.warning(
                    f"Dead-letter wiring '{from_name}' -> '{to_channel_name}' kept conflicting, "
                    f"retry path degraded: {e}",
                    extra={**extra, "error": str(e)},
                )
                return False
            except Exception as e:
                self._log.warning(
                    f"Dead-letter wiring '{from_name}' -> '{to_channel_name}' failed, "
                    f"retry path degraded: {e}",
                    extra={**extra, "error": str(e)},
                )
                return False
            break

        self._log.info(f"Wired dead-letter forward '{from_name}' -> '{to_channel_name}'", extra=extra)
        return True

    async def ensure_filter_rule(
        self, subscription: SubscriptionProperties, rule_name: str, label: str
    ) -> FilterRule:
        """Install a ``label == value`` correlation rule if none of that name exists."""
        rule = FilterRule(name=rule_name, label=label)
        installed = await self._compare_and_create(
            lambda: self.admin.get_rule(subscription.channel, subscription.name, rule_name),
            lambda: self.admin.create_rule(subscription.channel, subscription.name, rule),
            f"rule '{subscription.path}/{rule_name}'",
        )
        if installed.label != label:
            self._log.warning(
                f"Rule '{rule_name}' on '{subscription.path}' matches label "
                f"{installed.label!r}, not {label!r}; leaving it unchanged",
                extra={"channel": subscription.channel, "subscription": subscription.name},
            )
        return installed

    async def provision(self) -> ProvisioningReport:
        """Ensure the whole topology. Raises ProvisioningError on fatal failure."""
        cfg = self.config
        retry_rule = FilterRule(name=cfg.retry_rule_name, label=cfg.retry_label)

        primary = await self.ensure_channel(
            cfg.primary_channel,
            durable=cfg.durable,
            max_delivery_count=cfg.max_delivery_count,
        )
        primary_sub = await self.ensure_subscription(primary.name, cfg.primary_subscription)

        retry = await self.ensure_channel(
            cfg.retry_channel,
            durable=cfg.durable,
            max_delivery_count=cfg.max_delivery_count,
            message_ttl=cfg.retry_delay,
        )
        retry_sub = await self.ensure_subscription(retry.name, cfg.retry_subscription, retry_rule)

        wiring = {
            f"{retry.name}->{primary.name}": await self.wire_dead_letter_forward(retry, primary.name),
            f"{primary.name}->{retry.name}": await self.wire_dead_letter_forward(primary, retry.name),
        }

        installed_rule = await self.ensure_filter_rule(retry_sub, cfg.retry_rule_name, cfg.retry_label)

        report = ProvisioningReport(
            primary=primary,
            retry=retry,
            primary_subscription=primary_sub,
            retry_subscription=retry_sub,
            retry_rule=installed_rule,
            wiring=wiring,
        )
        if report.degraded:
            self._log.warning(
                "Topology provisioned with degraded retry path",
                extra={"wiring": wiring},
            )
        else:
            self._log.info(
                f"Topology provisioned: '{primary.name}' <-> '{retry.name}'",
                extra={"wiring": wiring},
            )
        return report
