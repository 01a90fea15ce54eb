"""Manual-acknowledgment consumer for the primary channel.

Every delivery moves through::

    RECEIVED -> PROCESSING -> COMPLETED     (ack)
                           -> FAILED_RETRY  (nack: redelivered, then dead-lettered
                                             into the retry channel)
                           -> FAILED_FATAL  (reject: never redelivered)

The consumer never acknowledges on receipt. A crash between receive and
settlement leaves the message leased; the broker redelivers it once the
lease expires.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from retrystack.core.config import TopologyConfig
from retrystack.core.errors import (
    BrokerUnavailableError,
    FatalError,
    MessageLockLostError,
)
from retrystack.core.logging import DeliveryLogAdapter, configure_consumer_logger
from retrystack.core.message import UNREADABLE_BODY, Message

if TYPE_CHECKING:
    from retrystack.backends.base import Broker, ReceivedMessage

DEFAULT_MAX_CONSECUTIVE_FAILURES = 10


class MessageState(Enum):
    """Per-delivery processing state."""

    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED_RETRY = "failed_retry"
    FAILED_FATAL = "failed_fatal"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageState.COMPLETED, MessageState.FAILED_RETRY, MessageState.FAILED_FATAL)


class Handler(ABC):
    """Base class for message handlers.

    Return normally to complete the message. Raise ``FatalError`` (or a
    pydantic ``ValidationError`` while parsing the payload) when the message
    can never succeed; raise ``RecoverableError`` or anything else to have
    it retried.
    """

    def __init__(self, name: str | None = None) -> None:
        self.name = name or self.__class__.__name__

    @abstractmethod
    def handle(self, message: Message) -> None | Awaitable[None]:
        """Process one message.

        Args:
            message: The delivered message.
        """
        ...


@dataclass(frozen=True)
class RejectedMessage:
    """A FAILED_FATAL delivery as recorded by a ``RejectedMessageStore``."""

    message: Message
    error: Exception
    channel: str
    subscription: str
    delivery_count: int
    rejected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def reason(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


class RejectedMessageStore(Protocol):
    """Protocol for recording messages rejected as unprocessable."""

    async def store(self, rejected: RejectedMessage) -> None: ...
    def get_rejected(self) -> list[RejectedMessage]: ...
    def clear(self) -> None: ...


class InMemoryRejectedMessageStore:
    """Keeps the most recent ``max_size`` rejections; older ones are evicted."""

    def __init__(self, max_size: int = 10_000) -> None:
        self._entries: deque[RejectedMessage] = deque(maxlen=max_size)
        self._evicted_count = 0

    async def store(self, rejected: RejectedMessage) -> None:
        if len(self._entries) == self._entries.maxlen:
            self._evicted_count += 1
        self._entries.append(rejected)

    def get_rejected(self, channel: str | None = None) -> list[RejectedMessage]:
        """Recorded rejections, oldest first, optionally for one channel."""
        return [r for r in self._entries if channel is None or r.channel == channel]

    def unreadable(self) -> list[RejectedMessage]:
        """Rejections whose body could not be deserialized."""
        return [r for r in self._entries if r.message.is_unreadable]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def evicted_count(self) -> int:
        return self._evicted_count


@dataclass
class ConsumerStats:
    """Statistics from a Consumer run."""

    messages_received: int = 0
    completed: int = 0
    retried: int = 0
    rejected: int = 0
    timeouts: int = 0
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    receive_errors: int = 0
    settle_errors: int = 0


class Consumer:
    """Receives from one subscription and settles every message manually.

    Args:
        broker: Data-plane broker.
        handler: Handler invoked for each message.
        channel: Channel to consume.
        subscription: Subscription on ``channel``.
        concurrency: Number of worker coroutines.
        receive_timeout: Seconds each receive call waits for a message.
        handler_timeout: Upper bound on handler run time in seconds.
        lock_margin: Seconds of lease kept in reserve for settlement; the
            handler deadline never runs past ``lock expiry - lock_margin``.
        max_messages: Stop after this many deliveries (None = unbounded).
        max_consecutive_receive_failures: Receive failures in a row before
            ``BrokerUnavailableError`` is raised.
        rejected_store: Where FAILED_FATAL messages are recorded.
        max_retry_cycles: Round trips through the retry channel a message may
            make before it is rejected (None = unbounded). A round trip is counted
            each time the message exhausts its deliveries and is dead-lettered.
    """

    def __init__(
        self,
        broker: "Broker",
        handler: Handler,
        channel: str,
        subscription: str,
        concurrency: int = 1,
        receive_timeout: float = 1.0,
        handler_timeout: float = 30.0,
        lock_margin: float = 1.0,
        max_messages: int | None = None,
        max_consecutive_receive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        rejected_store: RejectedMessageStore | None = None,
        max_retry_cycles: int | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.broker = broker
        self.handler = handler
        self.channel = channel
        self.subscription = subscription
        self.concurrency = concurrency
        self.receive_timeout = receive_timeout
        self.handler_timeout = handler_timeout
        self.lock_margin = lock_margin
        self.max_messages = max_messages
        self.max_consecutive_receive_failures = max_consecutive_receive_failures
        self.rejected_store = (
            rejected_store if rejected_store is not None else InMemoryRejectedMessageStore()
        )
        self.max_retry_cycles = max_retry_cycles
        self._log = configure_consumer_logger()
        self._running = False
        self._stats = ConsumerStats()
        self._claimed = 0
        self._consecutive_receive_failures = 0
        self._last_receive_error: str | None = None

    @classmethod
    def for_primary(
        cls, broker: "Broker", handler: Handler, config: TopologyConfig, **kwargs
    ) -> "Consumer":
        """Build a consumer attached to the configured primary subscription."""
        kwargs.setdefault("max_retry_cycles", config.max_retry_cycles)
        return cls(
            broker,
            handler,
            channel=config.primary_channel,
            subscription=config.primary_subscription,
            **kwargs,
        )

    def stop(self) -> None:
        """Stop receiving; in-flight messages are still settled."""
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def get_stats(self) -> ConsumerStats:
        """Return a snapshot copy of current statistics."""
        return ConsumerStats(
            messages_received=self._stats.messages_received,
            completed=self._stats.completed,
            retried=self._stats.retried,
            rejected=self._stats.rejected,
            timeouts=self._stats.timeouts,
            handler_errors=defaultdict(int, self._stats.handler_errors),
            receive_errors=self._stats.receive_errors,
            settle_errors=self._stats.settle_errors,
        )

    def _check_retry_budget(self, message: Message) -> None:
        if self.max_retry_cycles is None:
            return
        if message.retry_cycles > self.max_retry_cycles:
            raise FatalError(
                f"Message {message.id} exhausted its {self.max_retry_cycles} retry cycles"
            )

    def _deadline(self, delivery: "ReceivedMessage") -> float:
        remaining = delivery.lock_remaining()
        if remaining is None:
            return self.handler_timeout
        return max(0.0, min(self.handler_timeout, remaining - self.lock_margin))

    async def _invoke_handler(self, delivery: "ReceivedMessage") -> None:
        deadline = self._deadline(delivery)
        result = self.handler.handle(delivery.message)
        if inspect.isawaitable(result):
            try:
                await asyncio.wait_for(result, timeout=deadline)
            except TimeoutError:
                raise TimeoutError(
                    f"Handler {self.handler.name} exceeded its {deadline:.3f}s deadline"
                ) from None

    async def process(self, delivery: "ReceivedMessage") -> MessageState:
        """Run the handler on one delivery and settle it.

        Handler errors never propagate. Cancellation nacks the message so
        the broker redelivers it, then re-raises. Placeholders for bodies the
        broker could not deserialize are rejected without calling the handler.

        Returns:
            The terminal state reached.
        """
        log = DeliveryLogAdapter(self._log, delivery)
        log.debug(f"Received {delivery.message.id}", extra={"state": MessageState.RECEIVED.value})
        log.info(
            f"Processing {delivery.message.id} with {self.handler.name}",
            extra={"state": MessageState.PROCESSING.value},
        )

        error: Exception | None = None
        try:
            if delivery.message.is_unreadable:
                raise FatalError(
                    f"Undeserializable body: {delivery.message.properties[UNREADABLE_BODY]}"
                )
            self._check_retry_budget(delivery.message)
            await self._invoke_handler(delivery)
            state = MessageState.COMPLETED
        except asyncio.CancelledError:
            await self._settle(delivery, MessageState.FAILED_RETRY, None, log)
            raise
        except (FatalError, ValidationError) as e:
            error = e
            state = MessageState.FAILED_FATAL
        except TimeoutError as e:
            error = e
            self._stats.timeouts += 1
            state = MessageState.FAILED_RETRY
        except Exception as e:
            error = e
            state = MessageState.FAILED_RETRY

        if error is not None:
            self._stats.handler_errors[type(error).__name__] += 1
            log.error(
                f"Handler {self.handler.name} raised exception: {error}",
                extra={"error": str(error), "disposition": state.value},
            )

        await self._settle(delivery, state, error, log)
        return state

    async def _settle(
        self,
        delivery: "ReceivedMessage",
        state: MessageState,
        error: Exception | None,
        log: DeliveryLogAdapter,
    ) -> None:
        try:
            if state is MessageState.COMPLETED:
                await delivery.ack()
                self._stats.completed += 1
            elif state is MessageState.FAILED_FATAL:
                await self.rejected_store.store(
                    RejectedMessage(
                        message=delivery.message,
                        error=error or FatalError("rejected"),
                        channel=delivery.channel,
                        subscription=delivery.subscription,
                        delivery_count=delivery.delivery_count,
                    )
                )
                await delivery.reject()
                self._stats.rejected += 1
            else:
                await delivery.nack()
                self._stats.retried += 1
        except MessageLockLostError as e:
            self._stats.settle_errors += 1
            log.warning(
                f"Lease lost before settlement, broker will redeliver: {e}",
                extra={"disposition": state.value},
            )
            return
        except Exception as e:
            self._stats.settle_errors += 1
            log.error(
                f"Failed to settle message: {e}",
                extra={"disposition": state.value, "error": str(e)},
            )
            return

        level = logging.INFO if state is MessageState.COMPLETED else logging.WARNING
        log.log(
            level,
            f"Settled {delivery.message.id} as {state.value}",
            extra={"disposition": state.value},
        )

    async def _receive(self) -> "ReceivedMessage | None":
        try:
            delivery = await self.broker.receive(
                self.channel, self.subscription, timeout=self.receive_timeout
            )
        except Exception as e:
            self._consecutive_receive_failures += 1
            self._stats.receive_errors += 1
            self._last_receive_error = str(e)
            self._log.error(
                f"Receive failed ({self._consecutive_receive_failures}/"
                f"{self.max_consecutive_receive_failures}): {e}",
                extra={
                    "channel": self.channel,
                    "subscription": self.subscription,
                    "error": str(e),
                    "consecutive_failures": self._consecutive_receive_failures,
                },
            )
            return None

        self._consecutive_receive_failures = 0
        self._last_receive_error = None
        return delivery

    async def _worker(self) -> None:
        while self._running:
            # Circuit breaker for broker failures
            if self._consecutive_receive_failures >= self.max_consecutive_receive_failures:
                raise BrokerUnavailableError(
                    f"Broker unavailable after {self._consecutive_receive_failures} failures",
                    failure_count=self._consecutive_receive_failures,
                    last_error=self._last_receive_error,
                )

            if self.max_messages is not None and self._claimed >= self.max_messages:
                if self._stats.messages_received >= self.max_messages:
                    break
                # Every remaining slot is held by a peer whose receive may still come back empty
                await asyncio.sleep(self.receive_timeout)
                continue

            # Reserve a slot before awaiting so concurrent workers cannot overshoot
            self._claimed += 1
            delivery = await self._receive()
            if delivery is None:
                self._claimed -= 1
                continue

            self._stats.messages_received += 1
            await self.process(delivery)

    async def run(self) -> ConsumerStats:
        """Consume until ``stop()``, ``max_messages`` or cancellation.

        Raises:
            BrokerUnavailableError: If receive keeps failing.
        """
        self._stats = ConsumerStats()
        self._claimed = 0
        self._consecutive_receive_failures = 0
        self._running = True

        self._log.info(
            f"Consuming '{self.channel}/{self.subscription}' with {self.concurrency} workers",
            extra={"channel": self.channel, "subscription": self.subscription},
        )

        workers = [asyncio.create_task(self._worker()) for _ in range(self.concurrency)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            self._running = False

        return self._stats
