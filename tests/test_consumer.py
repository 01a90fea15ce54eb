"""Tests for the manual-ack Consumer."""

import asyncio
import json
import logging

import pytest
from pydantic import BaseModel

from retrystack.backends.inmemory import InMemoryBroker
from retrystack.core.config import TopologyConfig
from retrystack.core.consumer import (
    Consumer,
    Handler,
    InMemoryRejectedMessageStore,
    MessageState,
    RejectedMessage,
)
from retrystack.core.errors import BrokerUnavailableError, FatalError, RecoverableError
from retrystack.core.logging import JSONFormatter
from retrystack.core.message import (
    DEAD_LETTER_COUNT,
    DEAD_LETTER_REASON,
    DEAD_LETTER_SOURCE,
    MAX_DELIVERY_EXCEEDED,
    RETRY_CYCLES,
    TTL_EXPIRED,
    Message,
)
from retrystack.core.provisioner import TopologyProvisioner
from retrystack.core.publisher import Publisher
from retrystack.core.topology import ChannelProperties
from tests.conftest import FakeClock


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_capture():
    """Fixture to capture logs from the retrystack.consumer logger."""
    logger = logging.getLogger("retrystack.consumer")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    yield handler
    logger.removeHandler(handler)


class RecordingHandler(Handler):
    """Async handler that records messages and optionally raises."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        super().__init__()
        self.error = error
        self.delay = delay
        self.seen: list[Message] = []
        self.active = 0
        self.max_active = 0

    async def handle(self, message: Message) -> None:
        self.seen.append(message)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
        finally:
            self.active -= 1


class SyncHandler(Handler):
    def __init__(self):
        super().__init__(name="sync")
        self.seen: list[str] = []

    def handle(self, message: Message) -> None:
        self.seen.append(message.id)


class Upload(BaseModel):
    key: str
    size: int


class ParsingHandler(Handler):
    async def handle(self, message: Message) -> None:
        Upload.model_validate(message.payload)


class FlakyHandler(Handler):
    """Fails until ``failures`` attempts have been made."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def handle(self, message: Message) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RecoverableError(f"attempt {self.attempts} failed")


class UnreachableBroker(InMemoryBroker):
    async def receive(self, channel, subscription, timeout=1.0):
        raise ConnectionError("broker unreachable")


async def single_channel(broker: InMemoryBroker, **options) -> None:
    await broker.create_channel(ChannelProperties(name="c", **options))
    await broker.create_subscription("c", "s")


def make_consumer(broker, handler, **kwargs) -> Consumer:
    kwargs.setdefault("receive_timeout", 0.05)
    return Consumer(broker, handler, channel="c", subscription="s", **kwargs)


# ---------------------------------------------------------------------------
# Settlement decisions
# ---------------------------------------------------------------------------


def test_message_state_terminality():
    assert not MessageState.RECEIVED.is_terminal
    assert not MessageState.PROCESSING.is_terminal
    assert MessageState.COMPLETED.is_terminal
    assert MessageState.FAILED_RETRY.is_terminal
    assert MessageState.FAILED_FATAL.is_terminal


def test_concurrency_must_be_positive(broker: InMemoryBroker):
    with pytest.raises(ValueError):
        make_consumer(broker, SyncHandler(), concurrency=0)


async def test_success_acks_and_is_never_redelivered(clock: FakeClock, broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message())
    consumer = make_consumer(broker, RecordingHandler())

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.COMPLETED
    clock.advance(broker.lock_duration * 2)
    assert await broker.receive("c", "s", timeout=0.05) is None
    assert consumer.get_stats().completed == 1


async def test_sync_handler_is_supported(broker: InMemoryBroker):
    await single_channel(broker)
    message = Message()
    await broker.publish("c", message)
    handler = SyncHandler()

    state = await make_consumer(broker, handler).process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.COMPLETED
    assert handler.seen == [message.id]


async def test_fatal_error_rejects_without_requeue(clock: FakeClock, broker: InMemoryBroker):
    await single_channel(broker)
    message = Message(payload={"key": "report.pdf"})
    await broker.publish("c", message)
    store = InMemoryRejectedMessageStore()
    consumer = make_consumer(broker, RecordingHandler(FatalError("not an image")), rejected_store=store)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_FATAL
    assert broker.rejected("c", "s") == [message]
    [entry] = store.get_rejected()
    assert entry.message.id == message.id
    assert isinstance(entry.error, FatalError)
    assert entry.reason == "FatalError: not an image"
    assert (entry.channel, entry.subscription, entry.delivery_count) == ("c", "s", 1)
    clock.advance(broker.lock_duration * 2)
    assert await broker.receive("c", "s", timeout=0.05) is None
    stats = consumer.get_stats()
    assert stats.rejected == 1
    assert stats.handler_errors["FatalError"] == 1


async def test_validation_error_is_fatal(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message(payload={"key": "x"}))

    state = await make_consumer(broker, ParsingHandler()).process(
        await broker.receive("c", "s", timeout=0.1)
    )

    assert state is MessageState.FAILED_FATAL
    assert len(broker.rejected("c", "s")) == 1


@pytest.mark.parametrize("error", [RecoverableError("transient"), RuntimeError("bug"), KeyError("k")])
async def test_other_errors_nack_for_redelivery(broker: InMemoryBroker, error: Exception):
    await single_channel(broker, max_delivery_count=5)
    await broker.publish("c", Message())
    consumer = make_consumer(broker, RecordingHandler(error))

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_RETRY
    redelivered = await broker.receive("c", "s", timeout=0.1)
    assert redelivered.delivery_count == 2
    assert consumer.get_stats().retried == 1
    assert consumer.get_stats().handler_errors[type(error).__name__] == 1


@pytest.mark.timeout(5)
async def test_handler_timeout_nacks(broker: InMemoryBroker):
    await single_channel(broker, max_delivery_count=5)
    await broker.publish("c", Message())
    consumer = make_consumer(broker, RecordingHandler(delay=10), handler_timeout=0.05)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_RETRY
    assert consumer.get_stats().timeouts == 1
    assert len(broker.peek("c", "s")) == 1


@pytest.mark.timeout(5)
async def test_handler_deadline_is_bounded_by_lease():
    broker = InMemoryBroker(lock_duration=1.1)
    await single_channel(broker, max_delivery_count=5)
    await broker.publish("c", Message())
    consumer = make_consumer(broker, RecordingHandler(delay=10), handler_timeout=30, lock_margin=1.0)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_RETRY
    assert consumer.get_stats().timeouts == 1


@pytest.mark.timeout(5)
async def test_cancellation_nacks_and_reraises(broker: InMemoryBroker):
    await single_channel(broker, max_delivery_count=5)
    await broker.publish("c", Message())
    handler = RecordingHandler(delay=10)
    consumer = make_consumer(broker, handler)
    delivery = await broker.receive("c", "s", timeout=0.1)

    task = asyncio.create_task(consumer.process(delivery))
    while not handler.seen:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert delivery.settled
    assert broker.in_flight("c", "s") == 0
    assert (await broker.receive("c", "s", timeout=0.1)).delivery_count == 2


async def test_lost_lease_is_counted_not_raised(clock: FakeClock, broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message())

    class SlowHandler(Handler):
        def handle(self, message: Message) -> None:
            clock.advance(broker.lock_duration + 1)

    consumer = make_consumer(broker, SlowHandler())
    await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert consumer.get_stats().settle_errors == 1
    assert consumer.get_stats().completed == 0
    assert (await broker.receive("c", "s", timeout=0.1)).delivery_count == 2


# ---------------------------------------------------------------------------
# Retry cycle through the provisioned topology
# ---------------------------------------------------------------------------


@pytest.mark.timeout(10)
async def test_nacked_message_cycles_through_retry_channel(clock: FakeClock, broker: InMemoryBroker):
    config = TopologyConfig(admin_base_delay=0.0, max_delivery_count=3, retry_delay=60.0)
    await TopologyProvisioner(broker, config).provision()
    message = await Publisher(broker, config).publish({"key": "flaky.png"})
    handler = FlakyHandler(failures=3)

    failing = Consumer.for_primary(broker, handler, config, receive_timeout=0.05, max_messages=3)
    stats = await failing.run()

    assert stats.retried == 3
    assert broker.peek(config.primary_channel, config.primary_subscription) == []
    [parked] = broker.peek(config.retry_channel, config.retry_subscription)
    assert parked.id == message.id
    assert parked.properties[DEAD_LETTER_REASON] == MAX_DELIVERY_EXCEEDED

    clock.advance(config.retry_delay)
    broker.sweep()

    assert broker.peek(config.retry_channel, config.retry_subscription) == []
    [returned] = broker.peek(config.primary_channel, config.primary_subscription)
    assert returned.id == message.id
    assert returned.properties[DEAD_LETTER_REASON] == TTL_EXPIRED
    assert returned.properties[DEAD_LETTER_SOURCE] == (
        f"{config.retry_channel}/{config.retry_subscription}"
    )
    assert returned.dead_letter_count == 2
    assert returned.retry_cycles == 1

    succeeding = Consumer.for_primary(broker, handler, config, receive_timeout=0.05, max_messages=1)
    stats = await succeeding.run()

    assert stats.completed == 1
    assert handler.attempts == 4


@pytest.mark.timeout(10)
async def test_publish_for_retry_is_delivered_after_delay(clock: FakeClock, broker: InMemoryBroker):
    config = TopologyConfig(admin_base_delay=0.0, retry_delay=5.0)
    await TopologyProvisioner(broker, config).provision()
    publisher = Publisher(broker, config)

    message = await publisher.publish_for_retry({"key": "later.png"})

    assert broker.peek(config.primary_channel, config.primary_subscription) == []
    clock.advance(5.0)
    delivery = await broker.receive(config.primary_channel, config.primary_subscription, timeout=0.1)
    assert delivery.message.id == message.id
    assert delivery.message.label == config.retry_label


async def test_exhausted_retry_budget_is_rejected(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message(properties={RETRY_CYCLES: "4"}))
    handler = RecordingHandler()
    consumer = make_consumer(broker, handler, max_retry_cycles=3)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_FATAL
    assert handler.seen == []
    assert len(broker.rejected("c", "s")) == 1


async def test_retry_budget_allows_messages_within_limit(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message(properties={RETRY_CYCLES: "3", DEAD_LETTER_COUNT: "6"}))
    consumer = make_consumer(broker, RecordingHandler(), max_retry_cycles=3)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.COMPLETED


async def test_ttl_hops_do_not_spend_the_retry_budget(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message(properties={DEAD_LETTER_COUNT: "9"}))
    consumer = make_consumer(broker, RecordingHandler(), max_retry_cycles=3)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.COMPLETED


async def test_unreadable_body_is_rejected_and_recorded(broker: InMemoryBroker):
    await single_channel(broker)
    placeholder = Message.unreadable(b"{not json", ValueError("Invalid JSON"))
    await broker.publish("c", placeholder)
    handler = RecordingHandler()
    store = InMemoryRejectedMessageStore()
    consumer = make_consumer(broker, handler, rejected_store=store)

    state = await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert state is MessageState.FAILED_FATAL
    assert handler.seen == []
    [entry] = store.unreadable()
    assert entry.message.payload == {"raw_body": "{not json"}
    assert "Undeserializable body" in entry.reason
    assert broker.rejected("c", "s") == [placeholder]


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


@pytest.mark.timeout(10)
async def test_max_messages_with_concurrent_workers(broker: InMemoryBroker):
    await single_channel(broker)
    for i in range(10):
        await broker.publish("c", Message(payload={"n": i}))
    handler = RecordingHandler(delay=0.02)
    consumer = make_consumer(broker, handler, concurrency=4, max_messages=6)

    stats = await consumer.run()

    assert stats.messages_received == 6
    assert stats.completed == 6
    assert len(handler.seen) == 6
    assert handler.max_active > 1
    assert len(broker.peek("c", "s")) == 4
    assert not consumer.running


@pytest.mark.timeout(10)
async def test_max_messages_waits_for_late_message_with_idle_workers(broker: InMemoryBroker):
    await single_channel(broker)
    handler = RecordingHandler()
    consumer = make_consumer(broker, handler, concurrency=2, max_messages=1)

    async def publish_late() -> Message:
        await asyncio.sleep(0.2)
        message = Message()
        await broker.publish("c", message)
        return message

    stats, message = await asyncio.gather(consumer.run(), publish_late())

    assert stats.messages_received == 1
    assert stats.completed == 1
    assert [m.id for m in handler.seen] == [message.id]
    assert not consumer.running


@pytest.mark.timeout(5)
async def test_stop_ends_run(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message())

    consumer = make_consumer(broker, SyncHandler())

    class StoppingHandler(Handler):
        def handle(self, message: Message) -> None:
            consumer.stop()

    consumer.handler = StoppingHandler()
    stats = await consumer.run()

    assert stats.completed == 1


@pytest.mark.timeout(5)
async def test_circuit_breaker_trips_on_receive_failures():
    broker = UnreachableBroker()
    consumer = Consumer(
        broker,
        SyncHandler(),
        channel="c",
        subscription="s",
        concurrency=2,
        max_consecutive_receive_failures=3,
    )

    with pytest.raises(BrokerUnavailableError) as exc_info:
        await consumer.run()

    assert exc_info.value.failure_count >= 3
    assert "broker unreachable" in str(exc_info.value)
    assert consumer.get_stats().receive_errors >= 3
    assert not consumer.running


async def test_for_primary_uses_config_names(broker: InMemoryBroker):
    config = TopologyConfig(primary_channel="uploads", primary_subscription="workers", retry_channel="r")
    consumer = Consumer.for_primary(broker, SyncHandler(), config, concurrency=2)

    assert consumer.channel == "uploads"
    assert consumer.subscription == "workers"
    assert consumer.concurrency == 2


# ---------------------------------------------------------------------------
# Logging and rejected store
# ---------------------------------------------------------------------------


async def test_settlement_is_logged_with_topology_fields(broker: InMemoryBroker, log_capture):
    await single_channel(broker)
    message = Message(label="upload")
    await broker.publish("c", message)

    await make_consumer(broker, RecordingHandler(FatalError("bad"))).process(
        await broker.receive("c", "s", timeout=0.1)
    )

    settled = [r for r in log_capture.records if getattr(r, "disposition", None) == "failed_fatal"]
    assert settled
    record = settled[-1]
    assert record.message_id == message.id
    assert record.channel == "c"
    assert record.subscription == "s"
    assert record.label == "upload"
    assert record.delivery_count == 1
    assert any(r.levelno == logging.ERROR for r in log_capture.records)


def test_json_formatter_puts_topology_fields_first():
    record = logging.LogRecord(
        name="retrystack.consumer",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Settled %s",
        args=("m-1",),
        exc_info=None,
    )
    record.attempt = 2
    record.disposition = "failed_retry"
    record.channel = "c"

    data = json.loads(JSONFormatter().format(record))

    assert data["message"] == "Settled m-1"
    assert data["level"] == "WARNING"
    assert list(data)[4:7] == ["channel", "disposition", "attempt"]
    assert "taskName" not in data


def make_rejection(message: Message, channel: str = "c") -> RejectedMessage:
    return RejectedMessage(
        message=message, error=FatalError("x"), channel=channel, subscription="s", delivery_count=1
    )


async def test_rejected_store_evicts_oldest():
    store = InMemoryRejectedMessageStore(max_size=2)
    messages = [Message() for _ in range(3)]
    for message in messages:
        await store.store(make_rejection(message))

    assert len(store) == 2
    assert store.evicted_count == 1
    assert [r.message.id for r in store.get_rejected()] == [m.id for m in messages[1:]]
    store.clear()
    assert len(store) == 0


async def test_rejected_store_filters_by_channel():
    store = InMemoryRejectedMessageStore()
    await store.store(make_rejection(Message(), channel="a"))
    kept = Message()
    await store.store(make_rejection(kept, channel="b"))

    assert [r.message.id for r in store.get_rejected("b")] == [kept.id]
    assert len(store.get_rejected()) == 2
    assert store.unreadable() == []


async def test_empty_store_is_still_used(broker: InMemoryBroker):
    await single_channel(broker)
    await broker.publish("c", Message())
    store = InMemoryRejectedMessageStore()
    consumer = make_consumer(broker, RecordingHandler(FatalError("x")), rejected_store=store)

    await consumer.process(await broker.receive("c", "s", timeout=0.1))

    assert consumer.rejected_store is store
    assert len(store) == 1
