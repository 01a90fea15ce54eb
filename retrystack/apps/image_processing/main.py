"""Image-processing worker entrypoint.

Provisions the primary/retry topology, then consumes the primary
subscription with manual acknowledgment. A provisioning failure exits with
status 1 so the replica never reports ready on an untrusted topology.

Usage:
    python -m retrystack.apps.image_processing.main --demo
    python -m retrystack.apps.image_processing.main --backend redis --redis-url redis://localhost:6379
    SERVICE_BUS_NAMESPACE=ns.servicebus.windows.net \
        python -m retrystack.apps.image_processing.main --backend servicebus
"""

import argparse
import asyncio
import logging
import os
import sys

from retrystack.apps.image_processing.handlers import InMemoryThumbnailStore, ThumbnailHandler
from retrystack.backends.inmemory import InMemoryBroker
from retrystack.backends.redis_backend import RedisBroker
from retrystack.core.config import TopologyConfig
from retrystack.core.consumer import Consumer, ConsumerStats
from retrystack.core.errors import ProvisioningError
from retrystack.core.provisioner import TopologyProvisioner
from retrystack.core.publisher import Publisher

logger = logging.getLogger("retrystack.apps.image_processing")

DEMO_REQUESTS = [
    {"key": "photos/cat.jpg", "content_type": "image/jpeg", "size": 120_000},
    {"key": "docs/report.pdf", "content_type": "application/pdf", "size": 80_000},
    {"key": "photos/flaky.png", "content_type": "image/png", "size": 64_000},
    {"content_type": "image/png"},
]
# cat (1) + report (1) + flaky (2: fails once, then succeeds) + malformed (1)
DEMO_DELIVERIES = 5


def build_broker(args: argparse.Namespace):
    if args.backend == "memory":
        return InMemoryBroker()
    if args.backend == "redis":
        return RedisBroker(redis_url=args.redis_url)

    from retrystack.backends.servicebus import ServiceBusBroker

    return ServiceBusBroker(
        connection_string=os.environ.get("SERVICE_BUS_CONNECTION_STRING"),
        fully_qualified_namespace=os.environ.get("SERVICE_BUS_NAMESPACE"),
    )


async def run_demo(config: TopologyConfig | None = None) -> tuple[ConsumerStats, ThumbnailHandler]:
    """Provision an in-memory topology, publish sample uploads and consume them.

    Returns:
        A tuple of (ConsumerStats, ThumbnailHandler) after every sample
        message reached a terminal disposition.
    """
    config = config or TopologyConfig()
    broker = InMemoryBroker()
    await TopologyProvisioner(broker, config).provision()

    publisher = Publisher(broker, config)
    for payload in DEMO_REQUESTS:
        await publisher.publish(payload)

    handler = ThumbnailHandler(store=InMemoryThumbnailStore(failures={"photos/flaky.png": 1}))
    consumer = Consumer.for_primary(
        broker, handler, config, receive_timeout=0.1, max_messages=DEMO_DELIVERIES
    )
    stats = await consumer.run()
    await broker.close()
    return stats, handler


async def run_worker(args: argparse.Namespace) -> ConsumerStats | None:
    config = TopologyConfig.from_env()
    broker = build_broker(args)
    try:
        report = await TopologyProvisioner(broker, config).provision()
        if report.degraded:
            logger.warning("Retry path degraded: %s", report.wiring)
        if args.provision_only:
            return None

        consumer = Consumer.for_primary(
            broker,
            ThumbnailHandler(),
            config,
            concurrency=args.concurrency,
            handler_timeout=args.handler_timeout,
        )
        return await consumer.run()
    finally:
        await broker.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="retrystack image-processing worker")
    parser.add_argument("--backend", choices=["memory", "redis", "servicebus"], default="memory")
    parser.add_argument("--redis-url", default=os.environ.get("REDIS_URL", "redis://localhost:6379"))
    parser.add_argument("--concurrency", type=int, default=4)
    parser.add_argument("--handler-timeout", type=float, default=30.0)
    parser.add_argument("--provision-only", action="store_true")
    parser.add_argument("--demo", action="store_true", help="Run the in-memory demo and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the image-processing worker."""
    logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stderr)
    args = parse_args(argv)

    try:
        if args.demo:
            stats, handler = asyncio.run(run_demo())
            print(
                f"Demo complete: {stats.completed} completed, {stats.retried} retried, "
                f"{stats.rejected} rejected; thumbnails for {handler.processed}"
            )
        else:
            asyncio.run(run_worker(args))
    except ProvisioningError as e:
        logger.error("Provisioning failed, refusing to start: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
