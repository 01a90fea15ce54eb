"""Structured JSON logging for retrystack.

Records are rendered as one JSON object per line. Topology fields are
grouped at the front so a delivery can be followed across the provisioner,
consumer and broker loggers::

    {"timestamp": ..., "level": "WARNING", "logger": "retrystack.consumer",
     "message": "Settled ... as failed_retry", "channel": "image-processing",
     "subscription": "image-processing-sub", "message_id": ..., "label": "",
     "delivery_count": 3, "disposition": "failed_retry"}
"""

import json
import logging
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from retrystack.backends.base import ReceivedMessage

_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
) | {"message", "asctime", "taskName"}

# Emitted in this order, before any other extra fields
_TOPOLOGY_FIELDS = (
    "resource",
    "channel",
    "subscription",
    "forward_to",
    "message_id",
    "label",
    "delivery_count",
    "state",
    "disposition",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps and topology fields up front."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _TOPOLOGY_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except (TypeError, ValueError):
            return str(log_data)


class DeliveryLogAdapter(logging.LoggerAdapter):
    """Stamps every record with the topology fields of one delivery.

    Per-call ``extra`` values are merged over the delivery's fields.
    """

    def __init__(self, logger: logging.Logger, delivery: "ReceivedMessage") -> None:
        super().__init__(
            logger,
            {
                "channel": delivery.channel,
                "subscription": delivery.subscription,
                "message_id": delivery.message.id,
                "label": delivery.message.label,
                "delivery_count": delivery.delivery_count,
            },
        )

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def _setup_json_handler(logger: logging.Logger, level: int) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def configure_consumer_logger(level: int = logging.INFO) -> logging.Logger:
    """Configure and return the default consumer logger with JSON formatting."""
    logger = logging.getLogger("retrystack.consumer")
    _setup_json_handler(logger, level)
    return logger


def configure_provisioner_logger(level: int = logging.INFO) -> logging.Logger:
    """Configure and return the default provisioner logger with JSON formatting."""
    logger = logging.getLogger("retrystack.provisioner")
    _setup_json_handler(logger, level)
    return logger


def get_logger(name: str = "retrystack", level: int = logging.INFO) -> logging.Logger:
    """Get a logger with JSON formatting.

    Args:
        name: The logger name. Defaults to "retrystack".
        level: The logging level to set. Defaults to logging.INFO.
    """
    logger = logging.getLogger(name)
    _setup_json_handler(logger, level)
    return logger
