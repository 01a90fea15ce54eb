"""Message model for retrystack."""

import json
import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# UUID v4 regex pattern for validation
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Maximum payload size (1MB)
MAX_PAYLOAD_SIZE = 1_000_000

# Application properties stamped on a message each time it is dead-lettered
DEAD_LETTER_REASON = "dead_letter_reason"
DEAD_LETTER_SOURCE = "dead_letter_source"
DEAD_LETTER_COUNT = "dead_letter_count"
# Incremented only for MAX_DELIVERY_EXCEEDED, i.e. once per trip through the retry channel
RETRY_CYCLES = "retry_cycles"
# Set on placeholders for bodies that could not be deserialized
UNREADABLE_BODY = "unreadable_body"

MAX_DELIVERY_EXCEEDED = "MaxDeliveryCountExceeded"
TTL_EXPIRED = "TTLExpiredException"

_MAX_RAW_BODY_CHARS = MAX_PAYLOAD_SIZE // 8


class Message(BaseModel):
    """Immutable message envelope published to a channel.

    The payload is opaque to retrystack. Only the envelope is validated:

    Attributes:
        id: UUID v4 string, auto-generated if not provided.
        timestamp: UTC datetime, auto-generated if not provided.
        label: Correlation label matched by subscription filter rules.
        payload: JSON-serializable dictionary (max 1MB when serialized).
        properties: Application properties (string to string).
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    label: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    properties: dict[str, str] = Field(default_factory=dict)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ensure id is a valid UUID v4 string."""
        if not _UUID_PATTERN.match(v):
            raise ValueError(f"id must be a valid UUID v4 string, got: {v!r}")
        return v.lower()

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str) -> str:
        return v.strip()

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Ensure payload is strictly JSON-serializable and within size limits."""
        try:
            serialized = json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"payload must be JSON-serializable: {e}") from e

        byte_length = len(serialized.encode("utf-8"))
        if byte_length > MAX_PAYLOAD_SIZE:
            raise ValueError(
                f"payload exceeds maximum size of {MAX_PAYLOAD_SIZE} bytes "
                f"(got {byte_length} bytes)"
            )
        return v

    def with_properties(self, **properties: str) -> "Message":
        """Return a copy with extra application properties merged in."""
        return self.model_copy(update={"properties": {**self.properties, **properties}})

    @property
    def dead_letter_count(self) -> int:
        """Number of times this message has been dead-lettered (and forwarded)."""
        try:
            return int(self.properties.get(DEAD_LETTER_COUNT, "0"))
        except ValueError:
            return 0

    @property
    def retry_cycles(self) -> int:
        """Number of times this message exhausted its deliveries and went to retry."""
        try:
            return int(self.properties.get(RETRY_CYCLES, "0"))
        except ValueError:
            return 0

    def dead_lettered(self, reason: str, source: str) -> "Message":
        """Return a copy stamped with dead-letter metadata and incremented counts."""
        stamp = {
            DEAD_LETTER_REASON: reason,
            DEAD_LETTER_SOURCE: source,
            DEAD_LETTER_COUNT: str(self.dead_letter_count + 1),
        }
        if reason == MAX_DELIVERY_EXCEEDED:
            stamp[RETRY_CYCLES] = str(self.retry_cycles + 1)
        return self.with_properties(**stamp)

    @classmethod
    def unreadable(cls, raw: bytes, error: Exception, message_id: str | None = None) -> "Message":
        """Wrap a body that failed to deserialize so it can be rejected and recorded.

        The raw body is kept (decoded leniently, truncated) in
        ``payload["raw_body"]`` and the parse error in the ``unreadable_body``
        property. The broker's message id is reused when it is a UUID v4.
        """
        fields: dict[str, Any] = {
            "payload": {"raw_body": raw.decode("utf-8", errors="replace")[:_MAX_RAW_BODY_CHARS]},
            "properties": {UNREADABLE_BODY: str(error)[:1024]},
        }
        if message_id and _UUID_PATTERN.match(message_id):
            fields["id"] = message_id
        return cls(**fields)

    @property
    def is_unreadable(self) -> bool:
        return UNREADABLE_BODY in self.properties

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Message":
        return cls.model_validate_json(raw)
