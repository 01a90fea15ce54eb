"""Topology resource models: channels, subscriptions and filter rules."""

from pydantic import BaseModel, Field, field_validator


def _validate_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("name must not be empty")
    return v


class ChannelProperties(BaseModel):
    """A named broker channel (topic).

    ``forward_dead_letters_to`` holds the *name* of another channel. It is
    configuration read by the broker, never an owning reference.
    """

    name: str
    durable: bool = True
    max_delivery_count: int = Field(default=10, ge=1)
    message_ttl: float | None = Field(default=None, gt=0)
    forward_dead_letters_to: str | None = None

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)


class FilterRule(BaseModel):
    """Correlation filter: matches messages whose label equals ``label``."""

    name: str
    label: str

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)

    def matches(self, label: str) -> bool:
        return label == self.label


class SubscriptionProperties(BaseModel):
    """A named view onto one channel."""

    channel: str
    name: str

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("channel", "name")
    @classmethod
    def validate_names(cls, v: str) -> str:
        return _validate_name(v)

    @property
    def path(self) -> str:
        return f"{self.channel}/{self.name}"


def rules_match(rules: list[FilterRule], label: str) -> bool:
    """Return True if a subscription with ``rules`` accepts ``label``.

    A subscription without rules accepts everything.
    """
    if not rules:
        return True
    return any(rule.matches(label) for rule in rules)
