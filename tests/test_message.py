"""Tests for the Message envelope."""

import json
from uuid import uuid4

import pytest
from hypothesis import given
from pydantic import ValidationError

from retrystack.core.message import (
    DEAD_LETTER_COUNT,
    DEAD_LETTER_REASON,
    DEAD_LETTER_SOURCE,
    MAX_DELIVERY_EXCEEDED,
    MAX_PAYLOAD_SIZE,
    RETRY_CYCLES,
    TTL_EXPIRED,
    UNREADABLE_BODY,
    Message,
)
from tests.conftest import valid_labels, valid_payloads


def test_defaults_are_generated():
    message = Message()
    assert message.label == ""
    assert message.payload == {}
    assert message.properties == {}
    assert message.timestamp.tzinfo is not None


def test_id_is_normalized_to_lowercase():
    raw = str(uuid4()).upper()
    assert Message(id=raw).id == raw.lower()


@pytest.mark.parametrize("bad_id", ["", "not-a-uuid", "12345678-1234-1234-1234-123456789012"])
def test_invalid_id_rejected(bad_id: str):
    with pytest.raises(ValidationError):
        Message(id=bad_id)


def test_label_is_stripped():
    assert Message(label="  retry \n").label == "retry"


def test_payload_must_be_json_serializable():
    with pytest.raises(ValidationError):
        Message(payload={"bad": object()})


def test_payload_size_limit():
    with pytest.raises(ValidationError, match="maximum size"):
        Message(payload={"blob": "x" * MAX_PAYLOAD_SIZE})


def test_extra_fields_forbidden():
    with pytest.raises(ValidationError):
        Message(priority=1)


def test_message_is_frozen():
    message = Message(label="a")
    with pytest.raises(ValidationError):
        message.label = "b"


def test_with_properties_merges_without_mutating():
    original = Message(properties={"a": "1"})
    updated = original.with_properties(b="2", a="3")

    assert original.properties == {"a": "1"}
    assert updated.properties == {"a": "3", "b": "2"}
    assert updated.id == original.id


@given(label=valid_labels(), payload=valid_payloads())
def test_json_round_trip(label: str, payload: dict):
    message = Message(label=label, payload=payload, properties={"k": "v"})
    restored = Message.from_json(message.to_json())

    assert restored == message
    assert json.loads(message.to_json())["label"] == label


def test_dead_lettered_stamps_and_counts_hops():
    message = Message(properties={"tenant": "t1"})

    once = message.dead_lettered(MAX_DELIVERY_EXCEEDED, "primary/sub")
    twice = once.dead_lettered(TTL_EXPIRED, "retry/sub")

    assert message.dead_letter_count == 0
    assert once.dead_letter_count == 1
    assert twice.dead_letter_count == 2
    assert twice.properties == {
        "tenant": "t1",
        DEAD_LETTER_REASON: "TTLExpiredException",
        DEAD_LETTER_SOURCE: "retry/sub",
        DEAD_LETTER_COUNT: "2",
        RETRY_CYCLES: "1",
    }
    assert twice.retry_cycles == 1


def test_unparseable_dead_letter_count_reads_as_zero():
    assert Message(properties={DEAD_LETTER_COUNT: "many"}).dead_letter_count == 0


def test_retry_cycles_count_only_exhausted_deliveries():
    message = Message()
    for _ in range(3):
        message = message.dead_lettered(TTL_EXPIRED, "retry/sub")

    assert message.dead_letter_count == 3
    assert message.retry_cycles == 0
    assert message.dead_lettered(MAX_DELIVERY_EXCEEDED, "primary/sub").retry_cycles == 1


def test_unreadable_keeps_raw_body_and_error():
    broker_id = str(uuid4())

    placeholder = Message.unreadable(b"\xff{oops", ValueError("bad json"), broker_id)

    assert placeholder.is_unreadable
    assert placeholder.id == broker_id
    assert placeholder.payload["raw_body"] == "\ufffd{oops"
    assert placeholder.properties[UNREADABLE_BODY] == "bad json"
    assert not Message().is_unreadable


def test_unreadable_ignores_non_uuid_ids_and_truncates():
    raw = b"x" * (MAX_PAYLOAD_SIZE * 2)

    placeholder = Message.unreadable(raw, ValueError("too big"), "not-a-uuid")

    assert placeholder.id != "not-a-uuid"
    assert len(placeholder.payload["raw_body"]) < MAX_PAYLOAD_SIZE
