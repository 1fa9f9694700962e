import pytest

from steerline.exceptions import SteeringValidationError
from steerline.steering import (
    SteeringBuffer,
    create_steering_message,
    format_clock,
    format_steering,
)


def test_consume_preserves_arrival_order():
    buffer = SteeringBuffer(max_messages=5)
    for idx, text in enumerate(["first", "second", "third"], start=1):
        buffer.push(text, idx)

    content = buffer.consume()

    assert content is not None
    assert content.index("first") < content.index("second") < content.index("third")
    assert content.count("\n---\n") == 2
    assert not buffer.has_pending()


def test_overflow_evicts_oldest_and_reports_it():
    buffer = SteeringBuffer(max_messages=3)
    evictions = [buffer.push(f"msg-{i}", i) for i in range(1, 6)]

    assert evictions == [False, False, False, True, True]
    assert buffer.count() == 3
    assert [m.content for m in buffer.extract()] == ["msg-3", "msg-4", "msg-5"]


def test_consume_is_single_shot():
    buffer = SteeringBuffer()
    buffer.push("hello", 1)

    assert buffer.consume() is not None
    assert buffer.consume() is None
    assert buffer.extract() == []


def test_peek_does_not_drain():
    buffer = SteeringBuffer()
    buffer.push("hello", 1)

    assert buffer.peek() == buffer.peek()
    assert buffer.count() == 1


def test_tool_context_is_rendered():
    message = create_steering_message("look here", 9, "Bash", timestamp=0.0)

    assert format_steering([message]) == f"[{format_clock(0.0)} (during Bash)] look here"


@pytest.mark.parametrize(
    ("content", "message_id", "field"),
    [
        ("   ", 1, "content"),
        ("ok", 0, "message_id"),
        ("ok", -3, "message_id"),
        ("ok", True, "message_id"),
    ],
)
def test_invalid_input_is_rejected_without_enqueue(content, message_id, field):
    buffer = SteeringBuffer()

    with pytest.raises(SteeringValidationError) as exc:
        buffer.push(content, message_id)

    assert exc.value.field == field
    assert buffer.count() == 0


def test_restore_prepends_and_keeps_bound():
    buffer = SteeringBuffer(max_messages=3)
    buffer.push("new-1", 10)
    buffer.push("new-2", 11)
    recovered = [create_steering_message(f"old-{i}", i) for i in range(1, 3)]

    dropped = buffer.restore(recovered)

    assert dropped == 1
    assert [m.content for m in buffer.extract()] == ["old-2", "new-1", "new-2"]
