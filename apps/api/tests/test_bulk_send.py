from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import pytest

from packages.bulk_send import (
    NO_RESULT_ERROR,
    MessageState,
    OutboundMessage,
    RetryPolicy,
    SendResult,
    chunked,
    send_with_retries,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _message(recipient_id: str) -> OutboundMessage:
    return OutboundMessage(recipient_id=recipient_id, to_address=f"{recipient_id}@example.com", subject="Hi", html="<p>Hi</p>")


class ScriptedTransport:
    """Fails each recipient for its first ``failures[id]`` attempts."""

    def __init__(self, failures: dict[str, int]) -> None:
        self.failures = dict(failures)
        self.calls: list[list[str]] = []

    def __call__(self, messages: Sequence[OutboundMessage]) -> list[SendResult]:
        self.calls.append([message.recipient_id for message in messages])
        results = []
        for message in messages:
            remaining = self.failures.get(message.recipient_id, 0)
            if remaining > 0:
                self.failures[message.recipient_id] = remaining - 1
                results.append(SendResult(recipient_id=message.recipient_id, success=False, error_message="421 try later"))
            else:
                results.append(SendResult(recipient_id=message.recipient_id, success=True))
        return results


def test_retry_policy_delays_follow_schedule_and_clamp() -> None:
    policy = RetryPolicy()
    assert policy.max_attempts == 4
    assert [policy.delay_for(attempt) for attempt in range(0, 6)] == [0.0, 5.0, 30.0, 120.0, 120.0, 120.0]


def test_chunked_preserves_order_and_rejects_empty_batches() -> None:
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_all_succeed_on_first_attempt_without_sleeping() -> None:
    transport = ScriptedTransport({})
    sleeps: list[float] = []
    messages = send_with_retries([_message("a"), _message("b")], transport, sleep=sleeps.append, clock=lambda: T0)

    assert all(message.state == MessageState.SENT for message in messages)
    assert all(message.sent_at == T0 and message.attempts == 1 for message in messages)
    assert len(transport.calls) == 1
    assert sleeps == []


def test_only_failed_messages_are_resent_after_five_seconds() -> None:
    transport = ScriptedTransport({"a": 1})
    sleeps: list[float] = []
    messages = send_with_retries([_message("a"), _message("b")], transport, sleep=sleeps.append)

    by_id = {message.recipient_id: message for message in messages}
    assert by_id["a"].state == MessageState.SENT
    assert by_id["a"].attempts == 2
    assert by_id["a"].error_message is None
    assert by_id["b"].attempts == 1
    assert transport.calls == [["a", "b"], ["a"]]
    assert sleeps == [5.0]


def test_persistent_failure_ends_failed_after_max_retries_plus_one() -> None:
    transport = ScriptedTransport({"a": 99})
    sleeps: list[float] = []
    [message] = send_with_retries([_message("a")], transport, sleep=sleeps.append)

    assert message.state == MessageState.FAILED
    assert message.attempts == 4
    assert message.error_message == "421 try later"
    assert len(transport.calls) == 4
    assert sleeps == [5.0, 30.0, 120.0]


def test_missing_result_counts_as_failure() -> None:
    def _drops_everything(messages: Sequence[OutboundMessage]) -> list[SendResult]:
        return []

    [message] = send_with_retries([_message("a")], _drops_everything, RetryPolicy(max_retries=0))
    assert message.state == MessageState.FAILED
    assert message.error_message == NO_RESULT_ERROR


def test_terminal_messages_are_never_resent() -> None:
    already_sent = _message("a")
    already_sent.state = MessageState.SENT
    transport = ScriptedTransport({})
    send_with_retries([already_sent, _message("b")], transport)
    assert transport.calls == [["b"]]


def test_systemic_transport_error_propagates() -> None:
    def _down(messages: Sequence[OutboundMessage]) -> list[SendResult]:
        raise ConnectionError("smtp relay unreachable")

    with pytest.raises(ConnectionError):
        send_with_retries([_message("a")], _down)


def test_stop_during_backoff_ends_retries_and_leaves_unsent_pending() -> None:
    transport = ScriptedTransport({"a": 99})
    sleeps: list[float] = []
    stopping = {"now": False}

    def _wait(seconds: float) -> None:
        sleeps.append(seconds)
        stopping["now"] = True

    messages = send_with_retries(
        [_message("a"), _message("b")],
        transport,
        sleep=_wait,
        clock=lambda: T0,
        should_stop=lambda: stopping["now"],
    )

    assert transport.calls == [["a", "b"]]
    assert sleeps == [5.0]
    by_id = {message.recipient_id: message for message in messages}
    assert by_id["a"].state == MessageState.PENDING
    assert by_id["a"].attempts == 1
    assert by_id["b"].state == MessageState.SENT
