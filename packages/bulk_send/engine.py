from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime
from typing import TypeVar

from .schema import MessageState, OutboundMessage, RetryPolicy, SendResult

T = TypeVar("T")

NO_RESULT_ERROR = "no result returned by transport"

SendBulk = Callable[[Sequence[OutboundMessage]], Sequence[SendResult]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def apply_results(
    messages: Sequence[OutboundMessage],
    results: Sequence[SendResult],
    sent_at: datetime,
) -> None:
    by_id = {result.recipient_id: result for result in results}
    for message in messages:
        message.attempts += 1
        result = by_id.get(message.recipient_id)
        if result is not None and result.success:
            message.state = MessageState.SENT
            message.sent_at = sent_at
            message.error_message = None
            continue
        message.state = MessageState.RETRYABLE
        message.error_message = (result.error_message if result is not None else None) or NO_RESULT_ERROR


def send_with_retries(
    messages: Sequence[OutboundMessage],
    send_bulk: SendBulk,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], object] | None = None,
    clock: Callable[[], datetime] = _utcnow,
    should_stop: Callable[[], bool] | None = None,
) -> list[OutboundMessage]:
    """Send a batch, resending only the messages that failed the previous attempt.

    Attempt 0 covers every pending message; attempts 1..max_retries wait the
    policy delay first. A message never goes out more than ``max_attempts`` times.
    Exceptions from ``send_bulk`` are systemic failures and propagate.

    When ``should_stop`` turns true during a backoff wait, no further attempt is
    made and the unsent messages go back to PENDING.
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.max_attempts):
        outstanding = [m for m in messages if not m.is_terminal]
        if not outstanding:
            break
        if attempt > 0:
            if sleep is not None:
                sleep(policy.delay_for(attempt))
            if should_stop is not None and should_stop():
                for message in outstanding:
                    message.state = MessageState.PENDING
                return list(messages)
        results = send_bulk(outstanding)
        apply_results(outstanding, results, sent_at=clock())

    for message in messages:
        if message.state in (MessageState.RETRYABLE, MessageState.PENDING):
            message.state = MessageState.FAILED
    return list(messages)
