from packages.bulk_send.engine import NO_RESULT_ERROR, SendBulk, apply_results, chunked, send_with_retries
from packages.bulk_send.schema import MessageState, OutboundMessage, RetryPolicy, SendResult, TERMINAL_STATES

__all__ = [
    "NO_RESULT_ERROR",
    "TERMINAL_STATES",
    "MessageState",
    "OutboundMessage",
    "RetryPolicy",
    "SendBulk",
    "SendResult",
    "apply_results",
    "chunked",
    "send_with_retries",
]
