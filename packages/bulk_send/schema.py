from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class MessageState(StrEnum):
    PENDING = "pending"
    RETRYABLE = "retryable"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATES = frozenset({MessageState.SENT, MessageState.FAILED})


class OutboundMessage(BaseModel):
    recipient_id: str = Field(min_length=1)
    to_address: str
    subject: str
    html: str
    state: MessageState = MessageState.PENDING
    attempts: int = Field(default=0, ge=0)
    error_message: str | None = None
    sent_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SendResult(BaseModel):
    recipient_id: str
    success: bool
    error_message: str | None = None


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    delays_seconds: tuple[float, ...] = Field(default=(5.0, 30.0, 120.0), min_length=1)

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        return self.delays_seconds[min(attempt - 1, len(self.delays_seconds) - 1)]

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1
