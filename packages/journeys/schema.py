from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ProgressionAction(StrEnum):
    COMPLETE_ENROLLMENT = "complete_enrollment"
    DELIVER_STEP = "deliver_step"
    WAIT_FOR_DELAY = "wait_for_delay"
    AUTO_COMPLETE_STEP = "auto_complete_step"
    AWAIT_COMPLETION = "await_completion"
    NONE = "none"


class StepSnapshot(BaseModel):
    sort_order: int = 0
    delay_days: int = Field(default=0, ge=0)
    is_required: bool = True


class CompletionSnapshot(BaseModel):
    step_index: int = Field(ge=0)
    delivered_at: datetime
    completed_at: datetime | None = None


class EnrollmentSnapshot(BaseModel):
    current_step_index: int = Field(default=0, ge=0)
    started_at: datetime
    last_step_delivered_at: datetime | None = None


class ProgressionDecision(BaseModel):
    action: ProgressionAction
    step_index: int | None = None
    due_at: datetime | None = None
