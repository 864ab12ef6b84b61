from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from .schema import (
    CompletionSnapshot,
    EnrollmentSnapshot,
    ProgressionAction,
    ProgressionDecision,
    StepSnapshot,
)

DEFAULT_AUTO_COMPLETE_AFTER = timedelta(days=7)


def delivery_reference_time(enrollment: EnrollmentSnapshot) -> datetime:
    return enrollment.last_step_delivered_at or enrollment.started_at


def decide_progression(
    enrollment: EnrollmentSnapshot,
    steps: Sequence[StepSnapshot],
    completions: Sequence[CompletionSnapshot],
    now: datetime,
    auto_complete_after: timedelta = DEFAULT_AUTO_COMPLETE_AFTER,
) -> ProgressionDecision:
    """Decide the single next move for one active enrollment.

    ``steps`` must already be in sort order; the enrollment's position is an index
    into that list. Required steps that the user has not completed never advance
    here: the enrollment waits until the complete-step command runs.
    """
    index = enrollment.current_step_index
    if index >= len(steps):
        return ProgressionDecision(action=ProgressionAction.COMPLETE_ENROLLMENT)

    step = steps[index]
    completion = next((row for row in completions if row.step_index == index), None)

    if completion is None:
        due_at = delivery_reference_time(enrollment) + timedelta(days=step.delay_days)
        if now >= due_at:
            return ProgressionDecision(action=ProgressionAction.DELIVER_STEP, step_index=index, due_at=due_at)
        return ProgressionDecision(action=ProgressionAction.WAIT_FOR_DELAY, step_index=index, due_at=due_at)

    if completion.completed_at is not None:
        return ProgressionDecision(action=ProgressionAction.NONE, step_index=index)

    if step.is_required:
        return ProgressionDecision(action=ProgressionAction.AWAIT_COMPLETION, step_index=index)

    due_at = completion.delivered_at + auto_complete_after
    if now >= due_at:
        return ProgressionDecision(action=ProgressionAction.AUTO_COMPLETE_STEP, step_index=index, due_at=due_at)
    return ProgressionDecision(action=ProgressionAction.AWAIT_COMPLETION, step_index=index, due_at=due_at)
