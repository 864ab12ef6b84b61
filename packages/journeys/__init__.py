from packages.journeys.engine import DEFAULT_AUTO_COMPLETE_AFTER, decide_progression, delivery_reference_time
from packages.journeys.schema import (
    CompletionSnapshot,
    EnrollmentSnapshot,
    ProgressionAction,
    ProgressionDecision,
    StepSnapshot,
)

__all__ = [
    "DEFAULT_AUTO_COMPLETE_AFTER",
    "CompletionSnapshot",
    "EnrollmentSnapshot",
    "ProgressionAction",
    "ProgressionDecision",
    "StepSnapshot",
    "decide_progression",
    "delivery_reference_time",
]
