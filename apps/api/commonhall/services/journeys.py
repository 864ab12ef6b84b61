from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from packages.journeys import (
    DEFAULT_AUTO_COMPLETE_AFTER,
    CompletionSnapshot,
    EnrollmentSnapshot,
    ProgressionAction,
    StepSnapshot,
    decide_progression,
)

from ..models import (
    Journey,
    JourneyEnrollment,
    JourneyEnrollmentStatus,
    JourneyStep,
    JourneyStepCompletion,
)
from .events import write_event
from .journey_delivery import StepDeliverer
from .locks import MutexLock

logger = structlog.get_logger()

JOURNEY_PROGRESSION_LOCK_KEY = "journey:progression:lock"

OPEN_ENROLLMENT_STATUSES = (JourneyEnrollmentStatus.ACTIVE, JourneyEnrollmentStatus.PAUSED)


class JourneyStepsLockedError(Exception):
    """Steps of a running journey cannot move: enrollments track them by position."""


def _now() -> datetime:
    return datetime.now(UTC)


def ordered_steps(journey: Journey) -> list[JourneyStep]:
    return sorted(journey.steps, key=lambda step: step.sort_order)


def _completion_for(enrollment: JourneyEnrollment, step_index: int) -> JourneyStepCompletion | None:
    return next((row for row in enrollment.step_completions if row.step_index == step_index), None)


def load_active_enrollments(db: Session) -> list[JourneyEnrollment]:
    return list(
        db.scalars(
            select(JourneyEnrollment)
            .join(Journey, Journey.id == JourneyEnrollment.journey_id)
            .where(
                JourneyEnrollment.status == JourneyEnrollmentStatus.ACTIVE,
                Journey.is_active.is_(True),
                Journey.deleted_at.is_(None),
            )
            .options(
                selectinload(JourneyEnrollment.journey).selectinload(Journey.steps),
                selectinload(JourneyEnrollment.step_completions),
                selectinload(JourneyEnrollment.user),
            )
        ).all()
    )


def advance_enrollment(
    db: Session,
    enrollment: JourneyEnrollment,
    deliverer: StepDeliverer,
    now: datetime,
    auto_complete_after: timedelta = DEFAULT_AUTO_COMPLETE_AFTER,
) -> ProgressionAction | None:
    """Apply at most one progression move and commit it. Returns the move made."""
    steps = ordered_steps(enrollment.journey)
    decision = decide_progression(
        enrollment=EnrollmentSnapshot(
            current_step_index=enrollment.current_step_index,
            started_at=enrollment.started_at,
            last_step_delivered_at=enrollment.last_step_delivered_at,
        ),
        steps=[
            StepSnapshot(sort_order=step.sort_order, delay_days=step.delay_days, is_required=step.is_required)
            for step in steps
        ],
        completions=[
            CompletionSnapshot(step_index=row.step_index, delivered_at=row.delivered_at, completed_at=row.completed_at)
            for row in enrollment.step_completions
        ],
        now=now,
        auto_complete_after=auto_complete_after,
    )

    if decision.action == ProgressionAction.COMPLETE_ENROLLMENT:
        enrollment.status = JourneyEnrollmentStatus.COMPLETED
        enrollment.completed_at = now
        write_event(
            db=db,
            channel="journeys",
            event_type="JOURNEY_ENROLLMENT_COMPLETED",
            subject_type="journey_enrollment",
            subject_id=enrollment.id,
            payload_json={"journey_id": str(enrollment.journey_id), "steps": len(steps)},
        )
    elif decision.action == ProgressionAction.DELIVER_STEP:
        step = steps[enrollment.current_step_index]
        channel = deliverer.deliver(enrollment, step)
        completion = JourneyStepCompletion(
            enrollment=enrollment,
            step_index=enrollment.current_step_index,
            step_id=step.id,
            delivered_at=now,
            delivery_channel=channel,
        )
        db.add(completion)
        enrollment.last_step_delivered_at = now
        write_event(
            db=db,
            channel="journeys",
            event_type="JOURNEY_STEP_DELIVERED",
            subject_type="journey_enrollment",
            subject_id=enrollment.id,
            payload_json={"step_index": enrollment.current_step_index, "step_id": str(step.id), "channel": channel.value},
        )
    elif decision.action == ProgressionAction.AUTO_COMPLETE_STEP:
        completion = _completion_for(enrollment, enrollment.current_step_index)
        if completion is None:
            return None
        completion.completed_at = now
        write_event(
            db=db,
            channel="journeys",
            event_type="JOURNEY_STEP_AUTO_COMPLETED",
            subject_type="journey_enrollment",
            subject_id=enrollment.id,
            payload_json={"step_index": enrollment.current_step_index},
        )
        enrollment.current_step_index += 1
    else:
        return None

    db.commit()
    return decision.action


def run_journey_progression_cycle(
    db: Session,
    lock: MutexLock,
    deliverer: StepDeliverer,
    now: datetime | None = None,
    lock_ttl_seconds: float = 300,
    auto_complete_after: timedelta = DEFAULT_AUTO_COMPLETE_AFTER,
) -> int:
    """Advance every active enrollment by at most one move.

    Each enrollment commits on its own; a failure rolls back only that enrollment
    and it is retried on the next cycle.
    """
    with lock.guard(JOURNEY_PROGRESSION_LOCK_KEY, lock_ttl_seconds) as acquired:
        if not acquired:
            logger.debug("journey_progression_skipped", reason="lock held by another instance")
            return 0

        now = now or _now()
        # Rows loaded here stay usable across the per-enrollment commits.
        expire_on_commit = db.expire_on_commit
        db.expire_on_commit = False
        try:
            enrollments = load_active_enrollments(db)
            enrollment_ids = [row.id for row in enrollments]
            processed = 0
            for enrollment_id, enrollment in zip(enrollment_ids, enrollments):
                try:
                    action = advance_enrollment(db, enrollment, deliverer, now, auto_complete_after)
                except IntegrityError:
                    db.rollback()
                    logger.warning("journey_step_already_recorded", enrollment_id=str(enrollment_id))
                    continue
                except Exception:
                    db.rollback()
                    logger.exception("journey_enrollment_failed", enrollment_id=str(enrollment_id))
                    continue
                if action is not None:
                    processed += 1
                    logger.debug("journey_enrollment_advanced", enrollment_id=str(enrollment_id), action=action.value)
        finally:
            db.expire_on_commit = expire_on_commit

    if processed:
        logger.info("journey_progression_completed", processed=processed, scanned=len(enrollment_ids))
    return processed


def enroll_user(
    db: Session,
    journey_id: uuid.UUID,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> JourneyEnrollment | None:
    journey = db.scalar(select(Journey).where(Journey.id == journey_id, Journey.deleted_at.is_(None)))
    if journey is None or not journey.is_active:
        return None
    existing = db.scalar(
        select(JourneyEnrollment).where(
            JourneyEnrollment.journey_id == journey_id,
            JourneyEnrollment.user_id == user_id,
            JourneyEnrollment.status.in_(OPEN_ENROLLMENT_STATUSES),
        )
    )
    if existing is not None:
        return existing
    enrollment = JourneyEnrollment(
        journey_id=journey_id,
        user_id=user_id,
        started_at=now or _now(),
        current_step_index=0,
        status=JourneyEnrollmentStatus.ACTIVE,
    )
    db.add(enrollment)
    db.commit()
    logger.info("journey_enrolled", journey_id=str(journey_id), user_id=str(user_id), enrollment_id=str(enrollment.id))
    return enrollment


def _load_enrollment(db: Session, enrollment_id: uuid.UUID) -> JourneyEnrollment | None:
    return db.scalar(
        select(JourneyEnrollment)
        .where(JourneyEnrollment.id == enrollment_id)
        .options(
            selectinload(JourneyEnrollment.journey).selectinload(Journey.steps),
            selectinload(JourneyEnrollment.step_completions),
        )
    )


def complete_step(db: Session, enrollment_id: uuid.UUID, step_index: int, now: datetime | None = None) -> bool:
    enrollment = _load_enrollment(db, enrollment_id)
    if enrollment is None or enrollment.status != JourneyEnrollmentStatus.ACTIVE:
        return False
    completion = _completion_for(enrollment, step_index)
    if completion is None or completion.completed_at is not None:
        return False

    now = now or _now()
    completion.completed_at = now
    if enrollment.current_step_index == step_index:
        enrollment.current_step_index += 1
        if enrollment.current_step_index >= len(enrollment.journey.steps):
            enrollment.status = JourneyEnrollmentStatus.COMPLETED
            enrollment.completed_at = now
    write_event(
        db=db,
        channel="journeys",
        event_type="JOURNEY_STEP_COMPLETED",
        subject_type="journey_enrollment",
        subject_id=enrollment.id,
        payload_json={"step_index": step_index},
    )
    db.commit()
    return True


def mark_step_viewed(db: Session, enrollment_id: uuid.UUID, step_index: int, now: datetime | None = None) -> bool:
    completion = db.scalar(
        select(JourneyStepCompletion).where(
            JourneyStepCompletion.enrollment_id == enrollment_id,
            JourneyStepCompletion.step_index == step_index,
        )
    )
    if completion is None:
        return False
    if completion.viewed_at is None:
        completion.viewed_at = now or _now()
        db.commit()
    return True


def _transition(
    db: Session,
    enrollment_id: uuid.UUID,
    allowed_from: Sequence[JourneyEnrollmentStatus],
    target: JourneyEnrollmentStatus,
) -> bool:
    enrollment = db.scalar(select(JourneyEnrollment).where(JourneyEnrollment.id == enrollment_id))
    if enrollment is None or enrollment.status not in allowed_from:
        return False
    enrollment.status = target
    db.commit()
    return True


def pause_enrollment(db: Session, enrollment_id: uuid.UUID) -> bool:
    return _transition(db, enrollment_id, (JourneyEnrollmentStatus.ACTIVE,), JourneyEnrollmentStatus.PAUSED)


def resume_enrollment(db: Session, enrollment_id: uuid.UUID) -> bool:
    return _transition(db, enrollment_id, (JourneyEnrollmentStatus.PAUSED,), JourneyEnrollmentStatus.ACTIVE)


def cancel_enrollment(db: Session, enrollment_id: uuid.UUID) -> bool:
    return _transition(db, enrollment_id, OPEN_ENROLLMENT_STATUSES, JourneyEnrollmentStatus.CANCELLED)


def reorder_steps(db: Session, journey_id: uuid.UUID, ordered_step_ids: Sequence[uuid.UUID]) -> None:
    journey = db.scalar(
        select(Journey).where(Journey.id == journey_id, Journey.deleted_at.is_(None)).options(selectinload(Journey.steps))
    )
    if journey is None:
        raise LookupError(f"journey {journey_id} not found")
    if journey.is_active:
        enrolled = db.scalar(
            select(func.count(JourneyEnrollment.id)).where(
                JourneyEnrollment.journey_id == journey_id,
                JourneyEnrollment.status.in_(OPEN_ENROLLMENT_STATUSES),
            )
        )
        if enrolled:
            raise JourneyStepsLockedError(f"journey {journey_id} has {enrolled} open enrollments")

    steps_by_id = {step.id: step for step in journey.steps}
    if len(ordered_step_ids) != len(steps_by_id) or set(ordered_step_ids) != set(steps_by_id):
        raise ValueError("ordered_step_ids must list every step of the journey exactly once")
    for position, step_id in enumerate(ordered_step_ids):
        steps_by_id[step_id].sort_order = position
    db.commit()


def journey_analytics(db: Session, journey_id: uuid.UUID) -> dict[str, Any] | None:
    journey = db.scalar(
        select(Journey)
        .where(Journey.id == journey_id)
        .options(
            selectinload(Journey.steps),
            selectinload(Journey.enrollments).selectinload(JourneyEnrollment.step_completions),
        )
    )
    if journey is None:
        return None

    enrollments = list(journey.enrollments)
    total = len(enrollments)
    completed = [row for row in enrollments if row.status == JourneyEnrollmentStatus.COMPLETED]
    durations = [
        (row.completed_at - row.started_at).total_seconds() / 86400 for row in completed if row.completed_at is not None
    ]
    completions = [row for enrollment in enrollments for row in enrollment.step_completions]

    funnel: list[dict[str, Any]] = []
    for index, step in enumerate(ordered_steps(journey)):
        delivered = sum(1 for row in completions if row.step_index == index)
        done = sum(1 for row in completions if row.step_index == index and row.completed_at is not None)
        funnel.append(
            {
                "step_index": index,
                "step_title": step.title,
                "delivered": delivered,
                "completed": done,
                "completion_rate": round(done / delivered * 100, 1) if delivered else 0.0,
            }
        )

    return {
        "journey_id": str(journey.id),
        "total_enrollments": total,
        "active_enrollments": sum(1 for row in enrollments if row.status == JourneyEnrollmentStatus.ACTIVE),
        "completed_enrollments": len(completed),
        "cancelled_enrollments": sum(1 for row in enrollments if row.status == JourneyEnrollmentStatus.CANCELLED),
        "completion_rate": round(len(completed) / total * 100, 1) if total else 0.0,
        "average_completion_days": round(sum(durations) / len(durations), 1) if durations else 0.0,
        "step_funnel": funnel,
    }
