from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from ..models import Event


def write_event(
    db: Session,
    channel: str,
    event_type: str,
    subject_type: str,
    subject_id: object,
    payload_json: dict[str, Any] | None = None,
    source: str = "worker",
    actor_id: str | None = None,
) -> Event:
    event = Event(
        source=source,
        channel=channel,
        type=event_type,
        subject_type=subject_type,
        subject_id=str(subject_id),
        payload_json=payload_json or {},
        actor_id=actor_id,
    )
    db.add(event)
    return event
