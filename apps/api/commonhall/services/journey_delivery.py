from __future__ import annotations

import html
from typing import Protocol

import structlog
from sqlalchemy.orm import Session

from packages.bulk_send import OutboundMessage

from ..models import JourneyChannelType, JourneyEnrollment, JourneyStep
from .email_transport import EmailTransport, EmailTransportError
from .events import write_event

logger = structlog.get_logger()


class StepDeliveryError(Exception):
    def __init__(self, channel: JourneyChannelType, message: str) -> None:
        super().__init__(message)
        self.channel = channel


class StepDeliverer(Protocol):
    def deliver(self, enrollment: JourneyEnrollment, step: JourneyStep) -> JourneyChannelType: ...


def render_step_email(step: JourneyStep, user_name: str, base_url: str, enrollment: JourneyEnrollment) -> str:
    link = f"{base_url.rstrip('/')}/journeys/{enrollment.id}/steps/{enrollment.current_step_index}"
    description = f"<p>{html.escape(step.description)}</p>" if step.description else ""
    return (
        "<!DOCTYPE html><html><body>"
        f"<p>Hi {html.escape(user_name)},</p>"
        f"<h2>{html.escape(step.title)}</h2>"
        f"{description}"
        f'<p><a href="{html.escape(link)}">Open this step</a></p>'
        "</body></html>"
    )


class TransportStepDeliverer:
    """Delivers a step in-app (as a notification event) and/or by email.

    The notification event joins the caller's transaction; email goes out
    immediately through the transport.
    """

    def __init__(self, db: Session, transport: EmailTransport, base_url: str) -> None:
        self.db = db
        self.transport = transport
        self.base_url = base_url

    def deliver(self, enrollment: JourneyEnrollment, step: JourneyStep) -> JourneyChannelType:
        channel = step.channel_type
        if channel in {JourneyChannelType.APP_NOTIFICATION, JourneyChannelType.BOTH}:
            write_event(
                db=self.db,
                channel="journeys",
                event_type="APP_NOTIFICATION",
                subject_type="user",
                subject_id=enrollment.user_id,
                payload_json={
                    "title": "Journey Step",
                    "body": step.title,
                    "link": f"/journeys/{enrollment.id}/steps/{enrollment.current_step_index}",
                },
            )

        if channel in {JourneyChannelType.EMAIL, JourneyChannelType.BOTH}:
            self._send_email(enrollment, step)

        return channel

    def _send_email(self, enrollment: JourneyEnrollment, step: JourneyStep) -> None:
        user = enrollment.user
        if user is None or not user.email:
            raise StepDeliveryError(JourneyChannelType.EMAIL, f"user {enrollment.user_id} has no email address")
        message = OutboundMessage(
            recipient_id=str(enrollment.id),
            to_address=user.email,
            subject=f"Journey: {step.title}",
            html=render_step_email(step, user.full_name or "there", self.base_url, enrollment),
        )
        try:
            results = self.transport.send_bulk([message])
        except EmailTransportError as exc:
            raise StepDeliveryError(JourneyChannelType.EMAIL, str(exc)) from exc
        result = next((row for row in results if row.recipient_id == message.recipient_id), None)
        if result is None or not result.success:
            reason = result.error_message if result is not None else "no result returned by transport"
            raise StepDeliveryError(JourneyChannelType.EMAIL, reason or "email rejected")
        logger.debug("journey_step_email_sent", enrollment_id=str(enrollment.id), step_id=str(step.id))
