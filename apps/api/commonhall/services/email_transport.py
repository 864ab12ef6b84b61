from __future__ import annotations

import smtplib
from collections.abc import Sequence
from email.message import EmailMessage
from typing import Protocol

import structlog

from packages.bulk_send import OutboundMessage, SendResult

from ..settings import Settings, settings as default_settings

logger = structlog.get_logger()


class EmailTransportError(Exception):
    """The transport as a whole is unusable (connection, auth); nothing was sent."""

    def __init__(self, message: str, category: str = "network") -> None:
        super().__init__(message)
        self.category = category


class EmailTransport(Protocol):
    def send_bulk(self, messages: Sequence[OutboundMessage]) -> list[SendResult]: ...


class MockEmailTransport:
    """Accepts every message and keeps them in memory."""

    def __init__(self) -> None:
        self.sent: list[OutboundMessage] = []

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> list[SendResult]:
        results: list[SendResult] = []
        for message in messages:
            self.sent.append(message.model_copy())
            results.append(SendResult(recipient_id=message.recipient_id, success=True))
        logger.debug("mock_transport_send", count=len(messages))
        return results


class SmtpEmailTransport:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_ssl: bool = False,
        sender: str = "no-reply@commonhall.local",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.sender = sender
        self.timeout_seconds = timeout_seconds

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            client: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_seconds)
        else:
            client = smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds)
            client.starttls()
        if self.username and self.password:
            client.login(self.username, self.password)
        return client

    def _build(self, message: OutboundMessage) -> EmailMessage:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to_address
        email["Subject"] = message.subject
        email["X-Recipient-Id"] = message.recipient_id
        email.set_content("This message requires an HTML capable mail client.")
        email.add_alternative(message.html, subtype="html")
        return email

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> list[SendResult]:
        if not messages:
            return []
        try:
            client = self._connect()
        except (OSError, smtplib.SMTPException) as exc:
            raise EmailTransportError(f"smtp connect failed: {exc}") from exc

        results: list[SendResult] = []
        try:
            for position, message in enumerate(messages):
                try:
                    client.send_message(self._build(message))
                except smtplib.SMTPServerDisconnected as exc:
                    # Everything not yet handed over is left for the next attempt.
                    error = f"smtp connection lost: {exc}"[:500]
                    results.extend(
                        SendResult(recipient_id=row.recipient_id, success=False, error_message=error)
                        for row in messages[position:]
                    )
                    break
                except smtplib.SMTPException as exc:
                    results.append(
                        SendResult(recipient_id=message.recipient_id, success=False, error_message=str(exc)[:500])
                    )
                    continue
                results.append(SendResult(recipient_id=message.recipient_id, success=True))
        finally:
            try:
                client.quit()
            except (OSError, smtplib.SMTPException):
                pass
        return results


def get_email_transport(config: Settings | None = None) -> EmailTransport:
    config = config or default_settings
    if config.delivery_mode == "mock":
        return MockEmailTransport()
    if not config.smtp_host:
        raise EmailTransportError("SMTP_HOST is required for live delivery", category="config")
    return SmtpEmailTransport(
        host=config.smtp_host,
        port=config.smtp_port,
        username=config.smtp_username,
        password=config.smtp_password,
        use_ssl=config.smtp_use_ssl,
        sender=config.smtp_sender,
    )
