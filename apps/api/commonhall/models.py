from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy import JSON as JsonType
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import Uuid


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    pass


class ContentStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class JourneyEnrollmentStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class JourneyChannelType(str, enum.Enum):
    APP_NOTIFICATION = "app_notification"
    EMAIL = "email"
    BOTH = "both"


class NewsletterStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class EmailRecipientStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"


class IdMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SoftDeleteMixin:
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class User(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"), Index("ix_users_created_at", "created_at"))

    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class NewsArticle(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "news_articles"
    __table_args__ = (
        Index("ix_news_articles_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_news_articles_created_at", "created_at"),
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[ContentStatus] = mapped_column(
        Enum(ContentStatus, name="content_status_enum"), nullable=False, default=ContentStatus.DRAFT
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Journey(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "journeys"
    __table_args__ = (Index("ix_journeys_created_at", "created_at"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    steps: Mapped[list[JourneyStep]] = relationship(
        back_populates="journey", order_by="JourneyStep.sort_order", cascade="all, delete-orphan"
    )
    enrollments: Mapped[list[JourneyEnrollment]] = relationship(back_populates="journey")


class JourneyStep(Base, IdMixin, TimestampMixin):
    __tablename__ = "journey_steps"
    __table_args__ = (Index("ix_journey_steps_journey_id", "journey_id"),)

    journey_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("journeys.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    delay_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channel_type: Mapped[JourneyChannelType] = mapped_column(
        Enum(JourneyChannelType, name="journey_channel_type_enum"), nullable=False, default=JourneyChannelType.BOTH
    )
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    journey: Mapped[Journey] = relationship(back_populates="steps")


class JourneyEnrollment(Base, IdMixin, TimestampMixin):
    __tablename__ = "journey_enrollments"
    __table_args__ = (
        Index("ix_journey_enrollments_journey_id", "journey_id"),
        Index("ix_journey_enrollments_status", "status"),
    )

    journey_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("journeys.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[JourneyEnrollmentStatus] = mapped_column(
        Enum(JourneyEnrollmentStatus, name="journey_enrollment_status_enum"),
        nullable=False,
        default=JourneyEnrollmentStatus.ACTIVE,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_step_delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    journey: Mapped[Journey] = relationship(back_populates="enrollments")
    user: Mapped[User] = relationship()
    step_completions: Mapped[list[JourneyStepCompletion]] = relationship(
        back_populates="enrollment", order_by="JourneyStepCompletion.step_index"
    )


class JourneyStepCompletion(Base, IdMixin, TimestampMixin):
    __tablename__ = "journey_step_completions"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "step_index", name="uq_journey_step_completions_enrollment_step"),
        Index("ix_journey_step_completions_enrollment_id", "enrollment_id"),
    )

    enrollment_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("journey_enrollments.id"), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    step_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("journey_steps.id"), nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivery_channel: Mapped[JourneyChannelType] = mapped_column(
        Enum(JourneyChannelType, name="journey_channel_type_enum"), nullable=False
    )

    enrollment: Mapped[JourneyEnrollment] = relationship(back_populates="step_completions")


class EmailNewsletter(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "email_newsletters"
    __table_args__ = (
        Index("ix_email_newsletters_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_email_newsletters_created_at", "created_at"),
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    preview_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[NewsletterStatus] = mapped_column(
        Enum(NewsletterStatus, name="newsletter_status_enum"), nullable=False, default=NewsletterStatus.DRAFT
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    recipients: Mapped[list[EmailRecipient]] = relationship(back_populates="newsletter")


class EmailRecipient(Base, IdMixin, TimestampMixin):
    __tablename__ = "email_recipients"
    __table_args__ = (
        UniqueConstraint("tracking_token", name="uq_email_recipients_tracking_token"),
        Index("ix_email_recipients_newsletter_status", "newsletter_id", "status"),
    )

    newsletter_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("email_newsletters.id"), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    tracking_token: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[EmailRecipientStatus] = mapped_column(
        Enum(EmailRecipientStatus, name="email_recipient_status_enum"),
        nullable=False,
        default=EmailRecipientStatus.PENDING,
    )
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    open_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    newsletter: Mapped[EmailNewsletter] = relationship(back_populates="recipients")


class Event(Base, IdMixin, TimestampMixin):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_subject", "subject_type", "subject_id"),
        Index("ix_events_created_at", "created_at"),
    )

    source: Mapped[str] = mapped_column(String(100), nullable=False)
    channel: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
