"""orchestration core

Revision ID: 0001_orchestration_core
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_orchestration_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

journey_channel_type_enum = postgresql.ENUM(
    "APP_NOTIFICATION", "EMAIL", "BOTH", name="journey_channel_type_enum", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    journey_channel_type_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_created_at", "users", ["created_at"], unique=False)

    op.create_table(
        "news_articles",
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "SCHEDULED", "PUBLISHED", "ARCHIVED", name="content_status_enum"),
            nullable=False,
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_news_articles_status_scheduled_at", "news_articles", ["status", "scheduled_at"], unique=False)
    op.create_index("ix_news_articles_created_at", "news_articles", ["created_at"], unique=False)

    op.create_table(
        "journeys",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journeys_created_at", "journeys", ["created_at"], unique=False)

    op.create_table(
        "journey_steps",
        sa.Column("journey_id", sa.Uuid(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("delay_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("channel_type", journey_channel_type_enum, nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_steps_journey_id", "journey_steps", ["journey_id"], unique=False)

    op.create_table(
        "journey_enrollments",
        sa.Column("journey_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "COMPLETED", "CANCELLED", "PAUSED", name="journey_enrollment_status_enum"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_step_delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_enrollments_journey_id", "journey_enrollments", ["journey_id"], unique=False)
    op.create_index("ix_journey_enrollments_status", "journey_enrollments", ["status"], unique=False)

    op.create_table(
        "journey_step_completions",
        sa.Column("enrollment_id", sa.Uuid(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.Uuid(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_channel", journey_channel_type_enum, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["journey_enrollments.id"]),
        sa.ForeignKeyConstraint(["step_id"], ["journey_steps.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("enrollment_id", "step_index", name="uq_journey_step_completions_enrollment_step"),
    )
    op.create_index(
        "ix_journey_step_completions_enrollment_id", "journey_step_completions", ["enrollment_id"], unique=False
    )

    op.create_table(
        "email_newsletters",
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("preview_text", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "SCHEDULED", "SENDING", "SENT", "FAILED", name="newsletter_status_enum"),
            nullable=False,
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_email_newsletters_status_scheduled_at", "email_newsletters", ["status", "scheduled_at"], unique=False
    )
    op.create_index("ix_email_newsletters_created_at", "email_newsletters", ["created_at"], unique=False)

    op.create_table(
        "email_recipients",
        sa.Column("newsletter_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("tracking_token", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING", "SENT", "DELIVERED", "OPENED", "CLICKED", "FAILED", name="email_recipient_status_enum"
            ),
            nullable=False,
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("open_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("click_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["newsletter_id"], ["email_newsletters.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tracking_token", name="uq_email_recipients_tracking_token"),
    )
    op.create_index(
        "ix_email_recipients_newsletter_status", "email_recipients", ["newsletter_id", "status"], unique=False
    )

    op.create_table(
        "events",
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("channel", sa.String(length=100), nullable=False),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("subject_type", sa.String(length=100), nullable=False),
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_subject", "events", ["subject_type", "subject_id"], unique=False)
    op.create_index("ix_events_created_at", "events", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_events_created_at", table_name="events")
    op.drop_index("ix_events_subject", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_email_recipients_newsletter_status", table_name="email_recipients")
    op.drop_table("email_recipients")
    op.drop_index("ix_email_newsletters_created_at", table_name="email_newsletters")
    op.drop_index("ix_email_newsletters_status_scheduled_at", table_name="email_newsletters")
    op.drop_table("email_newsletters")
    op.drop_index("ix_journey_step_completions_enrollment_id", table_name="journey_step_completions")
    op.drop_table("journey_step_completions")
    op.drop_index("ix_journey_enrollments_status", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_journey_id", table_name="journey_enrollments")
    op.drop_table("journey_enrollments")
    op.drop_index("ix_journey_steps_journey_id", table_name="journey_steps")
    op.drop_table("journey_steps")
    op.drop_index("ix_journeys_created_at", table_name="journeys")
    op.drop_table("journeys")
    op.drop_index("ix_news_articles_created_at", table_name="news_articles")
    op.drop_index("ix_news_articles_status_scheduled_at", table_name="news_articles")
    op.drop_table("news_articles")
    op.drop_index("ix_users_created_at", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for name in (
        "email_recipient_status_enum",
        "newsletter_status_enum",
        "journey_enrollment_status_enum",
        "content_status_enum",
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
    journey_channel_type_enum.drop(bind, checkfirst=True)
