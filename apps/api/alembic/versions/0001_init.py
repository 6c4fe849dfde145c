"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "schedules",
    sa.Column("id", sa.UUID(as_uuid=False), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("label", sa.String(), nullable=True),
    sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
    sa.Column("reminder_specs", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),  # scheduled|expired|submitted|cancelled
    sa.Column("armed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("next_fire_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_schedules_user_id", "schedules", ["user_id"])
  op.create_index("ix_schedules_user_job", "schedules", ["user_id", "job_id"])
  op.create_index("ix_schedules_status_next_fire", "schedules", ["status", "next_fire_at"])
  op.create_index(
    "ux_schedules_user_job_active",
    "schedules",
    ["user_id", "job_id"],
    unique=True,
    postgresql_where=sa.text("status IN ('scheduled', 'expired')"),
  )

  op.create_table(
    "notification_preferences",
    sa.Column("id", sa.UUID(as_uuid=False), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("channels", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("approaching_days", sa.Integer(), nullable=True),
    sa.Column("timezone", sa.String(), nullable=True),
    sa.Column("quiet_hours_enabled", sa.Boolean(), nullable=True),
    sa.Column("quiet_hours_start", sa.String(), nullable=True),
    sa.Column("quiet_hours_end", sa.String(), nullable=True),
    sa.Column("digest_day", sa.String(), nullable=True),
    sa.Column("digest_time", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_notification_preferences_user_id", "notification_preferences", ["user_id"], unique=True)

  op.create_table(
    "dispatch_records",
    sa.Column("id", sa.UUID(as_uuid=False), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=True),
    sa.Column("schedule_id", sa.UUID(as_uuid=False), nullable=True),
    sa.Column("kind", sa.String(), nullable=False),
    sa.Column("channel", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),  # pending|sent|failed|read
    sa.Column("dedupe_key", sa.String(), nullable=False),
    sa.Column("period_key", sa.String(), nullable=False, server_default=""),
    sa.Column("fire_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_dispatch_records_schedule_id", "dispatch_records", ["schedule_id"])
  op.create_index("ix_dispatch_records_user_dedupe", "dispatch_records", ["user_id", "dedupe_key"])
  op.create_index("ix_dispatch_records_user_created", "dispatch_records", ["user_id", "created_at"])
  # At most one in-flight or delivered record per (user, tuple); failed rows are retry history.
  op.create_index(
    "ux_dispatch_records_user_dedupe_claimed",
    "dispatch_records",
    ["user_id", "dedupe_key"],
    unique=True,
    postgresql_where=sa.text("status IN ('pending', 'sent', 'read')"),
  )

  op.create_table(
    "audit_events",
    sa.Column("id", sa.UUID(as_uuid=False), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])


def downgrade() -> None:
  op.drop_index("ix_audit_events_user_id", table_name="audit_events")
  op.drop_table("audit_events")
  op.drop_index("ux_dispatch_records_user_dedupe_claimed", table_name="dispatch_records")
  op.drop_index("ix_dispatch_records_user_created", table_name="dispatch_records")
  op.drop_index("ix_dispatch_records_user_dedupe", table_name="dispatch_records")
  op.drop_index("ix_dispatch_records_schedule_id", table_name="dispatch_records")
  op.drop_table("dispatch_records")
  op.drop_index("ix_notification_preferences_user_id", table_name="notification_preferences")
  op.drop_table("notification_preferences")
  op.drop_index("ux_schedules_user_job_active", table_name="schedules")
  op.drop_index("ix_schedules_status_next_fire", table_name="schedules")
  op.drop_index("ix_schedules_user_job", table_name="schedules")
  op.drop_index("ix_schedules_user_id", table_name="schedules")
  op.drop_table("schedules")
