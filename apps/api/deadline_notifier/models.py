from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, TypeDecorator, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


class UtcDateTime(TypeDecorator):
  """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo on its own)."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if dialect.name == "sqlite":
      return value.replace(tzinfo=None)
    return value

  def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


JsonDoc = JSON().with_variant(JSONB(), "postgresql")

_CLAIMED_WHERE = text("status IN ('pending', 'sent', 'read')")
_ACTIVE_WHERE = text("status IN ('scheduled', 'expired')")


class Base(DeclarativeBase):
  pass


class Schedule(Base):
  __tablename__ = "schedules"
  __table_args__ = (
    Index("ix_schedules_user_job", "user_id", "job_id"),
    # One non-terminal schedule per job.
    Index(
      "ux_schedules_user_job_active",
      "user_id",
      "job_id",
      unique=True,
      postgresql_where=_ACTIVE_WHERE,
      sqlite_where=_ACTIVE_WHERE,
    ),
    Index("ix_schedules_status_next_fire", "status", "next_fire_at"),
  )

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False)
  label: Mapped[str | None] = mapped_column(String, nullable=True)
  scheduled_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  timezone: Mapped[str] = mapped_column(String, nullable=False, default="UTC")
  reminder_specs: Mapped[list[dict[str, Any]]] = mapped_column(JsonDoc, nullable=False, default=list)
  status: Mapped[str] = mapped_column(String, nullable=False, default="scheduled")  # scheduled|expired|submitted|cancelled
  # Set on create and on every edit; fires planned before this instant are dropped unless quiet
  # hours clamped them there.
  armed_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  # Bumped whenever plan inputs change (edit, preference update); the loop only writes its watermark
  # when the revision it planned from is still current.
  revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_processed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  next_fire_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  submitted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  cancelled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  expired_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class NotificationPreferences(Base):
  __tablename__ = "notification_preferences"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
  user_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  channels: Mapped[dict[str, Any]] = mapped_column(JsonDoc, nullable=False, default=dict)
  approaching_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
  timezone: Mapped[str | None] = mapped_column(String, nullable=True)
  quiet_hours_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
  quiet_hours_start: Mapped[str | None] = mapped_column(String, nullable=True)
  quiet_hours_end: Mapped[str | None] = mapped_column(String, nullable=True)
  digest_day: Mapped[str | None] = mapped_column(String, nullable=True)
  digest_time: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DispatchRecord(Base):
  __tablename__ = "dispatch_records"
  __table_args__ = (
    Index(
      "ux_dispatch_records_user_dedupe_claimed",
      "user_id",
      "dedupe_key",
      unique=True,
      postgresql_where=_CLAIMED_WHERE,
      sqlite_where=_CLAIMED_WHERE,
    ),
    Index("ix_dispatch_records_user_dedupe", "user_id", "dedupe_key"),
    Index("ix_dispatch_records_user_created", "user_id", "created_at"),
  )

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
  user_id: Mapped[str] = mapped_column(String, nullable=False)
  job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  schedule_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True, index=True)
  kind: Mapped[str] = mapped_column(String, nullable=False)
  channel: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")  # pending|sent|failed|read
  dedupe_key: Mapped[str] = mapped_column(String, nullable=False)
  period_key: Mapped[str] = mapped_column(String, nullable=False, default="")
  fire_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  payload: Mapped[dict[str, Any]] = mapped_column(JsonDoc, nullable=False, default=dict)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  read_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
  user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JsonDoc, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
