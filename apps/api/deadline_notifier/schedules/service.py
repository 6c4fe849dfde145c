from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.audit import write_audit
from deadline_notifier.constants import (
  ACTIVE_STATUSES,
  DEADLINE_KINDS,
  KIND_OVERDUE,
  MAX_OFFSET_MINUTES,
  SCHEDULE_STATUSES,
  STATUS_CANCELLED,
  STATUS_EXPIRED,
  STATUS_SCHEDULED,
  STATUS_SUBMITTED,
  TERMINAL_STATUSES,
)
from deadline_notifier.errors import NotFoundError, ValidationError
from deadline_notifier.models import Schedule
from deadline_notifier.observability.logging import get_logger
from deadline_notifier.planner import default_reminder_specs
from deadline_notifier.preferences.resolver import resolve_preferences
from deadline_notifier.timeutil import as_utc, is_valid_timezone, utcnow

logger = get_logger(__name__)

# External job statuses that end reminder scheduling for the job.
JOB_STATUS_TRANSITIONS = {
  "applied": STATUS_SUBMITTED,
  "submitted": STATUS_SUBMITTED,
  "cancelled": STATUS_CANCELLED,
  "canceled": STATUS_CANCELLED,
  "withdrawn": STATUS_CANCELLED,
  "rejected": STATUS_CANCELLED,
  "archived": STATUS_CANCELLED,
}


def validate_reminder_specs(specs: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
  out: list[dict[str, Any]] = []
  seen: set[str] = set()
  for s in specs:
    kind = s.get("kind")
    offset = s.get("offsetMinutes")
    if kind not in DEADLINE_KINDS:
      raise ValidationError(f"Unknown reminder kind: {kind}")
    if kind in seen:
      raise ValidationError(f"Duplicate reminder kind: {kind}")
    if isinstance(offset, bool) or not isinstance(offset, int):
      raise ValidationError(f"offsetMinutes must be an integer for {kind}")
    if abs(offset) > MAX_OFFSET_MINUTES:
      raise ValidationError(f"offsetMinutes out of range for {kind}")
    if kind == KIND_OVERDUE and offset < 0:
      raise ValidationError("overdue reminders must fire at or after the deadline")
    if kind != KIND_OVERDUE and offset > 0:
      raise ValidationError(f"{kind} reminders must fire at or before the deadline")
    seen.add(kind)
    out.append({"kind": kind, "offsetMinutes": offset})
  out.sort(key=lambda s: (s["offsetMinutes"], DEADLINE_KINDS.index(s["kind"])))
  return out


async def get_schedule_for_user(db: AsyncSession, *, user_id: str, schedule_id: str) -> Schedule:
  try:
    uuid.UUID(str(schedule_id))
  except ValueError:
    raise NotFoundError("Schedule not found") from None
  res = await db.execute(select(Schedule).where(Schedule.id == schedule_id, Schedule.user_id == user_id))
  s = res.scalar_one_or_none()
  if not s:
    raise NotFoundError("Schedule not found")
  return s


async def find_active_schedule(db: AsyncSession, *, user_id: str, job_id: str) -> Schedule | None:
  res = await db.execute(
    select(Schedule)
    .where(Schedule.user_id == user_id, Schedule.job_id == job_id, Schedule.status.in_(ACTIVE_STATUSES))
    .order_by(Schedule.created_at.desc())
    .limit(1)
  )
  return res.scalar_one_or_none()


async def soonest_scheduled(db: AsyncSession, *, user_id: str) -> Schedule | None:
  res = await db.execute(
    select(Schedule)
    .where(Schedule.user_id == user_id, Schedule.status == STATUS_SCHEDULED)
    .order_by(Schedule.scheduled_at.asc())
    .limit(1)
  )
  return res.scalar_one_or_none()


async def upsert_schedule(
  db: AsyncSession,
  *,
  user_id: str,
  job_id: str,
  scheduled_at: datetime,
  timezone: str = "UTC",
  reminder_specs: list[dict[str, Any]] | None = None,
  label: str | None = None,
  now: datetime | None = None,
) -> tuple[Schedule, bool]:
  """
  Create the schedule for a job, or edit the job's active schedule.

  Returns (schedule, created). Editing re-arms the schedule: its watermark is cleared so the next
  tick re-plans it, and fires planned before the edit are never sent.
  """
  now = as_utc(now or utcnow())
  if scheduled_at.tzinfo is None:
    raise ValidationError("scheduledAt must include a timezone offset")
  scheduled_at = as_utc(scheduled_at)
  if scheduled_at <= now:
    raise ValidationError("scheduledAt must be in the future")
  tz_name = (timezone or "").strip() or "UTC"
  if not is_valid_timezone(tz_name):
    raise ValidationError(f"Unknown timezone: {tz_name}")
  specs = validate_reminder_specs(reminder_specs) if reminder_specs is not None else None

  existing = await find_active_schedule(db, user_id=user_id, job_id=job_id)
  if existing is not None:
    return await _edit_schedule(db, existing, scheduled_at=scheduled_at, tz_name=tz_name, specs=specs, label=label, now=now), False

  create_specs = specs
  if create_specs is None:
    prefs = await resolve_preferences(db, user_id)
    create_specs = default_reminder_specs(prefs.approaching_days)
  s = Schedule(
    user_id=user_id,
    job_id=job_id,
    label=(label or "").strip() or None,
    scheduled_at=scheduled_at,
    timezone=tz_name,
    reminder_specs=create_specs,
    status=STATUS_SCHEDULED,
    armed_at=now,
  )
  db.add(s)
  try:
    await db.flush()
  except IntegrityError:
    # A concurrent request created the job's schedule first; apply ours as an edit of it.
    await db.rollback()
    existing = await find_active_schedule(db, user_id=user_id, job_id=job_id)
    if existing is None:
      raise ValidationError("Schedule changed concurrently; reload and retry") from None
    logger.info("schedule.create_raced", schedule_id=existing.id, user_id=user_id, job_id=job_id)
    return await _edit_schedule(db, existing, scheduled_at=scheduled_at, tz_name=tz_name, specs=specs, label=label, now=now), False
  await write_audit(
    db,
    event_type="schedule.created",
    entity_type="Schedule",
    entity_id=s.id,
    user_id=user_id,
    payload={"jobId": job_id, "scheduledAt": scheduled_at, "timezone": tz_name, "reminderSpecs": create_specs},
  )
  await db.commit()
  await db.refresh(s)
  logger.info("schedule.created", schedule_id=s.id, user_id=user_id, job_id=job_id)
  return s, True


async def _edit_schedule(
  db: AsyncSession,
  existing: Schedule,
  *,
  scheduled_at: datetime,
  tz_name: str,
  specs: list[dict[str, Any]] | None,
  label: str | None,
  now: datetime,
) -> Schedule:
  if existing.status == STATUS_EXPIRED:
    raise ValidationError("Schedule has expired; mark it submitted or cancel it first")
  before = {"scheduledAt": existing.scheduled_at, "timezone": existing.timezone, "reminderSpecs": existing.reminder_specs}
  existing.scheduled_at = scheduled_at
  existing.timezone = tz_name
  if specs is not None:
    existing.reminder_specs = specs
  if label is not None:
    existing.label = label.strip() or None
  existing.armed_at = now
  existing.revision = Schedule.revision + 1
  existing.last_processed_at = None
  existing.next_fire_at = None
  await write_audit(
    db,
    event_type="schedule.updated",
    entity_type="Schedule",
    entity_id=existing.id,
    user_id=existing.user_id,
    payload={"jobId": existing.job_id, "before": before, "scheduledAt": scheduled_at, "timezone": tz_name},
  )
  await db.commit()
  await db.refresh(existing)
  logger.info("schedule.updated", schedule_id=existing.id, user_id=existing.user_id, job_id=existing.job_id)
  return existing


async def transition_status(
  db: AsyncSession,
  schedule: Schedule,
  *,
  status: str,
  now: datetime | None = None,
  source: str = "api",
) -> Schedule:
  """Move a schedule to submitted or cancelled. Re-applying the current status is a no-op."""
  now = as_utc(now or utcnow())
  if status not in (STATUS_SUBMITTED, STATUS_CANCELLED):
    raise ValidationError("status must be submitted or cancelled")
  if schedule.status == status:
    return schedule
  if schedule.status in TERMINAL_STATUSES:
    raise ValidationError(f"Schedule is already {schedule.status}")

  previous = schedule.status
  values: dict[str, Any] = {"status": status, "next_fire_at": None}
  if status == STATUS_SUBMITTED:
    values["submitted_at"] = now
  else:
    values["cancelled_at"] = now
  res = await db.execute(
    update(Schedule).where(Schedule.id == schedule.id, Schedule.status.in_(ACTIVE_STATUSES)).values(**values)
  )
  if not res.rowcount:
    await db.rollback()
    raise ValidationError("Schedule changed concurrently; reload and retry")
  await write_audit(
    db,
    event_type=f"schedule.{status}",
    entity_type="Schedule",
    entity_id=schedule.id,
    user_id=schedule.user_id,
    payload={"jobId": schedule.job_id, "from": previous, "source": source},
  )
  await db.commit()
  await db.refresh(schedule)
  logger.info(f"schedule.{status}", schedule_id=schedule.id, user_id=schedule.user_id, job_id=schedule.job_id, source=source)
  return schedule


async def apply_job_status_event(
  db: AsyncSession,
  *,
  user_id: str,
  job_id: str,
  job_status: str,
  now: datetime | None = None,
) -> list[Schedule]:
  """Reflect an external job status change. Statuses that do not end the application are ignored."""
  target = JOB_STATUS_TRANSITIONS.get((job_status or "").strip().lower())
  if target is None:
    return []
  res = await db.execute(
    select(Schedule).where(Schedule.user_id == user_id, Schedule.job_id == job_id, Schedule.status.in_(ACTIVE_STATUSES))
  )
  changed: list[Schedule] = []
  for s in res.scalars().all():
    changed.append(await transition_status(db, s, status=target, now=now, source=f"job:{job_status}"))
  return changed


async def list_schedules(
  db: AsyncSession,
  *,
  user_id: str,
  status: str | None = None,
  from_: datetime | None = None,
  to: datetime | None = None,
  job_id: str | None = None,
  limit: int = 200,
) -> list[Schedule]:
  stmt = select(Schedule).where(Schedule.user_id == user_id)
  if status:
    if status not in SCHEDULE_STATUSES:
      raise ValidationError(f"Unknown status: {status}")
    stmt = stmt.where(Schedule.status == status)
  if job_id:
    stmt = stmt.where(Schedule.job_id == job_id)
  if from_ is not None:
    stmt = stmt.where(Schedule.scheduled_at >= as_utc(from_))
  if to is not None:
    stmt = stmt.where(Schedule.scheduled_at <= as_utc(to))
  stmt = stmt.order_by(Schedule.scheduled_at.desc()).limit(max(1, min(int(limit), 500)))
  res = await db.execute(stmt)
  return list(res.scalars().all())


async def reset_watermarks_for_user(db: AsyncSession, *, user_id: str) -> int:
  """Force a re-plan of the user's active schedules, e.g. after a preference change."""
  res = await db.execute(
    update(Schedule)
    .where(Schedule.user_id == user_id, Schedule.status.in_(ACTIVE_STATUSES))
    .values(last_processed_at=None, next_fire_at=None, revision=Schedule.revision + 1)
  )
  return int(res.rowcount or 0)
