from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.config import settings
from deadline_notifier.deps import get_current_user_id, get_db
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.models import DispatchRecord, Schedule
from deadline_notifier.planner import plan_all, planning_zone
from deadline_notifier.preferences.resolver import resolve_preferences
from deadline_notifier.schedules.service import get_schedule_for_user, list_schedules, transition_status, upsert_schedule
from deadline_notifier.schemas import (
  DispatchRecordOut,
  PlannedFireOut,
  ScheduleOut,
  SchedulePlanOut,
  ScheduleStatusIn,
  ScheduleUpsertIn,
)

router = APIRouter(prefix="/schedules", tags=["schedules"])


def schedule_out(s: Schedule) -> ScheduleOut:
  return ScheduleOut(
    id=s.id,
    jobId=s.job_id,
    label=s.label,
    scheduledAt=s.scheduled_at,
    timezone=s.timezone,
    reminderSpecs=list(s.reminder_specs or []),
    status=s.status,
    lastProcessedAt=s.last_processed_at,
    nextFireAt=s.next_fire_at,
    submittedAt=s.submitted_at,
    cancelledAt=s.cancelled_at,
    expiredAt=s.expired_at,
    createdAt=s.created_at,
    updatedAt=s.updated_at,
  )


def dispatch_out(r: DispatchRecord) -> DispatchRecordOut:
  payload = r.payload or {}
  return DispatchRecordOut(
    id=r.id,
    jobId=r.job_id,
    scheduleId=r.schedule_id,
    kind=r.kind,
    channel=r.channel,
    status=r.status,
    attempt=int(r.attempt or 1),
    fireAt=r.fire_at,
    periodKey=r.period_key or "",
    title=payload.get("title"),
    message=payload.get("message"),
    error=r.error,
    sentAt=r.sent_at,
    readAt=r.read_at,
    createdAt=r.created_at,
  )


@router.post("", response_model=ScheduleOut)
async def create_or_update_schedule(
  payload: ScheduleUpsertIn,
  response: Response,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> ScheduleOut:
  s, created = await upsert_schedule(
    db,
    user_id=user_id,
    job_id=payload.jobId.strip(),
    scheduled_at=payload.scheduledAt,
    timezone=payload.timezone,
    reminder_specs=[r.model_dump() for r in payload.reminderSpecs] if payload.reminderSpecs is not None else None,
    label=payload.label,
  )
  response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
  return schedule_out(s)


@router.get("", response_model=list[ScheduleOut])
async def get_schedules(
  status_filter: str | None = Query(default=None, alias="status"),
  from_: datetime | None = Query(default=None, alias="from"),
  to: datetime | None = Query(default=None),
  job_id: str | None = Query(default=None, alias="jobId"),
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> list[ScheduleOut]:
  rows = await list_schedules(db, user_id=user_id, status=status_filter, from_=from_, to=to, job_id=job_id)
  return [schedule_out(s) for s in rows]


@router.get("/{schedule_id}", response_model=ScheduleOut)
async def get_schedule(
  schedule_id: str,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> ScheduleOut:
  return schedule_out(await get_schedule_for_user(db, user_id=user_id, schedule_id=schedule_id))


@router.patch("/{schedule_id}", response_model=ScheduleOut)
async def update_schedule_status(
  schedule_id: str,
  payload: ScheduleStatusIn,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> ScheduleOut:
  s = await get_schedule_for_user(db, user_id=user_id, schedule_id=schedule_id)
  s = await transition_status(db, s, status=payload.status)
  return schedule_out(s)


@router.get("/{schedule_id}/history", response_model=list[DispatchRecordOut])
async def get_schedule_history(
  schedule_id: str,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> list[DispatchRecordOut]:
  s = await get_schedule_for_user(db, user_id=user_id, schedule_id=schedule_id)
  rows = await dispatch_log.history_for_schedule(db, user_id=user_id, schedule_id=s.id)
  return [dispatch_out(r) for r in rows]


@router.get("/{schedule_id}/plan", response_model=SchedulePlanOut)
async def get_schedule_plan(
  schedule_id: str,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> SchedulePlanOut:
  s = await get_schedule_for_user(db, user_id=user_id, schedule_id=schedule_id)
  prefs = await resolve_preferences(db, user_id)
  fires = plan_all(s, prefs, default_tz=settings.default_timezone)
  tz = planning_zone(s, prefs, settings.default_timezone)
  return SchedulePlanOut(
    scheduleId=s.id,
    timezone=tz.key,
    fires=[PlannedFireOut(kind=f.kind, channel=f.channel, fireAt=f.fire_at, shifted=f.shifted) for f in fires],
  )
