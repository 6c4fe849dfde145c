from __future__ import annotations

import copy
from datetime import timedelta
from uuid import uuid4

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.audit import write_audit
from deadline_notifier.config import settings
from deadline_notifier.constants import CHANNEL_INAPP, CHANNELS, DISPATCH_DELIVERED, DISPATCH_SENT, KIND_APPROACHING
from deadline_notifier.delivery.gateway import DeliveryGateway
from deadline_notifier.delivery.messages import reminder_message
from deadline_notifier.deps import get_current_user_id, get_db, get_gateway
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.dispatch.sender import deliver_once
from deadline_notifier.errors import NotFoundError, ValidationError
from deadline_notifier.models import NotificationPreferences
from deadline_notifier.observability.logging import get_logger
from deadline_notifier.planner import planning_zone
from deadline_notifier.preferences.resolver import ResolvedPreferences, load_preferences_row, merge_preferences
from deadline_notifier.routers.schedules import dispatch_out
from deadline_notifier.schedules.service import reset_watermarks_for_user, soonest_scheduled
from deadline_notifier.schemas import (
  ChannelPreferencesOut,
  DispatchRecordOut,
  MarkReadIn,
  MarkReadOut,
  NotificationPreferencesIn,
  NotificationPreferencesOut,
  NotificationTestDeliveryOut,
  NotificationTestOut,
  QuietHoursOut,
)
from deadline_notifier.timeutil import utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

TEST_APPROACHING_DAYS = 3


def preferences_out(p: ResolvedPreferences) -> NotificationPreferencesOut:
  return NotificationPreferencesOut(
    channels={c: ChannelPreferencesOut(enabled=p.channels[c].enabled, kinds=dict(p.channels[c].kinds)) for c in CHANNELS},
    approachingDays=p.approaching_days,
    timezone=p.timezone,
    quietHours=QuietHoursOut(enabled=p.quiet_hours.enabled, start=p.quiet_hours.start, end=p.quiet_hours.end),
    digestDay=p.digest_day,
    digestTime=p.digest_time,
  )


@router.get("/preferences", response_model=NotificationPreferencesOut)
async def get_notification_preferences(
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesOut:
  row = await load_preferences_row(db, user_id)
  return preferences_out(merge_preferences(row, user_id=user_id))


@router.patch("/preferences", response_model=NotificationPreferencesOut)
async def update_notification_preferences(
  payload: NotificationPreferencesIn,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesOut:
  row = await load_preferences_row(db, user_id)
  if row is None:
    row = NotificationPreferences(user_id=user_id, channels={})
    db.add(row)

  fields_set = payload.model_fields_set
  channels = copy.deepcopy(row.channels or {})
  for channel in CHANNELS:
    if channel not in fields_set or getattr(payload, channel) is None:
      continue
    override = getattr(payload, channel)
    stored = channels.setdefault(channel, {})
    if override.enabled is not None:
      stored["enabled"] = bool(override.enabled)
    if override.kinds:
      stored.setdefault("kinds", {}).update({k: bool(v) for k, v in override.kinds.items()})
  row.channels = channels

  if "approachingDays" in fields_set:
    row.approaching_days = payload.approachingDays
  if "timezone" in fields_set:
    row.timezone = payload.timezone
  if "quietHoursEnabled" in fields_set and payload.quietHoursEnabled is not None:
    row.quiet_hours_enabled = bool(payload.quietHoursEnabled)
  if "quietHoursStart" in fields_set:
    row.quiet_hours_start = payload.quietHoursStart
  if "quietHoursEnd" in fields_set:
    row.quiet_hours_end = payload.quietHoursEnd
  if "digestDay" in fields_set:
    row.digest_day = payload.digestDay
  if "digestTime" in fields_set:
    row.digest_time = payload.digestTime

  # Fire times depend on preferences; have the scheduler re-plan every active schedule.
  replanned = await reset_watermarks_for_user(db, user_id=user_id)
  await write_audit(
    db,
    event_type="notifications.preferences.updated",
    entity_type="NotificationPreferences",
    entity_id=user_id,
    user_id=user_id,
    payload={"changed": sorted(fields_set), "replannedSchedules": replanned},
  )
  await db.commit()
  await db.refresh(row)
  return preferences_out(merge_preferences(row, user_id=user_id))


@router.get("/history", response_model=list[DispatchRecordOut])
async def get_notification_history(
  limit: int = Query(default=50, ge=1, le=200),
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> list[DispatchRecordOut]:
  rows = await dispatch_log.history_for_user(db, user_id=user_id, limit=limit)
  return [dispatch_out(r) for r in rows]


@router.get("/inapp", response_model=list[DispatchRecordOut])
async def list_inapp(
  unread_only: bool = Query(default=False, alias="unreadOnly"),
  limit: int = Query(default=50, ge=1, le=200),
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> list[DispatchRecordOut]:
  statuses = (DISPATCH_SENT,) if unread_only else DISPATCH_DELIVERED
  rows = await dispatch_log.history_for_user(db, user_id=user_id, limit=limit, channel=CHANNEL_INAPP, statuses=statuses)
  return [dispatch_out(r) for r in rows]


@router.post("/read", response_model=MarkReadOut)
async def mark_read(
  payload: MarkReadIn,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> MarkReadOut:
  updated = await dispatch_log.mark_read(db, user_id=user_id, record_ids=[str(i) for i in payload.ids], now=utcnow())
  return MarkReadOut(updated=updated)


@router.post("/test", response_model=NotificationTestOut)
async def send_test_notification(
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
  gateway: DeliveryGateway = Depends(get_gateway),
) -> NotificationTestOut:
  """
  Send an "approaching" reminder for the user's soonest scheduled deadline, right now.

  Uses the user's channel preferences but its own one-off dedupe keys, so the real reminders for the
  job are neither claimed nor suppressed by it.
  """
  s = await soonest_scheduled(db, user_id=user_id)
  if s is None:
    raise NotFoundError("No schedules with deadlines found to test with")
  row = await load_preferences_row(db, user_id)
  prefs = merge_preferences(row, user_id=user_id)
  channels = prefs.channels_for(KIND_APPROACHING)
  if not channels:
    raise ValidationError("No channel is enabled for approaching reminders")

  now = utcnow()
  msg = reminder_message(
    kind=KIND_APPROACHING,
    label=s.label,
    job_id=s.job_id,
    schedule_id=s.id,
    deadline=s.scheduled_at,
    fire_at=s.scheduled_at - timedelta(days=TEST_APPROACHING_DAYS),
    tz=planning_zone(s, prefs, settings.default_timezone),
  )
  run = uuid4().hex
  deliveries: list[NotificationTestDeliveryOut] = []
  for channel in channels:
    outcome = await deliver_once(
      db,
      gateway,
      user_id=user_id,
      job_id=s.job_id,
      schedule_id=None,
      kind=KIND_APPROACHING,
      channel=channel,
      dedupe_key=f"test:{run}:{channel}",
      msg=msg,
      now=now,
      period_key="test",
    )
    deliveries.append(NotificationTestDeliveryOut(channel=channel, status=outcome.status, error=outcome.error))
  logger.info("notifications.test_sent", user_id=user_id, schedule_id=s.id, channels=channels)
  return NotificationTestOut(
    message="Test notification sent!",
    jobId=s.job_id,
    scheduleId=s.id,
    label=s.label,
    scheduledAt=s.scheduled_at,
    deliveries=deliveries,
  )
