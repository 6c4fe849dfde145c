"""
Weekly digest.

One digest per (user, local week, channel). The week is keyed by its local Monday, so the dedupe
key is stable no matter which tick first notices the digest is due.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.config import settings
from deadline_notifier.constants import KIND_WEEKLY_DIGEST, STATUS_EXPIRED, STATUS_SCHEDULED, WEEKDAYS
from deadline_notifier.delivery.gateway import DeliveryGateway, NotificationMessage, default_gateway
from deadline_notifier.delivery.messages import display_label, format_local
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.dispatch.log import RetryPolicy, TupleState, digest_dedupe_key
from deadline_notifier.dispatch.sender import OUTCOME_FAILED, OUTCOME_SENT, deliver_once
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.models import NotificationPreferences, Schedule
from deadline_notifier.observability.logging import get_logger
from deadline_notifier.preferences.resolver import ResolvedPreferences, merge_preferences
from deadline_notifier.timeutil import as_utc, hhmm_minutes, local_instant, utcnow, zone_or_none

logger = get_logger(__name__)

DIGEST_HORIZON = timedelta(days=7)


@dataclass(frozen=True)
class DigestItem:
  schedule_id: str
  job_id: str
  label: str | None
  scheduled_at: datetime
  status: str


@dataclass(frozen=True)
class DigestPayload:
  user_id: str
  generated_at: datetime
  upcoming: tuple[DigestItem, ...]
  overdue: tuple[DigestItem, ...]

  def to_message(self, tz: ZoneInfo, *, week_start: str) -> NotificationMessage:
    lines: list[str] = []
    if self.upcoming:
      lines.append("Deadlines in the next 7 days:")
      lines.extend(f"- {display_label(i.label, i.job_id)}: {format_local(i.scheduled_at, tz)}" for i in self.upcoming)
    if self.overdue:
      if lines:
        lines.append("")
      lines.append("Deadlines passed without a submission:")
      lines.extend(f"- {display_label(i.label, i.job_id)}: {format_local(i.scheduled_at, tz)}" for i in self.overdue)
    return NotificationMessage(
      title=f"Your week ahead: {len(self.upcoming)} upcoming, {len(self.overdue)} overdue",
      message="\n".join(lines),
      data={
        "weekStart": week_start,
        "upcoming": [i.job_id for i in self.upcoming],
        "overdue": [i.job_id for i in self.overdue],
      },
    )


def _item(s: Schedule) -> DigestItem:
  return DigestItem(schedule_id=s.id, job_id=s.job_id, label=s.label, scheduled_at=as_utc(s.scheduled_at), status=s.status)


async def build_digest(db: AsyncSession, user_id: str, *, now: datetime) -> DigestPayload | None:
  now = as_utc(now)
  upcoming_res = await db.execute(
    select(Schedule)
    .where(
      Schedule.user_id == user_id,
      Schedule.status == STATUS_SCHEDULED,
      Schedule.scheduled_at > now,
      Schedule.scheduled_at <= now + DIGEST_HORIZON,
    )
    .order_by(Schedule.scheduled_at.asc())
  )
  overdue_res = await db.execute(
    select(Schedule)
    .where(
      Schedule.user_id == user_id,
      Schedule.status == STATUS_EXPIRED,
      Schedule.scheduled_at >= now - timedelta(days=max(1, int(settings.digest_overdue_lookback_days))),
    )
    .order_by(Schedule.scheduled_at.asc())
  )
  upcoming = tuple(_item(s) for s in upcoming_res.scalars().all())
  overdue = tuple(_item(s) for s in overdue_res.scalars().all())
  if not upcoming and not overdue:
    return None
  return DigestPayload(user_id=user_id, generated_at=now, upcoming=upcoming, overdue=overdue)


def digest_slot(prefs: ResolvedPreferences, now: datetime, tz: ZoneInfo) -> tuple[datetime, str]:
  """(instant the digest is due this week, ISO date of the local Monday starting the week)."""
  local_today = as_utc(now).astimezone(tz).date()
  monday = local_today - timedelta(days=local_today.weekday())
  day = monday + timedelta(days=WEEKDAYS.index(prefs.digest_day))
  minutes = hhmm_minutes(prefs.digest_time) or 0
  return (local_instant(day, minutes, tz), monday.isoformat())


async def _fresh_states(db: AsyncSession, *, user_id: str, keys: list[str], now: datetime, policy: RetryPolicy) -> dict[str, TupleState]:
  states = await dispatch_log.tuple_states(db, user_id=user_id, dedupe_keys=keys, now=now, policy=policy)
  stale = [rid for s in states.values() for rid in s.stale_pending_ids]
  if stale:
    await dispatch_log.reap_stale_pending(db, stale, now=now)
    states = await dispatch_log.tuple_states(db, user_id=user_id, dedupe_keys=keys, now=now, policy=policy)
  return states


async def run_digests(
  db: AsyncSession,
  *,
  now: datetime | None = None,
  gateway: DeliveryGateway | None = None,
  policy: RetryPolicy | None = None,
) -> int:
  """Send every digest that is due and not yet delivered. Returns the number of channel sends."""
  now = as_utc(now or utcnow())
  gateway = gateway or default_gateway()
  policy = policy or RetryPolicy.from_settings()

  res = await db.execute(select(NotificationPreferences).order_by(NotificationPreferences.user_id.asc()))
  users = [merge_preferences(row) for row in res.scalars().all()]

  sent = 0
  for prefs in users:
    channels = prefs.channels_for(KIND_WEEKLY_DIGEST)
    if not channels or not prefs.user_id:
      continue
    tz = zone_or_none(prefs.timezone) or zone_or_none(settings.default_timezone) or ZoneInfo("UTC")
    due_at, week_start = digest_slot(prefs, now, tz)
    if now < due_at:
      continue

    keys = {c: digest_dedupe_key(week_start, c) for c in channels}
    states = await _fresh_states(db, user_id=prefs.user_id, keys=list(keys.values()), now=now, policy=policy)
    ready = [c for c in channels if states[keys[c]].ready(policy, now)]
    if not ready:
      continue

    payload = await build_digest(db, prefs.user_id, now=now)
    if payload is None:
      continue
    msg = payload.to_message(tz, week_start=week_start)

    for channel in ready:
      state = states[keys[channel]]
      outcome = await deliver_once(
        db,
        gateway,
        user_id=prefs.user_id,
        job_id=None,
        schedule_id=None,
        kind=KIND_WEEKLY_DIGEST,
        channel=channel,
        dedupe_key=keys[channel],
        msg=msg,
        now=now,
        fire_at=due_at,
        period_key=week_start,
        attempt=state.failures + 1,
      )
      if outcome.status == OUTCOME_SENT:
        sent += 1
        logger.info("digest.sent", user_id=prefs.user_id, channel=channel, week_start=week_start)
      elif outcome.status == OUTCOME_FAILED and state.after_failure(now).exhausted(policy):
        runtime_metrics.incr_dispatch("exhausted")
        logger.warning("dispatch.exhausted", user_id=prefs.user_id, kind=KIND_WEEKLY_DIGEST, channel=channel, week_start=week_start)
  return sent
