from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from time import monotonic
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.audit import write_audit
from deadline_notifier.config import settings
from deadline_notifier.constants import ACTIVE_STATUSES, KIND_OVERDUE, STATUS_EXPIRED, STATUS_SCHEDULED
from deadline_notifier.db import SessionLocal
from deadline_notifier.delivery.gateway import DeliveryGateway, default_gateway
from deadline_notifier.delivery.messages import reminder_message
from deadline_notifier.digest.service import run_digests
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.dispatch.log import RetryPolicy, TupleState, reminder_dedupe_key
from deadline_notifier.dispatch.sender import OUTCOME_CONFLICT, OUTCOME_SENT, deliver_once
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.models import Schedule
from deadline_notifier.observability.logging import get_logger
from deadline_notifier.planner import PlannedFire, arm_fires, due_now, plan_all, planning_zone
from deadline_notifier.preferences.resolver import resolve_preferences
from deadline_notifier.timeutil import as_utc, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScheduleSnapshot:
  """Plain copy of a Schedule row; the session may roll back mid-tick and expire ORM state."""

  id: str
  user_id: str
  job_id: str
  label: str | None
  scheduled_at: datetime
  timezone: str
  reminder_specs: list[dict[str, Any]]
  status: str
  armed_at: datetime
  revision: int

  @classmethod
  def of(cls, s: Schedule) -> ScheduleSnapshot:
    return cls(
      id=s.id,
      user_id=s.user_id,
      job_id=s.job_id,
      label=s.label,
      scheduled_at=as_utc(s.scheduled_at),
      timezone=s.timezone,
      reminder_specs=list(s.reminder_specs or []),
      status=s.status,
      armed_at=as_utc(s.armed_at),
      revision=int(s.revision or 0),
    )


@dataclass
class TickResult:
  candidates: int = 0
  sent: int = 0
  failed: int = 0
  skipped: int = 0
  conflicts: int = 0
  exhausted: int = 0
  expired: int = 0
  digests: int = 0

  def as_dict(self) -> dict[str, int]:
    return dict(self.__dict__)


async def select_candidates(db: AsyncSession, *, now: datetime, limit: int) -> list[ScheduleSnapshot]:
  horizon = now + timedelta(seconds=max(0, int(settings.scheduler_lookahead_seconds)))
  res = await db.execute(
    select(Schedule)
    .where(
      Schedule.status.in_(ACTIVE_STATUSES),
      or_(Schedule.last_processed_at.is_(None), Schedule.next_fire_at <= horizon),
    )
    .order_by(Schedule.next_fire_at.asc().nulls_first(), Schedule.scheduled_at.asc())
    .limit(int(limit))
    .execution_options(populate_existing=True)
  )
  return [ScheduleSnapshot.of(s) for s in res.scalars().all()]


def compute_next_fire_at(
  snap: ScheduleSnapshot,
  status: str,
  fires: Iterable[tuple[PlannedFire, TupleState]],
  *,
  now: datetime,
  policy: RetryPolicy,
  grace: timedelta,
) -> datetime | None:
  """Earliest instant at which this schedule could need work again, or None when it is done."""
  candidates: list[datetime] = []
  if status == STATUS_SCHEDULED:
    candidates.append(snap.scheduled_at + grace)
  for fire, state in fires:
    if state.delivered or state.exhausted(policy):
      continue
    if state.in_flight:
      stale_at = state.pending_since + timedelta(seconds=policy.pending_stale_seconds)
      candidates.append(min(stale_at, now + timedelta(seconds=max(1, policy.backoff_seconds))))
      continue
    retry_at = state.next_attempt_at(policy)
    candidates.append(max(fire.fire_at, retry_at) if retry_at else fire.fire_at)
  return min(candidates) if candidates else None


async def _expire(db: AsyncSession, snap: ScheduleSnapshot, *, now: datetime) -> bool:
  res = await db.execute(
    update(Schedule)
    .where(Schedule.id == snap.id, Schedule.status == STATUS_SCHEDULED)
    .values(status=STATUS_EXPIRED, expired_at=now)
  )
  if not res.rowcount:
    await db.rollback()
    return False
  await write_audit(
    db,
    event_type="schedule.expired",
    entity_type="Schedule",
    entity_id=snap.id,
    user_id=snap.user_id,
    payload={"jobId": snap.job_id, "scheduledAt": snap.scheduled_at},
  )
  await db.commit()
  logger.info("schedule.expired", schedule_id=snap.id, user_id=snap.user_id, job_id=snap.job_id)
  return True


async def _record_exhausted(db: AsyncSession, snap: ScheduleSnapshot, fire: PlannedFire, state: TupleState) -> None:
  runtime_metrics.incr_dispatch("exhausted")
  logger.warning(
    "dispatch.exhausted",
    schedule_id=snap.id,
    user_id=snap.user_id,
    job_id=snap.job_id,
    kind=fire.kind,
    channel=fire.channel,
    failures=state.failures,
  )
  await write_audit(
    db,
    event_type="dispatch.exhausted",
    entity_type="Schedule",
    entity_id=snap.id,
    user_id=snap.user_id,
    payload={"jobId": snap.job_id, "kind": fire.kind, "channel": fire.channel, "failures": state.failures},
  )
  await db.commit()


async def process_schedule(
  db: AsyncSession,
  snap: ScheduleSnapshot,
  *,
  now: datetime,
  gateway: DeliveryGateway,
  policy: RetryPolicy,
  result: TickResult,
) -> None:
  prefs = await resolve_preferences(db, snap.user_id)
  grace = timedelta(minutes=max(0, int(settings.overdue_grace_minutes)))

  status = snap.status
  if status == STATUS_SCHEDULED and now > snap.scheduled_at + grace:
    if not await _expire(db, snap, now=now):
      return
    result.expired += 1
    status = STATUS_EXPIRED

  fires = arm_fires(plan_all(snap, prefs, default_tz=settings.default_timezone), snap.armed_at)
  if status == STATUS_EXPIRED:
    fires = [f for f in fires if f.kind == KIND_OVERDUE]
  due = set(due_now(fires, snap.scheduled_at, now))
  keys = {f: reminder_dedupe_key(snap.job_id, f.kind, f.channel) for f in fires}
  states = await dispatch_log.tuple_states(db, user_id=snap.user_id, dedupe_keys=keys.values(), now=now, policy=policy)
  tz = planning_zone(snap, prefs, settings.default_timezone)

  exhausted_kinds: set[str] = set()
  for fire in fires:
    if fire not in due:
      continue
    key = keys[fire]
    state = states.get(key, TupleState())
    if state.stale_pending_ids:
      reaped = await dispatch_log.reap_stale_pending(db, state.stale_pending_ids, now=now)
      logger.warning("dispatch.stale_pending_reaped", schedule_id=snap.id, dedupe_key=key, count=reaped)
      state = (await dispatch_log.tuple_states(db, user_id=snap.user_id, dedupe_keys=[key], now=now, policy=policy))[key]
      states[key] = state
    if not state.ready(policy, now):
      result.skipped += 1
      continue

    msg = reminder_message(
      kind=fire.kind,
      label=snap.label,
      job_id=snap.job_id,
      schedule_id=snap.id,
      deadline=snap.scheduled_at,
      fire_at=fire.fire_at,
      tz=tz,
    )
    outcome = await deliver_once(
      db,
      gateway,
      user_id=snap.user_id,
      job_id=snap.job_id,
      schedule_id=snap.id,
      kind=fire.kind,
      channel=fire.channel,
      dedupe_key=key,
      msg=msg,
      now=now,
      fire_at=fire.fire_at,
      attempt=state.failures + 1,
    )
    if outcome.status == OUTCOME_SENT:
      result.sent += 1
      states[key] = state.after_sent()
    elif outcome.status == OUTCOME_CONFLICT:
      result.conflicts += 1
      states[key] = TupleState(pending_since=now)
    else:
      result.failed += 1
      state = state.after_failure(now)
      states[key] = state
      if state.exhausted(policy):
        result.exhausted += 1
        exhausted_kinds.add(fire.kind)
        await _record_exhausted(db, snap, fire, state)

  for kind in sorted(exhausted_kinds):
    if all(states[keys[f]].exhausted(policy) for f in fires if f.kind == kind):
      logger.error("dispatch.kind_exhausted", schedule_id=snap.id, user_id=snap.user_id, job_id=snap.job_id, kind=kind)

  next_fire_at = compute_next_fire_at(
    snap,
    status,
    [(f, states.get(keys[f], TupleState())) for f in fires],
    now=now,
    policy=policy,
    grace=grace,
  )
  # Edits and preference changes bump revision; their cleared watermark must survive this tick.
  res = await db.execute(
    update(Schedule)
    .where(Schedule.id == snap.id, Schedule.status.in_(ACTIVE_STATUSES), Schedule.revision == snap.revision)
    .values(last_processed_at=now, next_fire_at=next_fire_at)
  )
  if not res.rowcount:
    logger.info("scheduler.watermark_stale", schedule_id=snap.id, revision=snap.revision)
  await db.commit()


async def run_tick(
  db: AsyncSession,
  *,
  now: datetime | None = None,
  gateway: DeliveryGateway | None = None,
  limit: int | None = None,
  digests: bool | None = None,
) -> TickResult:
  """
  One pass of the scheduler.

  - Selects schedules that need planning or whose next fire is within the lookahead.
  - Expires schedules past their deadline plus grace.
  - Delivers due fires at most once per (user, job, kind, channel).
  - Runs weekly digests when enabled.
  """
  now = as_utc(now or utcnow())
  gateway = gateway or default_gateway()
  policy = RetryPolicy.from_settings()
  started = monotonic()

  result = TickResult()
  candidates = await select_candidates(db, now=now, limit=limit or settings.scheduler_batch_limit)
  result.candidates = len(candidates)
  for snap in candidates:
    await process_schedule(db, snap, now=now, gateway=gateway, policy=policy, result=result)

  run_digest = settings.digest_enabled if digests is None else digests
  if run_digest:
    result.digests = await run_digests(db, now=now, gateway=gateway, policy=policy)

  elapsed_ms = (monotonic() - started) * 1000.0
  runtime_metrics.observe_tick(now, elapsed_ms)
  logger.info("scheduler.tick", elapsed_ms=round(elapsed_ms, 2), **result.as_dict())
  return result


async def scheduler_loop(*, gateway: DeliveryGateway | None = None) -> None:
  gateway = gateway or default_gateway()
  while True:
    await asyncio.sleep(max(5, int(settings.scheduler_interval_seconds)))
    async with SessionLocal() as db:
      try:
        await run_tick(db, gateway=gateway)
      except Exception:
        # Never crash the app due to a failed tick; the next tick re-plans from the ledger.
        logger.exception("scheduler.tick_failed")
