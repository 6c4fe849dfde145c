from __future__ import annotations

from datetime import datetime, timedelta, timezone

import asyncio

import pytest
from sqlalchemy import func, select

from deadline_notifier.config import settings
from deadline_notifier.db import SessionLocal
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.dispatch.log import TupleState, reminder_dedupe_key
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.models import AuditEvent, DispatchRecord, NotificationPreferences, Schedule
from deadline_notifier.schedules import service as schedule_service
from deadline_notifier.scheduler.loop import run_tick
from deadline_notifier.schedules.service import reset_watermarks_for_user, transition_status, upsert_schedule

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
DEADLINE = datetime(2025, 3, 10, 17, 0, tzinfo=timezone.utc)
DAY_BEFORE = datetime(2025, 3, 9, 17, 0, tzinfo=timezone.utc)
DAY_SPECS = [{"kind": "dayBefore", "offsetMinutes": -1440}, {"kind": "dayOf", "offsetMinutes": 0}]
DAY_OF_ONLY = [{"kind": "dayOf", "offsetMinutes": 0}]


async def _create(db, *, specs=DAY_SPECS, now=T0, deadline=DEADLINE, job_id="job-1") -> str:
  s, _ = await upsert_schedule(
    db,
    user_id="user-1",
    job_id=job_id,
    scheduled_at=deadline,
    timezone="UTC",
    reminder_specs=specs,
    now=now,
  )
  return s.id


async def _schedule(db, sid: str) -> Schedule:
  res = await db.execute(select(Schedule).where(Schedule.id == sid).execution_options(populate_existing=True))
  return res.scalar_one()


async def _records(db, **filters) -> list[DispatchRecord]:
  stmt = select(DispatchRecord).order_by(DispatchRecord.created_at, DispatchRecord.channel)
  for name, value in filters.items():
    stmt = stmt.where(getattr(DispatchRecord, name) == value)
  return list((await db.execute(stmt)).scalars().all())


@pytest.mark.anyio
async def test_tick_writes_watermark_and_next_fire(db, gateway) -> None:
  sid = await _create(db)

  first = await run_tick(db, now=T0, gateway=gateway)
  assert (first.candidates, first.sent) == (1, 0)
  s = await _schedule(db, sid)
  assert s.last_processed_at == T0
  assert s.next_fire_at == DAY_BEFORE

  idle = await run_tick(db, now=T0 + timedelta(hours=1), gateway=gateway)
  assert idle.candidates == 0

  # Within the lookahead the schedule is picked up again, but nothing is due yet.
  early = await run_tick(db, now=DAY_BEFORE - timedelta(seconds=30), gateway=gateway)
  assert (early.candidates, early.sent) == (1, 0)
  assert gateway.calls == []


@pytest.mark.anyio
async def test_due_reminders_sent_once_per_channel(db, gateway) -> None:
  sid = await _create(db)

  r = await run_tick(db, now=DAY_BEFORE, gateway=gateway)
  assert r.sent == 2
  assert sorted((ch, kind) for ch, _, kind, _ in gateway.calls) == [("email", "dayBefore"), ("inApp", "dayBefore")]

  # Force a re-plan: the ledger alone must prevent a second send.
  await reset_watermarks_for_user(db, user_id="user-1")
  await db.commit()
  again = await run_tick(db, now=DAY_BEFORE + timedelta(minutes=5), gateway=gateway)
  assert (again.candidates, again.sent, again.skipped) == (1, 0, 2)
  assert len(gateway.calls) == 2

  records = await _records(db, schedule_id=sid)
  assert [(r.kind, r.channel, r.status) for r in records] == [("dayBefore", "email", "sent"), ("dayBefore", "inApp", "sent")]
  assert records[0].payload["title"] == "Application deadline tomorrow: job job-1"
  assert (await _schedule(db, sid)).next_fire_at == DEADLINE


@pytest.mark.anyio
async def test_submitted_schedule_never_fires_day_before(db, gateway) -> None:
  sid = await _create(db)
  await run_tick(db, now=datetime(2025, 3, 9, 11, 0, tzinfo=timezone.utc), gateway=gateway)

  s = await _schedule(db, sid)
  await transition_status(db, s, status="submitted", now=datetime(2025, 3, 9, 12, 0, tzinfo=timezone.utc))

  assert (await run_tick(db, now=DAY_BEFORE, gateway=gateway)).candidates == 0
  assert (await run_tick(db, now=DEADLINE + timedelta(hours=3), gateway=gateway)).candidates == 0
  assert await _records(db, kind="dayBefore") == []
  assert gateway.calls == []
  assert (await _schedule(db, sid)).status == "submitted"


@pytest.mark.anyio
async def test_three_failures_stop_retries_without_a_sent_record(db, gateway) -> None:
  await _create(db, specs=DAY_OF_ONLY)
  gateway.fail_channels = {"email"}

  for minutes in (0, 0.5, 1, 2, 3, 10, 90):
    await run_tick(db, now=DEADLINE + timedelta(minutes=minutes), gateway=gateway)
  await run_tick(db, now=DEADLINE + timedelta(days=2), gateway=gateway)

  email = await _records(db, channel="email")
  assert [r.status for r in email] == ["failed", "failed", "failed"]
  assert [r.attempt for r in email] == [1, 2, 3]
  assert all(r.error == "email provider down" for r in email)
  assert gateway.sent_kinds("email") == ["dayOf", "dayOf", "dayOf"]
  assert [r.status for r in await _records(db, channel="inApp")] == ["sent"]

  exhausted = (await db.execute(select(AuditEvent).where(AuditEvent.event_type == "dispatch.exhausted"))).scalars().all()
  assert len(exhausted) == 1
  assert exhausted[0].payload["channel"] == "email"
  assert runtime_metrics.dispatch_count("exhausted") == 1


@pytest.mark.anyio
async def test_backoff_defers_retry(db, gateway) -> None:
  await _create(db, specs=DAY_OF_ONLY)
  gateway.fail_channels = {"email"}

  await run_tick(db, now=DEADLINE, gateway=gateway)
  r = await run_tick(db, now=DEADLINE + timedelta(seconds=30), gateway=gateway)
  assert r.skipped == 2
  assert gateway.sent_kinds("email") == ["dayOf"]

  gateway.fail_channels = set()
  await run_tick(db, now=DEADLINE + timedelta(seconds=60), gateway=gateway)
  assert [(r.status, r.attempt) for r in await _records(db, channel="email")] == [("failed", 1), ("sent", 2)]


@pytest.mark.anyio
async def test_gateway_timeout_is_recorded_as_failed(db, gateway, monkeypatch) -> None:
  monkeypatch.setattr(settings, "delivery_timeout_seconds", 0.05)
  gateway.delay = 0.5
  await _create(db, specs=DAY_OF_ONLY)

  r = await run_tick(db, now=DEADLINE, gateway=gateway)

  assert (r.sent, r.failed) == (0, 2)
  records = await _records(db)
  assert {rec.status for rec in records} == {"failed"}
  assert all("timed out" in (rec.error or "") for rec in records)


@pytest.mark.anyio
async def test_schedule_expires_and_fires_overdue_only(db, gateway) -> None:
  sid = await _create(db, specs=None)
  now = DEADLINE + timedelta(hours=2)

  r = await run_tick(db, now=now, gateway=gateway)

  assert r.expired == 1
  s = await _schedule(db, sid)
  assert s.status == "expired"
  assert s.expired_at == now
  assert s.next_fire_at is None
  records = await _records(db)
  assert sorted((rec.kind, rec.channel, rec.status) for rec in records) == [("overdue", "email", "sent"), ("overdue", "inApp", "sent")]

  assert (await run_tick(db, now=now + timedelta(hours=1), gateway=gateway)).candidates == 0
  assert len(gateway.calls) == 2


@pytest.mark.anyio
async def test_in_flight_claim_from_another_worker_is_respected(db, gateway) -> None:
  sid = await _create(db, specs=DAY_OF_ONLY)
  await dispatch_log.claim(
    db,
    user_id="user-1",
    job_id="job-1",
    schedule_id=sid,
    kind="dayOf",
    channel="email",
    dedupe_key=reminder_dedupe_key("job-1", "dayOf", "email"),
    now=DEADLINE,
  )

  r = await run_tick(db, now=DEADLINE + timedelta(seconds=10), gateway=gateway)

  assert (r.sent, r.skipped) == (1, 1)
  assert [ch for ch, _, _, _ in gateway.calls] == ["inApp"]


@pytest.mark.anyio
async def test_stale_ledger_read_still_delivers_at_most_once(db, gateway, monkeypatch) -> None:
  await _create(db, specs=DAY_OF_ONLY)
  await run_tick(db, now=DEADLINE, gateway=gateway)
  assert len(gateway.calls) == 2

  async def _blind_states(db, *, user_id, dedupe_keys, now, policy):
    return {k: TupleState() for k in dedupe_keys}

  monkeypatch.setattr(dispatch_log, "tuple_states", _blind_states)
  await reset_watermarks_for_user(db, user_id="user-1")
  await db.commit()

  r = await run_tick(db, now=DEADLINE + timedelta(minutes=1), gateway=gateway)

  assert (r.sent, r.conflicts) == (0, 2)
  assert len(gateway.calls) == 2
  assert [rec.status for rec in await _records(db)] == ["sent", "sent"]


@pytest.mark.anyio
async def test_abandoned_pending_claim_is_reaped_and_retried(db, gateway) -> None:
  sid = await _create(db, specs=DAY_OF_ONLY)
  await dispatch_log.claim(
    db,
    user_id="user-1",
    job_id="job-1",
    schedule_id=sid,
    kind="dayOf",
    channel="email",
    dedupe_key=reminder_dedupe_key("job-1", "dayOf", "email"),
    now=DEADLINE,
  )

  await run_tick(db, now=DEADLINE + timedelta(minutes=15), gateway=gateway)

  email = await _records(db, channel="email")
  assert [(r.status, r.attempt) for r in email] == [("failed", 1), ("sent", 2)]
  assert email[0].error.startswith("abandoned")


@pytest.mark.anyio
async def test_fires_before_schedule_creation_are_skipped(db, gateway) -> None:
  await _create(db, specs=None, now=DEADLINE - timedelta(days=2))

  await run_tick(db, now=DAY_BEFORE, gateway=gateway)

  assert {rec.kind for rec in await _records(db)} == {"dayBefore"}


@pytest.mark.anyio
async def test_editing_deadline_replans_schedule(db, gateway) -> None:
  sid = await _create(db, specs=DAY_OF_ONLY)
  await run_tick(db, now=T0, gateway=gateway)
  assert (await _schedule(db, sid)).next_fire_at == DEADLINE

  moved = DEADLINE + timedelta(days=1)
  again = await _create(db, specs=None, deadline=moved, now=T0 + timedelta(hours=1))
  assert again == sid
  s = await _schedule(db, sid)
  assert (s.last_processed_at, s.next_fire_at) == (None, None)
  assert s.reminder_specs == DAY_OF_ONLY

  r = await run_tick(db, now=T0 + timedelta(hours=2), gateway=gateway)
  assert r.candidates == 1
  assert (await _schedule(db, sid)).next_fire_at == moved


@pytest.mark.anyio
async def test_concurrent_creates_leave_one_active_schedule(db_ready) -> None:
  async def _upsert(hours: int):
    async with SessionLocal() as session:
      s, created = await upsert_schedule(
        session,
        user_id="user-1",
        job_id="job-1",
        scheduled_at=DEADLINE + timedelta(hours=hours),
        reminder_specs=DAY_OF_ONLY,
        now=T0,
      )
      return s.id, created

  results = await asyncio.gather(_upsert(0), _upsert(1))

  assert sorted(created for _, created in results) == [False, True]
  assert results[0][0] == results[1][0]
  async with SessionLocal() as session:
    count = await session.scalar(select(func.count()).select_from(Schedule).where(Schedule.job_id == "job-1"))
  assert count == 1


@pytest.mark.anyio
async def test_create_losing_the_insert_race_becomes_an_edit(db, monkeypatch) -> None:
  sid = await _create(db, specs=DAY_OF_ONLY)
  real_find = schedule_service.find_active_schedule
  lookups: list[str] = []

  async def _stale_then_real(session, *, user_id, job_id):
    lookups.append(job_id)
    if len(lookups) == 1:
      return None
    return await real_find(session, user_id=user_id, job_id=job_id)

  monkeypatch.setattr(schedule_service, "find_active_schedule", _stale_then_real)
  moved = DEADLINE + timedelta(days=1)

  s, created = await upsert_schedule(
    db, user_id="user-1", job_id="job-1", scheduled_at=moved, reminder_specs=DAY_OF_ONLY, now=T0 + timedelta(hours=1)
  )

  assert (s.id, created) == (sid, False)
  assert len(lookups) == 2
  assert (await _schedule(db, sid)).scheduled_at == moved
  rows = (await db.execute(select(Schedule).where(Schedule.job_id == "job-1"))).scalars().all()
  assert len(rows) == 1


@pytest.mark.anyio
async def test_clamped_day_of_created_inside_quiet_hours_fires_at_creation(db, gateway) -> None:
  # Quiet 22:00-08:00 in Tokyo, deadline 07:00 JST. The clamped dayOf (22:00 JST) precedes the
  # 23:30 JST creation, so it fires right away instead of never.
  db.add(NotificationPreferences(user_id="user-1", quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00"))
  await db.commit()
  deadline = datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc)
  created_at = datetime(2025, 3, 10, 14, 30, tzinfo=timezone.utc)
  s, _ = await upsert_schedule(
    db,
    user_id="user-1",
    job_id="job-1",
    scheduled_at=deadline,
    timezone="Asia/Tokyo",
    reminder_specs=DAY_SPECS,
    now=created_at,
  )

  r = await run_tick(db, now=created_at, gateway=gateway)

  assert r.sent == 2
  assert sorted((ch, kind) for ch, _, kind, _ in gateway.calls) == [("email", "dayOf"), ("inApp", "dayOf")]
  records = await _records(db, schedule_id=s.id)
  assert {rec.fire_at for rec in records} == {created_at}

  later = await run_tick(db, now=deadline, gateway=gateway)
  assert later.sent == 0
  assert len(gateway.calls) == 2


@pytest.mark.anyio
async def test_preference_change_mid_tick_keeps_schedule_replannable(db, gateway) -> None:
  sid = await _create(db, specs=DAY_OF_ONLY)
  real_send = gateway.send

  async def _send_after_preference_change(channel, user_id, kind, payload):
    async with SessionLocal() as other:
      await reset_watermarks_for_user(other, user_id=user_id)
      await other.commit()
    return await real_send(channel, user_id, kind, payload)

  gateway.send = _send_after_preference_change
  r = await run_tick(db, now=DEADLINE, gateway=gateway)
  assert r.sent == 2

  s = await _schedule(db, sid)
  assert (s.last_processed_at, s.next_fire_at) == (None, None)
  assert s.revision == 2

  gateway.send = real_send
  again = await run_tick(db, now=DEADLINE + timedelta(minutes=1), gateway=gateway)
  assert again.candidates == 1
  assert (await _schedule(db, sid)).last_processed_at == DEADLINE + timedelta(minutes=1)
