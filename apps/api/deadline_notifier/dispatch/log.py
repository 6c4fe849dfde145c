"""
Append-only dispatch ledger.

Every attempted send is a row. The partial unique index on (user_id, dedupe_key) over
pending/sent/read rows is the idempotency guard: inserting the `pending` row *is* the claim, so two
scheduler instances racing on one tuple cannot both reach the gateway. Failed rows are retry
history and never block a later attempt.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.config import settings
from deadline_notifier.constants import (
  DISPATCH_DELIVERED,
  DISPATCH_FAILED,
  DISPATCH_PENDING,
  DISPATCH_READ,
  DISPATCH_SENT,
)
from deadline_notifier.errors import ConflictError
from deadline_notifier.models import DispatchRecord


def reminder_dedupe_key(job_id: str, kind: str, channel: str) -> str:
  return f"{job_id}:{kind}:{channel}"


def digest_dedupe_key(week_start: str, channel: str) -> str:
  return f"digest:{week_start}:{channel}"


@dataclass(frozen=True)
class RetryPolicy:
  max_attempts: int = 3
  backoff_seconds: int = 60
  window_minutes: int = 1440
  pending_stale_seconds: int = 600

  @classmethod
  def from_settings(cls) -> RetryPolicy:
    return cls(
      max_attempts=max(1, int(settings.dispatch_max_attempts)),
      backoff_seconds=max(0, int(settings.dispatch_retry_backoff_seconds)),
      window_minutes=max(1, int(settings.dispatch_retry_window_minutes)),
      pending_stale_seconds=max(1, int(settings.dispatch_pending_stale_seconds)),
    )

  def delay_after(self, failures: int) -> timedelta:
    if failures <= 0:
      return timedelta(0)
    return timedelta(seconds=self.backoff_seconds * (2 ** (failures - 1)))


@dataclass(frozen=True)
class TupleState:
  """What the ledger says about one (user, dedupe key) tuple."""

  delivered: bool = False
  pending_since: datetime | None = None
  failures: int = 0
  first_failed_at: datetime | None = None
  last_failed_at: datetime | None = None
  stale_pending_ids: tuple[str, ...] = ()

  @property
  def in_flight(self) -> bool:
    return self.pending_since is not None

  def exhausted(self, policy: RetryPolicy) -> bool:
    if self.failures >= policy.max_attempts:
      return True
    if self.first_failed_at is None or self.last_failed_at is None:
      return False
    # No retry is scheduled past the window opened by the first failure.
    return self.next_attempt_at(policy) > self.first_failed_at + timedelta(minutes=policy.window_minutes)

  def next_attempt_at(self, policy: RetryPolicy) -> datetime | None:
    if self.last_failed_at is None:
      return None
    return self.last_failed_at + policy.delay_after(self.failures)

  def ready(self, policy: RetryPolicy, now: datetime) -> bool:
    if self.delivered or self.in_flight or self.exhausted(policy):
      return False
    nxt = self.next_attempt_at(policy)
    return nxt is None or nxt <= now

  def after_failure(self, at: datetime) -> TupleState:
    return TupleState(
      failures=self.failures + 1,
      first_failed_at=self.first_failed_at or at,
      last_failed_at=at,
    )

  def after_sent(self) -> TupleState:
    return TupleState(delivered=True, failures=self.failures, first_failed_at=self.first_failed_at, last_failed_at=self.last_failed_at)


async def tuple_states(
  db: AsyncSession,
  *,
  user_id: str,
  dedupe_keys: Iterable[str],
  now: datetime,
  policy: RetryPolicy,
) -> dict[str, TupleState]:
  keys = sorted(set(dedupe_keys))
  if not keys:
    return {}
  res = await db.execute(
    select(DispatchRecord.id, DispatchRecord.dedupe_key, DispatchRecord.status, DispatchRecord.created_at).where(
      DispatchRecord.user_id == user_id,
      DispatchRecord.dedupe_key.in_(keys),
    )
  )
  stale_before = now - timedelta(seconds=policy.pending_stale_seconds)
  acc: dict[str, dict[str, Any]] = {
    k: {"delivered": False, "pending_since": None, "failed": [], "stale": []} for k in keys
  }
  for row in res.all():
    a = acc[row.dedupe_key]
    if row.status in DISPATCH_DELIVERED:
      a["delivered"] = True
    elif row.status == DISPATCH_PENDING:
      if row.created_at < stale_before:
        a["stale"].append(row.id)
      else:
        a["pending_since"] = row.created_at
    elif row.status == DISPATCH_FAILED:
      a["failed"].append(row.created_at)
  return {
    k: TupleState(
      delivered=a["delivered"],
      pending_since=a["pending_since"],
      failures=len(a["failed"]),
      first_failed_at=min(a["failed"]) if a["failed"] else None,
      last_failed_at=max(a["failed"]) if a["failed"] else None,
      stale_pending_ids=tuple(a["stale"]),
    )
    for k, a in acc.items()
  }


async def claim(
  db: AsyncSession,
  *,
  user_id: str,
  job_id: str | None,
  schedule_id: str | None,
  kind: str,
  channel: str,
  dedupe_key: str,
  now: datetime,
  fire_at: datetime | None = None,
  period_key: str = "",
  attempt: int = 1,
  payload: dict[str, Any] | None = None,
) -> str:
  """Insert the `pending` row for a tuple. Raises ConflictError when the tuple is already claimed or delivered."""
  record_id = str(uuid.uuid4())
  try:
    await db.execute(
      insert(DispatchRecord).values(
        id=record_id,
        user_id=user_id,
        job_id=job_id,
        schedule_id=schedule_id,
        kind=kind,
        channel=channel,
        status=DISPATCH_PENDING,
        dedupe_key=dedupe_key,
        period_key=period_key,
        fire_at=fire_at,
        attempt=attempt,
        payload=payload or {},
        created_at=now,
        updated_at=now,
      )
    )
    await db.commit()
  except IntegrityError as e:
    await db.rollback()
    raise ConflictError("Dispatch already claimed", details={"dedupeKey": dedupe_key}) from e
  return record_id


async def mark_sent(db: AsyncSession, record_id: str, *, now: datetime) -> None:
  try:
    await db.execute(
      update(DispatchRecord)
      .where(DispatchRecord.id == record_id)
      .values(status=DISPATCH_SENT, sent_at=now, error=None, updated_at=now)
    )
    await db.commit()
  except IntegrityError as e:
    # Our pending row was reaped as stale and another worker delivered the tuple meanwhile.
    await db.rollback()
    raise ConflictError("Dispatch already delivered", details={"recordId": record_id}) from e


async def mark_failed(db: AsyncSession, record_id: str, *, error: str | None, now: datetime) -> None:
  await db.execute(
    update(DispatchRecord)
    .where(DispatchRecord.id == record_id, DispatchRecord.status == DISPATCH_PENDING)
    .values(status=DISPATCH_FAILED, error=(error or "delivery failed")[:2000], updated_at=now)
  )
  await db.commit()


async def reap_stale_pending(db: AsyncSession, record_ids: Iterable[str], *, now: datetime) -> int:
  ids = list(record_ids)
  if not ids:
    return 0
  res = await db.execute(
    update(DispatchRecord)
    .where(DispatchRecord.id.in_(ids), DispatchRecord.status == DISPATCH_PENDING)
    .values(status=DISPATCH_FAILED, error="abandoned: no delivery outcome recorded", updated_at=now)
  )
  await db.commit()
  return int(res.rowcount or 0)


async def mark_read(db: AsyncSession, *, user_id: str, record_ids: Iterable[str], now: datetime) -> int:
  ids = list(record_ids)
  if not ids:
    return 0
  res = await db.execute(
    update(DispatchRecord)
    .where(DispatchRecord.user_id == user_id, DispatchRecord.id.in_(ids), DispatchRecord.status == DISPATCH_SENT)
    .values(status=DISPATCH_READ, read_at=now, updated_at=now)
  )
  await db.commit()
  return int(res.rowcount or 0)


async def history_for_schedule(db: AsyncSession, *, user_id: str, schedule_id: str) -> list[DispatchRecord]:
  res = await db.execute(
    select(DispatchRecord)
    .where(DispatchRecord.user_id == user_id, DispatchRecord.schedule_id == schedule_id)
    .order_by(DispatchRecord.created_at.asc(), DispatchRecord.attempt.asc())
  )
  return list(res.scalars().all())


async def history_for_user(
  db: AsyncSession,
  *,
  user_id: str,
  limit: int = 50,
  channel: str | None = None,
  statuses: Iterable[str] | None = None,
) -> list[DispatchRecord]:
  stmt = select(DispatchRecord).where(DispatchRecord.user_id == user_id)
  if channel:
    stmt = stmt.where(DispatchRecord.channel == channel)
  if statuses is not None:
    stmt = stmt.where(DispatchRecord.status.in_(list(statuses)))
  stmt = stmt.order_by(DispatchRecord.created_at.desc()).limit(max(1, min(int(limit), 200)))
  res = await db.execute(stmt)
  return list(res.scalars().all())
