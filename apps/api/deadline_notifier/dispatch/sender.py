from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.config import settings
from deadline_notifier.delivery.gateway import DeliveryGateway, DeliveryResult, NotificationMessage
from deadline_notifier.dispatch import log as dispatch_log
from deadline_notifier.errors import ConflictError
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.observability.logging import get_logger

logger = get_logger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_CONFLICT = "conflict"


@dataclass(frozen=True)
class DeliveryOutcome:
  status: str
  record_id: str | None = None
  error: str | None = None


async def _call_gateway(gateway: DeliveryGateway, *, channel: str, user_id: str, kind: str, msg: NotificationMessage, timeout: float) -> DeliveryResult:
  try:
    return await asyncio.wait_for(gateway.send(channel, user_id, kind, msg), timeout=timeout)
  except asyncio.TimeoutError:
    return DeliveryResult(ok=False, error=f"delivery timed out after {timeout:g}s")
  except Exception as e:
    # Gateways are expected to report failures, not raise; treat a raise the same way.
    return DeliveryResult(ok=False, error=str(e) or e.__class__.__name__)


async def deliver_once(
  db: AsyncSession,
  gateway: DeliveryGateway,
  *,
  user_id: str,
  job_id: str | None,
  schedule_id: str | None,
  kind: str,
  channel: str,
  dedupe_key: str,
  msg: NotificationMessage,
  now: datetime,
  fire_at: datetime | None = None,
  period_key: str = "",
  attempt: int = 1,
  timeout: float | None = None,
) -> DeliveryOutcome:
  """
  Claim, send and record one (user, dedupe key) tuple.

  - The pending insert is the claim; losing it means someone else owns the tuple.
  - Timeouts and gateway errors are recorded as failed, never as sent.
  """
  log = logger.bind(user_id=user_id, job_id=job_id, kind=kind, channel=channel, dedupe_key=dedupe_key, attempt=attempt)
  try:
    record_id = await dispatch_log.claim(
      db,
      user_id=user_id,
      job_id=job_id,
      schedule_id=schedule_id,
      kind=kind,
      channel=channel,
      dedupe_key=dedupe_key,
      now=now,
      fire_at=fire_at,
      period_key=period_key,
      attempt=attempt,
      payload=msg.as_payload(),
    )
  except ConflictError:
    runtime_metrics.incr_dispatch(OUTCOME_CONFLICT)
    log.info("dispatch.conflict")
    return DeliveryOutcome(status=OUTCOME_CONFLICT)

  result = await _call_gateway(
    gateway,
    channel=channel,
    user_id=user_id,
    kind=kind,
    msg=msg,
    timeout=float(timeout if timeout is not None else settings.delivery_timeout_seconds),
  )
  if result.ok:
    try:
      await dispatch_log.mark_sent(db, record_id, now=now)
    except ConflictError:
      runtime_metrics.incr_dispatch(OUTCOME_CONFLICT)
      log.warning("dispatch.conflict_after_send", record_id=record_id)
      return DeliveryOutcome(status=OUTCOME_CONFLICT, record_id=record_id)
    runtime_metrics.incr_dispatch(OUTCOME_SENT)
    log.info("dispatch.sent", record_id=record_id)
    return DeliveryOutcome(status=OUTCOME_SENT, record_id=record_id)

  await dispatch_log.mark_failed(db, record_id, error=result.error, now=now)
  runtime_metrics.incr_dispatch(OUTCOME_FAILED)
  log.warning("dispatch.failed", record_id=record_id, error=result.error)
  return DeliveryOutcome(status=OUTCOME_FAILED, record_id=record_id, error=result.error)
