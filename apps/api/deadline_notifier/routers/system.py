from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.config import settings
from deadline_notifier.constants import ACTIVE_STATUSES
from deadline_notifier.deps import get_db
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.models import DispatchRecord, Schedule

router = APIRouter(tags=["system"])


@router.get("/health")
async def health() -> dict:
  return {"ok": True}


@router.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


@router.get("/system/status")
async def system_status(db: AsyncSession = Depends(get_db)) -> dict:
  sres = await db.execute(select(Schedule.status, func.count()).group_by(Schedule.status))
  dres = await db.execute(select(DispatchRecord.status, func.count()).group_by(DispatchRecord.status))
  backlog = await db.execute(
    select(func.count()).select_from(Schedule).where(Schedule.status.in_(ACTIVE_STATUSES), Schedule.last_processed_at.is_(None))
  )
  return {
    "version": settings.app_version,
    "schedulerEnabled": settings.scheduler_enabled,
    "runtime": runtime_metrics.snapshot(),
    "schedules": {status: int(n) for status, n in sres.all()},
    "dispatchRecords": {status: int(n) for status, n in dres.all()},
    "unplannedSchedules": int(backlog.scalar_one()),
  }
