from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.deps import get_current_user_id, get_db
from deadline_notifier.routers.schedules import schedule_out
from deadline_notifier.schedules.service import apply_job_status_event
from deadline_notifier.schemas import JobStatusEventIn, JobStatusEventOut

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{job_id}/status", response_model=JobStatusEventOut)
async def job_status_changed(
  job_id: str,
  payload: JobStatusEventIn,
  user_id: str = Depends(get_current_user_id),
  db: AsyncSession = Depends(get_db),
) -> JobStatusEventOut:
  changed = await apply_job_status_event(db, user_id=user_id, job_id=job_id, job_status=payload.status)
  return JobStatusEventOut(jobId=job_id, status=payload.status, schedules=[schedule_out(s) for s in changed])
