from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from deadline_notifier.constants import KIND_APPROACHING, KIND_DAY_BEFORE, KIND_DAY_OF, KIND_OVERDUE
from deadline_notifier.delivery.gateway import NotificationMessage


def display_label(label: str | None, job_id: str) -> str:
  return (label or "").strip() or f"job {job_id}"


def format_local(at: datetime, tz: ZoneInfo) -> str:
  local = at.astimezone(tz)
  return f"{local:%a %d %b %Y %H:%M} ({tz.key})"


def reminder_message(
  *,
  kind: str,
  label: str | None,
  job_id: str,
  schedule_id: str,
  deadline: datetime,
  fire_at: datetime,
  tz: ZoneInfo,
) -> NotificationMessage:
  name = display_label(label, job_id)
  when = format_local(deadline, tz)
  if kind == KIND_APPROACHING:
    days = max(1, round((deadline - fire_at) / timedelta(days=1)))
    title = f"Application deadline in {days} days: {name}"
    body = f"The application for {name} closes {when}."
  elif kind == KIND_DAY_BEFORE:
    title = f"Application deadline tomorrow: {name}"
    body = f"The application for {name} closes {when}. Submit today to be safe."
  elif kind == KIND_DAY_OF:
    title = f"Application deadline today: {name}"
    body = f"The application for {name} closes {when}."
  elif kind == KIND_OVERDUE:
    title = f"Application deadline passed: {name}"
    body = f"The application for {name} closed {when}. Mark it submitted or cancel the reminder."
  else:
    title = f"Application reminder: {name}"
    body = f"Deadline {when}."
  return NotificationMessage(
    title=title,
    message=body,
    data={"jobId": job_id, "scheduleId": schedule_id, "kind": kind, "deadline": deadline.isoformat()},
  )
