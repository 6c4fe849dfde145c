from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic import field_validator

from deadline_notifier.timeutil import is_valid_timezone, normalize_hhmm


_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TZ_SUFFIX_RE = re.compile(r"(Z|[+-]\d{2}:?\d{2})$")

ReminderKind = Literal["approaching", "dayBefore", "dayOf", "overdue"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _parse_dt_utc_require_tz(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
    if dt.tzinfo is None:
      raise ValueError("datetime must include timezone")
    return dt.astimezone(timezone.utc)
  if isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if _DATE_ONLY_RE.fullmatch(s):
      raise ValueError("datetime must include time and timezone")
    if not _TZ_SUFFIX_RE.search(s):
      raise ValueError("datetime must include timezone")
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
      raise ValueError("datetime must include timezone")
    return dt.astimezone(timezone.utc)
  return value


def _hhmm_or_error(value: str | None) -> str | None:
  if value is None:
    return None
  out = normalize_hhmm(value)
  if out is None:
    raise ValueError("time must be HH:MM")
  return out


class ReminderSpecIn(BaseModel):
  kind: ReminderKind
  offsetMinutes: int


class ScheduleUpsertIn(BaseModel):
  jobId: str = Field(min_length=1, max_length=200)
  scheduledAt: datetime
  timezone: str = Field(default="UTC", min_length=1, max_length=64)
  reminderSpecs: list[ReminderSpecIn] | None = Field(default=None, max_length=4)
  label: str | None = Field(default=None, max_length=200)

  @field_validator("scheduledAt", mode="before")
  @classmethod
  def _scheduled_to_utc(cls, v: object) -> object:
    return _parse_dt_utc_require_tz(v)

  @field_validator("timezone")
  @classmethod
  def _known_timezone(cls, v: str) -> str:
    s = v.strip()
    if not is_valid_timezone(s):
      raise ValueError("unknown IANA timezone")
    return s


class ScheduleStatusIn(BaseModel):
  status: Literal["submitted", "cancelled"]


class ScheduleOut(BaseModel):
  id: str
  jobId: str
  label: str | None = None
  scheduledAt: datetime
  timezone: str
  reminderSpecs: list[dict[str, Any]]
  status: str
  lastProcessedAt: datetime | None = None
  nextFireAt: datetime | None = None
  submittedAt: datetime | None = None
  cancelledAt: datetime | None = None
  expiredAt: datetime | None = None
  createdAt: datetime
  updatedAt: datetime


class PlannedFireOut(BaseModel):
  kind: str
  channel: str
  fireAt: datetime
  shifted: bool = False


class SchedulePlanOut(BaseModel):
  scheduleId: str
  timezone: str
  fires: list[PlannedFireOut]


class DispatchRecordOut(BaseModel):
  id: str
  jobId: str | None = None
  scheduleId: str | None = None
  kind: str
  channel: str
  status: str
  attempt: int
  fireAt: datetime | None = None
  periodKey: str = ""
  title: str | None = None
  message: str | None = None
  error: str | None = None
  sentAt: datetime | None = None
  readAt: datetime | None = None
  createdAt: datetime


class JobStatusEventIn(BaseModel):
  status: str = Field(min_length=1, max_length=50)


class JobStatusEventOut(BaseModel):
  jobId: str
  status: str
  schedules: list[ScheduleOut]


class ChannelPreferencesIn(BaseModel):
  enabled: bool | None = None
  kinds: dict[Literal["approaching", "dayBefore", "dayOf", "overdue", "weeklyDigest"], bool] | None = None


class ChannelPreferencesOut(BaseModel):
  enabled: bool
  kinds: dict[str, bool]


class QuietHoursOut(BaseModel):
  enabled: bool
  start: str
  end: str


class NotificationPreferencesOut(BaseModel):
  channels: dict[str, ChannelPreferencesOut]
  approachingDays: int
  timezone: str | None = None
  quietHours: QuietHoursOut
  digestDay: str
  digestTime: str


class NotificationPreferencesIn(BaseModel):
  email: ChannelPreferencesIn | None = None
  push: ChannelPreferencesIn | None = None
  inApp: ChannelPreferencesIn | None = None
  approachingDays: int | None = Field(default=None, ge=1, le=30)
  timezone: str | None = Field(default=None, max_length=64)
  quietHoursEnabled: bool | None = None
  quietHoursStart: str | None = Field(default=None, max_length=5)
  quietHoursEnd: str | None = Field(default=None, max_length=5)
  digestDay: Weekday | None = None
  digestTime: str | None = Field(default=None, max_length=5)

  @field_validator("timezone")
  @classmethod
  def _known_timezone(cls, v: str | None) -> str | None:
    if v is None or not v.strip():
      return None
    if not is_valid_timezone(v.strip()):
      raise ValueError("unknown IANA timezone")
    return v.strip()

  @field_validator("quietHoursStart", "quietHoursEnd", "digestTime")
  @classmethod
  def _hhmm(cls, v: str | None) -> str | None:
    return _hhmm_or_error(v)


class MarkReadIn(BaseModel):
  ids: list[UUID] = Field(min_length=1, max_length=200)


class MarkReadOut(BaseModel):
  ok: bool = True
  updated: int


class NotificationTestDeliveryOut(BaseModel):
  channel: str
  status: str
  error: str | None = None


class NotificationTestOut(BaseModel):
  message: str
  jobId: str
  scheduleId: str
  label: str | None = None
  scheduledAt: datetime
  deliveries: list[NotificationTestDeliveryOut]
