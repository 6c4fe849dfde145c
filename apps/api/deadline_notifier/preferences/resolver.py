"""
Preference resolution.

A user's stored row only holds overrides; every missing or malformed field falls back to the
system defaults below. Resolution never fails: a user without a row gets all defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.constants import (
  ALL_KINDS,
  CHANNEL_EMAIL,
  CHANNEL_INAPP,
  CHANNEL_PUSH,
  CHANNELS,
  KIND_APPROACHING,
  KIND_DAY_BEFORE,
  KIND_DAY_OF,
  KIND_OVERDUE,
  KIND_WEEKLY_DIGEST,
  WEEKDAYS,
)
from deadline_notifier.models import NotificationPreferences
from deadline_notifier.timeutil import hhmm_minutes, is_valid_timezone, normalize_hhmm

DEFAULT_APPROACHING_DAYS = 3
DEFAULT_QUIET_HOURS_START = "22:00"
DEFAULT_QUIET_HOURS_END = "08:00"
DEFAULT_DIGEST_DAY = "monday"
DEFAULT_DIGEST_TIME = "09:00"


def default_channels() -> dict[str, dict[str, Any]]:
  return {
    CHANNEL_EMAIL: {
      "enabled": True,
      "kinds": {
        KIND_APPROACHING: True,
        KIND_DAY_BEFORE: True,
        KIND_DAY_OF: True,
        KIND_OVERDUE: True,
        KIND_WEEKLY_DIGEST: False,
      },
    },
    CHANNEL_PUSH: {
      "enabled": False,
      "kinds": {
        KIND_APPROACHING: True,
        KIND_DAY_BEFORE: True,
        KIND_DAY_OF: True,
        KIND_OVERDUE: False,
        KIND_WEEKLY_DIGEST: False,
      },
    },
    CHANNEL_INAPP: {
      "enabled": True,
      "kinds": {
        KIND_APPROACHING: True,
        KIND_DAY_BEFORE: True,
        KIND_DAY_OF: True,
        KIND_OVERDUE: True,
        KIND_WEEKLY_DIGEST: False,
      },
    },
  }


@dataclass(frozen=True)
class QuietHours:
  enabled: bool = False
  start: str = DEFAULT_QUIET_HOURS_START
  end: str = DEFAULT_QUIET_HOURS_END

  def window(self) -> tuple[int, int] | None:
    """(start, end) in minutes after local midnight, or None when there is no window."""
    if not self.enabled:
      return None
    start = hhmm_minutes(self.start)
    end = hhmm_minutes(self.end)
    if start is None or end is None or start == end:
      return None
    return (start, end)


@dataclass(frozen=True)
class ChannelPreferences:
  enabled: bool
  kinds: dict[str, bool] = field(default_factory=dict)

  def allows(self, kind: str) -> bool:
    return self.enabled and bool(self.kinds.get(kind, False))


@dataclass(frozen=True)
class ResolvedPreferences:
  user_id: str | None
  channels: dict[str, ChannelPreferences]
  approaching_days: int = DEFAULT_APPROACHING_DAYS
  timezone: str | None = None
  quiet_hours: QuietHours = QuietHours()
  digest_day: str = DEFAULT_DIGEST_DAY
  digest_time: str = DEFAULT_DIGEST_TIME
  stored: bool = False

  def kind_enabled(self, channel: str, kind: str) -> bool:
    ch = self.channels.get(channel)
    return bool(ch and ch.allows(kind))

  def channels_for(self, kind: str) -> list[str]:
    return [c for c in CHANNELS if self.kind_enabled(c, kind)]


def _bool_or(value: Any, default: bool) -> bool:
  if isinstance(value, bool):
    return value
  return default


def _merge_channels(stored: Any) -> dict[str, ChannelPreferences]:
  merged = default_channels()
  if isinstance(stored, dict):
    for channel in CHANNELS:
      override = stored.get(channel)
      if not isinstance(override, dict):
        continue
      merged[channel]["enabled"] = _bool_or(override.get("enabled"), merged[channel]["enabled"])
      kinds = override.get("kinds")
      if isinstance(kinds, dict):
        for kind in ALL_KINDS:
          merged[channel]["kinds"][kind] = _bool_or(kinds.get(kind), merged[channel]["kinds"][kind])
  return {c: ChannelPreferences(enabled=bool(v["enabled"]), kinds=dict(v["kinds"])) for c, v in merged.items()}


def merge_preferences(row: NotificationPreferences | None, *, user_id: str | None = None) -> ResolvedPreferences:
  if row is None:
    return ResolvedPreferences(user_id=user_id, channels=_merge_channels(None))

  approaching = row.approaching_days
  if not isinstance(approaching, int) or approaching < 1 or approaching > 30:
    approaching = DEFAULT_APPROACHING_DAYS

  digest_day = (row.digest_day or "").strip().lower()
  if digest_day not in WEEKDAYS:
    digest_day = DEFAULT_DIGEST_DAY

  return ResolvedPreferences(
    user_id=row.user_id or user_id,
    channels=_merge_channels(row.channels),
    approaching_days=approaching,
    timezone=row.timezone if is_valid_timezone(row.timezone) else None,
    quiet_hours=QuietHours(
      enabled=_bool_or(row.quiet_hours_enabled, False),
      start=normalize_hhmm(row.quiet_hours_start) or DEFAULT_QUIET_HOURS_START,
      end=normalize_hhmm(row.quiet_hours_end) or DEFAULT_QUIET_HOURS_END,
    ),
    digest_day=digest_day,
    digest_time=normalize_hhmm(row.digest_time) or DEFAULT_DIGEST_TIME,
    stored=True,
  )


async def load_preferences_row(db: AsyncSession, user_id: str) -> NotificationPreferences | None:
  res = await db.execute(select(NotificationPreferences).where(NotificationPreferences.user_id == user_id))
  return res.scalar_one_or_none()


async def resolve_preferences(db: AsyncSession, user_id: str) -> ResolvedPreferences:
  return merge_preferences(await load_preferences_row(db, user_id), user_id=user_id)
