from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def hhmm_minutes(hhmm: str | None) -> int | None:
  s = (hhmm or "").strip()
  if not s or len(s) != 5 or s[2] != ":":
    return None
  hh, mm = s[:2], s[3:]
  if not (hh.isdigit() and mm.isdigit()):
    return None
  hhi, mmi = int(hh), int(mm)
  if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
    return None
  return hhi * 60 + mmi


def normalize_hhmm(hhmm: str | None) -> str | None:
  minutes = hhmm_minutes(hhmm)
  if minutes is None:
    return None
  return f"{minutes // 60:02d}:{minutes % 60:02d}"


def zone_or_none(name: str | None) -> ZoneInfo | None:
  s = (name or "").strip()
  if not s:
    return None
  try:
    return ZoneInfo(s)
  except (ZoneInfoNotFoundError, ValueError):
    return None


def is_valid_timezone(name: str | None) -> bool:
  return zone_or_none(name) is not None


def as_utc(dt: datetime) -> datetime:
  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


def local_instant(day: date, minutes: int, tz: ZoneInfo) -> datetime:
  """UTC instant of `minutes` after local midnight on `day` in `tz`."""
  return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=tz).astimezone(timezone.utc)
