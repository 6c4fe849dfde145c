"""
Reminder planning.

`plan()` is a pure function of a schedule, the resolved preferences and (only for the overdue
eligibility gate) the current instant. Identical inputs always yield identical fire times, which is
what lets the scheduler re-plan every tick instead of persisting a materialized plan.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol
from zoneinfo import ZoneInfo

from deadline_notifier.constants import (
  CHANNELS,
  DEADLINE_KINDS,
  KIND_APPROACHING,
  KIND_DAY_BEFORE,
  KIND_DAY_OF,
  KIND_OVERDUE,
  PRE_DEADLINE_KINDS,
)
from deadline_notifier.preferences.resolver import QuietHours, ResolvedPreferences
from deadline_notifier.timeutil import as_utc, local_instant, zone_or_none

DEFAULT_OVERDUE_OFFSET_MINUTES = 60


class Plannable(Protocol):
  scheduled_at: datetime
  timezone: str
  reminder_specs: list[dict[str, Any]]


@dataclass(frozen=True)
class PlannedFire:
  kind: str
  channel: str
  fire_at: datetime
  # Set when quiet hours moved the fire away from scheduled_at + offset.
  shifted: bool = False
  # scheduled_at + offset, before any quiet-hours shift.
  naive_at: datetime | None = None


def default_reminder_specs(approaching_days: int = 3) -> list[dict[str, Any]]:
  return [
    {"kind": KIND_APPROACHING, "offsetMinutes": -1440 * int(approaching_days)},
    {"kind": KIND_DAY_BEFORE, "offsetMinutes": -1440},
    {"kind": KIND_DAY_OF, "offsetMinutes": 0},
    {"kind": KIND_OVERDUE, "offsetMinutes": DEFAULT_OVERDUE_OFFSET_MINUTES},
  ]


def iter_specs(specs: Iterable[Any] | None) -> list[tuple[str, int]]:
  out: list[tuple[str, int]] = []
  seen: set[str] = set()
  for s in specs or []:
    if not isinstance(s, dict):
      continue
    kind = s.get("kind")
    offset = s.get("offsetMinutes")
    if kind not in DEADLINE_KINDS or kind in seen or isinstance(offset, bool) or not isinstance(offset, int):
      continue
    seen.add(kind)
    out.append((kind, offset))
  return out


def planning_zone(schedule: Plannable, prefs: ResolvedPreferences, default_tz: str = "UTC") -> ZoneInfo:
  return zone_or_none(prefs.timezone) or zone_or_none(schedule.timezone) or zone_or_none(default_tz) or ZoneInfo("UTC")


def quiet_window_containing(at: datetime, quiet: QuietHours, tz: ZoneInfo) -> tuple[datetime, datetime] | None:
  """
  Return the (start, end) instants of the quiet-hours window that strictly contains `at`.

  Boundaries are outside the window, so a fire moved onto `start` or `end` is deliverable.
  Windows with start > end wrap midnight.
  """
  window = quiet.window()
  if window is None:
    return None
  start_min, end_min = window
  day = at.astimezone(tz).date()
  if start_min < end_min:
    candidates = [(day, day)]
  else:
    candidates = [(day - timedelta(days=1), day), (day, day + timedelta(days=1))]
  for start_day, end_day in candidates:
    start = local_instant(start_day, start_min, tz)
    end = local_instant(end_day, end_min, tz)
    if start < at < end:
      return (start, end)
  return None


def adjust_fire_time(kind: str, naive_fire_at: datetime, deadline: datetime, quiet: QuietHours, tz: ZoneInfo) -> datetime:
  hit = quiet_window_containing(naive_fire_at, quiet, tz)
  if hit is None:
    return naive_fire_at
  start, end = hit
  if kind in PRE_DEADLINE_KINDS and end > deadline:
    # Pre-deadline reminders never move past the deadline.
    return start
  return end


def _sort_key(f: PlannedFire) -> tuple[datetime, int, int]:
  return (f.fire_at, DEADLINE_KINDS.index(f.kind), CHANNELS.index(f.channel))


def plan_all(schedule: Plannable, prefs: ResolvedPreferences, *, default_tz: str = "UTC") -> list[PlannedFire]:
  """Every fire the schedule can ever produce, overdue included regardless of `now`."""
  deadline = as_utc(schedule.scheduled_at)
  tz = planning_zone(schedule, prefs, default_tz)
  fires: list[PlannedFire] = []
  for kind, offset in iter_specs(schedule.reminder_specs):
    channels = prefs.channels_for(kind)
    if not channels:
      continue
    naive = deadline + timedelta(minutes=offset)
    for channel in channels:
      fire_at = adjust_fire_time(kind, naive, deadline, prefs.quiet_hours, tz)
      fires.append(PlannedFire(kind=kind, channel=channel, fire_at=fire_at, shifted=fire_at != naive, naive_at=naive))
  fires.sort(key=_sort_key)
  return fires


def plan(schedule: Plannable, prefs: ResolvedPreferences, now: datetime, *, default_tz: str = "UTC") -> list[PlannedFire]:
  deadline = as_utc(schedule.scheduled_at)
  past_deadline = as_utc(now) > deadline
  return [f for f in plan_all(schedule, prefs, default_tz=default_tz) if f.kind != KIND_OVERDUE or past_deadline]


def due_fires(schedule: Plannable, prefs: ResolvedPreferences, now: datetime, *, default_tz: str = "UTC") -> list[PlannedFire]:
  return due_now(plan_all(schedule, prefs, default_tz=default_tz), schedule.scheduled_at, now)


def arm_fires(fires: Iterable[PlannedFire], armed_at: datetime) -> list[PlannedFire]:
  """
  Drop fires that were already in the past when the schedule was created or last edited.

  A pre-deadline fire whose own time is after `armed_at` but that quiet hours clamped back to before
  it fires at `armed_at` instead of never: the deadline is still ahead, so a reminder inside quiet
  hours beats a missed one.
  """
  armed = as_utc(armed_at)
  out: list[PlannedFire] = []
  for f in fires:
    if f.fire_at >= armed:
      out.append(f)
    elif f.kind in PRE_DEADLINE_KINDS and f.shifted and f.naive_at is not None and f.naive_at >= armed:
      out.append(replace(f, fire_at=armed))
  out.sort(key=_sort_key)
  return out


def due_now(fires: Iterable[PlannedFire], deadline: datetime, now: datetime) -> list[PlannedFire]:
  """Fires whose time has come; overdue only once the deadline has passed."""
  current = as_utc(now)
  past_deadline = current > as_utc(deadline)
  return [f for f in fires if f.fire_at <= current and (f.kind != KIND_OVERDUE or past_deadline)]
