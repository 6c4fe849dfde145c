from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from deadline_notifier.models import NotificationPreferences
from deadline_notifier.planner import (
  arm_fires,
  default_reminder_specs,
  due_fires,
  plan,
  plan_all,
  quiet_window_containing,
)
from deadline_notifier.preferences.resolver import QuietHours, merge_preferences

DEADLINE = datetime(2025, 3, 10, 17, 0, tzinfo=timezone.utc)
BEFORE = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class _Schedule:
  scheduled_at: datetime
  timezone: str = "UTC"
  reminder_specs: list[dict[str, Any]] = field(default_factory=list)


def _prefs(**kw):
  row = NotificationPreferences(user_id="user-1", **kw)
  return merge_preferences(row)


ALL_CHANNELS_ON = {"push": {"enabled": True}}


def test_scenario_a_fires_every_enabled_channel_at_offsets() -> None:
  s = _Schedule(
    scheduled_at=DEADLINE,
    reminder_specs=[{"kind": "dayBefore", "offsetMinutes": -1440}, {"kind": "dayOf", "offsetMinutes": 0}],
  )
  fires = plan(s, _prefs(channels=ALL_CHANNELS_ON), BEFORE)

  got = [(f.kind, f.channel, f.fire_at) for f in fires]
  day_before = datetime(2025, 3, 9, 17, 0, tzinfo=timezone.utc)
  assert got == [
    ("dayBefore", "email", day_before),
    ("dayBefore", "push", day_before),
    ("dayBefore", "inApp", day_before),
    ("dayOf", "email", DEADLINE),
    ("dayOf", "push", DEADLINE),
    ("dayOf", "inApp", DEADLINE),
  ]
  assert not any(f.shifted for f in fires)


def test_scenario_b_quiet_hours_shift_forward_to_window_end() -> None:
  # 17:00Z is 13:00 in New York (EDT); -660 minutes lands the dayOf fire at 02:00 local.
  s = _Schedule(
    scheduled_at=DEADLINE,
    timezone="America/New_York",
    reminder_specs=[{"kind": "dayBefore", "offsetMinutes": -1440}, {"kind": "dayOf", "offsetMinutes": -660}],
  )
  prefs = _prefs(channels=ALL_CHANNELS_ON, quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
  fires = plan(s, prefs, BEFORE)

  day_of = [f for f in fires if f.kind == "dayOf"]
  assert len(day_of) == 3
  for f in day_of:
    assert f.fire_at == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert f.fire_at.astimezone(ZoneInfo("America/New_York")).hour == 8
    assert f.shifted is True
  assert all(f.fire_at == datetime(2025, 3, 9, 17, 0, tzinfo=timezone.utc) for f in fires if f.kind == "dayBefore")


def test_quiet_hours_never_push_pre_deadline_reminder_past_deadline() -> None:
  # 07:00 in Tokyo is inside 22:00-08:00; 08:00 would be after the deadline, so move back to 22:00.
  deadline = datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc)
  s = _Schedule(scheduled_at=deadline, timezone="Asia/Tokyo", reminder_specs=[{"kind": "dayOf", "offsetMinutes": 0}])
  prefs = _prefs(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")

  fires = plan(s, prefs, BEFORE)

  assert {f.fire_at for f in fires} == {datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)}
  assert all(f.fire_at <= deadline for f in fires)


def test_overdue_shifts_forward_even_past_deadline() -> None:
  deadline = datetime(2025, 3, 10, 21, 30, tzinfo=timezone.utc)
  s = _Schedule(scheduled_at=deadline, reminder_specs=[{"kind": "overdue", "offsetMinutes": 60}])
  prefs = _prefs(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")

  fires = plan(s, prefs, deadline + timedelta(hours=2))

  assert {f.fire_at for f in fires} == {datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc)}


def test_disabled_channel_never_fires_whatever_its_kinds_say() -> None:
  s = _Schedule(scheduled_at=DEADLINE, reminder_specs=default_reminder_specs(3))
  prefs = _prefs(
    channels={
      "push": {"enabled": False, "kinds": {"approaching": True, "dayBefore": True, "dayOf": True, "overdue": True}},
      "email": {"enabled": False},
    }
  )

  fires = plan(s, prefs, DEADLINE + timedelta(days=1))

  assert fires
  assert {f.channel for f in fires} == {"inApp"}


def test_kind_without_any_enabled_channel_is_skipped() -> None:
  s = _Schedule(scheduled_at=DEADLINE, reminder_specs=default_reminder_specs(3))
  prefs = _prefs(channels={"email": {"kinds": {"approaching": False}}, "inApp": {"kinds": {"approaching": False}}})

  fires = plan_all(s, prefs)

  assert "approaching" not in {f.kind for f in fires}


def test_plan_is_deterministic() -> None:
  s = _Schedule(scheduled_at=DEADLINE, timezone="Europe/Berlin", reminder_specs=default_reminder_specs(5))
  prefs = _prefs(channels=ALL_CHANNELS_ON, quiet_hours_enabled=True, quiet_hours_start="23:00", quiet_hours_end="06:30")
  now = DEADLINE + timedelta(hours=3)

  assert plan(s, prefs, now) == plan(s, prefs, now)
  assert plan_all(s, prefs) == plan_all(s, prefs)


def test_overdue_only_after_deadline_and_independent_of_now() -> None:
  s = _Schedule(scheduled_at=DEADLINE, reminder_specs=default_reminder_specs(3))
  prefs = _prefs()

  assert "overdue" not in {f.kind for f in plan(s, prefs, DEADLINE)}

  later = plan(s, prefs, DEADLINE + timedelta(minutes=1))
  much_later = plan(s, prefs, DEADLINE + timedelta(days=3))
  overdue_at = {f.fire_at for f in later if f.kind == "overdue"}
  assert overdue_at == {DEADLINE + timedelta(minutes=60)}
  assert overdue_at == {f.fire_at for f in much_later if f.kind == "overdue"}


def test_due_fires_only_returns_past_fire_times() -> None:
  s = _Schedule(scheduled_at=DEADLINE, reminder_specs=default_reminder_specs(3))
  now = datetime(2025, 3, 9, 18, 0, tzinfo=timezone.utc)

  due = due_fires(s, _prefs(), now)

  assert {f.kind for f in due} == {"approaching", "dayBefore"}
  assert all(f.fire_at <= now for f in due)


def test_default_specs_follow_approaching_days() -> None:
  specs = {s["kind"]: s["offsetMinutes"] for s in default_reminder_specs(5)}
  assert specs == {"approaching": -7200, "dayBefore": -1440, "dayOf": 0, "overdue": 60}


def test_malformed_specs_are_ignored() -> None:
  s = _Schedule(
    scheduled_at=DEADLINE,
    reminder_specs=[
      {"kind": "dayOf", "offsetMinutes": 0},
      {"kind": "dayOf", "offsetMinutes": -30},
      {"kind": "nope", "offsetMinutes": -10},
      {"kind": "dayBefore", "offsetMinutes": "soon"},
      "garbage",
    ],
  )
  fires = plan_all(s, _prefs())
  assert {(f.kind, f.fire_at) for f in fires} == {("dayOf", DEADLINE)}


def test_quiet_window_wraps_midnight_with_exclusive_bounds() -> None:
  quiet = QuietHours(enabled=True, start="22:00", end="08:00")
  tz = ZoneInfo("UTC")

  assert quiet_window_containing(datetime(2025, 3, 10, 23, 30, tzinfo=timezone.utc), quiet, tz) == (
    datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc),
    datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc),
  )
  assert quiet_window_containing(datetime(2025, 3, 11, 1, 0, tzinfo=timezone.utc), quiet, tz) == (
    datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc),
    datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc),
  )
  assert quiet_window_containing(datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc), quiet, tz) is None
  assert quiet_window_containing(datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc), quiet, tz) is None
  assert quiet_window_containing(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc), quiet, tz) is None


def test_quiet_window_same_day_and_degenerate() -> None:
  tz = ZoneInfo("UTC")
  lunch = QuietHours(enabled=True, start="12:00", end="14:00")
  assert quiet_window_containing(datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc), lunch, tz) is not None
  assert quiet_window_containing(datetime(2025, 3, 10, 23, 0, tzinfo=timezone.utc), lunch, tz) is None

  same = QuietHours(enabled=True, start="09:00", end="09:00")
  assert quiet_window_containing(datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc), same, tz) is None

  disabled = QuietHours(enabled=False, start="00:00", end="23:59")
  assert quiet_window_containing(datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc), disabled, tz) is None


def test_preference_timezone_wins_over_schedule_timezone() -> None:
  s = _Schedule(scheduled_at=DEADLINE, timezone="UTC", reminder_specs=[{"kind": "dayOf", "offsetMinutes": -600}])
  # 07:00Z: inside 22:00-08:00 in UTC, but 16:00 in Tokyo.
  tokyo = _prefs(timezone="Asia/Tokyo", quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
  utc = _prefs(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")

  assert {f.fire_at for f in plan_all(s, tokyo)} == {DEADLINE - timedelta(minutes=600)}
  assert {f.fire_at for f in plan_all(s, utc)} == {datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)}


def test_arming_keeps_clamped_reminders_whose_own_time_is_still_ahead() -> None:
  deadline = datetime(2025, 3, 10, 22, 0, tzinfo=timezone.utc)
  s = _Schedule(
    scheduled_at=deadline,
    timezone="Asia/Tokyo",
    reminder_specs=[{"kind": "dayBefore", "offsetMinutes": -1440}, {"kind": "dayOf", "offsetMinutes": 0}],
  )
  prefs = _prefs(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
  # 23:30 in Tokyo: after the dayOf fire was clamped back to 22:00, before its 07:00 deadline.
  armed_at = datetime(2025, 3, 10, 14, 30, tzinfo=timezone.utc)

  fires = arm_fires(plan_all(s, prefs), armed_at)

  assert {(f.kind, f.fire_at) for f in fires} == {("dayOf", armed_at)}
  assert all(f.naive_at == deadline for f in fires)


def test_arming_drops_unshifted_fires_before_arm_time() -> None:
  s = _Schedule(scheduled_at=DEADLINE, reminder_specs=[{"kind": "dayBefore", "offsetMinutes": -1440}, {"kind": "dayOf", "offsetMinutes": 0}])
  armed_at = DEADLINE - timedelta(hours=2)

  fires = arm_fires(plan_all(s, _prefs()), armed_at)

  assert {f.kind for f in fires} == {"dayOf"}
  assert all(f.fire_at == DEADLINE for f in fires)
