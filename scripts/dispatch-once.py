#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "apps" / "api"))

from deadline_notifier.config import settings  # noqa: E402
from deadline_notifier.db import SessionLocal, engine  # noqa: E402
from deadline_notifier.observability.logging import setup_logging  # noqa: E402
from deadline_notifier.scheduler.loop import run_tick  # noqa: E402


def _parse_now(value: str | None) -> datetime | None:
  if not value:
    return None
  dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
  if dt.tzinfo is None:
    raise SystemExit("--now must include a timezone offset")
  return dt.astimezone(timezone.utc)


async def _run(args: argparse.Namespace) -> dict[str, int]:
  try:
    async with SessionLocal() as db:
      result = await run_tick(db, now=_parse_now(args.now), limit=args.limit, digests=not args.skip_digests)
  finally:
    await engine.dispose()
  return result.as_dict()


def main() -> int:
  parser = argparse.ArgumentParser(description="Run a single scheduler tick, e.g. from cron when the in-process loop is disabled")
  parser.add_argument("--now", default=None, help="ISO-8601 instant to evaluate at (default: current time)")
  parser.add_argument("--limit", type=int, default=None, help="Max schedules to process")
  parser.add_argument("--skip-digests", action="store_true")
  args = parser.parse_args()

  setup_logging(settings.log_level)
  summary = asyncio.run(_run(args))
  print(json.dumps(summary, indent=2, sort_keys=True))
  return 0


if __name__ == "__main__":
  raise SystemExit(main())
