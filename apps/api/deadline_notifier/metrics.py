from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic


@dataclass
class RequestSample:
  ts: datetime
  status_code: int
  latency_ms: float


class RuntimeMetrics:
  def __init__(self) -> None:
    self._started_monotonic = monotonic()
    self._started_at = datetime.now(timezone.utc)
    self._samples: deque[RequestSample] = deque()
    self._dispatch: Counter[str] = Counter()
    self._last_tick_at: datetime | None = None
    self._last_tick_ms: float = 0.0
    self._lock = Lock()

  @property
  def started_at(self) -> datetime:
    return self._started_at

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def observe_request(self, status_code: int, latency_ms: float) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._samples.append(RequestSample(ts=now, status_code=status_code, latency_ms=latency_ms))
      self._prune_locked(now)

  def incr_dispatch(self, outcome: str, n: int = 1) -> None:
    # outcome: sent | failed | conflict | exhausted | skipped
    with self._lock:
      self._dispatch[outcome] += n

  def observe_tick(self, at: datetime, elapsed_ms: float) -> None:
    with self._lock:
      self._dispatch["ticks"] += 1
      self._last_tick_at = at
      self._last_tick_ms = elapsed_ms

  def dispatch_count(self, outcome: str) -> int:
    with self._lock:
      return int(self._dispatch.get(outcome, 0))

  def reset_dispatch(self) -> None:
    with self._lock:
      self._dispatch.clear()
      self._last_tick_at = None
      self._last_tick_ms = 0.0

  def _prune_locked(self, now: datetime) -> None:
    cutoff = now - timedelta(hours=24)
    while self._samples and self._samples[0].ts < cutoff:
      self._samples.popleft()

  def snapshot(self) -> dict:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._prune_locked(now)
      samples = list(self._samples)
      dispatch = dict(self._dispatch)
      last_tick_at = self._last_tick_at
      last_tick_ms = self._last_tick_ms

    cutoff_15 = now - timedelta(minutes=15)
    recent = [s for s in samples if s.ts >= cutoff_15]
    errors_15 = sum(1 for s in recent if s.status_code >= 500)
    errors_24h = sum(1 for s in samples if s.status_code >= 500)

    p95_ms = 0.0
    if samples:
      sorted_latencies = sorted(s.latency_ms for s in samples)
      idx = max(0, int(len(sorted_latencies) * 0.95) - 1)
      p95_ms = sorted_latencies[idx]

    return {
      "uptimeSeconds": self.uptime_seconds(),
      "p95LatencyMs24h": round(p95_ms, 2),
      "requestCount15m": len(recent),
      "requestCount24h": len(samples),
      "errorCount15m": errors_15,
      "errorCount24h": errors_24h,
      "scheduler": {
        "ticks": int(dispatch.get("ticks", 0)),
        "lastTickAt": last_tick_at,
        "lastTickMs": round(last_tick_ms, 2),
      },
      "dispatch": {k: int(v) for k, v in sorted(dispatch.items()) if k != "ticks"},
    }


runtime_metrics = RuntimeMetrics()
