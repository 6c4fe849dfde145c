from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

_TEST_DB = Path(tempfile.gettempdir()) / "deadline_notifier_test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DIGEST_ENABLED", "false")

from deadline_notifier.config import settings
from deadline_notifier.db import SessionLocal, engine
from deadline_notifier.delivery.gateway import DeliveryResult, NotificationMessage
from deadline_notifier.main import app
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.models import Base


class FakeGateway:
  """Records every send; channels in `fail_channels` report failure, `delay` simulates a slow provider."""

  def __init__(self) -> None:
    self.calls: list[tuple[str, str, str, NotificationMessage]] = []
    self.fail_channels: set[str] = set()
    self.delay: float = 0.0

  async def send(self, channel: str, user_id: str, kind: str, payload: NotificationMessage) -> DeliveryResult:
    self.calls.append((channel, user_id, kind, payload))
    if self.delay:
      await asyncio.sleep(self.delay)
    if channel in self.fail_channels:
      return DeliveryResult(ok=False, error=f"{channel} provider down")
    return DeliveryResult(ok=True, detail={"provider": "fake"})

  def sent_kinds(self, channel: str | None = None) -> list[str]:
    return [kind for ch, _, kind, _ in self.calls if channel is None or ch == channel]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def db_ready() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. deadline_notifier_test)."
    )
  runtime_metrics.reset_dispatch()
  await _reset_db()
  yield
  await engine.dispose()


@pytest.fixture
async def db(db_ready):
  async with SessionLocal() as session:
    yield session


@pytest.fixture
async def client(db_ready) -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


@pytest.fixture
def gateway() -> FakeGateway:
  return FakeGateway()


@pytest.fixture
def user_headers() -> dict[str, str]:
  return {"X-User-Id": "user-1"}
