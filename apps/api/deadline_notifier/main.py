from __future__ import annotations

import asyncio
from time import monotonic

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deadline_notifier.config import settings
from deadline_notifier.errors import NotifierError
from deadline_notifier.metrics import runtime_metrics
from deadline_notifier.observability.logging import get_logger, setup_logging
from deadline_notifier.routers.jobs import router as jobs_router
from deadline_notifier.routers.notifications import router as notifications_router
from deadline_notifier.routers.schedules import router as schedules_router
from deadline_notifier.routers.system import router as system_router
from deadline_notifier.scheduler.loop import scheduler_loop

logger = get_logger(__name__)

app = FastAPI(
  title="Deadline Notifier API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(NotifierError)
async def _notifier_error_handler(_, exc: NotifierError) -> JSONResponse:
  content: dict = {"detail": exc.message}
  if exc.details:
    content["details"] = exc.details
  return JSONResponse(status_code=exc.status_code, content=content)


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

app.include_router(system_router)
app.include_router(schedules_router)
app.include_router(jobs_router)
app.include_router(notifications_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  return response


_scheduler_task: asyncio.Task | None = None


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


@app.on_event("startup")
async def _startup() -> None:
  global _scheduler_task
  setup_logging(settings.log_level)
  if _is_test_db():
    return
  if settings.scheduler_enabled and _scheduler_task is None:
    _scheduler_task = asyncio.create_task(scheduler_loop())
    logger.info("scheduler.started", interval_seconds=settings.scheduler_interval_seconds)


@app.on_event("shutdown")
async def _shutdown() -> None:
  global _scheduler_task
  if _scheduler_task is None:
    return
  _scheduler_task.cancel()
  try:
    await _scheduler_task
  except asyncio.CancelledError:
    pass
  _scheduler_task = None
