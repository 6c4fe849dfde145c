from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://deadlines:deadlines@db:5432/deadlines"
  app_version: str = "v2026-10-19+r1"
  build_sha: str = "dev"
  log_level: str = "INFO"
  api_docs_enabled: bool = True

  cors_origins: str = "http://localhost:5173,http://127.0.0.1:5173"

  scheduler_enabled: bool = True
  scheduler_interval_seconds: int = 60
  scheduler_lookahead_seconds: int = 60
  scheduler_batch_limit: int = 200
  overdue_grace_minutes: int = 60

  # Bounded retry for failed channel sends.
  dispatch_max_attempts: int = 3
  dispatch_retry_backoff_seconds: int = 60
  dispatch_retry_window_minutes: int = 1440
  dispatch_pending_stale_seconds: int = 600
  delivery_timeout_seconds: float = 15.0

  digest_enabled: bool = True
  digest_overdue_lookback_days: int = 30

  default_timezone: str = "UTC"

  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_username: str | None = None
  smtp_password: str | None = None
  smtp_from: str | None = None
  smtp_starttls: bool = True
  # Recipient lookup is external; "{user_id}" is substituted into this template.
  smtp_to_template: str | None = None

  push_webhook_url: str | None = None
  push_webhook_token: str | None = None

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
