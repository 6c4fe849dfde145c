from __future__ import annotations

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from deadline_notifier.config import settings

engine = create_async_engine(settings.database_url, pool_pre_ping=not settings.database_url.startswith("sqlite"))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
