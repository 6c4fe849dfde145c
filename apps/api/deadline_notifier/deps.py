from __future__ import annotations

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from deadline_notifier.db import SessionLocal
from deadline_notifier.delivery.gateway import DeliveryGateway, default_gateway


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
  # Identity is asserted by the upstream gateway; this service does not authenticate.
  user_id = (x_user_id or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
  if len(user_id) > 200:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user id")
  return user_id


def get_gateway() -> DeliveryGateway:
  return default_gateway()
