from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Protocol

import httpx

from deadline_notifier.config import settings
from deadline_notifier.constants import CHANNEL_EMAIL, CHANNEL_INAPP, CHANNEL_PUSH
from deadline_notifier.errors import DeliveryError
from deadline_notifier.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
  title: str
  message: str
  data: dict[str, Any] = field(default_factory=dict)

  def as_payload(self) -> dict[str, Any]:
    return {"title": self.title, "message": self.message, "data": dict(self.data)}


@dataclass(frozen=True)
class DeliveryResult:
  ok: bool
  error: str | None = None
  detail: dict[str, Any] = field(default_factory=dict)


class DeliveryGateway(Protocol):
  async def send(self, channel: str, user_id: str, kind: str, payload: NotificationMessage) -> DeliveryResult: ...


class ChannelProvider(Protocol):
  async def send(self, *, user_id: str, kind: str, msg: NotificationMessage) -> dict[str, Any]: ...


class LocalProvider:
  """Accepts everything. The in-app inbox is the dispatch log itself."""

  def __init__(self, name: str = "local") -> None:
    self.name = name

  async def send(self, *, user_id: str, kind: str, msg: NotificationMessage) -> dict[str, Any]:
    logger.debug("delivery.local", provider=self.name, user_id=user_id, kind=kind, title=msg.title)
    return {"provider": self.name, "title": msg.title}


class WebhookPushProvider:
  def __init__(self, url: str, *, token: str | None = None, timeout: float = 15.0) -> None:
    self.url = url
    self.token = token
    self.timeout = timeout

  async def send(self, *, user_id: str, kind: str, msg: NotificationMessage) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
    body = {"userId": user_id, "kind": kind, **msg.as_payload()}
    async with httpx.AsyncClient(timeout=self.timeout) as client:
      r = await client.post(self.url, json=body, headers=headers)
      r.raise_for_status()
    return {"provider": "push-webhook", "statusCode": r.status_code}


class SmtpProvider:
  def __init__(
    self,
    *,
    host: str,
    port: int = 587,
    username: str | None = None,
    password: str | None = None,
    from_addr: str | None = None,
    to_template: str | None = None,
    starttls: bool = True,
    timeout: float = 15.0,
  ) -> None:
    self.host = host
    self.port = port
    self.username = username or ""
    self.password = password or ""
    self.from_addr = from_addr or ""
    self.to_template = to_template or ""
    self.starttls = starttls
    self.timeout = timeout

  def recipient_for(self, user_id: str) -> str:
    if not self.to_template:
      raise DeliveryError("SMTP recipient template not configured")
    return self.to_template.format(user_id=user_id)

  async def send(self, *, user_id: str, kind: str, msg: NotificationMessage) -> dict[str, Any]:
    if not self.host or not self.from_addr:
      raise DeliveryError("SMTP provider missing host/from")
    to_addr = self.recipient_for(user_id)

    def _send_sync() -> None:
      m = EmailMessage()
      m["Subject"] = msg.title
      m["From"] = self.from_addr
      m["To"] = to_addr
      m.set_content(msg.message)
      with smtplib.SMTP(host=self.host, port=self.port, timeout=self.timeout) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        if self.username and self.password:
          s.login(self.username, self.password)
        s.send_message(m)

    await asyncio.to_thread(_send_sync)
    return {"provider": "smtp", "to": to_addr, "host": self.host}


class ChannelGateway:
  """Routes a channel to its provider and turns provider exceptions into failed results."""

  def __init__(self, providers: dict[str, ChannelProvider]) -> None:
    self._providers = dict(providers)

  async def send(self, channel: str, user_id: str, kind: str, payload: NotificationMessage) -> DeliveryResult:
    provider = self._providers.get(channel)
    if provider is None:
      return DeliveryResult(ok=False, error=f"No provider for channel {channel}")
    try:
      detail = await provider.send(user_id=user_id, kind=kind, msg=payload)
    except Exception as e:
      return DeliveryResult(ok=False, error=str(e) or e.__class__.__name__)
    return DeliveryResult(ok=True, detail=detail or {})


def default_gateway() -> ChannelGateway:
  timeout = float(settings.delivery_timeout_seconds)
  email: ChannelProvider = LocalProvider("email-local")
  if settings.smtp_host:
    email = SmtpProvider(
      host=settings.smtp_host,
      port=settings.smtp_port,
      username=settings.smtp_username,
      password=settings.smtp_password,
      from_addr=settings.smtp_from,
      to_template=settings.smtp_to_template,
      starttls=settings.smtp_starttls,
      timeout=timeout,
    )
  push: ChannelProvider = LocalProvider("push-local")
  if settings.push_webhook_url:
    push = WebhookPushProvider(settings.push_webhook_url, token=settings.push_webhook_token, timeout=timeout)
  return ChannelGateway({CHANNEL_EMAIL: email, CHANNEL_PUSH: push, CHANNEL_INAPP: LocalProvider("inapp")})
