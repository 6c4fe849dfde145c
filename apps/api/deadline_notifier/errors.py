from __future__ import annotations

from typing import Any


class NotifierError(Exception):
  status_code = 400

  def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details or {}


class ValidationError(NotifierError):
  """Rejected input: bad reminder offsets, past deadlines, illegal status changes."""

  status_code = 422


class NotFoundError(NotifierError):
  status_code = 404


class ConflictError(NotifierError):
  """A dispatch tuple is already claimed or delivered. Callers treat it as success."""

  status_code = 409


class DeliveryError(NotifierError):
  """Gateway call failed or timed out. Retried by the scheduler, never surfaced to API callers."""

  status_code = 502
