"""Error kinds raised by the reminder engine.

Every failure the engine surfaces is a ``CareCueError`` subclass. The kind decides
how the reconciliation controller reacts:

- ``NetworkUnavailable`` (and ``RequestTimedOut``): fall back to the offline cache,
  retry later, no user-facing alarm.
- ``NotFound``: the entity is already gone server-side; accept and resync.
- ``DuplicateOccurrence``: a "taken" (or "missed") event already exists inside the
  dedup window; informational, never retried.
- ``Unauthorized``: needs re-authentication; never retried silently.
- ``ServerError``: surfaced with a retry affordance.
- ``ValidationError``: rejected locally before any network call.
"""

from typing import Any


class CareCueError(Exception):
    """Base class for engine errors."""

    #: Absorbed locally without interrupting the user.
    quiet = False

    def __init__(self, message: str = "", *, status_code: int | None = None, detail: Any = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.status_code = status_code
        self.detail = detail


class NetworkUnavailable(CareCueError):
    """Connection failure or timeout talking to the remote service."""

    quiet = True


class RequestTimedOut(NetworkUnavailable):
    """A remote call exceeded its timeout."""


class NotFound(CareCueError):
    """The entity does not exist (anymore) on the remote service."""

    quiet = True


class DuplicateOccurrence(CareCueError):
    """An equivalent occurrence is already recorded."""


class Unauthorized(CareCueError):
    """The remote service rejected our credentials."""


class ServerError(CareCueError):
    """The remote service failed (5xx or an unexpected response)."""


class ValidationError(CareCueError):
    """Input rejected before reaching the remote service."""


def error_for_status(status_code: int, detail: Any = None) -> CareCueError:
    """Map an HTTP error status from the remote service to an error kind."""
    message = _detail_message(detail) or f"Remote service returned {status_code}"
    if status_code in (401, 403):
        return Unauthorized(message, status_code=status_code, detail=detail)
    if status_code in (404, 410):
        return NotFound(message, status_code=status_code, detail=detail)
    if status_code == 409:
        return DuplicateOccurrence(message, status_code=status_code, detail=detail)
    if status_code in (400, 422):
        return ValidationError(message, status_code=status_code, detail=detail)
    return ServerError(message, status_code=status_code, detail=detail)


def _detail_message(detail: Any) -> str | None:
    """Pull a human-readable message out of an error body."""
    if isinstance(detail, dict):
        for key in ("message", "error", "detail"):
            value = detail.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if isinstance(detail, str) and detail:
        return detail[:200]
    return None
