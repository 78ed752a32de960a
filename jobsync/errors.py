"""
Error kinds raised by the notification and activity-ledger services.

Services raise these; `register_exception_handlers` maps them to HTTP
responses so route handlers stay free of translation boilerplate.
"""
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class JobSyncError(Exception):
    """Base class for engine errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, entity_type: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = str(entity_id) if entity_id is not None else None

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


class NotFoundError(JobSyncError):
    """A job, task, team, vendor or worker row does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class UnresolvedRecipientError(JobSyncError):
    """The assignment points somewhere, but no user account can be notified."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class DuplicateSuppressed(JobSyncError):
    """An idempotency guard fired. Callers treat this as a no-op success."""

    status_code = status.HTTP_200_OK


class PermissionDeniedError(JobSyncError):
    """The actor is outside the company scope of the entity."""

    status_code = status.HTTP_403_FORBIDDEN


class TransportError(JobSyncError):
    """A realtime subscription was dropped; the consumer must re-fetch."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class LedgerImmutableError(JobSyncError):
    """Something other than `is_read` was changed on a ledger record."""

    status_code = status.HTTP_409_CONFLICT


def _handle(request: Request, exc: JobSyncError) -> JSONResponse:
    body = exc.to_dict()
    if isinstance(exc, UnresolvedRecipientError):
        body["detail"] = f"cannot notify: {exc.message}"
    return JSONResponse(status_code=exc.status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    for exc_type in (
        NotFoundError,
        UnresolvedRecipientError,
        PermissionDeniedError,
        TransportError,
        LedgerImmutableError,
    ):
        app.add_exception_handler(exc_type, _handle)
