# app/core/errors.py
"""
Domain errors raised by the dispatch, presence and alert services.

Each error carries the HTTP status the API layer renders it with, so routers
never translate them individually (see the handler registered in app.main).
"""
from fastapi import status


class DispatchError(Exception):
    kind: str = "DispatchError"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind


class NotFound(DispatchError):
    """Unknown id, or an id the caller does not own (existence is not leaked)."""
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(DispatchError):
    kind = "Forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidState(DispatchError):
    kind = "InvalidState"
    status_code = status.HTTP_409_CONFLICT


class Expired(DispatchError):
    kind = "Expired"
    status_code = status.HTTP_410_GONE


class TransientStoreFailure(DispatchError):
    """Store timeout or unresolved write conflict; the whole operation may be retried."""
    kind = "TransientStoreFailure"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AlreadyExists(DispatchError):
    kind = "AlreadyExists"
    status_code = status.HTTP_409_CONFLICT


class InvalidPayload(DispatchError):
    kind = "InvalidPayload"
    status_code = 422
