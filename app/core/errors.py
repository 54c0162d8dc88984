"""
Error taxonomy for Casa Agent Core.

Business-rule rejections (unknown category, illegal transition, ...) are
returned as OperationResult failures and never raised past a service
boundary. Store failures are caught at the same boundary and surfaced as
STORE_FAILURE with the driver message: writes return it in their
OperationResult, reads raise StoreFailureError carrying it. Apart from that,
the only exception a service raises on purpose is NotAuthenticatedError,
which fires before any store access.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Iterator, Optional, TypeVar

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureReason(str, Enum):
    """Named reasons an operation can be rejected."""
    INVALID_CATEGORY = "invalid_category"
    INVALID_LEVEL = "invalid_level"
    INVALID_PRESET = "invalid_preset"
    INVALID_PRIORITY = "invalid_priority"
    INVALID_STATUS = "invalid_status"
    ILLEGAL_TRANSITION = "illegal_transition"
    TASK_PAUSED = "task_paused"
    TASK_NOT_FOUND = "task_not_found"
    PENDING_ACTION_NOT_FOUND = "pending_action_not_found"
    NOT_ELIGIBLE = "not_eligible"
    STORE_FAILURE = "store_failure"


# HTTP status used when a failure reaches the API layer
FAILURE_STATUS_CODES: dict[FailureReason, int] = {
    FailureReason.INVALID_CATEGORY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.INVALID_LEVEL: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.INVALID_PRESET: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.INVALID_PRIORITY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.INVALID_STATUS: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.ILLEGAL_TRANSITION: status.HTTP_409_CONFLICT,
    FailureReason.TASK_PAUSED: status.HTTP_409_CONFLICT,
    FailureReason.NOT_ELIGIBLE: status.HTTP_409_CONFLICT,
    FailureReason.TASK_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureReason.PENDING_ACTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureReason.STORE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class NotAuthenticatedError(Exception):
    """Raised when an operation is invoked without a caller identity."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)
        self.message = message


def require_user_id(user_id: Optional[str]) -> str:
    """Reject a missing caller identity before any store access."""
    if not user_id:
        raise NotAuthenticatedError()
    return user_id


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Outcome of a state-changing operation.

    ok=True carries the resulting value; ok=False carries a named reason and
    a human-readable message, and guarantees nothing was written.
    """
    ok: bool
    value: Optional[T] = None
    reason: Optional[FailureReason] = None
    message: str = ""

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: FailureReason, message: str = "") -> "OperationResult[T]":
        return cls(ok=False, reason=reason, message=message or reason.value.replace("_", " "))

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.reason.value if self.reason else None, "message": self.message}

    @property
    def status_code(self) -> int:
        if self.ok or self.reason is None:
            return status.HTTP_200_OK
        return FAILURE_STATUS_CODES.get(self.reason, status.HTTP_400_BAD_REQUEST)


class StoreFailureError(Exception):
    """
    A read could not reach the store.

    Reads return plain values rather than OperationResult, so they raise
    this instead; the API layer turns it into the same 503 body a failed
    write produces.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_result(self) -> OperationResult:
        return OperationResult.failure(FailureReason.STORE_FAILURE, self.message)


@contextmanager
def store_read(operation: str) -> Iterator[None]:
    """Wrap a read so driver errors surface as StoreFailureError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.warning("Store read failed (%s): %s", operation, e)
        raise StoreFailureError(str(e)) from e


def raise_for_failure(result: OperationResult) -> None:
    """Turn a failed OperationResult into the matching HTTPException."""
    if not result.ok:
        raise HTTPException(status_code=result.status_code, detail=result.to_dict())


def setup_exception_handlers(app: FastAPI) -> None:
    """Register JSON exception handlers on the app."""

    @app.exception_handler(NotAuthenticatedError)
    async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "auth_required", "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(StoreFailureError)
    async def store_failure_handler(request: Request, exc: StoreFailureError):
        result = exc.to_result()
        return JSONResponse(status_code=result.status_code, content={"detail": result.to_dict()})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_error", "message": "An unexpected error occurred"},
        )
