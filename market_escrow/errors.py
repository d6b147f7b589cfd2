from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    STATE = "state"
    PROVIDER = "provider"


class ErrorCode(str, Enum):
    # validation
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_RESOLUTION_MODE = "INVALID_RESOLUTION_MODE"
    INVALID_OUTCOME = "INVALID_OUTCOME"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    SELF_DEALING = "SELF_DEALING"
    LISTING_UNAVAILABLE = "LISTING_UNAVAILABLE"
    REPUTATION_TOO_LOW = "REPUTATION_TOO_LOW"
    # authorization
    FORBIDDEN = "FORBIDDEN"
    # not found
    ESCROW_NOT_FOUND = "ESCROW_NOT_FOUND"
    DISPUTE_NOT_FOUND = "DISPUTE_NOT_FOUND"
    LISTING_NOT_FOUND = "LISTING_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    # state
    INVALID_STATE = "INVALID_STATE"
    TRANSITION_IN_PROGRESS = "TRANSITION_IN_PROGRESS"
    DISPUTE_EXISTS = "DISPUTE_EXISTS"
    DISPUTE_ALREADY_RESOLVED = "DISPUTE_ALREADY_RESOLVED"
    # provider
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    PARTIAL_SPLIT = "PARTIAL_SPLIT"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]

    @property
    def http_status(self) -> int:
        if self is ErrorCode.INVALID_STATE:
            return 400
        return _HTTP_STATUS[self.category]


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.INVALID_AMOUNT: ErrorCategory.VALIDATION,
    ErrorCode.UNSUPPORTED_CURRENCY: ErrorCategory.VALIDATION,
    ErrorCode.MISSING_FIELD: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_RESOLUTION_MODE: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_OUTCOME: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_ARGUMENT: ErrorCategory.VALIDATION,
    ErrorCode.SELF_DEALING: ErrorCategory.VALIDATION,
    ErrorCode.LISTING_UNAVAILABLE: ErrorCategory.VALIDATION,
    ErrorCode.REPUTATION_TOO_LOW: ErrorCategory.VALIDATION,
    ErrorCode.FORBIDDEN: ErrorCategory.AUTHORIZATION,
    ErrorCode.ESCROW_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.DISPUTE_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.LISTING_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.USER_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.INVALID_STATE: ErrorCategory.STATE,
    ErrorCode.TRANSITION_IN_PROGRESS: ErrorCategory.STATE,
    ErrorCode.DISPUTE_EXISTS: ErrorCategory.STATE,
    ErrorCode.DISPUTE_ALREADY_RESOLVED: ErrorCategory.STATE,
    ErrorCode.PROVIDER_ERROR: ErrorCategory.PROVIDER,
    ErrorCode.PROVIDER_TIMEOUT: ErrorCategory.PROVIDER,
    ErrorCode.TRANSFER_PENDING: ErrorCategory.PROVIDER,
    ErrorCode.PARTIAL_SPLIT: ErrorCategory.PROVIDER,
}

_HTTP_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STATE: 409,
    ErrorCategory.PROVIDER: 500,
}


@dataclass(frozen=True)
class EngineError:
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory:
        return self.code.category


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an engine call: either a value or an ``EngineError``."""

    value: T | None = None
    error: EngineError | None = None

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, **details: Any) -> Result[T]:
        return cls(error=EngineError(code=code, message=message, details=details))

    def unwrap(self) -> T:
        if self.error is not None:
            raise ApiError(self.error)
        return self.value  # type: ignore[return-value]


class ApiError(Exception):
    def __init__(self, error: EngineError) -> None:
        super().__init__(error.message)
        self.error = error


def _failure(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": message,
                "request_id": getattr(request.state, "request_id", ""),
            },
        },
    )


_HTTP_EXCEPTION_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        err = exc.error
        if err.category is ErrorCategory.PROVIDER:
            # Provider internals stay in the logs; users get the code only.
            message = "Payment provider could not complete the transfer. Please retry later."
            if err.code is ErrorCode.PARTIAL_SPLIT:
                message = "Split settlement is partially complete and will be retried."
            elif err.code is ErrorCode.TRANSFER_PENDING:
                message = "Transfer is still pending with the payment provider."
            return _failure(request, err.code.http_status, err.code.value, message)
        return _failure(request, err.code.http_status, err.code.value, err.message)

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        code = _HTTP_EXCEPTION_CODES.get(exc.status_code, "ERROR")
        response = _failure(request, exc.status_code, code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg', 'invalid request')}" if loc else "Invalid request"
        return _failure(request, 422, "VALIDATION_ERROR", message)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _failure(request, 500, "INTERNAL_ERROR", "An unexpected error occurred")
