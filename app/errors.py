"""
Error taxonomy for the orchestration engine and the handlers that turn it
into a single JSON envelope.
"""
import logging
import time
import traceback
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    requestId: Optional[str] = None


class OrchestratorError(Exception):
    code = "ORCHESTRATOR_ERROR"
    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)


class ValidationError(OrchestratorError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthError(OrchestratorError):
    code = "UNAUTHORIZED"
    status_code = 401


class NotFoundError(OrchestratorError):
    code = "NOT_FOUND"
    status_code = 404


class IdempotencyConflictError(OrchestratorError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class IllegalTransitionError(OrchestratorError):
    code = "ILLEGAL_TRANSITION"
    status_code = 409


class CreationInProgressError(OrchestratorError):
    code = "CREATION_IN_PROGRESS"
    status_code = 409


class ProviderNotSelectableError(OrchestratorError):
    code = "PROVIDER_NOT_SELECTABLE"
    status_code = 422

    def __init__(self, provider: Optional[str], reason: str):
        self.provider = provider
        self.reason = reason
        label = provider or "AUTO"
        super().__init__(
            f"Provider {label} not selectable ({reason})",
            field="provider",
            context={"provider": provider, "reason": reason},
        )


class RerouteLimitError(OrchestratorError):
    code = "REROUTE_LIMIT_REACHED"
    status_code = 429


class RequestCancelledError(OrchestratorError):
    code = "REQUEST_CANCELLED"
    status_code = 499


class DownstreamProviderError(OrchestratorError):
    code = "DOWNSTREAM_PROVIDER_ERROR"
    status_code = 502

    def __init__(self, provider: str, error_type: str, message: str):
        self.provider = provider
        self.error_type = error_type
        super().__init__(message, context={"provider": provider, "errorType": error_type})


def create_error_response(
    code: str,
    message: str,
    status_code: int,
    field: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or None),
        timestamp=time.time(),
        requestId=request_id,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
    request_id = getattr(request.state, "request_id", None)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s: %s", exc.code, exc.message, extra={"request_id": request_id, "context": exc.context})
    return create_error_response(
        exc.code, exc.message, exc.status_code,
        field=exc.field, context=exc.context, request_id=request_id,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", None)
    first = exc.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", []) if loc != "body")
    message = first.get("msg", "Validation error")
    logger.warning("Validation error on %s: %s", field, message, extra={"request_id": request_id})
    return create_error_response(
        ValidationError.code,
        f"Validation error on field '{field}': {message}",
        400,
        field=field,
        request_id=request_id,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", None)
    status_to_code = {401: AuthError.code, 404: NotFoundError.code}
    return create_error_response(
        status_to_code.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        exc.status_code,
        request_id=request_id,
    )


async def general_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.error("Unexpected error: %s", exc, extra={
        "request_id": request_id,
        "traceback": traceback.format_exc(),
    })
    return create_error_response(
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred. Please try again later.",
        500,
        request_id=request_id,
    )


def add_error_handlers(app):
    app.add_exception_handler(OrchestratorError, orchestrator_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
