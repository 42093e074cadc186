from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sessionguard.api.schemas import Envelope, ErrorBody
from sessionguard.logging import get_logger
from sessionguard.service.errors import ServiceError
from sessionguard.service.results import ErrorKind, Result
from sessionguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "locked",
    500: "server_error",
    502: "bad_gateway",
}

KIND_TO_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.TOKEN_MISSING: 401,
    ErrorKind.TOKEN_NOT_FOUND: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALIDATED: 401,
    ErrorKind.TOKEN_REUSED: 401,
    ErrorKind.CHALLENGE_NOT_FOUND: 401,
    ErrorKind.CHALLENGE_EXPIRED: 401,
    ErrorKind.CHALLENGE_LOCKED: 401,
    ErrorKind.INVALID_CODE: 401,
    ErrorKind.PROVIDER_EXCHANGE_FAILED: 502,
    ErrorKind.NO_USABLE_EMAIL: 422,
    ErrorKind.VALIDATION: 400,
    ErrorKind.PROVIDER_NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.STATE_EXPIRED: 400,
    ErrorKind.ALREADY_LINKED: 409,
    ErrorKind.EMAIL_NOT_VERIFIED: 403,
    ErrorKind.TWO_FACTOR_NOT_ENABLED: 400,
    ErrorKind.TWO_FACTOR_ALREADY_ENABLED: 409,
}

# Reuse must not be distinguishable from expiry in the response body
_PUBLIC_CODE = {
    ErrorKind.TOKEN_REUSED: ErrorKind.TOKEN_EXPIRED.value,
    ErrorKind.TOKEN_INVALIDATED: ErrorKind.TOKEN_EXPIRED.value,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def status_for(kind: ErrorKind) -> int:
    return KIND_TO_STATUS.get(kind, 400)


def result_response(result: Result) -> JSONResponse:
    """Render a failed ``Result`` as the error envelope."""
    kind = result.error
    code = _PUBLIC_CODE.get(kind, kind.value)
    return _error_response(status_for(kind), result.message, code=code)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for boundary faults, storage conflicts and HTTP errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("request_validation_error", path=request.url.path, method=request.method)
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
        ]
        return _error_response(400, "The request is invalid.", details, code="validation")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_client_error" if exc.status_code < 500 else "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
            )
            response = _error_response(exc.status_code, message, error_obj.get("details"), code=code)
        else:
            response = _error_response(exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
