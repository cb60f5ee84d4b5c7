from __future__ import annotations

import json
from typing import Any, List, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from starterauth.api.schemas import ApiErrorBody, ApiErrorMeta
from starterauth.logging import get_logger, sanitize_error_message, sanitize_request_data
from starterauth.service.errors import ErrorCodes, Failure, ServiceError
from starterauth.service.messages import MessageResolver
from starterauth.service.runtime import get_runtime
from starterauth.storage.errors import ConstraintViolation, RecordNotFound

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCodes.VALIDATION.INVALID_REQUEST,
    401: ErrorCodes.AUTH.UNAUTHORIZED,
    403: ErrorCodes.AUTH.FORBIDDEN,
    404: ErrorCodes.SYSTEM.NOT_FOUND,
    429: ErrorCodes.AUTH.RATE_LIMIT_EXCEEDED,
}


class ApiException(Exception):
    """Carries a service :class:`Failure` out of a route to the handlers."""

    def __init__(self, failure: Failure, *, headers: Optional[Mapping[str, str]] = None):
        super().__init__(failure.code)
        self.failure = failure
        self.headers = dict(headers or {})


def build_api_error(
    messages: MessageResolver,
    code: str,
    status: int,
    accept_language: Optional[str],
    *,
    params: Optional[Mapping[str, Any]] = None,
    errors: Optional[List[str]] = None,
) -> ApiErrorBody:
    language = messages.parse_accept_language(accept_language)
    return ApiErrorBody(
        code=code,
        message=messages.resolve_for_language(code, language, params),
        status=status,
        meta=ApiErrorMeta(language=language, errors=errors),
    )


def _error_response(
    request: Request,
    code: str,
    status: int,
    *,
    params: Optional[Mapping[str, Any]] = None,
    errors: Optional[List[str]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body = build_api_error(
        get_runtime().messages,
        code,
        status,
        request.headers.get("accept-language"),
        params=params,
        errors=errors,
    )
    return JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        headers=dict(headers) if headers else None,
    )


def _format_validation_errors(errors: List[Mapping[str, Any]]) -> List[str]:
    formatted = []
    for err in errors:
        location = [str(part) for part in err.get("loc", ()) if part not in {"body", "query", "path"}]
        field = ".".join(location)
        message = err.get("msg", "invalid value")
        formatted.append(f"{field}: {message}" if field else message)
    return formatted


def _validation_code(errors: List[Mapping[str, Any]]) -> str:
    """Prefer a specific ``VALIDATION.*`` code raised by a field validator."""
    for err in errors:
        error_type = str(err.get("type", ""))
        if error_type.startswith("VALIDATION."):
            return error_type
    return ErrorCodes.VALIDATION.FAILED


async def _read_body(request: Request) -> Any:
    try:
        raw = await request.body()
    except (RuntimeError, ClientDisconnect):
        # the body stream is gone once the route has consumed it
        return None
    if not raw:
        return None
    try:
        return sanitize_request_data(json.loads(raw))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return "<non-json body>"


def register_exception_handlers(app: FastAPI) -> None:
    """Map every failure to the ``{code, message, status, meta}`` error body."""

    @app.exception_handler(ApiException)
    async def handle_api_exception(request: Request, exc: ApiException):
        failure = exc.failure
        log_fn = logger.error if failure.status >= 500 else logger.warning
        log_fn(
            "api_error",
            path=request.url.path,
            method=request.method,
            status_code=failure.status,
            error_code=failure.code,
        )
        return _error_response(
            request, failure.code, failure.status, params=failure.params, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = list(exc.errors())
        code = _validation_code(errors)
        formatted = _format_validation_errors(errors)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_code=code,
            validation_errors=formatted,
            body=sanitize_request_data(exc.body),
        )
        return _error_response(request, code, 400, errors=formatted)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            request,
            ErrorCodes.DATABASE.UNIQUE_CONSTRAINT_VIOLATION,
            409,
            params={"field": exc.detail.get("field", "value")},
        )

    @app.exception_handler(RecordNotFound)
    async def handle_record_not_found(request: Request, exc: RecordNotFound):
        logger.warning(
            "record_not_found",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            request,
            ErrorCodes.DATABASE.RECORD_NOT_FOUND,
            404,
            params={"id": exc.detail.get("id", "")},
        )

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
        failure = exc.to_failure()
        return _error_response(request, failure.code, failure.status, params=failure.params)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = _STATUS_TO_CODE.get(exc.status_code)
        if code is None:
            code = ErrorCodes.SYSTEM.UNKNOWN_ERROR if exc.status_code >= 500 else ErrorCodes.VALIDATION.INVALID_REQUEST
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=str(exc.detail),
            )
        elif exc.status_code != 404:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=str(exc.detail),
            )
        return _error_response(request, code, exc.status_code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            body=await _read_body(request),
            status_code=500,
            error_code=ErrorCodes.SYSTEM.UNKNOWN_ERROR,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(request, ErrorCodes.SYSTEM.UNKNOWN_ERROR, 500)
