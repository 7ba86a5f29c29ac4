from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stacksearch.apps.api.response import API_VERSION, error_response, is_versioned_request
from stacksearch.core.errors import (
    AuthenticationError,
    DatabaseError,
    IndexProvisionTimeoutError,
    InputValidationError,
    IntegrationUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ProviderUnavailableError,
    RateLimitedError,
    StackSearchError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[StackSearchError], int, str], ...] = (
    (AuthenticationError, 401, "STACK_REAUTH_REQUIRED"),
    (PermissionDeniedError, 403, "STACK_PERMISSION_DENIED"),
    (InputValidationError, 400, "VALIDATION_FAILED"),
    (NotFoundError, 404, "NOT_FOUND"),
    (RateLimitedError, 429, "RATE_LIMITED"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (IndexProvisionTimeoutError, 503, "INDEX_PROVISIONING"),
    (ProviderUnavailableError, 503, "PROVIDER_UNAVAILABLE"),
    (DatabaseError, 503, "DATABASE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_domain_error(exc: StackSearchError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


def _http_error(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _http_error(request, exc)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routing 404s and 405s raised by Starlette itself.
    return _http_error(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: StackSearchError) -> JSONResponse:
    status_code, code = classify_domain_error(exc)
    headers: dict[str, str] | None = None
    details: dict[str, Any] | None = None
    if isinstance(exc, RateLimitedError) and exc.retry_after_s is not None:
        headers = {"Retry-After": str(max(1, int(exc.retry_after_s)))}
        details = {"retry_after_s": exc.retry_after_s}
    elif isinstance(exc, AuthenticationError):
        # The only recovery is installing the app on the stack again.
        details = {"reauthorize_url": f"/{API_VERSION}/oauth/authorize"}
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    message = str(exc) or code
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": code, "message": message}}, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces stay in the server log.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
