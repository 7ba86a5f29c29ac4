from __future__ import annotations

from typing import Any

from stacksearch.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Invalid input", "VALIDATION_FAILED", "query is required"),
    401: _response(
        "Stack must re-authorize the app",
        "STACK_REAUTH_REQUIRED",
        "Stack authorization is missing or expired",
    ),
    404: _response("Missing stack, entry or index", "NOT_FOUND", "Index not found"),
    429: _response(
        "Upstream provider rate limited the request",
        "RATE_LIMITED",
        "Provider rate limit reached",
        details={"retry_after_s": 2.0},
    ),
    503: _response("Upstream provider unavailable", "PROVIDER_UNAVAILABLE", "Embedding provider unavailable"),
}
