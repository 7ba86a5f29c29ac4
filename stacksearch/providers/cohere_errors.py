from __future__ import annotations

import httpx
from cohere.core.api_error import ApiError

from stacksearch.core.errors import ProviderUnavailableError, StackSearchError, error_from_status


def translate_cohere_error(exc: Exception, integration: str) -> Exception:
    # Map SDK and transport failures onto the shared taxonomy; already-mapped errors pass through.
    if isinstance(exc, StackSearchError):
        return exc
    if isinstance(exc, ApiError):
        status = exc.status_code or 500
        retry_after = None
        headers = getattr(exc, "headers", None) or {}
        raw = headers.get("retry-after") if hasattr(headers, "get") else None
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        return error_from_status(status, f"{integration} returned {status}", retry_after_s=retry_after)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderUnavailableError(f"{integration} timed out")
    if isinstance(exc, httpx.HTTPError):
        return ProviderUnavailableError(f"{integration} network error: {exc.__class__.__name__}")
    return exc
