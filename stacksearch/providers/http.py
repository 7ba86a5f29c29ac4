from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx

from stacksearch.core.errors import ProviderUnavailableError, error_from_status


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    # Prefer the provider's own message; never echo request bodies (they carry secrets).
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or ""
    if isinstance(body, dict):
        for key in ("error_message", "message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase or ""


def raise_for_provider_status(response: httpx.Response, integration: str) -> None:
    if response.status_code < 400:
        return
    message = f"{integration} returned {response.status_code}: {_error_detail(response)}".rstrip(": ")
    raise error_from_status(response.status_code, message, retry_after_s=_retry_after(response))


async def send_translated(
    integration: str,
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    status_overrides: dict[int, Callable[[str], Exception]] | None = None,
) -> httpx.Response:
    # Transport failures become ProviderUnavailableError so retry policies can see them.
    try:
        response = await send()
    except httpx.TimeoutException as exc:
        raise ProviderUnavailableError(f"{integration} timed out") from exc
    except httpx.HTTPError as exc:
        raise ProviderUnavailableError(f"{integration} network error: {exc.__class__.__name__}") from exc
    override = (status_overrides or {}).get(response.status_code)
    if override is not None:
        raise override(f"{integration} returned {response.status_code}: {_error_detail(response)}")
    raise_for_provider_status(response, integration)
    return response


def json_body(response: httpx.Response, integration: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderUnavailableError(f"{integration} returned a non-JSON body") from exc
    if not isinstance(body, dict):
        raise ProviderUnavailableError(f"{integration} returned an unexpected payload")
    return body
