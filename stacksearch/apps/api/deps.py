from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from stacksearch.core.config import get_settings
from stacksearch.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting"},
        )
    return container


def get_stack_api_key(x_stack_api_key: str | None = Header(default=None)) -> str:
    # Every tenant-scoped route is keyed by the stack; no key means no tenant.
    if not x_stack_api_key or not x_stack_api_key.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "STACK_KEY_REQUIRED", "message": "X-Stack-Api-Key header is required"},
        )
    return x_stack_api_key.strip()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def require_admin(authorization: str | None = Header(default=None)) -> None:
    expected = get_settings().admin_api_token
    if not expected:
        return
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid admin token"},
            headers={"WWW-Authenticate": "Bearer"},
        )


def client_context(request: Request) -> dict[str, str | None]:
    # Recorded on search logs; never used for authorization.
    return {
        "user_agent": request.headers.get("User-Agent"),
        "ip_address": request.client.host if request.client else None,
    }


AdminGuard = Depends(require_admin)
