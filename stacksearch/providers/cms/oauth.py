from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import InputValidationError, ProviderUnavailableError, RefreshRejectedError
from stacksearch.domain.types import TokenBundle
from stacksearch.providers.http import json_body, send_translated
from stacksearch.services.resilience import CircuitBreaker, call_external


logger = logging.getLogger(__name__)

INTEGRATION = "cms.oauth"


def parse_token_response(
    payload: dict[str, Any],
    *,
    now: datetime,
    default_ttl_s: int,
    previous_refresh_token: str | None = None,
) -> TokenBundle:
    # Shared by both grants; a refresh response may omit refresh_token and expires_in.
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ProviderUnavailableError("token endpoint response is missing access_token")
    expires_in = payload.get("expires_in")
    try:
        ttl_s = int(expires_in) if expires_in is not None else default_ttl_s
    except (TypeError, ValueError):
        ttl_s = default_ttl_s
    return TokenBundle(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or previous_refresh_token,
        expires_in=ttl_s,
        expires_at=now + timedelta(seconds=ttl_s),
        token_type=payload.get("token_type") or "Bearer",
        stack_api_key=payload.get("stack_api_key"),
        organization_uid=payload.get("organization_uid"),
    )


class ContentstackOAuthClient:
    """Token endpoint client for the authorization-code and refresh grants."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Injected clients let tests use httpx.MockTransport.
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.cms_timeout_s)
        self._owns_http = http_client is None
        self._breaker = breaker

    @property
    def refresh_url(self) -> str:
        base = self._settings.cms_api_base_url.rstrip("/")
        if base.endswith("/v3"):
            base = base[: -len("/v3")]
        return f"{base}/oauth/token"

    def authorize_url(self, state: str | None = None) -> str:
        if not self._settings.cms_client_id or not self._settings.cms_app_uid:
            raise InputValidationError("OAuth app is not configured")
        params = {
            "response_type": "code",
            "client_id": self._settings.cms_client_id,
        }
        if self._settings.cms_redirect_uri:
            params["redirect_uri"] = self._settings.cms_redirect_uri
        if state:
            params["state"] = state
        base = self._settings.cms_app_base_url.rstrip("/")
        return f"{base}/#!/apps/{self._settings.cms_app_uid}/authorize?{urlencode(params)}"

    def _client_credentials(self) -> tuple[str, str]:
        client_id = self._settings.cms_client_id
        client_secret = self._settings.cms_client_secret
        if not client_id or not client_secret:
            raise InputValidationError("OAuth client credentials are not configured")
        return client_id, client_secret

    async def exchange_code(self, code: str) -> TokenBundle:
        if not code:
            raise InputValidationError("authorization code is required")
        client_id, client_secret = self._client_credentials()
        form = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
        }
        if self._settings.cms_redirect_uri:
            form["redirect_uri"] = self._settings.cms_redirect_uri

        async def _call() -> httpx.Response:
            return await send_translated(
                INTEGRATION,
                lambda: self._http.post(self._settings.cms_oauth_token_url, data=form),
            )

        response = await call_external(INTEGRATION, _call, breaker=self._breaker)
        bundle = parse_token_response(
            json_body(response, INTEGRATION),
            now=datetime.now(timezone.utc),
            default_ttl_s=self._settings.credential_default_ttl_s,
        )
        if not bundle.stack_api_key:
            raise ProviderUnavailableError("token endpoint response is missing stack_api_key")
        if not bundle.refresh_token:
            raise ProviderUnavailableError("token endpoint response is missing refresh_token")
        logger.info("oauth_code_exchanged organization_uid=%s", bundle.organization_uid or "-")
        return bundle

    async def refresh(self, refresh_token: str) -> TokenBundle:
        client_id, client_secret = self._client_credentials()
        body = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }

        async def _call() -> httpx.Response:
            return await send_translated(
                INTEGRATION,
                lambda: self._http.post(self.refresh_url, json=body),
                # 400/401 on the refresh grant means the refresh token itself is dead.
                status_overrides={400: RefreshRejectedError, 401: RefreshRejectedError},
            )

        response = await call_external(INTEGRATION, _call, breaker=self._breaker)
        return parse_token_response(
            json_body(response, INTEGRATION),
            now=datetime.now(timezone.utc),
            default_ttl_s=self._settings.credential_default_ttl_s,
            previous_refresh_token=refresh_token,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
