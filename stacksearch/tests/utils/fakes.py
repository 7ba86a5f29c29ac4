from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import itertools
import json
import re
from typing import Any

import httpx

from stacksearch.domain.types import TokenBundle


_ENTRY_RE = re.compile(r"^/v3/content_types/([^/]+)/entries/([^/]+)$")
_ENTRIES_RE = re.compile(r"^/v3/content_types/([^/]+)/entries$")
_ASSET_RE = re.compile(r"^/v3/assets/([^/]+)$")


def _json(status_code: int, payload: dict[str, Any]) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


class FakeCms:
    """In-process CMS content API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.entries: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.assets: dict[str, list[dict[str, Any]]] = {}
        self.valid_tokens: dict[str, set[str]] = {}
        self.failing_content_types: set[str] = set()
        self.failing_entry_fetches: set[str] = set()
        self.forbidden_entries: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_entry(self, stack_api_key: str, content_type: str, entry: dict[str, Any]) -> None:
        self.entries.setdefault(stack_api_key, {}).setdefault(content_type, []).append(entry)

    def remove_entry(self, stack_api_key: str, content_type: str, uid: str) -> None:
        items = self.entries.get(stack_api_key, {}).get(content_type, [])
        self.entries[stack_api_key][content_type] = [item for item in items if item.get("uid") != uid]

    def add_asset(self, stack_api_key: str, asset: dict[str, Any]) -> None:
        self.assets.setdefault(stack_api_key, []).append(asset)

    def grant(self, stack_api_key: str, access_token: str) -> None:
        self.valid_tokens.setdefault(stack_api_key, set()).add(access_token)

    def revoke(self, stack_api_key: str) -> None:
        self.valid_tokens[stack_api_key] = set()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = request.headers.get("api_key", "")
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens.get(key, set()):
            return _json(401, {"error_message": "The access token is invalid"})
        path = request.url.path
        stack = self.entries.get(key, {})
        if path == "/v3/content_types":
            types = [{"uid": uid, "title": uid.title()} for uid in stack]
            return _json(200, {"content_types": types, "count": len(types)})
        match = _ENTRIES_RE.match(path)
        if match:
            content_type = match.group(1)
            if content_type in self.failing_content_types:
                return _json(500, {"error_message": "internal error"})
            items = stack.get(content_type, [])
            skip = int(request.url.params.get("skip", 0))
            limit = int(request.url.params.get("limit", 100))
            return _json(200, {"entries": items[skip : skip + limit], "count": len(items)})
        match = _ENTRY_RE.match(path)
        if match:
            content_type, uid = match.groups()
            if uid in self.failing_entry_fetches:
                return _json(503, {"error_message": "unavailable"})
            if uid in self.forbidden_entries:
                return _json(403, {"error_message": "You are not allowed to access this entry"})
            for item in stack.get(content_type, []):
                if item.get("uid") == uid:
                    return _json(200, {"entry": item})
            return _json(404, {"error_message": "Entry was not found"})
        if path == "/v3/assets":
            items = self.assets.get(key, [])
            return _json(200, {"assets": items, "count": len(items)})
        match = _ASSET_RE.match(path)
        if match:
            for item in self.assets.get(key, []):
                if item.get("uid") == match.group(1):
                    return _json(200, {"asset": item})
            return _json(404, {"error_message": "Asset was not found"})
        return _json(404, {"error_message": "not found"})


class FakeTokenEndpoint:
    """OAuth token endpoint for both grants; new access tokens are granted on the FakeCms."""

    def __init__(self, cms: FakeCms, *, delay_s: float = 0.0) -> None:
        self._cms = cms
        self._counter = itertools.count(1)
        self.delay_s = delay_s
        self.refresh_calls = 0
        self.code_exchanges = 0
        self.rejected_refresh_tokens: set[str] = set()
        self.unavailable = False
        self._owners: dict[str, str] = {}
        self.codes: dict[str, str] = {}

    def issue(self, stack_api_key: str) -> dict[str, Any]:
        serial = next(self._counter)
        access_token = f"access-{stack_api_key}-{serial}"
        refresh_token = f"refresh-{stack_api_key}-{serial}"
        self._owners[refresh_token] = stack_api_key
        self._cms.grant(stack_api_key, access_token)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "Bearer",
            "expires_in": 3600,
            "stack_api_key": stack_api_key,
            "organization_uid": "org-1",
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.unavailable:
            return _json(503, {"error": "temporarily_unavailable"})
        if request.url.path.endswith("/oauth/token"):
            body = json.loads(request.content or b"{}")
            self.refresh_calls += 1
            refresh_token = body.get("refresh_token", "")
            owner = self._owners.get(refresh_token)
            if owner is None or refresh_token in self.rejected_refresh_tokens:
                return _json(400, {"error": "invalid_grant", "error_description": "refresh token is invalid"})
            return _json(200, self.issue(owner))
        form = dict(httpx.QueryParams(request.content.decode("utf-8")))
        self.code_exchanges += 1
        stack_api_key = self.codes.get(form.get("code", ""))
        if stack_api_key is None:
            return _json(400, {"error": "invalid_grant"})
        return _json(200, self.issue(stack_api_key))


async def install_stack(container, token_endpoint: FakeTokenEndpoint, stack_api_key: str, *, expires_in_s: int = 3600):
    # Store a credential whose tokens the FakeCms accepts, as the OAuth callback would.
    issued = token_endpoint.issue(stack_api_key)
    bundle = TokenBundle(
        access_token=issued["access_token"],
        refresh_token=issued["refresh_token"],
        expires_in=expires_in_s,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in_s),
        stack_api_key=stack_api_key,
    )
    return await container.credentials.save_or_update(stack_api_key, bundle)


def product(uid: str, title: str, description: str, **extra: Any) -> dict[str, Any]:
    entry = {
        "uid": uid,
        "title": title,
        "description": description,
        "locale": "en-us",
        "_version": 1,
        "created_at": "2024-05-01T10:00:00.000Z",
        "updated_at": "2024-05-02T10:00:00.000Z",
    }
    entry.update(extra)
    return entry
