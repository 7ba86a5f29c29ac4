from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Protocol

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import (
    AuthenticationError,
    NoCredentialError,
    RefreshFailedError,
    RefreshRejectedError,
)
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import CredentialRecord, CredentialState, TokenBundle
from stacksearch.persistence.repos.credentials import CredentialStore
from stacksearch.services.resilience import best_effort
from stacksearch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class RefreshClient(Protocol):
    async def refresh(self, refresh_token: str) -> TokenBundle: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StackCredentialManager:
    """Single source of valid CMS access tokens per stack.

    Refreshes are single-flight per stack key: concurrent callers for an
    expiring credential wait on one lock and re-read the store after
    acquiring it, so exactly one refresh reaches the token endpoint and no
    caller ever sees a half-rotated token pair.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth: RefreshClient,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._settings = settings or get_settings()
        self._clock = clock or utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._refreshing: set[str] = set()

    @property
    def margin(self) -> timedelta:
        return timedelta(seconds=self._settings.credential_refresh_margin_s)

    def _lock_for(self, stack_api_key: str) -> asyncio.Lock:
        # setdefault keeps one lock per key even when two coroutines race to create it.
        return self._locks.setdefault(stack_api_key, asyncio.Lock())

    def _needs_refresh(self, record: CredentialRecord) -> bool:
        return record.expires_at <= self._clock() + self.margin

    def _reauthorization_required(self, stack_api_key: str) -> RefreshFailedError:
        return RefreshFailedError(
            f"credential for stack {mask_key(stack_api_key)} is inactive; re-authorization required"
        )

    async def get_valid_access_token(self, stack_api_key: str) -> str:
        record = await self._store.find(stack_api_key)
        if record is None:
            raise NoCredentialError(f"no credential stored for stack {mask_key(stack_api_key)}")
        # Inactive credentials are only retried by the scheduler inside the grace window.
        if not record.is_active:
            raise self._reauthorization_required(stack_api_key)
        if self._needs_refresh(record):
            record = await self._refresh_if_needed(stack_api_key, force=False)
        best_effort(self._store.mark_used(stack_api_key, self._clock()), name="credential_mark_used")
        return record.access_token

    async def save_or_update(self, stack_api_key: str, bundle: TokenBundle) -> CredentialRecord:
        now = self._clock()
        if bundle.expires_at is None:
            ttl = bundle.expires_in or self._settings.credential_default_ttl_s
            bundle = TokenBundle(
                access_token=bundle.access_token,
                refresh_token=bundle.refresh_token,
                expires_in=ttl,
                expires_at=now + timedelta(seconds=ttl),
                token_type=bundle.token_type,
                stack_api_key=bundle.stack_api_key,
                organization_uid=bundle.organization_uid,
            )
        async with self._lock_for(stack_api_key):
            record = await self._store.upsert(stack_api_key, bundle, now)
        logger.info("credential_saved stack=%s expires_at=%s", mask_key(stack_api_key), record.expires_at.isoformat())
        return record

    async def deactivate(self, stack_api_key: str, *, rejected: bool = False) -> bool:
        changed = await self._store.deactivate(stack_api_key, self._clock(), rejected=rejected)
        if changed:
            increment_counter("credential_deactivated_total")
            logger.warning("credential_deactivated stack=%s", mask_key(stack_api_key))
        return changed

    async def refresh(self, stack_api_key: str, *, force: bool = False) -> CredentialRecord:
        return await self._refresh_if_needed(stack_api_key, force=force)

    async def credential_state(self, stack_api_key: str) -> CredentialState:
        if stack_api_key in self._refreshing:
            return "refreshing"
        record = await self._store.find(stack_api_key)
        if record is None:
            return "missing"
        return "active" if record.is_active else "inactive"

    async def list_active(self) -> list[CredentialRecord]:
        return await self._store.list_active()

    async def _refresh_if_needed(self, stack_api_key: str, *, force: bool) -> CredentialRecord:
        observed = await self._store.find(stack_api_key)
        async with self._lock_for(stack_api_key):
            # Re-read under the lock: another caller may have refreshed while we waited.
            record = await self._store.find(stack_api_key)
            if record is None:
                raise NoCredentialError(f"no credential stored for stack {mask_key(stack_api_key)}")
            if record.refresh_rejected_at is not None:
                raise self._reauthorization_required(stack_api_key)
            # A concurrent refresh failed while we waited; its outcome stands.
            if observed is not None and observed.is_active and not record.is_active:
                raise self._reauthorization_required(stack_api_key)
            rotated = observed is not None and record.access_token != observed.access_token
            if rotated and record.is_active:
                return record
            if not force and not record.is_active:
                raise self._reauthorization_required(stack_api_key)
            if not force and not self._needs_refresh(record):
                return record
            return await self._do_refresh(record)

    async def _do_refresh(self, record: CredentialRecord) -> CredentialRecord:
        key = record.stack_api_key
        self._refreshing.add(key)
        try:
            try:
                bundle = await self._oauth.refresh(record.refresh_token)
            except RefreshRejectedError as exc:
                await self.deactivate(key, rejected=True)
                increment_counter("credential_refresh_failed_total")
                raise RefreshFailedError(
                    f"refresh token rejected for stack {mask_key(key)}; re-authorization required"
                ) from exc
            except AuthenticationError:
                await self.deactivate(key)
                increment_counter("credential_refresh_failed_total")
                raise
            # Transient failures propagate and leave the stored credential untouched.
            now = self._clock()
            ttl = bundle.expires_in or self._settings.credential_default_ttl_s
            rotated = TokenBundle(
                access_token=bundle.access_token,
                refresh_token=bundle.refresh_token or record.refresh_token,
                expires_in=ttl,
                expires_at=now + timedelta(seconds=ttl),
                token_type=bundle.token_type or record.token_type,
                organization_uid=bundle.organization_uid or record.organization_uid,
            )
            updated = await self._store.upsert(key, rotated, now)
            increment_counter("credential_refresh_total")
            logger.info("credential_refreshed stack=%s expires_at=%s", mask_key(key), updated.expires_at.isoformat())
            return updated
        finally:
            self._refreshing.discard(key)
