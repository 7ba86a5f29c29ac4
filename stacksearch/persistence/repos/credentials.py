from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stacksearch.core.errors import DatabaseError
from stacksearch.domain.models import StackCredential
from stacksearch.domain.types import CredentialRecord, TokenBundle


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on round-trip; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_record(row: StackCredential) -> CredentialRecord:
    return CredentialRecord(
        stack_api_key=row.stack_api_key,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=as_utc(row.expires_at),
        is_active=bool(row.is_active),
        token_type=row.token_type or "Bearer",
        organization_uid=row.organization_uid,
        last_used_at=as_utc(row.last_used_at),
        deactivated_at=as_utc(row.deactivated_at),
        created_at=as_utc(row.created_at),
        refresh_rejected_at=as_utc(row.refresh_rejected_at),
    )


async def get_credential(session: AsyncSession, stack_api_key: str) -> StackCredential | None:
    result = await session.execute(
        select(StackCredential).where(StackCredential.stack_api_key == stack_api_key)
    )
    return result.scalar_one_or_none()


async def upsert_credential(
    session: AsyncSession,
    *,
    stack_api_key: str,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    now: datetime,
    token_type: str = "Bearer",
    organization_uid: str | None = None,
) -> StackCredential:
    # One row per stack; a new handshake or refresh reactivates it in place.
    row = await get_credential(session, stack_api_key)
    if row is None:
        row = StackCredential(
            id=uuid4().hex,
            stack_api_key=stack_api_key,
            created_at=now,
        )
        session.add(row)
    row.access_token = access_token
    row.refresh_token = refresh_token
    row.expires_at = expires_at
    row.token_type = token_type or "Bearer"
    if organization_uid:
        row.organization_uid = organization_uid
    row.is_active = True
    row.deactivated_at = None
    row.refresh_rejected_at = None
    row.updated_at = now
    return row


async def touch_credential(session: AsyncSession, stack_api_key: str, now: datetime) -> None:
    row = await get_credential(session, stack_api_key)
    if row is None:
        return
    row.last_used_at = now


async def deactivate_credential(
    session: AsyncSession, stack_api_key: str, now: datetime, *, rejected: bool = False
) -> bool:
    # Returns True only when the row transitioned; a rejection is still recorded on an inactive row.
    row = await get_credential(session, stack_api_key)
    if row is None:
        return False
    if rejected and row.refresh_rejected_at is None:
        row.refresh_rejected_at = now
    if not row.is_active:
        return False
    row.is_active = False
    row.deactivated_at = now
    row.updated_at = now
    return True


async def list_refresh_candidates(
    session: AsyncSession, *, margin_cutoff: datetime, grace_cutoff: datetime
) -> list[StackCredential]:
    # Active rows about to expire plus recently failed rows still inside the grace window.
    # A rejected refresh token is terminal and never retried.
    stmt = (
        select(StackCredential)
        .where(
            or_(
                and_(StackCredential.is_active.is_(True), StackCredential.expires_at <= margin_cutoff),
                and_(
                    StackCredential.is_active.is_(False),
                    StackCredential.refresh_rejected_at.is_(None),
                    StackCredential.expires_at >= grace_cutoff,
                ),
            )
        )
        .order_by(StackCredential.expires_at, StackCredential.stack_api_key)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_credentials(session: AsyncSession) -> list[StackCredential]:
    result = await session.execute(
        select(StackCredential)
        .where(StackCredential.is_active.is_(True))
        .order_by(StackCredential.stack_api_key)
    )
    return list(result.scalars().all())


async def purge_inactive_credentials(session: AsyncSession, before: datetime) -> int:
    # Rows without deactivated_at fall back to updated_at so legacy rows still age out.
    stmt = delete(StackCredential).where(
        StackCredential.is_active.is_(False),
        or_(
            StackCredential.deactivated_at < before,
            and_(StackCredential.deactivated_at.is_(None), StackCredential.updated_at < before),
        ),
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


class CredentialStore:
    """Durable credential storage scoped to one session factory.

    Every method opens its own short transaction and returns detached
    ``CredentialRecord`` values so callers can hold them across awaits.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find(self, stack_api_key: str) -> CredentialRecord | None:
        try:
            async with self._session_factory() as session:
                row = await get_credential(session, stack_api_key)
                return to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise DatabaseError("credential lookup failed") from exc

    async def upsert(self, stack_api_key: str, bundle: TokenBundle, now: datetime) -> CredentialRecord:
        if bundle.expires_at is None:
            raise ValueError("bundle.expires_at is required for persistence")
        if not bundle.refresh_token:
            raise ValueError("bundle.refresh_token is required for persistence")
        try:
            async with self._session_factory() as session:
                row = await upsert_credential(
                    session,
                    stack_api_key=stack_api_key,
                    access_token=bundle.access_token,
                    refresh_token=bundle.refresh_token,
                    expires_at=bundle.expires_at,
                    now=now,
                    token_type=bundle.token_type,
                    organization_uid=bundle.organization_uid,
                )
                await session.commit()
                return to_record(row)
        except SQLAlchemyError as exc:
            raise DatabaseError("credential upsert failed") from exc

    async def mark_used(self, stack_api_key: str, now: datetime) -> None:
        try:
            async with self._session_factory() as session:
                await touch_credential(session, stack_api_key, now)
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError("credential touch failed") from exc

    async def deactivate(self, stack_api_key: str, now: datetime, *, rejected: bool = False) -> bool:
        try:
            async with self._session_factory() as session:
                changed = await deactivate_credential(session, stack_api_key, now, rejected=rejected)
                await session.commit()
                return changed
        except SQLAlchemyError as exc:
            raise DatabaseError("credential deactivate failed") from exc

    async def list_refresh_candidates(
        self, *, margin_cutoff: datetime, grace_cutoff: datetime
    ) -> list[CredentialRecord]:
        try:
            async with self._session_factory() as session:
                rows = await list_refresh_candidates(
                    session, margin_cutoff=margin_cutoff, grace_cutoff=grace_cutoff
                )
                return [to_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise DatabaseError("credential candidate query failed") from exc

    async def list_active(self) -> list[CredentialRecord]:
        try:
            async with self._session_factory() as session:
                return [to_record(row) for row in await list_active_credentials(session)]
        except SQLAlchemyError as exc:
            raise DatabaseError("credential listing failed") from exc

    async def purge_inactive(self, before: datetime) -> int:
        try:
            async with self._session_factory() as session:
                removed = await purge_inactive_credentials(session, before)
                await session.commit()
                return removed
        except SQLAlchemyError as exc:
            raise DatabaseError("credential purge failed") from exc
