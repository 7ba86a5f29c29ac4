from __future__ import annotations

from datetime import datetime
from typing import Iterable, Mapping
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stacksearch.core.errors import DatabaseError
from stacksearch.domain.models import FieldPatternOverride


# content_type -> category -> patterns, in insertion order.
StackOverrides = dict[str, dict[str, list[str]]]


async def list_overrides(
    session: AsyncSession, stack_api_key: str, content_type: str | None = None
) -> list[FieldPatternOverride]:
    stmt = select(FieldPatternOverride).where(FieldPatternOverride.stack_api_key == stack_api_key)
    if content_type is not None:
        stmt = stmt.where(FieldPatternOverride.content_type == content_type)
    stmt = stmt.order_by(FieldPatternOverride.content_type, FieldPatternOverride.created_at, FieldPatternOverride.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def add_overrides(
    session: AsyncSession,
    *,
    stack_api_key: str,
    content_type: str,
    overrides: Mapping[str, Iterable[str]],
    now: datetime,
) -> int:
    # Patterns already stored for the stack are skipped; returns the number of new rows.
    existing = {
        (row.category, row.pattern)
        for row in await list_overrides(session, stack_api_key, content_type)
    }
    added = 0
    for category, patterns in overrides.items():
        for pattern in patterns:
            if (category, pattern) in existing:
                continue
            existing.add((category, pattern))
            session.add(
                FieldPatternOverride(
                    id=uuid4().hex,
                    stack_api_key=stack_api_key,
                    content_type=content_type,
                    category=category,
                    pattern=pattern,
                    created_at=now,
                )
            )
            added += 1
    return added


async def delete_overrides(session: AsyncSession, stack_api_key: str, content_type: str) -> int:
    result = await session.execute(
        delete(FieldPatternOverride).where(
            FieldPatternOverride.stack_api_key == stack_api_key,
            FieldPatternOverride.content_type == content_type,
        )
    )
    return int(result.rowcount or 0)


def group_overrides(rows: Iterable[FieldPatternOverride]) -> StackOverrides:
    grouped: StackOverrides = {}
    for row in rows:
        grouped.setdefault(row.content_type, {}).setdefault(row.category, []).append(row.pattern)
    return grouped


class FieldPatternStore:
    """Per-stack field-pattern overrides; every read and write is scoped to one stack key."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self, stack_api_key: str) -> StackOverrides:
        try:
            async with self._session_factory() as session:
                return group_overrides(await list_overrides(session, stack_api_key))
        except SQLAlchemyError as exc:
            raise DatabaseError("field pattern lookup failed") from exc

    async def add(
        self,
        stack_api_key: str,
        content_type: str,
        overrides: Mapping[str, Iterable[str]],
        now: datetime,
    ) -> int:
        try:
            async with self._session_factory() as session:
                added = await add_overrides(
                    session,
                    stack_api_key=stack_api_key,
                    content_type=content_type,
                    overrides=overrides,
                    now=now,
                )
                await session.commit()
                return added
        except SQLAlchemyError as exc:
            raise DatabaseError("field pattern write failed") from exc

    async def clear(self, stack_api_key: str, content_type: str) -> int:
        try:
            async with self._session_factory() as session:
                removed = await delete_overrides(session, stack_api_key, content_type)
                await session.commit()
                return removed
        except SQLAlchemyError as exc:
            raise DatabaseError("field pattern delete failed") from exc
