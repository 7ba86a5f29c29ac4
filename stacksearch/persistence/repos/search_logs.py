from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stacksearch.domain.models import SearchLog


async def insert_search_log(
    session: AsyncSession,
    *,
    stack_api_key: str,
    query: str,
    search_type: str,
    results_count: int,
    latency_ms: float,
    success: bool,
    created_at: datetime,
    error_message: str | None = None,
    environment: str | None = None,
    filters_json: dict[str, Any] | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> SearchLog:
    # Column limits are enforced here so oversized inputs never fail the write.
    row = SearchLog(
        id=uuid4().hex,
        stack_api_key=stack_api_key,
        query=(query or "")[:500],
        search_type=search_type,
        results_count=max(0, int(results_count)),
        latency_ms=float(latency_ms),
        success=success,
        error_message=error_message[:1000] if error_message else None,
        environment=environment,
        filters_json=filters_json or {},
        user_agent=user_agent[:500] if user_agent else None,
        ip_address=ip_address[:45] if ip_address else None,
        created_at=created_at,
    )
    session.add(row)
    return row


def _scoped(stmt, stack_api_key: str, start: datetime | None, end: datetime | None):
    stmt = stmt.where(SearchLog.stack_api_key == stack_api_key)
    if start is not None:
        stmt = stmt.where(SearchLog.created_at >= start)
    if end is not None:
        stmt = stmt.where(SearchLog.created_at <= end)
    return stmt


async def search_stats(
    session: AsyncSession,
    stack_api_key: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    stmt = select(
        func.count(SearchLog.id),
        func.sum(case((SearchLog.success.is_(True), 1), else_=0)),
        func.avg(SearchLog.latency_ms),
        func.avg(SearchLog.results_count),
    )
    total, successes, avg_latency, avg_results = (await session.execute(_scoped(stmt, stack_api_key, start, end))).one()
    total = int(total or 0)
    successes = int(successes or 0)

    by_type_stmt = _scoped(
        select(SearchLog.search_type, func.count(SearchLog.id)).group_by(SearchLog.search_type),
        stack_api_key,
        start,
        end,
    )
    by_type = {row[0]: int(row[1]) for row in (await session.execute(by_type_stmt)).all()}
    return {
        "total_searches": total,
        "successful_searches": successes,
        "failed_searches": total - successes,
        "success_rate": (successes / total) if total else None,
        "avg_latency_ms": round(float(avg_latency), 2) if avg_latency is not None else None,
        "avg_results": round(float(avg_results), 2) if avg_results is not None else None,
        "by_search_type": by_type,
    }


async def popular_queries(
    session: AsyncSession,
    stack_api_key: str,
    *,
    limit: int = 10,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    # Only successful searches count toward popularity.
    count_col = func.count(SearchLog.id).label("count")
    stmt = _scoped(
        select(SearchLog.query, count_col, func.avg(SearchLog.results_count))
        .where(SearchLog.success.is_(True))
        .group_by(SearchLog.query)
        .order_by(count_col.desc(), SearchLog.query)
        .limit(max(1, limit)),
        stack_api_key,
        start,
        end,
    )
    rows = (await session.execute(stmt)).all()
    return [
        {
            "query": row[0],
            "count": int(row[1]),
            "avg_results": round(float(row[2]), 2) if row[2] is not None else 0.0,
        }
        for row in rows
    ]


async def error_stats(
    session: AsyncSession,
    stack_api_key: str,
    *,
    limit: int = 10,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    count_col = func.count(SearchLog.id).label("count")
    stmt = _scoped(
        select(SearchLog.error_message, count_col, func.max(SearchLog.created_at))
        .where(SearchLog.success.is_(False))
        .group_by(SearchLog.error_message)
        .order_by(count_col.desc())
        .limit(max(1, limit)),
        stack_api_key,
        start,
        end,
    )
    rows = (await session.execute(stmt)).all()
    return [
        {"error_message": row[0] or "unknown", "count": int(row[1]), "last_seen_at": row[2]}
        for row in rows
    ]


async def list_recent_logs(session: AsyncSession, stack_api_key: str, limit: int = 50) -> list[SearchLog]:
    result = await session.execute(
        select(SearchLog)
        .where(SearchLog.stack_api_key == stack_api_key)
        .order_by(SearchLog.created_at.desc(), SearchLog.id)
        .limit(max(1, limit))
    )
    return list(result.scalars().all())


async def purge_search_logs(session: AsyncSession, before: datetime) -> int:
    result = await session.execute(delete(SearchLog).where(SearchLog.created_at < before))
    return int(result.rowcount or 0)
