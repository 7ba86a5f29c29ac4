from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stacksearch.core.config import Settings, get_settings
from stacksearch.domain.types import SearchLogEntry
from stacksearch.persistence.repos import search_logs as search_logs_repo
from stacksearch.persistence.repos.credentials import as_utc
from stacksearch.services.resilience import best_effort


logger = logging.getLogger(__name__)


class SearchLogger:
    """Persists one row per search and answers the analytics queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def write(self, entry: SearchLogEntry) -> None:
        async with self._session_factory() as session:
            await search_logs_repo.insert_search_log(
                session,
                stack_api_key=entry.stack_api_key,
                query=entry.query,
                search_type=entry.search_type,
                results_count=entry.results_count,
                latency_ms=entry.latency_ms,
                success=entry.success,
                created_at=datetime.now(timezone.utc),
                error_message=entry.error_message,
                environment=entry.environment,
                filters_json=entry.filters,
                user_agent=entry.user_agent,
                ip_address=entry.ip_address,
            )
            await session.commit()

    def log(self, entry: SearchLogEntry) -> asyncio.Task:
        # Logging never blocks or fails the search response.
        return best_effort(self.write(entry), name="search_log_write")

    async def search_stats(
        self, stack_api_key: str, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        async with self._session_factory() as session:
            return await search_logs_repo.search_stats(session, stack_api_key, start=start, end=end)

    async def popular_queries(
        self,
        stack_api_key: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            return await search_logs_repo.popular_queries(
                session, stack_api_key, limit=limit, start=start, end=end
            )

    async def error_stats(
        self,
        stack_api_key: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await search_logs_repo.error_stats(session, stack_api_key, limit=limit, start=start, end=end)
        for row in rows:
            last_seen = as_utc(row["last_seen_at"])
            row["last_seen_at"] = last_seen.isoformat() if last_seen else None
        return rows

    async def recent(self, stack_api_key: str, limit: int = 50) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await search_logs_repo.list_recent_logs(session, stack_api_key, limit=limit)
        return [
            {
                "query": row.query,
                "search_type": row.search_type,
                "results_count": row.results_count,
                "latency_ms": row.latency_ms,
                "success": row.success,
                "error_message": row.error_message,
                "created_at": as_utc(row.created_at).isoformat(),
            }
            for row in rows
        ]

    async def purge_search_logs(self, before: datetime | None = None) -> int:
        cutoff = before or datetime.now(timezone.utc) - timedelta(days=self._settings.search_log_retention_days)
        async with self._session_factory() as session:
            removed = await search_logs_repo.purge_search_logs(session, cutoff)
            await session.commit()
        logger.info("search_logs_purged removed=%s before=%s", removed, cutoff.isoformat())
        return removed
