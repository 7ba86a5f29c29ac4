from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from stacksearch.apps.api.deps import get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import success_response
from stacksearch.services.container import ServiceContainer


router = APIRouter(prefix="/analytics", tags=["analytics"], responses=DEFAULT_ERROR_RESPONSES)


def _window(days: int) -> tuple[datetime, datetime]:
    end = datetime.now(timezone.utc)
    return end - timedelta(days=days), end


@router.get("/stats")
async def search_stats(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    start, end = _window(days)
    stats = await container.search_logger.search_stats(stack_api_key, start=start, end=end)
    return success_response(request=request, data={"days": days, **stats})


@router.get("/popular-queries")
async def popular_queries(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    limit: int = Query(default=10, ge=1, le=100),
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    start, end = _window(days)
    items = await container.search_logger.popular_queries(stack_api_key, limit=limit, start=start, end=end)
    return success_response(request=request, data={"items": items})


@router.get("/errors")
async def error_stats(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    limit: int = Query(default=10, ge=1, le=100),
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    start, end = _window(days)
    items = await container.search_logger.error_stats(stack_api_key, limit=limit, start=start, end=end)
    return success_response(request=request, data={"items": items})


@router.get("/recent")
async def recent_searches(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    items = await container.search_logger.recent(stack_api_key, limit=limit)
    return success_response(request=request, data={"items": items})
