from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

from stacksearch.core.config import EMBED_DIM, Settings, get_settings
from stacksearch.core.errors import IndexNotFoundError, IndexProvisionTimeoutError, InputValidationError
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import IndexHandle
from stacksearch.providers.vector.base import IndexDescription, VectorStore
from stacksearch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def index_name_for(
    stack_api_key: str,
    *,
    prefix: str = "semantic-search-",
    max_length: int = 45,
) -> str:
    # Pure and deterministic: the same key always routes to the same index.
    if not stack_api_key or not stack_api_key.strip():
        raise InputValidationError("stack_api_key is required")
    cleaned = _NON_ALNUM.sub("", stack_api_key)
    if not cleaned:
        raise InputValidationError("stack_api_key must contain alphanumeric characters")
    return f"{prefix}{cleaned}".lower()[:max_length]


class TenantIndexRouter:
    """Maps stack keys to their private vector index and provisions it on demand."""

    def __init__(self, store: VectorStore, *, settings: Settings | None = None, dimension: int = EMBED_DIM) -> None:
        self._store = store
        self._dimension = dimension
        self._settings = settings or get_settings()
        self._handles: dict[str, IndexHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def index_name_for(self, stack_api_key: str) -> str:
        return index_name_for(
            stack_api_key,
            prefix=self._settings.index_name_prefix,
            max_length=self._settings.index_name_max_length,
        )

    async def ensure_index(self, stack_api_key: str, dimension: int | None = None) -> IndexHandle:
        dimension = dimension or self._dimension
        name = self.index_name_for(stack_api_key)
        cached = self._handles.get(stack_api_key)
        if cached is not None:
            return cached
        async with self._locks.setdefault(name, asyncio.Lock()):
            cached = self._handles.get(stack_api_key)
            if cached is not None:
                return cached
            description = await self._store.describe_index(name)
            if description is None:
                logger.info("index_create stack=%s index=%s dimension=%s", mask_key(stack_api_key), name, dimension)
                await self._store.create_index(name, dimension, metric="cosine")
                increment_counter("index_created_total")
                description = await self._wait_ready(name)
            elif not description.ready:
                description = await self._wait_ready(name)
            handle = IndexHandle(
                stack_api_key=stack_api_key,
                index_name=name,
                dimension=description.dimension or dimension,
                ready=True,
            )
            self._handles[stack_api_key] = handle
            return handle

    async def _wait_ready(self, name: str) -> IndexDescription:
        # Serverless indexes take a while to come up; poll until ready or the deadline passes.
        deadline = time.monotonic() + self._settings.index_provision_timeout_s
        while True:
            description = await self._store.describe_index(name)
            if description is not None and description.ready:
                return description
            if time.monotonic() >= deadline:
                raise IndexProvisionTimeoutError(f"index {name} was not ready in time")
            await asyncio.sleep(self._settings.index_provision_poll_s)

    async def bind(self, stack_api_key: str) -> IndexHandle:
        return await self.ensure_index(stack_api_key)

    async def describe(self, stack_api_key: str) -> IndexDescription:
        name = self.index_name_for(stack_api_key)
        description = await self._store.describe_index(name)
        if description is None:
            raise IndexNotFoundError(f"index {name} does not exist")
        return description

    async def stats(self, stack_api_key: str) -> dict[str, Any]:
        description = await self.describe(stack_api_key)
        handle = IndexHandle(
            stack_api_key=stack_api_key,
            index_name=description.name,
            dimension=description.dimension,
            ready=description.ready,
        )
        stats = await self._store.stats(handle)
        return {"index_name": description.name, "ready": description.ready, **stats}

    async def reset_index(self, stack_api_key: str) -> bool:
        name = self.index_name_for(stack_api_key)
        async with self._locks.setdefault(name, asyncio.Lock()):
            self._handles.pop(stack_api_key, None)
            deleted = await self._store.delete_index(name)
        logger.warning("index_reset stack=%s index=%s deleted=%s", mask_key(stack_api_key), name, deleted)
        return deleted

    async def list_indexes(self) -> list[str]:
        # Only indexes this service owns; the project may hold unrelated ones.
        prefix = self._settings.index_name_prefix.lower()
        return [name for name in await self._store.list_indexes() if name.startswith(prefix)]

    def forget(self, stack_api_key: str) -> None:
        self._handles.pop(stack_api_key, None)
