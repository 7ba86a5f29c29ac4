from __future__ import annotations

from typing import Protocol

from stacksearch.domain.types import RerankResult


class RerankProvider(Protocol):
    # False means retrieval keeps vector similarity order without calling rerank.
    enabled: bool

    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[RerankResult]:
        ...
