from __future__ import annotations

import re

from stacksearch.core.errors import ProviderUnavailableError
from stacksearch.domain.types import RerankResult


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class FakeRerankProvider:
    enabled = True

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[RerankResult]:
        self.calls += 1
        if self.fail:
            raise ProviderUnavailableError("fake rerank failure")
        query_tokens = set(_TOKEN_RE.findall(query.lower()))
        scored: list[RerankResult] = []
        for index, document in enumerate(documents):
            tokens = set(_TOKEN_RE.findall(document.lower()))
            overlap = len(query_tokens & tokens) / (len(query_tokens) or 1)
            scored.append(RerankResult(index=index, relevance_score=round(overlap, 6)))
        # Stable on ties so equal scores keep similarity order.
        scored.sort(key=lambda item: (-item.relevance_score, item.index))
        return scored[: max(top_n, 0)]


class DisabledRerankProvider:
    enabled = False

    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[RerankResult]:
        return [RerankResult(index=index, relevance_score=0.0) for index in range(min(top_n, len(documents)))]
