from __future__ import annotations

from stacksearch.core.config import Settings, get_settings
from stacksearch.providers.rerank.base import RerankProvider
from stacksearch.providers.rerank.cohere import CohereRerankProvider
from stacksearch.providers.rerank.fake import DisabledRerankProvider, FakeRerankProvider
from stacksearch.services.resilience import CircuitBreaker


def get_rerank_provider(
    settings: Settings | None = None, *, breaker: CircuitBreaker | None = None
) -> RerankProvider:
    settings = settings or get_settings()
    provider = (settings.rerank_provider or "cohere").lower()
    if provider == "none":
        return DisabledRerankProvider()
    if provider == "fake":
        return FakeRerankProvider()
    return CohereRerankProvider(settings=settings, breaker=breaker)
