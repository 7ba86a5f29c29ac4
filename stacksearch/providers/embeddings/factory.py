from __future__ import annotations

from stacksearch.core.config import Settings, get_settings
from stacksearch.providers.embeddings.base import EmbeddingProvider
from stacksearch.providers.embeddings.cohere import CohereEmbeddingProvider
from stacksearch.providers.embeddings.fake import FakeEmbeddingProvider
from stacksearch.services.resilience import CircuitBreaker


def get_embedding_provider(
    settings: Settings | None = None, *, breaker: CircuitBreaker | None = None
) -> EmbeddingProvider:
    settings = settings or get_settings()
    provider = (settings.embedding_provider or "cohere").lower()
    if provider == "fake":
        return FakeEmbeddingProvider()
    return CohereEmbeddingProvider(settings=settings, breaker=breaker)
