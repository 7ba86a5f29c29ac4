from __future__ import annotations

from stacksearch.core.config import Settings, get_settings
from stacksearch.providers.vector.base import VectorStore
from stacksearch.providers.vector.memory import InMemoryVectorStore
from stacksearch.providers.vector.pinecone import PineconeVectorStore
from stacksearch.services.resilience import CircuitBreaker


def get_vector_store(settings: Settings | None = None, *, breaker: CircuitBreaker | None = None) -> VectorStore:
    settings = settings or get_settings()
    provider = (settings.vector_provider or "pinecone").lower()
    if provider == "memory":
        return InMemoryVectorStore()
    return PineconeVectorStore(settings=settings, breaker=breaker)
