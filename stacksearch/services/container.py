from __future__ import annotations

from dataclasses import dataclass, field
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from stacksearch.core.config import Settings, get_settings
from stacksearch.persistence.db import build_engine, build_session_factory, create_all
from stacksearch.persistence.repos.credentials import CredentialStore
from stacksearch.persistence.repos.field_patterns import FieldPatternStore
from stacksearch.providers.cms.contentstack import ContentstackClient
from stacksearch.providers.cms.oauth import ContentstackOAuthClient
from stacksearch.providers.embeddings.base import EmbeddingProvider
from stacksearch.providers.embeddings.factory import get_embedding_provider
from stacksearch.providers.rerank.base import RerankProvider
from stacksearch.providers.rerank.factory import get_rerank_provider
from stacksearch.providers.vector.base import VectorStore
from stacksearch.providers.vector.factory import get_vector_store
from stacksearch.services.credentials import StackCredentialManager
from stacksearch.services.index_router import TenantIndexRouter
from stacksearch.services.indexing import IndexingOrchestrator
from stacksearch.services.normalizer import ContentNormalizer
from stacksearch.services.refresh_scheduler import RefreshScheduler
from stacksearch.services.resilience import CircuitBreaker, get_resilience_redis
from stacksearch.services.retrieval import RetrievalOrchestrator
from stacksearch.services.search_logs import SearchLogger


logger = logging.getLogger(__name__)

INTEGRATIONS = ("cms.oauth", "cms.content", "cohere.embed", "cohere.rerank", "pinecone")


@dataclass
class ServiceContainer:
    """Explicitly wired components shared by the API, worker and scripts."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    credential_store: CredentialStore
    oauth: ContentstackOAuthClient
    credentials: StackCredentialManager
    cms: ContentstackClient
    router: TenantIndexRouter
    normalizer: ContentNormalizer
    embedder: EmbeddingProvider
    reranker: RerankProvider
    vector_store: VectorStore
    indexing: IndexingOrchestrator
    retrieval: RetrievalOrchestrator
    search_logger: SearchLogger
    scheduler: RefreshScheduler
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    async def breaker_states(self) -> dict[str, str]:
        return {name: await breaker.current_state() for name, breaker in self.breakers.items()}

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.oauth.aclose()
        await self.cms.aclose()
        await self.engine.dispose()


async def _breakers(settings: Settings) -> dict[str, CircuitBreaker]:
    redis = await get_resilience_redis() if settings.cb_use_redis else None
    return {name: CircuitBreaker(name, redis=redis) for name in INTEGRATIONS}


async def build_container(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    embedder: EmbeddingProvider | None = None,
    reranker: RerankProvider | None = None,
    vector_store: VectorStore | None = None,
    oauth_http: httpx.AsyncClient | None = None,
    cms_http: httpx.AsyncClient | None = None,
    create_schema: bool = False,
) -> ServiceContainer:
    # Overrides exist so tests and scripts can swap providers without touching settings.
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)
    if create_schema:
        await create_all(engine)
    session_factory = build_session_factory(engine)
    breakers = await _breakers(settings)

    credential_store = CredentialStore(session_factory)
    oauth = ContentstackOAuthClient(
        settings=settings, http_client=oauth_http, breaker=breakers["cms.oauth"]
    )
    credentials = StackCredentialManager(credential_store, oauth, settings=settings)
    cms = ContentstackClient(
        credentials, settings=settings, http_client=cms_http, breaker=breakers["cms.content"]
    )
    embedder = embedder or get_embedding_provider(settings, breaker=breakers["cohere.embed"])
    reranker = reranker or get_rerank_provider(settings, breaker=breakers["cohere.rerank"])
    vector_store = vector_store or get_vector_store(settings, breaker=breakers["pinecone"])
    router = TenantIndexRouter(vector_store, settings=settings, dimension=embedder.dimension)
    normalizer = ContentNormalizer(settings=settings, store=FieldPatternStore(session_factory))
    search_logger = SearchLogger(session_factory, settings=settings)

    indexing = IndexingOrchestrator(
        credentials=credentials,
        cms=cms,
        router=router,
        normalizer=normalizer,
        embedder=embedder,
        store=vector_store,
        settings=settings,
    )
    retrieval = RetrievalOrchestrator(
        credentials=credentials,
        cms=cms,
        router=router,
        embedder=embedder,
        reranker=reranker,
        store=vector_store,
        search_logger=search_logger,
        settings=settings,
    )
    scheduler = RefreshScheduler(credentials, credential_store, settings=settings)
    logger.info(
        "container_built embedding=%s rerank=%s vector=%s",
        settings.embedding_provider,
        settings.rerank_provider,
        settings.vector_provider,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        credential_store=credential_store,
        oauth=oauth,
        credentials=credentials,
        cms=cms,
        router=router,
        normalizer=normalizer,
        embedder=embedder,
        reranker=reranker,
        vector_store=vector_store,
        indexing=indexing,
        retrieval=retrieval,
        search_logger=search_logger,
        scheduler=scheduler,
        breakers=breakers,
    )
