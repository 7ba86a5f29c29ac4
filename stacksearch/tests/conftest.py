from __future__ import annotations

import httpx
import pytest

from stacksearch.core.config import get_settings
from stacksearch.persistence.db import build_engine, create_all
from stacksearch.providers.embeddings.fake import FakeEmbeddingProvider
from stacksearch.providers.rerank.fake import FakeRerankProvider
from stacksearch.providers.vector.memory import InMemoryVectorStore
from stacksearch.services.container import build_container
from stacksearch.services.resilience import drain_background_tasks
from stacksearch.services.telemetry import reset_telemetry
from stacksearch.tests.utils.fakes import FakeCms, FakeTokenEndpoint


TEST_ENV = {
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "EMBEDDING_PROVIDER": "fake",
    "RERANK_PROVIDER": "fake",
    "VECTOR_PROVIDER": "memory",
    "WEBHOOK_EXECUTION_MODE": "inline",
    "CREDENTIAL_REFRESH_ENABLED": "false",
    "CMS_API_BASE_URL": "https://cms.test/v3",
    "CMS_OAUTH_TOKEN_URL": "https://app.cms.test/apps-api/token",
    "CMS_APP_BASE_URL": "https://app.cms.test",
    "CMS_CLIENT_ID": "client-id",
    "CMS_CLIENT_SECRET": "client-secret",
    "CMS_APP_UID": "app-uid",
    "EXT_RETRY_BACKOFF_MS": "1",
    "EXT_CALL_TIMEOUT_MS": "2000",
    "INDEXING_BATCH_PAUSE_MS": "0",
    "INDEX_PROVISION_POLL_S": "0.01",
    "CB_FAILURE_THRESHOLD": "1000",
}

EMBED_TEST_DIM = 64


@pytest.fixture(autouse=True)
def test_settings_env(monkeypatch):
    # Every test runs against in-memory providers and sqlite; no network, no Redis.
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions get their own connections and transactions.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'stacksearch.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def fake_cms() -> FakeCms:
    return FakeCms()


@pytest.fixture
def token_endpoint(fake_cms: FakeCms) -> FakeTokenEndpoint:
    return FakeTokenEndpoint(fake_cms)


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(dimension=EMBED_TEST_DIM)


@pytest.fixture
def reranker() -> FakeRerankProvider:
    return FakeRerankProvider()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
async def container(settings, engine, fake_cms, token_endpoint, embedder, reranker, vector_store):
    oauth_http = httpx.AsyncClient(transport=token_endpoint.transport())
    cms_http = httpx.AsyncClient(transport=fake_cms.transport())
    container = await build_container(
        settings,
        engine=engine,
        embedder=embedder,
        reranker=reranker,
        vector_store=vector_store,
        oauth_http=oauth_http,
        cms_http=cms_http,
    )
    yield container
    await drain_background_tasks()
    await container.scheduler.stop()
    await oauth_http.aclose()
    await cms_http.aclose()
