from __future__ import annotations

import logging

import cohere
import httpx

from stacksearch.core.config import EMBED_DIM, Settings, get_settings
from stacksearch.core.errors import InputValidationError, ProviderUnavailableError
from stacksearch.providers.cohere_errors import translate_cohere_error
from stacksearch.providers.embeddings.base import InputType
from stacksearch.providers.embeddings.images import image_to_data_uri
from stacksearch.services.resilience import CircuitBreaker, call_external


logger = logging.getLogger(__name__)

INTEGRATION = "cohere.embed"


class CohereEmbeddingProvider:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: cohere.AsyncClientV2 | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if client is None and not self._settings.cohere_api_key:
            raise InputValidationError("COHERE_API_KEY is required for the cohere embedding provider")
        # Allow injecting a client for tests to avoid real network calls.
        self._client = client or cohere.AsyncClientV2(api_key=self._settings.cohere_api_key)
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.cms_timeout_s)
        self._breaker = breaker
        self.dimension = EMBED_DIM

    def _bound(self, text: str) -> str:
        return text[: self._settings.embed_text_max_chars]

    async def _embed(self, **kwargs) -> list[list[float]]:
        async def _call() -> list[list[float]]:
            try:
                response = await self._client.embed(
                    model=self._settings.cohere_embed_model,
                    embedding_types=["float"],
                    output_dimension=self.dimension,
                    **kwargs,
                )
            except Exception as exc:  # noqa: BLE001 - translated into the shared taxonomy
                raise translate_cohere_error(exc, INTEGRATION) from exc
            vectors = response.embeddings.float_ if response.embeddings else None
            if not vectors:
                raise ProviderUnavailableError("cohere returned no embeddings")
            return [list(vector) for vector in vectors]

        return await call_external(INTEGRATION, _call, breaker=self._breaker)

    async def embed_texts(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        if not texts:
            return []
        cleaned = [self._bound(text) for text in texts]
        if any(not text.strip() for text in cleaned):
            raise InputValidationError("cannot embed empty text")
        vectors = await self._embed(texts=cleaned, input_type=input_type, truncate="END")
        if len(vectors) != len(cleaned):
            raise ProviderUnavailableError("cohere returned a mismatched embedding count")
        return vectors

    async def embed_image(self, image: str) -> list[float]:
        data_uri = await image_to_data_uri(self._http, image)
        vectors = await self._embed(images=[data_uri], input_type="image")
        return vectors[0]
