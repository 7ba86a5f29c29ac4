from __future__ import annotations

import cohere

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import InputValidationError, ProviderUnavailableError
from stacksearch.domain.types import RerankResult
from stacksearch.providers.cohere_errors import translate_cohere_error
from stacksearch.services.resilience import CircuitBreaker, call_external


INTEGRATION = "cohere.rerank"


class CohereRerankProvider:
    enabled = True

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: cohere.AsyncClientV2 | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if client is None and not self._settings.cohere_api_key:
            raise InputValidationError("COHERE_API_KEY is required for the cohere rerank provider")
        self._client = client or cohere.AsyncClientV2(api_key=self._settings.cohere_api_key)
        self._breaker = breaker

    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[RerankResult]:
        if not documents or top_n < 1:
            return []
        # The rerank API caps the document count per request.
        batch = documents[: self._settings.rerank_max_documents]

        async def _call() -> list[RerankResult]:
            try:
                response = await self._client.rerank(
                    model=self._settings.cohere_rerank_model,
                    query=query,
                    documents=batch,
                    top_n=min(top_n, len(batch)),
                )
            except Exception as exc:  # noqa: BLE001 - translated into the shared taxonomy
                raise translate_cohere_error(exc, INTEGRATION) from exc
            if not response.results:
                raise ProviderUnavailableError("cohere returned empty rerank results")
            return [
                RerankResult(index=result.index, relevance_score=float(result.relevance_score))
                for result in response.results
            ]

        return await call_external(INTEGRATION, _call, breaker=self._breaker)
