from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import InputValidationError
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import (
    IndexHandle,
    SearchHit,
    SearchLogEntry,
    SearchRequest,
    SearchResponse,
    VectorMatch,
)
from stacksearch.providers.cms.contentstack import ContentstackClient
from stacksearch.providers.embeddings.base import EmbeddingProvider
from stacksearch.providers.embeddings.images import is_data_uri
from stacksearch.providers.rerank.base import RerankProvider
from stacksearch.providers.vector.base import VectorStore
from stacksearch.services.index_router import TenantIndexRouter
from stacksearch.services.search_logs import SearchLogger
from stacksearch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Keys the service owns; caller filters can never override them.
RESERVED_FILTER_KEYS = frozenset({"type", "stack_api_key", "text"})


class AccessTokenSource(Protocol):
    async def get_valid_access_token(self, stack_api_key: str) -> str: ...


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, dict)) and len(value) == 0)


def build_metadata_filter(
    filters: dict[str, Any] | None,
    *,
    modality: str = "text",
    max_filters: int = 10,
) -> dict[str, Any]:
    """Translate caller filters into the vector store filter language.

    Null and empty values are dropped, lists become ``$in`` and scalars
    ``$eq``; the modality tag is always applied.
    """
    cleaned: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if not isinstance(key, str) or not key or key in RESERVED_FILTER_KEYS or _is_empty(value):
            continue
        if isinstance(value, (list, tuple)):
            values = [item for item in value if not _is_empty(item)]
            if not values:
                continue
            if not all(isinstance(item, (str, int, float, bool)) for item in values):
                raise InputValidationError(f"filter {key} must contain scalar values")
            cleaned[key] = {"$in": list(values)}
        elif isinstance(value, (str, int, float, bool)):
            cleaned[key] = {"$eq": value}
        else:
            raise InputValidationError(f"filter {key} must be a scalar or a list of scalars")
    if len(cleaned) > max_filters:
        raise InputValidationError(f"at most {max_filters} filters are allowed")
    cleaned["type"] = {"$eq": modality}
    return cleaned


def _image_label(image: str) -> str:
    # Uploaded images arrive inline; only their media type goes into the search log.
    if is_data_uri(image):
        return image.split(";", 1)[0]
    return image[:200]


def candidate_count(top_k: int, cap: int) -> int:
    # Over-fetch for the reranker, bounded by the cap but never below top_k.
    return max(top_k, min(top_k * 2, cap))


def fuse_results(
    text_hits: list[SearchHit],
    image_hits: list[SearchHit],
    *,
    text_weight: float,
    image_weight: float,
    top_k: int,
) -> list[SearchHit]:
    # Weighted-score merge; one result per source entry, keeping its best fused score.
    fused: dict[str, SearchHit] = {}
    for hits, weight in ((text_hits, text_weight), (image_hits, image_weight)):
        for hit in hits:
            score = hit.score * weight
            key = str(hit.metadata.get("uid") or hit.id)
            current = fused.get(key)
            if current is None or score > current.score:
                fused[key] = SearchHit(
                    id=hit.id,
                    content_type=hit.content_type,
                    score=score,
                    rerank_score=hit.rerank_score,
                    modality=hit.modality,
                    metadata=hit.metadata,
                )
    ordered = sorted(fused.values(), key=lambda item: (-item.score, item.id))
    return ordered[:top_k]


class RetrievalOrchestrator:
    """Query pipeline: embed, vector search, rerank, enrich, log.

    Embedding and vector search failures fail the request. Rerank and
    enrichment failures only degrade it and are reported in
    ``degraded_stages``.
    """

    def __init__(
        self,
        *,
        credentials: AccessTokenSource,
        cms: ContentstackClient,
        router: TenantIndexRouter,
        embedder: EmbeddingProvider,
        reranker: RerankProvider,
        store: VectorStore,
        search_logger: SearchLogger,
        settings: Settings | None = None,
    ) -> None:
        self._credentials = credentials
        self._cms = cms
        self._router = router
        self._embedder = embedder
        self._reranker = reranker
        self._store = store
        self._search_logger = search_logger
        self._settings = settings or get_settings()

    def _validate(self, request: SearchRequest, *, needs_query: bool, needs_image: bool) -> None:
        if not request.stack_api_key:
            raise InputValidationError("stack_api_key is required")
        if needs_query and not (request.query and request.query.strip()):
            raise InputValidationError("query is required")
        if request.query and len(request.query) > self._settings.search_query_max_chars:
            raise InputValidationError(
                f"query must be at most {self._settings.search_query_max_chars} characters"
            )
        if needs_image and not request.image:
            raise InputValidationError("image is required")
        if request.top_k < 1 or request.top_k > self._settings.search_max_top_k:
            raise InputValidationError(f"top_k must be between 1 and {self._settings.search_max_top_k}")

    async def _bind(self, stack_api_key: str) -> IndexHandle:
        await self._credentials.get_valid_access_token(stack_api_key)
        return await self._router.bind(stack_api_key)

    async def _candidates(
        self,
        handle: IndexHandle,
        vector: list[float],
        request: SearchRequest,
        modality: str,
    ) -> list[SearchHit]:
        metadata_filter = build_metadata_filter(
            request.filters, modality=modality, max_filters=self._settings.search_max_filters
        )
        matches = await self._store.query(
            handle,
            vector,
            candidate_count(request.top_k, self._settings.search_candidate_cap),
            metadata_filter,
        )
        floor = self._settings.search_similarity_floor
        return [self._to_hit(match, modality) for match in matches if match.score >= floor]

    @staticmethod
    def _to_hit(match: VectorMatch, modality: str) -> SearchHit:
        return SearchHit(
            id=match.id,
            content_type=match.metadata.get("content_type"),
            score=float(match.score),
            modality=modality,
            metadata=match.metadata,
        )

    async def _rerank(self, query: str, hits: list[SearchHit], degraded: list[str]) -> tuple[list[SearchHit], bool]:
        if not self._reranker.enabled or len(hits) < 2:
            return hits, False
        documents = [str(hit.metadata.get("text") or hit.metadata.get("title") or "") for hit in hits]
        try:
            ranked = await self._reranker.rerank(query, documents, top_n=len(hits))
        except Exception as exc:  # noqa: BLE001 - rerank is optional; keep similarity order
            degraded.append("rerank")
            increment_counter("search_rerank_fallback_total")
            logger.warning("search_rerank_degraded error=%s", exc)
            return hits, False
        reordered: list[SearchHit] = []
        seen: set[int] = set()
        for result in ranked:
            if 0 <= result.index < len(hits) and result.index not in seen:
                seen.add(result.index)
                hit = hits[result.index]
                hit.rerank_score = result.relevance_score
                reordered.append(hit)
        # Candidates the reranker left out keep their similarity order at the tail.
        reordered.extend(hit for index, hit in enumerate(hits) if index not in seen)
        return reordered, True

    async def _fetch_source(self, hit: SearchHit, request: SearchRequest) -> dict[str, Any] | None:
        metadata = hit.metadata
        if metadata.get("content_type") == "asset" and metadata.get("asset_uid"):
            return await self._cms.fetch_asset(request.stack_api_key, str(metadata["asset_uid"]))
        entry_uid = metadata.get("entry_uid") or metadata.get("uid") or hit.id
        if not hit.content_type:
            return None
        return await self._cms.fetch_entry(
            request.stack_api_key,
            hit.content_type,
            str(entry_uid),
            environment=request.environment,
            locale=request.locale,
        )

    async def _enrich(self, hits: list[SearchHit], request: SearchRequest, degraded: list[str]) -> list[SearchHit]:
        if not request.enrich or not hits:
            return hits
        outcomes = await asyncio.gather(
            *(self._fetch_source(hit, request) for hit in hits), return_exceptions=True
        )
        enriched: list[SearchHit] = []
        failures = 0
        for hit, outcome in zip(hits, outcomes):
            if isinstance(outcome, BaseException):
                failures += 1
                logger.info("search_enrich_dropped id=%s error=%s", hit.id, outcome)
                continue
            if outcome is None:
                # Entry was deleted or unpublished since indexing.
                continue
            hit.entry = outcome
            enriched.append(hit)
        if failures:
            degraded.append("enrich")
            increment_counter("search_enrich_dropped_total", failures)
        return enriched

    def _log(
        self,
        request: SearchRequest,
        search_type: str,
        *,
        started: float,
        results_count: int,
        success: bool,
        error: Exception | None = None,
    ) -> None:
        query = request.query or (f"[image] {_image_label(request.image)}" if request.image else "")
        self._search_logger.log(
            SearchLogEntry(
                stack_api_key=request.stack_api_key,
                query=query,
                results_count=results_count,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
                search_type=search_type,
                error_message=str(error) if error is not None else None,
                environment=request.environment,
                filters=dict(request.filters or {}),
                user_agent=request.user_agent,
                ip_address=request.ip_address,
            )
        )

    async def search(self, request: SearchRequest) -> SearchResponse:
        started = time.monotonic()
        degraded: list[str] = []
        try:
            self._validate(request, needs_query=True, needs_image=False)
            handle = await self._bind(request.stack_api_key)
            vector = (await self._embedder.embed_texts([request.query.strip()], "search_query"))[0]
            hits = await self._candidates(handle, vector, request, "text")
            reranked = False
            if request.rerank:
                hits, reranked = await self._rerank(request.query, hits, degraded)
            hits = await self._enrich(hits, request, degraded)
            results = hits[: request.top_k]
        except Exception as exc:
            self._log(request, "semantic", started=started, results_count=0, success=False, error=exc)
            raise
        self._log(request, "semantic", started=started, results_count=len(results), success=True)
        increment_counter("search_requests_total")
        logger.info(
            "search_completed stack=%s results=%s reranked=%s degraded=%s",
            mask_key(request.stack_api_key),
            len(results),
            reranked,
            ",".join(degraded) or "-",
        )
        return SearchResponse(
            query=request.query,
            results=results,
            latency_ms=(time.monotonic() - started) * 1000.0,
            search_type="semantic",
            reranked=reranked,
            degraded_stages=degraded,
        )

    async def search_by_image(self, request: SearchRequest) -> SearchResponse:
        started = time.monotonic()
        degraded: list[str] = []
        try:
            self._validate(request, needs_query=False, needs_image=True)
            handle = await self._bind(request.stack_api_key)
            vector = await self._embedder.embed_image(request.image)
            hits = await self._candidates(handle, vector, request, "image")
            hits = await self._enrich(hits, request, degraded)
            results = hits[: request.top_k]
        except Exception as exc:
            self._log(request, "image", started=started, results_count=0, success=False, error=exc)
            raise
        self._log(request, "image", started=started, results_count=len(results), success=True)
        return SearchResponse(
            query=None,
            results=results,
            latency_ms=(time.monotonic() - started) * 1000.0,
            search_type="image",
            degraded_stages=degraded,
        )

    async def search_hybrid(self, request: SearchRequest) -> SearchResponse:
        started = time.monotonic()
        degraded: list[str] = []
        try:
            if not (request.query and request.query.strip()) and not request.image:
                raise InputValidationError("query or image is required")
            self._validate(request, needs_query=False, needs_image=False)
            handle = await self._bind(request.stack_api_key)
            text_hits: list[SearchHit] = []
            image_hits: list[SearchHit] = []
            if request.query and request.query.strip():
                vector = (await self._embedder.embed_texts([request.query.strip()], "search_query"))[0]
                text_hits = await self._candidates(handle, vector, request, "text")
            if request.image:
                image_vector = await self._embedder.embed_image(request.image)
                image_hits = await self._candidates(handle, image_vector, request, "image")
            fused = fuse_results(
                text_hits,
                image_hits,
                text_weight=self._settings.hybrid_text_weight,
                image_weight=self._settings.hybrid_image_weight,
                top_k=candidate_count(request.top_k, self._settings.search_candidate_cap),
            )
            fused = await self._enrich(fused, request, degraded)
            results = fused[: request.top_k]
        except Exception as exc:
            self._log(request, "hybrid", started=started, results_count=0, success=False, error=exc)
            raise
        self._log(request, "hybrid", started=started, results_count=len(results), success=True)
        return SearchResponse(
            query=request.query,
            results=results,
            latency_ms=(time.monotonic() - started) * 1000.0,
            search_type="hybrid",
            degraded_stages=degraded,
        )
