from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


CredentialState = Literal["active", "refreshing", "inactive", "missing"]


@dataclass(frozen=True)
class TokenBundle:
    # Normalized token endpoint response for both grant types.
    access_token: str
    refresh_token: str | None
    expires_in: int | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    stack_api_key: str | None = None
    organization_uid: str | None = None


@dataclass(frozen=True)
class CredentialRecord:
    # Detached snapshot so callers never hold a live ORM row across awaits.
    stack_api_key: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    is_active: bool
    token_type: str = "Bearer"
    organization_uid: str | None = None
    last_used_at: datetime | None = None
    deactivated_at: datetime | None = None
    created_at: datetime | None = None
    refresh_rejected_at: datetime | None = None


@dataclass(frozen=True)
class IndexHandle:
    # Explicit index binding threaded into every vector-store call.
    stack_api_key: str
    index_name: str
    dimension: int
    ready: bool = True


@dataclass(frozen=True)
class NormalizedDocument:
    id: str
    text: str
    metadata: dict[str, Any]


@dataclass(frozen=True)
class VectorRecord:
    id: str
    values: list[float]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any]


@dataclass(frozen=True)
class RerankResult:
    index: int
    relevance_score: float


@dataclass(frozen=True)
class ImageRef:
    url: str
    field_path: str
    kind: Literal["cms_asset", "html_embedded", "direct_url"]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexingError:
    entry_id: str | None
    content_type: str | None
    error: str

    def as_dict(self) -> dict[str, Any]:
        return {"entry_id": self.entry_id, "content_type": self.content_type, "error": self.error}


@dataclass
class IndexingSummary:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    images_indexed: int = 0
    errors_list: list[IndexingError] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.indexed + self.skipped + self.failed

    @property
    def partial(self) -> bool:
        # Some documents failed while others made it in.
        return self.failed > 0 and (self.indexed + self.skipped) > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "indexed": self.indexed,
            "skipped": self.skipped,
            "failed": self.failed,
            "images_indexed": self.images_indexed,
            "total_processed": self.total_processed,
            "partial": self.partial,
            "errors_list": [item.as_dict() for item in self.errors_list],
        }


@dataclass(frozen=True)
class SearchRequest:
    stack_api_key: str
    query: str | None = None
    image: str | None = None
    top_k: int = 5
    filters: dict[str, Any] = field(default_factory=dict)
    environment: str | None = None
    locale: str | None = None
    rerank: bool = True
    enrich: bool = True
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass
class SearchHit:
    id: str
    content_type: str | None
    score: float
    rerank_score: float | None = None
    modality: str = "text"
    entry: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_type": self.content_type,
            "similarity": self.score,
            "rerank_score": self.rerank_score,
            "modality": self.modality,
            "entry": self.entry,
            "metadata": self.metadata,
        }


@dataclass
class SearchResponse:
    query: str | None
    results: list[SearchHit]
    latency_ms: float
    search_type: str = "semantic"
    reranked: bool = False
    degraded_stages: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def as_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "results": [hit.as_dict() for hit in self.results],
            "total": self.total,
            "search_type": self.search_type,
            "reranked": self.reranked,
            "degraded_stages": list(self.degraded_stages),
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass(frozen=True)
class SearchLogEntry:
    stack_api_key: str
    query: str
    results_count: int
    latency_ms: float
    success: bool
    search_type: str = "semantic"
    error_message: str | None = None
    environment: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    user_agent: str | None = None
    ip_address: str | None = None
