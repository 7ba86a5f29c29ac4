from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterator, Protocol

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import InputValidationError
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import (
    IndexHandle,
    IndexingError,
    IndexingSummary,
    NormalizedDocument,
    VectorRecord,
)
from stacksearch.providers.cms.contentstack import ContentstackClient
from stacksearch.providers.embeddings.base import EmbeddingProvider
from stacksearch.providers.vector.base import VectorStore
from stacksearch.services.index_router import TenantIndexRouter
from stacksearch.services.normalizer import ContentNormalizer
from stacksearch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class AccessTokenSource(Protocol):
    async def get_valid_access_token(self, stack_api_key: str) -> str: ...


def image_record_id(entry_uid: str, position: int) -> str:
    return f"{entry_uid}_image_{position}"


def asset_record_id(asset_uid: str) -> str:
    return f"asset_{asset_uid}"


def _batches(items: list[Any], size: int) -> Iterator[list[Any]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IndexingOrchestrator:
    """Fetch, normalize, embed and upsert CMS content into a tenant's own index.

    Failures are isolated per entry: a bad entry is counted and recorded in
    the capped error list while the rest of the batch continues. Only
    failures that precede the crawl (credential, index binding, listing the
    content) abort the run.
    """

    def __init__(
        self,
        *,
        credentials: AccessTokenSource,
        cms: ContentstackClient,
        router: TenantIndexRouter,
        normalizer: ContentNormalizer,
        embedder: EmbeddingProvider,
        store: VectorStore,
        settings: Settings | None = None,
    ) -> None:
        self._credentials = credentials
        self._cms = cms
        self._router = router
        self._normalizer = normalizer
        self._embedder = embedder
        self._store = store
        self._settings = settings or get_settings()

    def _record_error(self, summary: IndexingSummary, entry_id: str | None, content_type: str | None, exc: Exception) -> None:
        summary.failed += 1
        if len(summary.errors_list) < self._settings.indexing_error_list_cap:
            summary.errors_list.append(IndexingError(entry_id=entry_id, content_type=content_type, error=str(exc)))
        logger.warning("index_entry_failed entry=%s content_type=%s error=%s", entry_id, content_type, exc)

    async def index_all(
        self,
        stack_api_key: str,
        environment: str | None = None,
        *,
        content_type: str | None = None,
        locale: str | None = None,
        include_images: bool = False,
    ) -> IndexingSummary:
        await self._credentials.get_valid_access_token(stack_api_key)
        handle = await self._router.bind(stack_api_key)
        # Resolve the stack's field patterns up front so a lookup failure aborts the run, not each entry.
        await self._normalizer.patterns_for(stack_api_key)
        groups = await self._cms.fetch_all_entries(
            stack_api_key,
            environment=environment,
            content_type=content_type,
            locale=locale,
        )
        pending = [(group.content_type, entry) for group in groups for entry in group.entries]
        summary = IndexingSummary()
        logger.info("index_all_started stack=%s entries=%s", mask_key(stack_api_key), len(pending))

        pause_s = self._settings.indexing_batch_pause_ms / 1000.0
        batches = list(_batches(pending, self._settings.indexing_batch_size))
        for position, batch in enumerate(batches):
            await self._index_batch(handle, stack_api_key, batch, summary)
            if include_images:
                for ct, entry in batch:
                    summary.images_indexed += await self._index_images_quietly(handle, entry, ct)
            if position < len(batches) - 1:
                await asyncio.sleep(pause_s)

        increment_counter("indexing_runs_total")
        increment_counter("indexing_documents_indexed_total", summary.indexed)
        increment_counter("indexing_documents_failed_total", summary.failed)
        logger.info(
            "index_all_completed stack=%s indexed=%s skipped=%s failed=%s",
            mask_key(stack_api_key),
            summary.indexed,
            summary.skipped,
            summary.failed,
        )
        return summary

    async def _index_batch(
        self,
        handle: IndexHandle,
        stack_api_key: str,
        batch: list[tuple[str, dict[str, Any]]],
        summary: IndexingSummary,
    ) -> None:
        documents: list[tuple[str, NormalizedDocument]] = []
        for ct, entry in batch:
            try:
                document = await self._normalizer.normalize(entry, ct, stack_api_key)
            except Exception as exc:  # noqa: BLE001 - a malformed entry is a per-entry failure
                self._record_error(summary, entry.get("uid") if isinstance(entry, dict) else None, ct, exc)
                continue
            if document is None:
                summary.skipped += 1
                continue
            documents.append((ct, document))
        if not documents:
            return

        # One embedding call per batch; on failure retry entry by entry to isolate the bad one.
        try:
            vectors = await self._embedder.embed_texts(
                [document.text for _, document in documents], "search_document"
            )
            records = [
                VectorRecord(id=document.id, values=vector, metadata=document.metadata)
                for (_, document), vector in zip(documents, vectors)
            ]
            await self._store.upsert(handle, records)
            summary.indexed += len(records)
            return
        except Exception as exc:  # noqa: BLE001 - fall through to per-entry isolation
            logger.info("index_batch_fallback stack=%s size=%s error=%s", mask_key(stack_api_key), len(documents), exc)

        for ct, document in documents:
            try:
                await self._upsert_document(handle, document)
                summary.indexed += 1
            except Exception as exc:  # noqa: BLE001 - isolate per-document failures
                self._record_error(summary, document.id, ct, exc)

    async def _upsert_document(self, handle: IndexHandle, document: NormalizedDocument) -> None:
        vectors = await self._embedder.embed_texts([document.text], "search_document")
        await self._store.upsert(handle, [VectorRecord(id=document.id, values=vectors[0], metadata=document.metadata)])

    async def index_entry(self, entry: dict[str, Any], content_type: str, stack_api_key: str) -> bool:
        handle = await self._router.bind(stack_api_key)
        document = await self._normalizer.normalize(entry, content_type, stack_api_key)
        if document is None:
            return False
        await self._upsert_document(handle, document)
        return True

    async def remove_entry(self, entry_id: str, stack_api_key: str) -> bool:
        if not entry_id:
            raise InputValidationError("entry id is required")
        handle = await self._router.bind(stack_api_key)
        # Image records derived from the entry go with it; deleting absent ids is a no-op.
        ids = [entry_id] + [
            image_record_id(entry_id, position)
            for position in range(self._settings.indexing_max_images_per_entry)
        ]
        await self._store.delete(handle, ids)
        return True

    async def update_entry(self, entry: dict[str, Any], content_type: str, stack_api_key: str) -> bool:
        uid = entry.get("uid") if isinstance(entry, dict) else None
        if not uid:
            raise InputValidationError("entry is missing uid")
        if self._store.supports_atomic_upsert:
            handle = await self._router.bind(stack_api_key)
            document = await self._normalizer.normalize(entry, content_type, stack_api_key)
            if document is None:
                # Content was emptied out; the stale vector must not keep matching.
                await self._store.delete(handle, [uid])
                return False
            await self._upsert_document(handle, document)
            return True
        # Non-atomic fallback: there is a brief window where the entry is absent.
        await self.remove_entry(uid, stack_api_key)
        return await self.index_entry(entry, content_type, stack_api_key)

    async def _index_images_quietly(self, handle: IndexHandle, entry: dict[str, Any], content_type: str) -> int:
        try:
            return await self._index_images(handle, entry, content_type)
        except Exception as exc:  # noqa: BLE001 - image indexing never fails the text run
            logger.warning("index_images_failed entry=%s error=%s", entry.get("uid"), exc)
            return 0

    async def _index_images(self, handle: IndexHandle, entry: dict[str, Any], content_type: str) -> int:
        uid = entry.get("uid")
        if not uid:
            raise InputValidationError("entry is missing uid")
        title = entry.get("title") if isinstance(entry.get("title"), str) else None
        records: list[VectorRecord] = []
        refs = self._normalizer.images(entry)
        for position, ref in enumerate(refs):
            try:
                vector = await self._embedder.embed_image(ref.url)
            except Exception as exc:  # noqa: BLE001 - skip unreadable images
                logger.info("index_image_skipped entry=%s position=%s error=%s", uid, position, exc)
                continue
            metadata: dict[str, Any] = {
                "uid": uid,
                "entry_uid": uid,
                "content_type": content_type,
                "stack_api_key": handle.stack_api_key,
                "locale": entry.get("locale") or self._settings.cms_default_locale,
                "type": "image",
                "image_url": ref.url,
                "image_kind": ref.kind,
                "field_path": ref.field_path,
            }
            if title:
                metadata["title"] = title[:200]
            for key in ("alt", "asset_uid"):
                if ref.metadata.get(key):
                    metadata[key] = ref.metadata[key]
            records.append(VectorRecord(id=image_record_id(uid, position), values=vector, metadata=metadata))
        if records:
            await self._store.upsert(handle, records)
        # Positions past the entry's current image count belong to images it no longer has.
        stale = [
            image_record_id(uid, position)
            for position in range(len(refs), self._settings.indexing_max_images_per_entry)
        ]
        if stale:
            await self._store.delete(handle, stale)
        return len(records)

    async def index_entry_images(self, entry: dict[str, Any], content_type: str, stack_api_key: str) -> int:
        handle = await self._router.bind(stack_api_key)
        return await self._index_images(handle, entry, content_type)

    async def index_asset(self, asset: dict[str, Any], stack_api_key: str) -> bool:
        uid = asset.get("uid")
        url = asset.get("url")
        asset_type = asset.get("content_type") or ""
        if not uid or not isinstance(url, str):
            raise InputValidationError("asset is missing uid or url")
        if not asset_type.startswith("image/"):
            return False
        handle = await self._router.bind(stack_api_key)
        vector = await self._embedder.embed_image(url)
        metadata = {
            "uid": asset_record_id(uid),
            "asset_uid": uid,
            "content_type": "asset",
            "stack_api_key": stack_api_key,
            "type": "image",
            "image_url": url,
            "image_kind": "cms_asset",
            "title": str(asset.get("title") or asset.get("filename") or "")[:200],
        }
        await self._store.upsert(handle, [VectorRecord(id=asset_record_id(uid), values=vector, metadata=metadata)])
        return True

    async def remove_asset(self, asset_uid: str, stack_api_key: str) -> bool:
        if not asset_uid:
            raise InputValidationError("asset uid is required")
        handle = await self._router.bind(stack_api_key)
        await self._store.delete(handle, [asset_record_id(asset_uid)])
        return True
