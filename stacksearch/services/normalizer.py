from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import re
import time
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from bs4 import BeautifulSoup

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import InputValidationError
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import ImageRef, NormalizedDocument
from stacksearch.persistence.repos.field_patterns import FieldPatternStore, StackOverrides


logger = logging.getLogger(__name__)


class FieldCategory(str, Enum):
    TITLE = "title"
    DESCRIPTION = "description"
    METADATA = "metadata"
    TEXT = "text"
    RICH_TEXT = "rich_text"
    EXCLUDED = "excluded"


# Administrative fields the CMS attaches to every entry and asset.
SYSTEM_FIELDS = frozenset(
    {
        "_version",
        "_in_progress",
        "_workflow",
        "ACL",
        "created_at",
        "updated_at",
        "created_by",
        "updated_by",
        "publish_details",
        "_metadata",
        "locale",
        "uid",
        "tags",
        "file_size",
        "filename",
        "content_type",
        "dimension",
        "parent_uid",
        "_content_type_uid",
        "url",
        "is_dir",
    }
)

MIN_TEXT_LENGTH = 15
TEXT_FIELD_MIN_LENGTH = 20
METADATA_MAX_LENGTH = 200

_TAG_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_ISO_TS_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
_PATH_RE = re.compile(r"^[/\\]")
_WS_RE = re.compile(r"\s+")
_IMG_EXT_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp)(\?.*)?$", re.IGNORECASE)
_CMS_IMAGE_HOST_RE = re.compile(r"images\.contentstack\.(com|io)", re.IGNORECASE)


@dataclass(frozen=True)
class FieldPatterns:
    """Field-name patterns per category, global plus content-type overrides.

    Patterns match case-insensitively anywhere in the field name, so
    ``name`` also classifies ``product_name``. The table is immutable;
    ``register_overrides`` returns a new one.
    """

    global_patterns: Mapping[FieldCategory, tuple[str, ...]]
    content_types: Mapping[str, Mapping[FieldCategory, tuple[str, ...]]] = field(default_factory=dict)

    def for_content_type(self, content_type: str | None) -> list[tuple[FieldCategory, tuple[str, ...]]]:
        # Content-type specific patterns are consulted before the global ones.
        ordered: list[tuple[FieldCategory, tuple[str, ...]]] = []
        specific = self.content_types.get(content_type or "", {})
        for category in (FieldCategory.TITLE, FieldCategory.DESCRIPTION, FieldCategory.METADATA):
            if specific.get(category):
                ordered.append((category, specific[category]))
        for category in (FieldCategory.TITLE, FieldCategory.DESCRIPTION, FieldCategory.METADATA):
            if self.global_patterns.get(category):
                ordered.append((category, self.global_patterns[category]))
        return ordered


DEFAULT_FIELD_PATTERNS = FieldPatterns(
    global_patterns=MappingProxyType(
        {
            FieldCategory.TITLE: ("title", "name", "heading", "headline", "subject", "label"),
            FieldCategory.DESCRIPTION: ("description", "content", "body", "text", "summary", "abstract", "excerpt"),
            FieldCategory.METADATA: ("category", "tag", "keyword", "brand", "type", "status", "priority"),
        }
    ),
    content_types=MappingProxyType(
        {
            "product": {
                FieldCategory.TITLE: ("title", "name", "product_name", "item_name"),
                FieldCategory.DESCRIPTION: ("description", "product_description", "details", "features", "benefits"),
                FieldCategory.METADATA: ("brand", "category", "price", "color", "size", "material", "sku"),
            },
            "article": {
                FieldCategory.TITLE: ("title", "headline", "subject"),
                FieldCategory.DESCRIPTION: ("content", "body", "text", "summary", "excerpt"),
                FieldCategory.METADATA: ("author", "category", "tags", "publish_date", "status"),
            },
            "page": {
                FieldCategory.TITLE: ("title", "page_title", "heading"),
                FieldCategory.DESCRIPTION: ("content", "body", "description", "text"),
                FieldCategory.METADATA: ("slug", "template", "status", "seo_title"),
            },
        }
    ),
)


# Only named categories take patterns; text and rich_text are derived from the value.
CONFIGURABLE_CATEGORIES = (FieldCategory.TITLE, FieldCategory.DESCRIPTION, FieldCategory.METADATA)
PATTERN_MAX_LENGTH = 100
FIELD_VALUE_PREVIEW_CHARS = 100


def validate_overrides(
    overrides: Mapping[FieldCategory | str, Iterable[str]],
    *,
    max_patterns: int | None = None,
) -> dict[FieldCategory, tuple[str, ...]]:
    """Check an override mapping and return it keyed by category with clean, unique patterns.

    Raises ``InputValidationError`` for unknown or derived categories, for
    values that are not lists of non-empty strings and when more than
    ``max_patterns`` patterns are submitted at once.
    """
    if not isinstance(overrides, Mapping) or not overrides:
        raise InputValidationError("patterns must be a non-empty object")
    cleaned: dict[FieldCategory, tuple[str, ...]] = {}
    total = 0
    for raw_category, names in overrides.items():
        try:
            category = FieldCategory(raw_category)
        except ValueError:
            raise InputValidationError(
                f"invalid category {raw_category}; valid categories are title, description, metadata"
            ) from None
        if category not in CONFIGURABLE_CATEGORIES:
            raise InputValidationError(f"cannot register patterns for category {category.value}")
        if isinstance(names, (str, bytes)) or not isinstance(names, Iterable):
            raise InputValidationError(f"patterns for category {category.value} must be a list")
        unique: list[str] = []
        for name in names:
            if not isinstance(name, str) or not name.strip():
                raise InputValidationError(f"patterns for category {category.value} must be non-empty strings")
            pattern = name.strip().lower()
            if len(pattern) > PATTERN_MAX_LENGTH:
                raise InputValidationError(f"pattern exceeds {PATTERN_MAX_LENGTH} characters")
            if pattern not in unique:
                unique.append(pattern)
        total += len(unique)
        cleaned[category] = tuple(unique)
    if max_patterns is not None and total > max_patterns:
        raise InputValidationError(f"at most {max_patterns} patterns per request")
    return cleaned


def register_overrides(
    patterns: FieldPatterns,
    content_type: str,
    overrides: Mapping[FieldCategory | str, Iterable[str]],
) -> FieldPatterns:
    # Appends to the content type's existing patterns and leaves the input untouched.
    if not content_type:
        raise InputValidationError("content type is required")
    merged_types = {key: dict(value) for key, value in patterns.content_types.items()}
    current = merged_types.setdefault(content_type, {})
    for category, names in validate_overrides(overrides).items():
        known = tuple(current.get(category, ()))
        current[category] = known + tuple(name for name in names if name not in known)
    return FieldPatterns(global_patterns=patterns.global_patterns, content_types=MappingProxyType(merged_types))


def merged_patterns(patterns: FieldPatterns, content_type: str | None) -> dict[str, list[str]]:
    # Content-type patterns first, then the global ones, without repeats.
    merged: dict[str, list[str]] = {category.value: [] for category in CONFIGURABLE_CATEGORIES}
    for category, names in patterns.for_content_type(content_type):
        bucket = merged[category.value]
        bucket.extend(name for name in names if name not in bucket)
    return merged


def _matches(field_name: str, pattern: str) -> bool:
    return pattern.lower() in field_name.lower()


def looks_like_noise(value: str) -> bool:
    """True for strings that are identifiers, timestamps, links or blobs rather than prose."""
    stripped = value.strip()
    if stripped.startswith("blt"):
        return True
    if _ISO_TS_RE.match(stripped) or _UUID_RE.match(stripped):
        return True
    if len(stripped) > 100 and _BASE64_RE.match(stripped):
        return True
    if _URL_RE.match(stripped) or _EMAIL_RE.match(stripped) or _PHONE_RE.match(stripped):
        return True
    return bool(_PATH_RE.match(stripped))


def is_content_value(field_name: str, value: Any, *, min_length: int = MIN_TEXT_LENGTH) -> bool:
    if field_name in SYSTEM_FIELDS:
        return False
    if isinstance(value, str):
        return len(value.strip()) >= min_length and not looks_like_noise(value)
    return isinstance(value, (dict, list)) and bool(value)


def strip_markup(text: str) -> str:
    if not _TAG_RE.search(text):
        return _WS_RE.sub(" ", text).strip()
    soup = BeautifulSoup(text, "html.parser")
    return _WS_RE.sub(" ", soup.get_text(" ", strip=True)).strip()


def classify_field(
    field_name: str,
    value: Any,
    content_type: str | None = None,
    patterns: FieldPatterns = DEFAULT_FIELD_PATTERNS,
) -> FieldCategory:
    if field_name in SYSTEM_FIELDS or value is None:
        return FieldCategory.EXCLUDED
    for category, names in patterns.for_content_type(content_type):
        if any(_matches(field_name, name) for name in names):
            return category
    if isinstance(value, str) and len(value.strip()) > TEXT_FIELD_MIN_LENGTH:
        return FieldCategory.TEXT
    if isinstance(value, (dict, list)) and value:
        return FieldCategory.RICH_TEXT
    return FieldCategory.EXCLUDED


def _is_rte_node(value: dict[str, Any]) -> bool:
    return isinstance(value.get("children"), list) and "type" in value


def _rte_text(node: Any) -> str:
    # JSON rich text splits a paragraph into styled leaves; join them before filtering.
    if isinstance(node, dict):
        if isinstance(node.get("text"), str):
            return node["text"]
        parts = [_rte_text(child) for child in node.get("children") or []]
        joined = "".join(parts)
        if node.get("type") in ("p", "li", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote"):
            joined += " "
        return joined
    if isinstance(node, list):
        return " ".join(_rte_text(child) for child in node)
    return ""


def _collect_strings(value: Any, field_name: str, min_length: int, out: list[str]) -> None:
    if isinstance(value, str):
        if not is_content_value(field_name, value, min_length=min_length):
            return
        cleaned = strip_markup(value)
        if len(cleaned) >= min_length:
            out.append(cleaned)
    elif isinstance(value, list):
        for item in value:
            _collect_strings(item, field_name, min_length, out)
    elif isinstance(value, dict):
        if _is_rte_node(value):
            text = _WS_RE.sub(" ", _rte_text(value)).strip()
            if len(text) >= min_length and not looks_like_noise(text):
                out.append(text)
            return
        for key, item in value.items():
            if key in SYSTEM_FIELDS:
                continue
            _collect_strings(item, key, min_length, out)


def _norm(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


_EXTRACTION_ORDER = (
    FieldCategory.TITLE,
    FieldCategory.DESCRIPTION,
    FieldCategory.METADATA,
    FieldCategory.TEXT,
    FieldCategory.RICH_TEXT,
)


def _fragments_by_category(
    entry: Mapping[str, Any],
    content_type: str | None,
    patterns: FieldPatterns,
) -> dict[FieldCategory, list[str]]:
    buckets: dict[FieldCategory, list[str]] = {category: [] for category in FieldCategory}
    for name, value in entry.items():
        category = classify_field(name, value, content_type, patterns)
        if category is FieldCategory.EXCLUDED:
            continue
        # Titles and descriptions are kept even when short.
        min_length = 1 if category in (FieldCategory.TITLE, FieldCategory.DESCRIPTION) else MIN_TEXT_LENGTH
        _collect_strings(value, name, min_length, buckets[category])
    return buckets


def extract_text(
    entry: Mapping[str, Any],
    content_type: str | None = None,
    patterns: FieldPatterns = DEFAULT_FIELD_PATTERNS,
) -> str:
    buckets = _fragments_by_category(entry, content_type, patterns)
    collected: list[str] = []
    seen: list[str] = []
    for category in _EXTRACTION_ORDER:
        for fragment in buckets[category]:
            key = _norm(fragment)
            if not key or any(key == prior or key in prior for prior in seen):
                continue
            seen.append(key)
            collected.append(fragment)
    return " ".join(collected).strip()


def extract_text_by_category(
    entry: Mapping[str, Any],
    content_type: str | None = None,
    patterns: FieldPatterns = DEFAULT_FIELD_PATTERNS,
) -> dict[str, str]:
    buckets = _fragments_by_category(entry, content_type, patterns)
    extracted = {category.value: " ".join(buckets[category]).strip() for category in _EXTRACTION_ORDER}
    extracted["full_text"] = extract_text(entry, content_type, patterns)
    return extracted


def _preview(value: Any) -> Any:
    if isinstance(value, str) and len(value) > FIELD_VALUE_PREVIEW_CHARS:
        return value[:FIELD_VALUE_PREVIEW_CHARS] + "..."
    return value


def analyze_fields(
    entry: Mapping[str, Any],
    content_type: str | None = None,
    patterns: FieldPatterns = DEFAULT_FIELD_PATTERNS,
) -> list[dict[str, Any]]:
    """Report how each top-level field of ``entry`` would be classified for embedding."""
    analysis: list[dict[str, Any]] = []
    for name, value in entry.items():
        category = classify_field(name, value, content_type, patterns)
        included = category is not FieldCategory.EXCLUDED
        analysis.append(
            {
                "field_name": name,
                "field_value": _preview(value),
                "category": category.value,
                "include": included,
                "priority": _EXTRACTION_ORDER.index(category) + 1 if included else None,
            }
        )
    return analysis


def extract_metadata(entry: Mapping[str, Any], exclude: Iterable[str] = ()) -> dict[str, Any]:
    excluded = set(exclude) | SYSTEM_FIELDS
    metadata: dict[str, Any] = {}
    for key, value in entry.items():
        if key in excluded or key.startswith("_"):
            continue
        if isinstance(value, bool):
            metadata[key] = value
        elif isinstance(value, (int, float)):
            metadata[key] = value
        elif isinstance(value, str):
            stripped = value.strip()
            if 0 < len(stripped) < METADATA_MAX_LENGTH and not looks_like_noise(stripped):
                metadata[key] = stripped
    return metadata


def _first_title(entry: Mapping[str, Any]) -> str | None:
    for name in ("title", "name", "heading", "headline", "subject"):
        value = entry.get(name)
        if isinstance(value, str) and value.strip():
            return strip_markup(value)[:METADATA_MAX_LENGTH]
    return None


def normalize_entry(
    entry: Mapping[str, Any],
    content_type: str,
    stack_api_key: str,
    *,
    patterns: FieldPatterns = DEFAULT_FIELD_PATTERNS,
    settings: Settings | None = None,
) -> NormalizedDocument | None:
    """Turn one CMS entry into an indexable document, or None when it has no text."""
    settings = settings or get_settings()
    if not isinstance(entry, Mapping):
        raise InputValidationError("entry must be an object")
    uid = entry.get("uid")
    if not isinstance(uid, str) or not uid:
        raise InputValidationError("entry is missing uid")
    text = extract_text(entry, content_type, patterns)
    if not text:
        return None
    bounded = text[: settings.document_text_max_chars]
    metadata = extract_metadata(entry)
    # System fields are merged last so entry fields can never shadow them.
    metadata.update(
        {
            "uid": uid,
            "content_type": content_type,
            "locale": entry.get("locale") or settings.cms_default_locale,
            "version": entry.get("_version") or 1,
            "stack_api_key": stack_api_key,
            "type": "text",
            "text": bounded,
        }
    )
    for stamp in ("created_at", "updated_at"):
        if isinstance(entry.get(stamp), str):
            metadata[stamp] = entry[stamp]
    title = _first_title(entry)
    if title:
        metadata["title"] = title
    return NormalizedDocument(id=uid, text=bounded, metadata=metadata)


def is_image_url(url: Any) -> bool:
    if not isinstance(url, str) or not _URL_RE.match(url):
        return False
    return bool(_IMG_EXT_RE.search(url) or _CMS_IMAGE_HOST_RE.search(url))


def _is_cms_image_asset(value: Mapping[str, Any]) -> bool:
    content_type = value.get("content_type")
    return (
        bool(value.get("uid"))
        and isinstance(value.get("url"), str)
        and isinstance(content_type, str)
        and content_type.startswith("image/")
    )


def _walk_images(value: Any, path: str, out: list[ImageRef]) -> None:
    if isinstance(value, str):
        if "<img" in value.lower():
            soup = BeautifulSoup(value, "html.parser")
            for tag in soup.find_all("img"):
                src = tag.get("src")
                if is_image_url(src):
                    out.append(
                        ImageRef(
                            url=src,
                            field_path=path,
                            kind="html_embedded",
                            metadata={"alt": tag.get("alt") or "", "asset_uid": tag.get("asset_uid") or ""},
                        )
                    )
        elif is_image_url(value):
            out.append(ImageRef(url=value, field_path=path, kind="direct_url"))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _walk_images(item, f"{path}[{index}]", out)
    elif isinstance(value, dict):
        if _is_cms_image_asset(value):
            out.append(
                ImageRef(
                    url=value["url"],
                    field_path=path,
                    kind="cms_asset",
                    metadata={
                        "asset_uid": value.get("uid"),
                        "title": value.get("title") or "",
                        "filename": value.get("filename") or "",
                        "content_type": value.get("content_type"),
                    },
                )
            )
            return
        for key, item in value.items():
            _walk_images(item, f"{path}.{key}" if path else key, out)


def extract_images(entry: Mapping[str, Any], max_images: int = 3) -> list[ImageRef]:
    found: list[ImageRef] = []
    _walk_images(dict(entry), "", found)
    unique: list[ImageRef] = []
    seen: set[str] = set()
    for ref in found:
        if ref.url in seen:
            continue
        seen.add(ref.url)
        unique.append(ref)
    return unique[: max(max_images, 0)]


class ContentNormalizer:
    """Normalizes entries with the field-pattern table of the entry's own stack.

    Each stack sees the default table plus the overrides stored for that
    stack key and nothing registered by another stack. Resolved tables are
    cached per stack for ``field_pattern_cache_ttl_s`` and dropped on every
    write from this process; other processes pick a write up once their
    cached copy expires. Without a store, overrides live only in this process.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        patterns: FieldPatterns | None = None,
        store: FieldPatternStore | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.defaults = patterns or DEFAULT_FIELD_PATTERNS
        self._store = store
        self._clock = clock or time.monotonic
        self._cache: dict[str, tuple[float, FieldPatterns]] = {}
        self._local: dict[str, StackOverrides] = {}

    async def _overrides(self, stack_api_key: str) -> StackOverrides:
        if self._store is None:
            return self._local.get(stack_api_key, {})
        return await self._store.load(stack_api_key)

    async def patterns_for(self, stack_api_key: str) -> FieldPatterns:
        now = self._clock()
        cached = self._cache.get(stack_api_key)
        if cached is not None and cached[0] > now:
            return cached[1]
        table = self.defaults
        for content_type, overrides in (await self._overrides(stack_api_key)).items():
            table = register_overrides(table, content_type, overrides)
        self._cache[stack_api_key] = (now + self._settings.field_pattern_cache_ttl_s, table)
        return table

    async def register_overrides(
        self,
        stack_api_key: str,
        content_type: str,
        overrides: Mapping[FieldCategory | str, Iterable[str]],
    ) -> dict[str, list[str]]:
        if not content_type or len(content_type) > PATTERN_MAX_LENGTH:
            raise InputValidationError("content type is required")
        cleaned = validate_overrides(overrides, max_patterns=self._settings.field_pattern_max_per_request)
        rows = {category.value: list(names) for category, names in cleaned.items()}
        if self._store is None:
            stored = self._local.setdefault(stack_api_key, {}).setdefault(content_type, {})
            added = 0
            for category, names in rows.items():
                bucket = stored.setdefault(category, [])
                fresh = [name for name in names if name not in bucket]
                bucket.extend(fresh)
                added += len(fresh)
        else:
            added = await self._store.add(stack_api_key, content_type, rows, datetime.now(timezone.utc))
        self._cache.pop(stack_api_key, None)
        logger.info(
            "field_patterns_registered stack=%s content_type=%s added=%s",
            mask_key(stack_api_key),
            content_type,
            added,
        )
        return await self.content_type_patterns(stack_api_key, content_type)

    async def reset_overrides(self, stack_api_key: str, content_type: str) -> int:
        if self._store is None:
            removed_types = self._local.get(stack_api_key, {}).pop(content_type, {})
            removed = sum(len(names) for names in removed_types.values())
        else:
            removed = await self._store.clear(stack_api_key, content_type)
        self._cache.pop(stack_api_key, None)
        logger.info(
            "field_patterns_reset stack=%s content_type=%s removed=%s",
            mask_key(stack_api_key),
            content_type,
            removed,
        )
        return removed

    async def content_type_patterns(self, stack_api_key: str, content_type: str) -> dict[str, list[str]]:
        return merged_patterns(await self.patterns_for(stack_api_key), content_type)

    async def all_patterns(self, stack_api_key: str) -> dict[str, dict[str, list[str]]]:
        table = await self.patterns_for(stack_api_key)
        return {content_type: merged_patterns(table, content_type) for content_type in sorted(table.content_types)}

    async def preview_extraction(
        self, stack_api_key: str, content_type: str, entry: Mapping[str, Any]
    ) -> dict[str, Any]:
        if not isinstance(entry, Mapping):
            raise InputValidationError("entry must be an object")
        table = await self.patterns_for(stack_api_key)
        return {
            "content_type": content_type,
            "extracted_text": extract_text_by_category(entry, content_type, table),
            "field_analysis": analyze_fields(entry, content_type, table),
        }

    async def normalize(
        self, entry: Mapping[str, Any], content_type: str, stack_api_key: str
    ) -> NormalizedDocument | None:
        patterns = await self.patterns_for(stack_api_key)
        return normalize_entry(entry, content_type, stack_api_key, patterns=patterns, settings=self._settings)

    def images(self, entry: Mapping[str, Any]) -> list[ImageRef]:
        return extract_images(entry, self._settings.indexing_max_images_per_entry)
