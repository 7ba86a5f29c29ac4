from __future__ import annotations

import pytest

from stacksearch.core.errors import InputValidationError
from stacksearch.services.normalizer import (
    DEFAULT_FIELD_PATTERNS,
    ContentNormalizer,
    FieldCategory,
    analyze_fields,
    classify_field,
    extract_images,
    extract_metadata,
    extract_text,
    extract_text_by_category,
    is_content_value,
    looks_like_noise,
    merged_patterns,
    normalize_entry,
    register_overrides,
    strip_markup,
    validate_overrides,
)


def _shoe() -> dict:
    return {
        "uid": "blt0001",
        "title": "Trail Runner Pro",
        "description": "<p>A lightweight shoe built for <b>long distance</b> trail running.</p>",
        "brand": "Acme",
        "price": 129.99,
        "in_stock": True,
        "locale": "en-us",
        "_version": 3,
        "created_at": "2024-05-01T10:00:00.000Z",
        "updated_at": "2024-05-02T10:00:00.000Z",
        "ACL": {},
    }


def test_product_entry_puts_title_then_description_in_text(settings) -> None:
    doc = normalize_entry(_shoe(), "product", "blt-stack", settings=settings)

    assert doc is not None
    assert doc.id == "blt0001"
    assert doc.text == "Trail Runner Pro A lightweight shoe built for long distance trail running."
    assert "Acme" not in doc.text
    assert doc.metadata["brand"] == "Acme"
    assert doc.metadata["price"] == 129.99
    assert doc.metadata["in_stock"] is True
    assert doc.metadata["uid"] == "blt0001"
    assert doc.metadata["content_type"] == "product"
    assert doc.metadata["stack_api_key"] == "blt-stack"
    assert doc.metadata["version"] == 3
    assert doc.metadata["type"] == "text"
    assert doc.metadata["title"] == "Trail Runner Pro"
    assert "ACL" not in doc.metadata


def test_entry_fields_cannot_shadow_system_metadata(settings) -> None:
    entry = _shoe() | {"stack_api_key": "blt-other", "type": "image"}
    doc = normalize_entry(entry, "product", "blt-stack", settings=settings)
    assert doc.metadata["stack_api_key"] == "blt-stack"
    assert doc.metadata["type"] == "text"


def test_entry_without_text_is_skipped(settings) -> None:
    entry = {"uid": "blt0002", "_version": 1, "created_at": "2024-05-01T10:00:00.000Z", "sku": "blt99"}
    assert normalize_entry(entry, "product", "blt-stack", settings=settings) is None


def test_entry_without_uid_is_rejected(settings) -> None:
    with pytest.raises(InputValidationError):
        normalize_entry({"title": "No identifier here"}, "product", "blt-stack", settings=settings)


@pytest.mark.parametrize(
    "value",
    [
        "blt4f2a9c1d0e",
        "2024-05-01T10:00:00.000Z",
        "0f8fad5b-d9cb-469f-a165-70867728950e",
        "https://example.com/products/trail-runner",
        "support@example.com",
        "+14155550123",
        "/var/data/exports/file.json",
        "QUJD" * 40,
    ],
)
def test_noise_strings_are_not_content(value: str) -> None:
    assert looks_like_noise(value) is True
    assert is_content_value("notes", value) is False


def test_short_and_system_values_are_not_content() -> None:
    assert is_content_value("summary", "too short") is False
    assert is_content_value("uid", "a perfectly readable sentence") is False
    assert is_content_value("summary", "a perfectly readable sentence") is True


def test_strip_markup_only_parses_when_tags_present() -> None:
    assert strip_markup("<p>Hello <b>world</b></p>") == "Hello world"
    assert strip_markup("plain   text\nwith  spaces") == "plain text with spaces"


def test_classify_field_uses_content_type_patterns() -> None:
    assert classify_field("product_name", "Trail Runner", "product") is FieldCategory.TITLE
    assert classify_field("benefits", "Grippy outsole", "product") is FieldCategory.DESCRIPTION
    assert classify_field("brand", "Acme", "product") is FieldCategory.METADATA
    assert classify_field("uid", "blt0001", "product") is FieldCategory.EXCLUDED
    assert classify_field("notes", "Hand stitched in small batches by our team.") is FieldCategory.TEXT
    assert classify_field("sections", [{"heading": "Fit"}]) is FieldCategory.RICH_TEXT
    assert classify_field("sku", "AB-1") is FieldCategory.EXCLUDED


def test_register_overrides_returns_new_table() -> None:
    patterns = register_overrides(DEFAULT_FIELD_PATTERNS, "recipe", {"title": ["dish"]})

    assert classify_field("dish", "Pad thai", "recipe", patterns) is FieldCategory.TITLE
    assert classify_field("dish", "Pad thai", "recipe") is FieldCategory.EXCLUDED
    assert "recipe" not in DEFAULT_FIELD_PATTERNS.content_types


def test_register_overrides_rejects_derived_categories() -> None:
    with pytest.raises(InputValidationError):
        register_overrides(DEFAULT_FIELD_PATTERNS, "recipe", {"excluded": ["secret"]})


@pytest.mark.asyncio
async def test_normalizer_overrides_apply_to_later_entries(settings) -> None:
    normalizer = ContentNormalizer(settings=settings)
    entry = {"uid": "blt0003", "dish": "Pad thai"}
    assert await normalizer.normalize(entry, "recipe", "blt-stack") is None

    await normalizer.register_overrides("blt-stack", "recipe", {FieldCategory.TITLE: ["dish"]})

    doc = await normalizer.normalize(entry, "recipe", "blt-stack")
    assert doc is not None
    assert doc.text == "Pad thai"
    assert await normalizer.normalize(entry, "recipe", "blt-other") is None


def test_rich_text_leaves_are_joined_before_filtering() -> None:
    entry = {
        "uid": "blt0004",
        "title": "Care guide",
        "body": {
            "type": "doc",
            "uid": "blt-doc",
            "children": [
                {
                    "type": "p",
                    "children": [
                        {"text": "Rinse "},
                        {"text": "gently", "bold": True},
                        {"text": " after muddy runs."},
                    ],
                }
            ],
        },
    }
    assert extract_text(entry, "article") == "Care guide Rinse gently after muddy runs."


def test_duplicate_fragments_are_collected_once() -> None:
    entry = {
        "uid": "blt0005",
        "title": "Trail Runner Pro",
        "description": "Built for long distance trail running.",
        "overview": "Built for long distance trail running.",
        "features": ["Built for long distance trail running.", "Rock plate protects the forefoot."],
    }
    text = extract_text(entry, "product")
    assert text.count("Built for long distance trail running.") == 1
    assert text.endswith("Rock plate protects the forefoot.")


def test_extract_metadata_keeps_short_scalars() -> None:
    metadata = extract_metadata(
        {
            "color": "red",
            "rating": 4,
            "featured": False,
            "long": "x" * 250,
            "nested": {"a": 1},
            "_internal": "hidden",
            "homepage": "https://example.com",
        },
        exclude=["rating"],
    )
    assert metadata == {"color": "red", "featured": False}


def test_extract_images_finds_assets_embedded_and_direct_urls() -> None:
    entry = {
        "uid": "blt0006",
        "hero": {
            "uid": "bltasset1",
            "url": "https://images.contentstack.io/v3/assets/stack/bltasset1/hero.png",
            "content_type": "image/png",
            "filename": "hero.png",
            "title": "Hero",
        },
        "body": '<p>On the trail <img src="https://cdn.example.com/a.jpg" alt="trail"></p>',
        "gallery": ["https://cdn.example.com/b.webp", "https://cdn.example.com/a.jpg"],
        "link": "https://example.com/page",
    }

    images = extract_images(entry, max_images=5)

    assert [image.kind for image in images] == ["cms_asset", "html_embedded", "direct_url"]
    assert images[0].metadata["asset_uid"] == "bltasset1"
    assert images[1].metadata["alt"] == "trail"
    assert images[2].url == "https://cdn.example.com/b.webp"
    assert images[2].field_path == "gallery[0]"
    assert len(extract_images(entry, max_images=2)) == 2


def test_validate_overrides_rejects_bad_input() -> None:
    with pytest.raises(InputValidationError):
        validate_overrides({"summary": ["blurb"]})
    with pytest.raises(InputValidationError):
        validate_overrides({"title": "dish"})
    with pytest.raises(InputValidationError):
        validate_overrides({"title": ["  "]})
    with pytest.raises(InputValidationError):
        validate_overrides({})
    with pytest.raises(InputValidationError):
        validate_overrides({"title": ["a", "b", "c"]}, max_patterns=2)

    assert validate_overrides({"title": [" dish ", "dish", "course"]}) == {FieldCategory.TITLE: ("dish", "course")}


def test_merged_patterns_put_content_type_patterns_first() -> None:
    merged = merged_patterns(DEFAULT_FIELD_PATTERNS, "product")

    assert merged["title"][:4] == ["title", "name", "product_name", "item_name"]
    assert merged["title"].count("title") == 1
    assert "heading" in merged["title"]
    assert set(merged) == {"title", "description", "metadata"}


def test_extraction_preview_reports_categories_and_truncates_values() -> None:
    entry = _shoe()
    entry["notes"] = "Stitched by hand. " * 10

    extracted = extract_text_by_category(entry, "product")
    analysis = {item["field_name"]: item for item in analyze_fields(entry, "product")}

    assert extracted["title"] == "Trail Runner Pro"
    assert "long distance" in extracted["description"]
    assert extracted["full_text"].startswith("Trail Runner Pro")
    assert analysis["title"]["category"] == "title"
    assert analysis["title"]["priority"] == 1
    assert analysis["uid"]["include"] is False
    assert analysis["uid"]["priority"] is None
    assert analysis["notes"]["category"] == "text"
    assert analysis["notes"]["field_value"].endswith("...")
    assert len(analysis["notes"]["field_value"]) == 103
