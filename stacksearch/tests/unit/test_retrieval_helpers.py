from __future__ import annotations

import pytest

from stacksearch.core.errors import InputValidationError
from stacksearch.domain.types import SearchHit
from stacksearch.services.retrieval import build_metadata_filter, candidate_count, fuse_results


def test_metadata_filter_drops_empty_values_and_adds_modality() -> None:
    result = build_metadata_filter(
        {"brand": "Acme", "color": ["red", "", None], "size": None, "tags": [], "notes": "", "price": 10}
    )
    assert result == {
        "brand": {"$eq": "Acme"},
        "color": {"$in": ["red"]},
        "price": {"$eq": 10},
        "type": {"$eq": "text"},
    }


def test_metadata_filter_cannot_override_reserved_keys() -> None:
    result = build_metadata_filter({"type": "image", "stack_api_key": "blt-other"}, modality="image")
    assert result == {"type": {"$eq": "image"}}


def test_metadata_filter_caps_filter_count() -> None:
    filters = {f"field_{n}": "x" for n in range(4)}
    assert len(build_metadata_filter(filters, max_filters=4)) == 5
    with pytest.raises(InputValidationError):
        build_metadata_filter(filters, max_filters=3)


def test_metadata_filter_rejects_nested_values() -> None:
    with pytest.raises(InputValidationError):
        build_metadata_filter({"brand": {"$ne": "Acme"}})
    with pytest.raises(InputValidationError):
        build_metadata_filter({"brand": [{"name": "Acme"}]})


@pytest.mark.parametrize(
    ("top_k", "cap", "expected"),
    [(5, 20, 10), (15, 20, 20), (30, 20, 30), (1, 20, 2)],
)
def test_candidate_count(top_k: int, cap: int, expected: int) -> None:
    assert candidate_count(top_k, cap) == expected


def _hit(record_id: str, score: float, uid: str | None = None, modality: str = "text") -> SearchHit:
    metadata = {"uid": uid} if uid else {}
    return SearchHit(id=record_id, content_type="product", score=score, modality=modality, metadata=metadata)


def test_fuse_results_weights_and_dedupes_by_source_entry() -> None:
    text_hits = [_hit("shoe", 0.9, "shoe"), _hit("sock", 0.5, "sock")]
    image_hits = [_hit("shoe_image_0", 0.95, "shoe", "image"), _hit("hat_image_0", 0.8, "hat", "image")]

    fused = fuse_results(text_hits, image_hits, text_weight=0.7, image_weight=0.3, top_k=10)

    assert [hit.id for hit in fused] == ["shoe", "sock", "hat_image_0"]
    assert fused[0].score == pytest.approx(0.63)
    assert fused[2].score == pytest.approx(0.24)


def test_fuse_results_keeps_best_fused_score_and_truncates() -> None:
    text_hits = [_hit("shoe", 0.2, "shoe")]
    image_hits = [_hit("shoe_image_0", 0.9, "shoe", "image"), _hit("asset_1", 0.1)]

    fused = fuse_results(text_hits, image_hits, text_weight=0.5, image_weight=0.5, top_k=1)

    assert len(fused) == 1
    assert fused[0].id == "shoe_image_0"
    assert fused[0].modality == "image"
