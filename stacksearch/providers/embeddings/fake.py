from __future__ import annotations

import hashlib
import math
import re

from stacksearch.core.config import EMBED_DIM
from stacksearch.core.errors import ProviderUnavailableError
from stacksearch.providers.embeddings.base import InputType


_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _bucket(token: str, dimension: int) -> int:
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % dimension


def hashed_vector(text: str, dimension: int = EMBED_DIM) -> list[float]:
    # Bag-of-words hashing: shared tokens give positive cosine similarity.
    values = [0.0] * dimension
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        tokens = [text or "empty"]
    for token in tokens:
        values[_bucket(token, dimension)] += 1.0
    norm = math.sqrt(sum(value * value for value in values)) or 1.0
    return [value / norm for value in values]


class FakeEmbeddingProvider:
    def __init__(self, dimension: int = EMBED_DIM, fail_on: set[str] | None = None) -> None:
        # Deterministic vectors keep tests stable without external calls.
        self.dimension = dimension
        self._fail_on = fail_on or set()
        self.calls: list[tuple[str, int]] = []

    def fail_for(self, marker: str) -> None:
        # Any text containing the marker raises, to exercise per-entry failure isolation.
        self._fail_on.add(marker)

    async def embed_texts(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        self.calls.append((input_type, len(texts)))
        for text in texts:
            if any(marker in text for marker in self._fail_on):
                raise ProviderUnavailableError("fake embedding failure")
        return [hashed_vector(text, self.dimension) for text in texts]

    async def embed_image(self, image: str) -> list[float]:
        self.calls.append(("image", 1))
        if any(marker in image for marker in self._fail_on):
            raise ProviderUnavailableError("fake image embedding failure")
        return hashed_vector(f"image {image}", self.dimension)
