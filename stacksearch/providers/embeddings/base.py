from __future__ import annotations

from typing import Literal, Protocol


# Asymmetric embedding models encode stored documents and queries differently.
InputType = Literal["search_document", "search_query"]


class EmbeddingProvider(Protocol):
    dimension: int

    async def embed_texts(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        ...

    async def embed_image(self, image: str) -> list[float]:
        ...
