from __future__ import annotations

import base64

import httpx

from stacksearch.core.errors import InputValidationError
from stacksearch.providers.http import send_translated


MAX_IMAGE_BYTES = 5 * 1024 * 1024
_ALLOWED_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif"}


def is_data_uri(image: str) -> bool:
    return image.startswith("data:image/")


def bytes_to_data_uri(content: bytes, content_type: str | None) -> str:
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type == "image/jpg":
        media_type = "image/jpeg"
    if media_type not in _ALLOWED_TYPES:
        raise InputValidationError(f"unsupported image content type: {media_type or 'unknown'}")
    if not content:
        raise InputValidationError("image is empty")
    if len(content) > MAX_IMAGE_BYTES:
        raise InputValidationError("image exceeds the 5MB limit")
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


async def image_to_data_uri(http_client: httpx.AsyncClient, image: str) -> str:
    # The embedding API only accepts inline images; remote URLs are fetched first.
    if is_data_uri(image):
        return image
    if not image.startswith(("http://", "https://")):
        raise InputValidationError("image must be an http(s) URL or a data URI")
    response = await send_translated("image.fetch", lambda: http_client.get(image, follow_redirects=True))
    return bytes_to_data_uri(response.content, response.headers.get("content-type"))
