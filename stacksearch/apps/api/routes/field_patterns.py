from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stacksearch.apps.api.deps import get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.services.container import ServiceContainer


router = APIRouter(prefix="/field-patterns", tags=["field-patterns"], responses=DEFAULT_ERROR_RESPONSES)


class RegisterPatternsRequest(BaseModel):
    patterns: dict[str, list[str]]

    model_config = {"extra": "forbid"}


class PreviewExtractionRequest(BaseModel):
    entry: dict[str, Any]

    model_config = {"extra": "forbid"}


class ContentTypePatterns(BaseModel):
    content_type: str
    patterns: dict[str, list[str]]


class FieldAnalysis(BaseModel):
    field_name: str
    field_value: Any = None
    category: str
    include: bool
    priority: int | None = None


class ExtractionPreview(BaseModel):
    content_type: str
    extracted_text: dict[str, str]
    field_analysis: list[FieldAnalysis]


class ResetPatternsResponse(BaseModel):
    content_type: str
    removed: int


@router.get("", response_model=SuccessEnvelope[dict[str, dict[str, list[str]]]] | dict[str, dict[str, list[str]]])
async def list_patterns(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.credentials.get_valid_access_token(stack_api_key)
    return success_response(request=request, data=await container.normalizer.all_patterns(stack_api_key))


@router.get("/{content_type}", response_model=SuccessEnvelope[ContentTypePatterns] | ContentTypePatterns)
async def get_patterns(
    request: Request,
    content_type: str,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.credentials.get_valid_access_token(stack_api_key)
    patterns = await container.normalizer.content_type_patterns(stack_api_key, content_type)
    return success_response(request=request, data=ContentTypePatterns(content_type=content_type, patterns=patterns))


@router.post("/{content_type}", response_model=SuccessEnvelope[ContentTypePatterns] | ContentTypePatterns)
async def register_patterns(
    request: Request,
    body: RegisterPatternsRequest,
    content_type: str,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.credentials.get_valid_access_token(stack_api_key)
    patterns = await container.normalizer.register_overrides(stack_api_key, content_type, body.patterns)
    return success_response(request=request, data=ContentTypePatterns(content_type=content_type, patterns=patterns))


@router.delete("/{content_type}", response_model=SuccessEnvelope[ResetPatternsResponse] | ResetPatternsResponse)
async def reset_patterns(
    request: Request,
    content_type: str,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.credentials.get_valid_access_token(stack_api_key)
    removed = await container.normalizer.reset_overrides(stack_api_key, content_type)
    return success_response(request=request, data=ResetPatternsResponse(content_type=content_type, removed=removed))


@router.post("/{content_type}/preview", response_model=SuccessEnvelope[ExtractionPreview] | ExtractionPreview)
async def preview_extraction(
    request: Request,
    content_type: str,
    body: PreviewExtractionRequest,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    await container.credentials.get_valid_access_token(stack_api_key)
    preview = await container.normalizer.preview_extraction(stack_api_key, content_type, body.entry)
    return success_response(request=request, data=preview)
