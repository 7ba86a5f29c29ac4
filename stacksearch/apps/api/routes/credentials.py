from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from stacksearch.apps.api.deps import AdminGuard, get_container, get_stack_api_key
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.core.logging import mask_key
from stacksearch.services.container import ServiceContainer


router = APIRouter(
    prefix="/credentials",
    tags=["credentials"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[AdminGuard],
)


class CredentialStateResponse(BaseModel):
    stack_api_key: str
    state: str
    expires_at: str | None = None
    last_used_at: str | None = None
    deactivated_at: str | None = None


class DeactivateResponse(BaseModel):
    stack_api_key: str
    deactivated: bool


class ActiveCredential(BaseModel):
    stack_api_key: str
    expires_at: str


class SweepResponse(BaseModel):
    total: int
    refreshed: int
    failed: int
    purged: int
    errors: list[dict[str, str]]


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@router.get("/state", response_model=SuccessEnvelope[CredentialStateResponse] | CredentialStateResponse)
async def credential_state(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    state = await container.credentials.credential_state(stack_api_key)
    record = await container.credential_store.find(stack_api_key)
    payload = CredentialStateResponse(
        stack_api_key=stack_api_key,
        state=state,
        expires_at=_iso(record.expires_at) if record else None,
        last_used_at=_iso(record.last_used_at) if record else None,
        deactivated_at=_iso(record.deactivated_at) if record else None,
    )
    return success_response(request=request, data=payload)


@router.post("/refresh", response_model=SuccessEnvelope[CredentialStateResponse] | CredentialStateResponse)
async def refresh_credential(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    record = await container.credentials.refresh(stack_api_key, force=True)
    payload = CredentialStateResponse(
        stack_api_key=stack_api_key,
        state="active" if record.is_active else "inactive",
        expires_at=_iso(record.expires_at),
        last_used_at=_iso(record.last_used_at),
    )
    return success_response(request=request, data=payload)


@router.post("/deactivate", response_model=SuccessEnvelope[DeactivateResponse] | DeactivateResponse)
async def deactivate_credential(
    request: Request,
    stack_api_key: str = Depends(get_stack_api_key),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    changed = await container.credentials.deactivate(stack_api_key)
    return success_response(request=request, data=DeactivateResponse(stack_api_key=stack_api_key, deactivated=changed))


@router.get("", response_model=SuccessEnvelope[list[ActiveCredential]] | list[ActiveCredential])
async def list_active_credentials(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    records = await container.credentials.list_active()
    # Admin listings never echo full tenant keys.
    items = [
        ActiveCredential(stack_api_key=mask_key(record.stack_api_key), expires_at=record.expires_at.isoformat())
        for record in records
    ]
    return success_response(request=request, data=items)


@router.get("/scheduler")
async def scheduler_status(request: Request, container: ServiceContainer = Depends(get_container)) -> dict:
    return success_response(request=request, data=container.scheduler.status())


@router.post("/scheduler/sweep", response_model=SuccessEnvelope[SweepResponse] | SweepResponse)
async def run_sweep(request: Request, container: ServiceContainer = Depends(get_container)) -> dict:
    result = await container.scheduler.run_sweep()
    return success_response(request=request, data=SweepResponse(**result.as_dict()))
