from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from stacksearch.apps.api.deps import get_container
from stacksearch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stacksearch.apps.api.response import SuccessEnvelope, success_response
from stacksearch.core.logging import mask_key
from stacksearch.services.container import ServiceContainer
from stacksearch.services.resilience import best_effort


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oauth", tags=["oauth"], responses=DEFAULT_ERROR_RESPONSES)


class InstallResponse(BaseModel):
    stack_api_key: str
    status: str
    expires_at: str


@router.get("/authorize", include_in_schema=True)
async def authorize(
    state: str | None = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> RedirectResponse:
    return RedirectResponse(url=container.oauth.authorize_url(state), status_code=302)


@router.get("/callback", response_model=SuccessEnvelope[InstallResponse] | InstallResponse)
async def callback(
    request: Request,
    code: str = Query(..., min_length=1),
    container: ServiceContainer = Depends(get_container),
):
    bundle = await container.oauth.exchange_code(code)
    stack_api_key = bundle.stack_api_key or ""
    record = await container.credentials.save_or_update(stack_api_key, bundle)
    # Index provisioning can take minutes; the install completes without waiting for it.
    best_effort(container.router.ensure_index(stack_api_key), name="install_ensure_index")
    logger.info("stack_installed stack=%s", mask_key(stack_api_key))
    redirect_url = container.settings.oauth_success_redirect_url
    if redirect_url:
        return RedirectResponse(url=redirect_url, status_code=302)
    payload = InstallResponse(
        stack_api_key=stack_api_key,
        status="authorized",
        expires_at=record.expires_at.isoformat(),
    )
    return success_response(request=request, data=payload)
