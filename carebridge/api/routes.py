from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request

from carebridge.api.guards import RateLimitGuard, require_admin_token
from carebridge.api.schemas import (
    CSRFTokenResponse,
    Envelope,
    HealthResponse,
    ListEntryRequest,
    ListSnapshot,
)
from carebridge.logging import get_logger
from carebridge.service.errors import ServerError
from carebridge.service.rate_limit import ClientAddressKey
from carebridge.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

ListName = Literal["whitelist", "blacklist"]

_global_limit = RateLimitGuard("global", ClientAddressKey())


@router.get("/healthz", response_model=Envelope)
async def healthz():
    return Envelope(status="ok", data=HealthResponse().model_dump())


@router.get("/v1/csrf-token", response_model=Envelope, dependencies=[Depends(_global_limit)])
async def csrf_token(request: Request):
    token = getattr(request.state, "csrf_token", None)
    if not token:
        # Only reachable when the path is exempted from CSRF protection
        raise ServerError("csrf token was not issued for this request")
    settings = get_runtime().settings
    payload = CSRFTokenResponse(
        token=token,
        expires_in=get_runtime().csrf.expires_in,
        header_name=settings.csrf_header_name,
        body_field=settings.csrf_body_field,
    )
    return Envelope(status="ok", data=payload.model_dump())


@router.get(
    "/v1/admin/rate-limit",
    response_model=Envelope,
    dependencies=[Depends(require_admin_token)],
)
async def list_rate_limit_entries():
    snapshot = ListSnapshot(**get_runtime().rate_limiter.lists.snapshot())
    return Envelope(status="ok", data=snapshot.model_dump())


@router.post(
    "/v1/admin/rate-limit/{list_name}",
    response_model=Envelope,
    dependencies=[Depends(require_admin_token)],
)
async def add_rate_limit_entry(list_name: ListName, body: ListEntryRequest):
    limiter = get_runtime().rate_limiter
    if list_name == "whitelist":
        limiter.whitelist(body.address)
    else:
        limiter.blacklist(body.address)
    logger.info("admin_rate_limit_list_updated", list_name=list_name, action="add", address=body.address)
    return Envelope(status="ok", data=ListSnapshot(**limiter.lists.snapshot()).model_dump())


@router.delete(
    "/v1/admin/rate-limit/{list_name}/{address}",
    response_model=Envelope,
    dependencies=[Depends(require_admin_token)],
)
async def remove_rate_limit_entry(list_name: ListName, address: str):
    limiter = get_runtime().rate_limiter
    if list_name == "whitelist":
        removed = limiter.remove_whitelist(address)
    else:
        removed = limiter.remove_blacklist(address)
    logger.info(
        "admin_rate_limit_list_updated",
        list_name=list_name,
        action="remove",
        address=address,
        removed=removed,
    )
    return Envelope(
        status="ok",
        data={"removed": removed, **ListSnapshot(**limiter.lists.snapshot()).model_dump()},
    )
