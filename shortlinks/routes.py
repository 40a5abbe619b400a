"""FastAPI route definitions for the short-link REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200) or (503) when the store is not connected

    POST   /urls
        ├─ LinkCreate (request body)
        └─ LinkCreated (201) or 400/401/409/429/503/504

    GET    /urls?page&limit&sortBy&sortOrder
        └─ LinkPage (200) or 400/503

    GET    /urls/:code
        └─ LinkOut (200) or 404

    PATCH  /urls/:code
        ├─ LinkUpdate (request body)
        └─ LinkOut (200) or 400/403/404

    DELETE /urls/:code
        └─ MessageResponse (200) or 403/404

    GET    /:code
        └─ 302 Redirect or 404

Key Behaviours
===============
- Handlers only translate HTTP to allocator calls; all policy lives in
  ShortLinkAllocator and errors are rendered by the handlers in main.py.
- The caller's owner id comes from an optional bearer token.
- /{code} is registered last so it never shadows the API paths.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse

from shortlinks.allocator import ShortLinkAllocator
from shortlinks.dependencies import (
    RequestContext,
    ServiceManager,
    enforce_rate_limit,
    get_allocator,
    get_request_context,
    get_service_manager,
    require_owner_if_configured,
)
from shortlinks.enums import ConnectionState, HealthStatus, SortField, SortOrder
from shortlinks.schemas import (
    ErrorResponse,
    HealthResponse,
    LinkCreate,
    LinkCreated,
    LinkOut,
    LinkPage,
    LinkUpdate,
    MessageResponse,
)

__all__ = ["router"]

router = APIRouter()

_ERRORS = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 429, 503, 504)}
_PROTECTED = [Depends(enforce_rate_limit), Depends(require_owner_if_configured)]


@router.get("/health", response_model=HealthResponse, tags=["health"], responses={503: {"model": HealthResponse}})
async def health_check(manager: ServiceManager = Depends(get_service_manager)):
    state = manager.connector.state
    status = HealthStatus.HEALTHY if state is ConnectionState.CONNECTED else HealthStatus.UNHEALTHY
    body = HealthResponse(status=status, store=state)
    if status is HealthStatus.UNHEALTHY:
        manager.logger.warning(f"Health check failed: store is {state.value}")
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body


@router.post(
    "/urls",
    response_model=LinkCreated,
    status_code=201,
    tags=["urls"],
    responses=_ERRORS,
    dependencies=_PROTECTED,
)
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> LinkCreated:
    ctx.logger.info(
        f"Short link requested for: {payload.original_url}",
        extra={"operation": "allocate", "custom_code": payload.custom_code},
    )
    link = await allocator.allocate(
        payload.original_url,
        custom_code=payload.custom_code,
        expires_in_days=payload.expires_in,
        owner_id=ctx.owner_id,
    )
    ctx.logger.info(
        f"Short link created: {link.code}",
        extra={"operation": "allocate", "short_code": link.code, "duration_ms": ctx.get_duration()},
    )
    return LinkCreated.from_model(link, ctx.settings.BASE_URL)


@router.get("/urls", response_model=LinkPage, tags=["urls"], responses=_ERRORS, dependencies=_PROTECTED)
async def list_links(
    page: int = Query(1),
    limit: int = Query(10),
    sort_by: SortField = Query(SortField.CREATED_AT, alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.DESC, alias="sortOrder"),
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> LinkPage:
    links, total = await allocator.list_links(
        owner_id=ctx.owner_id,
        page=page,
        page_size=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    ctx.logger.info(f"Listed {len(links)} of {total} short links (page {page})")
    return LinkPage.build(links, total, page, limit, ctx.settings.BASE_URL)


@router.get("/urls/{code}", response_model=LinkOut, tags=["urls"], responses=_ERRORS)
async def get_link_stats(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> LinkOut:
    link = await allocator.describe(code)
    return LinkOut.from_model(link, ctx.settings.BASE_URL)


@router.patch("/urls/{code}", response_model=LinkOut, tags=["urls"], responses=_ERRORS, dependencies=_PROTECTED)
async def update_link(
    code: str,
    payload: LinkUpdate,
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> LinkOut:
    link = await allocator.update(
        code,
        ctx.owner_id,
        target_url=payload.original_url,
        expires_in_days=payload.expires_in,
    )
    return LinkOut.from_model(link, ctx.settings.BASE_URL)


@router.delete(
    "/urls/{code}",
    response_model=MessageResponse,
    tags=["urls"],
    responses=_ERRORS,
    dependencies=_PROTECTED,
)
async def delete_link(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> MessageResponse:
    await allocator.delete(code, ctx.owner_id)
    return MessageResponse(message="Short link deleted successfully")


@router.get("/{code}", tags=["redirect"], response_class=RedirectResponse, status_code=302, responses=_ERRORS)
async def redirect_to_target(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    allocator: ShortLinkAllocator = Depends(get_allocator),
) -> RedirectResponse:
    link = await allocator.resolve(code)
    ctx.logger.info(
        f"Redirect: {code} -> {link.target_url}",
        extra={
            "operation": "redirect",
            "short_code": code,
            "clicks": link.clicks,
            "duration_ms": ctx.get_duration(),
        },
    )
    return RedirectResponse(url=link.target_url, status_code=302)
