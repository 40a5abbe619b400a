"""FastAPI application entry point for the short-link service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │   uvicorn    │
    │   startup    │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ create_app() │  ServiceManager on app.state
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │  connector.start() (background retry/backoff)
    │ startup      │  sweeper + rate limiter
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │  503 STORE_UNAVAILABLE until connected
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │  sweeper.stop(), redis close,
    │ shutdown     │  connector.close()
    └──────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn shortlinks.main:app --host 0.0.0.0 --port 8000

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8000/urls \
         -H "Content-Type: application/json" \
         -d '{"originalUrl": "https://example.com", "expiresIn": 7}'

Key Behaviours
===============
- The server starts accepting requests before the store is connected; until
  then store-backed routes answer 503 and /health reports unhealthy.
- A permanently failed store connection is surfaced through /health (503);
  the hosting supervisor decides whether to restart the process.
- Every error body is {"status": "error", "code", "message", "retryable"}.
  retryable is true when resending the same request may succeed. Unexpected
  errors are logged with their traceback and masked outside development.
"""

__all__ = ["app", "create_app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from shortlinks.config import Settings, get_settings
from shortlinks.dependencies import ServiceManager
from shortlinks.exceptions import InvalidInputError, ShortLinkError
from shortlinks.routes import router
from shortlinks.schemas import ErrorResponse


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    manager: ServiceManager = app.state.service_manager
    # Startup
    await manager.initialize()
    yield
    # Shutdown
    await manager.cleanup()


def _error_response(status_code: int, code: str, message: str, retryable: bool = False) -> JSONResponse:
    body = ErrorResponse(code=code, message=message, retryable=retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def shortlink_error_handler(request: Request, exc: ShortLinkError) -> JSONResponse:
    return _error_response(exc.status_code, exc.code, exc.message, exc.retryable)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return _error_response(InvalidInputError.status_code, InvalidInputError.code, message)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    manager: ServiceManager = request.app.state.service_manager
    manager.logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc!r}",
        exc_info=exc,
    )
    message = str(exc) if manager.settings.is_development else "Internal server error"
    return _error_response(500, "INTERNAL_ERROR", message)


def create_app(settings: Settings | None = None, manager: ServiceManager | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Short-code allocation, redirect and click accounting API",
        lifespan=lifespan,
    )
    app.state.service_manager = manager or ServiceManager(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ShortLinkError, shortlink_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_respect_env_var=False,
    ).instrument(app).expose(app)

    app.include_router(router)
    return app


app = create_app()
