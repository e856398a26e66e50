"""FastAPI application factory for Meterbridge."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from meterbridge.common.config import get_settings
from meterbridge.common.exceptions import MeterbridgeError, PaymentProviderError
from meterbridge.common.schemas import HealthResponse, jsonapi_error

logger = logging.getLogger(__name__)

_TITLES = {
    400: "Bad Request",
    402: "Payment Required",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    412: "Precondition Failed",
    429: "Too Many Requests",
    503: "Service Unavailable",
}


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from meterbridge.deps import get_db
        db = get_db()
        await db.init()
        await db.create_all()
        yield
        # Shutdown
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MeterbridgeError)
    async def meterbridge_error_handler(request: Request, exc: MeterbridgeError):
        status = exc.status_code
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        code = exc.provider_code if isinstance(exc, PaymentProviderError) and exc.provider_code else exc.code
        return JSONResponse(
            status_code=status,
            content=jsonapi_error(status, _TITLES.get(status, "Internal Server Error"), exc.message, code),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from meterbridge.webhooks.router import router as webhook_router
    from meterbridge.usage.router import router as usage_router
    from meterbridge.licensing.router import router as licensing_router

    prefix = settings.api_prefix
    app.include_router(webhook_router, prefix=prefix, tags=["webhooks"])
    app.include_router(usage_router, prefix=prefix, tags=["usage"])
    app.include_router(licensing_router, prefix=prefix, tags=["licensing"])

    return app
