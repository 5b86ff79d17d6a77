from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from zgproxy.api.main import api_router
from zgproxy.api.routes import utils
from zgproxy.core.config import Settings, settings as default_settings
from zgproxy.core.logging import configure_logging
from zgproxy.errors import GatewayError, InternalError
from zgproxy.middleware.auth import BearerAuthMiddleware
from zgproxy.middleware.request_id import RequestIdMiddleware
from zgproxy.observability import MetricsMiddleware, metrics_router
from zgproxy.services.context import GatewayContext, build_context, start_context

logger = structlog.get_logger()


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Error processing chat completion", error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path)
    error = InternalError(str(exc) or "Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_body())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        message, code = f"Route {request.method} {request.url.path} not found", "route_not_found"
    else:
        message, code = str(exc.detail), "http_error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": message, "type": "invalid_request_error", "code": code}},
    )


def create_app(
    settings: Optional[Settings] = None,
    context: Optional[GatewayContext] = None,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway = context or build_context(settings)
        logger.info("Starting 0G Proxy Server...")
        app.state.gateway = await start_context(gateway)
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            app.state.gateway = None
            await gateway.aclose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    app.add_middleware(BearerAuthMiddleware, token=settings.AUTH_TOKEN)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    if settings.all_cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.all_cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(utils.router)
    app.include_router(metrics_router)
    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


if default_settings.SENTRY_DSN and default_settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(default_settings.SENTRY_DSN), enable_tracing=True)

app = create_app()


def start():
    import uvicorn

    uvicorn.run("zgproxy.main:app", host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    start()
