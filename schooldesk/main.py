"""SchoolDesk Backend - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schooldesk.api import api_router
from schooldesk.api.auth import router as auth_router
from schooldesk.api.health import router as health_router
from schooldesk.core import Base, async_session_maker, get_settings, setup_logging
from schooldesk.core.config import Settings
from schooldesk.core.logging import get_logger
from schooldesk.core.revocation_store import RevocationStore
from schooldesk.middleware import BearerAuthMiddleware, SecurityHeadersMiddleware

# Import all models to ensure they're registered with Base
from schooldesk.models import Permission, Role, RolePermission, User, UserRole  # noqa: F401
from schooldesk.services.errors import TokenGenerationError
from schooldesk.services.permissions import PermissionResolver
from schooldesk.services.tokens import TokenManager

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings

    # Configure logging
    setup_logging(level=settings.log_level, format_type=settings.log_format)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    settings.check_security_configuration()

    if settings.debug:
        # No migrations are shipped; create the tables for local development
        engine = app.state.session_maker.kw["bind"]
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    if not await app.state.revocation_store.ping():
        logger.warning("Revocation store is unreachable; token issuance will fail until it is back")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if app.state.owns_revocation_store:
        await app.state.revocation_store.close()


def create_app(
    settings: Settings | None = None,
    store: RevocationStore | None = None,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``store`` and ``session_maker`` default to clients built from
    ``settings``; tests pass their own.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="School administration backend - authentication and access control",
        version=settings.app_version,
        lifespan=lifespan,
        # API docs are only served in debug mode
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    # Core services are shared by every request through app.state
    app.state.settings = settings
    app.state.owns_revocation_store = store is None
    app.state.revocation_store = store or RevocationStore.from_url(
        settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        socket_timeout=settings.redis_socket_timeout,
        operation_timeout=settings.redis_operation_timeout,
    )
    app.state.session_maker = session_maker or async_session_maker
    app.state.token_manager = TokenManager.from_settings(settings, app.state.revocation_store)
    app.state.permission_resolver = PermissionResolver(
        app.state.session_maker,
        ttl_seconds=settings.permission_cache_ttl_seconds,
    )

    # Bearer authentication for every /api/* request (defense in depth)
    app.add_middleware(BearerAuthMiddleware)

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on ALL responses, including 401 from the auth gate.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
    )

    # Prometheus metrics (before routers so /metrics endpoint is registered first)
    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/api/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    @app.exception_handler(TokenGenerationError)
    async def token_generation_handler(request: Request, exc: TokenGenerationError) -> JSONResponse:
        logger.error(
            f"Token generation failed: {exc}",
            extra={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Failed to generate authentication token"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for uncaught errors."""
        logger.error(
            f"Unhandled exception: {exc}",
            extra={"path": request.url.path, "method": request.method},
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Include routers
    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


# Application instance
app = create_app()
