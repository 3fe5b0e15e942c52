"""Virtual Try-On Broker: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from tryon.core.logging import configure_structlog
from tryon.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import redis.asyncio as redis
import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tryon.api.routes import api_router
from tryon.core.config import Settings, get_settings
from tryon.core.exceptions import TryOnError
from tryon.core.locking import AccountLock
from tryon.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from tryon.integrations.payment_gateways import build_gateways
from tryon.middleware.correlation import get_correlation_id, setup_correlation_middleware
from tryon.providers.base import Provider, ProviderConfig
from tryon.providers.registry import ProviderRegistry
from tryon.providers.replicate_backends import build_default_providers, build_replicate_client
from tryon.services.accounts import AccountService
from tryon.services.credit_ledger import CreditLedger
from tryon.services.orchestrator import GenerationOrchestrator
from tryon.services.tryon_service import TryOnService
from tryon.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


def build_services(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    providers: list[tuple[Provider, ProviderConfig]] | None = None,
) -> None:
    """Composition root: wire every service onto ``app.state``.

    ``providers`` defaults to the Replicate-hosted backends.
    """
    if providers is None:
        providers = build_default_providers(build_replicate_client(settings), settings)

    registry = ProviderRegistry(redis_client)
    for provider, config in providers:
        registry.register(provider, config)

    account_lock = AccountLock(
        redis_client,
        ttl=settings.account_lock_ttl_seconds,
        wait_timeout=settings.account_lock_wait_seconds,
        poll_interval=settings.account_lock_poll_seconds,
    )
    ledger = CreditLedger(session_factory, account_lock)
    accounts = AccountService(session_factory, default_free_trials_limit=settings.default_free_trials_limit)

    app.state.registry = registry
    app.state.ledger = ledger
    app.state.accounts = accounts
    app.state.tryon = TryOnService(GenerationOrchestrator(registry), ledger)
    app.state.reconciler = WebhookReconciler(build_gateways(settings), ledger, accounts, session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /api/health answers 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    build_services(app, settings, get_session_factory(), get_redis())
    logger.info("services_initialized", providers=app.state.registry.names())

    yield

    logger.info("shutdown_begin")
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def tryon_exception_handler(request: Request, exc: TryOnError) -> JSONResponse:
    """Map domain errors to their HTTP status with a debug_id for support lookups."""
    debug_id = str(uuid.uuid4())
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "tryon_error",
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "debug_id": debug_id},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # No internal details leaked
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(TryOnError)(tryon_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Virtual try-on broker: provider fallback and credit ledger",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    install_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tryon.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
