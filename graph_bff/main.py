"""
FastAPI Application Factory
===========================

Entry point for the BFF that sits between the SPA and the graph API.

Architecture:
    SPA (session cookie or bearer token) → BFF (this service) → Graph API
                                              ↕
                                       Identity provider

Routers:
    - /auth/*   : Authorization code flow (login, callback, session, logout)
    - /api/*    : Profile, user lookup and generic forwarding
    - /health   : Health check endpoint

Environment Variables:
    - BFF_CLIENT_ID / BFF_CLIENT_SECRET: confidential client credentials
    - BFF_TENANT_ID or BFF_AUTHORITY: identity provider authority
    - BFF_GRAPH_SCOPE (or BFF_GRAPHSCOPES): scopes for app and OBO tokens
    - BFF_DELEGATED_SCOPES: scopes requested at login
    - BFF_REDIRECT_URI: callback URL registered with the provider
    - FRONTEND_REDIRECT_URI (or VITE_BFF_FRONTEND): SPA origin
    - BFF_SESSION_SECRET: key for signing the session cookie
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn graph_bff.main:app --reload --port 3000

    Direct:
        python -m graph_bff.main
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from . import __version__
from .auth.broker import TokenBroker
from .auth.routes import auth_router
from .auth.session import InMemorySessionStore, SessionMiddleware, purge_sessions_periodically
from .auth.token_service import TokenService
from .config import Settings, get_settings, validate_configuration
from .dependencies import AppState
from .errors import BrokerError
from .models import HealthResponse
from .proxy.gateway import ForwardingGateway
from .proxy.routes import proxy_router

SERVICE_NAME = "graph-bff"

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Configure logging
        - Log the configuration report (errors, warnings)
        - Start the expired-session purge task

    Shutdown:
        - Cancel the purge task
        - Close the token service and gateway HTTP clients
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings

    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")

    logger.info(
        "Starting BFF service",
        extra={
            "authority": report["authority"],
            "graph_scopes": report["graph_scopes"],
            "frontend": settings.FRONTEND_REDIRECT_URI,
            "log_level": settings.LOG_LEVEL,
        },
    )

    purge_task = asyncio.create_task(
        purge_sessions_periodically(app_state.session_store, settings.SESSION_PURGE_INTERVAL_SECONDS)
    )
    app.state.session_purge_task = purge_task

    yield

    logger.info("Shutting down BFF service")
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass
    await app_state.token_service.aclose()
    await app_state.gateway.aclose()
    logger.info(
        "BFF service shutdown complete",
        extra={"active_sessions": len(app_state.session_store)},
    )


def create_application(
    settings: Optional[Settings] = None,
    token_service: Optional[TokenService] = None,
    gateway: Optional[ForwardingGateway] = None,
    session_store: Optional[InMemorySessionStore] = None,
) -> FastAPI:
    """
    Application factory function.

    Builds the shared collaborators once and stores them on
    ``app.state.app_state``. Tests pass doubles for any of them.

    Args:
        settings: Settings to use (defaults to get_settings())
        token_service: Identity provider client
        gateway: Downstream graph API client
        session_store: Server-side session store

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    token_service = token_service or TokenService(settings)
    gateway = gateway or ForwardingGateway(settings)
    session_store = session_store or InMemorySessionStore(
        token_service,
        settings.graph_scopes_list,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        pending_ttl_seconds=settings.PENDING_LOGIN_TTL_SECONDS,
    )
    broker = TokenBroker(settings, token_service, session_store)

    app = FastAPI(
        title="Graph BFF",
        description="Backend-for-frontend token broker for the graph API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.app_state = AppState(
        settings=settings,
        token_service=token_service,
        session_store=session_store,
        broker=broker,
        gateway=gateway,
    )

    # Added last, CORS wraps the session middleware and answers preflights first.
    app.add_middleware(SessionMiddleware, store=session_store, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_REDIRECT_URI.rstrip("/")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(proxy_router)

    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health_check(request: Request) -> HealthResponse:
        state: AppState = request.app.state.app_state
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=__version__,
            active_sessions=len(state.session_store),
        )

    @app.get("/", response_class=PlainTextResponse, tags=["system"])
    async def root() -> str:
        return "BFF running"

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        logger.warning(
            f"{request.method} {request.url.path} failed: {exc.error}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {exc}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "details": str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
            },
        )

    return app


# Create app instance for uvicorn
app = create_application()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "graph_bff.main:app",
        host=settings.BFF_HOST,
        port=settings.BFF_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
