"""
FastAPI Relay Application Factory
=================================

This is the main entry point for the relay service that sits between
browser/mobile clients and a fixed upstream LLM API host.

Architecture:
    Clients → Relay (this service) → DashScope / DeepSeek API

Routers:
    - /compatible-mode/v1/* : Transparent HTTP proxy (dashscope profile)
    - /chat/completions     : Transparent HTTP proxy (deepseek profile)
    - /tts-realtime         : WebSocket text-to-speech relay
    - /asr-realtime         : WebSocket speech recognition relay
    - /api-ws/v1/*          : WebSocket realtime API passthrough
    - /health               : Health check endpoint

Environment Variables:
    - DASHSCOPE_API_KEY: Upstream API key (required; DEEPSEEK_API_KEY or UPSTREAM_API_KEY also accepted)
    - DEPLOYMENT_PROFILE: "dashscope" (default) or "deepseek"
    - UPSTREAM_BASE_URL: Override of the upstream scheme+host
    - AUTHORIZATION_MODE: "preserve" (default) or "overwrite"
    - ALLOWED_ORIGINS: Comma-separated CORS origins (default: allow all)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        DASHSCOPE_API_KEY=sk-... python -m relay.app.main

    With uvicorn directly:
        uvicorn relay.app.main:create_app --factory --host 0.0.0.0 --port 3000
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from relay.app.config import Settings, get_settings, validate_configuration
from relay.app.models import ForwardingPolicy
from relay.app.proxy import build_proxy_router
from relay.app.realtime import realtime_router

SERVICE_NAME = "relay"
SERVICE_VERSION = "1.0.0"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


class AppState:
    """
    Application state container.

    Holds the read-only configuration and the shared upstream HTTP client.
    """
    def __init__(self, settings: Settings):
        self.settings: Settings = settings
        self.policy: ForwardingPolicy = ForwardingPolicy.from_settings(settings)
        self.http_client: Optional[httpx.AsyncClient] = None
        self.owns_http_client: bool = False


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the pooled upstream client.

    Only connecting is bounded by default; reads wait as long as the upstream
    keeps the stream open unless UPSTREAM_READ_TIMEOUT is set.
    """
    timeout = httpx.Timeout(
        None,
        connect=settings.UPSTREAM_CONNECT_TIMEOUT,
        read=settings.UPSTREAM_READ_TIMEOUT,
    )
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Create the shared upstream HTTP client (unless one was injected)
        - Log the effective configuration

    Shutdown tasks:
        - Close the upstream HTTP client and its pooled connections
    """
    app_state: AppState = app.state.app_state
    settings = app_state.settings
    logger = logging.getLogger("relay.main")

    if app_state.http_client is None:
        app_state.http_client = build_http_client(settings)
        app_state.owns_http_client = True

    logger.info(
        "Relay service started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "profile": settings.DEPLOYMENT_PROFILE,
            "upstream": app_state.policy.upstream_base_url,
            "realtime": settings.realtime_enabled,
        }
    )

    yield

    logger.info("Shutting down relay service")

    if app_state.owns_http_client and app_state.http_client is not None:
        await app_state.http_client.aclose()
        app_state.http_client = None
        logger.info("Closed upstream HTTP client")

    logger.info("Relay service shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware
        - Proxy routes for the deployment profile
        - Realtime WebSocket relays (when enabled)
        - Exception handlers

    Args:
        settings: Settings to use (default: loaded from the environment)
        http_client: Upstream client to use instead of creating one

    Returns:
        FastAPI: Configured application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Relay Service",
        description="Transparent credential-injecting proxy for an upstream LLM API",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    app_state = AppState(settings)
    app_state.http_client = http_client
    app.state.app_state = app_state

    # CORS: sole source of Access-Control-* headers on every response
    origins = settings.allowed_origins_list
    allow_all = origins == ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # Proxy router: forwards the profile's routes to the upstream host
    app.include_router(build_proxy_router(settings.profile.routes))

    # Realtime router: WebSocket relays to the upstream realtime API
    if settings.realtime_enabled:
        app.include_router(realtime_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Service health information
        """
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "profile": settings.DEPLOYMENT_PROFILE,
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("relay.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


def main() -> None:
    """
    Process entry point.

    Loads configuration before anything is bound; a missing or invalid API
    key ends the process with exit status 1.
    """
    setup_logging()
    logger = logging.getLogger("relay.main")

    try:
        settings = get_settings()
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        logger.critical(
            f"Invalid configuration ({problems}). "
            "Set DASHSCOPE_API_KEY (or DEEPSEEK_API_KEY / UPSTREAM_API_KEY) before starting."
        )
        sys.exit(1)

    setup_logging(settings.LOG_LEVEL)

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(warning)

    logger.info(
        f"Starting relay on http://{settings.PROXY_HOST}:{settings.PROXY_PORT}",
        extra={"upstream": status["upstream"], "routes": status["routes"]}
    )

    uvicorn.run(
        create_app(settings),
        host=settings.PROXY_HOST,
        port=settings.PROXY_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
