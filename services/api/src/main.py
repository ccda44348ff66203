"""
Palaver Chat API Service

FastAPI application exposing a conversational assistant with persistent,
per-conversation history and attached document references.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.models import HealthResponse
from shared.utils import ChatError, get_settings, setup_logging

from .conversation import SessionManager, build_session_store
from .llm import CompletionProvider
from .routes import router as chat_router

# Initialize configuration and logging
settings = get_settings()
logger = setup_logging(
    service_name="api",
    log_level=settings.log_level,
    log_format=settings.log_format,
    log_output=settings.log_output,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Build the shared services on startup and release them on shutdown.

    - Session store (in-memory or MongoDB)
    - Completion provider client
    - Session manager tying both together
    """
    logger.info(
        "Starting Palaver Chat API",
        extra={
            "version": settings.app_version,
            "environment": settings.environment,
            "store_backend": settings.session_store_backend,
        },
    )

    try:
        logger.info("Initializing session store...")
        store = build_session_store(settings)

        logger.info("Initializing completion provider...")
        provider = CompletionProvider(
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            timeout=settings.provider_timeout_seconds,
        )

        logger.info("Initializing session manager...")
        app.state.session_manager = SessionManager(
            store=store,
            provider=provider,
            provider_timeout=settings.provider_timeout_seconds,
            max_save_retries=settings.max_save_retries,
        )

        logger.info("All services initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield  # Application runs here

    logger.info("Shutting down Palaver Chat API")
    await provider.close()


app = FastAPI(
    title=settings.app_name,
    description="Conversational assistant with persistent chat sessions",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,  # type: ignore
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


# =============================================================================
# Service Endpoints
# =============================================================================
@app.get("/", tags=["Monitoring"])
async def root() -> dict:
    """Service information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
    }


@app.get("/health", response_model=HealthResponse, tags=["Monitoring"])
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint for load balancers and monitoring.

    Returns service status and dependency health.
    """
    manager = getattr(request.app.state, "session_manager", None)
    dependencies = {
        "session_store": manager is not None and manager.store.ping(),
        "completion_provider": manager is not None and manager.provider is not None,
    }

    return HealthResponse(
        status="healthy" if all(dependencies.values()) else "degraded",
        service="api",
        version=settings.app_version,
        dependencies=dependencies,
    )


# =============================================================================
# Error Handlers
# =============================================================================
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Answer with the status code attached to the error class."""
    logger.warning(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={"session_id": exc.session_id, "turn_state": exc.state},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": {
                "message": exc.message,
                "error": type(exc).__name__,
                "session_id": exc.session_id,
            }
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to prevent leaking stack traces in production."""
    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={
            "path": str(request.url),
            "method": request.method,
        },
    )

    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error. Please contact support."},
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.api.src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
