"""
hookrelay - Webhook capture, relay and replay service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import observability modules
from hookrelay.config import settings
from hookrelay.errors import RelayError
from hookrelay.logging_config import configure_logging, get_logger
from hookrelay.sentry_config import configure_sentry
from hookrelay.middleware.logging import LoggingMiddleware
from hookrelay.routes.metrics import router as metrics_router

# Import route modules
from hookrelay.routes.relay import router as relay_router
from hookrelay.routes.webhooks import router as webhooks_router
from hookrelay.services.container import RelayServices, create_services

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services from settings unless they were injected."""
    created = None
    if getattr(app.state, "services", None) is None:
        created = await create_services(settings)
        app.state.services = created
    yield
    if created is not None:
        await created.close()


async def relay_error_handler(request: Request, exc: RelayError):
    """Domain errors become {"error": message} with the error's status code."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def create_app(services: Optional[RelayServices] = None) -> FastAPI:
    """Create the FastAPI app, optionally with pre-built services (tests)."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Capture inbound webhooks, forward them to target URLs, retry and replay deliveries",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Add CORS middleware so the dashboard can read the API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RelayError, relay_error_handler)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    # Include capture route
    app.include_router(relay_router)

    # Include webhook inspection/replay routes
    app.include_router(webhooks_router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health(request: Request):
        """Detailed health check."""
        services = request.app.state.services
        return {
            "status": "healthy",
            "store": type(services.store).__name__,
            "dispatcher": type(services.dispatcher).__name__,
        }

    return app


# Create FastAPI app
app = create_app()
