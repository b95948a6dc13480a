"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, and the relay hub.
"""
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings

# Configure structured JSON logging
from core.logging_config import configure_logging
configure_logging(service_name=settings.service_name, level=settings.log_level, enable_json=settings.log_json)

from api.websocket_manager import RelayHub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates the relay hub on startup and cancels pending removals on shutdown.
    """
    # Startup
    logger.info("Starting presence relay...")
    app.state.hub = RelayHub(
        grace_period_seconds=settings.grace_period_seconds,
        avatar_url_template=settings.avatar_url_template
    )
    logger.info(f"Relay hub ready (grace period {settings.grace_period_seconds}s)")

    yield

    # Shutdown
    logger.info("Shutting down presence relay...")
    await app.state.hub.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Presence Relay",
    description="Real-time presence and private messaging over WebSocket",
    version="1.0.0",
    lifespan=lifespan
)


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each HTTP request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}",
            extra={"request_id": request_id}
        )

        response = await call_next(request)

        # Add request_id to response headers
        response.headers["X-Request-ID"] = request_id

        logger.info(f"Response: {response.status_code}", extra={"request_id": request_id})

        return response


# Add middlewares
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/", tags=["Health"])
async def root():
    """
    Service information.
    """
    return {
        "message": "Presence Relay",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "websocket": "/ws"
    }


# Register endpoint routers
from api.endpoints import users_router, websocket_router
from api.health import router as health_router

app.include_router(health_router)
app.include_router(users_router, prefix="/api", tags=["Users"])

# WebSocket endpoint
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
