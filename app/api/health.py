"""
Health check and metrics endpoints.
Provides the status query surface and the Prometheus exposition.
"""
import logging
import time
from fastapi import APIRouter, Depends, Response, status
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from api.dependencies import get_hub
from api.metrics import registry, update_relay_metrics
from api.schemas import HealthResponse
from api.websocket_manager import RelayHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Process start, used for uptime reporting
STARTED_AT = time.monotonic()


def get_uptime() -> float:
    return time.monotonic() - STARTED_AT


@router.get("/api/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check(hub: RelayHub = Depends(get_hub)):
    """
    Liveness endpoint.

    Example Response:
        {
            "server_state": "ok",
            "online_count": 3,
            "uptime": 512.4
        }
    """
    return HealthResponse(
        server_state="ok",
        online_count=hub.engine.registry.online_count(),
        uptime=get_uptime()
    )


@router.get("/metrics", tags=["Metrics"])
async def metrics(hub: RelayHub = Depends(get_hub)):
    """Prometheus metrics for the relay registry."""
    update_relay_metrics(hub)
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
