"""
Dependency injection functions for FastAPI.
Provides access to the relay hub created by the application lifespan.
"""
from starlette.requests import HTTPConnection

from api.websocket_manager import RelayHub


def get_hub(connection: HTTPConnection) -> RelayHub:
    """
    Dependency that provides the application's RelayHub.

    Works for both HTTP requests and WebSocket connections.

    Returns:
        RelayHub stored on app.state by the lifespan handler
    """
    return connection.app.state.hub
