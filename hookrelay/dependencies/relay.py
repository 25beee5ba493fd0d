"""
Relay service dependency for FastAPI routes.
"""
from fastapi import Request
from hookrelay.services.relay_service import RelayService


def get_relay_service(request: Request) -> RelayService:
    """Relay service built at startup and kept on app.state."""
    return request.app.state.services.relay_service
