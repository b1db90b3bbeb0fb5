# src/services/tracking_gateway/dependencies.py
from fastapi.requests import HTTPConnection

from src.core.tracking.service import TrackingService
from src.services.tracking_gateway.connection_manager import ConnectionManager


def get_tracking_service(connection: HTTPConnection) -> TrackingService:
    service = getattr(connection.app.state, "tracking", None)
    if service is None:
        raise RuntimeError("Service not initialized")
    return service


def get_connection_manager(connection: HTTPConnection) -> ConnectionManager:
    return connection.app.state.connections
