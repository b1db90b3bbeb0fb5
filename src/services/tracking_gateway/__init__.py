# src/services/tracking_gateway/__init__.py
"""
Шлюз трекинга: WebSocket для водителей и админ-панелей, REST для чтения.
"""

from src.services.tracking_gateway.app import create_app

__all__ = ["create_app"]
