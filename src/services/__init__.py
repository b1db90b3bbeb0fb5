# src/services/__init__.py
"""
Сервисы приложения.

- tracking_gateway: WebSocket для водителей и админ-панелей, REST для чтения
"""

__all__: list[str] = []
