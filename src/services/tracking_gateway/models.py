# src/services/tracking_gateway/models.py
"""
Модели ответов шлюза.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Стандартный ответ с ошибкой."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded
    version: str | None = None
    uptime_seconds: float | None = None
    storage_mode: str
    observers: int = 0
    dependencies: dict[str, str] = Field(default_factory=dict)
    # dependencies: {"postgres": "healthy", "redis": "enabled"}


class MobileStatus(BaseModel):
    """Ответ для проверки доступности мобильным клиентом."""

    success: bool = True
    message: str = "Mobile API is running"
    timestamp: str


class StatsResponse(BaseModel):
    """Статистика шлюза."""

    tracking: dict[str, Any]
    connections: dict[str, Any]
