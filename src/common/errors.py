# src/common/errors.py
"""
Иерархия ошибок трекинга.

- ValidationError: некорректные данные (синхронно, сообщается отправителю)
- UnregisteredError: локация без регистрации соединения
- PersistenceTransientError: хранилище недоступно (логируется, не сообщается отправителю)
- BroadcastDeliveryError: не удалось доставить событие наблюдателю
"""

from __future__ import annotations

from typing import Any


class TrackingError(Exception):
    """Базовая ошибка трекинга."""

    code: str = "tracking_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Представление ошибки для отправки клиенту."""
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(TrackingError):
    """Отсутствуют обязательные поля или значения вне допустимого диапазона."""

    code = "validation_error"


class InvalidCoordinatesError(ValidationError):
    """Широта или долгота вне диапазона."""

    code = "invalid_coordinates"


class UnregisteredError(TrackingError):
    """Соединение не зарегистрировано как водитель."""

    code = "unregistered"


class PersistenceTransientError(TrackingError):
    """Постоянное хранилище временно недоступно."""

    code = "persistence_unavailable"


class BroadcastDeliveryError(TrackingError):
    """Наблюдатель недоступен."""

    code = "delivery_failed"
