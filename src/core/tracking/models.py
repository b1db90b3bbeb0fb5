# src/core/tracking/models.py
"""
Модели данных трекинга: водитель, входящая точка, записанная локация.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Текущее время в UTC."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Приводит наивное время к UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CurrentLocation(BaseModel):
    """Последняя известная точка водителя."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: datetime


class DriverRecord(BaseModel):
    """Запись о водителе. Идентичность: device_id, удаляется только мягко."""

    device_id: str = Field(..., min_length=1, description="Идентификатор устройства")
    driver_name: str = Field(..., description="Имя водителя")
    online: bool = Field(False, description="Онлайн ли водитель")
    last_seen: datetime = Field(default_factory=utc_now, description="Последняя активность")
    current_location: Optional[CurrentLocation] = Field(None, description="Последняя точка")

    class Config:
        from_attributes = True

    @field_validator("last_seen")
    @classmethod
    def normalize_last_seen(cls, v: datetime) -> datetime:
        """Приводит время к UTC."""
        return _as_utc(v)


class DriverRegistration(BaseModel):
    """Входящее событие register-driver."""

    device_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("device_id", "deviceId"),
    )
    driver_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("driver_name", "driverName"),
    )

    @field_validator("device_id", "driver_name", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        """Обрезает пробелы по краям."""
        if isinstance(v, str):
            return v.strip()
        return v


class LocationSample(BaseModel):
    """
    Входящая точка от устройства (location-update или элемент sync-locations).

    Диапазон координат проверяется конвейером приёма, а не моделью,
    чтобы отличать InvalidCoordinatesError от прочих ошибок валидации.
    """

    device_id: Optional[str] = Field(None, validation_alias=AliasChoices("device_id", "deviceId"))
    driver_name: Optional[str] = Field(None, validation_alias=AliasChoices("driver_name", "driverName"))
    latitude: float
    longitude: float
    accuracy: float = Field(0.0, ge=0)
    speed: float = Field(0.0, ge=0)
    heading: float = 0.0
    timestamp: Optional[datetime] = None

    @field_validator("accuracy", "speed", "heading", mode="before")
    @classmethod
    def null_to_zero(cls, v: Any) -> Any:
        """Мобильные клиенты присылают null вместо отсутствующих значений."""
        return 0.0 if v is None else v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Приводит время к UTC."""
        return _as_utc(v) if v is not None else None


class RecordedLocation(BaseModel):
    """Принятая локация. Неизменяема после записи."""

    device_id: str
    driver_name: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(0.0, ge=0)
    speed: float = Field(0.0, ge=0)
    heading: float = 0.0
    timestamp: datetime
    online: bool = True

    class Config:
        frozen = True
        from_attributes = True

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Приводит время к UTC."""
        return _as_utc(v)

    def as_current_location(self) -> CurrentLocation:
        """Точка для поля current_location водителя."""
        return CurrentLocation(
            latitude=self.latitude,
            longitude=self.longitude,
            timestamp=self.timestamp,
        )


class SampleRejection(BaseModel):
    """Отклонённая точка в пакетной синхронизации."""

    index: int
    code: str
    message: str


class BatchIngestResult(BaseModel):
    """Итог пакетной синхронизации."""

    device_id: str
    accepted: int = 0
    rejected: int = 0
    errors: list[SampleRejection] = Field(default_factory=list)
