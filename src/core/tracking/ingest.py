# src/core/tracking/ingest.py
"""
Конвейер приёма геолокации.

1. Проверка привязки соединения (UnregisteredError)
2. Валидация полей и координат (ValidationError / InvalidCoordinatesError)
3. Запись в HistoryBuffer
4. Фоновая запись в хранилище (ошибки логируются, отправителю не сообщаются)
5. touch в реестре присутствия
6. Рассылка location-update наблюдателям
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from src.common.errors import (
    InvalidCoordinatesError,
    TrackingError,
    UnregisteredError,
    ValidationError,
)
from src.common.logger import log_debug, log_info
from src.core.tracking.broadcast import BroadcastHub
from src.core.tracking.history import HistoryBuffer
from src.core.tracking.models import (
    BatchIngestResult,
    LocationSample,
    RecordedLocation,
    SampleRejection,
    utc_now,
)
from src.core.tracking.registry import PresenceRegistry
from src.core.tracking.repository import LocationStore, WriteDispatcher


SampleInput = Union[LocationSample, Mapping[str, Any]]


def validate_coordinates(lat: float, lon: float) -> bool:
    """Широта в [-90, 90], долгота в [-180, 180]."""
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def parse_sample(data: SampleInput) -> LocationSample:
    """Привести входные данные к LocationSample."""
    if isinstance(data, LocationSample):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError("Точка должна быть объектом")
    try:
        return LocationSample.model_validate(dict(data))
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(
            f"Некорректные поля точки: {', '.join(fields)}",
            details={"fields": fields},
        ) from e


class IngestPipeline:
    """Приём точек от зарегистрированных соединений."""

    def __init__(
        self,
        registry: PresenceRegistry,
        history: HistoryBuffer,
        store: LocationStore,
        hub: BroadcastHub,
        writer: WriteDispatcher,
    ) -> None:
        self._registry = registry
        self._history = history
        self._store = store
        self._hub = hub
        self._writer = writer

        # Статистика
        self._total_accepted = 0
        self._total_rejected = 0

    def _require_device(self, connection_id: str) -> str:
        device_id = self._registry.device_for(connection_id)
        if device_id is None:
            raise UnregisteredError(
                "Соединение не зарегистрировано, сначала отправьте register-driver",
                details={"connection_id": connection_id},
            )
        return device_id

    async def _build_record(
        self,
        device_id: str,
        data: SampleInput,
        online: bool,
    ) -> RecordedLocation:
        sample = parse_sample(data)

        if sample.device_id is not None and sample.device_id != device_id:
            raise ValidationError(
                "device_id не совпадает с регистрацией соединения",
                details={"device_id": sample.device_id, "registered": device_id},
            )

        if not validate_coordinates(sample.latitude, sample.longitude):
            raise InvalidCoordinatesError(
                "Координаты вне допустимого диапазона",
                details={"latitude": sample.latitude, "longitude": sample.longitude},
            )

        driver_name = sample.driver_name
        if not driver_name:
            driver = await self._registry.get(device_id)
            driver_name = driver.driver_name if driver is not None else device_id

        return RecordedLocation(
            device_id=device_id,
            driver_name=driver_name,
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy=sample.accuracy,
            speed=sample.speed,
            heading=sample.heading,
            timestamp=sample.timestamp or utc_now(),
            online=online,
        )

    async def ingest(self, connection_id: str, data: SampleInput) -> RecordedLocation:
        """
        Принять одну живую точку.

        Raises:
            UnregisteredError: соединение без регистрации
            ValidationError: некорректная точка (InvalidCoordinatesError для координат)
        """
        try:
            device_id = self._require_device(connection_id)
            record = await self._build_record(device_id, data, online=True)
        except TrackingError:
            self._total_rejected += 1
            raise

        await self._history.append(device_id, record)
        self._writer.dispatch(
            self._store.insert_location(record),
            description="insert_location",
            device_id=device_id,
        )
        await self._registry.touch(device_id, record.as_current_location())
        self._hub.publish_location_update(record)

        self._total_accepted += 1
        await log_debug(
            f"Локация от {device_id}: {record.latitude}, {record.longitude}",
            logger_name="ingest",
        )
        return record

    async def ingest_batch(
        self,
        connection_id: str,
        samples: Sequence[SampleInput],
    ) -> BatchIngestResult:
        """
        Принять буферизованные офлайн-точки по порядку.

        Точки пакета: исторические снимки (online=False). После пакета
        устройство один раз отмечается активным, даже если часть точек отклонена.

        Raises:
            UnregisteredError: соединение без регистрации (пакет не принимается целиком)
        """
        try:
            device_id = self._require_device(connection_id)
        except UnregisteredError:
            self._total_rejected += len(samples)
            raise

        result = BatchIngestResult(device_id=device_id)
        accepted: list[RecordedLocation] = []

        for index, data in enumerate(samples):
            try:
                record = await self._build_record(device_id, data, online=False)
            except TrackingError as e:
                result.rejected += 1
                result.errors.append(SampleRejection(index=index, code=e.code, message=e.message))
                continue

            await self._history.append(device_id, record)
            accepted.append(record)
            self._hub.publish_location_update(record)

        result.accepted = len(accepted)
        self._total_accepted += result.accepted
        self._total_rejected += result.rejected

        if accepted:
            self._writer.dispatch(
                self._store.insert_locations(accepted),
                description="insert_locations",
                device_id=device_id,
            )

        await self._registry.touch(device_id)

        await log_info(
            f"Синхронизация {device_id}: принято {result.accepted}, отклонено {result.rejected}",
            logger_name="ingest",
            extra={"device_id": device_id, "accepted": result.accepted, "rejected": result.rejected},
        )
        return result

    def get_stats(self) -> dict[str, int]:
        """Статистика приёма."""
        return {
            "total_accepted": self._total_accepted,
            "total_rejected": self._total_rejected,
        }
