# src/core/tracking/service.py
"""
Сервис трекинга водителей.

Собирает компоненты (реестр, конвейер приёма, буфер истории, хранилище,
хаб рассылки, sweeper) и предоставляет транспорту обработчики событий
и методы чтения.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from src.common.constants import StorageMode, TypeMsg
from src.common.errors import PersistenceTransientError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.tracking.broadcast import BroadcastHub, Subscription
from src.core.tracking.history import HistoryBuffer
from src.core.tracking.ingest import IngestPipeline
from src.core.tracking.models import (
    BatchIngestResult,
    DriverRecord,
    DriverRegistration,
    RecordedLocation,
)
from src.core.tracking.registry import PresenceRegistry
from src.core.tracking.repository import LocationStore, WriteDispatcher, create_store
from src.core.tracking.sweeper import StalenessSweeper

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from src.config.loader import Settings
    from src.infra.database import DatabaseManager
    from src.infra.event_relay import RedisEventRelay


class TrackingService:
    """Фасад ядра трекинга."""

    def __init__(
        self,
        settings: "Settings",
        store: Optional[LocationStore] = None,
        db: Optional["DatabaseManager"] = None,
        redis: Optional["Redis"] = None,
    ) -> None:
        """
        Args:
            settings: Настройки приложения
            store: Готовое хранилище (по умолчанию выбирается по настройкам)
            db: Менеджер БД для постоянного режима
            redis: Клиент Redis для ретрансляции (по умолчанию из REDIS_URL)
        """
        self._settings = settings
        tracking = settings.tracking

        self.history = HistoryBuffer(capacity=tracking.HISTORY_CAPACITY)
        self.store = store or create_store(settings, self.history, db)
        self.hub = BroadcastHub(queue_size=tracking.OBSERVER_QUEUE_SIZE)
        self.writer = WriteDispatcher()
        self.registry = PresenceRegistry(self.store, self.hub, self.writer)
        self.ingest = IngestPipeline(self.registry, self.history, self.store, self.hub, self.writer)
        self.sweeper = StalenessSweeper(
            self.registry,
            threshold=tracking.STALE_THRESHOLD_SECONDS,
            interval=tracking.SWEEP_INTERVAL_SECONDS,
        )

        self._db = db
        self._redis = redis
        self._owns_redis = False
        self.relay: Optional["RedisEventRelay"] = None
        self._started = False

    @property
    def mode(self) -> StorageMode:
        """Режим хранения, выбранный при старте."""
        return self.store.mode

    @property
    def is_started(self) -> bool:
        return self._started

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start(self) -> None:
        """
        Запуск: подключение БД (постоянный режим), восстановление
        онлайн-водителей, запуск sweeper и ретрансляции.
        """
        if self._started:
            return

        if self.mode == StorageMode.DURABLE:
            await self._connect_db()
            await self._restore_drivers()

        await self.sweeper.start()
        await self._start_relay()

        self._started = True
        await log_info(
            f"Сервис трекинга запущен, режим хранения: {self.mode.value}",
            type_msg=TypeMsg.INFO,
            logger_name="tracking",
        )

    async def stop(self) -> None:
        """Остановка: sweeper, ретрансляция, незавершённые записи, хаб, хранилище."""
        if not self._started:
            return

        await self.sweeper.stop()
        if self.relay is not None:
            await self.relay.stop()
            self.relay = None
        if self._owns_redis and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._owns_redis = False
        await self.writer.drain()
        self.hub.close()
        await self.store.close()

        self._started = False
        await log_info("Сервис трекинга остановлен", type_msg=TypeMsg.INFO, logger_name="tracking")

    async def _connect_db(self) -> None:
        from src.infra.database import get_db, init_schema

        db = self._db or get_db()
        if db.is_connected:
            return

        database = self._settings.database
        await db.connect(
            dsn=database.DB_DSN,
            min_size=database.DB_MIN_POOL_SIZE,
            max_size=database.DB_MAX_POOL_SIZE,
            command_timeout=database.DB_COMMAND_TIMEOUT,
        )
        await init_schema(db)

    async def _start_relay(self) -> None:
        from src.infra.event_relay import RedisEventRelay, create_redis_client

        redis_settings = self._settings.redis
        if self._redis is None:
            if not redis_settings.enabled:
                return
            self._redis = create_redis_client(redis_settings.REDIS_URL)
            self._owns_redis = True

        self.relay = RedisEventRelay(self._redis, self.hub, channel=redis_settings.REDIS_CHANNEL)
        await self.relay.start()

    async def _restore_drivers(self) -> None:
        try:
            drivers = await self.store.find_active_drivers(online_only=True)
        except PersistenceTransientError as e:
            await log_warning(
                f"Не удалось восстановить водителей из хранилища: {e.message}",
                logger_name="tracking",
            )
            return

        restored = await self.registry.restore(drivers)
        if restored:
            await log_info(
                f"Восстановлено онлайн-водителей: {restored}",
                type_msg=TypeMsg.INFO,
                logger_name="tracking",
            )

    # =========================================================================
    # ОБРАБОТЧИКИ ТРАНСПОРТА
    # =========================================================================

    async def handle_register(self, connection_id: str, data: Any) -> DriverRecord:
        """
        Событие register-driver.

        Raises:
            ValidationError: нет deviceId или driverName
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Регистрация должна быть объектом")
        try:
            registration = DriverRegistration.model_validate(dict(data))
        except PydanticValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise ValidationError(
                f"Некорректные поля регистрации: {', '.join(fields)}",
                details={"fields": fields},
            ) from e

        return await self.registry.register(
            connection_id,
            registration.device_id,
            registration.driver_name,
        )

    async def handle_location_update(self, connection_id: str, data: Any) -> RecordedLocation:
        """Событие location-update."""
        return await self.ingest.ingest(connection_id, data)

    async def handle_sync(self, connection_id: str, data: Any) -> BatchIngestResult:
        """
        Событие sync-locations: `{"locations": [...]}` или список точек.

        Raises:
            ValidationError: данные не являются списком точек
        """
        samples = data.get("locations") if isinstance(data, Mapping) else data
        if not isinstance(samples, list):
            raise ValidationError("Ожидается список точек в поле locations")
        return await self.ingest.ingest_batch(connection_id, samples)

    async def handle_disconnect(self, connection_id: str) -> Optional[str]:
        """Закрытие соединения водителя. Статус online не меняется."""
        return await self.registry.unbind(connection_id)

    # =========================================================================
    # НАБЛЮДАТЕЛИ И ЧТЕНИЕ
    # =========================================================================

    def subscribe(self, label: str = "") -> Subscription:
        """Подписка наблюдателя на события."""
        return self.hub.subscribe(label=label)

    async def drivers(self) -> list[DriverRecord]:
        """
        Водители, новые по last_seen первыми.

        Состояние реестра приоритетно: фоновые записи в хранилище могут
        отставать. Из хранилища добавляются только водители, которых нет
        в реестре (например, офлайн-записи прошлых запусков).
        """
        stored = await self.store.find_active_drivers()
        live = await self.registry.list_active()

        known = {record.device_id for record in live}
        merged = live + [record for record in stored if record.device_id not in known]
        return sorted(merged, key=lambda d: d.last_seen, reverse=True)

    async def locations(
        self,
        device_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[RecordedLocation]:
        """История устройства, новые первыми, не больше HISTORY_QUERY_LIMIT."""
        cap = self._settings.tracking.HISTORY_QUERY_LIMIT
        limit = cap if limit is None else max(0, min(limit, cap))
        return await self.store.location_history(device_id, since=since, limit=limit)

    async def latest_locations(self) -> list[RecordedLocation]:
        """Последняя точка каждого устройства."""
        return await self.store.latest_location_per_device()

    async def storage_healthy(self) -> bool:
        """Доступно ли постоянное хранилище (в режиме памяти всегда True)."""
        if self.mode != StorageMode.DURABLE:
            return True
        from src.infra.database import get_db

        return await (self._db or get_db()).health_check()

    def get_stats(self) -> dict[str, Any]:
        """Сводная статистика сервиса."""
        ingest = self.ingest.get_stats()
        registry = self.registry.get_stats()
        hub = self.hub.get_stats()
        return {
            "mode": self.mode.value,
            "total_ingested": ingest["total_accepted"],
            "total_rejected": ingest["total_rejected"],
            "drivers": registry["drivers"],
            "online": registry["online"],
            "connections": registry["connections"],
            "observers": hub["observers"],
            "internal_subscribers": hub["internal_subscribers"],
            "dropped_observers": hub["dropped_observers"],
            "pending_writes": self.writer.pending,
            "failed_writes": self.writer.failures,
            "sweeper": self.sweeper.get_stats(),
        }
