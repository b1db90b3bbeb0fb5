# src/core/tracking/repository.py
"""
Шлюз хранения водителей и локаций.

Две реализации с одинаковым контрактом, выбираемые один раз при старте:
- PostgresLocationStore: постоянное хранилище (asyncpg)
- MemoryLocationStore: без БД, история берётся из HistoryBuffer

Остальной код не проверяет режим хранения.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncGenerator, Coroutine, Optional, Sequence

import asyncpg

from src.common.constants import StorageMode
from src.common.errors import PersistenceTransientError
from src.common.logger import log_error, log_warning
from src.core.tracking.history import HistoryBuffer
from src.core.tracking.models import CurrentLocation, DriverRecord, RecordedLocation

if TYPE_CHECKING:
    from src.config.loader import Settings
    from src.infra.database import DatabaseManager


class LocationStore(ABC):
    """Контракт шлюза хранения."""

    mode: StorageMode

    @abstractmethod
    async def upsert_driver(self, record: DriverRecord) -> None:
        """Создать или обновить водителя по device_id."""

    @abstractmethod
    async def find_active_drivers(self, online_only: bool = False) -> list[DriverRecord]:
        """Водители, новые по last_seen первыми."""

    @abstractmethod
    async def insert_location(self, sample: RecordedLocation) -> None:
        """Сохранить одну точку."""

    @abstractmethod
    async def insert_locations(self, batch: Sequence[RecordedLocation]) -> None:
        """Сохранить пакет точек."""

    @abstractmethod
    async def location_history(
        self,
        device_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[RecordedLocation]:
        """История устройства, новые первыми."""

    @abstractmethod
    async def latest_location_per_device(self) -> list[RecordedLocation]:
        """По одной самой свежей точке на устройство."""

    async def close(self) -> None:
        """Освободить ресурсы."""


# =============================================================================
# ПАМЯТЬ
# =============================================================================

class MemoryLocationStore(LocationStore):
    """
    Хранилище в памяти.

    Точки уже записаны в HistoryBuffer конвейером приёма, поэтому
    insert_location здесь ничего не делает, а чтение делегируется буферу.
    """

    mode = StorageMode.MEMORY

    def __init__(self, history: HistoryBuffer) -> None:
        self._history = history
        self._drivers: dict[str, DriverRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert_driver(self, record: DriverRecord) -> None:
        async with self._lock:
            existing = self._drivers.get(record.device_id)
            # Более старое состояние не перетирает более новое
            if existing is not None and existing.last_seen > record.last_seen:
                return
            current_location = record.current_location
            if current_location is None and existing is not None:
                current_location = existing.current_location
            self._drivers[record.device_id] = record.model_copy(
                update={"current_location": current_location},
                deep=True,
            )

    async def find_active_drivers(self, online_only: bool = False) -> list[DriverRecord]:
        async with self._lock:
            drivers = [d.model_copy(deep=True) for d in self._drivers.values()]
        if online_only:
            drivers = [d for d in drivers if d.online]
        return sorted(drivers, key=lambda d: d.last_seen, reverse=True)

    async def insert_location(self, sample: RecordedLocation) -> None:
        return None

    async def insert_locations(self, batch: Sequence[RecordedLocation]) -> None:
        return None

    async def location_history(
        self,
        device_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[RecordedLocation]:
        return await self._history.recent(device_id, limit=limit, since=since)

    async def latest_location_per_device(self) -> list[RecordedLocation]:
        latest = await self._history.latest_per_device()
        return list(latest.values())


# =============================================================================
# POSTGRESQL
# =============================================================================

_DRIVER_COLUMNS = """
    device_id, driver_name, online, last_seen,
    current_latitude, current_longitude, current_location_at
"""

_LOCATION_COLUMNS = """
    device_id, driver_name, latitude, longitude, accuracy,
    speed, heading, "timestamp", online
"""

_INSERT_LOCATION_SQL = f"""
    INSERT INTO locations ({_LOCATION_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""


def _driver_from_row(row: Any) -> DriverRecord:
    """Строка drivers -> DriverRecord."""
    current_location = None
    if row["current_latitude"] is not None and row["current_longitude"] is not None:
        current_location = CurrentLocation(
            latitude=row["current_latitude"],
            longitude=row["current_longitude"],
            timestamp=row["current_location_at"] or row["last_seen"],
        )
    return DriverRecord(
        device_id=row["device_id"],
        driver_name=row["driver_name"],
        online=row["online"],
        last_seen=row["last_seen"],
        current_location=current_location,
    )


def _location_from_row(row: Any) -> RecordedLocation:
    """Строка locations -> RecordedLocation."""
    return RecordedLocation(
        device_id=row["device_id"],
        driver_name=row["driver_name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        accuracy=row["accuracy"],
        speed=row["speed"],
        heading=row["heading"],
        timestamp=row["timestamp"],
        online=row["online"],
    )


def _location_args(sample: RecordedLocation) -> tuple[Any, ...]:
    return (
        sample.device_id,
        sample.driver_name,
        sample.latitude,
        sample.longitude,
        sample.accuracy,
        sample.speed,
        sample.heading,
        sample.timestamp,
        sample.online,
    )


class PostgresLocationStore(LocationStore):
    """Постоянное хранилище в PostgreSQL."""

    mode = StorageMode.DURABLE

    def __init__(self, db: "DatabaseManager") -> None:
        self._db = db

    @asynccontextmanager
    async def _transient(self, operation: str) -> AsyncGenerator[None, None]:
        """Ошибки драйвера и сети -> PersistenceTransientError."""
        try:
            yield
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise PersistenceTransientError(
                f"{operation}: {e}",
                details={"operation": operation},
            ) from e
        except RuntimeError as e:
            # Пул не инициализирован
            raise PersistenceTransientError(f"{operation}: {e}", details={"operation": operation}) from e

    async def upsert_driver(self, record: DriverRecord) -> None:
        location = record.current_location
        async with self._transient("upsert_driver"):
            await self._db.execute(
                """
                INSERT INTO drivers (device_id, driver_name, online, last_seen,
                                     current_latitude, current_longitude, current_location_at,
                                     created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, NOW(), NOW())
                ON CONFLICT (device_id) DO UPDATE SET
                    driver_name = EXCLUDED.driver_name,
                    online = EXCLUDED.online,
                    last_seen = EXCLUDED.last_seen,
                    current_latitude = COALESCE(EXCLUDED.current_latitude, drivers.current_latitude),
                    current_longitude = COALESCE(EXCLUDED.current_longitude, drivers.current_longitude),
                    current_location_at = COALESCE(EXCLUDED.current_location_at, drivers.current_location_at),
                    updated_at = NOW()
                WHERE drivers.last_seen <= EXCLUDED.last_seen
                """,
                record.device_id,
                record.driver_name,
                record.online,
                record.last_seen,
                location.latitude if location else None,
                location.longitude if location else None,
                location.timestamp if location else None,
            )

    async def find_active_drivers(self, online_only: bool = False) -> list[DriverRecord]:
        async with self._transient("find_active_drivers"):
            rows = await self._db.fetch(
                f"""
                SELECT {_DRIVER_COLUMNS}
                FROM drivers
                WHERE ($1::boolean IS FALSE OR online)
                ORDER BY last_seen DESC
                """,
                online_only,
            )
        return [_driver_from_row(row) for row in rows]

    async def insert_location(self, sample: RecordedLocation) -> None:
        async with self._transient("insert_location"):
            await self._db.execute(_INSERT_LOCATION_SQL, *_location_args(sample))

    async def insert_locations(self, batch: Sequence[RecordedLocation]) -> None:
        if not batch:
            return
        async with self._transient("insert_locations"):
            await self._db.executemany(_INSERT_LOCATION_SQL, [_location_args(s) for s in batch])

    async def location_history(
        self,
        device_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[RecordedLocation]:
        async with self._transient("location_history"):
            rows = await self._db.fetch(
                f"""
                SELECT {_LOCATION_COLUMNS}
                FROM locations
                WHERE device_id = $1
                  AND ($2::timestamptz IS NULL OR "timestamp" >= $2)
                ORDER BY "timestamp" DESC, id DESC
                LIMIT $3
                """,
                device_id,
                since,
                limit,
            )
        return [_location_from_row(row) for row in rows]

    async def latest_location_per_device(self) -> list[RecordedLocation]:
        async with self._transient("latest_location_per_device"):
            rows = await self._db.fetch(
                f"""
                SELECT DISTINCT ON (device_id) {_LOCATION_COLUMNS}
                FROM locations
                ORDER BY device_id, "timestamp" DESC, id DESC
                """
            )
        return [_location_from_row(row) for row in rows]

    async def close(self) -> None:
        await self._db.disconnect()


def create_store(
    settings: "Settings",
    history: HistoryBuffer,
    db: Optional["DatabaseManager"] = None,
) -> LocationStore:
    """
    Выбор реализации хранилища по конфигурации.

    Args:
        settings: Настройки приложения
        history: Буфер истории (для режима в памяти)
        db: Менеджер БД (по умолчанию глобальный)
    """
    if not settings.database.enabled:
        return MemoryLocationStore(history)

    if db is None:
        from src.infra.database import get_db
        db = get_db()
    return PostgresLocationStore(db)


# =============================================================================
# ФОНОВЫЕ ЗАПИСИ
# =============================================================================

class WriteDispatcher:
    """
    Запуск записей в хранилище как независимых задач.

    Записи best-effort: PersistenceTransientError логируется и подавляется,
    состояние в памяти остаётся источником истины. Очереди повторов нет.
    """

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()
        self._failures = 0

    @property
    def pending(self) -> int:
        """Количество незавершённых записей."""
        return len(self._pending)

    @property
    def failures(self) -> int:
        """Количество подавленных ошибок записи."""
        return self._failures

    def dispatch(
        self,
        operation: Coroutine[Any, Any, None],
        *,
        description: str,
        device_id: str | None = None,
    ) -> asyncio.Task:
        """Запустить запись, не дожидаясь её завершения."""
        task = asyncio.create_task(self._run(operation, description, device_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(
        self,
        operation: Coroutine[Any, Any, None],
        description: str,
        device_id: str | None,
    ) -> None:
        try:
            await operation
        except PersistenceTransientError as e:
            self._failures += 1
            await log_warning(
                f"Запись в хранилище не выполнена ({description}): {e.message}",
                logger_name="persistence",
                extra={"device_id": device_id, "operation": description},
            )
        except Exception as e:
            self._failures += 1
            await log_error(
                f"Непредвиденная ошибка записи ({description}): {e}",
                logger_name="persistence",
                extra={"device_id": device_id, "operation": description},
                exc_info=True,
            )

    async def drain(self) -> None:
        """Дождаться всех запущенных записей."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
