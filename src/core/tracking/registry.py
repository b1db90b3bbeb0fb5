# src/core/tracking/registry.py
"""
Реестр присутствия водителей.

Связывает соединения с device_id и хранит каноническое состояние
online/offline. Отключение транспорта не переводит водителя в offline:
это делает только StalenessSweeper (или явный mark_offline), поэтому
быстрое переподключение не мигает статусом у наблюдателей.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.tracking.broadcast import BroadcastHub
from src.core.tracking.models import CurrentLocation, DriverRecord, utc_now
from src.core.tracking.repository import LocationStore, WriteDispatcher


class PresenceRegistry:
    """
    Реестр водителей и привязок соединений.

    Все изменения идут через методы реестра; наружу отдаются только копии
    записей. Операции над одним устройством сериализуются его блокировкой,
    запись в хранилище запускается уже после её освобождения.
    """

    def __init__(
        self,
        store: LocationStore,
        hub: BroadcastHub,
        writer: WriteDispatcher,
    ) -> None:
        self._store = store
        self._hub = hub
        self._writer = writer

        # device_id -> DriverRecord
        self._drivers: dict[str, DriverRecord] = {}
        # connection_id -> device_id
        self._bindings: dict[str, str] = {}
        # device_id -> connection_id
        self._connections: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        return self._locks.setdefault(device_id, asyncio.Lock())

    # =========================================================================
    # ПРИВЯЗКИ
    # =========================================================================

    async def register(self, connection_id: str, device_id: str, driver_name: str) -> DriverRecord:
        """
        Зарегистрировать водителя на соединении.

        Создаёт или обновляет запись (online, last_seen=now) и привязывает
        соединение. Повторная регистрация с нового соединения переносит привязку.
        """
        async with self._lock_for(device_id):
            now = utc_now()
            existing = self._drivers.get(device_id)
            if existing is None:
                record = DriverRecord(
                    device_id=device_id,
                    driver_name=driver_name,
                    online=True,
                    last_seen=now,
                )
            else:
                record = existing.model_copy(update={
                    "driver_name": driver_name,
                    "online": True,
                    "last_seen": now,
                })
            self._drivers[device_id] = record

            previous_device = self._bindings.get(connection_id)
            if previous_device is not None and previous_device != device_id:
                if self._connections.get(previous_device) == connection_id:
                    del self._connections[previous_device]

            previous_connection = self._connections.get(device_id)
            if previous_connection is not None and previous_connection != connection_id:
                self._bindings.pop(previous_connection, None)

            self._bindings[connection_id] = device_id
            self._connections[device_id] = connection_id
            snapshot = record.model_copy(deep=True)

        self._persist(snapshot, "register")
        await log_info(
            f"Водитель зарегистрирован: {driver_name} ({device_id})",
            type_msg=TypeMsg.INFO,
            logger_name="presence",
            extra={"device_id": device_id, "connection_id": connection_id},
        )
        self._hub.publish_drivers_updated(await self.list_active())
        return snapshot

    async def unbind(self, connection_id: str) -> Optional[str]:
        """
        Снять привязку соединения.

        last_seen сдвигается на момент отключения, статус online не меняется:
        отсчёт порога неактивности начинается с разрыва соединения.

        Returns:
            device_id, если соединение было привязано
        """
        device_id = self._bindings.pop(connection_id, None)
        if device_id is None:
            return None

        snapshot: Optional[DriverRecord] = None
        async with self._lock_for(device_id):
            if self._connections.get(device_id) == connection_id:
                del self._connections[device_id]
            existing = self._drivers.get(device_id)
            if existing is not None:
                record = existing.model_copy(update={"last_seen": utc_now()})
                self._drivers[device_id] = record
                snapshot = record.model_copy(deep=True)

        if snapshot is not None:
            self._persist(snapshot, "unbind")

        await log_info(
            f"Соединение водителя {device_id} закрыто",
            type_msg=TypeMsg.DEBUG,
            logger_name="presence",
            extra={"device_id": device_id, "connection_id": connection_id},
        )
        return device_id

    def device_for(self, connection_id: str) -> Optional[str]:
        """device_id, привязанный к соединению."""
        return self._bindings.get(connection_id)

    def is_connected(self, device_id: str) -> bool:
        """Есть ли у устройства активное соединение."""
        return device_id in self._connections

    # =========================================================================
    # ПРИСУТСТВИЕ
    # =========================================================================

    async def touch(
        self,
        device_id: str,
        location: Optional[CurrentLocation] = None,
    ) -> Optional[DriverRecord]:
        """
        Отметить активность: last_seen=now, online=True.

        Если водитель возвращается из offline, наблюдатели получают
        обновлённый список водителей.
        """
        async with self._lock_for(device_id):
            existing = self._drivers.get(device_id)
            if existing is None:
                return None

            update: dict = {"online": True, "last_seen": utc_now()}
            if location is not None:
                update["current_location"] = location
            record = existing.model_copy(update=update)
            self._drivers[device_id] = record
            came_online = not existing.online
            snapshot = record.model_copy(deep=True)

        self._persist(snapshot, "touch")
        if came_online:
            self._hub.publish_drivers_updated(await self.list_active())
        return snapshot

    async def mark_offline(self, device_id: str) -> Optional[DriverRecord]:
        """Перевести водителя в offline и оповестить наблюдателей."""
        changed = await self._set_offline(device_id, stale_before=None)
        if changed is None:
            return None
        self._hub.publish_drivers_updated(await self.list_active())
        return changed

    async def mark_offline_batch(self, stale_before: datetime) -> list[DriverRecord]:
        """
        Перевести в offline всех онлайн-водителей с last_seen < stale_before.

        Наблюдатели получают один drivers-updated, если что-то изменилось.

        Returns:
            Изменённые записи
        """
        changed: list[DriverRecord] = []
        for device_id in list(self._drivers):
            record = await self._set_offline(device_id, stale_before=stale_before)
            if record is not None:
                changed.append(record)

        if changed:
            self._hub.publish_drivers_updated(await self.list_active())
        return changed

    async def _set_offline(
        self,
        device_id: str,
        stale_before: Optional[datetime],
    ) -> Optional[DriverRecord]:
        async with self._lock_for(device_id):
            existing = self._drivers.get(device_id)
            if existing is None or not existing.online:
                return None
            # Условие перепроверяется под блокировкой: touch мог успеть раньше
            if stale_before is not None and existing.last_seen >= stale_before:
                return None
            record = existing.model_copy(update={"online": False})
            self._drivers[device_id] = record
            snapshot = record.model_copy(deep=True)

        self._persist(snapshot, "mark_offline")
        return snapshot

    async def list_active(self) -> list[DriverRecord]:
        """Копии всех записей, новые по last_seen первыми."""
        drivers = [record.model_copy(deep=True) for record in self._drivers.values()]
        return sorted(drivers, key=lambda d: d.last_seen, reverse=True)

    async def get(self, device_id: str) -> Optional[DriverRecord]:
        """Копия записи водителя."""
        record = self._drivers.get(device_id)
        return record.model_copy(deep=True) if record is not None else None

    async def restore(self, records: list[DriverRecord]) -> int:
        """
        Загрузить водителей из хранилища при старте (без привязок).

        Уже известные реестру записи не перетираются.
        """
        restored = 0
        for record in records:
            async with self._lock_for(record.device_id):
                if record.device_id in self._drivers:
                    continue
                self._drivers[record.device_id] = record.model_copy(deep=True)
                restored += 1
        return restored

    def _persist(self, record: DriverRecord, reason: str) -> None:
        self._writer.dispatch(
            self._store.upsert_driver(record),
            description=f"upsert_driver:{reason}",
            device_id=record.device_id,
        )

    def get_stats(self) -> dict[str, int]:
        """Статистика реестра."""
        return {
            "drivers": len(self._drivers),
            "online": sum(1 for d in self._drivers.values() if d.online),
            "connections": len(self._bindings),
        }
