# src/services/tracking_gateway/routes.py
"""
Маршруты шлюза трекинга.

WebSocket:
- /ws/driver: водители (register-driver, location-update, sync-locations)
- /ws/admin: админ-панели, снимок состояния и live-события

REST:
- GET /api/drivers: водители, новые по last_seen первыми
- GET /api/locations/{device_id}: история устройства
- GET /api/locations: последняя точка каждого устройства
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from src.common.constants import InboundEvent, OutboundEvent
from src.common.errors import (
    BroadcastDeliveryError,
    PersistenceTransientError,
    TrackingError,
    ValidationError,
)
from src.common.logger import log_error, log_warning
from src.core.tracking.broadcast import Subscription
from src.core.tracking.models import DriverRecord, RecordedLocation
from src.core.tracking.service import TrackingService
from src.services.tracking_gateway.connection_manager import ConnectionInfo, ConnectionManager
from src.services.tracking_gateway.dependencies import get_connection_manager, get_tracking_service
from src.services.tracking_gateway.models import ErrorResponse

router = APIRouter()

_UNAVAILABLE = {503: {"model": ErrorResponse}}


# === QUERY ENDPOINTS ===

@router.get("/api/drivers", response_model=list[DriverRecord], responses=_UNAVAILABLE, tags=["Drivers"])
async def list_drivers(
    service: TrackingService = Depends(get_tracking_service),
) -> list[DriverRecord]:
    """Водители, новые по last_seen первыми."""
    return await service.drivers()


@router.get("/api/locations", response_model=list[RecordedLocation], responses=_UNAVAILABLE, tags=["Locations"])
async def latest_locations(
    service: TrackingService = Depends(get_tracking_service),
) -> list[RecordedLocation]:
    """Последняя точка каждого устройства."""
    return await service.latest_locations()


@router.get(
    "/api/locations/{device_id}",
    response_model=list[RecordedLocation],
    responses=_UNAVAILABLE,
    tags=["Locations"],
)
async def device_locations(
    device_id: str,
    limit: int | None = Query(default=None, ge=1),
    since: datetime | None = Query(default=None),
    service: TrackingService = Depends(get_tracking_service),
) -> list[RecordedLocation]:
    """История устройства, новые первыми (не больше 100 точек)."""
    return await service.locations(device_id, limit=limit, since=since)


# === WEBSOCKET: DRIVER ===

@router.websocket("/ws/driver")
async def websocket_driver(
    websocket: WebSocket,
    service: TrackingService = Depends(get_tracking_service),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> None:
    """
    WebSocket для водителей.

    Входящие сообщения:
    - {"event": "register-driver", "data": {"deviceId": "...", "driverName": "..."}}
    - {"event": "location-update", "data": {"latitude": 50.45, "longitude": 30.52, ...}}
    - {"event": "sync-locations", "data": {"locations": [...]}}

    Закрытие соединения снимает привязку, но не переводит водителя в offline.
    """
    connection = await manager.connect(websocket, "driver")

    try:
        while True:
            raw = await websocket.receive_text()
            await connection.send(await _handle_driver_message(service, connection.connection_id, raw))

    except (WebSocketDisconnect, BroadcastDeliveryError):
        pass
    except Exception as e:
        await log_error(f"Ошибка соединения водителя: {e}", logger_name="gateway", exc_info=True)
    finally:
        await service.handle_disconnect(connection.connection_id)
        manager.disconnect(connection.connection_id)


async def _handle_driver_message(service: TrackingService, connection_id: str, raw: str) -> dict:
    """Обработать сообщение водителя, вернуть ответ."""
    event = None
    try:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError("Сообщение должно быть JSON") from e
        if not isinstance(message, dict):
            raise ValidationError("Сообщение должно быть объектом {event, data}")

        event = message.get("event")
        data = message.get("data")

        if event == InboundEvent.REGISTER_DRIVER:
            driver = await service.handle_register(connection_id, data)
            return {
                "event": OutboundEvent.REGISTERED.value,
                "data": {"driver": driver.model_dump(mode="json")},
            }

        if event == InboundEvent.LOCATION_UPDATE:
            location = await service.handle_location_update(connection_id, data)
            return {
                "event": OutboundEvent.LOCATION_RECORDED.value,
                "data": {"location": location.model_dump(mode="json")},
            }

        if event == InboundEvent.SYNC_LOCATIONS:
            result = await service.handle_sync(connection_id, data)
            return {
                "event": OutboundEvent.SYNC_COMPLETE.value,
                "data": result.model_dump(mode="json", exclude={"device_id"}),
            }

        raise ValidationError(f"Неизвестное событие: {event}")

    except TrackingError as e:
        return {
            "event": OutboundEvent.ERROR.value,
            "data": {"code": e.code, "message": e.message, "event": event},
        }


# === WEBSOCKET: ADMIN ===

@router.websocket("/ws/admin")
async def websocket_admin(
    websocket: WebSocket,
    service: TrackingService = Depends(get_tracking_service),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> None:
    """
    WebSocket для админ-панелей.

    При подключении отправляется снимок (drivers-updated и locations-snapshot),
    затем live-события drivers-updated и location-update.
    """
    connection = await manager.connect(websocket, "admin")
    # Подписка до чтения снимка, чтобы не потерять события между ними
    subscription = service.subscribe(label=f"admin-{connection.connection_id[:8]}")

    tasks: list[asyncio.Task] = []
    try:
        await _send_snapshot(service, connection)
        tasks = [
            asyncio.create_task(_pump_events(connection, subscription)),
            asyncio.create_task(_receive_until_disconnect(websocket)),
        ]
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    except BroadcastDeliveryError:
        pass
    finally:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        subscription.unsubscribe()
        manager.disconnect(connection.connection_id)


async def _send_snapshot(service: TrackingService, connection: ConnectionInfo) -> None:
    """Текущее состояние из хранилища для нового наблюдателя."""
    try:
        drivers = await service.drivers()
        locations = await service.latest_locations()
    except PersistenceTransientError as e:
        await connection.send({"event": OutboundEvent.ERROR.value, "data": e.to_dict()})
        return

    await connection.send({
        "event": OutboundEvent.DRIVERS_UPDATED.value,
        "data": [driver.model_dump(mode="json") for driver in drivers],
    })
    await connection.send({
        "event": OutboundEvent.LOCATIONS_SNAPSHOT.value,
        "data": [location.model_dump(mode="json") for location in locations],
    })


async def _pump_events(connection: ConnectionInfo, subscription: Subscription) -> None:
    """Пересылать события хаба наблюдателю."""
    async for event in subscription:
        try:
            await connection.send(event.to_message())
        except BroadcastDeliveryError as e:
            await log_warning(
                f"Наблюдатель {subscription.label} недоступен: {e.message}",
                logger_name="gateway",
            )
            return

    # Подписка закрыта хабом (медленный наблюдатель или остановка сервиса)
    try:
        await connection.websocket.close(code=1013)
    except Exception as e:
        await log_warning(f"Не удалось закрыть соединение {subscription.label}: {e}", logger_name="gateway")


async def _receive_until_disconnect(websocket: WebSocket) -> None:
    """Входящие сообщения админ-панели игнорируются."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
