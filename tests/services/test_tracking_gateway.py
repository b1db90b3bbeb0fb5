# tests/services/test_tracking_gateway.py
"""
Тесты шлюза трекинга: WebSocket водителей и админ-панелей, REST, health.
"""

from __future__ import annotations

from typing import Iterator
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from src.common.errors import PersistenceTransientError
from src.config.loader import Settings
from src.core.tracking.service import TrackingService
from src.services.tracking_gateway.app import create_app
from src.services.tracking_gateway.routes import _handle_driver_message


REGISTER = {"event": "register-driver", "data": {"deviceId": "D1", "driverName": "Alice"}}


def location(lat: float = 50.45, lon: float = 30.52, timestamp: str = "2024-05-01T12:00:00+00:00") -> dict:
    return {
        "event": "location-update",
        "data": {"latitude": lat, "longitude": lon, "accuracy": 5, "timestamp": timestamp},
    }


@pytest.fixture
def tracking(memory_settings: Settings) -> TrackingService:
    """Сервис в режиме памяти (запускается lifespan приложения)."""
    return TrackingService(memory_settings)


@pytest.fixture
def client(tracking: TrackingService) -> Iterator[TestClient]:
    with TestClient(create_app(tracking)) as test_client:
        yield test_client


class TestDriverWebSocket:
    """Тесты /ws/driver."""

    def test_register_and_location(self, client: TestClient, tracking: TrackingService) -> None:
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(REGISTER)
            registered = ws.receive_json()

            ws.send_json(location())
            recorded = ws.receive_json()

        assert registered["event"] == "registered"
        assert registered["data"]["driver"]["device_id"] == "D1"
        assert registered["data"]["driver"]["online"] is True
        assert recorded["event"] == "location-recorded"
        assert recorded["data"]["location"]["driver_name"] == "Alice"
        assert recorded["data"]["location"]["timestamp"].startswith("2024-05-01T12:00:00")

    def test_location_without_register(self, client: TestClient) -> None:
        """Точка до регистрации отклоняется, соединение остаётся открытым."""
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(location())
            error = ws.receive_json()

            ws.send_json(REGISTER)
            registered = ws.receive_json()

        assert error["event"] == "error"
        assert error["data"]["code"] == "unregistered"
        assert error["data"]["event"] == "location-update"
        assert registered["event"] == "registered"

    def test_invalid_coordinates(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(REGISTER)
            ws.receive_json()
            ws.send_json(location(lat=95))
            error = ws.receive_json()

        assert error["data"]["code"] == "invalid_coordinates"

    def test_sync_locations(self, client: TestClient) -> None:
        """Пакет офлайн-точек: принятые и отклонённые с индексами."""
        samples = [
            location(timestamp="2024-05-01T12:00:00+00:00")["data"],
            location(lat=200)["data"],
            location(timestamp="2024-05-01T12:01:00+00:00")["data"],
        ]
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(REGISTER)
            ws.receive_json()
            ws.send_json({"event": "sync-locations", "data": {"locations": samples}})
            result = ws.receive_json()

        assert result["event"] == "sync-complete"
        assert result["data"]["accepted"] == 2
        assert result["data"]["rejected"] == 1
        assert result["data"]["errors"][0]["index"] == 1
        assert "device_id" not in result["data"]

        history = client.get("/api/locations/D1").json()
        assert [loc["timestamp"][:19] for loc in history] == ["2024-05-01T12:01:00", "2024-05-01T12:00:00"]
        assert all(loc["online"] is False for loc in history)

    def test_disconnect_keeps_driver_online(self, client: TestClient, tracking: TrackingService) -> None:
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(REGISTER)
            ws.receive_json()

        stats = client.get("/stats").json()

        assert stats["tracking"]["online"] == 1
        assert stats["tracking"]["connections"] == 0
        assert stats["connections"]["active_connections"] == 0
        assert stats["connections"]["total_connections_ever"] == 1


class TestHandleDriverMessage:
    """Разбор сырых сообщений водителя."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"event": "delete-driver", "data": {}}'])
    async def test_bad_messages(self, service: TrackingService, raw: str) -> None:
        reply = await _handle_driver_message(service, "conn-1", raw)

        assert reply["event"] == "error"
        assert reply["data"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_register_missing_fields(self, service: TrackingService) -> None:
        reply = await _handle_driver_message(service, "conn-1", '{"event": "register-driver", "data": {}}')

        assert reply["data"]["code"] == "validation_error"
        assert reply["data"]["event"] == "register-driver"


class TestAdminWebSocket:
    """Тесты /ws/admin."""

    def test_snapshot_then_live_events(self, client: TestClient) -> None:
        """Новый наблюдатель получает снимок, затем события водителей."""
        with client.websocket_connect("/ws/driver") as driver:
            driver.send_json(REGISTER)
            driver.receive_json()
            driver.send_json(location())
            driver.receive_json()

            with client.websocket_connect("/ws/admin") as admin:
                drivers_snapshot = admin.receive_json()
                locations_snapshot = admin.receive_json()

                driver.send_json(location(lat=51.0, timestamp="2024-05-01T12:05:00+00:00"))
                driver.receive_json()
                live = admin.receive_json()

        assert drivers_snapshot["event"] == "drivers-updated"
        assert [d["device_id"] for d in drivers_snapshot["data"]] == ["D1"]
        assert locations_snapshot["event"] == "locations-snapshot"
        assert locations_snapshot["data"][0]["latitude"] == 50.45
        assert live["event"] == "location-update"
        assert live["data"]["latitude"] == 51.0

    def test_registration_broadcast(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/admin") as admin:
            assert admin.receive_json()["data"] == []
            assert admin.receive_json()["data"] == []

            with client.websocket_connect("/ws/driver") as driver:
                driver.send_json(REGISTER)
                driver.receive_json()
                update = admin.receive_json()

        assert update["event"] == "drivers-updated"
        assert update["data"][0]["driver_name"] == "Alice"
        assert update["data"][0]["online"] is True

    def test_observer_unsubscribed_on_close(self, client: TestClient, tracking: TrackingService) -> None:
        with client.websocket_connect("/ws/admin") as admin:
            admin.receive_json()
            admin.receive_json()
            assert tracking.hub.observer_count == 1

        client.get("/health")
        assert tracking.hub.observer_count == 0


class TestRestEndpoints:
    """Тесты REST API."""

    def _register_with_points(self, client: TestClient, count: int) -> None:
        with client.websocket_connect("/ws/driver") as ws:
            ws.send_json(REGISTER)
            ws.receive_json()
            for minute in range(count):
                ws.send_json(location(lat=50 + minute, timestamp=f"2024-05-01T12:{minute:02d}:00+00:00"))
                ws.receive_json()

    def test_drivers_empty(self, client: TestClient) -> None:
        response = client.get("/api/drivers")

        assert response.status_code == 200
        assert response.json() == []

    def test_drivers(self, client: TestClient, tracking: TrackingService) -> None:
        self._register_with_points(client, 1)

        drivers = client.get("/api/drivers").json()

        assert drivers[0]["device_id"] == "D1"
        assert drivers[0]["current_location"]["latitude"] == 50

    def test_device_history_limit(self, client: TestClient) -> None:
        self._register_with_points(client, 3)

        response = client.get("/api/locations/D1", params={"limit": 2})

        assert response.status_code == 200
        assert [loc["latitude"] for loc in response.json()] == [52, 51]

    def test_device_history_since(self, client: TestClient) -> None:
        self._register_with_points(client, 3)

        response = client.get("/api/locations/D1", params={"since": "2024-05-01T12:01:00+00:00"})

        assert [loc["latitude"] for loc in response.json()] == [52, 51]

    def test_invalid_limit(self, client: TestClient) -> None:
        assert client.get("/api/locations/D1", params={"limit": 0}).status_code == 422

    def test_unknown_device(self, client: TestClient) -> None:
        assert client.get("/api/locations/unknown").json() == []

    def test_latest_locations(self, client: TestClient) -> None:
        self._register_with_points(client, 2)

        latest = client.get("/api/locations").json()

        assert len(latest) == 1
        assert latest[0]["latitude"] == 51

    def test_storage_unavailable_returns_503(self, client: TestClient, tracking: TrackingService) -> None:
        """Ошибка хранилища при чтении: 503 с кодом ошибки."""
        error = PersistenceTransientError("db down", details={"operation": "find_active_drivers"})

        with patch.object(tracking.store, "find_active_drivers", AsyncMock(side_effect=error)):
            response = client.get("/api/drivers")

        assert response.status_code == 503
        body = response.json()
        assert body["error_code"] == "persistence_unavailable"
        assert body["details"] == {"operation": "find_active_drivers"}

    def test_admin_snapshot_storage_error(self, client: TestClient, tracking: TrackingService) -> None:
        """Наблюдатель получает событие error вместо снимка."""
        error = PersistenceTransientError("db down")

        with patch.object(tracking.store, "find_active_drivers", AsyncMock(side_effect=error)):
            with client.websocket_connect("/ws/admin") as admin:
                message = admin.receive_json()

        assert message["event"] == "error"
        assert message["data"]["code"] == "persistence_unavailable"


class TestHealth:
    """Тесты health и статуса."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage_mode"] == "memory"
        assert data["dependencies"] == {}

    def test_mobile_status(self, client: TestClient) -> None:
        data = client.get("/api/mobile/status").json()

        assert data["success"] is True
        assert data["message"] == "Mobile API is running"
        assert data["timestamp"]

    def test_lifespan_stops_service(self, tracking: TrackingService) -> None:
        with TestClient(create_app(tracking)):
            assert tracking.is_started

        assert not tracking.is_started
