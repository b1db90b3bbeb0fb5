# src/services/tracking_gateway/connection_manager.py
"""
Менеджер WebSocket соединений шлюза.
Учитывает соединения водителей и админ-панелей, отправляет сообщения.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

from src.common.errors import BroadcastDeliveryError


@dataclass
class ConnectionInfo:
    """Информация о соединении."""
    websocket: WebSocket
    role: str  # driver, admin
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages_sent: int = 0

    async def send(self, message: dict[str, Any]) -> None:
        """
        Отправить сообщение клиенту.

        Raises:
            BroadcastDeliveryError: соединение разорвано
        """
        try:
            await self.websocket.send_json(message)
        except Exception as e:
            raise BroadcastDeliveryError(
                f"Не удалось отправить сообщение: {e}",
                details={"connection_id": self.connection_id, "role": self.role},
            ) from e
        self.messages_sent += 1


class ConnectionManager:
    """
    Менеджер WebSocket соединений.

    Поддерживает:
    - Подключение/отключение клиентов
    - Подсчёт соединений по роли
    """

    def __init__(self) -> None:
        # connection_id -> ConnectionInfo
        self._connections: dict[str, ConnectionInfo] = {}

        # Для статистики
        self._total_connections: int = 0

    @property
    def active_connections(self) -> int:
        """Количество активных соединений."""
        return len(self._connections)

    async def connect(self, websocket: WebSocket, role: str) -> ConnectionInfo:
        """Принять соединение."""
        await websocket.accept()

        connection = ConnectionInfo(websocket=websocket, role=role)
        self._connections[connection.connection_id] = connection
        self._total_connections += 1
        return connection

    def disconnect(self, connection_id: str) -> None:
        """Отключить клиента."""
        self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> ConnectionInfo | None:
        return self._connections.get(connection_id)

    def get_stats(self) -> dict[str, Any]:
        """Получить статистику."""
        return {
            "active_connections": len(self._connections),
            "total_connections_ever": self._total_connections,
            "connections_by_role": self._count_by_role(),
        }

    def _count_by_role(self) -> dict[str, int]:
        """Подсчёт соединений по роли."""
        counts: dict[str, int] = {}
        for conn in self._connections.values():
            counts[conn.role] = counts.get(conn.role, 0) + 1
        return counts
