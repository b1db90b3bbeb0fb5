# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Устанавливаем переменные окружения перед импортом модулей:
# тесты работают без PostgreSQL и Redis
os.environ["DB_DSN"] = ""
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

from src.config.loader import Settings  # noqa: E402
from src.core.tracking.broadcast import BroadcastHub  # noqa: E402
from src.core.tracking.history import HistoryBuffer  # noqa: E402
from src.core.tracking.models import RecordedLocation  # noqa: E402
from src.core.tracking.registry import PresenceRegistry  # noqa: E402
from src.core.tracking.repository import MemoryLocationStore, WriteDispatcher  # noqa: E402
from src.core.tracking.service import TrackingService  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "fleet_tracker_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "colored",
        "DB_DSN": "",
        "DB_MIN_POOL_SIZE": 2,
        "DB_MAX_POOL_SIZE": 5,
        "DB_COMMAND_TIMEOUT": 30,
        "DB_RETRY_ATTEMPTS": 2,
        "DB_RETRY_DELAY": 0.5,
        "REDIS_URL": "",
        "REDIS_CHANNEL": "fleet:test",
        "STALE_THRESHOLD_SECONDS": 300,
        "SWEEP_INTERVAL_SECONDS": 300,
        "HISTORY_CAPACITY": 100,
        "HISTORY_QUERY_LIMIT": 100,
        "OBSERVER_QUEUE_SIZE": 16,
        "GATEWAY_HOST": "127.0.0.1",
        "GATEWAY_PORT": 3001,
    }


@pytest.fixture
def memory_settings(mock_config: dict[str, Any]) -> Settings:
    """Настройки режима в памяти."""
    return Settings.from_dict(mock_config)


# =============================================================================
# ФИКСТУРЫ ЯДРА ТРЕКИНГА
# =============================================================================

@pytest.fixture
def history() -> HistoryBuffer:
    return HistoryBuffer(capacity=100)


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub(queue_size=16, instance_id="test-instance")


@pytest.fixture
def writer() -> WriteDispatcher:
    return WriteDispatcher()


@pytest.fixture
def memory_store(history: HistoryBuffer) -> MemoryLocationStore:
    return MemoryLocationStore(history)


@pytest.fixture
def registry(
    memory_store: MemoryLocationStore,
    hub: BroadcastHub,
    writer: WriteDispatcher,
) -> PresenceRegistry:
    return PresenceRegistry(memory_store, hub, writer)


@pytest_asyncio.fixture
async def service(memory_settings: Settings) -> AsyncGenerator[TrackingService, None]:
    """Запущенный сервис трекинга в режиме памяти."""
    tracking = TrackingService(memory_settings)
    await tracking.start()
    yield tracking
    await tracking.stop()


@pytest.fixture
def mock_db() -> MagicMock:
    """Мок DatabaseManager."""
    db = MagicMock()
    db.is_connected = True
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.executemany = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.fetchval = AsyncMock(return_value=1)
    db.disconnect = AsyncMock()
    db.health_check = AsyncMock(return_value=True)
    return db


# =============================================================================
# ФАБРИКИ ДАННЫХ
# =============================================================================

def _make_location(
    device_id: str = "dev-1",
    latitude: float = 50.45,
    longitude: float = 30.52,
    timestamp: datetime | None = None,
    online: bool = True,
    driver_name: str = "Ivan",
) -> RecordedLocation:
    """Принятая локация для тестов."""
    return RecordedLocation(
        device_id=device_id,
        driver_name=driver_name,
        latitude=latitude,
        longitude=longitude,
        timestamp=timestamp or datetime.now(timezone.utc),
        online=online,
    )


@pytest.fixture
def make_location():
    """Фабрика принятых локаций."""
    return _make_location
