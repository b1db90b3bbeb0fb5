# src/services/tracking_gateway/app.py
"""
FastAPI приложение шлюза трекинга.

Endpoints (см. routes.py):
- /ws/driver, /ws/admin: WebSocket
- /api/drivers, /api/locations: чтение состояния

Здесь же:
- GET /health: проверка здоровья
- GET /api/mobile/status: доступность для мобильных клиентов
- GET /stats: статистика
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from src.common.constants import StorageMode, TypeMsg
from src.common.errors import PersistenceTransientError
from src.common.logger import log_info, log_warning
from src.config import settings
from src.core.tracking.service import TrackingService
from src.services.tracking_gateway.connection_manager import ConnectionManager
from src.services.tracking_gateway.dependencies import get_connection_manager, get_tracking_service
from src.services.tracking_gateway.models import ErrorResponse, HealthStatus, MobileStatus, StatsResponse
from src.services.tracking_gateway.routes import router


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    if app.state.tracking is None:
        app.state.tracking = TrackingService(settings)
    service: TrackingService = app.state.tracking

    # Startup
    await service.start()
    app.state.started_at = time.monotonic()
    await log_info(
        f"Шлюз трекинга запущен, режим хранения: {service.mode.value}",
        type_msg=TypeMsg.INFO,
        logger_name="gateway",
    )

    yield

    # Shutdown
    await log_info("Остановка шлюза трекинга...", type_msg=TypeMsg.INFO, logger_name="gateway")
    await service.stop()


async def persistence_error_handler(request: Request, exc: PersistenceTransientError) -> JSONResponse:
    """Хранилище недоступно при чтении -> 503."""
    await log_warning(f"Хранилище недоступно: {exc.message}", logger_name="gateway")
    body = ErrorResponse(error_code=exc.code, message=exc.message, details=exc.details or None)
    return JSONResponse(status_code=503, content=body.model_dump())


# === APP ===

def create_app(service: TrackingService | None = None) -> FastAPI:
    """
    Создать приложение шлюза.

    Args:
        service: Готовый сервис трекинга (по умолчанию создаётся из настроек при старте)
    """
    app = FastAPI(
        title="Fleet Tracking Gateway",
        description="Присутствие водителей и live-трекинг для админ-панелей.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.tracking = service
    app.state.connections = ConnectionManager()
    app.state.started_at = time.monotonic()

    app.add_exception_handler(PersistenceTransientError, persistence_error_handler)
    app.include_router(router)

    # === HEALTH CHECK ===

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check(
        service: TrackingService = Depends(get_tracking_service),
    ) -> HealthStatus:
        """Проверка здоровья сервиса."""
        dependencies: dict[str, str] = {}
        status = "healthy"

        if service.mode == StorageMode.DURABLE:
            healthy = await service.storage_healthy()
            dependencies["postgres"] = "healthy" if healthy else "unhealthy"
            if not healthy:
                status = "degraded"
        if service.relay is not None:
            dependencies["redis"] = "enabled"

        return HealthStatus(
            service=settings.system.PROJECT_NAME,
            status=status,
            version=settings.system.VERSION,
            uptime_seconds=round(time.monotonic() - app.state.started_at, 3),
            storage_mode=service.mode.value,
            observers=service.hub.observer_count,
            dependencies=dependencies,
        )

    @app.get("/api/mobile/status", response_model=MobileStatus, tags=["Health"])
    async def mobile_status() -> MobileStatus:
        """Проверка доступности для мобильных клиентов."""
        return MobileStatus(timestamp=datetime.now(timezone.utc).isoformat())

    # === STATS ===

    @app.get("/stats", response_model=StatsResponse, tags=["Stats"])
    async def get_stats(
        service: TrackingService = Depends(get_tracking_service),
        manager: ConnectionManager = Depends(get_connection_manager),
    ) -> StatsResponse:
        """Статистика сервиса и соединений."""
        return StatsResponse(tracking=service.get_stats(), connections=manager.get_stats())

    return app


# Приложение для uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.deployment.GATEWAY_HOST, port=settings.deployment.GATEWAY_PORT)
