#!/usr/bin/env python3
# main.py
"""
Главная точка входа Fleet Tracker.
Запускает шлюз трекинга (WebSocket + REST) под uvicorn.
"""

from __future__ import annotations

import asyncio
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg


async def run_gateway() -> None:
    """Запускает шлюз трекинга. SIGINT/SIGTERM обрабатывает uvicorn."""
    import uvicorn

    host = settings.deployment.GATEWAY_HOST
    port = settings.deployment.GATEWAY_PORT
    await log_info(f"Запуск шлюза трекинга на {host}:{port}...", type_msg=TypeMsg.INFO)

    config = uvicorn.Config(
        "src.services.tracking_gateway.app:app",
        host=host,
        port=port,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Шлюз трекинга: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def main() -> None:
    """Главная функция запуска."""
    setup_logging()

    storage = "PostgreSQL" if settings.database.enabled else "память"
    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}, хранилище: {storage}",
        type_msg=TypeMsg.INFO,
    )

    try:
        await run_gateway()
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        sys.exit(1)

    await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
