# src/core/tracking/sweeper.py
"""
Периодический перевод «молчащих» водителей в offline.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.core.tracking.models import DriverRecord, utc_now
from src.core.tracking.registry import PresenceRegistry


class StalenessSweeper:
    """
    Фоновая задача: каждые `interval` секунд переводит в offline водителей
    без активности дольше `threshold` секунд.

    Тик: ограниченная самостоятельная единица работы, он не отменяется
    на середине: stop() дожидается текущего тика.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        threshold: float = 300,
        interval: float = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._threshold = timedelta(seconds=threshold)
        self._interval = interval
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._ticks = 0
        self._demoted = 0

    @property
    def is_running(self) -> bool:
        """Запущена ли фоновая задача."""
        return self._task is not None and not self._task.done()

    async def tick(self) -> list[DriverRecord]:
        """
        Один проход: mark_offline_batch(now - threshold).

        Returns:
            Водители, переведённые в offline
        """
        stale_before = self._clock() - self._threshold
        changed = await self._registry.mark_offline_batch(stale_before)

        self._ticks += 1
        self._demoted += len(changed)
        if changed:
            await log_info(
                f"Переведено в offline по неактивности: {len(changed)}",
                type_msg=TypeMsg.INFO,
                logger_name="sweeper",
                extra={"device_ids": [record.device_id for record in changed]},
            )
        return changed

    async def start(self) -> None:
        """Запустить периодическую задачу."""
        if self.is_running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stopping))
        await log_info(
            f"Sweeper запущен: порог {self._threshold.total_seconds():.0f}с, интервал {self._interval}с",
            type_msg=TypeMsg.DEBUG,
            logger_name="sweeper",
        )

    async def stop(self) -> None:
        """Остановить задачу, дождавшись текущего тика."""
        if self._task is None or self._stopping is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        self._stopping = None

    async def _run(self, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                # Ошибка одного тика не останавливает sweeper
                await log_error(f"Ошибка sweeper: {e}", logger_name="sweeper", exc_info=True)

    def get_stats(self) -> dict[str, int]:
        """Статистика sweeper."""
        return {"ticks": self._ticks, "demoted": self._demoted}
