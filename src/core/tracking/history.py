# src/core/tracking/history.py
"""
Буфер истории локаций.

Для каждого устройства хранится не более `capacity` последних точек (FIFO).
В режиме без постоянного хранилища это единственный источник истории,
поэтому буфер помнит все устройства, которые когда-либо присылали точки.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Optional

from src.core.tracking.models import RecordedLocation


DEFAULT_HISTORY_CAPACITY = 100


class HistoryBuffer:
    """
    Ограниченная история точек по устройствам.

    Каждое устройство защищено собственным asyncio.Lock, чтобы приём
    точек от разных водителей не сериализовался на одной блокировке.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity должен быть положительным")
        self._capacity = capacity
        # device_id -> точки в порядке вставки
        self._samples: dict[str, deque[RecordedLocation]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def capacity(self) -> int:
        """Максимум точек на устройство."""
        return self._capacity

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        return self._locks.setdefault(device_id, asyncio.Lock())

    async def append(self, device_id: str, sample: RecordedLocation) -> Optional[RecordedLocation]:
        """
        Добавить точку устройства.

        Returns:
            Вытесненная самая старая точка, если буфер был заполнен
        """
        async with self._lock_for(device_id):
            samples = self._samples.get(device_id)
            if samples is None:
                samples = deque(maxlen=self._capacity)
                self._samples[device_id] = samples

            evicted = samples[0] if len(samples) == self._capacity else None
            samples.append(sample)
            return evicted

    async def recent(
        self,
        device_id: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[RecordedLocation]:
        """
        Последние точки устройства, новые первыми.

        Args:
            device_id: Идентификатор устройства
            limit: Максимум точек (None: все из буфера)
            since: Только точки с timestamp >= since
        """
        async with self._lock_for(device_id):
            snapshot = list(self._samples.get(device_id, ()))

        # Порядок по времени, при равенстве: более поздняя вставка первой
        ordered = sorted(reversed(snapshot), key=lambda s: s.timestamp, reverse=True)
        if since is not None:
            ordered = [s for s in ordered if s.timestamp >= since]
        if limit is not None:
            ordered = ordered[:max(limit, 0)]
        return ordered

    async def latest_per_device(self) -> dict[str, RecordedLocation]:
        """Для каждого устройства: точка с максимальным timestamp."""
        latest: dict[str, RecordedLocation] = {}
        for device_id in list(self._samples):
            async with self._lock_for(device_id):
                samples = list(self._samples.get(device_id, ()))
            if not samples:
                continue
            best = samples[0]
            for sample in samples[1:]:
                if sample.timestamp >= best.timestamp:
                    best = sample
            latest[device_id] = best
        return latest

    def device_count(self) -> int:
        """Количество устройств в буфере."""
        return len(self._samples)

    def size(self, device_id: str) -> int:
        """Количество точек устройства в буфере."""
        return len(self._samples.get(device_id, ()))
