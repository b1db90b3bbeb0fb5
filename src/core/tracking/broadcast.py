# src/core/tracking/broadcast.py
"""
Рассылка событий наблюдателям (админ-панелям).

Publish-subscribe хаб: у каждого подписчика своя ограниченная очередь,
публикация никогда не ждёт. Переполненная очередь означает медленного
наблюдателя: он отключается, остальные продолжают получать события.
Истории событий нет: новый наблюдатель запрашивает текущее состояние сам.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from src.common.constants import OutboundEvent
from src.common.logger import log_warning
from src.core.tracking.models import DriverRecord, RecordedLocation


DEFAULT_QUEUE_SIZE = 256


@dataclass
class BroadcastEvent:
    """Событие для наблюдателей."""
    name: str
    payload: Any
    origin: str
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict[str, Any]:
        """Сообщение для отправки по WebSocket."""
        return {"event": self.name, "data": self.payload}


class Subscription:
    """
    Подписка наблюдателя.

    Итерация `async for event in subscription` завершается после
    отписки или отключения хабом, когда очередь вычитана.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        hub: "BroadcastHub",
        queue_size: int,
        label: str = "",
        internal: bool = False,
    ) -> None:
        self.id = next(self._ids)
        self.label = label or f"observer-{self.id}"
        self.internal = internal
        self._hub = hub
        self._queue: asyncio.Queue[Optional[BroadcastEvent]] = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.received = 0

    def offer(self, event: BroadcastEvent) -> bool:
        """Положить событие без ожидания. False: очередь переполнена."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        self.received += 1
        return True

    def close(self) -> None:
        """Закрыть подписку; ожидающий get() получит маркер конца."""
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Очередь полна: потребитель увидит closed после вычитки
            pass

    async def get(self) -> Optional[BroadcastEvent]:
        """Следующее событие или None, если подписка закрыта."""
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            return None
        return event

    def pending(self) -> int:
        """Событий в очереди."""
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BroadcastEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def unsubscribe(self) -> None:
        """Отписаться от хаба."""
        self._hub.unsubscribe(self)


class BroadcastHub:
    """Хаб рассылки событий drivers-updated и location-update."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE, instance_id: str | None = None) -> None:
        self._queue_size = queue_size
        self.instance_id = instance_id or uuid.uuid4().hex
        self._subscribers: dict[int, Subscription] = {}
        self._log_tasks: set[asyncio.Task] = set()

        self._total_published = 0
        self._total_dropped_observers = 0

    @property
    def observer_count(self) -> int:
        """Количество активных наблюдателей (без внутренних подписок)."""
        return sum(1 for s in self._subscribers.values() if not s.internal)

    @property
    def internal_count(self) -> int:
        """Количество внутренних подписок (ретрансляция и т.п.)."""
        return len(self._subscribers) - self.observer_count

    def subscribe(
        self,
        label: str = "",
        queue_size: int | None = None,
        internal: bool = False,
    ) -> Subscription:
        """
        Новый наблюдатель. Получает только события после подписки.

        internal=True: служебная подписка, не учитывается в observer_count.
        """
        subscription = Subscription(self, queue_size or self._queue_size, label, internal)
        self._subscribers[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Удалить наблюдателя."""
        self._subscribers.pop(subscription.id, None)
        subscription.close()

    def publish(self, event: BroadcastEvent) -> int:
        """
        Разослать событие всем наблюдателям без ожидания.

        Returns:
            Количество наблюдателей, получивших событие
        """
        self._total_published += 1
        delivered = 0
        slow: list[Subscription] = []

        for subscription in list(self._subscribers.values()):
            if subscription.offer(event):
                delivered += 1
            else:
                slow.append(subscription)

        for subscription in slow:
            self._drop(subscription)

        return delivered

    def publish_drivers_updated(self, drivers: Iterable[DriverRecord]) -> int:
        """Разослать актуальный список водителей."""
        payload = [driver.model_dump(mode="json") for driver in drivers]
        return self.publish(BroadcastEvent(
            name=OutboundEvent.DRIVERS_UPDATED.value,
            payload=payload,
            origin=self.instance_id,
        ))

    def publish_location_update(self, location: RecordedLocation) -> int:
        """Разослать принятую локацию."""
        return self.publish(BroadcastEvent(
            name=OutboundEvent.LOCATION_UPDATE.value,
            payload=location.model_dump(mode="json"),
            origin=self.instance_id,
        ))

    def close(self) -> None:
        """Закрыть все подписки."""
        for subscription in list(self._subscribers.values()):
            self.unsubscribe(subscription)

    def _drop(self, subscription: Subscription) -> None:
        self._total_dropped_observers += 1
        self.unsubscribe(subscription)
        # publish синхронный: логирование уходит в отдельную задачу
        try:
            task = asyncio.get_running_loop().create_task(log_warning(
                f"Наблюдатель {subscription.label} не успевает получать события, отключён",
                logger_name="broadcast",
                extra={"observer": subscription.label, "pending": subscription.pending()},
            ))
            self._log_tasks.add(task)
            task.add_done_callback(self._log_tasks.discard)
        except RuntimeError:
            pass

    def get_stats(self) -> dict[str, Any]:
        """Статистика хаба."""
        return {
            "observers": self.observer_count,
            "internal_subscribers": self.internal_count,
            "total_published": self._total_published,
            "dropped_observers": self._total_dropped_observers,
        }
