# src/infra/event_relay.py
"""
Ретрансляция событий рассылки между инстансами через Redis Pub/Sub.

Локальные события хаба публикуются в канал с меткой инстанса,
события других инстансов из канала передаются в локальный хаб.
Свои события из канала игнорируются.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_warning
from src.core.tracking.broadcast import BroadcastEvent, BroadcastHub, Subscription


def create_redis_client(url: str, max_connections: int = 10) -> aioredis.Redis:
    """Клиент Redis по URL (соединение устанавливается при первом запросе)."""
    return aioredis.from_url(url, max_connections=max_connections)


class RedisEventRelay:
    """Мост BroadcastHub <-> Redis Pub/Sub."""

    def __init__(
        self,
        redis: aioredis.Redis,
        hub: BroadcastHub,
        channel: str = "fleet:broadcast",
    ) -> None:
        """
        Args:
            redis: Клиент Redis
            hub: Локальный хаб рассылки
            channel: Канал Pub/Sub
        """
        self._redis = redis
        self._hub = hub
        self._channel = channel
        self._pubsub = None
        self._subscription: Optional[Subscription] = None
        self._tasks: list[asyncio.Task] = []
        self._running = False

        self._relayed_out = 0
        self._relayed_in = 0

    async def start(self) -> None:
        """Подписаться на канал и запустить пересылку."""
        if self._running:
            return

        self._running = True
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)

        self._tasks = [
            asyncio.create_task(self._forward_local()),
            asyncio.create_task(self._listen_remote()),
        ]
        await log_info(
            f"Ретрансляция событий через Redis запущена: {self._channel}",
            type_msg=TypeMsg.INFO,
            logger_name="relay",
        )

    async def stop(self) -> None:
        """Остановить пересылку и закрыть подписку."""
        self._running = False

        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._pubsub is not None:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None

    async def _forward_local(self) -> None:
        """Локальные события хаба -> Redis."""
        while self._running:
            # Хаб отключает медленную подписку, поэтому подписываемся заново
            self._subscription = self._hub.subscribe(label="redis-relay", internal=True)
            async for event in self._subscription:
                if event.origin != self._hub.instance_id:
                    continue
                await self._publish(event)

    async def _publish(self, event: BroadcastEvent) -> None:
        message = json.dumps({
            "origin": event.origin,
            "event": event.name,
            "data": event.payload,
        }, ensure_ascii=False, default=str)
        try:
            await self._redis.publish(self._channel, message)
            self._relayed_out += 1
        except Exception as e:
            await log_warning(f"Не удалось опубликовать событие в Redis: {e}", logger_name="relay")

    async def _listen_remote(self) -> None:
        """События других инстансов -> локальный хаб."""
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                self._process_message(message)
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Логируем ошибку, но продолжаем работу
                await log_warning(f"Ошибка подписчика Redis: {e}", logger_name="relay")
                await asyncio.sleep(1)

    def _process_message(self, message: dict[str, Any]) -> bool:
        """Передать сообщение из Redis в хаб. Возвращает False, если сообщение пропущено."""
        if message.get("type") != "message":
            return False

        data = message.get("data", b"")
        if isinstance(data, bytes):
            data = data.decode("utf-8")

        try:
            parsed = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return False
        if not isinstance(parsed, dict):
            return False

        origin = parsed.get("origin")
        name = parsed.get("event")
        if not origin or not name or origin == self._hub.instance_id:
            return False

        self._hub.publish(BroadcastEvent(name=name, payload=parsed.get("data"), origin=origin))
        self._relayed_in += 1
        return True

    def get_stats(self) -> dict[str, int]:
        """Статистика ретрансляции."""
        return {"relayed_out": self._relayed_out, "relayed_in": self._relayed_in}
