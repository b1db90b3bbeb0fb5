# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и параметры развертывания переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "fleet_tracker"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"


class DeploymentSettings(BaseModel):
    """Настройки развертывания шлюза."""
    GATEWAY_HOST: str = "0.0.0.0"
    GATEWAY_PORT: int = 3001


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """
    Настройки PostgreSQL.

    Пустой DB_DSN означает, что постоянное хранилище не настроено
    и сервис работает только в памяти.
    """
    DB_DSN: str = ""
    DB_MIN_POOL_SIZE: int = 2
    DB_MAX_POOL_SIZE: int = 10
    DB_COMMAND_TIMEOUT: int = 30
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_DSN", mode="before")
    @classmethod
    def get_from_env(cls, v: str | None) -> str:
        """Получает DSN из переменных окружения, если не задан."""
        if not v:
            return os.getenv("DB_DSN") or os.getenv("DATABASE_URL", "")
        return v

    @property
    def enabled(self) -> bool:
        """Настроено ли постоянное хранилище."""
        return bool(self.DB_DSN)


class RedisSettings(BaseModel):
    """Настройки Redis (ретрансляция событий между инстансами)."""
    REDIS_URL: str = ""
    REDIS_CHANNEL: str = "fleet:broadcast"

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def get_from_env(cls, v: str | None) -> str:
        """Получает URL из переменных окружения, если не задан."""
        if not v:
            return os.getenv("REDIS_URL", "")
        return v

    @property
    def enabled(self) -> bool:
        """Включена ли ретрансляция через Redis."""
        return bool(self.REDIS_URL)


class TrackingSettings(BaseModel):
    """Настройки присутствия водителей и истории локаций."""
    STALE_THRESHOLD_SECONDS: int = Field(default=300, gt=0)
    SWEEP_INTERVAL_SECONDS: int = Field(default=300, gt=0)
    HISTORY_CAPACITY: int = Field(default=100, gt=0)
    HISTORY_QUERY_LIMIT: int = Field(default=100, gt=0)
    OBSERVER_QUEUE_SIZE: int = Field(default=256, gt=0)


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        config_data = load_config_json()
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Создаёт объект Settings из плоского словаря конфигурации."""
        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        filtered_data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=filtered_data.get("PROJECT_NAME", "fleet_tracker"),
                VERSION=filtered_data.get("VERSION", "1.0.0"),
                DEBUG=filtered_data.get("DEBUG", False),
                LOG_LEVEL=os.getenv("LOG_LEVEL", filtered_data.get("LOG_LEVEL", "INFO")),
                ENVIRONMENT=os.getenv("ENVIRONMENT", filtered_data.get("ENVIRONMENT", "development")),
            ),
            deployment=DeploymentSettings(
                GATEWAY_HOST=os.getenv("GATEWAY_HOST", filtered_data.get("GATEWAY_HOST", "0.0.0.0")),
                GATEWAY_PORT=int(os.getenv("PORT", filtered_data.get("GATEWAY_PORT", 3001))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", filtered_data.get("LOG_LEVEL", "INFO")),
                LOG_TO_FILE=filtered_data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=filtered_data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=os.getenv("LOG_FORMAT", filtered_data.get("LOG_FORMAT", "colored")),
                LOG_MAX_BYTES=filtered_data.get("LOG_MAX_BYTES", 10485760),
            ),
            database=DatabaseSettings(
                DB_DSN=os.getenv("DB_DSN") or filtered_data.get("DB_DSN", ""),
                DB_MIN_POOL_SIZE=filtered_data.get("DB_MIN_POOL_SIZE", 2),
                DB_MAX_POOL_SIZE=filtered_data.get("DB_MAX_POOL_SIZE", 10),
                DB_COMMAND_TIMEOUT=filtered_data.get("DB_COMMAND_TIMEOUT", 30),
                DB_RETRY_ATTEMPTS=filtered_data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=filtered_data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_URL=os.getenv("REDIS_URL") or filtered_data.get("REDIS_URL", ""),
                REDIS_CHANNEL=filtered_data.get("REDIS_CHANNEL", "fleet:broadcast"),
            ),
            tracking=TrackingSettings(
                STALE_THRESHOLD_SECONDS=int(os.getenv(
                    "STALE_THRESHOLD_SECONDS",
                    filtered_data.get("STALE_THRESHOLD_SECONDS", 300),
                )),
                SWEEP_INTERVAL_SECONDS=int(os.getenv(
                    "SWEEP_INTERVAL_SECONDS",
                    filtered_data.get("SWEEP_INTERVAL_SECONDS", 300),
                )),
                HISTORY_CAPACITY=int(os.getenv(
                    "HISTORY_CAPACITY",
                    filtered_data.get("HISTORY_CAPACITY", 100),
                )),
                HISTORY_QUERY_LIMIT=filtered_data.get("HISTORY_QUERY_LIMIT", 100),
                OBSERVER_QUEUE_SIZE=filtered_data.get("OBSERVER_QUEUE_SIZE", 256),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    # Загружаем .env файл
    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
