# ride_dispatch/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и адреса инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации (можно переопределить через CONFIG_PATH)."""
    override = os.getenv("CONFIG_PATH")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """Загружает config.json и возвращает словарь без ключей-комментариев."""
    config_path = path or get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_dispatch"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_dispatch"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 30
    DB_CONNECT_ATTEMPTS: int = 3
    DB_CONNECT_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis (ретрансляция сигналов между процессами)."""
    REDIS_ENABLED: bool = True
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "dispatch"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ (шина событий и канал уведомлений)."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "dispatch.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class DispatchSettings(BaseModel):
    """Настройки диспетчеризации."""
    ACCEPT_TIMEOUT_SECONDS: float = Field(60.0, gt=0)
    MAX_ATTEMPTS: int = Field(3, ge=1)
    SEARCH_RADIUS_KM: float = Field(5.0, gt=0)
    POLL_INTERVAL_SECONDS: float = Field(1.0, gt=0)
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = Field(5.0, gt=0)
    OTP_LENGTH: int = Field(6, ge=4, le=10)
    STORE_BACKEND: Literal["postgres", "memory"] = "postgres"


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Плоские ключи файла раскладываются по секциям по именам полей;
        секреты и адреса переопределяются из переменных окружения.
        """
        data = load_config_json(path)

        def section(model: type[BaseModel], env_keys: tuple[str, ...] = ()) -> dict[str, Any]:
            values = {name: data[name] for name in model.model_fields if name in data}
            for key in env_keys:
                env_value = os.getenv(key)
                if env_value:
                    values[key] = env_value
            return values

        return cls(
            system=SystemSettings(**section(SystemSettings, ("ENVIRONMENT",))),
            logging=LoggingSettings(**section(LoggingSettings, ("LOG_LEVEL", "LOG_FORMAT"))),
            database=DatabaseSettings(**section(
                DatabaseSettings,
                ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"),
            )),
            redis=RedisSettings(**section(
                RedisSettings,
                ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD"),
            )),
            rabbitmq=RabbitMQSettings(**section(
                RabbitMQSettings,
                ("RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER", "RABBITMQ_PASSWORD"),
            )),
            dispatch=DispatchSettings(**section(DispatchSettings, ("STORE_BACKEND",))),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
