# tests/config/test_loader.py
"""
Тесты для модуля загрузки конфигурации.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from ride_dispatch.config.loader import (
    DatabaseSettings,
    DispatchSettings,
    RabbitMQSettings,
    RedisSettings,
    Settings,
    SystemSettings,
    get_config_path,
    get_project_root,
    load_config_json,
)


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Создаёт временный файл конфигурации."""
    config = {
        "_comment_system": "комментарий",
        "PROJECT_NAME": "ride_dispatch_test",
        "VERSION": "1.0.0-test",
        "LOG_LEVEL": "INFO",
        "DB_HOST": "db.internal",
        "DB_NAME": "dispatch_test",
        "REDIS_NAMESPACE": "dispatch_test",
        "RABBITMQ_EXCHANGE": "dispatch.test",
        "ACCEPT_TIMEOUT_SECONDS": 30,
        "MAX_ATTEMPTS": 2,
        "SEARCH_RADIUS_KM": 3.5,
    }
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(config, ensure_ascii=False, indent=2))
    return config_file


class TestPaths:
    """Тесты для функций путей."""

    def test_root_contains_package_and_config(self) -> None:
        root = get_project_root()

        assert isinstance(root, Path)
        assert (root / "ride_dispatch").exists()
        assert (root / "config").exists()

    def test_config_path_default(self) -> None:
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("CONFIG_PATH", None)
            path = get_config_path()

        assert path.name == "config.json"
        assert path.parent.name == "config"

    def test_config_path_override(self, tmp_path: Path) -> None:
        """CONFIG_PATH переопределяет расположение файла."""
        custom = tmp_path / "custom.json"
        with patch.dict(os.environ, {"CONFIG_PATH": str(custom)}):
            assert get_config_path() == custom


class TestLoadConfigJson:
    """Тесты для функции load_config_json."""

    def test_loads_project_config(self, config_path: Path) -> None:
        config = load_config_json(config_path)

        for key in ("PROJECT_NAME", "ACCEPT_TIMEOUT_SECONDS", "MAX_ATTEMPTS", "SEARCH_RADIUS_KM"):
            assert key in config, f"Отсутствует ключ: {key}"

    def test_strips_comment_keys(self, temp_config_file: Path) -> None:
        config = load_config_json(temp_config_file)

        assert not any(k.startswith("_comment_") for k in config)

    def test_raises_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config_json(tmp_path / "nonexistent.json")


class TestSectionModels:
    """Тесты для моделей секций."""

    def test_system_defaults(self) -> None:
        settings = SystemSettings()

        assert settings.PROJECT_NAME == "ride_dispatch"
        assert settings.VERSION == "1.0.0"

    def test_dispatch_defaults(self) -> None:
        """Значения по умолчанию для диспетчеризации."""
        settings = DispatchSettings()

        assert settings.ACCEPT_TIMEOUT_SECONDS == 60.0
        assert settings.MAX_ATTEMPTS == 3
        assert settings.SEARCH_RADIUS_KM == 5.0
        assert settings.STORE_BACKEND == "postgres"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("ACCEPT_TIMEOUT_SECONDS", 0),
            ("MAX_ATTEMPTS", 0),
            ("SEARCH_RADIUS_KM", -1.0),
            ("POLL_INTERVAL_SECONDS", 0),
            ("STORE_BACKEND", "sqlite"),
        ],
    )
    def test_dispatch_rejects_invalid(self, field: str, value: Any) -> None:
        with pytest.raises(ValidationError):
            DispatchSettings(**{field: value})

    def test_database_dsn(self) -> None:
        settings = DatabaseSettings(
            DB_HOST="db", DB_PORT=5433, DB_NAME="dispatch", DB_USER="app", DB_PASSWORD="secret"
        )

        assert settings.dsn == "postgresql://app:secret@db:5433/dispatch"

    def test_database_password_from_env(self) -> None:
        with patch.dict(os.environ, {"DB_PASSWORD": "from_env"}):
            assert DatabaseSettings(DB_PASSWORD="").DB_PASSWORD == "from_env"

    def test_redis_url_with_and_without_password(self) -> None:
        with patch.dict(os.environ, {"REDIS_PASSWORD": ""}):
            assert RedisSettings(REDIS_HOST="r", REDIS_DB=2).url == "redis://r:6379/2"
        assert RedisSettings(REDIS_HOST="r", REDIS_PASSWORD="pw").url == "redis://:pw@r:6379/0"

    def test_rabbitmq_url(self) -> None:
        settings = RabbitMQSettings(RABBITMQ_HOST="mq", RABBITMQ_USER="u", RABBITMQ_PASSWORD="p")

        assert settings.url == "amqp://u:p@mq:5672/"


class TestSettingsFromConfigJson:
    """Тесты сборки Settings из config.json."""

    def test_keys_distributed_to_sections(self, temp_config_file: Path) -> None:
        with patch.dict(os.environ, {"STORE_BACKEND": "memory"}):
            settings = Settings.from_config_json(temp_config_file)

        assert settings.system.PROJECT_NAME == "ride_dispatch_test"
        assert settings.logging.LOG_LEVEL == "INFO"
        assert settings.database.DB_NAME == "dispatch_test"
        assert settings.redis.REDIS_NAMESPACE == "dispatch_test"
        assert settings.rabbitmq.RABBITMQ_EXCHANGE == "dispatch.test"
        assert settings.dispatch.ACCEPT_TIMEOUT_SECONDS == 30
        assert settings.dispatch.MAX_ATTEMPTS == 2
        assert settings.dispatch.SEARCH_RADIUS_KM == 3.5

    def test_env_overrides_file(self, temp_config_file: Path) -> None:
        """Адреса инфраструктуры и бэкенд берутся из окружения."""
        with patch.dict(os.environ, {"DB_HOST": "pg.prod", "STORE_BACKEND": "postgres"}):
            settings = Settings.from_config_json(temp_config_file)

        assert settings.database.DB_HOST == "pg.prod"
        assert settings.dispatch.STORE_BACKEND == "postgres"

    def test_project_config_is_valid(self, config_path: Path) -> None:
        settings = Settings.from_config_json(config_path)

        assert settings.dispatch.MAX_ATTEMPTS == 3
        assert settings.dispatch.ACCEPT_TIMEOUT_SECONDS == 60
