"""
Модуль конфигурации.
Экспортирует настройки приложения.
"""

from ride_dispatch.config.loader import Settings, get_settings, settings

__all__ = ["Settings", "get_settings", "settings"]
