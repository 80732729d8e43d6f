#!/usr/bin/env python3
# main.py
"""
Главная точка входа Ride Dispatch.

Режимы:
- dispatch: воркер диспетчеризации и истечение предложений (по умолчанию)
- migrate: применить схему БД и выйти
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.logger import log_error, log_info, setup_logging
from ride_dispatch.config import settings
from ride_dispatch.infra.database import close_db, init_db
from ride_dispatch.worker.runner import run_workers

VALID_MODES = ("dispatch", "migrate")

# Событие для graceful shutdown
_shutdown_event: asyncio.Event | None = None


def setup_signal_handlers() -> asyncio.Event:
    """Настраивает обработчики SIGINT и SIGTERM для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))

    return _shutdown_event


async def run_migrate() -> None:
    """Применяет схему БД."""
    await init_db()
    await close_db()


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска. Если None, берётся из COMPONENT_MODE или "dispatch".
    """
    setup_logging()
    stop_event = setup_signal_handlers()

    mode = mode or os.getenv("COMPONENT_MODE") or "dispatch"
    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим '{mode}', допустимые: {', '.join(VALID_MODES)}")
        sys.exit(2)

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}' "
        f"(хранилище {settings.dispatch.STORE_BACKEND})",
        type_msg=TypeMsg.INFO,
    )

    if mode == "migrate":
        await run_migrate()
    else:
        await run_workers(settings, init_infra=True, stop_event=stop_event)


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
    except KeyboardInterrupt:
        pass
