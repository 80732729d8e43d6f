# ride_dispatch/worker/sweeper.py
"""
Периодическое истечение просроченных предложений.

Нужен для предложений, чьё ожидание прервалось вместе с процессом:
без него они остались бы pending и блокировали новую диспетчеризацию поездки.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.exceptions import TransientStoreError
from ride_dispatch.common.logger import log_error, log_info
from ride_dispatch.core.dispatch.request_store import RequestStore


class ExpirySweeper:
    """Фоновая задача, вызывающая expire_overdue() с заданным интервалом."""

    name = "ExpirySweeper"

    def __init__(self, store: RequestStore, interval: float = 5.0) -> None:
        self._store = store
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> list[int]:
        """Один проход. Сбой хранилища логируется, следующий проход повторит."""
        try:
            expired = await self._store.expire_overdue()
        except TransientStoreError as e:
            await log_error(f"Истечение предложений пропущено: {e}")
            return []

        if expired:
            await log_info(f"Истекло предложений: {len(expired)} {expired}", type_msg=TypeMsg.INFO)
        return expired

    async def _run(self) -> None:
        while True:
            await self.sweep_once()
            await asyncio.sleep(self._interval)

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="expiry-sweeper")
        await log_info(f"{self.name} запущен (интервал {self._interval} с)", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        await log_info(f"{self.name} остановлен", type_msg=TypeMsg.INFO)
